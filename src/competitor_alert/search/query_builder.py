from competitor_alert.models.schemas import Competitor

PLATFORM_DOMAINS = {
    "reddit": "reddit.com",
    "quora": "quora.com",
    "facebook": "facebook.com",
    "twitter": "twitter.com",
    "linkedin": "linkedin.com",
}


def platform_domain(platform: str) -> str:
    key = platform.strip().lower()
    return PLATFORM_DOMAINS.get(key, f"{key}.com")


def build_competitor_query(competitor: Competitor, platform: str) -> str:
    """Quoted canonical name OR'd with every non-empty alias, scoped to the platform."""
    terms = [competitor.canonical_name.strip()]
    terms.extend(alias.strip() for alias in competitor.aliases if alias.strip())
    quoted = " OR ".join(f"\"{term}\"" for term in terms)
    return f"({quoted}) site:{platform_domain(platform)}"
