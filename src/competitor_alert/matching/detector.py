"""Tiered classification of search hits against one competitor.

Tiers are tried in priority order and the first one that matches wins:
exact canonical name, alias, domain in the URL, then (optionally) fuzzy
word overlap. Hits that match no tier are dropped.
"""
import math
import re
from typing import Optional

from competitor_alert.models.schemas import (
    METHOD_ALIAS,
    METHOD_DOMAIN,
    METHOD_EXACT,
    METHOD_FUZZY,
    ClassifiedHit,
    Competitor,
    SearchHit,
)

FUZZY_WORD_RATIO = 0.7


def _hit_text(hit: SearchHit) -> str:
    return f"{hit.title} {hit.snippet}".lower()


def exact_match(text: str, term: str) -> bool:
    cleaned = term.strip().lower()
    if not cleaned:
        return False
    pattern = re.compile(rf"\b{re.escape(cleaned)}\b", re.IGNORECASE)
    return pattern.search(text) is not None


def fuzzy_match(text: str, term: str) -> bool:
    words = term.lower().split()
    if not words:
        return False
    found = [word for word in words if word in text]
    return len(found) >= math.ceil(len(words) * FUZZY_WORD_RATIO)


def domain_match(url: str, domains: list[str]) -> bool:
    lowered = url.lower()
    return any(
        domain.strip().lower() in lowered for domain in domains if domain.strip()
    )


def classify_hit(
    hit: SearchHit,
    competitor: Competitor,
    fuzzy_enabled: bool,
) -> Optional[ClassifiedHit]:
    text = _hit_text(hit)

    if exact_match(text, competitor.canonical_name):
        method = METHOD_EXACT
    elif any(exact_match(text, alias) for alias in competitor.aliases):
        method = METHOD_ALIAS
    elif domain_match(hit.url, competitor.domains):
        method = METHOD_DOMAIN
    elif fuzzy_enabled and fuzzy_match(text, competitor.canonical_name):
        method = METHOD_FUZZY
    else:
        return None

    return ClassifiedHit(hit=hit, detection_method=method)


def match_hits(
    hits: list[SearchHit],
    competitor: Competitor,
    fuzzy_enabled: bool,
) -> list[ClassifiedHit]:
    matches: list[ClassifiedHit] = []
    for hit in hits:
        classified = classify_hit(hit, competitor, fuzzy_enabled)
        if classified is not None:
            matches.append(classified)
    return matches
