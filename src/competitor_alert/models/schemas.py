from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

FREQUENCY_HOURLY = "hourly"
FREQUENCY_DAILY = "daily"
FREQUENCY_WEEKLY = "weekly"
FREQUENCY_MONTHLY = "monthly"

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"

METHOD_EXACT = "exact"
METHOD_ALIAS = "alias"
METHOD_DOMAIN = "domain"
METHOD_FUZZY = "fuzzy"


@dataclass
class Competitor:
    canonical_name: str
    aliases: list[str] = field(default_factory=list)
    domains: list[str] = field(default_factory=list)


@dataclass
class Alert:
    alert_id: str
    name: str
    competitors: list[Competitor]
    platforms: list[str]
    frequency: str = FREQUENCY_DAILY
    max_results: int = 10
    dedupe_window_days: int = 30
    fuzzy_matching_enabled: bool = False
    email_notifications: bool = True
    email: str = ""
    webhook_url: str = ""
    is_active: bool = True
    next_run_time: Optional[datetime] = None
    last_run: Optional[datetime] = None


@dataclass
class AlertRun:
    run_id: str
    alert_id: str
    status: str
    start_time: datetime
    end_time: Optional[datetime] = None
    api_calls_used: int = 0
    new_presences_found: int = 0
    error_message: str = ""

    @property
    def is_finalized(self) -> bool:
        return self.status in {RUN_COMPLETED, RUN_FAILED}


@dataclass
class PresenceRecord:
    record_id: str
    alert_id: str
    run_id: str
    competitor_name: str
    platform: str
    title: str
    url: str
    snippet: str
    dedupe_key: str
    detection_method: str
    created_at: datetime


@dataclass
class QuotaUsage:
    month: str
    total_api_calls: int
    remaining_calls: int
    last_updated: Optional[datetime] = None


@dataclass(frozen=True)
class SearchHit:
    title: str
    url: str
    snippet: str = ""
    display_url: str = ""
    position: int = 0


@dataclass(frozen=True)
class ClassifiedHit:
    hit: SearchHit
    detection_method: str

    @property
    def title(self) -> str:
        return self.hit.title

    @property
    def url(self) -> str:
        return self.hit.url

    @property
    def snippet(self) -> str:
        return self.hit.snippet
