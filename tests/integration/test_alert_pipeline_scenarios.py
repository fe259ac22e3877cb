import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import requests

from competitor_alert.alerts import dispatcher
from competitor_alert.config import AppConfig
from competitor_alert.errors import AlertNotFoundError, PersistenceError
from competitor_alert.models.schemas import Alert, Competitor, SearchHit
from competitor_alert.pipeline import AlertProcessor
from competitor_alert.search import client as search_client
from competitor_alert.search.client import SearchClient
from competitor_alert.storage.csv_gateway import CsvGateway
from competitor_alert.storage.gateway import InMemoryGateway

NOW = datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _FakeSearchClient:
    def __init__(self, hits: list[SearchHit], delay: float = 0.0) -> None:
        self.hits = hits
        self.delay = delay
        self.queries: list[tuple[str, int]] = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def search(self, query: str, max_results: int) -> list[SearchHit]:
        with self._lock:
            self.queries.append((query, max_results))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.active -= 1
        return list(self.hits)


class _RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[str, int]] = []

    def __call__(self, alert, new_presences, config, now=None):
        self.calls.append((alert.alert_id, new_presences))
        return {"webhook"}


def _alert(
    competitors: list[Competitor],
    platforms: list[str] | None = None,
    frequency: str = "daily",
    fuzzy: bool = False,
) -> Alert:
    return Alert(
        alert_id="a1",
        name="Acme watch",
        competitors=competitors,
        platforms=platforms or ["Reddit"],
        frequency=frequency,
        max_results=10,
        dedupe_window_days=30,
        fuzzy_matching_enabled=fuzzy,
        next_run_time=NOW - timedelta(minutes=1),
    )


def _processor(gateway, client, clock, notifier=None, sleeps=None) -> AlertProcessor:
    return AlertProcessor(
        gateway,
        client,
        AppConfig(monthly_quota=1000),
        notifier=notifier or _RecordingNotifier(),
        clock=clock,
        sleep=(sleeps.append if sleeps is not None else lambda seconds: None),
    )


def _acme_hit() -> SearchHit:
    return SearchHit(
        title="Anyone switched away from Acme?",
        url="https://reddit.com/r/saas/comments/1",
        snippet="Looking for alternatives to Acme for invoicing.",
    )


def test_scenario_a_exact_hit_creates_one_presence() -> None:
    gateway = InMemoryGateway()
    alert = gateway.create_alert(_alert([Competitor(canonical_name="Acme")]))
    client = _FakeSearchClient([_acme_hit()])
    notifier = _RecordingNotifier()
    processor = _processor(gateway, client, _Clock(NOW), notifier)

    run = processor.process_alert(alert)

    records = gateway.list_presence_records(alert_id="a1")
    assert len(records) == 1
    assert records[0].detection_method == "exact"
    assert records[0].run_id == run.run_id
    assert records[0].platform == "Reddit"
    assert run.status == "completed"
    assert run.new_presences_found == 1
    assert run.api_calls_used == 1
    assert client.queries == [('("Acme") site:reddit.com', 10)]
    assert notifier.calls == [("a1", 1)]
    usage = gateway.get_quota_usage("2026-10")
    assert usage is not None
    assert usage.total_api_calls == 1
    assert usage.remaining_calls == 999


def test_scenario_b_immediate_rerun_finds_nothing_new() -> None:
    gateway = InMemoryGateway()
    alert = gateway.create_alert(_alert([Competitor(canonical_name="Acme")]))
    client = _FakeSearchClient([_acme_hit()])
    notifier = _RecordingNotifier()
    clock = _Clock(NOW)
    processor = _processor(gateway, client, clock, notifier)

    processor.process_alert(alert)
    clock.now += timedelta(seconds=30)
    rerun = processor.process_alert(alert)

    assert rerun.status == "completed"
    assert rerun.new_presences_found == 0
    assert len(gateway.list_presence_records()) == 1
    assert notifier.calls == [("a1", 1)]
    assert len(gateway.list_alert_runs("a1")) == 2


def test_scenario_c_fuzzy_match_when_other_tiers_miss() -> None:
    gateway = InMemoryGateway()
    alert = gateway.create_alert(
        _alert([Competitor(canonical_name="Acme Corp")], fuzzy=True)
    )
    hit = SearchHit(
        title="acme quietly reorganises",
        url="https://reddit.com/r/business/2",
        snippet="The corporation announced layoffs.",
    )
    processor = _processor(gateway, _FakeSearchClient([hit]), _Clock(NOW))

    run = processor.process_alert(alert)

    records = gateway.list_presence_records()
    assert run.new_presences_found == 1
    assert [record.detection_method for record in records] == ["fuzzy"]


def test_quota_gate_blocks_all_searches() -> None:
    gateway = InMemoryGateway()
    alert = gateway.create_alert(_alert([Competitor(canonical_name="Acme")]))
    gateway.update_quota_usage("2026-10", 1000, 1000, NOW)
    client = _FakeSearchClient([_acme_hit()])
    processor = _processor(gateway, client, _Clock(NOW))

    run = processor.process_alert(alert)

    assert client.queries == []
    assert run.status == "failed"
    assert "quota exceeded" in run.error_message.lower()
    assert run.api_calls_used == 0
    assert gateway.get_alert("a1").next_run_time == NOW + timedelta(days=1)


@pytest.mark.parametrize(
    ("frequency", "interval"),
    [
        ("hourly", timedelta(hours=1)),
        ("daily", timedelta(days=1)),
        ("weekly", timedelta(weeks=1)),
    ],
)
def test_next_run_advances_by_frequency_on_success(frequency, interval) -> None:
    gateway = InMemoryGateway()
    alert = gateway.create_alert(
        _alert([Competitor(canonical_name="Acme")], frequency=frequency)
    )
    previous = alert.next_run_time
    processor = _processor(gateway, _FakeSearchClient([]), _Clock(NOW))

    processor.process_alert(alert)

    stored = gateway.get_alert("a1")
    assert stored.next_run_time == NOW + interval
    assert stored.next_run_time > previous
    assert stored.last_run == NOW


def test_monthly_frequency_advances_one_calendar_month() -> None:
    gateway = InMemoryGateway()
    alert = gateway.create_alert(
        _alert([Competitor(canonical_name="Acme")], frequency="monthly")
    )
    clock = _Clock(datetime(2026, 1, 31, 9, 0, tzinfo=timezone.utc))

    _processor(gateway, _FakeSearchClient([]), clock).process_alert(alert)

    assert gateway.get_alert("a1").next_run_time == datetime(
        2026, 2, 28, 9, 0, tzinfo=timezone.utc
    )


def test_storage_failure_marks_run_failed_and_still_advances() -> None:
    class _FailingWrites(InMemoryGateway):
        def create_presence_record(self, record):
            raise PersistenceError("disk full")

    gateway = _FailingWrites()
    alert = gateway.create_alert(
        _alert([Competitor(canonical_name="Acme")], frequency="hourly")
    )
    previous = alert.next_run_time
    notifier = _RecordingNotifier()
    processor = _processor(gateway, _FakeSearchClient([_acme_hit()]), _Clock(NOW), notifier)

    run = processor.process_alert(alert)

    assert run.status == "failed"
    assert run.error_message == "disk full"
    assert run.end_time == NOW
    stored = gateway.get_alert("a1")
    assert stored.next_run_time == NOW + timedelta(hours=1)
    assert stored.next_run_time > previous
    assert stored.last_run is None
    assert notifier.calls == []
    assert gateway.get_quota_usage("2026-10").total_api_calls == 1


def test_soft_cap_stops_loop_at_remaining_budget() -> None:
    gateway = InMemoryGateway()
    alert = gateway.create_alert(
        _alert(
            [Competitor(canonical_name="Acme"), Competitor(canonical_name="Globex")],
            platforms=["Reddit", "Quora"],
        )
    )
    gateway.update_quota_usage("2026-10", 998, 1000, NOW)
    client = _FakeSearchClient([])
    processor = _processor(gateway, client, _Clock(NOW))

    run = processor.process_alert(alert)

    assert run.status == "completed"
    assert run.api_calls_used == 2
    assert len(client.queries) == 2
    assert gateway.get_quota_usage("2026-10").remaining_calls == 0


def test_pacing_delay_between_search_calls() -> None:
    gateway = InMemoryGateway()
    alert = gateway.create_alert(
        _alert([Competitor(canonical_name="Acme")], platforms=["Reddit", "Quora", "LinkedIn"])
    )
    sleeps: list[float] = []
    processor = _processor(gateway, _FakeSearchClient([]), _Clock(NOW), sleeps=sleeps)

    processor.process_alert(alert)

    assert sleeps == [0.1, 0.1]


def test_webhook_failure_does_not_fail_run(monkeypatch) -> None:
    def raising_post(url, json, headers, timeout):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(dispatcher.requests, "post", raising_post)
    gateway = InMemoryGateway()
    alert = _alert([Competitor(canonical_name="Acme")])
    alert.webhook_url = "https://hooks.example.com/acme"
    gateway.create_alert(alert)
    processor = AlertProcessor(
        gateway,
        _FakeSearchClient([_acme_hit()]),
        AppConfig(),
        clock=_Clock(NOW),
        sleep=lambda seconds: None,
    )

    run = processor.process_alert(alert)

    assert run.status == "completed"
    assert run.new_presences_found == 1


def test_trigger_alert_ignores_due_time() -> None:
    gateway = InMemoryGateway()
    alert = _alert([Competitor(canonical_name="Acme")])
    alert.next_run_time = NOW + timedelta(hours=6)
    gateway.create_alert(alert)
    processor = _processor(gateway, _FakeSearchClient([_acme_hit()]), _Clock(NOW))

    run = processor.trigger_alert("a1")

    assert run.status == "completed"
    assert run.new_presences_found == 1
    with pytest.raises(AlertNotFoundError):
        processor.trigger_alert("missing")


def test_concurrent_runs_of_same_alert_are_serialized() -> None:
    gateway = InMemoryGateway()
    alert = gateway.create_alert(_alert([Competitor(canonical_name="Acme")]))
    client = _FakeSearchClient([_acme_hit()], delay=0.05)
    processor = _processor(gateway, client, _Clock(NOW))

    threads = [
        threading.Thread(target=processor.process_alert, args=(alert,)),
        threading.Thread(target=processor.trigger_alert, args=("a1",)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    runs = gateway.list_alert_runs("a1")
    assert client.max_active == 1
    assert len(runs) == 2
    assert sorted(run.new_presences_found for run in runs) == [0, 1]
    assert len(gateway.list_presence_records()) == 1


def test_csv_store_rerun_creates_no_duplicate_rows(tmp_path: Path) -> None:
    gateway = CsvGateway(tmp_path)
    alert = gateway.create_alert(_alert([Competitor(canonical_name="Acme")]))
    clock = _Clock(NOW)
    processor = _processor(gateway, _FakeSearchClient([_acme_hit()]), clock)

    first = processor.process_alert(alert)
    clock.now += timedelta(days=1)
    second = processor.trigger_alert("a1")

    assert first.new_presences_found == 1
    assert second.new_presences_found == 0
    assert len(CsvGateway(tmp_path).list_presence_records()) == 1
    statuses = [run.status for run in CsvGateway(tmp_path).list_alert_runs("a1")]
    assert statuses == ["completed", "completed"]


class _SearchResponse:
    def __init__(self, body: dict) -> None:
        self.status_code = 200
        self._body = body
        self.text = ""

    def json(self) -> dict:
        return self._body


def test_exhausted_search_for_one_platform_keeps_the_run_going(monkeypatch) -> None:
    attempts: list[str] = []

    def fake_post(url, json, headers, timeout):
        attempts.append(json["q"])
        if "site:quora.com" in json["q"]:
            raise requests.ConnectionError("quora search unreachable")
        return _SearchResponse(
            {
                "organic": [
                    {
                        "title": "Anyone switched away from Acme?",
                        "link": "https://reddit.com/r/saas/comments/1",
                        "snippet": "Looking for alternatives to Acme.",
                    }
                ]
            }
        )

    monkeypatch.setattr(search_client.requests, "post", fake_post)
    gateway = InMemoryGateway()
    alert = gateway.create_alert(
        _alert([Competitor(canonical_name="Acme")], platforms=["Quora", "Reddit"])
    )
    backoffs: list[float] = []
    client = SearchClient("test-key", "https://search.example.com", sleep=backoffs.append)
    processor = _processor(gateway, client, _Clock(NOW))

    run = processor.process_alert(alert)

    assert run.status == "completed"
    assert run.api_calls_used == 2
    assert run.new_presences_found == 1
    assert [record.platform for record in gateway.list_presence_records()] == ["Reddit"]
    assert len(attempts) == 4
    assert backoffs == [2, 4]
    assert gateway.get_quota_usage("2026-10").total_api_calls == 2


def test_raising_notifier_does_not_fail_the_run() -> None:
    def broken_notifier(alert, new_presences, config, now=None):
        raise RuntimeError("notifier crashed")

    gateway = InMemoryGateway()
    alert = gateway.create_alert(_alert([Competitor(canonical_name="Acme")]))
    processor = _processor(
        gateway, _FakeSearchClient([_acme_hit()]), _Clock(NOW), broken_notifier
    )

    run = processor.process_alert(alert)

    assert run.status == "completed"
    assert run.new_presences_found == 1
    assert gateway.get_alert("a1").last_run == NOW


def test_malformed_email_address_does_not_fail_the_run(monkeypatch) -> None:
    class _FakeSMTP:
        def __init__(self, host, port, timeout):
            pass

        def __enter__(self):
            return self

        def __exit__(self, *exc_info):
            return False

        def starttls(self, context):
            pass

        def login(self, user, password):
            pass

        def send_message(self, message):
            pass

    monkeypatch.setattr(dispatcher.smtplib, "SMTP", _FakeSMTP)
    gateway = InMemoryGateway()
    alert = _alert([Competitor(canonical_name="Acme")])
    alert.email = "ops@example.com\nBcc: x@example.com"
    gateway.create_alert(alert)
    processor = AlertProcessor(
        gateway,
        _FakeSearchClient([_acme_hit()]),
        AppConfig(smtp_user="bot@example.com", smtp_pass="secret"),
        clock=_Clock(NOW),
        sleep=lambda seconds: None,
    )

    run = processor.trigger_alert("a1")

    assert run.status == "completed"
    assert run.error_message == ""
