from datetime import datetime, timedelta, timezone

import pytest

from competitor_alert.errors import InvalidRunTransitionError
from competitor_alert.models.schemas import Alert, Competitor
from competitor_alert.runs import RunTracker
from competitor_alert.storage.gateway import InMemoryGateway

START = datetime(2026, 5, 4, 8, 0, tzinfo=timezone.utc)


def _alert() -> Alert:
    return Alert(
        alert_id="a1",
        name="Acme watch",
        competitors=[Competitor(canonical_name="Acme")],
        platforms=["Reddit"],
    )


def _tracker(gateway: InMemoryGateway) -> RunTracker:
    times = iter([START, START + timedelta(seconds=5), START + timedelta(seconds=9)])
    return RunTracker(gateway, clock=lambda: next(times))


def test_start_persists_running_run() -> None:
    gateway = InMemoryGateway()
    tracker = _tracker(gateway)

    run = tracker.start(_alert())

    stored = gateway.list_alert_runs("a1")
    assert [item.run_id for item in stored] == [run.run_id]
    assert stored[0].status == "running"
    assert stored[0].start_time == START
    assert stored[0].end_time is None


def test_complete_writes_counters_and_end_time() -> None:
    gateway = InMemoryGateway()
    tracker = _tracker(gateway)
    tracker.start(_alert())

    tracker.record_call()
    tracker.record_call()
    tracker.record_presence()
    run = tracker.complete()

    assert run.status == "completed"
    assert run.api_calls_used == 2
    assert run.new_presences_found == 1
    assert run.end_time == START + timedelta(seconds=5)
    assert gateway.list_alert_runs("a1")[0] == run


def test_fail_records_message() -> None:
    gateway = InMemoryGateway()
    tracker = _tracker(gateway)
    tracker.start(_alert())

    run = tracker.fail("Monthly API quota exceeded for 2026-05")

    assert run.status == "failed"
    assert run.error_message == "Monthly API quota exceeded for 2026-05"


def test_finalized_run_is_immutable() -> None:
    gateway = InMemoryGateway()
    tracker = _tracker(gateway)
    tracker.start(_alert())
    tracker.complete()

    with pytest.raises(InvalidRunTransitionError):
        tracker.fail("late failure")
    with pytest.raises(InvalidRunTransitionError):
        tracker.record_call()
    assert gateway.list_alert_runs("a1")[0].status == "completed"


def test_transitions_require_start() -> None:
    tracker = _tracker(InMemoryGateway())

    with pytest.raises(InvalidRunTransitionError):
        tracker.complete()


def test_run_cannot_start_twice() -> None:
    tracker = _tracker(InMemoryGateway())
    tracker.start(_alert())

    with pytest.raises(InvalidRunTransitionError):
        tracker.start(_alert())


def test_gateway_refuses_to_patch_finalized_run() -> None:
    gateway = InMemoryGateway()
    tracker = _tracker(gateway)
    run = tracker.start(_alert())
    tracker.fail("Search provider unreachable")

    with pytest.raises(InvalidRunTransitionError):
        gateway.update_alert_run(run.run_id, status="completed", error_message="")

    stored = gateway.list_alert_runs("a1")[0]
    assert stored.status == "failed"
    assert stored.error_message == "Search provider unreachable"
