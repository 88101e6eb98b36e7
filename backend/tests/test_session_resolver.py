"""Tests for sessionization and bounded session state."""

from datetime import datetime, timedelta, timezone

import pytest

from pulse.core.locks import ProjectLocks
from pulse.services.session_resolver import MAX_BUCKET_SLOTS, SessionResolver

T0 = datetime(2026, 5, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def resolver() -> SessionResolver:
    return SessionResolver(
        ProjectLocks(), granularities=["hourly", "daily"], timeout=timedelta(minutes=30)
    )


def test_first_event_opens_session(resolver, make_record):
    delta = resolver.update(make_record(timestamp=T0))
    assert delta.is_new_session
    assert (delta.pageview_count_before, delta.pageview_count_after) == (0, 1)
    assert delta.windows["hourly"].is_new_in_bucket
    assert delta.windows["daily"].bucket_start == datetime(2026, 5, 1, tzinfo=timezone.utc)


def test_second_event_retracts_bounce(resolver, make_record):
    resolver.update(make_record(timestamp=T0, url="https://example.com/"))
    delta = resolver.update(
        make_record(timestamp=T0 + timedelta(minutes=1), url="https://example.com/pricing")
    )
    assert not delta.is_new_session
    assert delta.bounce_retracted
    assert delta.windows["hourly"].bounce_retracted

    state = resolver.get("proj_1", "sess_1")
    assert state.pageviews == 2
    assert not state.bounced
    assert state.entry_url == "https://example.com/"
    assert state.exit_url == "https://example.com/pricing"
    assert state.duration == timedelta(minutes=1)


def test_third_event_does_not_retract_again(resolver, make_record):
    for minute in range(2):
        resolver.update(make_record(timestamp=T0 + timedelta(minutes=minute)))
    delta = resolver.update(make_record(timestamp=T0 + timedelta(minutes=2)))
    assert not delta.bounce_retracted


def test_new_bucket_counts_session_again(resolver, make_record):
    resolver.update(make_record(timestamp=T0 + timedelta(minutes=55)))
    delta = resolver.update(make_record(timestamp=T0 + timedelta(minutes=65)))
    hourly = delta.windows["hourly"]
    assert hourly.is_new_in_bucket
    assert (hourly.count_before, hourly.count_after) == (0, 1)
    assert not delta.windows["daily"].is_new_in_bucket


def test_inactivity_starts_new_session(resolver, make_record):
    resolver.update(make_record(timestamp=T0))
    delta = resolver.update(make_record(timestamp=T0 + timedelta(minutes=31)))
    assert delta.is_new_session
    assert delta.pageview_count_after == 1


def test_expired_sessions_are_evicted(resolver, make_record):
    resolver.update(make_record(session_id="old", timestamp=T0))
    resolver.update(make_record(session_id="new", timestamp=T0 + timedelta(hours=2)))
    assert resolver.get("proj_1", "old") is None
    assert resolver.size("proj_1") == 1


def test_event_older_than_tracked_slots_is_not_a_new_visitor(make_record):
    resolver = SessionResolver(ProjectLocks(), granularities=["hourly"], timeout=timedelta(hours=2))
    for hour in range(1, MAX_BUCKET_SLOTS + 1):
        resolver.update(make_record(timestamp=T0 + timedelta(hours=hour)))

    for _ in range(2):
        delta = resolver.update(make_record(timestamp=T0 + timedelta(minutes=5)))
        assert not delta.is_new_session
        assert not delta.windows["hourly"].is_new_in_bucket
        assert not delta.windows["hourly"].bounce_retracted

    slots = resolver.get("proj_1", "sess_1").buckets["hourly"]
    assert len(slots) == MAX_BUCKET_SLOTS
    assert min(slots) == T0 + timedelta(hours=1)


def test_capacity_evicts_least_recently_seen(make_record):
    resolver = SessionResolver(ProjectLocks(), granularities=["hourly"], max_sessions=2)
    resolver.update(make_record(session_id="a", timestamp=T0))
    resolver.update(make_record(session_id="b", timestamp=T0 + timedelta(seconds=1)))
    resolver.update(make_record(session_id="a", timestamp=T0 + timedelta(seconds=2)))
    resolver.update(make_record(session_id="c", timestamp=T0 + timedelta(seconds=3)))
    assert resolver.size("proj_1") == 2
    assert resolver.get("proj_1", "b") is None
    # Returning evicted session is treated as new
    delta = resolver.update(make_record(session_id="b", timestamp=T0 + timedelta(seconds=4)))
    assert delta.is_new_session


def test_projects_are_isolated(resolver, make_record):
    resolver.update(make_record(project_id="p1", timestamp=T0))
    delta = resolver.update(make_record(project_id="p2", timestamp=T0))
    assert delta.is_new_session


def test_active_sessions(resolver, make_record):
    resolver.update(make_record(session_id="a", timestamp=T0))
    resolver.update(make_record(session_id="b", timestamp=T0 + timedelta(minutes=10)))
    assert resolver.active_sessions("proj_1", T0 + timedelta(minutes=5)) == 1
    assert resolver.active_sessions("proj_1", T0) == 2
    assert resolver.active_sessions("other", T0) == 0
