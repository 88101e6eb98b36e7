from datetime import timedelta

import pytest

from pulse.core.clock import utcnow
from pulse.schemas.event import NewEvent
from pulse.services.event_store import EventStore
from pulse.worker import purge_once


@pytest.mark.asyncio
async def test_purge_once_drops_events_past_retention(session_factory):
    store = EventStore(session_factory)
    event = NewEvent(project_id="proj_1", url="https://example.com/", session_id="s")
    now = utcnow()
    await store.append(event, timestamp=now - timedelta(days=91))
    await store.append(event, timestamp=now - timedelta(days=89))
    await store.append(event)

    assert await purge_once(store, retention_days=90) == 1
    remaining = [e async for e in store.query("proj_1", now - timedelta(days=100), now + timedelta(minutes=1))]
    assert len(remaining) == 2
