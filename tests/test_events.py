import json

import pytest

from hostcore.events import Event, EventStore, EventType


@pytest.mark.asyncio
async def test_append_sets_sequence():
    store = EventStore()
    first = await store.append(Event(EventType.APP_STARTED, "shop", {"pid": 1}))
    second = await store.append(Event(EventType.APP_STOPPED, "shop"))

    assert (first.sequence, second.sequence) == (1, 2)
    assert store.count() == 2
    assert store.count(EventType.APP_STARTED) == 1
    assert [e.event_type for e in store.get_events(aggregate_id="shop")] == [
        EventType.APP_STARTED,
        EventType.APP_STOPPED,
    ]


@pytest.mark.asyncio
async def test_sync_and_async_subscribers():
    store = EventStore()
    seen = []

    async def on_exit(event):
        seen.append(("async", event.aggregate_id))

    store.subscribe(EventType.PROCESS_EXITED, lambda e: seen.append(("sync", e.aggregate_id)))
    store.subscribe(EventType.PROCESS_EXITED, on_exit)

    await store.append(Event(EventType.PROCESS_EXITED, "api"))
    await store.append(Event(EventType.APP_STARTED, "api"))

    assert seen == [("sync", "api"), ("async", "api")]


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others():
    store = EventStore()
    seen = []

    def broken(event):
        raise RuntimeError("boom")

    store.subscribe_all(broken)
    store.subscribe_all(lambda e: seen.append(e.event_type))

    await store.append(Event(EventType.APP_DELETED, "x"))
    assert seen == [EventType.APP_DELETED]


@pytest.mark.asyncio
async def test_unsubscribe():
    store = EventStore()
    seen = []
    unsubscribe = store.subscribe(EventType.APP_STARTED, seen.append)
    unsubscribe()
    unsubscribe()

    await store.append(Event(EventType.APP_STARTED, "x"))
    assert seen == []


@pytest.mark.asyncio
async def test_bounded_history_and_persistence(tmp_path):
    path = tmp_path / "events.jsonl"
    store = EventStore(persistence_path=path, max_events=2)
    for name in ("a", "b", "c"):
        await store.append(Event(EventType.APP_DEPLOYED, name))

    assert [e.aggregate_id for e in store.get_events()] == ["b", "c"]
    lines = path.read_text().splitlines()
    assert len(lines) == 3
    assert json.loads(lines[0])["event_type"] == "app.deployed"

    store.clear()
    assert store.count() == 0
