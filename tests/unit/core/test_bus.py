import asyncio

import pytest

from fleetsync.config.configs import BusConfig
from fleetsync.core.bus import Event, EventBus
from fleetsync.errors.errors import ComponentDestroyedError, SubscriberError
from fleetsync.types.topics import T_LOG
from fleetsync.types.types import LogEvent, Priority

# --- Delivery order ---


@pytest.mark.asyncio
async def test_delivery_in_priority_then_registration_order():
    bus = EventBus()
    calls: list[str] = []

    bus.subscribe("vehicles.updated", lambda e: calls.append("low"), priority=Priority.LOW)
    bus.subscribe("vehicles.updated", lambda e: calls.append("high-1"), priority=Priority.HIGH)
    bus.subscribe("vehicles.updated", lambda e: calls.append("normal"))
    bus.subscribe("vehicles.updated", lambda e: calls.append("high-2"), priority="high")
    bus.subscribe("vehicles.updated", lambda e: calls.append("critical"), priority=100)

    await bus.emit("vehicles.updated", [])

    assert calls == ["critical", "high-1", "high-2", "normal", "low"]


@pytest.mark.asyncio
async def test_each_matching_subscription_receives_event_exactly_once():
    bus = EventBus()
    received: dict[str, list[Event]] = {"exact": [], "wild": [], "all": []}

    bus.subscribe("positions.updated", received["exact"].append)
    bus.subscribe("positions.*", received["wild"].append)
    bus.subscribe("*", received["all"].append)

    event = await bus.emit("positions.updated", {"n": 1}, source="test")

    for name, events in received.items():
        assert events == [event], name
    assert event.source == "test"
    assert event.priority == Priority.NORMAL


@pytest.mark.asyncio
async def test_wildcard_patterns():
    bus = EventBus()
    seen: list[str] = []
    bus.subscribe("*.updated", lambda e: seen.append(e.topic))

    await bus.emit("vehicles.updated")
    await bus.emit("positions.updated")
    await bus.emit("connection.status")

    assert seen == ["vehicles.updated", "positions.updated"]
    assert bus.subscription_count("vehicles.updated") == 1
    assert bus.subscription_count("connection.status") == 0


@pytest.mark.asyncio
async def test_async_handlers_are_awaited():
    bus = EventBus()
    done: list[int] = []

    async def handler(event: Event) -> None:
        await asyncio.sleep(0.01)
        done.append(event.payload)

    bus.subscribe("t", handler)
    await bus.emit("t", 7)

    assert done == [7]


# --- Isolation ---


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_later_handlers():
    bus = EventBus()
    errors: list[SubscriberError] = []
    bus.on_error(errors.append)
    received: list[Event] = []

    def broken(event: Event) -> None:
        raise RuntimeError("boom")

    sub_a = bus.subscribe("t", broken)
    bus.subscribe("t", received.append)

    await bus.emit("t", "payload")

    assert len(received) == 1
    assert len(errors) == 1
    assert errors[0].subscription_id == sub_a
    assert errors[0].topic == "t"
    assert isinstance(errors[0].__cause__, RuntimeError)

    stats = bus.topic_stats("t")
    assert stats.errors == 1
    assert stats.delivered == 1


@pytest.mark.asyncio
async def test_failing_error_hook_is_contained():
    bus = EventBus()

    def bad_hook(err: SubscriberError) -> None:
        raise ValueError("hook broke")

    bus.on_error(bad_hook)
    bus.subscribe("t", lambda e: 1 / 0)
    received: list[Event] = []
    bus.subscribe("t", received.append)

    await bus.emit("t")

    assert len(received) == 1


# --- Subscription options ---


@pytest.mark.asyncio
async def test_once_subscription_removed_after_first_delivery():
    bus = EventBus()
    calls: list[int] = []
    bus.once("t", lambda e: calls.append(e.payload))

    await bus.emit("t", 1)
    await bus.emit("t", 2)

    assert calls == [1]
    assert bus.subscription_count() == 0


@pytest.mark.asyncio
async def test_max_triggers():
    bus = EventBus()
    calls: list[int] = []
    bus.subscribe("t", lambda e: calls.append(e.payload), max_triggers=2)

    for i in range(4):
        await bus.emit("t", i)

    assert calls == [0, 1]


@pytest.mark.asyncio
async def test_min_priority_skips_lower_events():
    bus = EventBus()
    calls: list[str] = []
    bus.subscribe("alerts.*", lambda e: calls.append(e.topic), min_priority=Priority.HIGH)

    await bus.emit("alerts.low", priority=Priority.NORMAL)
    await bus.emit("alerts.high", priority=Priority.HIGH)
    await bus.emit("alerts.critical", priority=Priority.CRITICAL)

    assert calls == ["alerts.high", "alerts.critical"]


@pytest.mark.asyncio
async def test_filter_predicate():
    bus = EventBus()
    calls: list[int] = []
    bus.subscribe("t", lambda e: calls.append(e.payload), filter=lambda e: e.payload % 2 == 0)

    for i in range(5):
        await bus.emit("t", i)

    assert calls == [0, 2, 4]


@pytest.mark.asyncio
async def test_throttle_skips_events_within_window():
    bus = EventBus()
    calls: list[int] = []
    bus.subscribe("t", lambda e: calls.append(e.payload), throttle_s=10.0)

    await bus.emit("t", 1)
    await bus.emit("t", 2)

    assert calls == [1]


def test_subscribe_validation():
    bus = EventBus()
    with pytest.raises(ValueError):
        bus.subscribe("", lambda e: None)
    with pytest.raises(ValueError):
        bus.subscribe("t", lambda e: None, max_triggers=0)
    with pytest.raises(ValueError):
        bus.subscribe("t", lambda e: None, priority="urgent")


def test_unsubscribe_is_idempotent():
    bus = EventBus()
    sub_id = bus.subscribe("t", lambda e: None)

    assert bus.unsubscribe(sub_id) is True
    assert bus.unsubscribe(sub_id) is False


def test_unsubscribe_all_by_pattern():
    bus = EventBus()
    bus.subscribe("a.*", lambda e: None)
    bus.subscribe("a.*", lambda e: None)
    bus.subscribe("b", lambda e: None)

    assert bus.unsubscribe_all("a.*") == 2
    assert bus.subscription_count() == 1
    assert bus.unsubscribe_all() == 1


# --- Re-entrancy ---


@pytest.mark.asyncio
async def test_nested_emit_is_delivered_after_current_event():
    bus = EventBus()
    order: list[str] = []

    async def first(event: Event) -> None:
        await bus.emit("b")
        order.append("first-done")

    bus.subscribe("a", first)
    bus.subscribe("a", lambda e: order.append("second"))
    bus.subscribe("b", lambda e: order.append("b"))

    await bus.emit("a")

    assert order == ["first-done", "second", "b"]


@pytest.mark.asyncio
async def test_cancelled_dispatcher_hands_remaining_deliveries_on():
    bus = EventBus()
    slow_second: list[Event] = []
    fast: list[Event] = []

    async def stalls(event: Event) -> None:
        await asyncio.sleep(1)

    bus.subscribe("slow", stalls, priority=Priority.HIGH)
    bus.subscribe("slow", slow_second.append)
    bus.subscribe("fast", fast.append)

    dispatcher = asyncio.create_task(bus.emit("slow"))
    await asyncio.sleep(0)
    # queued behind "slow"; returns without delivering
    await bus.emit("fast")
    assert fast == []

    dispatcher.cancel()
    with pytest.raises(asyncio.CancelledError):
        await dispatcher
    await asyncio.sleep(0.01)

    assert [e.topic for e in slow_second] == ["slow"]
    assert [e.topic for e in fast] == ["fast"]
    assert bus.get_stats().pending == 0


@pytest.mark.asyncio
async def test_cancelled_dispatcher_with_nothing_left_is_quiet():
    bus = EventBus()

    async def stalls(event: Event) -> None:
        await asyncio.sleep(1)

    bus.subscribe("slow", stalls)
    dispatcher = asyncio.create_task(bus.emit("slow"))
    await asyncio.sleep(0)
    dispatcher.cancel()
    with pytest.raises(asyncio.CancelledError):
        await dispatcher

    assert bus.get_stats().pending == 0
    assert bus.topic_stats("slow").delivered == 0
    await bus.emit("slow-next")


@pytest.mark.asyncio
async def test_recipients_fixed_at_emit_time():
    bus = EventBus()
    late: list[Event] = []

    def register_late(event: Event) -> None:
        bus.subscribe("t", late.append)

    bus.subscribe("t", register_late, max_triggers=1)

    await bus.emit("t", 1)
    assert late == []

    await bus.emit("t", 2)
    assert [e.payload for e in late] == [2]


@pytest.mark.asyncio
async def test_unsubscribed_during_delivery_is_skipped():
    bus = EventBus()
    calls: list[str] = []
    victim: dict[str, str] = {}

    def killer(event: Event) -> None:
        bus.unsubscribe(victim["id"])

    bus.subscribe("t", killer, priority=Priority.HIGH)
    victim["id"] = bus.subscribe("t", lambda e: calls.append("victim"))

    await bus.emit("t")

    assert calls == []


# --- Events, history and stats ---


@pytest.mark.asyncio
async def test_event_ids_unique_and_seq_increasing():
    bus = EventBus()
    events = [await bus.emit("t", i) for i in range(20)]

    assert len({e.id for e in events}) == 20
    seqs = [e.seq for e in events]
    assert seqs == sorted(seqs)
    assert len(set(seqs)) == 20


@pytest.mark.asyncio
async def test_history_is_bounded_per_topic():
    bus = EventBus(BusConfig(history_size=2))
    for i in range(3):
        await bus.emit("a", i)
    await bus.emit("b", "x")

    assert [e.payload for e in bus.get_history("a")] == [1, 2]
    assert [e.payload for e in bus.get_history()] == [1, 2, "x"]
    assert [e.payload for e in bus.get_history("*", limit=2)] == [2, "x"]
    assert bus.get_history("a", limit=0) == []


@pytest.mark.asyncio
async def test_history_evicts_oldest_topic_beyond_cap():
    bus = EventBus(BusConfig(history_size=5, max_history_topics=2))
    await bus.emit("t1")
    await bus.emit("t2")
    await bus.emit("t3")

    assert bus.get_history("t1") == []
    assert len(bus.get_history("t2")) == 1
    assert len(bus.get_history("t3")) == 1


@pytest.mark.asyncio
async def test_clear_history():
    bus = EventBus()
    await bus.emit("a")
    await bus.emit("b")

    bus.clear_history("a")
    assert [e.topic for e in bus.get_history()] == ["b"]
    bus.clear_history()
    assert bus.get_history() == []


@pytest.mark.asyncio
async def test_stats():
    bus = EventBus()
    bus.subscribe("t", lambda e: None)
    bus.subscribe("t", lambda e: None)
    await bus.emit("t")
    await bus.emit("t")
    await bus.emit("u")

    stats = bus.get_stats()
    assert stats.state == "RUNNING"
    assert stats.subscriptions == 2
    assert stats.topics == 2
    assert stats.total_emitted == 3
    assert stats.total_delivered == 4
    assert stats.total_errors == 0
    assert stats.pending == 0

    t = bus.topic_stats("t")
    assert t.emitted == 2
    assert t.history == 2
    assert t.last_emitted is not None


@pytest.mark.asyncio
async def test_emit_log_publishes_log_event():
    bus = EventBus()
    logs: list[Event] = []
    bus.subscribe(T_LOG, logs.append)

    await bus.emit_log("WARN", "channel lost", {"attempt": 1}, component="connection")

    assert len(logs) == 1
    payload = logs[0].payload
    assert isinstance(payload, LogEvent)
    assert payload.level == "WARN"
    assert payload.component == "connection"
    assert payload.payload == {"attempt": 1}
    assert logs[0].source == "connection"


@pytest.mark.asyncio
async def test_emit_rejects_empty_topic():
    bus = EventBus()
    with pytest.raises(ValueError):
        await bus.emit("")


# --- Lifecycle ---


@pytest.mark.asyncio
async def test_destroy_releases_subscribers_and_rejects_calls():
    bus = EventBus()
    bus.subscribe("t", lambda e: None)
    await bus.emit("t")

    bus.destroy()
    bus.destroy()  # idempotent

    assert bus.is_destroyed
    with pytest.raises(ComponentDestroyedError):
        await bus.emit("t")
    with pytest.raises(RuntimeError):
        bus.subscribe("t", lambda e: None)
    with pytest.raises(ComponentDestroyedError, match="subscription_count"):
        bus.subscription_count()
