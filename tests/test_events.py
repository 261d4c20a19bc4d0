import json

import pytest

from storyloop.events import LoopEvent, LoopEventBus, LoopEventKind


def test_terminal_kinds():
    terminal = {kind for kind in LoopEventKind if kind.is_terminal}
    assert terminal == {LoopEventKind.COMPLETED, LoopEventKind.CANCELLED, LoopEventKind.FAILED}


def test_event_serializes_to_json():
    event = LoopEvent(kind=LoopEventKind.STORY_FAILED, loop_id="loop_1", will_retry=True)
    payload = json.loads(event.to_json())
    assert payload["kind"] == "story_failed"
    assert payload["will_retry"] is True
    assert payload["quality_result"] is None
    assert payload["timestamp"]


@pytest.mark.asyncio
async def test_subscribers_filter_by_loop():
    bus = LoopEventBus()
    everything = bus.subscribe()
    only_one = bus.subscribe("loop_1")

    bus.publish(LoopEvent(kind=LoopEventKind.STARTED, loop_id="loop_1"))
    bus.publish(LoopEvent(kind=LoopEventKind.STARTED, loop_id="loop_2"))

    assert [event.loop_id for event in everything.drain()] == ["loop_1", "loop_2"]
    assert [event.loop_id for event in only_one.drain()] == ["loop_1"]


@pytest.mark.asyncio
async def test_full_queue_drops_instead_of_blocking():
    bus = LoopEventBus()
    subscription = bus.subscribe(maxsize=1)

    bus.publish(LoopEvent(kind=LoopEventKind.STARTED, loop_id="loop_1"))
    bus.publish(LoopEvent(kind=LoopEventKind.PAUSED, loop_id="loop_1"))

    assert subscription.dropped == 1
    assert [event.kind for event in subscription.drain()] == [LoopEventKind.STARTED]


@pytest.mark.asyncio
async def test_get_times_out_with_none():
    bus = LoopEventBus()
    with bus.subscribe() as subscription:
        assert await subscription.get(timeout=0.01) is None
        assert bus.subscriber_count == 1
    assert bus.subscriber_count == 0


@pytest.mark.asyncio
async def test_closed_subscription_stops_receiving():
    bus = LoopEventBus()
    subscription = bus.subscribe()
    subscription.close()
    subscription.close()
    bus.publish(LoopEvent(kind=LoopEventKind.STARTED, loop_id="loop_1"))
    assert subscription.drain() == []
