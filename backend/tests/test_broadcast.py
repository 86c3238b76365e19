import asyncio
import json
import threading

import pytest

from app.schemas.events import CallEndedEvent, FullStateEvent, live_call_event_adapter
from app.services.broadcast import KEEPALIVE_FRAME, LiveCallBroadcaster, format_sse


async def _next(subscription):
    return await asyncio.wait_for(subscription.get(), timeout=1)


@pytest.mark.asyncio
async def test_initial_snapshot_precedes_published_events():
    broadcaster = LiveCallBroadcaster()
    subscription = broadcaster.subscribe(initial=FullStateEvent(calls=[], completed_calls=[]))
    broadcaster.publish(CallEndedEvent(call_id="c1", ended_reason="customer-ended-call"))
    broadcaster.publish(CallEndedEvent(call_id="c2", ended_reason="customer-ended-call"))

    events = [await _next(subscription) for _ in range(3)]

    assert [event.type for event in events] == ["full-state", "call-ended", "call-ended"]
    assert [event.call_id for event in events[1:]] == ["c1", "c2"]


@pytest.mark.asyncio
async def test_unsubscribed_viewer_receives_nothing_further():
    broadcaster = LiveCallBroadcaster()
    subscription = broadcaster.subscribe()
    broadcaster.unsubscribe(subscription)
    broadcaster.publish(CallEndedEvent(call_id="c1", ended_reason="x"))

    assert broadcaster.subscriber_count == 0
    assert await _next(subscription) is None


@pytest.mark.asyncio
async def test_slow_viewer_is_dropped():
    broadcaster = LiveCallBroadcaster(queue_size=1)
    slow = broadcaster.subscribe(initial=FullStateEvent(calls=[], completed_calls=[]))

    broadcaster.publish(CallEndedEvent(call_id="c1", ended_reason="x"))

    assert broadcaster.subscriber_count == 0
    assert (await _next(slow)).type == "full-state"
    assert await _next(slow) is None


@pytest.mark.asyncio
async def test_publish_from_worker_thread():
    broadcaster = LiveCallBroadcaster()
    subscription = broadcaster.subscribe()

    worker = threading.Thread(
        target=broadcaster.publish,
        args=(CallEndedEvent(call_id="c9", ended_reason="x"),),
    )
    worker.start()
    worker.join()

    event = await _next(subscription)
    assert event.call_id == "c9"


@pytest.mark.asyncio
async def test_close_all_ends_every_stream():
    broadcaster = LiveCallBroadcaster()
    first = broadcaster.subscribe()
    second = broadcaster.subscribe()

    broadcaster.close_all()

    assert await _next(first) is None
    assert await _next(second) is None


def test_format_sse_round_trips_through_the_event_union():
    frame = format_sse(CallEndedEvent(call_id="c1", ended_reason="silence-timed-out"))

    assert frame.startswith("data: ") and frame.endswith("\n\n")
    payload = json.loads(frame[len("data: ") :])
    assert payload == {"type": "call-ended", "call_id": "c1", "ended_reason": "silence-timed-out"}
    assert live_call_event_adapter.validate_python(payload) == CallEndedEvent(
        call_id="c1", ended_reason="silence-timed-out"
    )
    assert KEEPALIVE_FRAME.startswith(":")
