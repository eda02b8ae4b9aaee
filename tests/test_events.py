"""Tests for event fan-out."""

import asyncio
import threading

from relay_supervisor.events import EventBroadcaster, SlotEvent


def snapshot_provider():
    return {"repeatToLocalNginx": {"runState": "stopped"}, "repeatToOptionalOutput": {"runState": "started"}}


def test_subscriber_receives_snapshot_first_and_no_replay():
    broadcaster = EventBroadcaster(snapshot_provider, queue_size=10)
    for run_state in ("starting", "started", "stopping"):
        broadcaster.publish(SlotEvent(type="state", slot="repeatToLocalNginx", data={"runState": run_state}))

    subscription = broadcaster.subscribe()
    first = subscription.get(timeout=0)

    assert first.type == "snapshot"
    assert first.to_dict()["slots"] == snapshot_provider()
    assert subscription.get(timeout=0) is None


def test_events_are_delivered_in_publish_order_to_every_subscriber():
    broadcaster = EventBroadcaster(snapshot_provider, queue_size=10)
    subscriptions = [broadcaster.subscribe() for _ in range(3)]
    for subscription in subscriptions:
        subscription.get(timeout=0)

    for frame in range(5):
        broadcaster.publish(SlotEvent(type="progress", slot="repeatToLocalNginx", data={"frame": frame}))

    for subscription in subscriptions:
        frames = [subscription.get(timeout=0).data["frame"] for _ in range(5)]
        assert frames == [0, 1, 2, 3, 4]


def test_slow_subscriber_drops_oldest_without_blocking_others():
    broadcaster = EventBroadcaster(snapshot_provider, queue_size=3)
    slow = broadcaster.subscribe()
    fast = broadcaster.subscribe()
    fast.get(timeout=0)

    for frame in range(10):
        broadcaster.publish(SlotEvent(type="progress", data={"frame": frame}))
        assert fast.get(timeout=0).data["frame"] == frame

    assert slow.pending() == 3
    assert [slow.get(timeout=0).data["frame"] for _ in range(3)] == [7, 8, 9]
    assert slow.dropped == 8


def test_closed_subscription_receives_nothing():
    broadcaster = EventBroadcaster(snapshot_provider)
    subscription = broadcaster.subscribe()
    assert broadcaster.subscriber_count == 1

    subscription.close()
    broadcaster.publish(SlotEvent(type="state"))

    assert broadcaster.subscriber_count == 0
    assert subscription.closed
    subscription.get(timeout=0)
    assert subscription.get(timeout=0) is None


def test_close_all_wakes_waiting_consumers():
    broadcaster = EventBroadcaster(snapshot_provider)
    subscription = broadcaster.subscribe()
    subscription.get(timeout=0)
    results = []

    consumer = threading.Thread(target=lambda: results.append(subscription.get(timeout=5)))
    consumer.start()
    broadcaster.close_all()
    consumer.join(timeout=5)

    assert not consumer.is_alive()
    assert results == [None]


def test_event_payload():
    event = SlotEvent(type="state", slot="repeatToOptionalOutput", data={"runState": "error"}, timestamp=1.0)

    assert event.to_dict() == {
        "type": "state",
        "timestamp": 1.0,
        "slot": "repeatToOptionalOutput",
        "runState": "error",
    }


def test_next_event_is_woken_by_publish_from_another_thread():
    broadcaster = EventBroadcaster(snapshot_provider)

    async def scenario():
        subscription = broadcaster.subscribe(loop=asyncio.get_running_loop())
        snapshot = await subscription.next_event(timeout=0)
        waiter = asyncio.create_task(subscription.next_event(timeout=5))
        await asyncio.sleep(0.01)
        publisher = threading.Thread(
            target=broadcaster.publish,
            args=(SlotEvent(type="state", slot="repeatToLocalNginx", data={"runState": "starting"}),),
        )
        publisher.start()
        event = await asyncio.wait_for(waiter, timeout=2)
        publisher.join()
        return snapshot, event

    snapshot, event = asyncio.run(scenario())

    assert snapshot.type == "snapshot"
    assert event.data == {"runState": "starting"}


def test_next_event_times_out_and_returns_none_when_closed():
    broadcaster = EventBroadcaster(snapshot_provider)

    async def scenario():
        subscription = broadcaster.subscribe(loop=asyncio.get_running_loop())
        await subscription.next_event(timeout=0)
        timed_out = await subscription.next_event(timeout=0.05)
        waiter = asyncio.create_task(subscription.next_event(timeout=5))
        await asyncio.sleep(0.01)
        threading.Thread(target=broadcaster.close_all).start()
        closed = await asyncio.wait_for(waiter, timeout=2)
        return timed_out, closed, subscription.closed

    assert asyncio.run(scenario()) == (None, None, True)
