from backend.services.notifications import NotificationBroker


def test_new_subscriber_starts_with_resync():
    broker = NotificationBroker(buffer_size=4)
    sub = broker.subscribe()
    assert sub.get(timeout=0) == {"type": "resync", "missed": 0}
    assert sub.get(timeout=0) is None


def test_events_fan_out_to_every_subscriber():
    broker = NotificationBroker(buffer_size=4)
    first, second = broker.subscribe(), broker.subscribe()
    first.get(timeout=0)
    second.get(timeout=0)

    assert broker.publish({"uid": "A1"}) == 2
    assert first.get(timeout=0) == {"type": "attendance", "data": {"uid": "A1"}}
    assert second.get(timeout=0)["data"]["uid"] == "A1"


def test_overflow_replaces_buffer_with_resync():
    broker = NotificationBroker(buffer_size=2)
    sub = broker.subscribe()
    sub.get(timeout=0)

    assert broker.publish({"n": 1}) == 1
    assert broker.publish({"n": 2}) == 1
    assert broker.publish({"n": 3}) == 0

    assert sub.pending() == 1
    assert sub.get(timeout=0) == {"type": "resync", "missed": 3}
    assert sub.missed == 0

    broker.publish({"n": 4})
    assert sub.get(timeout=0)["data"] == {"n": 4}


def test_slow_subscriber_does_not_block_others():
    broker = NotificationBroker(buffer_size=1)
    slow = broker.subscribe()
    fast = broker.subscribe()
    fast.get(timeout=0)

    assert broker.publish({"n": 1}) == 1
    assert fast.get(timeout=0)["data"] == {"n": 1}
    assert slow.get(timeout=0)["type"] == "resync"


def test_close_unsubscribes():
    broker = NotificationBroker()
    with broker.subscribe() as sub:
        assert broker.subscriber_count() == 1
    assert broker.subscriber_count() == 0
    assert sub.closed
    assert broker.publish({"uid": "A1"}) == 0


def test_broker_close_ends_all_subscriptions():
    broker = NotificationBroker()
    sub = broker.subscribe()
    sub.get(timeout=0)
    broker.close()
    assert sub.closed
    assert sub.get(timeout=1) is None
