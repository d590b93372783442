"""
Tests for the token-updated broadcast bus.
"""
from dope_auth.bus import SessionBus


def test_publish_reaches_every_subscriber():
    bus = SessionBus()
    calls = []
    bus.subscribe(lambda: calls.append("a"))
    bus.subscribe(lambda: calls.append("b"))

    bus.publish()

    assert calls == ["a", "b"]
    assert bus.published == 1


def test_close_detaches():
    bus = SessionBus()
    calls = []
    sub = bus.subscribe(lambda: calls.append(1))
    assert sub.active

    sub.close()
    bus.publish()

    assert calls == []
    assert not sub.active
    assert len(bus) == 0


def test_context_manager_detaches():
    bus = SessionBus()
    with bus.subscribe(lambda: None):
        assert len(bus) == 1
    assert len(bus) == 0


def test_failing_subscriber_does_not_stop_others():
    bus = SessionBus()
    calls = []

    def boom():
        raise RuntimeError("boom")

    bus.subscribe(boom)
    bus.subscribe(lambda: calls.append(1))
    bus.publish()

    assert calls == [1]


def test_unsubscribe_during_publish():
    bus = SessionBus()
    calls = []
    subs = []

    def first():
        calls.append("first")
        subs[1].close()

    subs.append(bus.subscribe(first))
    subs.append(bus.subscribe(lambda: calls.append("second")))

    bus.publish()
    bus.publish()

    # snapshot delivery: the second subscriber still hears the first publish
    assert calls == ["first", "second", "first"]
