"""Tests for the SourceCreated event bus."""

import threading

from lore_knowledge.events import EventBus, SourceCreatedEvent


def make_event(source_id="src-1"):
    return SourceCreatedEvent(id=source_id, title="T", content_type="note", created_at="2025-01-01")


class TestEventBus:
    """Tests for EventBus delivery."""

    def test_publish_delivers_to_subscribers(self):
        bus = EventBus()
        received = []
        bus.subscribe(received.append)

        bus.publish(make_event("a"))
        bus.publish(make_event("b"))
        bus.flush()

        assert [e.id for e in received] == ["a", "b"]
        bus.close()

    def test_publish_without_subscribers_is_noop(self):
        bus = EventBus()
        bus.publish(make_event())
        bus.flush()
        bus.close()

    def test_failing_subscriber_does_not_stop_others(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken)
        bus.subscribe(received.append)
        bus.publish(make_event())
        bus.flush()

        assert len(received) == 1
        bus.close()

    def test_publish_does_not_wait_for_subscriber(self):
        """Test that a slow subscriber never blocks the publisher."""
        bus = EventBus()
        release = threading.Event()
        bus.subscribe(lambda event: release.wait(5))

        bus.publish(make_event())
        bus.publish(make_event("second"))

        release.set()
        bus.flush()
        bus.close()
