"""
Tests for the publish/subscribe channel.
"""

from opcore.async_infrastructure.events import EventChannel


class TestEventChannel:
    """Test delivery and unsubscribe tokens."""

    def test_subscribers_called_in_subscription_order(self):
        """Every subscriber sees every event, in subscription order."""
        channel = EventChannel[int]("numbers")
        seen = []
        channel.subscribe(lambda e: seen.append(("a", e)))
        channel.subscribe(lambda e: seen.append(("b", e)))

        channel.publish(1)
        channel.publish(2)

        assert seen == [("a", 1), ("b", 1), ("a", 2), ("b", 2)]

    def test_unsubscribe_is_idempotent(self):
        """Unsubscribing twice is a no-op and stops delivery."""
        channel = EventChannel[str]()
        seen = []
        subscription = channel.subscribe(seen.append)
        assert subscription.active

        subscription.unsubscribe()
        subscription()
        channel.publish("ignored")

        assert seen == []
        assert not subscription.active
        assert len(channel) == 0

    def test_unsubscribe_only_removes_own_callback(self):
        """Two subscriptions of the same callable are independent."""
        channel = EventChannel[str]()
        seen = []
        first = channel.subscribe(seen.append)
        channel.subscribe(seen.append)

        first.unsubscribe()
        channel.publish("x")

        assert seen == ["x"]

    def test_failing_subscriber_does_not_block_others(self):
        """A raising subscriber is logged and delivery continues."""
        channel = EventChannel[int]()
        seen = []

        def broken(_):
            raise RuntimeError("subscriber bug")

        channel.subscribe(broken)
        channel.subscribe(seen.append)

        channel.publish(7)

        assert seen == [7]

    def test_subscriber_may_unsubscribe_during_publish(self):
        """Delivery iterates over a snapshot of the subscribers."""
        channel = EventChannel[int]()
        seen = []
        holder = {}

        def once(event):
            seen.append(event)
            holder["sub"].unsubscribe()

        holder["sub"] = channel.subscribe(once)
        channel.publish(1)
        channel.publish(2)

        assert seen == [1]

    def test_clear_drops_all_subscribers(self):
        channel = EventChannel[int]()
        subscription = channel.subscribe(lambda e: None)

        channel.clear()

        assert len(channel) == 0
        assert not subscription.active
