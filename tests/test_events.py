"""Tests for typed pub/sub channels."""

from social_field.events import Channel


class TestChannel:
    """Test subscribe, publish and unsubscribe."""

    def test_publish_in_order(self):
        """Test subscribers receive messages in subscription order."""
        channel = Channel("test")
        received = []
        channel.subscribe(lambda m: received.append(("first", m)))
        channel.subscribe(lambda m: received.append(("second", m)))

        assert channel.publish(1) == 2
        assert received == [("first", 1), ("second", 1)]

    def test_unsubscribe(self):
        """Test the returned function removes the subscription."""
        channel = Channel("test")
        received = []
        unsubscribe = channel.subscribe(received.append)

        unsubscribe()
        unsubscribe()
        assert channel.publish("x") == 0
        assert received == []
        assert channel.subscriber_count == 0

    def test_failing_subscriber_is_isolated(self):
        """Test one failing subscriber does not block the others."""
        channel = Channel("test")
        received = []

        def broken(message):
            raise RuntimeError("nope")

        channel.subscribe(broken)
        channel.subscribe(received.append)

        assert channel.publish("hello") == 1
        assert received == ["hello"]

    def test_unsubscribe_during_publish(self):
        """Test removing a subscriber from a callback is safe."""
        channel = Channel("test")
        received = []
        holder = {}

        def once(message):
            received.append(message)
            holder["unsubscribe"]()

        holder["unsubscribe"] = channel.subscribe(once)
        channel.publish(1)
        channel.publish(2)
        assert received == [1]
