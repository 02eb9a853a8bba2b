"""
Tests for real-time event fanout.

Tests cover:
1. Hub delivery, bounded queues and unsubscribe
2. Redis backplane relay (fake client)
3. SSE stream framing
4. Events emitted after a settlement commit
"""

import json
import logging

from clicks import create_click, process_postback
from fanout import EventHub, RedisBackplane, format_sse, hub


class FakeRedis:
    def __init__(self):
        self.published = []

    def publish(self, channel, message):
        self.published.append((channel, message))


class TestEventHub:
    """Tests for the in-process hub."""

    def test_publish_reaches_each_connection(self):
        h = EventHub()
        q1 = h.subscribe("u1")
        q2 = h.subscribe("u1")
        other = h.subscribe("u2")

        assert h.publish("u1", "notification", {"id": "n1"}) == 2
        assert q1.get_nowait() == ("notification", {"id": "n1"})
        assert q2.get_nowait() == ("notification", {"id": "n1"})
        assert other.empty()

    def test_full_queue_drops(self):
        h = EventHub(queue_size=1)
        h.subscribe("u1")
        assert h.publish("u1", "a", {}) == 1
        assert h.publish("u1", "b", {}) == 0

    def test_unsubscribe(self):
        h = EventHub()
        q = h.subscribe("u1")
        h.unsubscribe("u1", q)
        h.unsubscribe("u1", q)
        assert h.connection_count("u1") == 0
        assert h.publish("u1", "a", {}) == 0


class TestBackplane:
    """Tests for the Redis relay."""

    def test_publish_and_relay(self):
        h = EventHub()
        q = h.subscribe("u1")
        fake = FakeRedis()
        bp = RedisBackplane(fake, h, logging.getLogger("test"), channel="ch")

        bp.publish("u1", "offerCompleted", {"coins": 10})
        channel, raw = fake.published[0]

        assert channel == "ch"
        assert bp.relay(raw.encode("utf-8")) == 1
        assert q.get_nowait() == ("offerCompleted", {"coins": 10})

    def test_malformed_message(self):
        bp = RedisBackplane(FakeRedis(), EventHub(), logging.getLogger("test"))
        assert bp.relay("not json") == 0
        assert bp.relay(json.dumps({"event": "x"})) == 0


class TestStream:
    """Tests for GET /api/events/<uid>."""

    def test_format(self):
        assert format_sse("notification", {"a": 1}) == 'event: notification\ndata: {"a":1}\n\n'

    def test_stream_delivers_settlement_events(self, client, make_user, make_offer):
        make_user("alice")
        offer = make_offer(coins=100)
        click, _ = create_click("alice", offer.id, "a@upi")

        resp = client.get("/api/events/alice", buffered=False)
        body = iter(resp.response)
        try:
            assert resp.mimetype == "text/event-stream"
            assert next(body) == b": connected\n\n"
            assert hub.connection_count("alice") == 1

            process_postback(click.tracking_id, "installed")

            frame = next(body).decode("utf-8")
            assert frame.startswith("event: offerCompleted\n")
            payload = json.loads(frame.split("data: ", 1)[1])
            assert payload == {"clickId": click.tracking_id, "rewardCoins": 100, "coins": 100}
            assert next(body).decode("utf-8").startswith("event: notification\n")
        finally:
            resp.close()
        assert hub.connection_count("alice") == 0

    def test_unknown_user(self, client):
        assert client.get("/api/events/ghost").status_code == 404
