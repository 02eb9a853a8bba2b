"""Real-time event fanout.

Clients open ``GET /api/events/<uid>`` (Server-Sent Events) and receive the
events published for that user, e.g. ``offerCompleted`` and ``notification``.

Delivery is best-effort and at-most-once per attempt: each live connection
owns a bounded queue and a full queue simply drops the event. The persisted
notification rows remain the source of truth, so nothing here may raise into
a ledger mutation.

With ``REDIS_URL`` configured, events go through a Redis pub/sub channel so
every worker process relays them to its own connections.
"""

import json
import queue
import threading
import time
from collections import defaultdict

import redis
from flask import Blueprint, Response, current_app

from ledger import get_user
from push_api import deliver_web_push


KEEPALIVE_SECONDS = 25
QUEUE_SIZE = 100
BACKPLANE_CHANNEL = "rewards:events"


class EventHub:
    """Process-wide registry of user id -> live connection queues."""

    def __init__(self, queue_size: int = QUEUE_SIZE):
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._channels = defaultdict(set)

    def subscribe(self, uid: str) -> queue.Queue:
        q = queue.Queue(maxsize=self._queue_size)
        with self._lock:
            self._channels[uid].add(q)
        return q

    def unsubscribe(self, uid: str, q: queue.Queue) -> None:
        with self._lock:
            subs = self._channels.get(uid)
            if subs is None:
                return
            subs.discard(q)
            if not subs:
                del self._channels[uid]

    def connection_count(self, uid: str) -> int:
        with self._lock:
            return len(self._channels.get(uid, ()))

    def publish(self, uid: str, event: str, data: dict) -> int:
        """Never blocks; returns how many connections accepted the event."""
        with self._lock:
            targets = list(self._channels.get(uid, ()))
        delivered = 0
        for q in targets:
            try:
                q.put_nowait((event, data))
                delivered += 1
            except queue.Full:
                pass
        return delivered


class RedisBackplane:
    def __init__(self, client, hub: EventHub, logger, channel: str = BACKPLANE_CHANNEL):
        self.client = client
        self.hub = hub
        self.logger = logger
        self.channel = channel

    def publish(self, uid: str, event: str, data: dict) -> None:
        self.client.publish(self.channel, json.dumps({"uid": uid, "event": event, "data": data}))

    def relay(self, raw) -> int:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            msg = json.loads(raw)
            return self.hub.publish(msg["uid"], msg["event"], msg.get("data") or {})
        except (TypeError, ValueError, KeyError):
            self.logger.warning("Dropping malformed backplane message: %r", raw)
            return 0

    def _listen_forever(self):
        while True:
            try:
                pubsub = self.client.pubsub(ignore_subscribe_messages=True)
                pubsub.subscribe(self.channel)
                for message in pubsub.listen():
                    if message.get("type") == "message":
                        self.relay(message.get("data"))
            except Exception:
                self.logger.warning("Event backplane disconnected; retrying in 5s", exc_info=True)
                time.sleep(5)

    def start(self) -> None:
        threading.Thread(target=self._listen_forever, name="event-backplane", daemon=True).start()


hub = EventHub()
_backplane = None


def configure_backplane(redis_url: str, logger) -> RedisBackplane:
    global _backplane
    _backplane = RedisBackplane(redis.from_url(redis_url), hub, logger)
    _backplane.start()
    return _backplane


def publish(uid: str, event: str, data: dict) -> None:
    try:
        if _backplane is not None:
            _backplane.publish(uid, event, data)
        else:
            hub.publish(uid, event, data)
    except Exception:
        current_app.logger.warning("Event %s for %s was not published", event, uid, exc_info=True)

    if event == "notification":
        try:
            deliver_web_push(uid, data)
        except Exception:
            current_app.logger.warning("Web push for %s was not queued", uid, exc_info=True)


def format_sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, separators=(',', ':'), default=str)}\n\n"


events_api = Blueprint("events_api", __name__)


@events_api.get("/api/events/<uid>")
def stream_events(uid: str):
    get_user(uid)

    def _stream():
        q = hub.subscribe(uid)
        try:
            yield ": connected\n\n"
            while True:
                try:
                    event, data = q.get(timeout=KEEPALIVE_SECONDS)
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(event, data)
        finally:
            hub.unsubscribe(uid, q)

    resp = Response(_stream(), mimetype="text/event-stream")
    resp.headers["Cache-Control"] = "no-cache"
    resp.headers["X-Accel-Buffering"] = "no"
    return resp
