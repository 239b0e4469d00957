"""Change notifications: per-entity fan-out to live subscribers.

``ChangeNotifier`` is the registry owned by the HTTP process (created in
the app lifespan). Producers never call it directly across processes; they
publish through a ``Broadcaster``:

- ``LocalBroadcaster`` delivers straight to an in-process notifier
  (single-process deployments and tests).
- ``PostgresBroadcaster`` issues ``pg_notify`` on a channel, and a
  ``PostgresListener`` thread in the HTTP process LISTENs on it and hands
  each notification to the notifier.

Events carry no state: subscribers re-fetch the entity on every ``updated``.
"""
import asyncio
from dataclasses import dataclass
import json
import logging
import re
import select
import threading
from typing import AsyncIterator, Dict, Optional, Protocol, Set

import psycopg2
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT
from sqlalchemy import func, select as sa_select
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session

from decision_memory.settings import settings

logger = logging.getLogger(__name__)

_CHANNEL_RE = re.compile(r"^[a-z_][a-z0-9_]*$")
_CLOSE = object()


@dataclass(frozen=True)
class ChangeEvent:
    """One item of a subscription stream."""
    kind: str  # connected | updated | heartbeat
    entity_id: str

    def to_sse(self) -> str:
        """Server-sent-events wire format; heartbeats are SSE comments."""
        if self.kind == "heartbeat":
            return ": heartbeat\n\n"
        return f"data: {json.dumps({'event': self.kind})}\n\n"


class _Subscriber:
    """One live subscription: a single-slot queue bound to its event loop.

    The single slot coalesces bursts of changes into one pending
    ``updated`` event.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=1)

    def offer(self) -> None:
        """Thread-safe; raises RuntimeError if the subscriber's loop is closed."""
        self.loop.call_soon_threadsafe(self._put, True)

    def close(self) -> None:
        self.loop.call_soon_threadsafe(self._put_close)

    def _put(self, item) -> None:
        if not self.queue.full():
            self.queue.put_nowait(item)

    def _put_close(self) -> None:
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(_CLOSE)


class ChangeNotifier:
    """Registry mapping entity id to the set of its live subscribers."""

    def __init__(self, heartbeat_interval: float = 15.0):
        self.heartbeat_interval = heartbeat_interval
        self._subscribers: Dict[str, Set[_Subscriber]] = {}
        self._lock = threading.Lock()
        self._closed = False

    def subscriber_count(self, entity_id: Optional[str] = None) -> int:
        """Live subscribers for one entity, or across all entities."""
        with self._lock:
            if entity_id is not None:
                return len(self._subscribers.get(str(entity_id), ()))
            return sum(len(s) for s in self._subscribers.values())

    def entity_count(self) -> int:
        """Entities with at least one live subscriber."""
        with self._lock:
            return len(self._subscribers)

    def _register(self, entity_id: str, subscriber: _Subscriber) -> None:
        with self._lock:
            self._subscribers.setdefault(entity_id, set()).add(subscriber)

    def _unregister(self, entity_id: str, subscriber: _Subscriber) -> None:
        with self._lock:
            subscribers = self._subscribers.get(entity_id)
            if subscribers is None:
                return
            subscribers.discard(subscriber)
            if not subscribers:
                del self._subscribers[entity_id]

    async def subscribe(
        self,
        entity_id,
        heartbeat: Optional[float] = None,
    ) -> AsyncIterator[ChangeEvent]:
        """
        Stream change events for one entity until the consumer stops iterating.

        Yields ``connected`` first, then ``updated`` after any change and
        ``heartbeat`` every ``heartbeat`` seconds, even while updates flow. The
        subscription is removed from the registry when the generator is
        closed or cancelled (client disconnect).
        """
        entity_id = str(entity_id)
        interval = heartbeat or self.heartbeat_interval
        loop = asyncio.get_running_loop()
        subscriber = _Subscriber(loop)
        self._register(entity_id, subscriber)
        try:
            yield ChangeEvent("connected", entity_id)
            next_beat = loop.time() + interval
            while not self._closed:
                # Heartbeats keep a fixed schedule whether or not updates arrive
                timeout = max(0.0, next_beat - loop.time())
                try:
                    item = await asyncio.wait_for(subscriber.queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    next_beat += interval
                    yield ChangeEvent("heartbeat", entity_id)
                    continue
                if item is _CLOSE:
                    break
                yield ChangeEvent("updated", entity_id)
        finally:
            self._unregister(entity_id, subscriber)

    def deliver(self, entity_id) -> int:
        """
        Fan an ``updated`` event out to every subscriber of ``entity_id``.

        Safe to call from any thread. Subscribers whose loop has gone away
        are dropped; that never fails the caller.

        Returns:
            Number of subscribers notified
        """
        entity_id = str(entity_id)
        with self._lock:
            subscribers = list(self._subscribers.get(entity_id, ()))

        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber.offer()
                delivered += 1
            except RuntimeError:
                logger.debug(f"Dropping subscriber of {entity_id} with a closed event loop")
                self._unregister(entity_id, subscriber)
        return delivered

    def close(self) -> None:
        """End every open subscription and empty the registry (shutdown)."""
        self._closed = True
        with self._lock:
            subscribers = [s for group in self._subscribers.values() for s in group]
            self._subscribers.clear()
        for subscriber in subscribers:
            try:
                subscriber.close()
            except RuntimeError:
                pass  # loop already gone


class Broadcaster(Protocol):
    """Publishes an opaque "entity changed" signal after a committed change."""

    def publish(self, db: Session, entity_id) -> None:
        ...


class LocalBroadcaster:
    """Delivers to a notifier living in the same process."""

    def __init__(self, notifier: ChangeNotifier):
        self.notifier = notifier

    def publish(self, db: Session, entity_id) -> None:
        self.notifier.deliver(entity_id)


class PostgresBroadcaster:
    """Publishes through Postgres NOTIFY so other processes see the change."""

    def __init__(self, channel: str):
        if not _CHANNEL_RE.match(channel):
            raise ValueError(f"Invalid notification channel name: {channel!r}")
        self.channel = channel

    def publish(self, db: Session, entity_id) -> None:
        payload = json.dumps({"id": str(entity_id)})
        try:
            db.execute(sa_select(func.pg_notify(self.channel, payload)))
            db.commit()
        except Exception as e:
            # The change itself is committed; a lost signal only delays clients
            db.rollback()
            logger.warning(f"Could not publish change for {entity_id}: {e}", exc_info=True)


class PostgresListener:
    """Background thread bridging a Postgres LISTEN channel to a notifier."""

    def __init__(
        self,
        notifier: ChangeNotifier,
        database_url: str,
        channel: str,
        reconnect_delay: float = 5.0,
    ):
        if not _CHANNEL_RE.match(channel):
            raise ValueError(f"Invalid notification channel name: {channel!r}")
        self.notifier = notifier
        self.dsn = make_url(database_url).set(drivername="postgresql").render_as_string(hide_password=False)
        self.channel = channel
        self.reconnect_delay = reconnect_delay
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="pg-listener", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def handle_payload(self, payload: str) -> None:
        """Route one NOTIFY payload (``{"id": ...}``) to the notifier."""
        try:
            entity_id = json.loads(payload)["id"]
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Ignoring malformed notification payload: {payload!r}")
            return
        self.notifier.deliver(entity_id)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self._listen()
            except Exception as e:
                logger.warning(
                    f"Notification listener lost its connection, retrying in {self.reconnect_delay}s: {e}"
                )
                self._stop.wait(self.reconnect_delay)

    def _listen(self) -> None:
        conn = psycopg2.connect(self.dsn)
        try:
            conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
            with conn.cursor() as cursor:
                cursor.execute(f"LISTEN {self.channel}")
            logger.info(f"Listening for changes on channel {self.channel}")

            while not self._stop.is_set():
                if select.select([conn], [], [], 1.0) == ([], [], []):
                    continue
                conn.poll()
                while conn.notifies:
                    notification = conn.notifies.pop(0)
                    self.handle_payload(notification.payload)
        finally:
            conn.close()


def build_broadcaster(notifier: Optional[ChangeNotifier] = None) -> Broadcaster:
    """
    Broadcaster for the configured NOTIFY_BACKEND.

    Raises:
        ValueError: If the memory backend is selected without a notifier
    """
    if settings.NOTIFY_BACKEND == "postgres":
        return PostgresBroadcaster(settings.NOTIFY_CHANNEL)
    if notifier is None:
        raise ValueError("NOTIFY_BACKEND=memory needs an in-process ChangeNotifier")
    return LocalBroadcaster(notifier)
