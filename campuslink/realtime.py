"""
Row-change notifications.

Every committed insert/update/delete on a watched table is published as a
ChangeEvent. Subscribers register a table, the event types they care about
and an optional filter expression, and get their async callback invoked for
each matching event. With Redis configured the events travel over a pub/sub
channel so every app instance sees every change; otherwise they are
dispatched in-process.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from redis.exceptions import RedisError

from . import core

logger = logging.getLogger(__name__)

CHANNEL = 'campuslink:changes'

INSERT = 'INSERT'
UPDATE = 'UPDATE'
DELETE = 'DELETE'
ALL_EVENTS = (INSERT, UPDATE, DELETE)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Inverse of the isoformat applied by row_to_dict."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def row_to_dict(obj) -> Dict[str, Any]:
    """Column values of an ORM row, JSON-safe."""
    return {c.name: _jsonable(getattr(obj, c.name)) for c in obj.__table__.columns}


@dataclass
class ChangeEvent:
    table: str
    type: str
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None

    @property
    def row(self) -> Dict[str, Any]:
        if self.type == DELETE:
            return self.old or {}
        return self.new or {}

    def to_json(self) -> str:
        return json.dumps({'table': self.table, 'type': self.type, 'new': self.new, 'old': self.old})

    @classmethod
    def from_json(cls, raw) -> 'ChangeEvent':
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode('utf-8')
        data = json.loads(raw)
        return cls(table=data['table'], type=data['type'], new=data.get('new'), old=data.get('old'))


class Eq:
    def __init__(self, column: str, value: Any):
        self.column = column
        self.value = value

    def matches(self, row: Dict[str, Any]) -> bool:
        return row.get(self.column) == self.value

    def __repr__(self):
        return f'{self.column}=eq.{self.value}'


class And:
    def __init__(self, *clauses):
        self.clauses = clauses

    def matches(self, row: Dict[str, Any]) -> bool:
        return all(c.matches(row) for c in self.clauses)

    def __repr__(self):
        return f"and({','.join(map(repr, self.clauses))})"


class Or:
    def __init__(self, *clauses):
        self.clauses = clauses

    def matches(self, row: Dict[str, Any]) -> bool:
        return any(c.matches(row) for c in self.clauses)

    def __repr__(self):
        return f"or({','.join(map(repr, self.clauses))})"


Callback = Callable[[ChangeEvent], Awaitable[None]]


class Subscription:
    def __init__(self, hub: 'RealtimeHub', table: str, callback: Callback, events: Iterable[str], where=None):
        self._hub = hub
        self.table = table
        self.callback = callback
        self.events = frozenset(events)
        self.where = where
        self.active = True

    def matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table or event.type not in self.events:
            return False
        return self.where is None or self.where.matches(event.row)

    def unsubscribe(self):
        if self.active:
            self.active = False
            self._hub._remove(self)


class RealtimeHub:
    def __init__(self):
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self.listener_task: Optional[asyncio.Task] = None
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None

    def subscribe(self, table: str, callback: Callback, events: Iterable[str] = ALL_EVENTS, where=None) -> Subscription:
        sub = Subscription(self, table, callback, events, where)
        self._subscriptions.setdefault(table, []).append(sub)
        logger.debug(f'subscribed to {table} {sorted(sub.events)} where {where!r}')
        return sub

    def _remove(self, sub: Subscription):
        subs = self._subscriptions.get(sub.table, [])
        if sub in subs:
            subs.remove(sub)

    def subscriber_count(self, table: Optional[str] = None) -> int:
        if table is not None:
            return len(self._subscriptions.get(table, []))
        return sum(len(s) for s in self._subscriptions.values())

    async def publish(self, event: ChangeEvent):
        if core.REDIS and self.listener_task:
            try:
                await core.REDIS.publish(CHANNEL, event.to_json())
                return
            except (RedisError, OSError) as e:
                logger.warning(f'Redis publish failed, dispatching locally: {e}')
        self._enqueue(event)

    # local events are dispatched in publish order by one worker per loop
    def _enqueue(self, event: ChangeEvent):
        loop = asyncio.get_running_loop()
        if self._worker is None or self._worker.done() or self._worker.get_loop() is not loop:
            self._queue = asyncio.Queue()
            self._worker = loop.create_task(self._run_worker(self._queue))
        self._queue.put_nowait(event)

    async def _run_worker(self, queue: asyncio.Queue):
        while True:
            event = await queue.get()
            try:
                await self.dispatch(event)
            finally:
                queue.task_done()

    def _local_worker(self) -> Optional[asyncio.Task]:
        worker = self._worker
        if worker and not worker.done() and worker.get_loop() is asyncio.get_running_loop():
            return worker
        return None

    async def drain(self):
        """Wait until every locally published event, and any it triggers, has been dispatched."""
        if self._local_worker():
            await self._queue.join()

    async def stop_dispatcher(self):
        worker = self._local_worker()
        self._worker, self._queue = None, None
        if worker:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    async def dispatch(self, event: ChangeEvent):
        for sub in list(self._subscriptions.get(event.table, [])):
            if not sub.active or not sub.matches(event):
                continue
            try:
                await sub.callback(event)
            except Exception:
                logger.exception(f'change callback failed for {event.table} {event.type}')

    # Redis pub/sub listener to route changes between app instances
    async def start_listener(self):
        if not core.REDIS or self.listener_task:
            return
        pubsub = core.REDIS.pubsub()
        await pubsub.subscribe(CHANNEL)
        self.listener_task = asyncio.create_task(self._listen(pubsub))
        logger.info(f'Listening for changes on {CHANNEL}')

    async def _listen(self, pubsub):
        try:
            async for item in pubsub.listen():
                if not item or item.get('type') != 'message':
                    continue
                try:
                    event = ChangeEvent.from_json(item.get('data'))
                except (ValueError, KeyError) as e:
                    logger.error(f'Dropping malformed change event: {e}')
                    continue
                await self.dispatch(event)
        finally:
            await pubsub.aclose()

    async def stop_listener(self):
        if self.listener_task:
            self.listener_task.cancel()
            try:
                await self.listener_task
            except asyncio.CancelledError:
                pass
            self.listener_task = None


hub = RealtimeHub()
