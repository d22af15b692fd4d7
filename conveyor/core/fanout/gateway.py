# conveyor/core/fanout/gateway.py
"""
Relay of status events to connected observers.

Observers are transport objects (e.g. an accepted WebSocket wrapped to this
protocol). Events are relayed verbatim, fire-and-forget: no buffering, no
retries, no replay for late joiners.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Iterable, Optional, Protocol

from conveyor.core.brokers.events import EventBus, EventSubscription
from conveyor.core.brokers.result_types import BrokerResult
from conveyor.core.defaults import NORMAL_CLOSURE, POLICY_VIOLATION
from conveyor.core.logging import get_logger
from conveyor.core.types.result import Ok, is_err

logger = get_logger('fanout')


class Observer(Protocol):
    @property
    def is_open(self) -> bool: ...

    async def send_text(self, data: str) -> None: ...

    async def close(self, code: int = NORMAL_CLOSURE, reason: str = '') -> None: ...


def normalize_origin(origin: Optional[str]) -> str:
    return (origin or '').strip().rstrip('/')


class StatusGateway:
    def __init__(
        self,
        allowed_origins: Iterable[str],
        *,
        events: Optional[EventBus] = None,
        send_timeout_s: float = 1.0,
    ) -> None:
        self.allowed_origins = frozenset(normalize_origin(o) for o in allowed_origins)
        self.events = events
        self.send_timeout_s = send_timeout_s
        self._observers: set[Observer] = set()
        self._subscription: Optional[EventSubscription] = None
        self._relay_task: Optional[asyncio.Task[Any]] = None

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def origin_allowed(self, origin: Optional[str]) -> bool:
        return normalize_origin(origin) in self.allowed_origins

    async def connect(self, observer: Observer, origin: Optional[str]) -> bool:
        """Register ``observer``; refuses (and closes) it when the origin is not allowed."""
        if not self.origin_allowed(origin):
            logger.warning(f'Refused status observer from origin {origin!r}')
            await observer.close(POLICY_VIOLATION, 'Origin not allowed')
            return False
        self._observers.add(observer)
        logger.debug(f'Observer connected from {origin}; {len(self._observers)} connected')
        return True

    def disconnect(self, observer: Observer) -> None:
        self._observers.discard(observer)

    async def _send(self, observer: Observer, payload: str) -> bool:
        try:
            await asyncio.wait_for(observer.send_text(payload), timeout=self.send_timeout_s)
            return True
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            logger.debug('Skipped slow observer')
            return False
        except Exception as exc:
            # Broken transport; treat like a closed observer
            logger.debug(f'Dropping observer after send error: {exc}')
            self._observers.discard(observer)
            return False

    async def broadcast(self, payload: str) -> int:
        """Send ``payload`` to every open observer; returns how many received it."""
        targets = []
        for observer in list(self._observers):
            if observer.is_open:
                targets.append(observer)
            else:
                self._observers.discard(observer)
        if not targets:
            return 0
        results = await asyncio.gather(*(self._send(o, payload) for o in targets))
        return sum(1 for ok in results if ok)

    async def start(self) -> BrokerResult[None]:
        """Subscribe to the event bus and relay every event until ``stop()``."""
        if self._relay_task is not None or self.events is None:
            return Ok(None)
        sub = await self.events.subscribe()
        if is_err(sub):
            return sub
        self._subscription = sub.ok_value
        self._relay_task = asyncio.create_task(self._relay(sub.ok_value), name='status-relay')
        return Ok(None)

    async def _relay(self, subscription: EventSubscription) -> None:
        while True:
            payload = await subscription.next_payload()
            await self.broadcast(payload)

    async def stop(self) -> None:
        if self._relay_task is not None:
            self._relay_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._relay_task
            self._relay_task = None
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

    async def close_all(self, code: int = NORMAL_CLOSURE) -> None:
        observers = list(self._observers)
        self._observers.clear()
        for observer in observers:
            if not observer.is_open:
                continue
            try:
                await observer.close(code, 'Server shutting down')
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.debug(f'Ignoring error while closing observer: {exc}')
        if observers:
            logger.info(f'Closed {len(observers)} status observer(s)')
