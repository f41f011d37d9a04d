"""In-process event bus with typed channels, replay, and critical-event persistence hooks."""

from __future__ import annotations

import asyncio
import inspect
import threading
from collections import deque
from collections.abc import AsyncIterator, Callable, Coroutine, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final, cast

from phase_orchestrator.domain.events import EventType, PipelineEvent
from phase_orchestrator.domain.ids import generate_event_id
from phase_orchestrator.domain.models import Phase, as_json_object

Subscriber = Callable[[PipelineEvent], object]
PersistenceCallback = Callable[[PipelineEvent], object]

_DEFAULT_ERROR_BUFFER: Final[int] = 1024
_DEFAULT_CRITICAL_EVENT_TYPES: Final[frozenset[str]] = frozenset(
    {
        EventType.PHASE_COMPLETED.value,
        EventType.PHASE_FAILED.value,
        EventType.BUDGET_EXHAUSTED.value,
    }
)


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Dispatch/persistence failure captured without interrupting publishers."""

    stage: str
    event_id: str
    target: str
    error_type: str
    message: str


@dataclass(frozen=True, slots=True)
class _Subscription:
    token: int
    event_type: str | None
    callback: Subscriber


class _ChannelClosed:
    """Sentinel marking the end of a channel stream."""


_CLOSED: Final[_ChannelClosed] = _ChannelClosed()


class EventChannel:
    """Bounded, ordered stream of events for one consumer.

    Async publishers wait while the queue is full, so a slow consumer applies
    backpressure instead of losing events. Iteration ends after ``close()``.
    """

    def __init__(self, *, maxsize: int, event_type: str | None = None) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._queue: asyncio.Queue[PipelineEvent | _ChannelClosed] = asyncio.Queue(maxsize)
        self._event_type = event_type
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def matches(self, event: PipelineEvent) -> bool:
        return self._event_type is None or self._event_type == event.event_type.value

    async def put(self, event: PipelineEvent) -> None:
        if self._closed:
            raise RuntimeError("channel is closed")
        await self._queue.put(event)

    def put_nowait(self, event: PipelineEvent) -> None:
        if self._closed:
            raise RuntimeError("channel is closed")
        self._queue.put_nowait(event)

    async def get(self) -> PipelineEvent | None:
        """Return the next event, or ``None`` once the channel is closed and drained."""
        item = await self._queue.get()
        if isinstance(item, _ChannelClosed):
            return None
        return item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    def __aiter__(self) -> AsyncIterator[PipelineEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[PipelineEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event


class EventBus:
    """Resilient event bus with sync+async subscribers, channels, and ordered replay."""

    def __init__(
        self,
        *,
        buffer_size: int | None = None,
        persistence_callback: PersistenceCallback | None = None,
        critical_event_types: Sequence[str | EventType] | None = None,
        correlation_id: str | None = None,
    ) -> None:
        if buffer_size is not None:
            if isinstance(buffer_size, bool) or not isinstance(buffer_size, int):
                raise ValueError(
                    f"buffer_size must be an integer, got {type(buffer_size).__name__}"
                )
            if buffer_size <= 0:
                raise ValueError("buffer_size must be > 0")
        if persistence_callback is not None and not callable(persistence_callback):
            raise ValueError("persistence callback must be callable")

        self._buffer = deque[PipelineEvent](maxlen=buffer_size)
        self._subscriptions: dict[int, _Subscription] = {}
        self._channels: list[EventChannel] = []
        self._pending_async_tasks: set[asyncio.Task[None]] = set()
        self._dispatch_errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._next_token = 1
        self._lock = threading.RLock()
        self._persist_event = persistence_callback
        self._critical_event_types = _normalize_critical_event_types(critical_event_types)
        self._correlation_id = correlation_id

    @property
    def correlation_id(self) -> str | None:
        return self._correlation_id

    def set_persistence_callback(self, callback: PersistenceCallback | None) -> None:
        """Replace persistence callback used for critical events."""

        if callback is not None and not callable(callback):
            raise ValueError("persistence callback must be callable")
        with self._lock:
            self._persist_event = callback

    def subscribe(self, event_type: str | EventType | None, callback: Subscriber) -> int:
        """Subscribe callback to an event type or all events when ``event_type`` is ``None``."""

        if not callable(callback):
            raise ValueError("callback must be callable")

        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscriptions[token] = _Subscription(
                token=token,
                event_type=_normalize_event_type_filter(event_type),
                callback=callback,
            )
        return token

    def unsubscribe(self, token: int) -> bool:
        """Unsubscribe callback token. Returns ``True`` when token existed."""

        with self._lock:
            return self._subscriptions.pop(token, None) is not None

    def open_channel(
        self,
        *,
        maxsize: int,
        event_type: str | EventType | None = None,
    ) -> EventChannel:
        """Open a bounded channel receiving every later event (optionally filtered)."""

        channel = EventChannel(maxsize=maxsize, event_type=_normalize_event_type_filter(event_type))
        with self._lock:
            self._channels.append(channel)
        return channel

    async def close_channels(self) -> None:
        with self._lock:
            channels = tuple(self._channels)
            self._channels.clear()
        for channel in channels:
            await channel.close()

    def publish(self, event: PipelineEvent) -> tuple[DispatchError, ...]:
        """Publish an event from synchronous code."""

        _ensure_event(event)
        subscriptions, channels, persistence = self._record(event)
        running_loop = _current_running_loop()
        errors: list[DispatchError] = []

        if persistence is not None and event.event_type.value in self._critical_event_types:
            error = self._invoke_callback(persistence, event, "persistence", running_loop)
            if error is not None:
                errors.append(error)

        for subscription in subscriptions:
            if not _subscription_matches(subscription, event):
                continue
            error = self._invoke_callback(subscription.callback, event, "subscriber", running_loop)
            if error is not None:
                errors.append(error)

        for channel in channels:
            if not channel.matches(event) or channel.closed:
                continue
            try:
                channel.put_nowait(event)
            except asyncio.QueueFull as exc:
                errors.append(_dispatch_error("channel", event, "EventChannel", exc))

        self._remember_errors(errors)
        return tuple(errors)

    async def publish_async(self, event: PipelineEvent) -> tuple[DispatchError, ...]:
        """Publish an event from async code, awaiting subscribers and channel capacity."""

        _ensure_event(event)
        subscriptions, channels, persistence = self._record(event)
        errors: list[DispatchError] = []

        if persistence is not None and event.event_type.value in self._critical_event_types:
            error = await self._invoke_callback_async(persistence, event, "persistence")
            if error is not None:
                errors.append(error)

        for subscription in subscriptions:
            if not _subscription_matches(subscription, event):
                continue
            error = await self._invoke_callback_async(subscription.callback, event, "subscriber")
            if error is not None:
                errors.append(error)

        for channel in channels:
            if channel.matches(event) and not channel.closed:
                await channel.put(event)

        self._remember_errors(errors)
        return tuple(errors)

    def emit(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object],
        *,
        phase: Phase | None = None,
        step: int | None = None,
    ) -> tuple[PipelineEvent, tuple[DispatchError, ...]]:
        """Create and publish an event from sync code."""

        event = self._build_event(event_type, payload, phase=phase, step=step)
        return event, self.publish(event)

    async def emit_async(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object],
        *,
        phase: Phase | None = None,
        step: int | None = None,
    ) -> tuple[PipelineEvent, tuple[DispatchError, ...]]:
        """Create and publish an event from async code."""

        event = self._build_event(event_type, payload, phase=phase, step=step)
        return event, await self.publish_async(event)

    async def drain_async(self) -> tuple[DispatchError, ...]:
        """Await async subscriber tasks scheduled by synchronous ``publish``."""

        with self._lock:
            pending = tuple(self._pending_async_tasks)
            self._pending_async_tasks.clear()

        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        with self._lock:
            return tuple(self._dispatch_errors)

    def replay(
        self,
        *,
        since: datetime | None = None,
        event_type: str | EventType | None = None,
        phase: Phase | None = None,
        limit: int | None = None,
    ) -> tuple[PipelineEvent, ...]:
        """Replay buffered events in publish order."""

        type_filter = _normalize_event_type_filter(event_type)
        if since is not None and (since.tzinfo is None or since.utcoffset() is None):
            raise ValueError("since datetime must be timezone-aware")

        with self._lock:
            events = tuple(self._buffer)

        filtered = [
            event
            for event in events
            if not (
                (since is not None and event.timestamp <= since)
                or (type_filter is not None and event.event_type.value != type_filter)
                or (phase is not None and event.phase is not phase)
            )
        ]

        if limit is not None:
            if limit <= 0:
                return ()
            filtered = filtered[-limit:]
        return tuple(filtered)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        """Return recorded subscriber/persistence/channel failures."""

        with self._lock:
            return tuple(self._dispatch_errors)

    def _record(
        self, event: PipelineEvent
    ) -> tuple[tuple[_Subscription, ...], tuple[EventChannel, ...], PersistenceCallback | None]:
        with self._lock:
            self._buffer.append(event)
            return tuple(self._subscriptions.values()), tuple(self._channels), self._persist_event

    def _remember_errors(self, errors: list[DispatchError]) -> None:
        if errors:
            with self._lock:
                self._dispatch_errors.extend(errors)

    def _build_event(
        self,
        event_type: str | EventType,
        payload: Mapping[str, object],
        *,
        phase: Phase | None,
        step: int | None,
    ) -> PipelineEvent:
        return PipelineEvent(
            event_id=generate_event_id(),
            event_type=EventType(event_type),
            timestamp=datetime.now(tz=UTC),
            phase=phase,
            step=step,
            correlation_id=self._correlation_id,
            payload=as_json_object(payload, "payload"),
        )

    def _invoke_callback(
        self,
        callback: Callable[[PipelineEvent], object],
        event: PipelineEvent,
        stage: str,
        running_loop: asyncio.AbstractEventLoop | None,
    ) -> DispatchError | None:
        target = _callback_name(callback)
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                coroutine = _as_coroutine(result)
                if running_loop is None:
                    asyncio.run(coroutine)
                    return None
                task = running_loop.create_task(coroutine)
                with self._lock:
                    self._pending_async_tasks.add(task)
                task.add_done_callback(
                    lambda done: self._on_async_callback_done(done, stage, target, event)
                )
            return None
        except Exception as exc:  # noqa: BLE001
            return _dispatch_error(stage, event, target, exc)

    async def _invoke_callback_async(
        self,
        callback: Callable[[PipelineEvent], object],
        event: PipelineEvent,
        stage: str,
    ) -> DispatchError | None:
        try:
            result = callback(event)
            if inspect.isawaitable(result):
                await result
            return None
        except Exception as exc:  # noqa: BLE001
            return _dispatch_error(stage, event, _callback_name(callback), exc)

    def _on_async_callback_done(
        self,
        task: asyncio.Task[None],
        stage: str,
        target: str,
        event: PipelineEvent,
    ) -> None:
        with self._lock:
            self._pending_async_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, Exception):
            with self._lock:
                self._dispatch_errors.append(_dispatch_error(stage, event, target, exc))


def _normalize_critical_event_types(
    critical_event_types: Sequence[str | EventType] | None,
) -> frozenset[str]:
    if critical_event_types is None:
        return _DEFAULT_CRITICAL_EVENT_TYPES
    return frozenset(EventType(item).value for item in critical_event_types)


def _ensure_event(event: object) -> None:
    if not isinstance(event, PipelineEvent):
        raise ValueError(f"event must be PipelineEvent, got {type(event).__name__}")


def _normalize_event_type_filter(value: str | EventType | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, EventType):
        return value.value
    if not isinstance(value, str) or not value.strip():
        raise ValueError("event type filter must be a non-empty string")
    return value.strip()


def _subscription_matches(subscription: _Subscription, event: PipelineEvent) -> bool:
    return subscription.event_type is None or subscription.event_type == event.event_type.value


def _callback_name(callback: object) -> str:
    name = getattr(callback, "__name__", None)
    if isinstance(name, str) and name:
        return name
    return callback.__class__.__name__


def _current_running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _as_coroutine(value: object) -> Coroutine[Any, Any, None]:
    if inspect.iscoroutine(value):
        return cast("Coroutine[Any, Any, None]", value)
    return _await_value(value)


async def _await_value(value: Any) -> None:
    await value


def _dispatch_error(stage: str, event: PipelineEvent, target: str, exc: Exception) -> DispatchError:
    return DispatchError(
        stage=stage,
        event_id=event.event_id,
        target=target,
        error_type=exc.__class__.__name__,
        message=str(exc),
    )


__all__ = [
    "DispatchError",
    "EventBus",
    "EventChannel",
    "PersistenceCallback",
    "Subscriber",
]
