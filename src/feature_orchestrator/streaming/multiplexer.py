"""Share one upstream reader per session among any number of subscribers.

The first `subscribe` for a session opens the upstream; the last unsubscribe,
or the end of the upstream stream, closes it. Both paths converge on
`_release`, which runs at most once per opened upstream.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional, Protocol

from loguru import logger

from ..domain.models import OutputEvent
from ..sessions.registry import SessionRegistry


EventCallback = Callable[[OutputEvent], Any]
EndCallback = Callable[[], Any]
Unsubscribe = Callable[[], None]


class Upstream(Protocol):
    def __aiter__(self) -> AsyncIterator[OutputEvent]: ...

    def close(self) -> None: ...


class UpstreamSource(Protocol):
    def open(self, session_id: str) -> Upstream: ...


class _FeedUpstream:
    def __init__(self, registry: SessionRegistry, session_id: str) -> None:
        self._feed = registry.feed(session_id)
        self._queue = self._feed.open_tap() if self._feed is not None else None

    async def __aiter__(self) -> AsyncIterator[OutputEvent]:
        if self._queue is None:
            return
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    def close(self) -> None:
        if self._feed is not None and self._queue is not None:
            self._feed.close_tap(self._queue)


class RegistryUpstreamSource:
    """Reads live events from the session registry's output feeds."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry

    def open(self, session_id: str) -> Upstream:
        return _FeedUpstream(self._registry, session_id)


@dataclass
class _Subscriber:
    on_event: EventCallback
    on_end: Optional[EndCallback] = None


@dataclass
class _Channel:
    session_id: str
    upstream: Upstream
    subscribers: dict[int, _Subscriber] = field(default_factory=dict)
    pump: Optional[asyncio.Task[None]] = None
    released: bool = False


class StreamMultiplexer:
    def __init__(self, source: UpstreamSource) -> None:
        self._source = source
        self._channels: dict[str, _Channel] = {}
        self._tokens = itertools.count(1)

    def subscriber_count(self, session_id: str) -> int:
        channel = self._channels.get(session_id)
        return len(channel.subscribers) if channel else 0

    def active_sessions(self) -> list[str]:
        return list(self._channels)

    def subscribe(
        self,
        session_id: str,
        on_event: EventCallback,
        on_end: Optional[EndCallback] = None,
    ) -> Unsubscribe:
        """Register `on_event` for live events of `session_id`.

        Must be called from a running event loop. Callbacks may be plain
        functions or coroutine functions; `on_end` fires once if the session's
        stream ends while still subscribed.

        Returns:
            A function that removes this registration; calling it more than once is a no-op.
        """
        channel = self._channels.get(session_id)
        if channel is None:
            channel = _Channel(session_id=session_id, upstream=self._source.open(session_id))
            self._channels[session_id] = channel
            channel.pump = asyncio.get_running_loop().create_task(self._pump(channel))
            logger.debug("Opened upstream for session {}", session_id)
        token = next(self._tokens)
        channel.subscribers[token] = _Subscriber(on_event=on_event, on_end=on_end)

        def _unsubscribe() -> None:
            self._remove(channel, token)

        return _unsubscribe

    async def stream(self, session_id: str) -> AsyncIterator[OutputEvent]:
        """Yield live events for `session_id` until its stream ends."""
        queue: asyncio.Queue[Optional[OutputEvent]] = asyncio.Queue()
        unsubscribe = self.subscribe(session_id, queue.put_nowait, on_end=lambda: queue.put_nowait(None))
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            unsubscribe()

    async def close(self) -> None:
        """Release every open upstream."""
        channels = list(self._channels.values())
        for channel in channels:
            channel.subscribers.clear()
            self._release(channel)
        pumps = [c.pump for c in channels if c.pump is not None]
        if pumps:
            await asyncio.gather(*pumps, return_exceptions=True)

    def _remove(self, channel: _Channel, token: int) -> None:
        if channel.subscribers.pop(token, None) is None:
            return
        if not channel.subscribers:
            self._release(channel)

    def _release(self, channel: _Channel) -> None:
        if channel.released:
            return
        channel.released = True
        if self._channels.get(channel.session_id) is channel:
            del self._channels[channel.session_id]
        channel.upstream.close()
        logger.debug("Released upstream for session {}", channel.session_id)
        if channel.pump is not None and channel.pump is not asyncio.current_task():
            channel.pump.cancel()

    async def _pump(self, channel: _Channel) -> None:
        try:
            async for event in channel.upstream:
                for token, subscriber in list(channel.subscribers.items()):
                    if token not in channel.subscribers:
                        continue
                    try:
                        result = subscriber.on_event(event)
                        if inspect.isawaitable(result):
                            await result
                    except Exception as exc:
                        logger.warning(
                            "Dropping subscriber of session {} after callback error: {}", channel.session_id, exc
                        )
                        self._remove(channel, token)
                if channel.released:
                    return
        finally:
            if not channel.released:
                ending = list(channel.subscribers.values())
                channel.subscribers.clear()
                self._release(channel)
                for subscriber in ending:
                    if subscriber.on_end is None:
                        continue
                    try:
                        result = subscriber.on_end()
                        if inspect.isawaitable(result):
                            await result
                    except Exception as exc:
                        logger.warning("End callback for session {} failed: {}", channel.session_id, exc)
