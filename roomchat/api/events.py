"""
Event dispatch - fan node events out to front-end consumers.

A single dispatcher task drains the node's event channel and forwards
each event, in arrival order, to every open subscription and registered
callback. A failing callback is logged and skipped.

Event names:
- chat-message:      {from, content, timestamp, is_self}
- peers-changed:     {connected_peers}
- addresses-changed: {addresses}
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from roomchat.api.schema import AddressesChangedEvent, ChatMessageEvent, PeersChangedEvent
from roomchat.core.types import AddressesChanged, MessageDelivered, NodeEvent, PeersChanged
from roomchat.utils.logger import get_logger


logger = get_logger("events")


CHAT_MESSAGE = "chat-message"
PEERS_CHANGED = "peers-changed"
ADDRESSES_CHANGED = "addresses-changed"
EVENT_NAMES: FrozenSet[str] = frozenset({CHAT_MESSAGE, PEERS_CHANGED, ADDRESSES_CHANGED})

EventCallback = Callable[[Dict[str, Any]], Any]


@dataclass(frozen=True)
class BridgeEvent:
    """A named event with its JSON-ready payload."""
    name: str
    payload: Dict[str, Any]


def encode_event(event: NodeEvent) -> Optional[BridgeEvent]:
    """Translate a node event into its front-end form."""
    if isinstance(event, MessageDelivered):
        return BridgeEvent(CHAT_MESSAGE, ChatMessageEvent.from_message(event.message).to_payload())
    if isinstance(event, PeersChanged):
        return BridgeEvent(PEERS_CHANGED, PeersChangedEvent.from_event(event).to_payload())
    if isinstance(event, AddressesChanged):
        return BridgeEvent(ADDRESSES_CHANGED, AddressesChangedEvent.from_event(event).to_payload())
    return None


def _check_names(names: Iterable[str]) -> FrozenSet[str]:
    names = frozenset(names)
    unknown = names - EVENT_NAMES
    if unknown:
        raise ValueError(f"Unknown event name(s): {', '.join(sorted(unknown))}")
    return names


_CLOSED = object()


class EventSubscription:
    """
    Queue-backed stream of bridge events.

    Usage:
        async with bridge.subscribe(CHAT_MESSAGE) as events:
            async for event in events:
                print(event.payload["content"])
    """

    def __init__(self, dispatcher: "EventDispatcher", names: Optional[FrozenSet[str]] = None):
        self._dispatcher = dispatcher
        self._names = names
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def wants(self, name: str) -> bool:
        return self._names is None or name in self._names

    def offer(self, event: BridgeEvent) -> None:
        if not self._closed and self.wants(event.name):
            self._queue.put_nowait(event)

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self, timeout: Optional[float] = None) -> BridgeEvent:
        """
        Wait for the next event.

        Raises:
            asyncio.TimeoutError: nothing arrived within ``timeout``
            EOFError: the subscription was closed
        """
        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            raise EOFError("Subscription closed")
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._dispatcher.unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "EventSubscription":
        return self

    async def __anext__(self) -> BridgeEvent:
        try:
            return await self.get()
        except EOFError:
            raise StopAsyncIteration

    async def __aenter__(self) -> "EventSubscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventDispatcher:
    """Drains a node event channel into subscriptions and callbacks."""

    def __init__(self, source: "asyncio.Queue[NodeEvent]"):
        self.source = source
        self._subscriptions: List[EventSubscription] = []
        self._callbacks: Dict[str, List[EventCallback]] = {name: [] for name in EVENT_NAMES}
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the dispatcher task; needs a running event loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())
        logger.debug("Event dispatcher started")

    async def stop(self) -> None:
        """Stop dispatching and end every open subscription."""
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        for sub in list(self._subscriptions):
            sub.close()
        logger.debug("Event dispatcher stopped")

    def subscribe(self, *names: str) -> EventSubscription:
        """Open a subscription to ``names`` (default: every event)."""
        sub = EventSubscription(self, _check_names(names) if names else None)
        self._subscriptions.append(sub)
        return sub

    def unsubscribe(self, sub: EventSubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def on(self, name: str, callback: EventCallback) -> None:
        """Call ``callback(payload)`` for every ``name`` event; may be async."""
        _check_names([name])
        self._callbacks[name].append(callback)

    def off(self, name: str, callback: EventCallback) -> bool:
        callbacks = self._callbacks.get(name, [])
        if callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    async def _run(self) -> None:
        while True:
            event = await self.source.get()
            await self.dispatch(event)

    async def dispatch(self, event: NodeEvent) -> None:
        """Forward one node event to every consumer."""
        encoded = encode_event(event)
        if encoded is None:
            logger.debug(f"Dropping unknown event type: {type(event).__name__}")
            return

        for sub in list(self._subscriptions):
            sub.offer(encoded)

        for callback in list(self._callbacks[encoded.name]):
            try:
                result = callback(dict(encoded.payload))
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"{encoded.name} callback {callback!r} failed: {e!r}")
