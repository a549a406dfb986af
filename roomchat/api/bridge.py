"""
Event Bridge - the command API a front end drives.

Commands (all coroutines):
- init_p2p()                 -> peer id
- get_node_info()            -> NodeInfo
- send_message(message)      -> None
- join_room(room_name)       -> None
- connect_to_peer(addr)      -> None

Events are delivered through subscribe() / on(); see roomchat.api.events.
``invoke`` offers the same commands by name with dict arguments, the way a
UI shell would call them.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from pydantic import BaseModel, ValidationError

from roomchat.api.events import EventCallback, EventDispatcher, EventSubscription
from roomchat.api.schema import (
    ConnectToPeerArgs,
    JoinRoomArgs,
    NoArgs,
    NodeInfo,
    SendMessageArgs,
)
from roomchat.core.config import NodeConfig
from roomchat.core.errors import InvalidArgumentsError, UnknownCommandError
from roomchat.network.node import P2PNode
from roomchat.utils.logger import get_logger, short_id


logger = get_logger("bridge")

CommandHandler = Callable[[Any], Awaitable[Any]]


class EventBridge:
    """
    Front-end facade over a P2PNode.

    Usage:
        bridge = EventBridge(config=NodeConfig(listen_addrs=["/ip4/127.0.0.1/tcp/0"]))
        await bridge.init_p2p()
        await bridge.join_room("lobby")
        async with bridge.subscribe("chat-message") as events:
            await bridge.send_message("hello")
            event = await events.get()
    """

    def __init__(self, node: Optional[P2PNode] = None, config: Optional[NodeConfig] = None):
        self.node = node or P2PNode(config)
        self.config = self.node.config
        self.dispatcher = EventDispatcher(self.node.events)
        self._commands: Dict[str, Tuple[Type[BaseModel], CommandHandler]] = {
            "init_p2p": (NoArgs, lambda args: self.init_p2p()),
            "get_node_info": (NoArgs, lambda args: self.get_node_info()),
            "send_message": (SendMessageArgs, lambda args: self.send_message(args.message)),
            "join_room": (JoinRoomArgs, lambda args: self.join_room(args.room_name)),
            "connect_to_peer": (ConnectToPeerArgs, lambda args: self.connect_to_peer(args.addr)),
        }

    @property
    def peer_id(self) -> str:
        return self.node.peer_id

    @property
    def commands(self) -> Tuple[str, ...]:
        return tuple(self._commands)

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def init_p2p(self) -> str:
        """
        Start the node. Calling it again returns the same peer id.

        Raises:
            TransportBindError: no listen address could be bound
        """
        peer_id = await self.node.start()
        self.dispatcher.start()
        return peer_id

    async def get_node_info(self) -> NodeInfo:
        """Peer id, dialable addresses and connected peers; lists are empty before init_p2p."""
        return NodeInfo(
            peer_id=self.node.peer_id,
            addresses=self.node.addresses(),
            connected_peers=sorted(self.node.connected_peers()),
        )

    async def send_message(self, message: str) -> None:
        """
        Publish ``message`` to the joined room.

        Raises:
            NotJoinedError: no room joined
            EmptyMessageError: empty or whitespace-only message
            MessageTooLongError: message over the configured limit
        """
        self.dispatcher.start()
        self.node.publish(message)

    async def join_room(self, room_name: str) -> None:
        """
        Join ``room_name``, leaving the current room.

        Raises:
            InvalidRoomNameError: empty or whitespace-only name
        """
        self.node.join_room(room_name)

    async def connect_to_peer(self, addr: str) -> None:
        """
        Dial ``addr`` once.

        Raises:
            InvalidAddressError: malformed address
            NodeNotInitializedError: init_p2p has not run
            AlreadyDialingError: a dial to ``addr`` is in flight
            DialTimeoutError / UnreachablePeerError: the dial failed
        """
        peer_id = await self.node.connect(addr)
        logger.info(f"Connected to peer {short_id(peer_id)}")

    async def invoke(self, command: str, args: Optional[Dict[str, Any]] = None) -> Any:
        """
        Run a command by name.

        Model results are returned as plain dicts.

        Raises:
            UnknownCommandError: ``command`` is not part of the API
            InvalidArgumentsError: ``args`` do not match the command
        """
        entry = self._commands.get(command)
        if entry is None:
            raise UnknownCommandError(f"Unknown command: {command}")

        model, handler = entry
        try:
            parsed = model.model_validate(args or {})
        except ValidationError as e:
            raise InvalidArgumentsError(f"Bad arguments for {command}: {e}") from e

        result = await handler(parsed)
        if isinstance(result, BaseModel):
            return result.model_dump()
        return result

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def subscribe(self, *names: str) -> EventSubscription:
        """Open an event subscription (default: every event)."""
        sub = self.dispatcher.subscribe(*names)
        self._start_dispatcher()
        return sub

    def on(self, name: str, callback: EventCallback) -> None:
        """Register a sync or async callback for ``name`` events."""
        self.dispatcher.on(name, callback)
        self._start_dispatcher()

    def off(self, name: str, callback: EventCallback) -> bool:
        return self.dispatcher.off(name, callback)

    def _start_dispatcher(self) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return  # started by init_p2p once a loop runs
        self.dispatcher.start()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop the node, then the dispatcher."""
        await self.node.stop()
        await self.dispatcher.stop()

    async def __aenter__(self) -> "EventBridge":
        await self.init_p2p()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
