"""
Peer - a single authenticated connection to a remote node.

Runs the per-connection read loop and keepalive. Failures on one
connection close that connection only.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from roomchat.core.errors import ProtocolError
from roomchat.network.protocol import Frame, FrameType, create_ping, create_pong
from roomchat.network.secure import SecureStream
from roomchat.utils.logger import get_logger, short_id


logger = get_logger("peer")


class ConnectionState(Enum):
    """Lifecycle of a peer connection."""
    DIALING = "dialing"  # reported by ConnectionManager.state_of while a dial is in flight
    CONNECTED = "connected"
    CLOSING = "closing"
    CLOSED = "closed"


class Direction(Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


FrameHandler = Callable[[Frame, "PeerConnection"], Awaitable[None]]
CloseHandler = Callable[["PeerConnection"], None]


@dataclass
class PeerConnection:
    """
    Represents a live link to a single remote peer.

    Attributes:
        stream: authenticated frame stream
        direction: who opened the connection
        remote_addr: address we dialed, or the observed socket address
        state: Current connection state
    """
    stream: SecureStream
    direction: Direction
    remote_addr: str
    state: ConnectionState = ConnectionState.CONNECTED
    connected_at: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.monotonic)
    _frame_handler: Optional[FrameHandler] = None
    _on_close: Optional[CloseHandler] = None
    _receive_task: Optional[asyncio.Task] = None
    _keepalive_task: Optional[asyncio.Task] = None

    @property
    def peer_id(self) -> str:
        return self.stream.remote_peer_id

    @property
    def listen_addrs(self) -> List[str]:
        return list(self.stream.remote_listen_addrs)

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    async def send(self, frame: Frame) -> bool:
        """
        Send a frame to the peer.

        Returns:
            True if sent successfully
        """
        if not self.is_connected:
            return False

        try:
            await self.stream.send_frame(frame)
            return True
        except (OSError, ConnectionError, ProtocolError) as e:
            logger.warning(f"Send error to {short_id(self.peer_id)}: {e}")
            await self.close()
            return False

    def start(
        self,
        handler: FrameHandler,
        on_close: CloseHandler,
        ping_interval: float,
        idle_timeout: float,
    ) -> None:
        """Start background receive and keepalive tasks."""
        self._frame_handler = handler
        self._on_close = on_close
        self._receive_task = asyncio.create_task(self._receive_loop())
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(ping_interval, idle_timeout))

    async def _receive_loop(self) -> None:
        """Read frames until the stream ends or misbehaves."""
        try:
            while self.is_connected:
                frame = await self.stream.recv_frame()
                self.last_seen = time.monotonic()

                if frame.frame_type == FrameType.PING:
                    await self.send(create_pong(frame.body["nonce"]))
                elif frame.frame_type == FrameType.PONG:
                    logger.debug(f"Pong from {short_id(self.peer_id)}")
                elif frame.frame_type == FrameType.HELLO:
                    raise ProtocolError("HELLO after handshake")
                elif self._frame_handler:
                    try:
                        await self._frame_handler(frame, self)
                    except ProtocolError:
                        raise
                    except Exception as e:
                        logger.error(f"Handler error for {frame.frame_type.name} from {short_id(self.peer_id)}: {e!r}")
        except asyncio.IncompleteReadError:
            logger.info(f"Peer {short_id(self.peer_id)} closed the connection")
        except ProtocolError as e:
            logger.warning(f"Protocol error from {short_id(self.peer_id)}: {e}")
        except (OSError, ConnectionError) as e:
            logger.info(f"Connection to {short_id(self.peer_id)} lost: {e}")
        except asyncio.CancelledError:
            pass
        finally:
            await self.close()

    async def _keepalive_loop(self, ping_interval: float, idle_timeout: float) -> None:
        """Ping periodically and drop peers that went silent."""
        try:
            while self.is_connected:
                await asyncio.sleep(ping_interval)
                if not self.is_connected:
                    break
                if time.monotonic() - self.last_seen > idle_timeout:
                    logger.warning(f"Peer {short_id(self.peer_id)} idle for {idle_timeout:g}s, closing")
                    await self.close()
                    break
                await self.send(create_ping(random.getrandbits(32)))
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        """Close the connection and notify the owner once."""
        if self.state in (ConnectionState.CLOSING, ConnectionState.CLOSED):
            return
        self.state = ConnectionState.CLOSING

        current = asyncio.current_task()
        for task in (self._receive_task, self._keepalive_task):
            if task and task is not current and not task.done():
                task.cancel()

        await self.stream.close()
        self.state = ConnectionState.CLOSED
        logger.info(f"Disconnected from {short_id(self.peer_id)}")

        if self._on_close:
            self._on_close(self)
