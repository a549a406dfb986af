"""
Transport - listeners, dialing and the inbound accept loop.

Binds the node's listen addresses, hands every authenticated inbound
stream to a callback, and opens authenticated outbound streams. All
streams returned here have completed the handshake in
``roomchat.network.secure``.
"""

import asyncio
from typing import Awaitable, Callable, Iterator, List, Optional

from roomchat.core.config import NodeConfig
from roomchat.core.errors import (
    DialTimeoutError,
    ProtocolError,
    TransportBindError,
    UnreachablePeerError,
)
from roomchat.network.identity import PeerIdentity
from roomchat.network.multiaddr import Multiaddr, expand_unspecified, parse_multiaddr
from roomchat.network.secure import SecureStream, perform_handshake
from roomchat.utils.logger import get_logger, short_id


logger = get_logger("transport")

InboundHandler = Callable[[SecureStream], Awaitable[None]]


class AddressView:
    """
    Restartable view over the transport's advertised addresses.

    Each iteration starts a fresh generator over the addresses bound at
    that moment, so the view can be kept and re-read after rebinds.
    """

    def __init__(self, transport: "Transport"):
        self._transport = transport

    def __iter__(self) -> Iterator[str]:
        peer_id = self._transport.peer_id
        for addr in list(self._transport._advertised):
            yield str(addr.with_peer_id(peer_id))

    def __len__(self) -> int:
        return len(self._transport._advertised)


class Transport:
    """
    Owns the listeners and performs dials for one identity.

    Usage:
        transport = Transport(identity, config, on_inbound=handler)
        peer_id = await transport.initialize()
        stream = await transport.dial(parse_multiaddr(addr, require_peer_id=True))
    """

    def __init__(
        self,
        identity: PeerIdentity,
        config: Optional[NodeConfig] = None,
        on_inbound: Optional[InboundHandler] = None,
    ):
        self.identity = identity
        self.config = config or NodeConfig()
        self.on_inbound = on_inbound
        self._servers: List[asyncio.Server] = []
        self._advertised: List[Multiaddr] = []
        self._init_lock = asyncio.Lock()
        self._initialized = False
        self._handshakes: set = set()

    @property
    def peer_id(self) -> str:
        return self.identity.peer_id

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> str:
        """
        Bind every configured listen address and start accepting.

        Idempotent: later calls return the peer id without rebinding.

        Raises:
            TransportBindError: no address could be bound
        """
        async with self._init_lock:
            if self._initialized:
                return self.peer_id

            errors = []
            for text in self.config.listen_addrs:
                try:
                    await self._listen(parse_multiaddr(text))
                except (OSError, ValueError) as e:
                    logger.warning(f"Could not listen on {text}: {e}")
                    errors.append(f"{text}: {e}")

            if not self._servers:
                detail = "; ".join(errors) or "no listen addresses configured"
                raise TransportBindError(f"Could not bind any listen address ({detail})")

            self._initialized = True
            logger.info(f"Transport ready, peer id {self.peer_id}")
            return self.peer_id

    async def _listen(self, addr: Multiaddr) -> None:
        server = await asyncio.start_server(
            self._handle_inbound,
            addr.host,
            addr.port,
            family=addr.family,
        )
        self._servers.append(server)

        for sock in server.sockets:
            host, port = sock.getsockname()[:2]
            bound = Multiaddr.from_host_port(host, port)
            expanded = await asyncio.to_thread(lambda: list(expand_unspecified(bound)))
            for concrete in expanded:
                if concrete not in self._advertised:
                    self._advertised.append(concrete)
            logger.info(f"Listening on {bound}")

    def current_addresses(self) -> AddressView:
        """Advertised addresses with the /p2p suffix; empty before initialize()."""
        return AddressView(self)

    async def _handle_inbound(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Authenticate an accepted connection and pass it on."""
        peername = writer.get_extra_info("peername")
        logger.debug(f"Incoming connection from {peername}")

        task = asyncio.current_task()
        self._handshakes.add(task)
        try:
            stream = await asyncio.wait_for(
                perform_handshake(
                    reader,
                    writer,
                    self.identity,
                    list(self.current_addresses()),
                    self.config.max_frame_size,
                ),
                timeout=self.config.handshake_timeout,
            )
        except (asyncio.TimeoutError, asyncio.IncompleteReadError, ProtocolError, OSError) as e:
            logger.warning(f"Inbound handshake from {peername} failed: {e!r}")
            writer.close()
            return
        except asyncio.CancelledError:
            writer.close()
            raise
        finally:
            self._handshakes.discard(task)

        logger.info(f"Accepted peer {short_id(stream.remote_peer_id)} from {peername}")
        if self.on_inbound:
            await self.on_inbound(stream)
        else:
            await stream.close()

    async def dial(self, addr: Multiaddr, timeout: Optional[float] = None) -> SecureStream:
        """
        Open and authenticate a stream to ``addr``.

        The whole dial (TCP connect + handshake) is bounded by ``timeout``.

        Raises:
            DialTimeoutError: the dial did not finish in time
            UnreachablePeerError: connect failed, the handshake failed, or
                the remote's peer id differs from the one in ``addr``
        """
        timeout = timeout if timeout is not None else self.config.dial_timeout
        writer: Optional[asyncio.StreamWriter] = None

        async def _dial() -> SecureStream:
            nonlocal writer
            reader, writer = await asyncio.open_connection(addr.host, addr.port, family=addr.family)
            return await perform_handshake(
                reader,
                writer,
                self.identity,
                list(self.current_addresses()),
                self.config.max_frame_size,
            )

        try:
            stream = await asyncio.wait_for(_dial(), timeout=timeout)
        except asyncio.TimeoutError:
            self._abort(writer)
            raise DialTimeoutError(f"Dial to {addr} timed out after {timeout:g}s") from None
        except (OSError, asyncio.IncompleteReadError, ProtocolError) as e:
            self._abort(writer)
            raise UnreachablePeerError(f"Could not reach {addr}: {e}") from e

        if addr.peer_id and stream.remote_peer_id != addr.peer_id:
            await stream.close()
            raise UnreachablePeerError(
                f"Peer at {addr.without_peer_id()} identified as {stream.remote_peer_id}, "
                f"expected {addr.peer_id}"
            )
        return stream

    @staticmethod
    def _abort(writer: Optional[asyncio.StreamWriter]) -> None:
        if writer is not None and not writer.is_closing():
            writer.close()

    async def close(self) -> None:
        """Stop listening. Established streams are closed by their owners."""
        for server in self._servers:
            server.close()
        for task in list(self._handshakes):
            task.cancel()
        for server in self._servers:
            await server.wait_closed()
        self._servers.clear()
        self._advertised.clear()
        self._initialized = False
        logger.info("Transport closed")
