#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
HubSocket -- An abstract base class for the asyncio UDP endpoint used to talk to
Connector hubs. A HubSocket:

  1. Owns one bound datagram socket, created by the subclass in create_socket()
  2. Fans every received datagram out to any number of HubDatagramSubscribers
  3. Sends datagrams to a unicast or multicast address (fire-and-forget)

  A subscriber is an async iterator of (source address, payload) pairs that ends
  when the HubSocket is stopped.

  There is no retry or correlation logic at this layer; see ConnectorHubClient.
"""

from __future__ import annotations

import asyncio
from asyncio import Future
import socket
from abc import abstractmethod

from .internal_types import *
from .pkg_logging import logger
from .exceptions import ConnectorHubError

MAX_QUEUE_SIZE = 1000

ReceivedDatagram = Tuple[HostAndPort, bytes]

class _HubDatagramProtocol(asyncio.DatagramProtocol):
    """Forwards asyncio transport events to the owning HubSocket."""

    hub_socket: HubSocket

    def __init__(self, hub_socket: HubSocket):
        self.hub_socket = hub_socket

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        logger.debug(f"{self.hub_socket}: datagram endpoint ready")

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.hub_socket.datagram_received((addr[0], addr[1]), data)

    def error_received(self, exc: Exception) -> None:
        self.hub_socket.error_received(exc)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.hub_socket.connection_lost(exc)

class HubDatagramSubscriber(
        AsyncContextManager['HubDatagramSubscriber'],
        AsyncIterable[ReceivedDatagram]
      ):
    """
    Receives a copy of every datagram that arrives at a HubSocket while subscribed.

    Usage:
        async with HubDatagramSubscriber(hub_socket) as subscriber:
            async for addr, data in subscriber:
                ...
    """

    hub_socket: HubSocket
    queue: asyncio.Queue[Optional[ReceivedDatagram]]
    """Pending datagrams. None marks the end of the stream."""

    closed: bool = False
    dropped: int = 0
    """The number of datagrams discarded because the queue was full."""

    def __init__(self, hub_socket: HubSocket, max_queue_size: int=MAX_QUEUE_SIZE):
        self.hub_socket = hub_socket
        self.queue = asyncio.Queue(max_queue_size)

    async def __aenter__(self) -> HubDatagramSubscriber:
        self.hub_socket.add_subscriber(self)
        if not self.hub_socket.is_running:
            self.close()
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        self.hub_socket.remove_subscriber(self)
        self.close()
        return False

    def on_datagram(self, addr: HostAndPort, data: bytes) -> None:
        if self.closed:
            return
        try:
            self.queue.put_nowait((addr, data))
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Subscriber queue full, dropping datagram from {addr}: {data!r}")

    def close(self) -> None:
        """Ends the stream after any datagrams already queued."""
        if self.closed:
            return
        self.closed = True
        while True:
            try:
                self.queue.put_nowait(None)
                break
            except asyncio.QueueFull:
                # make room for the end-of-stream marker
                self.queue.get_nowait()
                self.dropped += 1

    async def receive(self) -> Optional[ReceivedDatagram]:
        """Returns the next datagram, or None once the stream has ended."""
        item = await self.queue.get()
        if item is None:
            # leave the marker in place for later calls
            self.queue.put_nowait(None)
        return item

    async def iter_datagrams(self) -> AsyncIterator[ReceivedDatagram]:
        while True:
            item = await self.receive()
            if item is None:
                break
            yield item

    def __aiter__(self) -> AsyncIterator[ReceivedDatagram]:
        return self.iter_datagrams()

class HubSocket(AsyncContextManager['HubSocket']):
    """
    Base class for ConnectorHubClient and ConnectorHubSimulator.

    Subclasses implement create_socket(), and may override finish_start() and
    wait_for_dependents_done() to run and clean up their own tasks.
    """

    sock: Optional[socket.socket] = None
    """The bound datagram socket, once started. Closed when the HubSocket stops."""

    transport: Optional[asyncio.DatagramTransport] = None

    local_addr: Optional[HostAndPort] = None
    """The local address and port the socket is bound to, once started."""

    final_result: Optional[Future[None]] = None
    """A future that is set when the HubSocket is stopped. Created when the HubSocket is started."""

    datagram_subscribers: Set[HubDatagramSubscriber]

    def __init__(self):
        self.datagram_subscribers = set()

    @abstractmethod
    def create_socket(self) -> socket.socket:
        """Creates, configures and binds the datagram socket. Called once by start()."""
        raise NotImplementedError()

    async def finish_start(self) -> None:
        """Called once the socket is receiving. Subclasses can override to start their own tasks."""
        pass

    async def wait_for_dependents_done(self) -> None:
        """Called after final_result has been awaited. Subclasses can override to do additional
           cleanup."""
        pass

    @property
    def is_running(self) -> bool:
        return not self.final_result is None and not self.final_result.done()

    async def start(self) -> None:
        if not self.final_result is None:
            raise ConnectorHubError(f"{self} has already been started")
        loop = asyncio.get_running_loop()
        self.final_result = loop.create_future()
        try:
            self.sock = self.create_socket()
            sockname = self.sock.getsockname()
            self.local_addr = (sockname[0], sockname[1])
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _HubDatagramProtocol(self),
                sock=self.sock
              )
            # asyncio datagram transports do not inherit from asyncio.DatagramTransport
            self.transport = transport # type: ignore[assignment]
            logger.debug(f"{self} started")
            await self.finish_start()
        except BaseException as e:
            self.set_final_exception(e)
            try:
                await self.wait_for_done()
            except BaseException:
                pass
            raise

    async def stop(self) -> None:
        self.set_final_result()

    async def wait_for_done(self) -> None:
        try:
            if not self.final_result is None:
                await self.final_result
        finally:
            await self.wait_for_dependents_done()

    async def stop_and_wait(self) -> None:
        await self.stop()
        await self.wait_for_done()

    def sendto(self, data: bytes, addr: HostAndPort) -> None:
        if not self.is_running or self.transport is None:
            raise ConnectorHubError(f"{self} is not running")
        logger.debug(f"{self}: sending to {addr}: {data!r}")
        self.transport.sendto(data, addr)

    def add_subscriber(self, subscriber: HubDatagramSubscriber) -> None:
        self.datagram_subscribers.add(subscriber)

    def remove_subscriber(self, subscriber: HubDatagramSubscriber) -> None:
        self.datagram_subscribers.discard(subscriber)

    def datagram_received(self, addr: HostAndPort, data: bytes) -> None:
        logger.debug(f"{self}: received from {addr}: {data!r}")
        for subscriber in list(self.datagram_subscribers):
            subscriber.on_datagram(addr, data)

    def error_received(self, exc: Exception) -> None:
        """Called when a send or receive raises an OSError, e.g. an ICMP port unreachable
           from one hub. Such errors do not affect other hubs, so the socket stays open."""
        logger.info(f"{self}: transport error: {exc}")

    def connection_lost(self, exc: Optional[Exception]) -> None:
        logger.debug(f"{self}: transport closed, exc={exc}")
        self.transport = None
        if exc is None:
            self.set_final_result()
        else:
            self.set_final_exception(exc)

    def _shut_down(self) -> None:
        for subscriber in list(self.datagram_subscribers):
            subscriber.close()
        transport = self.transport
        self.transport = None
        if not transport is None:
            # also closes the socket
            transport.close()
        elif not self.sock is None:
            self.sock.close()
        self.sock = None

    def set_final_exception(self, exc: BaseException) -> None:
        if not self.final_result is None and not self.final_result.done():
            logger.debug(f"{self}: stopping with exception: {exc!r}")
            self.final_result.set_exception(exc)
            self._shut_down()

    def set_final_result(self) -> None:
        if not self.final_result is None and not self.final_result.done():
            logger.debug(f"{self}: stopping")
            self.final_result.set_result(None)
            self._shut_down()

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.local_addr})"

    def __repr__(self) -> str:
        return str(self)

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        if exc is None:
            self.set_final_result()
        else:
            self.set_final_exception(exc)
        try:
            # ensure that final_result has been awaited
            await self.wait_for_done()
        except Exception as e:
            logger.debug(f"{self} ended with exception: {e!r}")
        return False
