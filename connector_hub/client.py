# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
ConnectorHubClient -- A Connector hub protocol client that can:

  1. Send a device list (discovery) query to a hub's unicast address or to the
     multicast group (238.0.0.18:32100), and collect every reply received within
     a configurable window
  2. Send authenticated WriteDevice commands and ReadDevice status queries, and
     await the single reply that correlates with each request
  3. Deliver unsolicited Report/Heartbeat multicasts to async handlers

Every request carries a locally generated msgID. A reply is accepted only if
its msgID matches a pending request, it has the expected reply type, and (for
unicast requests) it came from the hub the request was sent to. Anything else
is discarded without affecting any pending request. Network failures are never
raised to the caller; they are returned as empty/failed results.
"""

from __future__ import annotations

import asyncio
import socket
import sys
import time

from .internal_types import *
from .pkg_logging import logger
from .constants import (
    MULTICAST_ADDRESS,
    HUB_PORT,
    MULTICAST_LISTEN_PORT,
    DEFAULT_DEVICE_TYPE,
    DEFAULT_RESPONSE_WAIT_TIME,
    DEFAULT_REQUEST_TIMEOUT,
  )
from .exceptions import ConnectorHubError, NetworkTimeoutError, CryptoError, ProtocolError
from .crypto import KeyLike, compute_access_token
from .device import DeviceCommand, DeviceStatus
from .hub_message import (
    MessageType,
    REPLY_TYPES,
    HubMessage,
    GetDeviceListRequest,
    DeviceListReply,
    WriteDeviceRequest,
    WriteDeviceAck,
    ReadDeviceRequest,
    ReadDeviceAck,
  )
from .hub_socket import HubSocket, HubDatagramSubscriber
from .util import get_local_ip_addresses, is_multicast_address, make_msg_id

HubReportHandler = Callable[[HostAndPort, HubMessage], Awaitable[None]]
"""A callback for unsolicited Report and Heartbeat messages."""

class PendingRequest:
    """Transient state for one outstanding request, keyed by msg_id in ConnectorHubClient."""

    msg_id: str
    hub_address: str
    reply_type: MessageType
    replies: asyncio.Queue[Tuple[HostAndPort, HubMessage]]
    accept_any_source: bool
    """True for multicast requests, which are answered from each hub's own unicast address."""

    def __init__(self, msg_id: str, hub_address: str, reply_type: MessageType):
        self.msg_id = msg_id
        self.hub_address = hub_address
        self.reply_type = reply_type
        self.replies = asyncio.Queue()
        self.accept_any_source = is_multicast_address(hub_address)

    def accepts(self, addr: HostAndPort, message: HubMessage) -> bool:
        if message.msg_type != self.reply_type:
            return False
        return self.accept_any_source or addr[0] == self.hub_address

    def __str__(self) -> str:
        return f"PendingRequest({self.msg_id}: {self.reply_type.value} from {self.hub_address})"

class CommandResult:
    """The outcome of ConnectorHubClient.send_command(). Never raised; inspect `succeeded`."""

    ack: Optional[WriteDeviceAck]
    """The hub's acknowledgement, if one was received."""

    error: Optional[ConnectorHubError]
    """Why the command failed, or None if it succeeded."""

    def __init__(self, ack: Optional[WriteDeviceAck]=None, error: Optional[ConnectorHubError]=None):
        self.ack = ack
        self.error = error

    @property
    def succeeded(self) -> bool:
        return self.error is None and not self.ack is None and self.ack.succeeded

    @property
    def status(self) -> Optional[DeviceStatus]:
        return None if self.ack is None else self.ack.status

    def __bool__(self) -> bool:
        return self.succeeded

    def __str__(self) -> str:
        return f"CommandResult(succeeded={self.succeeded}, ack={self.ack}, error={self.error!r})"

class ConnectorHubClient(HubSocket, AsyncContextManager['ConnectorHubClient']):
    """
    A Connector hub protocol client. One UDP socket is shared by every request to every hub.

    Usage:
        async with ConnectorHubClient(connector_key) as client:
            replies = await client.query_device_list("192.168.1.20")
            for reply in replies:
                for device in reply.devices:
                    result = await client.send_command(reply.hub_ip, reply.token, device.mac, DeviceCommand.open())
    """

    connector_key: Optional[KeyLike]
    """The pre-shared application key used to derive AccessTokens."""

    response_wait_time: float
    """The amount of time (in seconds) to collect device list replies."""

    request_timeout: float
    """The amount of time (in seconds) to wait for a command or status reply."""

    multicast_address: str = MULTICAST_ADDRESS
    """The multicast address to send discovery queries to."""

    hub_port: int = HUB_PORT
    """The port that hubs receive requests on."""

    bind_address: str
    """The local IP address to bind to. '' binds to all interfaces."""

    listen_port: int
    """The local port to bind to. Hubs send multicast reports to MULTICAST_LISTEN_PORT; 0 picks
       an ephemeral port, which still receives unicast replies."""

    join_multicast: bool
    """If True, join the multicast group on every local interface so that reports are received."""

    include_loopback: bool = False

    _pending: Dict[str, PendingRequest]
    _tokens: Dict[str, str]
    _last_msg_id: int = 0
    _report_handlers: Dict[int, HubReportHandler]
    _i_next_report_handler: int = 0
    _dispatcher_task: Optional[asyncio.Task[None]] = None
    _handler_tasks: Set[asyncio.Task[None]]
    """Report handler invocations in flight, one task each. A handler may await requests on this client."""

    def __init__(
            self,
            connector_key: Optional[KeyLike]=None,
            response_wait_time: float=DEFAULT_RESPONSE_WAIT_TIME,
            request_timeout: float=DEFAULT_REQUEST_TIMEOUT,
            multicast_address: str=MULTICAST_ADDRESS,
            hub_port: int=HUB_PORT,
            bind_address: str='',
            listen_port: int=MULTICAST_LISTEN_PORT,
            join_multicast: bool=True,
            include_loopback: bool=False,
          ) -> None:
        super().__init__()
        self.connector_key = connector_key
        self.response_wait_time = response_wait_time
        self.request_timeout = request_timeout
        self.multicast_address = multicast_address
        self.hub_port = hub_port
        self.bind_address = bind_address
        self.listen_port = listen_port
        self.join_multicast = join_multicast
        self.include_loopback = include_loopback
        self._pending = {}
        self._tokens = {}
        self._report_handlers = {}
        self._handler_tasks = set()

    #@override
    def create_socket(self) -> socket.socket:
        """Creates the single socket used for all requests, joining the multicast group
           on each local interface if requested."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if sys.platform not in ( 'win32', 'cygwin' ):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
            sock.bind((self.bind_address, self.listen_port))
        except BaseException:
            sock.close()
            raise
        if self.join_multicast:
            group_bin = socket.inet_aton(self.multicast_address)
            interface_addresses = get_local_ip_addresses(include_loopback=self.include_loopback)
            if len(interface_addresses) == 0:
                interface_addresses = [ '0.0.0.0' ]
            for interface_address in interface_addresses:
                mreq = group_bin + socket.inet_aton(interface_address)
                try:
                    logger.debug(f"Joining multicast group {self.multicast_address} on {interface_address}")
                    sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
                except OSError as e:
                    logger.warning(f"Unable to join multicast group {self.multicast_address} on {interface_address}: {e}")
        return sock

    async def finish_start(self) -> None:
        self._dispatcher_task = asyncio.create_task(self._run_dispatcher_task())
        # let the dispatcher subscribe before any request is sent
        await asyncio.sleep(0)

    async def wait_for_dependents_done(self) -> None:
        tasks = list(self._handler_tasks)
        if self._dispatcher_task is not None:
            tasks.append(self._dispatcher_task)
            self._dispatcher_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Exception while cancelling client task: {e}")

    async def _run_dispatcher_task(self) -> None:
        logger.debug("Hub dispatcher task starting")
        try:
            async with HubDatagramSubscriber(self) as subscriber:
                async for addr, data in subscriber:
                    message = self.handle_datagram(addr, data)
                    if not message is None:
                        for handler in list(self._report_handlers.values()):
                            task = asyncio.create_task(self._run_report_handler(handler, addr, message))
                            self._handler_tasks.add(task)
                            task.add_done_callback(self._handler_tasks.discard)
        except asyncio.CancelledError:
            logger.debug("Hub dispatcher task cancelled; exiting")
            raise
        logger.debug("Hub dispatcher task exiting")

    async def _run_report_handler(self, handler: HubReportHandler, addr: HostAndPort, message: HubMessage) -> None:
        try:
            await handler(addr, message)
        except Exception as e:
            logger.warning(f"Report handler raised exception processing {message}: {e}")

    def add_report_handler(self, handler: HubReportHandler) -> int:
        """Adds a handler to be called when an unsolicited Report or Heartbeat is received."""
        i = self._i_next_report_handler
        self._i_next_report_handler += 1
        self._report_handlers[i] = handler
        return i

    def remove_report_handler(self, i: int) -> None:
        """Removes a previously added report handler."""
        del self._report_handlers[i]

    def handle_datagram(self, addr: HostAndPort, data: bytes) -> Optional[HubMessage]:
        """Parses a received datagram and routes replies to the pending request they correlate with.

        Returns the message if it is unsolicited (a Report or Heartbeat) and should be passed
        to report handlers; otherwise returns None. Invalid, unmatched, late or duplicate
        replies are discarded.
        """
        try:
            message = HubMessage.from_raw_data(data)
        except ProtocolError as e:
            logger.debug(f"Discarding invalid datagram from {addr}: {e}")
            return None
        if message.msg_type in (MessageType.REPORT, MessageType.HEARTBEAT):
            return message
        if not message.msg_type in REPLY_TYPES.values():
            # our own multicast queries loop back to us
            logger.debug(f"Ignoring {message.msg_type.value} request from {addr}")
            return None
        msg_id = message.msg_id
        pending = None if msg_id is None else self._pending.get(msg_id)
        if pending is None:
            logger.debug(f"Discarding reply from {addr} with unknown msgID {msg_id}: {message}")
            return None
        if not pending.accepts(addr, message):
            logger.debug(f"Discarding reply from {addr} that does not match {pending}: {message}")
            return None
        pending.replies.put_nowait((addr, message))
        return None

    def _next_msg_id(self) -> str:
        # Timestamp-based like the hub's own IDs, bumped to stay unique within a millisecond.
        self._last_msg_id = max(self._last_msg_id + 1, make_msg_id())
        return str(self._last_msg_id)

    def _begin_request(self, hub_address: str, request_type: MessageType) -> PendingRequest:
        msg_id = self._next_msg_id()
        pending = PendingRequest(msg_id, hub_address, REPLY_TYPES[request_type])
        self._pending[msg_id] = pending
        return pending

    def _end_request(self, pending: PendingRequest) -> None:
        self._pending.pop(pending.msg_id, None)

    @property
    def pending_request_count(self) -> int:
        return len(self._pending)

    def get_token(self, hub_address: str) -> Optional[str]:
        """Returns the session token from the most recent device list reply from a hub, if any."""
        return self._tokens.get(hub_address)

    def _hub_addr(self, hub_address: str) -> HostAndPort:
        return (hub_address, self.hub_port)

    async def query_device_list(
            self,
            hub_address: str,
            response_wait_time: Optional[float]=None
          ) -> List[DeviceListReply]:
        """Sends a GetDeviceList query and returns every correlated reply received within the wait time.

        hub_address may be a unicast hub address or the multicast address, in which case
        each hub that hears the query replies separately. Returns an empty list if no hub
        replied or the query could not be sent; this is a normal, retriable outcome.
        """
        if response_wait_time is None:
            response_wait_time = self.response_wait_time
        pending = self._begin_request(hub_address, MessageType.GET_DEVICE_LIST)
        results: List[DeviceListReply] = []
        seen_hubs: Set[str] = set()
        try:
            request = GetDeviceListRequest(msgID=pending.msg_id)
            try:
                self.sendto(request.raw_data, self._hub_addr(hub_address))
            except (ConnectorHubError, OSError) as e:
                logger.warning(f"Unable to send device list query to {hub_address}: {e}")
                return results
            end_time = time.monotonic() + response_wait_time
            while True:
                remaining_time = end_time - time.monotonic()
                if remaining_time <= 0.0:
                    break
                try:
                    addr, message = await asyncio.wait_for(pending.replies.get(), remaining_time)
                except asyncio.TimeoutError:
                    break
                assert isinstance(message, DeviceListReply)
                if addr[0] in seen_hubs:
                    logger.debug(f"Discarding duplicate device list reply from {addr}")
                    continue
                seen_hubs.add(addr[0])
                message.src_addr = addr
                self._tokens[addr[0]] = message.token
                if not pending.accept_any_source:
                    self._tokens[hub_address] = message.token
                logger.debug(f"Received device list from {addr}: fwVersion={message.fw_version}, devices={message.devices}")
                results.append(message)
                if not pending.accept_any_source:
                    # a unicast hub sends exactly one reply
                    break
        finally:
            self._end_request(pending)
        if len(results) == 0:
            logger.debug(f"No device list reply from {hub_address} within {response_wait_time} seconds")
        return results

    async def _await_single_reply(self, pending: PendingRequest, timeout: float) -> HubMessage:
        try:
            _, message = await asyncio.wait_for(pending.replies.get(), timeout)
        except asyncio.TimeoutError as e:
            raise NetworkTimeoutError(
                f"No {pending.reply_type.value} from {pending.hub_address} within {timeout} seconds"
              ) from e
        return message

    async def send_command(
            self,
            hub_address: str,
            token: Optional[str],
            mac: str,
            command: DeviceCommand,
            device_type: Optional[str]=None,
            timeout: Optional[float]=None,
          ) -> CommandResult:
        """Sends an authenticated WriteDevice command and awaits its correlated acknowledgement.

        If token is None, the token from the most recent device list reply from hub_address
        is used. Never raises for network, crypto or protocol failures; the returned
        CommandResult describes them.
        """
        if token is None:
            token = self.get_token(hub_address)
        if token is None:
            return CommandResult(error=ProtocolError(f"No session token known for hub {hub_address}"))
        if self.connector_key is None:
            return CommandResult(error=CryptoError("No application key configured"))
        try:
            access_token = compute_access_token(token, self.connector_key)
        except CryptoError as e:
            logger.error(f"Unable to compute AccessToken for hub {hub_address}: {e}")
            return CommandResult(error=e)
        if device_type is None:
            device_type = DEFAULT_DEVICE_TYPE
        if timeout is None:
            timeout = self.request_timeout
        pending = self._begin_request(hub_address, MessageType.WRITE_DEVICE)
        try:
            request = WriteDeviceRequest(
                mac=mac,
                device_type=device_type,
                access_token=access_token,
                msg_id=pending.msg_id,
                command=command,
              )
            self.sendto(request.raw_data, self._hub_addr(hub_address))
            message = await self._await_single_reply(pending, timeout)
        except (ConnectorHubError, OSError) as e:
            logger.warning(f"Command {command} to {mac} via {hub_address} failed: {e}")
            return CommandResult(error=e if isinstance(e, ConnectorHubError) else ConnectorHubError(str(e)))
        finally:
            self._end_request(pending)
        assert isinstance(message, WriteDeviceAck)
        if not message.succeeded:
            logger.warning(f"Hub {hub_address} rejected command {command} to {mac}: {message.action_result}")
        return CommandResult(ack=message)

    async def query_status(
            self,
            hub_address: str,
            token: Optional[str],
            mac: str,
            device_type: Optional[str]=None,
            timeout: Optional[float]=None,
          ) -> Optional[DeviceStatus]:
        """Sends a ReadDevice query and awaits its correlated reply.

        ReadDevice does not require authentication, so token is accepted only for symmetry with
        send_command(). Returns None if no valid status was received in time.
        """
        if device_type is None:
            device_type = DEFAULT_DEVICE_TYPE
        if timeout is None:
            timeout = self.request_timeout
        pending = self._begin_request(hub_address, MessageType.READ_DEVICE)
        try:
            request = ReadDeviceRequest(mac=mac, device_type=device_type, msg_id=pending.msg_id)
            self.sendto(request.raw_data, self._hub_addr(hub_address))
            message = await self._await_single_reply(pending, timeout)
        except (ConnectorHubError, OSError) as e:
            logger.warning(f"Status query for {mac} via {hub_address} failed: {e}")
            return None
        finally:
            self._end_request(pending)
        assert isinstance(message, ReadDeviceAck)
        if not message.succeeded:
            logger.warning(f"Hub {hub_address} rejected status query for {mac}: {message.action_result}")
            return None
        return message.status

    async def __aenter__(self) -> ConnectorHubClient:
        await super().__aenter__()
        return self
