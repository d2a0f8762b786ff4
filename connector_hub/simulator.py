#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
ConnectorHubSimulator -- A stand-in for a Connector hub that can:

  1. Listen on a UDP address for hub protocol requests
  2. Answer GetDeviceList queries with its configured devices and session token
  3. Authenticate WriteDevice commands by decrypting their AccessToken, apply them
     to simulated device state, and acknowledge them
  4. Answer ReadDevice status queries
  5. Send unsolicited Report messages

It is intended for tests and for trying out the client without hardware. It
binds to the loopback interface by default.
"""

from __future__ import annotations

import asyncio
import secrets
import socket
import string

from .internal_types import *
from .pkg_logging import logger
from .constants import DEVICE_TYPE_WIFI_BRIDGE
from .exceptions import CryptoError, ProtocolError
from .crypto import KeyLike, recover_token
from .device import DeviceRecord, Operation
from .hub_message import (
    HubMessage,
    GetDeviceListRequest,
    WriteDeviceRequest,
    ReadDeviceRequest,
    DeviceListReply,
    WriteDeviceAck,
    ReadDeviceAck,
    ReportMessage,
  )
from .hub_socket import HubSocket, HubDatagramSubscriber

DEFAULT_FW_VERSION = "A1.1.0_B0.1.0"
DEFAULT_PROTOCOL_VERSION = "0.9"

def make_session_token() -> str:
    """Returns a random 16-character session token like the ones hubs issue."""
    alphabet = string.ascii_letters + string.digits
    return ''.join(secrets.choice(alphabet) for _ in range(16))

class ConnectorHubSimulator(HubSocket):
    """
    A simulated Connector hub.

    Usage:
        async with ConnectorHubSimulator(key, devices=[DeviceRecord("aabbccddeeff0001", "10000000")]) as hub:
            async with ConnectorHubClient(key, hub_port=hub.port, bind_address="127.0.0.1", listen_port=0, join_multicast=False) as client:
                replies = await client.query_device_list("127.0.0.1")
    """

    connector_key: KeyLike
    hub_mac: str
    token: str
    fw_version: str
    devices: Dict[str, DeviceRecord]
    device_state: Dict[str, JsonableDict]
    """Simulated status data per device MAC."""

    bind_address: str
    bind_port: int

    reply_delay: float = 0.0
    """Seconds to wait before sending each reply."""

    drop_requests: int = 0
    """The number of upcoming requests to silently ignore, simulating packet loss."""

    requests_received: List[Tuple[HostAndPort, HubMessage]]
    responder_task: Optional[asyncio.Task[None]] = None
    _reply_tasks: Set[asyncio.Task[None]]

    def __init__(
            self,
            connector_key: KeyLike,
            devices: Optional[Iterable[DeviceRecord]]=None,
            hub_mac: str="f0f0f0f0f0f0",
            token: Optional[str]=None,
            fw_version: str=DEFAULT_FW_VERSION,
            bind_address: str='127.0.0.1',
            bind_port: int=0,
          ) -> None:
        super().__init__()
        self.connector_key = connector_key
        self.hub_mac = hub_mac
        self.token = make_session_token() if token is None else token
        self.fw_version = fw_version
        self.bind_address = bind_address
        self.bind_port = bind_port
        self.devices = {}
        self.device_state = {}
        self.requests_received = []
        self._reply_tasks = set()
        for device in ([] if devices is None else devices):
            self.add_device(device)

    def add_device(self, device: DeviceRecord) -> None:
        self.devices[device.mac] = device
        self.device_state[device.mac] = {
            "type": 1,
            "operation": int(Operation.STOP),
            "currentPosition": 0,
            "currentAngle": 0,
            "currentState": 0,
            "voltageMode": 0,
            "batteryLevel": 1200,
            "wirelessMode": 1,
            "RSSI": -60,
          }

    def remove_device(self, mac: str) -> None:
        self.devices.pop(mac, None)
        self.device_state.pop(mac, None)

    @property
    def port(self) -> int:
        """The UDP port the simulator is listening on."""
        assert not self.local_addr is None
        return self.local_addr[1]

    #@override
    def create_socket(self) -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((self.bind_address, self.bind_port))
        return sock

    async def finish_start(self) -> None:
        self.responder_task = asyncio.create_task(self._run_responder_task())
        await asyncio.sleep(0)

    async def wait_for_dependents_done(self) -> None:
        tasks = list(self._reply_tasks)
        if self.responder_task is not None:
            tasks.append(self.responder_task)
            self.responder_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Exception while cancelling simulator task: {e}")

    def device_list_reply(self, msg_id: Optional[str]) -> DeviceListReply:
        data: List[Jsonable] = [ { "mac": self.hub_mac, "deviceType": DEVICE_TYPE_WIFI_BRIDGE } ]
        data.extend(device.to_jsonable() for device in self.devices.values())
        return DeviceListReply(
            msgID=msg_id,
            mac=self.hub_mac,
            deviceType=DEVICE_TYPE_WIFI_BRIDGE,
            ProtocolVersion=DEFAULT_PROTOCOL_VERSION,
            fwVersion=self.fw_version,
            token=self.token,
            data=data,
          )

    def _is_authenticated(self, request: WriteDeviceRequest) -> bool:
        try:
            return recover_token(request.access_token, self.connector_key) == self.token
        except CryptoError as e:
            logger.debug(f"Simulator could not decrypt AccessToken: {e}")
            return False

    def _apply_command(self, mac: str, data: JsonableDict) -> None:
        state = self.device_state[mac]
        operation = data.get('operation')
        if operation == Operation.OPEN:
            state['currentPosition'] = 0
        elif operation == Operation.CLOSE:
            state['currentPosition'] = 100
        if isinstance(operation, int) and operation != Operation.STATUS_QUERY:
            state['operation'] = operation
        target_position = data.get('targetPosition')
        if isinstance(target_position, int):
            state['currentPosition'] = target_position
        target_angle = data.get('targetAngle')
        if isinstance(target_angle, int):
            state['currentAngle'] = target_angle

    def handle_request(self, message: HubMessage) -> Optional[HubMessage]:
        """Returns the reply for a request, or None if the request gets no reply."""
        msg_id = message.msg_id
        if isinstance(message, GetDeviceListRequest):
            return self.device_list_reply(msg_id)
        if isinstance(message, WriteDeviceRequest):
            mac = message.mac
            assert mac is not None
            if not self._is_authenticated(message):
                return WriteDeviceAck(msgID=msg_id, mac=mac, actionResult="AccessToken error")
            if not mac in self.devices:
                return WriteDeviceAck(msgID=msg_id, mac=mac, actionResult="device not exist")
            self._apply_command(mac, message.data)
            return WriteDeviceAck(
                msgID=msg_id, mac=mac, deviceType=self.devices[mac].device_type, data=dict(self.device_state[mac])
              )
        if isinstance(message, ReadDeviceRequest):
            mac = message.mac
            assert mac is not None
            if not mac in self.devices:
                return ReadDeviceAck(msgID=msg_id, mac=mac, actionResult="device not exist")
            return ReadDeviceAck(
                msgID=msg_id, mac=mac, deviceType=self.devices[mac].device_type, data=dict(self.device_state[mac])
              )
        return None

    async def _send_reply(self, reply: HubMessage, addr: HostAndPort) -> None:
        if self.reply_delay > 0.0:
            await asyncio.sleep(self.reply_delay)
        if self.is_running:
            self.sendto(reply.raw_data, addr)

    async def _run_responder_task(self) -> None:
        logger.debug("Hub simulator responder task starting")
        try:
            async with HubDatagramSubscriber(self) as subscriber:
                async for addr, data in subscriber:
                    try:
                        message = HubMessage.from_raw_data(data)
                    except ProtocolError as e:
                        logger.debug(f"Hub simulator ignoring invalid datagram from {addr}: {e}")
                        continue
                    self.requests_received.append((addr, message))
                    if self.drop_requests > 0:
                        self.drop_requests -= 1
                        logger.debug(f"Hub simulator dropping {message} from {addr}")
                        continue
                    reply = self.handle_request(message)
                    if not reply is None:
                        task = asyncio.create_task(self._send_reply(reply, addr))
                        self._reply_tasks.add(task)
                        task.add_done_callback(self._reply_tasks.discard)
        except asyncio.CancelledError:
            logger.debug("Hub simulator responder task cancelled; exiting")
            raise
        logger.debug("Hub simulator responder task exiting")

    def send_report(self, mac: str, addr: HostAndPort) -> None:
        """Sends an unsolicited Report for a device's current state to addr."""
        report = ReportMessage(
            mac=mac, deviceType=self.devices[mac].device_type, data=dict(self.device_state[mac])
          )
        self.sendto(report.raw_data, addr)
