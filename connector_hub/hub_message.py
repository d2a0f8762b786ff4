#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Abstraction of the JSON messages exchanged with Connector hubs over UDP.

Every datagram is a single JSON object whose "msgType" field selects the
message variant. Incoming datagrams are parsed with HubMessage.from_raw_data(),
which returns an instance of the matching subclass after validating the fields
that variant requires; anything else raises ProtocolError so that loosely
shaped data never leaves this module.
"""

from __future__ import annotations

import json
from enum import Enum

from .internal_types import *
from .exceptions import ProtocolError
from .util import CaseInsensitiveDict
from .device import DeviceRecord, DeviceCommand, DeviceStatus

class MessageType(str, Enum):
    GET_DEVICE_LIST = "GetDeviceList"
    GET_DEVICE_LIST_ACK = "GetDeviceListAck"
    WRITE_DEVICE = "WriteDevice"
    WRITE_DEVICE_ACK = "WriteDeviceAck"
    READ_DEVICE = "ReadDevice"
    READ_DEVICE_ACK = "ReadDeviceAck"
    REPORT = "Report"
    HEARTBEAT = "Heartbeat"

class HubMessage:
    """Wrapper for a raw hub datagram.

    Field names are matched case-insensitively, since hub firmware revisions
    are not consistent about capitalization (e.g., "msgID" vs. "msgId"). The
    case of the first spelling seen is preserved when re-encoding.
    """

    msg_type: MessageType
    """The variant of this message. Fixed per subclass."""

    _fields: CaseInsensitiveDict[Jsonable]

    _message_classes: Dict[str, type] = {}

    def __init__(self, fields: Optional[Mapping[str, Jsonable]]=None, **kwargs: Jsonable):
        self._fields = CaseInsensitiveDict()
        self._fields['msgType'] = self.msg_type.value
        if not fields is None:
            self._fields.update(fields)
        for k, v in kwargs.items():
            if not v is None:
                self._fields[k] = v
        self.validate()

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        msg_type = cls.__dict__.get('msg_type')
        if isinstance(msg_type, MessageType):
            HubMessage._message_classes[msg_type.value.lower()] = cls

    @classmethod
    def from_jsonable(cls, data: Jsonable) -> HubMessage:
        """Returns the HubMessage subclass instance for a decoded JSON object.

        Raises ProtocolError if the object is not a known, well-formed message.
        """
        if not isinstance(data, dict):
            raise ProtocolError(f"Hub message is not a JSON object: {data!r}")
        fields: CaseInsensitiveDict[Jsonable] = CaseInsensitiveDict(data)
        msg_type = fields.get('msgType')
        if not isinstance(msg_type, str):
            raise ProtocolError(f"Hub message has no msgType: {data!r}")
        message_class = HubMessage._message_classes.get(msg_type.lower())
        if message_class is None:
            raise ProtocolError(f"Unknown hub message type '{msg_type}'")
        if cls is not HubMessage and not issubclass(message_class, cls):
            raise ProtocolError(f"Expected {cls.__name__}, got '{msg_type}'")
        return message_class(data)

    @classmethod
    def from_raw_data(cls, raw_data: bytes) -> HubMessage:
        """Decodes and validates a raw UDP datagram. Raises ProtocolError if it is not valid."""
        try:
            data = json.loads(raw_data.decode('utf-8'))
        except (UnicodeDecodeError, ValueError) as e:
            raise ProtocolError(f"Datagram is not valid JSON: {e}") from e
        return cls.from_jsonable(data)

    def validate(self) -> None:
        """Raises ProtocolError if a required field is missing or has the wrong type.
           Subclasses extend this with their own required fields."""
        msg_id = self._fields.get('msgID')
        if not msg_id is None and not isinstance(msg_id, (str, int)):
            raise ProtocolError(f"{self.msg_type.value} has invalid msgID: {msg_id!r}")

    def _require_str(self, name: str) -> str:
        value = self._fields.get(name)
        if not isinstance(value, str):
            raise ProtocolError(f"{self.msg_type.value} requires string field '{name}', got {value!r}")
        return value

    def _require_dict(self, name: str) -> JsonableDict:
        value = self._fields.get(name)
        if not isinstance(value, dict):
            raise ProtocolError(f"{self.msg_type.value} requires object field '{name}', got {value!r}")
        return value

    def _optional_str(self, name: str) -> Optional[str]:
        value = self._fields.get(name)
        if value is None:
            return None
        if not isinstance(value, str):
            raise ProtocolError(f"{self.msg_type.value} field '{name}' must be a string, got {value!r}")
        return value

    @property
    def fields(self) -> CaseInsensitiveDict[Jsonable]:
        return self._fields

    def get(self, name: str, default: Jsonable=None) -> Jsonable:
        return self._fields.get(name, default)

    def to_jsonable(self) -> JsonableDict:
        return dict(self._fields)

    @property
    def raw_data(self) -> bytes:
        """The encoded UDP datagram contents"""
        return json.dumps(self.to_jsonable(), separators=(',', ':')).encode('utf-8')

    @property
    def msg_id(self) -> Optional[str]:
        """The correlation ID of the message, as a string, or None if there is none.
           Hubs echo the msgID of a request in its reply."""
        value = self._fields.get('msgID')
        return None if value is None else str(value)

    @property
    def mac(self) -> Optional[str]:
        value = self._fields.get('mac')
        return value if isinstance(value, str) else None

    @property
    def device_type(self) -> Optional[str]:
        value = self._fields.get('deviceType')
        return value if isinstance(value, str) else None

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.to_jsonable()})"

    def __repr__(self) -> str:
        return str(self)

class GetDeviceListRequest(HubMessage):
    """A discovery query. Sent unencrypted to a hub or to the multicast group."""
    msg_type = MessageType.GET_DEVICE_LIST

class DeviceListReply(HubMessage):
    """A hub's answer to a discovery query (GetDeviceListAck)."""
    msg_type = MessageType.GET_DEVICE_LIST_ACK

    devices: List[DeviceRecord]
    """The devices attached to the hub. The hub's own entry, if present, is included."""

    src_addr: Optional[HostAndPort] = None
    """The address the reply was received from. Set by the client on receipt."""

    def validate(self) -> None:
        super().validate()
        self._require_str('token')
        self._optional_str('fwVersion')
        data = self._fields.get('data', [])
        if not isinstance(data, list):
            raise ProtocolError(f"{self.msg_type.value} 'data' must be a list, got {data!r}")
        self.devices = [ DeviceRecord.from_jsonable(d) for d in data ]

    @property
    def token(self) -> str:
        """The session token required (as an AccessToken) for subsequent commands to this hub."""
        result = self._fields['token']
        assert isinstance(result, str)
        return result

    @property
    def fw_version(self) -> Optional[str]:
        return self._optional_str('fwVersion')

    @property
    def protocol_version(self) -> Optional[str]:
        value = self._fields.get('ProtocolVersion')
        return None if value is None else str(value)

    @property
    def hub_ip(self) -> Optional[str]:
        return None if self.src_addr is None else self.src_addr[0]

class WriteDeviceRequest(HubMessage):
    """An authenticated command to one device."""
    msg_type = MessageType.WRITE_DEVICE

    def __init__(
            self,
            fields: Optional[Mapping[str, Jsonable]]=None,
            mac: Optional[str]=None,
            device_type: Optional[str]=None,
            access_token: Optional[str]=None,
            msg_id: Optional[str]=None,
            command: Optional[DeviceCommand]=None,
          ):
        super().__init__(
            fields,
            mac=mac,
            deviceType=device_type,
            AccessToken=access_token,
            msgID=msg_id,
            data=None if command is None else command.to_jsonable()
          )

    def validate(self) -> None:
        super().validate()
        self._require_str('mac')
        self._require_str('AccessToken')
        self._require_dict('data')

    @property
    def access_token(self) -> str:
        return self._require_str('AccessToken')

    @property
    def data(self) -> JsonableDict:
        return self._require_dict('data')

class ReadDeviceRequest(HubMessage):
    """A status query for one device."""
    msg_type = MessageType.READ_DEVICE

    def __init__(
            self,
            fields: Optional[Mapping[str, Jsonable]]=None,
            mac: Optional[str]=None,
            device_type: Optional[str]=None,
            msg_id: Optional[str]=None,
          ):
        super().__init__(fields, mac=mac, deviceType=device_type, msgID=msg_id)

    def validate(self) -> None:
        super().validate()
        self._require_str('mac')

class DeviceAck(HubMessage):
    """Common base for replies about a single device.

    A hub that rejects a request (for example, because the AccessToken is wrong)
    replies with an "actionResult" string instead of device data.
    """
    def validate(self) -> None:
        super().validate()
        action_result = self._optional_str('actionResult')
        if action_result is None:
            self._require_str('mac')
            self._require_dict('data')

    @property
    def action_result(self) -> Optional[str]:
        return self._optional_str('actionResult')

    @property
    def succeeded(self) -> bool:
        return self.action_result is None

    @property
    def status(self) -> Optional[DeviceStatus]:
        data = self._fields.get('data')
        mac = self.mac
        if not isinstance(data, dict) or mac is None:
            return None
        return DeviceStatus(mac, self.device_type, data)

class WriteDeviceAck(DeviceAck):
    msg_type = MessageType.WRITE_DEVICE_ACK

class ReadDeviceAck(DeviceAck):
    msg_type = MessageType.READ_DEVICE_ACK

class ReportMessage(HubMessage):
    """An unsolicited multicast state report from a device."""
    msg_type = MessageType.REPORT

    def validate(self) -> None:
        super().validate()
        self._require_str('mac')
        self._require_dict('data')

    @property
    def status(self) -> DeviceStatus:
        mac = self.mac
        assert mac is not None
        return DeviceStatus(mac, self.device_type, self._require_dict('data'))

class HeartbeatMessage(HubMessage):
    """A periodic multicast liveness announcement from a hub."""
    msg_type = MessageType.HEARTBEAT

    @property
    def token(self) -> Optional[str]:
        return self._optional_str('token')

REPLY_TYPES: Dict[MessageType, MessageType] = {
    MessageType.GET_DEVICE_LIST: MessageType.GET_DEVICE_LIST_ACK,
    MessageType.WRITE_DEVICE: MessageType.WRITE_DEVICE_ACK,
    MessageType.READ_DEVICE: MessageType.READ_DEVICE_ACK,
}
"""The reply type a hub sends for each request type."""
