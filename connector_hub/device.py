#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Device records, status and commands exchanged with Connector hubs.
"""

from __future__ import annotations

from enum import IntEnum

from .internal_types import *
from .constants import DEVICE_TYPE_WIFI_BRIDGE
from .exceptions import ProtocolError
from .util import accessory_identity

class DeviceRecord:
    """One physical device listed in a hub's device list reply."""

    mac: str
    """The hardware identifier of the device. Immutable and globally unique; the only key that
       is stable across restarts."""

    device_type: str
    """The 8-digit Connector device type code, e.g. "10000000" for a 433MHz radio motor."""

    extra: JsonableDict
    """Any additional fields the hub reported for this device (capability flags etc)."""

    def __init__(self, mac: str, device_type: str, extra: Optional[Mapping[str, Jsonable]]=None):
        self.mac = mac
        self.device_type = device_type
        self.extra = {} if extra is None else dict(extra)

    @classmethod
    def from_jsonable(cls, data: Jsonable) -> DeviceRecord:
        """Builds a DeviceRecord from an entry of the "data" list in a GetDeviceListAck.

        Raises ProtocolError if the entry does not have string "mac" and "deviceType" fields.
        """
        if not isinstance(data, dict):
            raise ProtocolError(f"Device record is not an object: {data!r}")
        mac = data.get('mac')
        device_type = data.get('deviceType')
        if not isinstance(mac, str) or mac == '':
            raise ProtocolError(f"Device record has no valid mac: {data!r}")
        if not isinstance(device_type, str):
            raise ProtocolError(f"Device record has no valid deviceType: {data!r}")
        extra = { k: v for k, v in data.items() if k not in ('mac', 'deviceType') }
        return cls(mac, device_type, extra)

    def to_jsonable(self) -> JsonableDict:
        result: JsonableDict = dict(self.extra)
        result['mac'] = self.mac
        result['deviceType'] = self.device_type
        return result

    @property
    def is_bridge(self) -> bool:
        """True if this record describes the hub itself rather than an addressable covering."""
        return self.device_type == DEVICE_TYPE_WIFI_BRIDGE

    @property
    def identity(self) -> str:
        """The accessory identity derived from the MAC address."""
        return accessory_identity(self.mac)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DeviceRecord):
            return NotImplemented
        return self.to_jsonable() == other.to_jsonable()

    def __str__(self) -> str:
        return f"{self.__class__.__name__}({self.to_jsonable()})"

    def __repr__(self) -> str:
        return str(self)

class ExtendedDeviceRecord(DeviceRecord):
    """A DeviceRecord augmented with the firmware version of the hub that reported it."""

    fw_version: Optional[str]

    def __init__(
            self,
            mac: str,
            device_type: str,
            fw_version: Optional[str]=None,
            extra: Optional[Mapping[str, Jsonable]]=None
          ):
        super().__init__(mac, device_type, extra)
        self.fw_version = fw_version

    @classmethod
    def from_device_record(cls, record: DeviceRecord, fw_version: Optional[str]) -> ExtendedDeviceRecord:
        return cls(record.mac, record.device_type, fw_version=fw_version, extra=record.extra)

    @classmethod
    def from_jsonable(cls, data: Jsonable) -> ExtendedDeviceRecord:
        record = DeviceRecord.from_jsonable(data)
        extra = dict(record.extra)
        fw_version = extra.pop('fwVersion', None)
        if not fw_version is None and not isinstance(fw_version, str):
            raise ProtocolError(f"Device record has invalid fwVersion: {data!r}")
        return cls(record.mac, record.device_type, fw_version=fw_version, extra=extra)

    def to_jsonable(self) -> JsonableDict:
        result = super().to_jsonable()
        if not self.fw_version is None:
            result['fwVersion'] = self.fw_version
        return result

class Operation(IntEnum):
    """Values of the "operation" field of a WriteDevice request."""
    CLOSE = 0
    OPEN = 1
    STOP = 2
    STATUS_QUERY = 5

class DeviceCommand:
    """The "data" portion of a WriteDevice request.

    Use the factory classmethods; exactly one of operation, target_position or
    target_angle is normally set.
    """

    operation: Optional[Operation] = None
    target_position: Optional[int] = None
    """0 (fully open) through 100 (fully closed)."""

    target_angle: Optional[int] = None
    """0 through 180 degrees of tilt."""

    def __init__(
            self,
            operation: Optional[Operation]=None,
            target_position: Optional[int]=None,
            target_angle: Optional[int]=None,
          ):
        if operation is None and target_position is None and target_angle is None:
            raise ValueError("A DeviceCommand requires an operation, a target position or a target angle")
        if not target_position is None and not 0 <= target_position <= 100:
            raise ValueError(f"Target position must be between 0 and 100: {target_position}")
        if not target_angle is None and not 0 <= target_angle <= 180:
            raise ValueError(f"Target angle must be between 0 and 180: {target_angle}")
        self.operation = operation
        self.target_position = target_position
        self.target_angle = target_angle

    @classmethod
    def open(cls) -> DeviceCommand:
        return cls(operation=Operation.OPEN)

    @classmethod
    def close(cls) -> DeviceCommand:
        return cls(operation=Operation.CLOSE)

    @classmethod
    def stop(cls) -> DeviceCommand:
        return cls(operation=Operation.STOP)

    @classmethod
    def status_query(cls) -> DeviceCommand:
        return cls(operation=Operation.STATUS_QUERY)

    @classmethod
    def position(cls, target_position: int) -> DeviceCommand:
        return cls(target_position=target_position)

    @classmethod
    def tilt(cls, target_angle: int) -> DeviceCommand:
        return cls(target_angle=target_angle)

    def to_jsonable(self) -> JsonableDict:
        result: JsonableDict = {}
        if not self.operation is None:
            result['operation'] = int(self.operation)
        if not self.target_position is None:
            result['targetPosition'] = self.target_position
        if not self.target_angle is None:
            result['targetAngle'] = self.target_angle
        return result

    def __str__(self) -> str:
        return f"DeviceCommand({self.to_jsonable()})"

    def __repr__(self) -> str:
        return str(self)

class DeviceStatus:
    """The state of a device as reported in the "data" of a ReadDeviceAck, WriteDeviceAck or Report."""

    mac: str
    device_type: Optional[str]
    data: JsonableDict
    """All fields reported by the hub, unmodified."""

    def __init__(self, mac: str, device_type: Optional[str], data: Mapping[str, Jsonable]):
        self.mac = mac
        self.device_type = device_type
        self.data = dict(data)

    def _get_int(self, name: str) -> Optional[int]:
        value = self.data.get(name)
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    @property
    def operation(self) -> Optional[int]:
        return self._get_int('operation')

    @property
    def current_position(self) -> Optional[int]:
        return self._get_int('currentPosition')

    @property
    def current_angle(self) -> Optional[int]:
        return self._get_int('currentAngle')

    @property
    def current_state(self) -> Optional[int]:
        return self._get_int('currentState')

    @property
    def battery_level(self) -> Optional[int]:
        return self._get_int('batteryLevel')

    @property
    def voltage_mode(self) -> Optional[int]:
        return self._get_int('voltageMode')

    @property
    def wireless_mode(self) -> Optional[int]:
        return self._get_int('wirelessMode')

    @property
    def rssi(self) -> Optional[int]:
        return self._get_int('RSSI')

    def __str__(self) -> str:
        return f"DeviceStatus(mac={self.mac}, deviceType={self.device_type}, data={self.data})"

    def __repr__(self) -> str:
        return str(self)
