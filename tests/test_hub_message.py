"""Test parsing and encoding of hub protocol messages."""
from __future__ import annotations

import json

import pytest

from connector_hub import (
    DeviceCommand,
    DeviceListReply,
    ExtendedDeviceRecord,
    GetDeviceListRequest,
    HeartbeatMessage,
    HubMessage,
    MessageType,
    ProtocolError,
    ReadDeviceAck,
    ReportMessage,
    WriteDeviceAck,
    WriteDeviceRequest,
)

DEVICE_LIST_ACK = {
    "msgType": "GetDeviceListAck",
    "mac": "f0f0f0f0f0f0",
    "deviceType": "02000001",
    "ProtocolVersion": "0.9",
    "fwVersion": "A1.1.0_B0.1.0",
    "token": "abcdefgh12345678",
    "msgID": "20231017120000000",
    "data": [
        {"mac": "f0f0f0f0f0f0", "deviceType": "02000001"},
        {"mac": "aabbccddeeff0001", "deviceType": "10000000"},
    ],
}

def encode(data) -> bytes:
    return json.dumps(data).encode("utf-8")

class TestHubMessageParsing:
    """Test HubMessage.from_raw_data()."""

    def test_device_list_reply(self):
        """A GetDeviceListAck becomes a DeviceListReply with its devices."""
        message = HubMessage.from_raw_data(encode(DEVICE_LIST_ACK))
        assert isinstance(message, DeviceListReply)
        assert message.msg_type == MessageType.GET_DEVICE_LIST_ACK
        assert message.msg_id == "20231017120000000"
        assert message.token == "abcdefgh12345678"
        assert message.fw_version == "A1.1.0_B0.1.0"
        assert message.protocol_version == "0.9"
        assert [d.mac for d in message.devices] == ["f0f0f0f0f0f0", "aabbccddeeff0001"]
        assert [d.is_bridge for d in message.devices] == [True, False]

    def test_field_names_are_case_insensitive(self):
        """Firmware revisions disagree about field capitalization."""
        data = dict(DEVICE_LIST_ACK)
        data["msgId"] = data.pop("msgID")
        data["msgType"] = "getdevicelistack"
        message = HubMessage.from_raw_data(encode(data))
        assert isinstance(message, DeviceListReply)
        assert message.msg_id == "20231017120000000"

    def test_integer_msg_id_is_normalized(self):
        """Some hubs send msgID as a number."""
        message = HubMessage.from_raw_data(b'{"msgType":"WriteDeviceAck","msgID":123,"actionResult":"AccessToken error"}')
        assert isinstance(message, WriteDeviceAck)
        assert message.msg_id == "123"
        assert not message.succeeded
        assert message.status is None

    @pytest.mark.parametrize("raw_data", [
        b"not json",
        b"\xff\xfe",
        b"[1, 2, 3]",
        b'{"mac": "aabbccddeeff0001"}',
        b'{"msgType": "Teleport"}',
        b'{"msgType": "GetDeviceListAck", "msgID": "1", "data": []}',
        b'{"msgType": "GetDeviceListAck", "msgID": "1", "token": "t", "data": [{"deviceType": "10000000"}]}',
        b'{"msgType": "ReadDeviceAck", "msgID": "1", "mac": "aabbccddeeff0001"}',
        b'{"msgType": "Report", "mac": "aabbccddeeff0001", "data": "closed"}',
    ])
    def test_invalid_datagrams_raise_protocol_error(self, raw_data: bytes):
        """Anything that is not a well-formed, known message is a ProtocolError."""
        with pytest.raises(ProtocolError):
            HubMessage.from_raw_data(raw_data)

    def test_parse_as_specific_type(self):
        """Parsing through a subclass rejects other message types."""
        with pytest.raises(ProtocolError):
            DeviceListReply.from_raw_data(b'{"msgType":"Heartbeat","token":"abc"}')

    def test_report_and_heartbeat(self):
        """Unsolicited messages carry device status or the hub token."""
        report = HubMessage.from_raw_data(
            b'{"msgType":"Report","mac":"aabbccddeeff0001","deviceType":"10000000","data":{"currentPosition":40,"RSSI":-70}}'
          )
        assert isinstance(report, ReportMessage)
        assert report.status.current_position == 40
        assert report.status.rssi == -70
        assert report.status.battery_level is None
        heartbeat = HubMessage.from_raw_data(b'{"msgType":"Heartbeat","token":"abcdefgh12345678"}')
        assert isinstance(heartbeat, HeartbeatMessage)
        assert heartbeat.token == "abcdefgh12345678"

    def test_read_device_ack_status(self):
        """A successful ReadDeviceAck exposes the device status."""
        ack = HubMessage.from_raw_data(
            b'{"msgType":"ReadDeviceAck","msgID":"7","mac":"aabbccddeeff0001","deviceType":"10000000",'
            b'"data":{"type":1,"operation":1,"currentPosition":0,"currentAngle":90}}'
          )
        assert isinstance(ack, ReadDeviceAck)
        assert ack.succeeded
        status = ack.status
        assert status is not None
        assert status.mac == "aabbccddeeff0001"
        assert status.operation == 1
        assert status.current_angle == 90

class TestHubMessageEncoding:
    """Test request construction and raw_data."""

    def test_device_list_request(self):
        """A discovery query is just a type and correlation ID."""
        request = GetDeviceListRequest(msgID="20231017120000001")
        assert json.loads(request.raw_data) == {"msgType": "GetDeviceList", "msgID": "20231017120000001"}

    def test_write_device_request(self):
        """A command carries the AccessToken and the command data."""
        request = WriteDeviceRequest(
            mac="aabbccddeeff0001",
            device_type="10000000",
            access_token="00112233445566778899AABBCCDDEEFF",
            msg_id="42",
            command=DeviceCommand.position(30),
          )
        assert json.loads(request.raw_data) == {
            "msgType": "WriteDevice",
            "mac": "aabbccddeeff0001",
            "deviceType": "10000000",
            "AccessToken": "00112233445566778899AABBCCDDEEFF",
            "msgID": "42",
            "data": {"targetPosition": 30},
        }

    def test_write_device_request_requires_access_token(self):
        """Unauthenticated commands cannot be built."""
        with pytest.raises(ProtocolError):
            WriteDeviceRequest(mac="aabbccddeeff0001", msg_id="42", command=DeviceCommand.open())

class TestDeviceRecords:
    """Test DeviceCommand validation and ExtendedDeviceRecord persistence."""

    def test_command_operations(self):
        """Operations are encoded as integers."""
        assert DeviceCommand.open().to_jsonable() == {"operation": 1}
        assert DeviceCommand.close().to_jsonable() == {"operation": 0}
        assert DeviceCommand.stop().to_jsonable() == {"operation": 2}
        assert DeviceCommand.status_query().to_jsonable() == {"operation": 5}
        assert DeviceCommand.tilt(180).to_jsonable() == {"targetAngle": 180}

    @pytest.mark.parametrize("factory, value", [
        (DeviceCommand.position, -1),
        (DeviceCommand.position, 101),
        (DeviceCommand.tilt, 181),
    ])
    def test_command_range_checked(self, factory, value):
        """Out-of-range targets are rejected before anything is sent."""
        with pytest.raises(ValueError):
            factory(value)

    def test_empty_command_rejected(self):
        """A command must do something."""
        with pytest.raises(ValueError):
            DeviceCommand()

    def test_extended_record_keeps_fw_version(self):
        """The firmware version is persisted alongside the device fields."""
        record = ExtendedDeviceRecord("AA:BB:CC:DD:EE:01", "10000000", fw_version="v2.1")
        data = record.to_jsonable()
        assert data == {"mac": "AA:BB:CC:DD:EE:01", "deviceType": "10000000", "fwVersion": "v2.1"}
        assert ExtendedDeviceRecord.from_jsonable(data) == record
        assert ExtendedDeviceRecord.from_jsonable(data).fw_version == "v2.1"

    def test_identity_is_case_insensitive(self):
        """The same device maps to one identity however the hub formats its MAC."""
        upper = ExtendedDeviceRecord("AA:BB:CC:DD:EE:01", "10000000")
        lower = ExtendedDeviceRecord("aa:bb:cc:dd:ee:01", "10000000")
        assert upper.identity == lower.identity
        assert upper.identity != ExtendedDeviceRecord("aa:bb:cc:dd:ee:02", "10000000").identity
