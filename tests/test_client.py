"""Test ConnectorHubClient request correlation, and round trips against the hub simulator."""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, List, Tuple

import pytest

from connector_hub import (
    CommandResult,
    ConnectorHubClient,
    ConnectorHubDiscovery,
    ConnectorHubSimulator,
    CryptoError,
    DeviceCommand,
    HUB_PORT,
    HeartbeatMessage,
    HubMessage,
    InMemoryAccessoryRegistry,
    MULTICAST_ADDRESS,
    NetworkTimeoutError,
    ProtocolError,
    ReportMessage,
)

from .mocks.fake_hub_client import CONNECTOR_KEY, HUB_TOKEN, make_device_list_reply

pytestmark = pytest.mark.asyncio

class CapturingClient(ConnectorHubClient):
    """A client that records outgoing datagrams instead of sending them. Replies are injected
       with handle_datagram()."""

    def __init__(self, connector_key: Any = CONNECTOR_KEY):
        super().__init__(connector_key, response_wait_time=0.3, request_timeout=0.3)
        self.sent: List[Tuple[dict, Tuple[str, int]]] = []

    def sendto(self, data: bytes, addr: Tuple[str, int]) -> None:
        self.sent.append((json.loads(data), addr))

    async def next_request(self) -> dict:
        while len(self.sent) == 0:
            await asyncio.sleep(0)
        return self.sent.pop(0)[0]

def reply_bytes(**fields) -> bytes:
    return json.dumps(fields).encode("utf-8")

def device_list_ack(msg_id: str, token: str = HUB_TOKEN) -> bytes:
    data = make_device_list_reply("0.0.0.0", [("aabbccddeeff0001", "10000000")], token=token).to_jsonable()
    data["msgID"] = msg_id
    return json.dumps(data).encode("utf-8")

class TestCorrelation:
    """Test how replies are matched to outstanding requests."""

    async def test_unicast_device_list(self):
        """A reply with the request's msgID from the queried hub is returned, with its token cached."""
        client = CapturingClient()
        task = asyncio.create_task(client.query_device_list("10.0.0.5"))
        request = await client.next_request()
        assert request["msgType"] == "GetDeviceList"
        assert client.handle_datagram(("10.0.0.5", HUB_PORT), device_list_ack(request["msgID"])) is None
        replies = await task
        assert len(replies) == 1
        assert replies[0].hub_ip == "10.0.0.5"
        assert client.get_token("10.0.0.5") == HUB_TOKEN
        assert client.pending_request_count == 0

    async def test_mismatched_replies_are_discarded(self):
        """Wrong msgID, wrong reply type and wrong source are all ignored."""
        client = CapturingClient()
        task = asyncio.create_task(client.query_device_list("10.0.0.5"))
        request = await client.next_request()
        msg_id = request["msgID"]
        client.handle_datagram(("10.0.0.5", HUB_PORT), device_list_ack("99999999999999999"))
        client.handle_datagram(("10.0.0.6", HUB_PORT), device_list_ack(msg_id))
        client.handle_datagram(("10.0.0.5", HUB_PORT), reply_bytes(msgType="ReadDeviceAck", msgID=msg_id, actionResult="x"))
        client.handle_datagram(("10.0.0.5", HUB_PORT), b"garbage")
        assert await task == []

    async def test_unmatched_reply_does_not_alter_timeout(self):
        """A reply for another msgID neither completes nor extends an in-flight command."""
        client = CapturingClient()
        start_time = time.monotonic()
        task = asyncio.create_task(
            client.send_command("10.0.0.5", HUB_TOKEN, "aabbccddeeff0001", DeviceCommand.open(), timeout=0.3)
          )
        request = await client.next_request()
        assert request["msgType"] == "WriteDevice"
        assert len(request["AccessToken"]) == 32
        client.handle_datagram(
            ("10.0.0.5", HUB_PORT),
            reply_bytes(msgType="WriteDeviceAck", msgID="1", mac="aabbccddeeff0001", data={"operation": 1}),
          )
        result = await task
        elapsed = time.monotonic() - start_time
        assert isinstance(result, CommandResult)
        assert not result.succeeded
        assert isinstance(result.error, NetworkTimeoutError)
        assert 0.25 <= elapsed < 2.0
        assert client.pending_request_count == 0

    async def test_matching_command_ack(self):
        """The correlated WriteDeviceAck completes the command with the reported status."""
        client = CapturingClient()
        task = asyncio.create_task(client.send_command("10.0.0.5", HUB_TOKEN, "aabbccddeeff0001", DeviceCommand.close()))
        request = await client.next_request()
        assert request["data"] == {"operation": 0}
        client.handle_datagram(
            ("10.0.0.5", HUB_PORT),
            reply_bytes(msgType="WriteDeviceAck", msgID=request["msgID"], mac="aabbccddeeff0001", data={"currentPosition": 100}),
          )
        result = await task
        assert result.succeeded
        assert result
        assert result.status is not None
        assert result.status.current_position == 100

    async def test_multicast_collects_one_reply_per_hub(self):
        """Multicast replies from every hub are collected; duplicates from one hub are dropped."""
        client = CapturingClient()
        task = asyncio.create_task(client.query_device_list(MULTICAST_ADDRESS, response_wait_time=0.3))
        request = await client.next_request()
        client.handle_datagram(("10.0.0.5", HUB_PORT), device_list_ack(request["msgID"], token="token-from-hub-5"))
        client.handle_datagram(("10.0.0.5", HUB_PORT), device_list_ack(request["msgID"], token="token-from-hub-5"))
        client.handle_datagram(("10.0.0.6", HUB_PORT), device_list_ack(request["msgID"], token="token-from-hub-6"))
        replies = await task
        assert sorted(r.hub_ip for r in replies) == ["10.0.0.5", "10.0.0.6"]
        assert client.get_token("10.0.0.6") == "token-from-hub-6"

    async def test_unsolicited_messages_are_returned(self):
        """Reports and heartbeats are passed on for report handlers."""
        client = CapturingClient()
        report = client.handle_datagram(
            ("10.0.0.5", 32101),
            reply_bytes(msgType="Report", mac="aabbccddeeff0001", data={"currentPosition": 50}),
          )
        assert isinstance(report, ReportMessage)
        heartbeat = client.handle_datagram(("10.0.0.5", 32101), reply_bytes(msgType="Heartbeat", token=HUB_TOKEN))
        assert isinstance(heartbeat, HeartbeatMessage)

    async def test_looped_back_request_is_ignored(self):
        """Our own multicast queries are received too, and ignored."""
        client = CapturingClient()
        assert client.handle_datagram(("10.0.0.2", HUB_PORT), reply_bytes(msgType="GetDeviceList", msgID="1")) is None

    async def test_command_without_token_fails(self):
        """No session token means no AccessToken; nothing is sent."""
        client = CapturingClient()
        result = await client.send_command("10.0.0.5", None, "aabbccddeeff0001", DeviceCommand.open())
        assert isinstance(result.error, ProtocolError)
        assert client.sent == []

    async def test_command_with_bad_key_fails(self):
        """An unusable App Key is a CryptoError result, not an exception."""
        client = CapturingClient(connector_key="too-short")
        result = await client.send_command("10.0.0.5", HUB_TOKEN, "aabbccddeeff0001", DeviceCommand.open())
        assert isinstance(result.error, CryptoError)
        assert client.sent == []

    async def test_msg_ids_are_unique(self):
        """Back-to-back requests get distinct msgIDs."""
        client = CapturingClient()
        tasks = [asyncio.create_task(client.query_device_list("10.0.0.5", response_wait_time=0.05)) for _ in range(5)]
        await asyncio.gather(*tasks)
        msg_ids = [request["msgID"] for request, _ in client.sent]
        assert len(set(msg_ids)) == 5

class TestSimulatorRoundTrip:
    """Test the client against the simulated hub over loopback UDP."""

    async def test_query_device_list(self, loopback_client: ConnectorHubClient):
        """The simulator answers with its devices and the hub's own bridge entry."""
        replies = await loopback_client.query_device_list("127.0.0.1")
        assert len(replies) == 1
        reply = replies[0]
        assert reply.token == HUB_TOKEN
        assert [d.mac for d in reply.devices if not d.is_bridge] == ["aabbccddeeff0001", "aabbccddeeff0002"]
        assert loopback_client.get_token("127.0.0.1") == HUB_TOKEN

    async def test_commands(self, loopback_client: ConnectorHubClient, hub_simulator: ConnectorHubSimulator):
        """Authenticated commands are applied and acknowledged with the new status."""
        await loopback_client.query_device_list("127.0.0.1")
        result = await loopback_client.send_command("127.0.0.1", None, "aabbccddeeff0001", DeviceCommand.close())
        assert result.succeeded
        assert result.status is not None
        assert result.status.current_position == 100
        result = await loopback_client.send_command("127.0.0.1", None, "aabbccddeeff0001", DeviceCommand.position(30))
        assert result.succeeded
        assert hub_simulator.device_state["aabbccddeeff0001"]["currentPosition"] == 30
        status = await loopback_client.query_status("127.0.0.1", None, "aabbccddeeff0001")
        assert status is not None
        assert status.current_position == 30

    async def test_unknown_device(self, loopback_client: ConnectorHubClient):
        """The hub rejects commands for devices it does not have."""
        result = await loopback_client.send_command("127.0.0.1", HUB_TOKEN, "000000000000", DeviceCommand.open())
        assert not result.succeeded
        assert result.ack is not None
        assert result.ack.action_result == "device not exist"
        assert await loopback_client.query_status("127.0.0.1", None, "000000000000") is None

    async def test_wrong_key_is_rejected(self, hub_simulator: ConnectorHubSimulator):
        """A command signed with another App Key fails authentication."""
        client = ConnectorHubClient(
            "another-app-key!",
            request_timeout=1.0,
            hub_port=hub_simulator.port,
            bind_address="127.0.0.1",
            listen_port=0,
            join_multicast=False,
          )
        async with client:
            result = await client.send_command("127.0.0.1", HUB_TOKEN, "aabbccddeeff0001", DeviceCommand.open())
        assert not result.succeeded
        assert result.ack is not None
        assert result.ack.action_result == "AccessToken error"

    async def test_lost_request_times_out(self, loopback_client: ConnectorHubClient, hub_simulator: ConnectorHubSimulator):
        """A dropped request yields no result instead of an exception."""
        hub_simulator.drop_requests = 1
        assert await loopback_client.query_status("127.0.0.1", None, "aabbccddeeff0001", timeout=0.2) is None
        assert await loopback_client.query_status("127.0.0.1", None, "aabbccddeeff0001") is not None

    async def test_report_handler(self, loopback_client: ConnectorHubClient, hub_simulator: ConnectorHubSimulator):
        """Unsolicited reports are delivered to report handlers."""
        received: asyncio.Queue = asyncio.Queue()

        async def handler(addr: Tuple[str, int], message: HubMessage) -> None:
            await received.put(message)

        loopback_client.add_report_handler(handler)
        hub_simulator.send_report("aabbccddeeff0002", loopback_client.local_addr)
        message = await asyncio.wait_for(received.get(), 2.0)
        assert isinstance(message, ReportMessage)
        assert message.mac == "aabbccddeeff0002"

    async def test_report_handler_can_query_status(self, loopback_client: ConnectorHubClient, hub_simulator: ConnectorHubSimulator):
        """A report handler may send a request through the same client and receive its reply."""
        statuses: asyncio.Queue = asyncio.Queue()

        async def handler(addr: Tuple[str, int], message: HubMessage) -> None:
            assert isinstance(message, ReportMessage)
            await statuses.put(await loopback_client.query_status("127.0.0.1", None, message.mac))

        loopback_client.add_report_handler(handler)
        hub_simulator.send_report("aabbccddeeff0001", loopback_client.local_addr)
        status = await asyncio.wait_for(statuses.get(), 3.0)
        assert status is not None
        assert status.current_position == hub_simulator.device_state["aabbccddeeff0001"]["currentPosition"]

    async def test_slow_report_handler_does_not_delay_replies(self, loopback_client: ConnectorHubClient, hub_simulator: ConnectorHubSimulator):
        """Correlated replies are delivered while a report handler is still running."""
        release = asyncio.Event()

        async def handler(addr: Tuple[str, int], message: HubMessage) -> None:
            await release.wait()

        loopback_client.add_report_handler(handler)
        hub_simulator.send_report("aabbccddeeff0001", loopback_client.local_addr)
        await asyncio.sleep(0.1)
        try:
            assert await loopback_client.query_status("127.0.0.1", None, "aabbccddeeff0002") is not None
        finally:
            release.set()

    async def test_discovery_against_simulator(self, loopback_client: ConnectorHubClient):
        """The orchestrator discovers the simulated devices through a real client."""
        registry = InMemoryAccessoryRegistry()
        discovery = ConnectorHubDiscovery(loopback_client, registry, hub_ips=["127.0.0.1"])
        records = await discovery.discover_once()
        assert sorted(r.mac for r in records) == ["aabbccddeeff0001", "aabbccddeeff0002"]
        assert all(r.fw_version == "A1.1.0_B0.1.0" for r in records)
        assert len(registry.registered) == 2
        assert discovery.remove_stale_accessories() == []
