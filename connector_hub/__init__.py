# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Package connector_hub implements a client for the Connector+ hub protocol, and
discovery of the motorized window coverings (blinds, curtains, shades) attached
to Connector hubs on a local network.

Connector hubs (and WiFi motors that act as their own hub) speak a JSON-over-UDP
protocol on port 32100. A device list query, sent to a hub's unicast address or
to the multicast group 238.0.0.18, returns the devices attached to the hub and a
session token. Commands must carry an AccessToken derived from that session
token and the user's application key ("App Key") by AES-128 encryption.

On top of the client, ConnectorHubDiscovery keeps an application's persistent
registry of accessories in sync with the devices the hubs report, retrying hubs
that are not reachable and only removing stale accessories once every hub has
been scanned.
"""

from .version import __version__

from .internal_types import Jsonable, JsonableDict, HostAndPort

from .exceptions import ConnectorHubError, ConfigError, NetworkTimeoutError, CryptoError, ProtocolError

from .constants import (
    MULTICAST_ADDRESS,
    HUB_PORT,
    MULTICAST_LISTEN_PORT,
    DEVICE_TYPE_WIFI_BRIDGE,
    DEFAULT_RESPONSE_WAIT_TIME,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_DISCOVERY_RETRY_INTERVAL,
  )
from .crypto import encrypt, decrypt, compute_access_token, recover_token
from .device import DeviceRecord, ExtendedDeviceRecord, Operation, DeviceCommand, DeviceStatus
from .hub_message import (
    MessageType,
    HubMessage,
    GetDeviceListRequest,
    DeviceListReply,
    WriteDeviceRequest,
    WriteDeviceAck,
    ReadDeviceRequest,
    ReadDeviceAck,
    ReportMessage,
    HeartbeatMessage,
  )
from .hub_socket import HubSocket, HubDatagramSubscriber
from .client import ConnectorHubClient, CommandResult, HubReportHandler
from .config import ConnectorHubConfig
from .registry import AccessoryEntry, AccessoryRegistry, DeviceRegistryReconciler, HubScanState, HubScanStatus
from .accessory_store import InMemoryAccessoryRegistry, JsonFileAccessoryRegistry
from .discovery import ConnectorHubDiscovery, RetryPolicy, FixedIntervalRetryPolicy, ExponentialBackoffRetryPolicy
from .simulator import ConnectorHubSimulator
from .util import CaseInsensitiveDict, accessory_identity

__all__ = [
    '__version__',
    'Jsonable', 'JsonableDict', 'HostAndPort',
    'ConnectorHubError', 'ConfigError', 'NetworkTimeoutError', 'CryptoError', 'ProtocolError',
    'MULTICAST_ADDRESS', 'HUB_PORT', 'MULTICAST_LISTEN_PORT', 'DEVICE_TYPE_WIFI_BRIDGE',
    'DEFAULT_RESPONSE_WAIT_TIME', 'DEFAULT_REQUEST_TIMEOUT', 'DEFAULT_DISCOVERY_RETRY_INTERVAL',
    'encrypt', 'decrypt', 'compute_access_token', 'recover_token',
    'DeviceRecord', 'ExtendedDeviceRecord', 'Operation', 'DeviceCommand', 'DeviceStatus',
    'MessageType', 'HubMessage', 'GetDeviceListRequest', 'DeviceListReply',
    'WriteDeviceRequest', 'WriteDeviceAck', 'ReadDeviceRequest', 'ReadDeviceAck',
    'ReportMessage', 'HeartbeatMessage',
    'HubSocket', 'HubDatagramSubscriber',
    'ConnectorHubClient', 'CommandResult', 'HubReportHandler',
    'ConnectorHubConfig',
    'AccessoryEntry', 'AccessoryRegistry', 'DeviceRegistryReconciler', 'HubScanState', 'HubScanStatus',
    'InMemoryAccessoryRegistry', 'JsonFileAccessoryRegistry',
    'ConnectorHubDiscovery', 'RetryPolicy', 'FixedIntervalRetryPolicy', 'ExponentialBackoffRetryPolicy',
    'ConnectorHubSimulator',
    'CaseInsensitiveDict', 'accessory_identity',
]
