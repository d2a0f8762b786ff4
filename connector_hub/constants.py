# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Constants used by this package"""

import uuid

MULTICAST_ADDRESS = "238.0.0.18"
"""The multicast group that Connector hubs listen on for discovery requests and
   use to broadcast unsolicited device reports."""

HUB_PORT = 32100
"""The UDP port that hubs receive requests on, for both unicast and multicast."""

MULTICAST_LISTEN_PORT = 32101
"""The local UDP port on which multicast reports and replies are received."""

DEVICE_TYPE_WIFI_BRIDGE = "02000001"
"""The deviceType of the hub itself in a device list. It is not an addressable covering."""

DEVICE_TYPE_WIFI_CURTAIN = "22000000"
DEVICE_TYPE_WIFI_TUBULAR_MOTOR = "22000002"
DEVICE_TYPE_WIFI_RECEIVER = "22000005"
DEVICE_TYPE_433MHZ_RADIO_MOTOR = "10000000"

DEFAULT_DEVICE_TYPE = DEVICE_TYPE_433MHZ_RADIO_MOTOR
"""The deviceType sent with commands when the caller does not know the actual type."""

DEFAULT_RESPONSE_WAIT_TIME = 3.0
"""The default amount of time (in seconds) to collect device list replies."""

DEFAULT_REQUEST_TIMEOUT = 3.0
"""The default amount of time (in seconds) to wait for a command or status reply."""

DEFAULT_DISCOVERY_RETRY_INTERVAL = 5.0
"""How long (in seconds) to wait after a failed discovery attempt before retrying."""

CONNECTOR_NAMESPACE = uuid.UUID("4c7e3a0e-8d2b-5f3a-9b1e-636f6e6e6563")
"""The UUID namespace used to derive accessory identities from device MAC addresses."""
