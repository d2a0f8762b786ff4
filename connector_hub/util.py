#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Simple utility functions used by this package
"""

from __future__ import annotations

import netifaces
import uuid
import datetime
from ipaddress import IPv4Address, AddressValueError

from .internal_types import *
from .constants import CONNECTOR_NAMESPACE

from requests.structures import CaseInsensitiveDict

def is_ipv4_address(value: Any) -> bool:
    """Returns True if value is a well-formed dotted-quad IPv4 address string."""
    if not isinstance(value, str):
        return False
    try:
        IPv4Address(value)
    except (AddressValueError, ValueError):
        return False
    return True

def is_multicast_address(value: str) -> bool:
    """Returns True if value is an IPv4 multicast group address."""
    return is_ipv4_address(value) and IPv4Address(value).is_multicast

def accessory_identity(mac: str) -> str:
    """Derives the stable accessory identity for a device from its hardware (MAC) address.

    The MAC is case-folded so that the same device always maps to the same identity
    regardless of how a hub formats it.
    """
    return str(uuid.uuid5(CONNECTOR_NAMESPACE, mac.strip().lower()))

def make_msg_id(now: Optional[datetime.datetime]=None) -> int:
    """Returns a Connector-style message ID for the given time: the digits of YYYYMMDDHHMMSSmmm."""
    if now is None:
        now = datetime.datetime.now()
    return int(now.strftime('%Y%m%d%H%M%S') + f"{now.microsecond // 1000:03d}")

def get_default_interface_name() -> Optional[str]:
    """Returns the name of the interface that carries the default IPv4 route, or None."""
    default_routes = netifaces.gateways().get('default', {})
    route = default_routes.get(netifaces.AF_INET)
    return None if route is None else route[1]

def get_local_ip_addresses(include_loopback: bool=True) -> List[str]:
    """Returns the IPv4 addresses of the local host, one per interface address.

    Addresses on the default route's interface come first and loopback addresses
    come last, so the first entry is the address a hub is most likely to reach.
    """
    default_ifname = get_default_interface_name()
    ranked: List[Tuple[int, str]] = []
    for ifname in netifaces.interfaces():
        for addrinfo in netifaces.ifaddresses(ifname).get(netifaces.AF_INET, []):
            ip_str = addrinfo.get('addr')
            if not is_ipv4_address(ip_str):
                continue
            if IPv4Address(ip_str).is_loopback:
                if not include_loopback:
                    continue
                rank = 2
            else:
                rank = 0 if ifname == default_ifname else 1
            ranked.append((rank, ip_str))
    return [ ip_str for _, ip_str in sorted(ranked) ]

__all__ = [
    'CaseInsensitiveDict',
    'is_ipv4_address', 'is_multicast_address',
    'accessory_identity', 'make_msg_id',
    'get_default_interface_name', 'get_local_ip_addresses',
]
