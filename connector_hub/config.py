#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Configuration for Connector hub discovery and control.

The configuration is a JSON object using the same camelCase keys as the
Connector+ platform configuration:

    {
        "connectorKey": "12345678-1234-12",
        "hubIps": ["192.168.1.20"],
        "enableDebugLog": false
    }

Instead of storing the application key in the file, it may be kept in the
operating system keyring and referenced with "keyringService" and
"keyringUsername".

Validation never raises; validate() returns the list of problems so that all of
them can be reported to the operator at once. A non-empty list is fatal for
discovery; raise_if_invalid() converts it into a ConfigError.
"""

from __future__ import annotations

import json
import os

import keyring
from keyring.errors import KeyringError

from .internal_types import *
from .pkg_logging import logger
from .constants import (
    MULTICAST_ADDRESS,
    DEFAULT_RESPONSE_WAIT_TIME,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_DISCOVERY_RETRY_INTERVAL,
  )
from .exceptions import ConfigError
from .util import is_ipv4_address

class ConnectorHubConfig:
    connector_key: Optional[str] = None
    """The application key shown in the Connector app. Used to derive AccessTokens."""

    hub_ips: List[Any]
    """The configured hub addresses. May contain invalid entries until validated."""

    enable_debug_log: Any = False
    """True to log at DEBUG. Anything other than a JSON boolean is reported by validate()."""

    response_wait_time: float = DEFAULT_RESPONSE_WAIT_TIME
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    discovery_retry_interval: float = DEFAULT_DISCOVERY_RETRY_INTERVAL

    keyring_service: Optional[str] = None
    keyring_username: Optional[str] = None

    _keyring_error: Optional[str] = None

    def __init__(
            self,
            connector_key: Optional[str]=None,
            hub_ips: Optional[Iterable[Any]]=None,
            enable_debug_log: Any=False,
            response_wait_time: float=DEFAULT_RESPONSE_WAIT_TIME,
            request_timeout: float=DEFAULT_REQUEST_TIMEOUT,
            discovery_retry_interval: float=DEFAULT_DISCOVERY_RETRY_INTERVAL,
            keyring_service: Optional[str]=None,
            keyring_username: Optional[str]=None,
          ):
        self.connector_key = connector_key
        self.hub_ips = [] if hub_ips is None else list(hub_ips)
        self.enable_debug_log = enable_debug_log
        self.response_wait_time = response_wait_time
        self.request_timeout = request_timeout
        self.discovery_retry_interval = discovery_retry_interval
        self.keyring_service = keyring_service
        self.keyring_username = keyring_username

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ConnectorHubConfig:
        hub_ips = data.get('hubIps')
        if hub_ips is None:
            hub_ips = []
        elif isinstance(hub_ips, str) or not isinstance(hub_ips, Iterable):
            # keep it so validate() can report it
            hub_ips = [ hub_ips ]
        return cls(
            connector_key=data.get('connectorKey'),
            hub_ips=hub_ips,
            enable_debug_log=data.get('enableDebugLog', False),
            response_wait_time=data.get('responseWaitTime', DEFAULT_RESPONSE_WAIT_TIME),
            request_timeout=data.get('requestTimeout', DEFAULT_REQUEST_TIMEOUT),
            discovery_retry_interval=data.get('discoveryRetryInterval', DEFAULT_DISCOVERY_RETRY_INTERVAL),
            keyring_service=data.get('keyringService'),
            keyring_username=data.get('keyringUsername'),
          )

    @classmethod
    def load_json_file(cls, pathname: str) -> ConnectorHubConfig:
        """Loads a configuration from a JSON file. Raises ConfigError if it cannot be read or parsed."""
        pathname = os.path.abspath(os.path.expanduser(pathname))
        try:
            with open(pathname, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ConfigError(f"Unable to load config file {pathname}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {pathname} does not contain a JSON object")
        return cls.from_dict(data)

    def to_dict(self) -> JsonableDict:
        result: JsonableDict = {
            'hubIps': [ str(x) for x in self.hub_ips ],
            'enableDebugLog': self.enable_debug_log,
            'responseWaitTime': self.response_wait_time,
            'requestTimeout': self.request_timeout,
            'discoveryRetryInterval': self.discovery_retry_interval,
          }
        if not self.connector_key is None:
            result['connectorKey'] = self.connector_key
        if not self.keyring_service is None:
            result['keyringService'] = self.keyring_service
        if not self.keyring_username is None:
            result['keyringUsername'] = self.keyring_username
        return result

    def get_connector_key(self) -> Optional[str]:
        """Returns the application key, reading it from the keyring if it is not configured directly."""
        if not self.connector_key and not self.keyring_service is None:
            username = 'connectorKey' if self.keyring_username is None else self.keyring_username
            try:
                self.connector_key = keyring.get_password(self.keyring_service, username)
                self._keyring_error = None
            except KeyringError as e:
                self._keyring_error = f"Unable to read App Key from keyring service '{self.keyring_service}': {e}"
                logger.debug(self._keyring_error)
        return self.connector_key or None

    @property
    def hub_addresses(self) -> List[str]:
        """The hub addresses to scan: the configured IPs, or the multicast address if none are configured."""
        if len(self.hub_ips) == 0:
            return [ MULTICAST_ADDRESS ]
        return [ str(x) for x in self.hub_ips ]

    @property
    def uses_multicast(self) -> bool:
        return len(self.hub_ips) == 0

    def validate(self) -> List[str]:
        """Returns a list of human-readable validation errors. An empty list means the config is valid."""
        validation_errors: List[str] = []
        if self.get_connector_key() is None:
            if self._keyring_error is None:
                validation_errors.append('App Key has not been configured')
            else:
                validation_errors.append(self._keyring_error)
        for hub_ip in self.hub_ips:
            if not is_ipv4_address(hub_ip):
                validation_errors.append(f"Hub IP is not valid IPv4: {hub_ip}")
        if not isinstance(self.enable_debug_log, bool):
            validation_errors.append(f"enableDebugLog must be true or false: {self.enable_debug_log!r}")
        for name in ('response_wait_time', 'request_timeout', 'discovery_retry_interval'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                validation_errors.append(f"{name} must be a positive number of seconds: {value!r}")
        return validation_errors

    def raise_if_invalid(self) -> None:
        validation_errors = self.validate()
        if len(validation_errors) > 0:
            raise ConfigError(validation_errors)

    def __str__(self) -> str:
        redacted = self.to_dict()
        if 'connectorKey' in redacted:
            redacted['connectorKey'] = '********'
        return f"ConnectorHubConfig({redacted})"

    def __repr__(self) -> str:
        return str(self)
