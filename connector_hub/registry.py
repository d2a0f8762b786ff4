#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
Reconciliation of discovered devices against previously registered accessories.

Accessory entries restored from the host's persistent registry at startup are
held as "unclaimed" until a live scan reports the same device. Each device maps
to exactly one accessory identity (derived from its MAC), so repeated scans and
duplicate sightings through several hubs never produce duplicate accessories.

Entries that nobody claims are stale, but they are only released for removal
once every configured hub has completed at least one scan in this run; a hub
that is merely slow or temporarily unreachable must not cause its devices to be
deleted.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from enum import Enum

from .internal_types import *
from .pkg_logging import logger
from .device import ExtendedDeviceRecord
from .exceptions import ProtocolError

class AccessoryEntry:
    """One accessory as known to the host registry: a stable identity plus a context mapping.

    The context holds the last ExtendedDeviceRecord seen for the device ("device"), and
    the hub address ("hubAddress") and session token ("token") needed to control it.
    """

    identity: str
    display_name: str
    context: JsonableDict

    def __init__(self, identity: str, display_name: str, context: Optional[Mapping[str, Jsonable]]=None):
        self.identity = identity
        self.display_name = display_name
        self.context = {} if context is None else dict(context)

    @classmethod
    def for_device(cls, record: ExtendedDeviceRecord) -> AccessoryEntry:
        return cls(record.identity, f"Connector Device {record.mac}")

    @property
    def device(self) -> Optional[ExtendedDeviceRecord]:
        data = self.context.get('device')
        if data is None:
            return None
        try:
            return ExtendedDeviceRecord.from_jsonable(data)
        except ProtocolError as e:
            logger.warning(f"Accessory {self.display_name} has an invalid cached device record: {e}")
            return None

    @property
    def hub_address(self) -> Optional[str]:
        value = self.context.get('hubAddress')
        return value if isinstance(value, str) else None

    @property
    def token(self) -> Optional[str]:
        value = self.context.get('token')
        return value if isinstance(value, str) else None

    def update_device(self, record: ExtendedDeviceRecord, hub_address: str, token: Optional[str]) -> None:
        self.context['device'] = record.to_jsonable()
        self.context['hubAddress'] = hub_address
        self.context['token'] = token

    @classmethod
    def from_jsonable(cls, data: Jsonable) -> AccessoryEntry:
        if not isinstance(data, dict):
            raise ValueError(f"Accessory entry is not an object: {data!r}")
        identity = data.get('identity')
        display_name = data.get('displayName')
        context = data.get('context', {})
        if not isinstance(identity, str) or not isinstance(display_name, str) or not isinstance(context, dict):
            raise ValueError(f"Malformed accessory entry: {data!r}")
        return cls(identity, display_name, context)

    def to_jsonable(self) -> JsonableDict:
        return {
            'identity': self.identity,
            'displayName': self.display_name,
            'context': self.context,
          }

    def __str__(self) -> str:
        return f"AccessoryEntry({self.display_name}, identity={self.identity})"

    def __repr__(self) -> str:
        return str(self)

class AccessoryRegistry(ABC):
    """The host ecosystem's accessory registry, as seen by the discovery orchestrator.

    Implementations persist entries across restarts and wrap each live device in
    whatever handler object the host requires.
    """

    def load_cached_accessories(self) -> List[AccessoryEntry]:
        """Returns the entries persisted by a previous run. Called once before discovery starts."""
        return []

    @abstractmethod
    def register_accessories(self, entries: List[AccessoryEntry]) -> None:
        """Registers newly discovered accessories with the host."""
        raise NotImplementedError()

    @abstractmethod
    def update_accessories(self, entries: List[AccessoryEntry]) -> None:
        """Persists updated context for existing accessories."""
        raise NotImplementedError()

    @abstractmethod
    def unregister_accessories(self, entries: List[AccessoryEntry]) -> None:
        """Removes stale accessories from the host."""
        raise NotImplementedError()

    def device_discovered(
            self,
            entry: AccessoryEntry,
            record: ExtendedDeviceRecord,
            hub_address: str,
            token: Optional[str]
          ) -> None:
        """Called for every live device on every successful scan, after the entry has been
           registered or updated, with everything needed to issue commands to it."""
        pass

class HubScanStatus(Enum):
    PENDING = "pending"
    SCANNING = "scanning"
    SUCCEEDED = "succeeded"
    FAILED_RETRY = "failed-retry"

class HubScanState:
    """Scan progress for one configured hub address during this run."""

    hub_address: str
    status: HubScanStatus = HubScanStatus.PENDING
    attempts: int = 0
    """The number of scans started."""

    failures: int = 0
    """The number of consecutive failed scans since the last success."""

    completed: bool = False
    """True once at least one scan of this hub has succeeded in this run."""

    last_error: Optional[str] = None
    last_scan_time: Optional[float] = None
    retry_delay: Optional[float] = None
    """Seconds until the next scan after a failure; None once the hub has been scanned."""

    def __init__(self, hub_address: str):
        self.hub_address = hub_address

    def __str__(self) -> str:
        return f"HubScanState({self.hub_address}: {self.status.value}, attempts={self.attempts}, completed={self.completed})"

    def __repr__(self) -> str:
        return str(self)

class DeviceRegistryReconciler:
    """Tracks cached, live and stale accessory entries and per-hub scan completion."""

    _unclaimed: Dict[str, AccessoryEntry]
    _live: Dict[str, AccessoryEntry]
    _hub_states: Dict[str, HubScanState]

    def __init__(self, hub_addresses: Iterable[str]):
        self._unclaimed = {}
        self._live = {}
        self._hub_states = {}
        for hub_address in hub_addresses:
            self._hub_states.setdefault(hub_address, HubScanState(hub_address))

    def load_cache(self, entries: Iterable[AccessoryEntry]) -> None:
        for entry in entries:
            if entry.identity in self._unclaimed or entry.identity in self._live:
                logger.warning(f"Ignoring duplicate cached accessory: {entry.display_name}")
                continue
            logger.info(f"Loading accessory from cache: {entry.display_name}")
            self._unclaimed[entry.identity] = entry

    @property
    def unclaimed_entries(self) -> List[AccessoryEntry]:
        return list(self._unclaimed.values())

    @property
    def live_entries(self) -> List[AccessoryEntry]:
        return list(self._live.values())

    @property
    def hub_states(self) -> List[HubScanState]:
        return list(self._hub_states.values())

    def hub_state(self, hub_address: str) -> HubScanState:
        return self._hub_states[hub_address]

    def get_entry(self, identity: str) -> Optional[AccessoryEntry]:
        entry = self._live.get(identity)
        if entry is None:
            entry = self._unclaimed.get(identity)
        return entry

    def claim_or_create(
            self,
            record: ExtendedDeviceRecord,
            hub_address: str,
            token: Optional[str]
          ) -> Tuple[AccessoryEntry, bool]:
        """Returns (entry, created) for a discovered device.

        A cached entry with the same identity is claimed and updated in place; a device
        already claimed in this run reuses its entry. Only a device never seen before
        gets a new entry, so there is never more than one entry per identity.
        """
        identity = record.identity
        created = False
        entry = self._live.get(identity)
        if entry is None:
            entry = self._unclaimed.pop(identity, None)
            if entry is None:
                entry = AccessoryEntry.for_device(record)
                created = True
            self._live[identity] = entry
        entry.update_device(record, hub_address, token)
        return entry, created

    def mark_scanning(self, hub_address: str) -> None:
        state = self._hub_states[hub_address]
        state.status = HubScanStatus.SCANNING
        state.attempts += 1
        state.last_scan_time = time.monotonic()

    def mark_failed(self, hub_address: str, error: str, retry_delay: Optional[float]=None) -> None:
        state = self._hub_states[hub_address]
        state.status = HubScanStatus.FAILED_RETRY
        state.failures += 1
        state.last_error = error
        state.retry_delay = retry_delay

    def mark_scanned(self, hub_address: str) -> None:
        state = self._hub_states[hub_address]
        state.status = HubScanStatus.SUCCEEDED
        state.failures = 0
        state.last_error = None
        state.retry_delay = None
        state.completed = True

    @property
    def all_hubs_scanned(self) -> bool:
        return all(state.completed for state in self._hub_states.values())

    def collect_stale(self) -> Optional[List[AccessoryEntry]]:
        """Removes and returns every unclaimed entry, but only once all hubs have completed a scan.

        Returns None, leaving the unclaimed entries untouched, if any hub has not yet
        completed a scan.
        """
        if not self.all_hubs_scanned:
            return None
        stale = list(self._unclaimed.values())
        self._unclaimed.clear()
        return stale
