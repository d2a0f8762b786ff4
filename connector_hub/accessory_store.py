#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""Simple AccessoryRegistry implementations: in-memory, and persisted to a JSON file."""

from __future__ import annotations

import json
import os

from .internal_types import *
from .pkg_logging import logger
from .device import ExtendedDeviceRecord
from .registry import AccessoryEntry, AccessoryRegistry

AccessoryEventHandler = Callable[[AccessoryEntry, ExtendedDeviceRecord, str, Optional[str]], None]

class InMemoryAccessoryRegistry(AccessoryRegistry):
    """Keeps registered accessories in a dict keyed by identity, and records every call for inspection."""

    accessories: Dict[str, AccessoryEntry]
    cached: List[AccessoryEntry]
    registered: List[AccessoryEntry]
    updated: List[AccessoryEntry]
    unregistered: List[AccessoryEntry]
    discovered: List[Tuple[AccessoryEntry, ExtendedDeviceRecord, str, Optional[str]]]
    on_device_discovered: Optional[AccessoryEventHandler] = None

    def __init__(self, cached: Optional[Iterable[AccessoryEntry]]=None):
        self.cached = [] if cached is None else list(cached)
        self.accessories = { entry.identity: entry for entry in self.cached }
        self.registered = []
        self.updated = []
        self.unregistered = []
        self.discovered = []

    def load_cached_accessories(self) -> List[AccessoryEntry]:
        return list(self.cached)

    def register_accessories(self, entries: List[AccessoryEntry]) -> None:
        for entry in entries:
            if entry.identity in self.accessories:
                logger.warning(f"Ignoring registration of already registered accessory: {entry}")
                continue
            self.accessories[entry.identity] = entry
            self.registered.append(entry)

    def update_accessories(self, entries: List[AccessoryEntry]) -> None:
        for entry in entries:
            self.accessories[entry.identity] = entry
            self.updated.append(entry)

    def unregister_accessories(self, entries: List[AccessoryEntry]) -> None:
        for entry in entries:
            self.accessories.pop(entry.identity, None)
            self.unregistered.append(entry)

    def device_discovered(
            self,
            entry: AccessoryEntry,
            record: ExtendedDeviceRecord,
            hub_address: str,
            token: Optional[str]
          ) -> None:
        self.discovered.append((entry, record, hub_address, token))
        if not self.on_device_discovered is None:
            self.on_device_discovered(entry, record, hub_address, token)

class JsonFileAccessoryRegistry(InMemoryAccessoryRegistry):
    """An accessory registry persisted as a JSON list of entries, rewritten on every change."""

    pathname: str

    def __init__(self, pathname: str):
        self.pathname = os.path.abspath(os.path.expanduser(pathname))
        super().__init__(self._read_file())

    def _read_file(self) -> List[AccessoryEntry]:
        if not os.path.exists(self.pathname):
            return []
        with open(self.pathname, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, list):
            raise ValueError(f"Accessory cache file {self.pathname} does not contain a JSON list")
        result: List[AccessoryEntry] = []
        for item in data:
            try:
                result.append(AccessoryEntry.from_jsonable(item))
            except ValueError as e:
                logger.warning(f"Skipping malformed entry in {self.pathname}: {e}")
        return result

    def save(self) -> None:
        data = [ entry.to_jsonable() for entry in self.accessories.values() ]
        tmp_pathname = self.pathname + '.tmp'
        with open(tmp_pathname, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp_pathname, self.pathname)
        logger.debug(f"Saved {len(data)} accessories to {self.pathname}")

    def register_accessories(self, entries: List[AccessoryEntry]) -> None:
        super().register_accessories(entries)
        self.save()

    def update_accessories(self, entries: List[AccessoryEntry]) -> None:
        super().update_accessories(entries)
        self.save()

    def unregister_accessories(self, entries: List[AccessoryEntry]) -> None:
        super().unregister_accessories(entries)
        self.save()
