#
# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

"""
ConnectorHubDiscovery -- The discovery orchestrator, which:

  1. Restores cached accessory entries from the host registry (load_cache())
  2. Scans every configured hub address concurrently, or the multicast group if
     none are configured (start())
  3. Retries each hub that does not answer, indefinitely, after a delay chosen by
     a RetryPolicy, since a device may come online at any time
  4. Reconciles each discovered device against the cached entries, registering
     new accessories and updating existing ones, never duplicating an identity
  5. On request, removes cached accessories that no hub reported, once every hub
     has completed a scan (remove_stale_accessories())

Each hub moves through PENDING -> SCANNING -> SUCCEEDED or FAILED_RETRY; a failure
in one hub's scan never affects the others and is never raised to the caller.

Note that "hub" here includes WiFi motors that act as their own hub.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from .internal_types import *
from .pkg_logging import logger, configure_debug_logging
from .constants import MULTICAST_ADDRESS, DEFAULT_DISCOVERY_RETRY_INTERVAL
from .exceptions import ConnectorHubError, ConfigError
from .config import ConnectorHubConfig
from .device import ExtendedDeviceRecord
from .hub_message import DeviceListReply
from .client import ConnectorHubClient
from .registry import AccessoryEntry, AccessoryRegistry, DeviceRegistryReconciler, HubScanState
from .util import is_multicast_address

class RetryPolicy(ABC):
    """Chooses how long to wait before re-scanning a hub that did not answer."""

    @abstractmethod
    def next_delay(self, failures: int) -> float:
        """Returns the delay in seconds after `failures` consecutive failed scans (failures >= 1)."""
        raise NotImplementedError()

class FixedIntervalRetryPolicy(RetryPolicy):
    interval: float

    def __init__(self, interval: float=DEFAULT_DISCOVERY_RETRY_INTERVAL):
        self.interval = interval

    def next_delay(self, failures: int) -> float:
        return self.interval

class ExponentialBackoffRetryPolicy(RetryPolicy):
    initial_delay: float
    multiplier: float
    max_delay: float

    def __init__(self, initial_delay: float=DEFAULT_DISCOVERY_RETRY_INTERVAL, multiplier: float=2.0, max_delay: float=300.0):
        self.initial_delay = initial_delay
        self.multiplier = multiplier
        self.max_delay = max_delay

    def next_delay(self, failures: int) -> float:
        return min(self.max_delay, self.initial_delay * (self.multiplier ** max(0, failures - 1)))

class ConnectorHubDiscovery(AsyncContextManager['ConnectorHubDiscovery']):
    """
    Discovers Connector devices and keeps an AccessoryRegistry in sync with them.

    Usage:
        discovery = ConnectorHubDiscovery.from_config(config, registry)
        async with discovery:
            await discovery.wait_for_initial_scan()
            await discovery.remove_stale_accessories_when_ready()
    """

    client: ConnectorHubClient
    registry: AccessoryRegistry
    retry_policy: RetryPolicy
    hub_addresses: List[str]
    """The hub addresses being scanned; the multicast address if no hubs were configured."""

    owns_client: bool
    """If True, the client is started and stopped with this object."""

    reconciler: DeviceRegistryReconciler
    discovered_records: Dict[str, ExtendedDeviceRecord]
    """The most recent record for each live device, keyed by accessory identity."""

    _hub_tasks: Dict[str, asyncio.Task[None]]
    _cache_loaded: bool = False
    _started: bool = False

    def __init__(
            self,
            client: ConnectorHubClient,
            registry: AccessoryRegistry,
            hub_ips: Optional[Iterable[str]]=None,
            retry_policy: Optional[RetryPolicy]=None,
            owns_client: bool=False,
          ) -> None:
        self.client = client
        self.registry = registry
        self.retry_policy = FixedIntervalRetryPolicy() if retry_policy is None else retry_policy
        self.owns_client = owns_client
        hub_addresses = [] if hub_ips is None else list(hub_ips)
        if len(hub_addresses) == 0:
            logger.info('No device IPs configured, defaulting to multicast discovery')
            hub_addresses = [ MULTICAST_ADDRESS ]
        # dict preserves order and drops duplicate addresses
        self.hub_addresses = list(dict.fromkeys(hub_addresses))
        self.reconciler = DeviceRegistryReconciler(self.hub_addresses)
        self.discovered_records = {}
        self._hub_tasks = {}

    @classmethod
    def from_config(
            cls,
            config: ConnectorHubConfig,
            registry: AccessoryRegistry,
            retry_policy: Optional[RetryPolicy]=None,
            client: Optional[ConnectorHubClient]=None,
          ) -> ConnectorHubDiscovery:
        """Creates an orchestrator that owns its client from a validated configuration.

        If client is None, one is created from the configuration.

        Raises ConfigError listing every problem if the configuration is invalid; in that
        case nothing is discovered and no cached accessories are touched.
        """
        configure_debug_logging(config.enable_debug_log is True)
        validation_errors = config.validate()
        if len(validation_errors) > 0:
            logger.error(f"Discovery suspended. Invalid configuration: {validation_errors}")
            raise ConfigError(validation_errors)
        if client is None:
            client = ConnectorHubClient(
                config.get_connector_key(),
                response_wait_time=config.response_wait_time,
                request_timeout=config.request_timeout,
              )
        if retry_policy is None:
            retry_policy = FixedIntervalRetryPolicy(config.discovery_retry_interval)
        logger.debug('Finished initializing discovery')
        return cls(client, registry, hub_ips=config.hub_addresses if not config.uses_multicast else None,
                   retry_policy=retry_policy, owns_client=True)

    def load_cache(self, entries: Optional[Iterable[AccessoryEntry]]=None) -> None:
        """Restores previously registered accessories. Must be called before start().

        If entries is None they are obtained from registry.load_cached_accessories().
        """
        if self._started:
            raise ConnectorHubError("load_cache() must be called before discovery starts")
        if entries is None:
            entries = self.registry.load_cached_accessories()
        self.reconciler.load_cache(entries)
        self._cache_loaded = True
        logger.debug('Finished restoring all cached accessories')

    async def start(self) -> None:
        """Starts a scan task for every hub address. Returns without waiting for any scan."""
        if self._started:
            raise ConnectorHubError("Discovery has already been started")
        if not self._cache_loaded:
            self.load_cache()
        if self.owns_client and not self.client.is_running:
            await self.client.start()
        self._started = True
        for hub_address in self.hub_addresses:
            self._hub_tasks[hub_address] = asyncio.create_task(self._run_hub_task(hub_address))

    async def stop(self) -> None:
        """Cancels any outstanding scans and, if owned, stops the client."""
        tasks = list(self._hub_tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Exception while cancelling hub scan task: {e}")
        if self.owns_client and self.client.is_running:
            await self.client.stop_and_wait()

    async def __aenter__(self) -> ConnectorHubDiscovery:
        await self.start()
        return self

    async def __aexit__(
            self,
            exc_type: Optional[type[BaseException]],
            exc: Optional[BaseException],
            tb: Optional[TracebackType]
      ) -> bool:
        await self.stop()
        return False

    def hub_state(self, hub_address: str) -> HubScanState:
        return self.reconciler.hub_state(hub_address)

    @property
    def all_hubs_scanned(self) -> bool:
        return self.reconciler.all_hubs_scanned

    async def _run_hub_task(self, hub_address: str) -> None:
        logger.debug(f"Hub scan task for {hub_address} starting")
        try:
            while not await self.scan_hub(hub_address):
                retry_delay = self.hub_state(hub_address).retry_delay
                await asyncio.sleep(0.0 if retry_delay is None else retry_delay)
        except asyncio.CancelledError:
            logger.debug(f"Hub scan task for {hub_address} cancelled; exiting")
            raise
        logger.debug(f"Hub scan task for {hub_address} exiting")

    async def scan_hub(self, hub_address: str) -> bool:
        """Performs one scan of a hub and reconciles the devices it reports.

        Returns True if the hub answered. On failure the hub is left in FAILED_RETRY and
        False is returned; nothing is raised.
        """
        self.reconciler.mark_scanning(hub_address)
        try:
            replies = await self.client.query_device_list(hub_address)
            if len(replies) > 0:
                for reply in replies:
                    self._process_reply(hub_address, reply)
        except Exception as e:
            logger.exception(f"Unexpected error scanning {hub_address}: {e}")
            self._scan_failed(hub_address, f"Unexpected error: {e}")
            return False
        if len(replies) == 0:
            self._scan_failed(hub_address, "No reply")
            return False
        # Record that we have successfully scanned this hub for devices.
        self.reconciler.mark_scanned(hub_address)
        return True

    def _scan_failed(self, hub_address: str, error: str) -> None:
        delay = self.retry_policy.next_delay(self.hub_state(hub_address).failures + 1)
        self.reconciler.mark_failed(hub_address, error, retry_delay=delay)
        logger.warning(f"Failed to reach {hub_address}, retry in {delay} seconds")

    def _process_reply(self, hub_address: str, reply: DeviceListReply) -> None:
        logger.debug(f"Discovered devices: {reply}")
        # Commands go to the hub that answered, not to the multicast group
        control_address = hub_address
        if is_multicast_address(hub_address) and not reply.hub_ip is None:
            control_address = reply.hub_ip
        for device in reply.devices:
            if device.is_bridge:
                continue
            record = ExtendedDeviceRecord.from_device_record(device, reply.fw_version)
            self._process_device(record, control_address, reply.token)

    def _process_device(self, record: ExtendedDeviceRecord, hub_address: str, token: Optional[str]) -> None:
        entry, created = self.reconciler.claim_or_create(record, hub_address, token)
        if created:
            logger.info(f"Adding new accessory: {entry.display_name}")
            self.registry.register_accessories([entry])
        else:
            self.registry.update_accessories([entry])
        self.discovered_records[entry.identity] = record
        logger.debug(f"Creating handler for accessory: {entry.display_name}")
        self.registry.device_discovered(entry, record, hub_address, token)

    async def discover_once(self) -> List[ExtendedDeviceRecord]:
        """Scans every hub once, concurrently, without retrying. Returns all live device records
           known after the scan."""
        if not self._cache_loaded:
            self.load_cache()
        await asyncio.gather(*(self.scan_hub(hub_address) for hub_address in self.hub_addresses))
        return list(self.discovered_records.values())

    async def wait_for_initial_scan(self, timeout: Optional[float]=None) -> bool:
        """Waits until every hub has completed a scan. Returns False if the timeout expires first;
           scans continue in the background regardless."""
        tasks = list(self._hub_tasks.values())
        if len(tasks) == 0:
            return self.all_hubs_scanned
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        return len(pending) == 0 and self.all_hubs_scanned

    def remove_stale_accessories(self) -> Optional[List[AccessoryEntry]]:
        """Unregisters cached accessories that no hub reported.

        We don't know which accessories are stale until we have scanned all hubs, so this
        does nothing and returns None unless every hub has completed at least one scan.
        Otherwise returns the list of removed entries.
        """
        stale = self.reconciler.collect_stale()
        if stale is None:
            logger.debug("Not all hubs have been scanned; deferring removal of stale accessories")
            return None
        for entry in stale:
            logger.info(f"Removing stale accessory: {entry.display_name}")
        if len(stale) > 0:
            self.registry.unregister_accessories(stale)
        logger.debug('Finished looking for stale accessories to remove')
        return stale

    async def remove_stale_accessories_when_ready(self) -> List[AccessoryEntry]:
        """Waits until every hub has completed a scan, then removes stale accessories."""
        while True:
            stale = self.remove_stale_accessories()
            if not stale is None:
                return stale
            await asyncio.sleep(self.retry_policy.next_delay(1))
