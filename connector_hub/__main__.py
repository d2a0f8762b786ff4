#!/usr/bin/env python3

# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from __future__ import annotations

import sys
import argparse
import json
import asyncio
import logging
from signal import SIGINT, SIGTERM

from connector_hub.internal_types import *

from connector_hub import (
    __version__ as pkg_version,
    ConnectorHubClient,
    ConnectorHubConfig,
    ConnectorHubDiscovery,
    ConnectorHubSimulator,
    JsonFileAccessoryRegistry,
    DeviceCommand,
    DeviceRecord,
    DeviceStatus,
    DeviceListReply,
    ConfigError,
    compute_access_token,
    HUB_PORT,
    MULTICAST_LISTEN_PORT,
    DEFAULT_RESPONSE_WAIT_TIME,
  )
from connector_hub.constants import DEFAULT_DEVICE_TYPE

class CmdExitError(RuntimeError):
    exit_code: int

    def __init__(self, exit_code: int, msg: Optional[str]=None):
        if msg is None:
            msg = f"Command exited with return code {exit_code}"
        super().__init__(msg)
        self.exit_code = exit_code

class ArgparseExitError(CmdExitError):
    pass

class NoExitArgumentParser(argparse.ArgumentParser):
    def exit(self, status=0, message=None):
        if message:
            self._print_message(message, sys.stderr)
        raise ArgparseExitError(status, message)

def status_summary(status: DeviceStatus) -> JsonableDict:
    return {
        "mac": status.mac,
        "device_type": status.device_type,
        "data": dict(status.data),
      }

def device_list_summary(reply: DeviceListReply) -> JsonableDict:
    devices: List[Jsonable] = []
    for device in reply.devices:
        if device.is_bridge:
            continue
        devices.append({
            "mac": device.mac,
            "device_type": device.device_type,
            "identity": device.identity,
          })
    src_addr = reply.src_addr
    return {
        "src_addr": None if src_addr is None else f"{src_addr[0]}:{src_addr[1]}",
        "hub_mac": reply.mac,
        "fw_version": reply.fw_version,
        "protocol_version": reply.protocol_version,
        "token": reply.token,
        "devices": devices,
      }

class CommandHandler:
    _argv: Optional[Sequence[str]]
    _parser: argparse.ArgumentParser
    _args: argparse.Namespace
    _provide_traceback: bool = True

    def __init__(self, argv: Optional[Sequence[str]]=None):
        self._argv = argv

    async def cmd_bare(self) -> int:
        print("A command is required", file=sys.stderr)
        return 1

    def get_config(self) -> ConnectorHubConfig:
        """Builds the configuration from --config, overridden by --key and --hub."""
        config_file: Optional[str] = self._args.config_file
        if config_file is None:
            config = ConnectorHubConfig()
        else:
            config = ConnectorHubConfig.load_json_file(config_file)
        if not self._args.connector_key is None:
            config.connector_key = self._args.connector_key
        if len(self._args.hub_ips) > 0:
            config.hub_ips = list(self._args.hub_ips)
        return config

    def get_connector_key(self, config: ConnectorHubConfig) -> str:
        connector_key = config.get_connector_key()
        if connector_key is None:
            raise CmdExitError(1, "An App Key is required; use --key or --config")
        return connector_key

    def create_client(self, config: ConnectorHubConfig, connector_key: Optional[str]=None) -> ConnectorHubClient:
        listen_port: int = self._args.listen_port
        return ConnectorHubClient(
            connector_key,
            response_wait_time=config.response_wait_time,
            request_timeout=config.request_timeout,
            hub_port=self._args.hub_port,
            listen_port=listen_port,
            join_multicast=listen_port == MULTICAST_LISTEN_PORT,
          )

    def get_single_hub(self, config: ConnectorHubConfig) -> str:
        hub_addresses = config.hub_addresses
        if config.uses_multicast or len(hub_addresses) != 1:
            raise CmdExitError(1, "Exactly one hub IP address is required; use --hub")
        return hub_addresses[0]

    def get_device_command(self) -> DeviceCommand:
        action: str = self._args.action
        value: Optional[int] = self._args.value
        try:
            if action in ('position', 'tilt'):
                if value is None:
                    raise CmdExitError(1, f"A value is required for '{action}'")
                return DeviceCommand.position(value) if action == 'position' else DeviceCommand.tilt(value)
            if not value is None:
                raise CmdExitError(1, f"'{action}' does not take a value")
            if action == 'open':
                return DeviceCommand.open()
            if action == 'close':
                return DeviceCommand.close()
            return DeviceCommand.stop()
        except ValueError as e:
            raise CmdExitError(1, str(e)) from e

    async def cmd_discover(self) -> int:
        config = self.get_config()
        errors = [ x for x in config.validate() if x.startswith('Hub IP') ]
        if len(errors) > 0:
            raise ConfigError(errors)
        wait_time: float = self._args.wait_time
        async with self.create_client(config, config.get_connector_key()) as client:
            for hub_address in config.hub_addresses:
                replies = await client.query_device_list(hub_address, response_wait_time=wait_time)
                if len(replies) == 0:
                    print(f"connector-hub: no reply from {hub_address}", file=sys.stderr)
                for reply in replies:
                    print(json.dumps(device_list_summary(reply), indent=2, sort_keys=True))
                    sys.stdout.flush()
        return 0

    async def cmd_status(self) -> int:
        config = self.get_config()
        hub_address = self.get_single_hub(config)
        mac: str = self._args.mac
        device_type: str = self._args.device_type
        async with self.create_client(config) as client:
            status = await client.query_status(hub_address, None, mac, device_type=device_type)
        if status is None:
            raise CmdExitError(1, f"No status received for {mac} from {hub_address}")
        print(json.dumps(status_summary(status), indent=2, sort_keys=True))
        return 0

    async def cmd_control(self) -> int:
        config = self.get_config()
        connector_key = self.get_connector_key(config)
        hub_address = self.get_single_hub(config)
        command = self.get_device_command()
        mac: str = self._args.mac
        device_type: str = self._args.device_type
        async with self.create_client(config, connector_key) as client:
            replies = await client.query_device_list(hub_address)
            if len(replies) == 0:
                raise CmdExitError(1, f"Unable to obtain a session token from {hub_address}")
            result = await client.send_command(hub_address, replies[0].token, mac, command, device_type=device_type)
        if not result.succeeded:
            reason = result.error if result.ack is None else result.ack.action_result
            raise CmdExitError(1, f"Command {command} to {mac} failed: {reason}")
        status = result.status
        if not status is None:
            print(json.dumps(status_summary(status), indent=2, sort_keys=True))
        return 0

    async def cmd_run(self) -> int:
        config = self.get_config()
        scan_timeout: Optional[float] = self._args.scan_timeout
        registry = JsonFileAccessoryRegistry(self._args.cache_file)
        discovery = ConnectorHubDiscovery.from_config(
            config,
            registry,
            client=self.create_client(config, config.get_connector_key()),
          )
        discovery.load_cache()
        async with discovery:
            if not await discovery.wait_for_initial_scan(timeout=scan_timeout):
                for state in discovery.reconciler.hub_states:
                    if not state.completed:
                        print(f"connector-hub: hub {state.hub_address} not reached: {state.last_error}", file=sys.stderr)
                raise CmdExitError(1, "Not all hubs could be scanned; stale accessories were not removed")
            stale = discovery.remove_stale_accessories()
        summary: JsonableDict = {
            "accessories": [ entry.to_jsonable() for entry in registry.accessories.values() ],
            "registered": [ entry.identity for entry in registry.registered ],
            "removed": [] if stale is None else [ entry.identity for entry in stale ],
          }
        print(json.dumps(summary, indent=2, sort_keys=True))
        return 0

    async def cmd_simulate(self) -> int:
        config = self.get_config()
        connector_key = self.get_connector_key(config)
        devices: List[DeviceRecord] = []
        for device_spec in self._args.devices:
            mac, _, device_type = device_spec.partition(',')
            devices.append(DeviceRecord(mac, device_type or DEFAULT_DEVICE_TYPE))
        simulator = ConnectorHubSimulator(
            connector_key,
            devices=devices,
            token=self._args.token,
            bind_address=self._args.bind_address,
            bind_port=self._args.hub_port,
          )
        if not self._provide_traceback:
            async def sigint_cleanup() -> None:
                try:
                    await asyncio.shield(simulator.final_result)
                    logging.debug("sigint_cleanup: Simulator exited without SIGINT/SIGTERM; exiting")
                except asyncio.CancelledError:
                    logging.debug("sigint_cleanup: Detected SIGINT/SIGTERM, cancelling simulator")
                    simulator.set_final_exception(CmdExitError(1, "Simulator terminated with SIGINT or SIGTERM"))
            loop = asyncio.get_running_loop()
        sig_task: Optional[asyncio.Task[None]] = None
        try:
            async with simulator as s:
                if not self._provide_traceback:
                    sig_task = asyncio.create_task(sigint_cleanup())
                    for signal in (SIGINT, SIGTERM):
                        loop.add_signal_handler(signal, sig_task.cancel)
                print(f"Simulated hub listening on {self._args.bind_address}:{s.port}, token={s.token}", file=sys.stderr)
                await s.wait_for_done()
        finally:
            if not sig_task is None:
                for signal in (SIGINT, SIGTERM):
                    loop.remove_signal_handler(signal)
                sig_task.cancel()
                try:
                    await sig_task
                except asyncio.CancelledError:
                    pass
        return 0

    async def cmd_token(self) -> int:
        config = self.get_config()
        connector_key = self.get_connector_key(config)
        print(compute_access_token(self._args.token, connector_key))
        return 0

    async def cmd_version(self) -> int:
        print(pkg_version)
        return 0

    async def arun(self) -> int:
        """Run the connector-hub command-line tool with provided arguments

        Args:
            argv (Optional[Sequence[str]], optional):
                A list of commandline arguments (NOT including the program as argv[0]!),
                or None to use sys.argv[1:]. Defaults to None.

        Returns:
            int: The exit code that would be returned if this were run as a standalone command.
        """
        parser = NoExitArgumentParser(description="Discover and control Connector hub window coverings.")


        # ======================= Main command

        self._parser = parser
        parser.add_argument('--traceback', "--tb", action='store_true', default=False,
                            help='Display detailed exception information')
        parser.add_argument('--log-level', dest='log_level', default='warning',
                            choices=['debug', 'info', 'warning', 'error', 'critical'],
                            help='''The logging level to use. Default: warning''')
        parser.add_argument('-c', '--config', dest='config_file', default=None,
                            help='''A JSON configuration file with connectorKey, hubIps, etc.''')
        parser.add_argument('-k', '--key', dest='connector_key', default=None,
                            help='''The App Key from the Connector app. Overrides the configuration file.''')
        parser.add_argument('--hub', dest='hub_ips', action='append', default=[],
                            help='''A hub IP address. May be repeated. Overrides the configuration file. Default: multicast discovery''')
        parser.add_argument('--port', dest='hub_port', type=int, default=HUB_PORT,
                            help=f'''The UDP port hubs listen on. Default: {HUB_PORT}''')
        parser.add_argument('--listen-port', dest='listen_port', type=int, default=MULTICAST_LISTEN_PORT,
                            help=f'''The local UDP port to bind to. 0 picks a free port and does not receive multicast reports. Default: {MULTICAST_LISTEN_PORT}''')
        parser.set_defaults(func=self.cmd_bare)

        subparsers = parser.add_subparsers(
                            title='Commands',
                            description='Valid commands',
                            help='Additional help available with "<command-name> -h"')


        # ======================= discover

        parser_discover = subparsers.add_parser('discover', description="Query hubs for their device lists")
        parser_discover.add_argument('--wait-time', type=float, default=DEFAULT_RESPONSE_WAIT_TIME,
                            help=f'''The amount of time to wait for responses, in seconds. Default: {DEFAULT_RESPONSE_WAIT_TIME}''')
        parser_discover.set_defaults(func=self.cmd_discover)

        # ======================= status

        parser_status = subparsers.add_parser('status', description="Query the status of one device")
        parser_status.add_argument('mac', help='''The MAC address of the device, as reported by discover''')
        parser_status.add_argument('--device-type', dest='device_type', default=DEFAULT_DEVICE_TYPE,
                            help=f'''The device type code. Default: {DEFAULT_DEVICE_TYPE}''')
        parser_status.set_defaults(func=self.cmd_status)

        # ======================= control

        parser_control = subparsers.add_parser('control', description="Send a command to one device")
        parser_control.add_argument('mac', help='''The MAC address of the device, as reported by discover''')
        parser_control.add_argument('action', choices=['open', 'close', 'stop', 'position', 'tilt'],
                            help='''The command to send''')
        parser_control.add_argument('value', nargs='?', type=int, default=None,
                            help='''The target position (0-100) or angle (0-180) for position and tilt''')
        parser_control.add_argument('--device-type', dest='device_type', default=DEFAULT_DEVICE_TYPE,
                            help=f'''The device type code. Default: {DEFAULT_DEVICE_TYPE}''')
        parser_control.set_defaults(func=self.cmd_control)

        # ======================= run

        parser_run = subparsers.add_parser('run', description="Discover all hubs and reconcile a JSON accessory cache file")
        parser_run.add_argument('--cache', dest='cache_file', default='connector-accessories.json',
                            help='''The JSON accessory cache file. Default: connector-accessories.json''')
        parser_run.add_argument('--scan-timeout', dest='scan_timeout', type=float, default=60.0,
                            help='''The maximum time to wait for every hub to be scanned, in seconds. Default: 60''')
        parser_run.set_defaults(func=self.cmd_run)

        # ======================= simulate

        parser_simulate = subparsers.add_parser('simulate', description="Run a simulated hub")
        parser_simulate.add_argument('-d', '--device', dest='devices', action='append', default=[],
                            help='''A <mac>[,<device-type>] device attached to the simulated hub. May be repeated.''')
        parser_simulate.add_argument('-b', '--bind', dest='bind_address', default='127.0.0.1',
                            help='''The local IP address to bind to. Default: 127.0.0.1''')
        parser_simulate.add_argument('--token', default=None,
                            help='''The session token to issue. Default: random''')
        parser_simulate.set_defaults(func=self.cmd_simulate)

        # ======================= token

        parser_token = subparsers.add_parser('token',
                                description='''Compute the AccessToken for a session token and App Key.''')
        parser_token.add_argument('token', help='''The session token from a device list reply''')
        parser_token.set_defaults(func=self.cmd_token)

        # ======================= version

        parser_version = subparsers.add_parser('version',
                                description='''Display version information.''')
        parser_version.set_defaults(func=self.cmd_version)

        # =========================================================

        try:
            args = parser.parse_args(self._argv)
        except ArgparseExitError as ex:
            return ex.exit_code
        traceback: bool = args.traceback
        self._provide_traceback = traceback

        try:
            logging.basicConfig(
                level=logging.getLevelName(args.log_level.upper()),
            )
            self._args = args
            func: Callable[[], Awaitable[int]] = args.func
            logging.debug(f"Running command {func.__name__}, tb = {traceback}")
            rc = await func()
            logging.debug(f"Command {func.__name__} returned {rc}")
        except Exception as ex:
            if isinstance(ex, CmdExitError):
                rc = ex.exit_code
            else:
                rc = 1
            if rc != 0:
                if traceback:
                    raise
            print(f"connector-hub: error: {ex}", file=sys.stderr)
        except BaseException as ex:
            print(f"connector-hub: Unhandled exception: {ex}", file=sys.stderr)
            raise

        return rc

    def run(self) -> int:
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            rc = loop.run_until_complete(self.arun())
        finally:
            loop.close()
        return rc

def run(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = CommandHandler(argv).run()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

async def arun(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = await CommandHandler(argv).arun()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

# allow running with "python3 -m", or as a standalone script
if __name__ == "__main__":
    sys.exit(run())
