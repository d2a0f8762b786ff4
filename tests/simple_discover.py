#!/usr/bin/env python3

import logging
import asyncio
import connector_hub as ch

#logging.basicConfig(level=logging.DEBUG)

async def amain():
    # The App Key is only needed for commands; discovery queries are unauthenticated.
    # All other parameters to ConnectorHubClient are optional; they allow you to set wait times, ports, etc.
    async with ch.ConnectorHubClient() as client:
        # With no hub address, query the multicast group. Every hub that hears the query replies
        # separately; query_device_list() collects replies until the wait time has elapsed.
        for reply in await client.query_device_list(ch.MULTICAST_ADDRESS):
            print(f"Hub {reply.hub_ip} (fw {reply.fw_version}, token {reply.token}):")
            for device in reply.devices:
                if not device.is_bridge:
                    print(f"  {device.mac} type={device.device_type} identity={device.identity}")

loop = asyncio.new_event_loop()
try:
    asyncio.set_event_loop(loop)
    loop.run_until_complete(amain())
finally:
    loop.close()
