"""
TableMesh
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import logging
import socket
from typing import Optional

import zeroconf
from zeroconf import IPVersion
from zeroconf.asyncio import AsyncZeroconf, AsyncServiceInfo

from protocol import PROTO_VERSION
from transport import NETWORK, PEER_UNAVAILABLE, UNAVAILABLE_ID, TransportError


def default_advertise_host() -> str:
    # no packet is sent, this only picks the outgoing interface
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        try:
            probe.connect(("224.0.0.251", 5353))
            return probe.getsockname()[0]
        except OSError:
            return "127.0.0.1"


class PeerDiscovery:
    """
    Maps transport addresses to websocket endpoints over mDNS.
    Every address is one service instance `<address>.<service type>`, so the name itself is the claim.
    """
    _services: dict

    def __init__(self, service_type: str = "_tablemesh._tcp.local.", advertise_host: Optional[str] = None,
                 resolve_timeout_ms: int = 3000):
        self._zeroconf = AsyncZeroconf(ip_version=IPVersion.V4Only)
        self.service_type = service_type
        self.advertise_host = advertise_host or default_advertise_host()
        self.resolve_timeout_ms = resolve_timeout_ms
        self._services = dict()

    def _instance_name(self, address: str) -> str:
        return f"{address}.{self.service_type}"

    async def advertise(self, address: str, port: int):
        if address in self._services:
            raise TransportError(UNAVAILABLE_ID, f"{address} is already advertised here")
        service = AsyncServiceInfo(
            self.service_type,
            self._instance_name(address),
            parsed_addresses=[self.advertise_host],
            port=port,
            properties={"proto": str(PROTO_VERSION)},
            server=f"{address}.local.",
        )
        try:
            await self._zeroconf.async_register_service(service)
        except zeroconf.NonUniqueNameException as e:
            raise TransportError(UNAVAILABLE_ID, f"{address} is already taken") from e
        except zeroconf.Error as e:
            logging.exception(e)
            raise TransportError(NETWORK, f"could not advertise {address}") from e
        self._services[address] = service
        logging.debug(f"Advertised {address} at {self.advertise_host}:{port}")

    async def withdraw(self, address: str):
        service = self._services.pop(address, None)
        if service is None:
            return
        await self._zeroconf.async_unregister_service(service)
        logging.debug(f"Withdrew {address}")

    async def resolve(self, address: str) -> tuple:
        info = AsyncServiceInfo(self.service_type, self._instance_name(address))
        found = await info.async_request(self._zeroconf.zeroconf, self.resolve_timeout_ms)
        hosts = info.parsed_addresses() if found else []
        if not hosts or info.port is None:
            raise TransportError(PEER_UNAVAILABLE, f"could not resolve {address}")
        logging.debug(f"Resolved {address} to {hosts[0]}:{info.port}")
        return hosts[0], info.port

    async def close(self):
        await self._zeroconf.async_unregister_all_services()
        self._services.clear()
        await self._zeroconf.async_close()
        logging.debug(f"Unregistered services.")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
