"""
TCP Transport
=============

WiFi/Ethernet Brother printers on the raw printing port (9100).

Discovery probes the configured host list (CHECKIN_PRINT_WIFI_HOSTS);
a host that accepts a TCP connection is reported as a printer.
"""

import asyncio
import logging
from typing import Optional, Dict, Any, List, Tuple

from .base import TransportAdapter, failure, CONNECTION_LOST
from ..models import Printer, TransportType
from ..config import WIFI_HOSTS, RAW_PORT, DEFAULT_CONNECTION_TIMEOUT

logger = logging.getLogger(__name__)


def parse_host(entry: str, default_port: int = RAW_PORT) -> Tuple[str, int]:
    """Split ``host[:port]``."""
    if ':' in entry:
        host, port = entry.rsplit(':', 1)
        return host, int(port)
    return entry, default_port


def printer_id_for(host: str, port: int) -> str:
    return f"NET-{host.replace('.', '-')}-{port}"


class TcpTransport(TransportAdapter):
    """Raw TCP printing to network printers."""

    transport_types = (TransportType.WIFI,)

    def __init__(self, hosts: Optional[List[str]] = None, port: int = RAW_PORT,
                 timeout: float = DEFAULT_CONNECTION_TIMEOUT):
        super().__init__()
        self.hosts = list(WIFI_HOSTS if hosts is None else hosts)
        self.port = port
        self.timeout = timeout
        self._targets: Dict[str, Tuple[str, int]] = {}
        self._links: Dict[str, Tuple[asyncio.StreamReader, asyncio.StreamWriter]] = {}

    async def _open(self, host: str, port: int, timeout: float):
        return await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)

    @staticmethod
    async def _close_writer(writer: asyncio.StreamWriter):
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"[Transport:wifi] Close error ignored: {e}")

    async def _probe(self, host: str, port: int) -> bool:
        try:
            _, writer = await self._open(host, port, self.timeout)
        except (OSError, asyncio.TimeoutError):
            return False
        await self._close_writer(writer)
        return True

    async def discover(self) -> List[Printer]:
        targets = [parse_host(entry, self.port) for entry in self.hosts]
        online = await asyncio.gather(*(self._probe(host, port) for host, port in targets))

        printers = []
        for (host, port), ok in zip(targets, online):
            if not ok:
                logger.info(f"[Transport:wifi] No printer answering at {host}:{port}")
                continue
            printer_id = printer_id_for(host, port)
            self._targets[printer_id] = (host, port)
            printers.append(Printer(
                id=printer_id,
                name=f"Brother printer at {host}",
                model="Brother QL (network)",
                transport_type=TransportType.WIFI,
                address=host,
                port=port,
            ))
        logger.info(f"[Transport:wifi] Discovered {len(printers)} printer(s)")
        return printers

    def register(self, printer: Printer):
        if printer.address:
            self._targets[printer.id] = (printer.address, printer.port or self.port)

    async def connect(self, printer_id: str, transport_type: TransportType) -> bool:
        target = self._targets.get(printer_id)
        if target is None:
            logger.warning(f"[Transport:wifi] Unknown printer {printer_id}")
            return False

        await self.disconnect(printer_id)
        host, port = target
        try:
            self._links[printer_id] = await self._open(host, port, self.timeout)
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"[Transport:wifi] Connect to {host}:{port} failed: {e!r}")
            return False
        logger.info(f"[Transport:wifi] Connected to {host}:{port}")
        return True

    async def connect_direct(self, transport_type: TransportType, address: str,
                             port: Optional[int] = None, timeout_ms: int = 10000) -> bool:
        return await self._probe(address, port or self.port)

    async def disconnect(self, printer_id: Optional[str] = None) -> bool:
        ids = list(self._links) if printer_id is None else [printer_id]
        for link_id in ids:
            link = self._links.pop(link_id, None)
            if link is not None:
                await self._close_writer(link[1])
        return True

    async def _send(self, writer: asyncio.StreamWriter, data: bytes, copies: int):
        for _ in range(max(1, copies)):
            writer.write(data)
        await writer.drain()

    async def transmit(self, data: bytes, settings: Dict[str, Any]) -> Dict[str, Any]:
        printer_id = settings.get('printerId')
        link = self._links.get(printer_id)
        if link is None:
            return failure(f"Printer {printer_id} is not connected", 'CONNECTION_LOST')

        reader, writer = link
        if writer.is_closing() or reader.at_eof():
            self._links.pop(printer_id, None)
            self._notify(CONNECTION_LOST, printer_id, reason="Socket closed by printer")
            return failure("Connection closed by printer", 'CONNECTION_LOST')

        try:
            await asyncio.wait_for(self._send(writer, data, settings.get('copies', 1)), timeout=self.timeout)
        except asyncio.TimeoutError:
            return failure("Timed out sending to printer", 'CONNECTION_TIMEOUT')
        except OSError as e:
            self._links.pop(printer_id, None)
            self._notify(CONNECTION_LOST, printer_id, reason=str(e))
            return failure(f"Connection error: {e}", 'CONNECTION_LOST')
        return {'success': True, 'bytes_sent': len(data)}

    async def transmit_direct(self, data: bytes, settings: Dict[str, Any],
                              transport_type: TransportType, address: str,
                              port: Optional[int] = None, timeout_ms: int = 10000) -> Dict[str, Any]:
        port = port or self.port
        try:
            _, writer = await self._open(address, port, timeout_ms / 1000)
        except asyncio.TimeoutError:
            return failure(f"Connection timeout to {address}:{port}", 'CONNECTION_TIMEOUT')
        except ConnectionRefusedError:
            return failure(f"Connection refused by {address}:{port}", 'CONNECTION_FAILED')
        except OSError as e:
            return failure(f"Cannot reach {address}:{port}: {e}", 'PRINTER_NOT_FOUND')

        try:
            await asyncio.wait_for(self._send(writer, data, settings.get('copies', 1)), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError:
            return failure("Timed out sending to printer", 'CONNECTION_TIMEOUT')
        except OSError as e:
            return failure(f"Connection error: {e}", 'CONNECTION_LOST')
        finally:
            await self._close_writer(writer)
        return {'success': True, 'bytes_sent': len(data)}

    async def query_status(self, printer_id: Optional[str] = None) -> Dict[str, Any]:
        if printer_id is None:
            return {'connected': bool(self._links), 'printers': sorted(self._links)}
        link = self._links.get(printer_id)
        connected = link is not None and not link[1].is_closing() and not link[0].at_eof()
        host, port = self._targets.get(printer_id, (None, None))
        return {'connected': connected, 'printerId': printer_id, 'host': host, 'port': port}
