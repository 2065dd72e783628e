"""
In-Memory Transport
===================

Simulated printers for demos and tests.

Behaves like a real adapter: printers must be connected before they
print, failures come back as error dicts, and connection loss is pushed
as an event. Failures and latency are scripted per printer.
"""

import asyncio
import logging
from collections import deque
from datetime import datetime
from typing import Optional, Dict, Any, List

from .base import TransportAdapter, failure, DISCOVERED, STATUS_CHANGED, CONNECTION_LOST
from ..models import Printer, PrinterCapabilities, TransportType

logger = logging.getLogger(__name__)


def demo_printers() -> List[Printer]:
    """Printers offered in simulator mode."""
    return [
        Printer(
            id='SIM-QL820',
            name='Brother QL-820NWB (Simulated)',
            model='QL-820NWB',
            transport_type=TransportType.WIFI,
            address='192.168.1.100',
            port=9100,
        ),
        Printer(
            id='SIM-QL810',
            name='Brother QL-810W (Simulated)',
            model='QL-810W',
            transport_type=TransportType.BLUETOOTH,
            address='00:80:77:31:01:07',
            capabilities=PrinterCapabilities(supports_wifi=False),
        ),
    ]


class InMemoryTransport(TransportAdapter):
    """Transport adapter backed by simulated printers."""

    transport_types = tuple(TransportType)

    def __init__(self, printers: Optional[List[Printer]] = None, latency: float = 0.0):
        super().__init__()
        self.latency = latency
        self.printers: Dict[str, Printer] = {p.id: p for p in (printers or [])}
        self.connected: set = set()
        self.transmissions: List[Dict[str, Any]] = []

        # Scripted behaviour
        self.permissions_granted = True
        self.unreachable: set = set()
        self.probe_latency: Dict[str, float] = {}
        self.connect_failures: Dict[str, Dict[str, Any]] = {}
        self._transmit_failures: deque = deque()
        self._failing_transmissions: Dict[int, Dict[str, Any]] = {}

        self.discover_calls = 0
        self.connect_calls = 0
        self.disconnect_calls = 0

    @classmethod
    def with_demo_printers(cls, latency: float = 0.2) -> 'InMemoryTransport':
        return cls(demo_printers(), latency=latency)

    # =========================================================================
    # Scripting
    # =========================================================================

    def add_printer(self, printer: Printer):
        self.printers[printer.id] = printer
        self._notify(DISCOVERED, printer.id, printer=printer)

    def register(self, printer: Printer):
        self.printers.setdefault(printer.id, printer)

    def fail_next_transmit(self, error: str, code: Optional[str] = None, count: int = 1):
        """Make the next ``count`` transmissions fail."""
        for _ in range(count):
            self._transmit_failures.append(failure(error, code))

    def fail_transmission(self, number: int, error: str, code: Optional[str] = None):
        """Make the n-th transmission (1-based, counted over the adapter's life) fail."""
        self._failing_transmissions[number] = failure(error, code)

    def fail_connect(self, printer_id: str, error: str = "Connection refused",
                     code: Optional[str] = 'CONNECTION_FAILED'):
        self.connect_failures[printer_id] = failure(error, code)

    def clear_failures(self):
        self.connect_failures.clear()
        self._transmit_failures.clear()
        self._failing_transmissions.clear()
        self.unreachable.clear()

    def set_reachable(self, printer_id: str, reachable: bool):
        if reachable:
            self.unreachable.discard(printer_id)
        else:
            self.unreachable.add(printer_id)

    def lose_connection(self, printer_id: str, reason: str = "Link dropped"):
        """Simulate the printer going away."""
        self.connected.discard(printer_id)
        self._notify(CONNECTION_LOST, printer_id, reason=reason)

    def change_status(self, printer_id: str, status: str, **data):
        self._notify(STATUS_CHANGED, printer_id, status=status, **data)

    async def _delay(self, printer_id: Optional[str] = None):
        delay = self.probe_latency.get(printer_id, self.latency) if printer_id else self.latency
        if delay:
            await asyncio.sleep(delay)

    # =========================================================================
    # Adapter
    # =========================================================================

    async def request_permissions(self) -> bool:
        return self.permissions_granted

    async def discover(self) -> List[Printer]:
        self.discover_calls += 1
        await self._delay()
        found = [p for p_id, p in self.printers.items() if p_id not in self.unreachable]
        logger.info(f"[Transport:memory] Discovered {len(found)} simulated printer(s)")
        return found

    async def connect(self, printer_id: str, transport_type: TransportType) -> bool:
        self.connect_calls += 1
        await self._delay()
        if printer_id in self.connect_failures or printer_id in self.unreachable:
            return False
        if printer_id not in self.printers:
            return False
        self.connected.add(printer_id)
        return True

    async def connect_direct(self, transport_type: TransportType, address: str,
                             port: Optional[int] = None, timeout_ms: int = 10000) -> bool:
        await self._delay()
        return address not in self.unreachable

    async def disconnect(self, printer_id: Optional[str] = None) -> bool:
        self.disconnect_calls += 1
        if printer_id is None:
            self.connected.clear()
        else:
            self.connected.discard(printer_id)
        return True

    async def transmit(self, data: bytes, settings: Dict[str, Any]) -> Dict[str, Any]:
        printer_id = settings.get('printerId')
        await self._delay(printer_id)

        number = len(self.transmissions) + 1
        record = {
            'number': number,
            'printer_id': printer_id,
            'bytes': len(data),
            'settings': dict(settings),
            'timestamp': datetime.now(),
        }
        self.transmissions.append(record)

        if printer_id not in self.connected:
            record['success'] = False
            return failure(f"Printer {printer_id} is not connected", 'CONNECTION_LOST')

        scripted = self._failing_transmissions.pop(number, None)
        if scripted is None and self._transmit_failures:
            scripted = self._transmit_failures.popleft()
        if scripted is not None:
            record['success'] = False
            return dict(scripted)

        record['success'] = True
        return {'success': True, 'labels': settings.get('copies', 1)}

    async def transmit_direct(self, data: bytes, settings: Dict[str, Any],
                              transport_type: TransportType, address: str,
                              port: Optional[int] = None, timeout_ms: int = 10000) -> Dict[str, Any]:
        if address in self.unreachable:
            await self._delay()
            return failure(f"No printer at {address}", 'PRINTER_NOT_FOUND')
        self.connected.add(address)
        try:
            return await self.transmit(data, {**settings, 'printerId': address})
        finally:
            self.connected.discard(address)

    async def query_status(self, printer_id: Optional[str] = None) -> Dict[str, Any]:
        await self._delay(printer_id)
        if printer_id is None:
            return {'connected': bool(self.connected), 'printers': sorted(self.connected)}
        connected = printer_id in self.connected and printer_id not in self.unreachable
        return {'connected': connected, 'printerId': printer_id, 'status': 'ready' if connected else 'offline'}

    async def get_capabilities(self, printer_id: str) -> Optional[PrinterCapabilities]:
        printer = self.printers.get(printer_id)
        return printer.capabilities if printer else None
