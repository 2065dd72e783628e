"""
BLE Transport
=============

Bluetooth LE Brother printers via bleak.

Raster data is written to a GATT characteristic in chunks sized for the
negotiated MTU (CHECKIN_PRINT_BLE_CHARACTERISTIC).
"""

import asyncio
import logging
from typing import Optional, Dict, Any, List

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from .base import TransportAdapter, failure, CONNECTION_LOST
from ..models import Printer, PrinterCapabilities, TransportType
from ..config import BLE_WRITE_CHARACTERISTIC, BLE_SCAN_TIMEOUT, BLE_CHUNK_SIZE, DEFAULT_CONNECTION_TIMEOUT

logger = logging.getLogger(__name__)

NAME_PREFIXES = ('QL-', 'PT-', 'TD-', 'RJ-', 'Brother')


class BleTransport(TransportAdapter):
    """GATT write printing for BLE label printers."""

    transport_types = (TransportType.BLUETOOTH_LE,)

    def __init__(self, characteristic: str = BLE_WRITE_CHARACTERISTIC,
                 scan_timeout: float = BLE_SCAN_TIMEOUT, chunk_size: int = BLE_CHUNK_SIZE,
                 timeout: float = DEFAULT_CONNECTION_TIMEOUT):
        super().__init__()
        self.characteristic = characteristic
        self.scan_timeout = scan_timeout
        self.chunk_size = chunk_size
        self.timeout = timeout
        self._addresses: Dict[str, str] = {}
        self._clients: Dict[str, BleakClient] = {}

    async def initialize(self) -> bool:
        try:
            await BleakScanner.discover(timeout=0.1)
        except (BleakError, OSError) as e:
            logger.warning(f"[Transport:ble] Bluetooth adapter unavailable: {e}")
            return False
        return True

    async def request_permissions(self) -> bool:
        return await self.initialize()

    async def discover(self) -> List[Printer]:
        try:
            devices = await BleakScanner.discover(timeout=self.scan_timeout)
        except (BleakError, OSError) as e:
            logger.error(f"[Transport:ble] Scan failed: {e}")
            return []

        printers = []
        for device in devices:
            name = device.name or ''
            if not name.startswith(NAME_PREFIXES):
                continue
            printer_id = f"BLE-{device.address.replace(':', '')}"
            self._addresses[printer_id] = device.address
            printers.append(Printer(
                id=printer_id,
                name=name,
                model=name.split(' ')[0],
                transport_type=TransportType.BLUETOOTH_LE,
                address=device.address,
                capabilities=PrinterCapabilities(supports_wifi=False, supports_usb=False),
            ))
        logger.info(f"[Transport:ble] Discovered {len(printers)} printer(s)")
        return printers

    def register(self, printer: Printer):
        if printer.address:
            self._addresses[printer.id] = printer.address

    def _on_disconnect(self, printer_id: str):
        def handler(client: BleakClient):
            if self._clients.get(printer_id) is client:
                self._clients.pop(printer_id, None)
                self._notify(CONNECTION_LOST, printer_id, reason="BLE link dropped")
        return handler

    async def connect(self, printer_id: str, transport_type: TransportType) -> bool:
        address = self._addresses.get(printer_id)
        if address is None:
            logger.warning(f"[Transport:ble] Unknown printer {printer_id}")
            return False

        await self.disconnect(printer_id)
        client = BleakClient(address, timeout=self.timeout,
                             disconnected_callback=self._on_disconnect(printer_id))
        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"[Transport:ble] Connect to {address} failed: {e!r}")
            return False
        if not client.is_connected:
            return False
        self._clients[printer_id] = client
        logger.info(f"[Transport:ble] Connected to {address}")
        return True

    async def disconnect(self, printer_id: Optional[str] = None) -> bool:
        ids = list(self._clients) if printer_id is None else [printer_id]
        for client_id in ids:
            client = self._clients.pop(client_id, None)
            if client is None:
                continue
            try:
                await client.disconnect()
            except (BleakError, OSError) as e:
                logger.debug(f"[Transport:ble] Disconnect error ignored: {e}")
        return True

    async def _write(self, client: BleakClient, data: bytes, copies: int):
        for _ in range(max(1, copies)):
            for offset in range(0, len(data), self.chunk_size):
                await client.write_gatt_char(self.characteristic, data[offset:offset + self.chunk_size],
                                             response=False)

    async def transmit(self, data: bytes, settings: Dict[str, Any]) -> Dict[str, Any]:
        printer_id = settings.get('printerId')
        client = self._clients.get(printer_id)
        if client is None or not client.is_connected:
            return failure(f"Printer {printer_id} is not connected", 'CONNECTION_LOST')
        try:
            await self._write(client, data, settings.get('copies', 1))
        except BleakError as e:
            return failure(f"BLE write failed: {e}", 'PRINT_FAILED')
        except (asyncio.TimeoutError, OSError) as e:
            return failure(f"BLE link error: {e!r}", 'CONNECTION_LOST')
        return {'success': True, 'bytes_sent': len(data)}

    async def transmit_direct(self, data: bytes, settings: Dict[str, Any],
                              transport_type: TransportType, address: str,
                              port: Optional[int] = None, timeout_ms: int = 10000) -> Dict[str, Any]:
        try:
            async with BleakClient(address, timeout=timeout_ms / 1000) as client:
                await self._write(client, data, settings.get('copies', 1))
        except asyncio.TimeoutError:
            return failure(f"Connection timeout to {address}", 'CONNECTION_TIMEOUT')
        except BleakError as e:
            return failure(f"BLE error: {e}", 'CONNECTION_FAILED')
        return {'success': True, 'bytes_sent': len(data)}

    async def query_status(self, printer_id: Optional[str] = None) -> Dict[str, Any]:
        if printer_id is None:
            return {'connected': bool(self._clients), 'printers': sorted(self._clients)}
        client = self._clients.get(printer_id)
        return {
            'connected': bool(client is not None and client.is_connected),
            'printerId': printer_id,
            'address': self._addresses.get(printer_id),
        }
