"""
Serial Transport
================

Bluetooth Classic (RFCOMM/SPP) and USB-serial Brother printers via pyserial.

Bluetooth printers must be paired and bound to an RFCOMM device
(e.g. ``rfcomm bind 0 <MAC>``) before they show up here. pyserial is
blocking, so every device call runs in a worker thread.
"""

import asyncio
import logging
import os
from typing import Optional, Dict, Any, List

import serial  # type: ignore
from serial.tools import list_ports  # type: ignore

from .base import TransportAdapter, failure, CONNECTION_LOST
from ..models import Printer, PrinterCapabilities, TransportType
from ..config import SERIAL_BAUDRATE, DEFAULT_CONNECTION_TIMEOUT

logger = logging.getLogger(__name__)

BROTHER_VENDOR_ID = 0x04F9


def _transport_for(port_info) -> Optional[TransportType]:
    device = port_info.device or ''
    if 'rfcomm' in device:
        return TransportType.BLUETOOTH
    if port_info.vid == BROTHER_VENDOR_ID:
        return TransportType.USB
    if 'brother' in f"{port_info.description} {port_info.manufacturer}".lower():
        return TransportType.USB
    return None


class SerialTransport(TransportAdapter):
    """Serial port printing for RFCOMM and USB devices."""

    transport_types = (TransportType.BLUETOOTH, TransportType.USB)

    def __init__(self, baudrate: int = SERIAL_BAUDRATE, timeout: float = DEFAULT_CONNECTION_TIMEOUT):
        super().__init__()
        self.baudrate = baudrate
        self.timeout = timeout
        self._devices: Dict[str, str] = {}  # printer id -> device path
        self._ports: Dict[str, serial.Serial] = {}

    async def request_permissions(self) -> bool:
        denied = [path for path in self._devices.values()
                  if os.path.exists(path) and not os.access(path, os.R_OK | os.W_OK)]
        if denied:
            logger.warning(f"[Transport:serial] No read/write access to {', '.join(denied)}")
            return False
        return True

    async def discover(self) -> List[Printer]:
        ports = await asyncio.to_thread(list_ports.comports)
        printers = []
        for port_info in ports:
            transport_type = _transport_for(port_info)
            if transport_type is None:
                continue
            printer_id = f"SER-{os.path.basename(port_info.device)}"
            self._devices[printer_id] = port_info.device
            printers.append(Printer(
                id=printer_id,
                name=port_info.description or port_info.device,
                model=port_info.product or "Brother QL",
                transport_type=transport_type,
                address=port_info.device,
                capabilities=PrinterCapabilities(
                    supports_bluetooth=transport_type == TransportType.BLUETOOTH,
                    supports_usb=transport_type == TransportType.USB,
                ),
            ))
        logger.info(f"[Transport:serial] Discovered {len(printers)} printer(s)")
        return printers

    def register(self, printer: Printer):
        if printer.address:
            self._devices[printer.id] = printer.address

    def _open(self, device: str, timeout: float) -> serial.Serial:
        return serial.Serial(device, baudrate=self.baudrate, timeout=timeout, write_timeout=timeout)

    async def connect(self, printer_id: str, transport_type: TransportType) -> bool:
        device = self._devices.get(printer_id)
        if device is None:
            logger.warning(f"[Transport:serial] Unknown printer {printer_id}")
            return False
        await self.disconnect(printer_id)
        try:
            self._ports[printer_id] = await asyncio.to_thread(self._open, device, self.timeout)
        except serial.SerialException as e:
            logger.warning(f"[Transport:serial] Cannot open {device}: {e}")
            return False
        logger.info(f"[Transport:serial] Connected to {device}")
        return True

    async def connect_direct(self, transport_type: TransportType, address: str,
                             port: Optional[int] = None, timeout_ms: int = 10000) -> bool:
        return os.path.exists(address)

    async def disconnect(self, printer_id: Optional[str] = None) -> bool:
        ids = list(self._ports) if printer_id is None else [printer_id]
        for port_id in ids:
            port = self._ports.pop(port_id, None)
            if port is not None:
                await asyncio.to_thread(port.close)
        return True

    @staticmethod
    def _write(port: serial.Serial, data: bytes, copies: int) -> int:
        written = 0
        for _ in range(max(1, copies)):
            written += port.write(data)
        port.flush()
        return written

    async def transmit(self, data: bytes, settings: Dict[str, Any]) -> Dict[str, Any]:
        printer_id = settings.get('printerId')
        port = self._ports.get(printer_id)
        if port is None or not port.is_open:
            return failure(f"Printer {printer_id} is not connected", 'CONNECTION_LOST')
        try:
            written = await asyncio.to_thread(self._write, port, data, settings.get('copies', 1))
        except serial.SerialTimeoutException:
            return failure("Timed out writing to printer", 'CONNECTION_TIMEOUT')
        except serial.SerialException as e:
            self._ports.pop(printer_id, None)
            self._notify(CONNECTION_LOST, printer_id, reason=str(e))
            return failure(f"Serial error: {e}", 'CONNECTION_LOST')
        return {'success': True, 'bytes_sent': written}

    async def transmit_direct(self, data: bytes, settings: Dict[str, Any],
                              transport_type: TransportType, address: str,
                              port: Optional[int] = None, timeout_ms: int = 10000) -> Dict[str, Any]:
        try:
            link = await asyncio.to_thread(self._open, address, timeout_ms / 1000)
        except serial.SerialException as e:
            if isinstance(e.__context__, PermissionError):
                return failure(f"No access to {address}", 'PERMISSION_DENIED')
            return failure(f"Cannot open {address}: {e}", 'PRINTER_NOT_FOUND')
        try:
            written = await asyncio.to_thread(self._write, link, data, settings.get('copies', 1))
        except serial.SerialException as e:
            return failure(f"Serial error: {e}", 'CONNECTION_LOST')
        finally:
            await asyncio.to_thread(link.close)
        return {'success': True, 'bytes_sent': written}

    async def query_status(self, printer_id: Optional[str] = None) -> Dict[str, Any]:
        if printer_id is None:
            return {'connected': bool(self._ports), 'printers': sorted(self._ports)}
        port = self._ports.get(printer_id)
        return {
            'connected': bool(port is not None and port.is_open),
            'printerId': printer_id,
            'device': self._devices.get(printer_id),
        }
