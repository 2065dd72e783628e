"""
Printer Model
=============

Discovered printers, their capability profiles and the connections
the service holds to them.

Printer and Connection are immutable. The connection manager replaces
them in its maps on every change, so anything holding an old copy keeps
a consistent (if stale) snapshot and re-fetches by id for fresh state.
"""

import uuid
from datetime import datetime
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Dict, Any, Tuple

from ..config import DEFAULT_LABEL_SIZES, DEFAULT_DPI, DEFAULT_CONNECTION_TIMEOUT, RAW_PORT


class TransportType(str, Enum):
    """How a printer is reached."""

    BLUETOOTH = "bluetooth"
    BLUETOOTH_LE = "bluetooth_le"
    WIFI = "wifi"
    USB = "usb"
    MFI = "mfi"


class ConnectionStatus(str, Enum):
    """Status of a printer and of its connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATING = "authenticating"
    ERROR = "error"


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_datetime(value) -> Optional[datetime]:
    if value and isinstance(value, str):
        return datetime.fromisoformat(value)
    return value


@dataclass(frozen=True)
class LabelSize:
    """Physical label media."""

    id: str
    name: str
    width_mm: float
    height_mm: float
    is_roll: bool = True

    @property
    def area(self) -> float:
        return self.width_mm * self.height_mm

    @property
    def is_landscape(self) -> bool:
        return self.width_mm >= self.height_mm

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'width_mm': self.width_mm,
            'height_mm': self.height_mm,
            'is_roll': self.is_roll,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LabelSize':
        return cls(
            id=data['id'],
            name=data.get('name', data['id']),
            width_mm=float(data['width_mm']),
            height_mm=float(data['height_mm']),
            is_roll=data.get('is_roll', True),
        )


def default_label_sizes() -> Tuple[LabelSize, ...]:
    """Label sizes assumed when a printer does not report its own."""
    return tuple(LabelSize.from_dict(size) for size in DEFAULT_LABEL_SIZES)


@dataclass(frozen=True)
class PrinterCapabilities:
    """What a printer model can do."""

    supported_label_sizes: Tuple[LabelSize, ...] = field(default_factory=default_label_sizes)
    max_resolution_dpi: int = DEFAULT_DPI
    supports_color: bool = False
    supports_cutting: bool = True
    max_print_width_mm: float = 62.0
    supported_formats: Tuple[str, ...] = ('PNG', 'BMP')

    # Transports the model offers
    supports_bluetooth: bool = True
    supports_wifi: bool = True
    supports_usb: bool = True

    def find_label_size(self, label_size_id: str) -> Optional[LabelSize]:
        """Look up a supported label size by id."""
        for size in self.supported_label_sizes:
            if size.id == label_size_id:
                return size
        return None

    def largest_label_size(self) -> Optional[LabelSize]:
        """Largest supported label by area, first listed wins ties."""
        largest = None
        for size in self.supported_label_sizes:
            if largest is None or size.area > largest.area:
                largest = size
        return largest

    def to_dict(self) -> Dict[str, Any]:
        return {
            'supported_label_sizes': [size.to_dict() for size in self.supported_label_sizes],
            'max_resolution_dpi': self.max_resolution_dpi,
            'supports_color': self.supports_color,
            'supports_cutting': self.supports_cutting,
            'max_print_width_mm': self.max_print_width_mm,
            'supported_formats': list(self.supported_formats),
            'supports_bluetooth': self.supports_bluetooth,
            'supports_wifi': self.supports_wifi,
            'supports_usb': self.supports_usb,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PrinterCapabilities':
        data = dict(data)
        if 'supported_label_sizes' in data:
            data['supported_label_sizes'] = tuple(
                size if isinstance(size, LabelSize) else LabelSize.from_dict(size)
                for size in data['supported_label_sizes']
            )
        if 'supported_formats' in data:
            data['supported_formats'] = tuple(data['supported_formats'])
        return cls(**data)


@dataclass(frozen=True)
class Printer:
    """A discovered (or directly configured) printer."""

    # Identification
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8].upper())
    name: str = ""
    model: str = ""  # e.g. "QL-820NWB"

    # Transport
    transport_type: TransportType = TransportType.WIFI
    address: Optional[str] = None  # MAC, IP, serial device or accessory handle
    port: Optional[int] = None  # For network printers

    capabilities: PrinterCapabilities = field(default_factory=PrinterCapabilities)
    is_mfi_certified: bool = False

    # Status
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reachable: bool = True  # False once reconnection was abandoned
    last_seen: datetime = field(default_factory=datetime.now)

    def with_status(self, status: ConnectionStatus) -> 'Printer':
        """New version with a status change."""
        return replace(self, status=status, last_seen=datetime.now())

    def seen(self) -> 'Printer':
        """New version marked as seen (and reachable) now."""
        return replace(self, reachable=True, last_seen=datetime.now())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'name': self.name,
            'model': self.model,
            'transport_type': self.transport_type.value,
            'address': self.address,
            'port': self.port,
            'capabilities': self.capabilities.to_dict(),
            'is_mfi_certified': self.is_mfi_certified,
            'status': self.status.value,
            'reachable': self.reachable,
            'last_seen': _isoformat(self.last_seen),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Printer':
        """Create from dictionary."""
        data = dict(data)
        if 'transport_type' in data:
            data['transport_type'] = TransportType(data['transport_type'])
        if 'status' in data:
            data['status'] = ConnectionStatus(data['status'])
        if isinstance(data.get('capabilities'), dict):
            data['capabilities'] = PrinterCapabilities.from_dict(data['capabilities'])
        if 'last_seen' in data:
            data['last_seen'] = _parse_datetime(data['last_seen']) or datetime.now()
        return cls(**data)


def connection_id_for(printer_id: str) -> str:
    """Connections are keyed by the printer they bind."""
    return f"conn_{printer_id}"


@dataclass(frozen=True)
class Connection:
    """Binding between the service and one printer."""

    printer_id: str
    transport_type: TransportType
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED

    # Activity
    last_activity: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    connect_duration_ms: Optional[float] = None
    error: Optional[str] = None

    # Transport parameters
    port: Optional[int] = None
    timeout: float = DEFAULT_CONNECTION_TIMEOUT
    auto_reconnect: bool = True

    # Bumped every time the connection is re-established
    generation: int = 0

    @property
    def id(self) -> str:
        return connection_id_for(self.printer_id)

    @property
    def is_connected(self) -> bool:
        return self.status == ConnectionStatus.CONNECTED

    def with_status(self, status: ConnectionStatus, error: Optional[str] = None) -> 'Connection':
        return replace(self, status=status, error=error)

    def touched(self) -> 'Connection':
        return replace(self, last_activity=datetime.now())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'printer_id': self.printer_id,
            'transport_type': self.transport_type.value,
            'status': self.status.value,
            'last_activity': _isoformat(self.last_activity),
            'connected_at': _isoformat(self.connected_at),
            'connect_duration_ms': self.connect_duration_ms,
            'error': self.error,
            'port': self.port,
            'timeout': self.timeout,
            'auto_reconnect': self.auto_reconnect,
            'generation': self.generation,
        }


def default_port_for(transport_type: TransportType) -> Optional[int]:
    """Default port for transports that use one."""
    return RAW_PORT if transport_type == TransportType.WIFI else None
