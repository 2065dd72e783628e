"""
Base Transport
==============

Abstract base class for transport adapters.

An adapter is the only code that touches a printer link. It reports
failures as ``{'success': False, 'error': ..., 'errorCode': ...}`` or by
raising ``TransportError`` and never retries on its own; retry policy
belongs to the callers.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable

from ..models import Printer, PrinterCapabilities, TransportType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransportEvent:
    """Asynchronous notification pushed by an adapter."""

    kind: str  # discovered, status_changed, connection_lost
    printer_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


DISCOVERED = 'discovered'
STATUS_CHANGED = 'status_changed'
CONNECTION_LOST = 'connection_lost'

TransportListener = Callable[[TransportEvent], None]


def failure(error: str, code: Optional[str] = None, **extra) -> Dict[str, Any]:
    """Standard failure dict returned by adapters."""
    result = {'success': False, 'error': error}
    if code:
        result['errorCode'] = code
    result.update(extra)
    return result


class TransportAdapter(ABC):
    """Abstract base class for transport adapters."""

    #: Transport types this adapter serves
    transport_types: tuple = ()

    def __init__(self):
        self._listeners: List[TransportListener] = []

    # =========================================================================
    # Events
    # =========================================================================

    def add_listener(self, listener: TransportListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: TransportListener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self, kind: str, printer_id: Optional[str] = None, **data):
        event = TransportEvent(kind=kind, printer_id=printer_id, data=data)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(f"[Transport] Listener failed on {kind}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> bool:
        """Prepare the transport. Returns False if it cannot be used."""
        return True

    async def request_permissions(self) -> bool:
        """Platform access gating (Bluetooth, serial devices)."""
        return True

    # =========================================================================
    # Discovery and connection
    # =========================================================================

    @abstractmethod
    async def discover(self) -> List[Printer]:
        """
        Find printers reachable over this transport.

        Returns:
            Printer descriptors (disconnected status)
        """
        pass

    @abstractmethod
    async def connect(self, printer_id: str, transport_type: TransportType) -> bool:
        """Open a link to a discovered printer."""
        pass

    def register(self, printer: Printer):
        """Make a printer found elsewhere (direct target, saved config) connectable."""

    async def connect_direct(self, transport_type: TransportType, address: str,
                             port: Optional[int] = None, timeout_ms: int = 10000) -> bool:
        """Open a link to a known address without discovery."""
        return False

    @abstractmethod
    async def disconnect(self, printer_id: Optional[str] = None) -> bool:
        """Close one link, or every link when no id is given."""
        pass

    # =========================================================================
    # Printing and status
    # =========================================================================

    @abstractmethod
    async def transmit(self, data: bytes, settings: Dict[str, Any]) -> Dict[str, Any]:
        """
        Send raster bytes to the printer named by ``settings['printerId']``.

        Returns:
            Dict with success status and, on failure, error and errorCode
        """
        pass

    async def transmit_direct(self, data: bytes, settings: Dict[str, Any],
                              transport_type: TransportType, address: str,
                              port: Optional[int] = None, timeout_ms: int = 10000) -> Dict[str, Any]:
        """Connect to an address, send, and close."""
        return failure(f"Direct printing not supported over {transport_type.value}", 'UNSUPPORTED_FORMAT')

    @abstractmethod
    async def query_status(self, printer_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Get link status.

        Returns:
            Dict with at least a ``connected`` flag
        """
        pass

    async def get_capabilities(self, printer_id: str) -> Optional[PrinterCapabilities]:
        """Capability profile reported by the printer, if the transport can ask."""
        return None

    async def test_connection(self, printer_id: str) -> bool:
        """Liveness probe."""
        status = await self.query_status(printer_id)
        return bool(status.get('connected'))

    async def close(self):
        """Release every link held by the adapter."""
        await self.disconnect()
