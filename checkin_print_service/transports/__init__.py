"""
Check-in Print Service Transports
=================================

Adapters bridging the service to printer links.
"""

import logging
from typing import Dict, Iterable, Optional

from .base import TransportAdapter, TransportEvent, DISCOVERED, STATUS_CHANGED, CONNECTION_LOST
from .memory import InMemoryTransport, demo_printers
from .tcp import TcpTransport
from ..models import TransportType
from ..exceptions import InvalidConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    'TransportAdapter', 'TransportEvent', 'InMemoryTransport', 'TcpTransport',
    'DISCOVERED', 'STATUS_CHANGED', 'CONNECTION_LOST',
    'demo_printers', 'get_transport', 'build_transports', 'TRANSPORTS',
]


def _serial_transport():
    from .serial_port import SerialTransport
    return SerialTransport


def _ble_transport():
    from .ble import BleTransport
    return BleTransport


# Transport registry: config name -> adapter class loader
TRANSPORTS = {
    'memory': lambda: InMemoryTransport,
    'wifi': lambda: TcpTransport,
    'bluetooth': _serial_transport,
    'usb': _serial_transport,
    'bluetooth_le': _ble_transport,
}


def get_transport(name: str) -> Optional[type]:
    """Get adapter class by config name."""
    loader = TRANSPORTS.get(name)
    return loader() if loader else None


def build_transports(names: Iterable[str], simulator: bool = False) -> Dict[TransportType, TransportAdapter]:
    """
    Instantiate adapters for the configured transport names.

    One adapter instance serves every transport type it supports, so
    ``bluetooth`` and ``usb`` share a serial adapter. In simulator mode a
    single in-memory adapter with demo printers serves every type.
    """
    if simulator:
        adapter = InMemoryTransport.with_demo_printers()
        return {transport_type: adapter for transport_type in TransportType}

    instances: Dict[type, TransportAdapter] = {}
    adapters: Dict[TransportType, TransportAdapter] = {}
    for name in names:
        adapter_class = get_transport(name)
        if adapter_class is None:
            raise InvalidConfigurationError(f"Unknown transport: {name}", {'known': ', '.join(TRANSPORTS)})
        adapter = instances.get(adapter_class)
        if adapter is None:
            adapter = instances[adapter_class] = adapter_class()
        if name == 'memory':
            types = adapter_class.transport_types
        else:
            types = (TransportType(name),)
        for transport_type in types:
            adapters[transport_type] = adapter
    logger.info(f"[Transport] Enabled: {', '.join(t.value for t in adapters)}")
    return adapters
