"""
Connection Manager
==================

Owns the discovered printers and the one connection held per printer.

Printers and connections are immutable values stored by id; every change
stores a new version and broadcasts an event. Other components look
connections up by id each time they need one, so a reconnection (which
stores a new Connection with a higher generation) is picked up without
anybody holding on to a stale object.

State machine per connection:

    disconnected -> connecting -> connected | error
    connecting -> authenticating -> connected | error    (MFi printers)
    any -> disconnected                                   (close / link lost)
"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

from .config import DISCOVERY_INTERVAL, LIVENESS_INTERVAL, PRINTER_STALE_AFTER, MFI_AUTH_TIMEOUT
from .errors import ErrorHandler, ErrorCode
from .events import (
    EventBus, PrinterDiscovered, PrinterConnected, PrinterDisconnected,
    ConnectionFailed, ConnectionStatusChanged, PermissionRequired,
)
from .exceptions import TransportError, InvalidConfigurationError
from .mfi import MfiGate, NullMfiGate, MfiAuthResult, MfiAuthStatus
from .models import (
    Printer, PrinterCapabilities, Connection, ConnectionStatus, TransportType, PrintSettings,
    connection_id_for, default_port_for,
)
from .transports import TransportAdapter, TransportEvent, DISCOVERED, STATUS_CHANGED, CONNECTION_LOST
from .transports.base import failure

logger = logging.getLogger(__name__)

# Disconnect reasons
CLOSED = 'closed'
LINK_LOST = 'connection_lost'


class ConnectionManager:
    """Discovery, connection establishment and connection state."""

    def __init__(self, transports: Dict[TransportType, TransportAdapter], event_bus: EventBus,
                 error_handler: ErrorHandler, mfi_gate: Optional[MfiGate] = None,
                 discovery_interval: float = DISCOVERY_INTERVAL,
                 liveness_interval: float = LIVENESS_INTERVAL,
                 stale_after: float = PRINTER_STALE_AFTER,
                 mfi_timeout: float = MFI_AUTH_TIMEOUT):
        self.transports = dict(transports)
        self.event_bus = event_bus
        self.error_handler = error_handler
        self.mfi_gate = mfi_gate or NullMfiGate()
        self.discovery_interval = discovery_interval
        self.liveness_interval = liveness_interval
        self.stale_after = stale_after
        self.mfi_timeout = mfi_timeout

        self._printers: Dict[str, Printer] = {}
        self._connections: Dict[str, Connection] = {}
        self._establish_locks: Dict[str, asyncio.Lock] = {}
        self._scan_task: Optional[asyncio.Task] = None
        self._loops: List[asyncio.Task] = []
        self._teardowns = set()
        self._initialized = False

    @property
    def adapters(self) -> List[TransportAdapter]:
        """Distinct adapters (one adapter may serve several transport types)."""
        unique = []
        for adapter in self.transports.values():
            if adapter not in unique:
                unique.append(adapter)
        return unique

    def _types_for(self, adapter: TransportAdapter) -> List[str]:
        return [t.value for t, a in self.transports.items() if a is adapter]

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> bool:
        """Initialize adapters and listen to their events."""
        if self._initialized:
            return True
        ready = 0
        for adapter in self.adapters:
            if await adapter.initialize():
                ready += 1
            else:
                logger.warning(f"[Connection] Transport {'/'.join(self._types_for(adapter))} unavailable")
            adapter.add_listener(self._on_transport_event)
        self._initialized = True
        logger.info(f"[Connection] Initialized {ready}/{len(self.adapters)} transport adapter(s)")
        return ready > 0

    async def request_permissions(self) -> bool:
        """Ask every adapter for platform access. Not retried automatically."""
        denied = []
        for adapter in self.adapters:
            if not await adapter.request_permissions():
                denied.extend(self._types_for(adapter))
        if not denied:
            return True

        message = f"Permission required for {', '.join(denied)}"
        self.event_bus.publish(PermissionRequired(message=message, transports=tuple(denied)))
        self.error_handler.parse(message, ErrorCode.PERMISSION_DENIED, {'transports': ', '.join(denied)})
        return False

    def start(self):
        """Start re-discovery and liveness loops."""
        if self._loops:
            return
        self._loops = [
            asyncio.ensure_future(self._discovery_loop()),
            asyncio.ensure_future(self._liveness_loop()),
        ]
        logger.info("[Connection] Background loops started")

    async def stop(self):
        for task in self._loops:
            task.cancel()
        await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        if self._teardowns:
            await asyncio.gather(*list(self._teardowns), return_exceptions=True)
        for adapter in self.adapters:
            adapter.remove_listener(self._on_transport_event)
        self._initialized = False

    # =========================================================================
    # Lookups
    # =========================================================================

    def get_printer(self, printer_id: str) -> Optional[Printer]:
        return self._printers.get(printer_id)

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def connection_for_printer(self, printer_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id_for(printer_id))

    def list_printers(self) -> List[Printer]:
        return list(self._printers.values())

    def list_connections(self, status: Optional[ConnectionStatus] = None) -> List[Connection]:
        return [c for c in self._connections.values() if status is None or c.status == status]

    def connected_printer_ids(self) -> List[str]:
        return [c.printer_id for c in self._connections.values() if c.is_connected]

    # =========================================================================
    # Discovery
    # =========================================================================

    async def scan(self) -> List[Connection]:
        """
        Discover printers on every transport.

        Concurrent callers share the scan already in flight.

        Returns:
            Connections of the printers found by this scan
        """
        if self._scan_task is None or self._scan_task.done():
            self._scan_task = asyncio.ensure_future(self._scan())
        return await asyncio.shield(self._scan_task)

    async def _scan(self) -> List[Connection]:
        await self.initialize()
        logger.info("[Connection] Scanning for printers...")
        found = await asyncio.gather(*(self._discover_with(adapter) for adapter in self.adapters))

        connections = []
        seen = set()
        for printers in found:
            for printer in printers:
                if printer.id in seen:
                    continue
                seen.add(printer.id)
                self._remember(printer)
                connections.append(self._connections[connection_id_for(printer.id)])
        logger.info(f"[Connection] Scan found {len(connections)} printer(s)")
        return connections

    async def _discover_with(self, adapter: TransportAdapter) -> List[Printer]:
        try:
            return await adapter.discover()
        except (TransportError, OSError) as e:
            code = getattr(e, 'code', None)
            self.error_handler.parse(f"Discovery failed: {e}", code, {'transports': ', '.join(self._types_for(adapter))})
            return []

    def _remember(self, printer: Printer) -> Printer:
        """Add or refresh a printer in the discovery set."""
        existing = self._printers.get(printer.id)
        if existing is None:
            stored = printer.seen()
            self._printers[printer.id] = stored
            self.event_bus.publish(PrinterDiscovered(printer=stored))
            logger.info(f"[Connection] Discovered {stored.name} ({stored.id}) via {stored.transport_type.value}")
        else:
            stored = replace(
                existing,
                name=printer.name or existing.name,
                model=printer.model or existing.model,
                address=printer.address or existing.address,
                port=printer.port or existing.port,
                capabilities=printer.capabilities,
            ).seen()
            self._printers[printer.id] = stored

        connection_id = connection_id_for(printer.id)
        if connection_id not in self._connections:
            self._connections[connection_id] = Connection(
                printer_id=printer.id,
                transport_type=stored.transport_type,
                port=stored.port or default_port_for(stored.transport_type),
            )
        return stored

    def _evict_stale(self) -> List[str]:
        """Forget printers that have not been seen for ``stale_after`` and are not in use."""
        cutoff = datetime.now() - timedelta(seconds=self.stale_after)
        active = (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING, ConnectionStatus.AUTHENTICATING)
        stale = []
        for printer in list(self._printers.values()):
            connection = self.connection_for_printer(printer.id)
            if connection is not None and connection.status in active:
                continue
            if printer.last_seen < cutoff:
                stale.append(printer.id)
        for printer_id in stale:
            self.forget(printer_id)
        if stale:
            logger.info(f"[Connection] Evicted {len(stale)} stale printer(s)")
        return stale

    # =========================================================================
    # Connection state
    # =========================================================================

    def _store(self, connection: Connection):
        """Store a new connection version and mirror its status onto the printer."""
        previous = self._connections.get(connection.id)
        self._connections[connection.id] = connection

        printer = self._printers.get(connection.printer_id)
        if printer is not None and printer.status != connection.status:
            self._printers[printer.id] = printer.with_status(connection.status)

        if previous is None or previous.status != connection.status:
            self.event_bus.publish(ConnectionStatusChanged(
                printer_id=connection.printer_id,
                connection_id=connection.id,
                status=connection.status,
            ))

    def _fail(self, connection: Connection, message: str, code: str) -> Connection:
        failed = connection.with_status(ConnectionStatus.ERROR, message)
        self._store(failed)
        logger.warning(f"[Connection] {connection.printer_id}: {message} ({code})")
        self.event_bus.publish(ConnectionFailed(
            printer_id=connection.printer_id,
            connection_id=connection.id,
            message=message,
            code=code,
        ))
        self.error_handler.parse(message, code, {'printer_id': connection.printer_id,
                                                 'connection_id': connection.id})
        return failed

    async def establish(self, printer: Printer) -> Connection:
        """
        Connect to a printer, authenticating MFi printers first.

        Printers not yet in the discovery set (direct targets) are added.
        Calls for the same printer are serialized.

        Returns:
            The stored Connection, status ``connected`` or ``error``
        """
        lock = self._establish_locks.setdefault(printer.id, asyncio.Lock())
        async with lock:
            return await self._establish(printer)

    async def _establish(self, printer: Printer) -> Connection:
        current = self._printers.get(printer.id) or self._remember(printer)
        adapter = self.transports.get(current.transport_type)

        previous = self._connections.get(connection_id_for(current.id))
        connection = Connection(
            printer_id=current.id,
            transport_type=current.transport_type,
            status=ConnectionStatus.CONNECTING,
            last_activity=previous.last_activity if previous else None,
            port=current.port or default_port_for(current.transport_type),
            auto_reconnect=previous.auto_reconnect if previous else True,
            generation=(previous.generation if previous else 0) + 1,
        )
        self._store(connection)
        started = time.monotonic()
        logger.info(f"[Connection] Connecting to {current.name} ({current.id})...")

        if adapter is None:
            return self._fail(connection, f"No transport adapter for {current.transport_type.value}",
                              ErrorCode.PRINTER_NOT_FOUND)

        if current.is_mfi_certified and await self.mfi_gate.is_authentication_required(current):
            connection = connection.with_status(ConnectionStatus.AUTHENTICATING)
            self._store(connection)
            try:
                auth = await asyncio.wait_for(self.mfi_gate.authenticate(current), timeout=self.mfi_timeout)
            except asyncio.TimeoutError:
                auth = MfiAuthResult(status=MfiAuthStatus.TIMEOUT, message="MFi authentication timed out")
            if not auth.success:
                return self._fail(connection, auth.message or "MFi authentication failed",
                                  ErrorCode.MFI_AUTH_FAILED)

        adapter.register(current)
        try:
            connected = await adapter.connect(current.id, current.transport_type)
        except TransportError as e:
            return self._fail(connection, e.message, e.code or ErrorCode.CONNECTION_FAILED)
        if not connected:
            return self._fail(connection, f"Could not connect to {current.name}", ErrorCode.CONNECTION_FAILED)

        capabilities = await self._read_capabilities(adapter, current)
        if capabilities is not None:
            self._printers[current.id] = replace(self._printers[current.id], capabilities=capabilities)

        elapsed_ms = (time.monotonic() - started) * 1000
        now = datetime.now()
        connection = replace(
            connection,
            status=ConnectionStatus.CONNECTED,
            connected_at=now,
            last_activity=now,
            connect_duration_ms=elapsed_ms,
            error=None,
        )
        self._store(connection)
        self._printers[current.id] = self._printers[current.id].seen()
        logger.info(f"[Connection] Connected to {current.name} in {elapsed_ms:.0f}ms")
        self.event_bus.publish(PrinterConnected(
            printer_id=current.id,
            connection_id=connection.id,
            connect_duration_ms=elapsed_ms,
        ))
        return connection

    async def _read_capabilities(self, adapter: TransportAdapter, printer: Printer) -> Optional[PrinterCapabilities]:
        """Capabilities reported by a freshly connected printer; None keeps the discovered profile."""
        try:
            return await adapter.get_capabilities(printer.id)
        except (TransportError, OSError) as e:
            logger.warning(f"[Connection] Could not read capabilities of {printer.id}: {e}")
            return None

    async def connect_direct(self, settings: PrintSettings) -> Connection:
        """Connect to the direct target in the settings, skipping discovery."""
        if not settings.is_direct:
            raise InvalidConfigurationError("Settings do not name a direct printer target")

        known = [
            printer for printer in self._printers.values()
            if printer.transport_type == settings.connection_type and printer.address == settings.direct_address
        ]
        if known:
            printer = known[0]
        else:
            transport = settings.connection_type.value
            printer = Printer(
                id=f"direct_{transport}_{int(time.time() * 1000)}",
                name=f"Direct {transport} printer ({settings.connection_identifier})",
                model="Brother (direct)",
                transport_type=settings.connection_type,
                address=settings.direct_address,
                port=settings.port,
            )

        connection = await self.establish(printer)
        # Health monitoring reconnects only connections that allow it
        if not settings.auto_reconnect:
            self.set_auto_reconnect(connection.id, False)
            connection = self._connections[connection.id]
        return connection

    async def test(self, connection_id: str) -> bool:
        """
        Liveness probe.

        Success refreshes ``last_activity``; failure flips the connection to
        ``error`` and emits an error event.
        """
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_connected:
            return False
        adapter = self.transports.get(connection.transport_type)
        if adapter is None:
            return False

        message = "Connection test failed"
        code = ErrorCode.CONNECTION_LOST
        try:
            alive = await adapter.test_connection(connection.printer_id)
        except TransportError as e:
            alive = False
            message, code = e.message, e.code or code

        # A reconnect may have replaced the connection while we waited
        current = self._connections.get(connection_id)
        if current is None or current.generation != connection.generation:
            return alive

        if alive:
            self._connections[connection_id] = current.touched()
            return True
        if current.is_connected:
            self._fail(current, message, code)
        return False

    def close(self, connection_id: str, reason: str = CLOSED) -> bool:
        """
        Mark a connection disconnected now; the transport is torn down in
        the background.
        """
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        if connection.status != ConnectionStatus.DISCONNECTED:
            self._store(replace(connection, status=ConnectionStatus.DISCONNECTED, error=None))
            self.event_bus.publish(PrinterDisconnected(
                printer_id=connection.printer_id,
                connection_id=connection_id,
                reason=reason,
            ))
            logger.info(f"[Connection] Closed {connection_id} ({reason})")

        adapter = self.transports.get(connection.transport_type)
        if adapter is not None and reason == CLOSED:
            task = asyncio.ensure_future(self._teardown(adapter, connection.printer_id))
            self._teardowns.add(task)
            task.add_done_callback(self._teardowns.discard)
        return True

    async def _teardown(self, adapter: TransportAdapter, printer_id: str):
        try:
            await adapter.disconnect(printer_id)
        except (TransportError, OSError) as e:
            logger.warning(f"[Connection] Teardown of {printer_id} failed: {e}")

    def forget(self, printer_id: str) -> bool:
        """Drop a printer and its connection."""
        connection_id = connection_id_for(printer_id)
        if connection_id in self._connections:
            self.close(connection_id)
            del self._connections[connection_id]
        self._establish_locks.pop(printer_id, None)
        return self._printers.pop(printer_id, None) is not None

    def mark_unreachable(self, printer_id: str):
        """Keep the printer discovered but flag it as not reachable."""
        printer = self._printers.get(printer_id)
        if printer is not None:
            self._printers[printer_id] = replace(printer, reachable=False)

    def set_auto_reconnect(self, connection_id: str, enabled: bool):
        connection = self._connections.get(connection_id)
        if connection is not None:
            self._connections[connection_id] = replace(connection, auto_reconnect=enabled)

    # =========================================================================
    # Transmission
    # =========================================================================

    async def transmit(self, connection_id: str, data: bytes, settings: Dict[str, Any]) -> Dict[str, Any]:
        """Send raster bytes over the current version of a connection."""
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_connected:
            return failure("Printer is not connected", ErrorCode.CONNECTION_LOST)
        adapter = self.transports.get(connection.transport_type)
        if adapter is None:
            return failure(f"No transport adapter for {connection.transport_type.value}", ErrorCode.PRINTER_NOT_FOUND)

        try:
            result = await adapter.transmit(data, {**settings, 'printerId': connection.printer_id})
        except TransportError as e:
            result = failure(e.message, e.code or ErrorCode.PRINT_FAILED)

        current = self._connections.get(connection_id)
        if current is None or current.generation != connection.generation:
            return result
        if result.get('success'):
            self._connections[connection_id] = current.touched()
        elif result.get('errorCode') == ErrorCode.CONNECTION_LOST and current.is_connected:
            self._store(current.with_status(ConnectionStatus.ERROR, result.get('error')))
        return result

    async def transmit_direct(self, data: bytes, settings: PrintSettings) -> Dict[str, Any]:
        """Send to the direct target in the settings without a held connection."""
        if not settings.is_direct:
            return failure("Settings do not name a direct printer target", ErrorCode.INVALID_SETTINGS)
        adapter = self.transports.get(settings.connection_type)
        if adapter is None:
            return failure(f"No transport adapter for {settings.connection_type.value}", ErrorCode.PRINTER_NOT_FOUND)
        try:
            return await adapter.transmit_direct(
                data,
                settings.to_settings_map(),
                settings.connection_type,
                settings.direct_address,
                settings.port,
                int(settings.connection_timeout * 1000),
            )
        except TransportError as e:
            return failure(e.message, e.code or ErrorCode.PRINT_FAILED)

    # =========================================================================
    # Transport events
    # =========================================================================

    def _on_transport_event(self, event: TransportEvent):
        if event.kind == DISCOVERED:
            printer = event.data.get('printer')
            if isinstance(printer, Printer):
                self._remember(printer)
            return

        connection = self.connection_for_printer(event.printer_id) if event.printer_id else None
        if connection is None:
            return

        if event.kind == CONNECTION_LOST:
            if connection.status == ConnectionStatus.DISCONNECTED:
                return
            reason = event.data.get('reason', 'Connection lost')
            logger.warning(f"[Connection] Lost {connection.id}: {reason}")
            self.close(connection.id, reason=LINK_LOST)
            self.error_handler.parse(reason, ErrorCode.CONNECTION_LOST,
                                     {'printer_id': connection.printer_id, 'connection_id': connection.id})
        elif event.kind == STATUS_CHANGED:
            status = event.data.get('status')
            if status in {s.value for s in ConnectionStatus}:
                self._store(connection.with_status(ConnectionStatus(status), event.data.get('error')))
            else:
                self._connections[connection.id] = connection.touched()

    # =========================================================================
    # Background loops
    # =========================================================================

    async def _discovery_loop(self):
        while True:
            await asyncio.sleep(self.discovery_interval)
            try:
                await self.scan()
                self._evict_stale()
            except Exception:
                logger.exception("[Connection] Re-discovery failed")

    async def _liveness_loop(self):
        while True:
            await asyncio.sleep(self.liveness_interval)
            ids = [c.id for c in self._connections.values() if c.is_connected]
            if ids:
                await asyncio.gather(*(self.test(connection_id) for connection_id in ids))

    def get_statistics(self) -> Dict[str, Any]:
        by_status = Counter(c.status.value for c in self._connections.values())
        durations = [c.connect_duration_ms for c in self._connections.values() if c.connect_duration_ms]
        return {
            'printers': len(self._printers),
            'unreachable_printers': sum(1 for p in self._printers.values() if not p.reachable),
            'connections': len(self._connections),
            'connections_by_status': dict(by_status),
            'average_connect_ms': round(sum(durations) / len(durations), 1) if durations else 0.0,
        }
