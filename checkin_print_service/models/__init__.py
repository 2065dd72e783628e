"""
Check-in Print Service Models
"""

from .printer import (
    TransportType, ConnectionStatus, LabelSize, PrinterCapabilities,
    Printer, Connection, connection_id_for, default_port_for, default_label_sizes,
)
from .job import (
    JobPriority, PrintQuality, JobState, BatchState,
    BadgePayload, PrintSettings, PrintJob, PrintResult, PrintJobBatch,
)
from .health import HealthStatus, HealthCheckResult, ReconnectionResult

__all__ = [
    'TransportType', 'ConnectionStatus', 'LabelSize', 'PrinterCapabilities',
    'Printer', 'Connection', 'connection_id_for', 'default_port_for', 'default_label_sizes',
    'JobPriority', 'PrintQuality', 'JobState', 'BatchState',
    'BadgePayload', 'PrintSettings', 'PrintJob', 'PrintResult', 'PrintJobBatch',
    'HealthStatus', 'HealthCheckResult', 'ReconnectionResult',
]
