"""
Health Model
============

Probe outcomes and reconnection attempts recorded by the health monitor.
"""

from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any

from .printer import _isoformat


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


@dataclass(frozen=True)
class HealthCheckResult:
    """Point-in-time probe outcome for one connection."""

    connection_id: str
    status: HealthStatus
    response_time_ms: Optional[float] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            'connection_id': self.connection_id,
            'status': self.status.value,
            'response_time_ms': self.response_time_ms,
            'error': self.error,
            'timestamp': _isoformat(self.timestamp),
            'metrics': dict(self.metrics),
        }


@dataclass(frozen=True)
class ReconnectionResult:
    """One reconnection attempt."""

    connection_id: str
    success: bool
    attempt_number: int
    delay: float = 0.0  # seconds waited before the attempt
    error: Optional[str] = None
    attempt_time: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'connection_id': self.connection_id,
            'success': self.success,
            'attempt_number': self.attempt_number,
            'delay': self.delay,
            'error': self.error,
            'attempt_time': _isoformat(self.attempt_time),
        }
