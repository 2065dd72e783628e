"""
Print Job Model
===============

Badge payloads, print settings, jobs, batches and results.
"""

import uuid
from datetime import datetime
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple, Iterable

from .printer import LabelSize, TransportType, _isoformat
from ..config import (
    MAX_RETRIES, MAX_BATCH_SIZE, ESTIMATED_SECONDS_PER_JOB,
    DEFAULT_CONNECTION_TIMEOUT, RAW_PORT,
)
from ..exceptions import InvalidConfigurationError


def new_job_id() -> str:
    return f"JOB-{str(uuid.uuid4())[:8].upper()}"


def new_batch_id() -> str:
    return f"BATCH-{str(uuid.uuid4())[:8].upper()}"


class JobPriority(str, Enum):
    """Job priority, compared by rank."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    JobPriority.LOW: 0,
    JobPriority.NORMAL: 1,
    JobPriority.HIGH: 2,
    JobPriority.URGENT: 3,
}


class PrintQuality(str, Enum):
    DRAFT = "draft"
    NORMAL = "normal"
    HIGH = "high"
    BEST = "best"


class JobState(str, Enum):
    """Bookkeeping state of a job, tracked outside the job itself."""

    PENDING = "pending"
    BATCHED = "batched"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


class BatchState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


@dataclass(frozen=True)
class BadgePayload:
    """Attendee data printed on a badge."""

    attendee_name: str
    attendee_email: str = ""
    attendee_id: str = ""
    qr_code: str = ""
    is_vip: bool = False
    vip_logo_url: Optional[str] = None
    template_id: Optional[str] = None
    template_data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'attendee_id': self.attendee_id,
            'attendee_name': self.attendee_name,
            'attendee_email': self.attendee_email,
            'qr_code': self.qr_code,
            'is_vip': self.is_vip,
            'vip_logo_url': self.vip_logo_url,
            'template_id': self.template_id,
            'template_data': dict(self.template_data),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BadgePayload':
        if not data.get('attendee_name'):
            raise InvalidConfigurationError("Badge payload needs an attendee_name")
        return cls(
            attendee_name=data['attendee_name'],
            attendee_email=data.get('attendee_email', ''),
            attendee_id=str(data.get('attendee_id', '')),
            qr_code=data.get('qr_code', ''),
            is_vip=bool(data.get('is_vip', False)),
            vip_logo_url=data.get('vip_logo_url'),
            template_id=data.get('template_id'),
            template_data=dict(data.get('template_data') or {}),
        )


@dataclass(frozen=True)
class PrintSettings:
    """Per-job print settings, plus an optional direct printer target."""

    label_size: Optional[LabelSize] = None  # None: largest supported
    copies: int = 1
    auto_cut: bool = True
    quality: PrintQuality = PrintQuality.NORMAL
    density: int = 5  # 1-10
    mirror: bool = False
    half_cut: bool = False

    # Direct printing (no discovery)
    connection_type: Optional[TransportType] = None
    bluetooth_address: Optional[str] = None
    ip_address: Optional[str] = None
    port: Optional[int] = None
    direct_print: bool = False
    connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT
    auto_reconnect: bool = True

    def __post_init__(self):
        if self.copies < 1:
            raise InvalidConfigurationError("copies must be at least 1", {'copies': self.copies})
        if not 1 <= self.density <= 10:
            raise InvalidConfigurationError("density must be between 1 and 10", {'density': self.density})

    @classmethod
    def bluetooth(cls, address: str, **kwargs) -> 'PrintSettings':
        return cls(connection_type=TransportType.BLUETOOTH, bluetooth_address=address,
                   direct_print=True, **kwargs)

    @classmethod
    def wifi(cls, ip_address: str, port: int = RAW_PORT, **kwargs) -> 'PrintSettings':
        return cls(connection_type=TransportType.WIFI, ip_address=ip_address, port=port,
                   direct_print=True, **kwargs)

    @classmethod
    def mfi(cls, accessory: str, **kwargs) -> 'PrintSettings':
        return cls(connection_type=TransportType.MFI, bluetooth_address=accessory,
                   direct_print=True, **kwargs)

    @property
    def label_size_id(self) -> Optional[str]:
        return self.label_size.id if self.label_size else None

    @property
    def direct_address(self) -> Optional[str]:
        if self.connection_type == TransportType.WIFI:
            return self.ip_address
        return self.bluetooth_address or self.ip_address

    @property
    def connection_identifier(self) -> Optional[str]:
        """Human readable direct target, e.g. ``192.168.1.100:9100``."""
        address = self.direct_address
        if address and self.connection_type == TransportType.WIFI:
            return f"{address}:{self.port or RAW_PORT}"
        return address

    @property
    def is_direct(self) -> bool:
        return bool(self.direct_print and self.connection_type and self.direct_address)

    def signature(self) -> Tuple:
        """Fields that must match for two jobs to share a batch."""
        return (self.label_size_id, self.quality, self.auto_cut, self.copies, self.density)

    def to_settings_map(self, printer_id: Optional[str] = None) -> Dict[str, Any]:
        """Settings map handed to transport adapters."""
        settings = {
            'labelSizeId': self.label_size_id,
            'copies': self.copies,
            'autoCut': self.auto_cut,
            'quality': self.quality.value,
            'density': self.density,
            'mirror': self.mirror,
            'halfCut': self.half_cut,
        }
        if printer_id:
            settings['printerId'] = printer_id
        if self.is_direct:
            settings['connectionType'] = self.connection_type.value
            settings['address'] = self.direct_address
            settings['port'] = self.port
            settings['timeoutMs'] = int(self.connection_timeout * 1000)
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return {
            'label_size': self.label_size.to_dict() if self.label_size else None,
            'copies': self.copies,
            'auto_cut': self.auto_cut,
            'quality': self.quality.value,
            'density': self.density,
            'mirror': self.mirror,
            'half_cut': self.half_cut,
            'connection_type': self.connection_type.value if self.connection_type else None,
            'bluetooth_address': self.bluetooth_address,
            'ip_address': self.ip_address,
            'port': self.port,
            'direct_print': self.direct_print,
            'connection_timeout': self.connection_timeout,
            'auto_reconnect': self.auto_reconnect,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PrintSettings':
        data = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and v is not None}
        if isinstance(data.get('label_size'), dict):
            data['label_size'] = LabelSize.from_dict(data['label_size'])
        if data.get('quality'):
            data['quality'] = PrintQuality(data['quality'])
        if data.get('connection_type'):
            data['connection_type'] = TransportType(data['connection_type'])
        return cls(**data)


@dataclass(frozen=True)
class PrintJob:
    """A badge to print. Never mutated; retries are new jobs."""

    payload: BadgePayload
    printer_id: Optional[str] = None
    settings: PrintSettings = field(default_factory=PrintSettings)
    priority: JobPriority = JobPriority.NORMAL

    id: str = field(default_factory=new_job_id)
    created_at: datetime = field(default_factory=datetime.now)

    # Retries
    retry_count: int = 0
    max_retries: int = MAX_RETRIES
    retry_of: Optional[str] = None

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def for_retry(self) -> 'PrintJob':
        """Same payload under a new id with the retry count bumped."""
        return replace(
            self,
            id=new_job_id(),
            created_at=datetime.now(),
            retry_count=self.retry_count + 1,
            retry_of=self.id,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'id': self.id,
            'printer_id': self.printer_id,
            'payload': self.payload.to_dict(),
            'settings': self.settings.to_dict(),
            'priority': self.priority.value,
            'created_at': _isoformat(self.created_at),
            'retry_count': self.retry_count,
            'max_retries': self.max_retries,
            'retry_of': self.retry_of,
        }


@dataclass(frozen=True)
class PrintResult:
    """Outcome of a job or batch. Written once."""

    success: bool
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    print_time_ms: float = 0.0
    label_count: int = 0
    completed_at: datetime = field(default_factory=datetime.now)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def succeeded(cls, print_time_ms: float = 0.0, label_count: int = 1, **diagnostics) -> 'PrintResult':
        return cls(success=True, print_time_ms=print_time_ms, label_count=label_count,
                   diagnostics=diagnostics)

    @classmethod
    def failed(cls, message: str, code: Optional[str] = None, print_time_ms: float = 0.0,
               **diagnostics) -> 'PrintResult':
        return cls(success=False, error_message=message, error_code=code,
                   print_time_ms=print_time_ms, diagnostics=diagnostics)

    @classmethod
    def summarize(cls, results: Iterable['PrintResult'], noun: str = "badges",
                  total: Optional[int] = None) -> 'PrintResult':
        """
        Combine per-job results into one.

        Partial success is reported as ``Printed X/Y badges. Last error: ...``
        rather than as a plain failure. ``total`` counts items that never
        ran as not printed; the last result should then be the failure
        that stopped the run.
        """
        results = list(results)
        total = max(total or 0, len(results))
        succeeded = [r for r in results if r.success]
        failures = [r for r in results if not r.success]
        print_time = sum(r.print_time_ms for r in results)
        labels = sum(r.label_count for r in succeeded)
        counts = {'success_count': len(succeeded), 'total_count': total}

        if not failures:
            return cls(success=True, print_time_ms=print_time, label_count=labels, diagnostics=counts)

        last = failures[-1]
        if succeeded:
            return cls(
                success=False,
                error_message=f"Printed {len(succeeded)}/{total} {noun}. Last error: {last.error_message}",
                error_code="PARTIAL_SUCCESS",
                print_time_ms=print_time,
                label_count=labels,
                diagnostics={**counts, 'last_error_code': last.error_code},
            )
        return cls(
            success=False,
            error_message=last.error_message or f"Failed to print any {noun}",
            error_code=last.error_code or "BATCH_FAILED",
            print_time_ms=print_time,
            diagnostics=counts,
        )

    @property
    def is_partial(self) -> bool:
        return self.error_code == "PARTIAL_SUCCESS"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'error_message': self.error_message,
            'error_code': self.error_code,
            'print_time_ms': round(self.print_time_ms, 1),
            'label_count': self.label_count,
            'completed_at': _isoformat(self.completed_at),
            'diagnostics': dict(self.diagnostics),
        }


@dataclass
class PrintJobBatch:
    """
    Jobs sharing priority and settings, printed together.

    Members can be added or removed only while the batch is pending.
    Promotion freezes the member list.
    """

    priority: JobPriority
    settings: PrintSettings
    max_size: int = MAX_BATCH_SIZE
    id: str = field(default_factory=new_batch_id)
    created_at: datetime = field(default_factory=datetime.now)
    state: BatchState = BatchState.PENDING
    promoted_at: Optional[datetime] = None
    _jobs: List[PrintJob] = field(default_factory=list, repr=False)

    @property
    def jobs(self) -> Tuple[PrintJob, ...]:
        return tuple(self._jobs)

    @property
    def job_count(self) -> int:
        return len(self._jobs)

    @property
    def job_ids(self) -> List[str]:
        return [job.id for job in self._jobs]

    @property
    def is_full(self) -> bool:
        return len(self._jobs) >= self.max_size

    @property
    def estimated_duration(self) -> int:
        """Estimated seconds to print the whole batch."""
        return len(self._jobs) * ESTIMATED_SECONDS_PER_JOB

    def accepts(self, job: PrintJob) -> bool:
        return (
            self.state == BatchState.PENDING
            and not self.is_full
            and job.priority == self.priority
            and job.settings.signature() == self.settings.signature()
        )

    def add(self, job: PrintJob) -> bool:
        """Append a job. Returns False if the batch cannot take it."""
        if not self.accepts(job):
            return False
        self._jobs.append(job)
        return True

    def remove(self, job_id: str) -> bool:
        if self.state != BatchState.PENDING:
            return False
        for index, job in enumerate(self._jobs):
            if job.id == job_id:
                del self._jobs[index]
                return True
        return False

    def split(self, size: int) -> List['PrintJobBatch']:
        """
        Shrink the batch to ``size`` members.

        Members past the first ``size`` move, in order, into new batches of
        at most ``size`` that share this batch's priority, settings and age.
        """
        if self.state != BatchState.PENDING:
            raise InvalidConfigurationError(f"Batch {self.id} is already {self.state.value}")
        overflow, self._jobs = self._jobs[size:], self._jobs[:size]
        self.max_size = size
        parts = []
        for start in range(0, len(overflow), size):
            part = PrintJobBatch(priority=self.priority, settings=self.settings, max_size=size,
                                 created_at=self.created_at)
            part._jobs = overflow[start:start + size]
            parts.append(part)
        return parts

    def age(self, now: Optional[datetime] = None) -> float:
        """Seconds since the batch was opened."""
        return ((now or datetime.now()) - self.created_at).total_seconds()

    def is_due(self, max_wait: float, now: Optional[datetime] = None) -> bool:
        return self.is_full or self.age(now) >= max_wait

    def promote(self):
        """pending -> processing"""
        if self.state != BatchState.PENDING:
            raise InvalidConfigurationError(f"Batch {self.id} is already {self.state.value}")
        self.state = BatchState.PROCESSING
        self.promoted_at = datetime.now()

    def complete(self):
        """processing -> completed"""
        if self.state != BatchState.PROCESSING:
            raise InvalidConfigurationError(f"Batch {self.id} is {self.state.value}, not processing")
        self.state = BatchState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'priority': self.priority.value,
            'settings': self.settings.to_dict(),
            'job_ids': self.job_ids,
            'job_count': self.job_count,
            'max_size': self.max_size,
            'state': self.state.value,
            'created_at': _isoformat(self.created_at),
            'promoted_at': _isoformat(self.promoted_at),
            'estimated_duration': self.estimated_duration,
        }
