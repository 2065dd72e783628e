"""
MFi Authentication
==================

Gate for printers that require Apple MFi accessory authentication
before a transport connection is allowed.

On hosts without an accessory stack the ``NullMfiGate`` is used and no
printer requires authentication. ``CachedMfiGate`` wraps a platform
authenticator coroutine and adds session caching, a timeout and
statistics.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, Callable, Awaitable

from .models import Printer
from .config import MFI_AUTH_TIMEOUT, MFI_SESSION_TTL
from .exceptions import MfiAuthenticationError

logger = logging.getLogger(__name__)


class MfiAuthStatus(str, Enum):
    NOT_REQUIRED = "not_required"
    REQUIRED = "required"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"


@dataclass(frozen=True)
class MfiAuthResult:
    status: MfiAuthStatus
    message: str = ""
    session_id: Optional[str] = None
    certificate_info: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def success(self) -> bool:
        return self.status in (MfiAuthStatus.SUCCESS, MfiAuthStatus.NOT_REQUIRED)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'message': self.message,
            'session_id': self.session_id,
            'certificate_info': dict(self.certificate_info),
            'timestamp': self.timestamp.isoformat(),
        }


class MfiGate(ABC):
    """Decides whether a printer needs MFi authentication and performs it."""

    @abstractmethod
    async def is_authentication_required(self, printer: Printer) -> bool:
        pass

    @abstractmethod
    async def authenticate(self, printer: Printer) -> MfiAuthResult:
        pass

    async def validate_certificate(self, printer: Printer, certificate: bytes) -> bool:
        return False

    def clear_cache(self, printer_id: Optional[str] = None):
        pass

    def get_statistics(self) -> Dict[str, Any]:
        return {}


class NullMfiGate(MfiGate):
    """No accessory stack: nothing requires authentication."""

    async def is_authentication_required(self, printer: Printer) -> bool:
        return False

    async def authenticate(self, printer: Printer) -> MfiAuthResult:
        return MfiAuthResult(status=MfiAuthStatus.NOT_REQUIRED, message="MFi not used on this platform")


Authenticator = Callable[[Printer], Awaitable[Dict[str, Any]]]
CertificateValidator = Callable[[Printer, bytes], Awaitable[bool]]


class CachedMfiGate(MfiGate):
    """
    MFi gate around a platform authenticator.

    The authenticator coroutine receives the printer and returns a dict
    with ``success`` and optionally ``error`` and ``certificate``. It may
    also raise ``MfiAuthenticationError``.
    """

    def __init__(self, authenticator: Authenticator,
                 certificate_validator: Optional[CertificateValidator] = None,
                 timeout: float = MFI_AUTH_TIMEOUT, session_ttl: float = MFI_SESSION_TTL):
        self.authenticator = authenticator
        self.certificate_validator = certificate_validator
        self.timeout = timeout
        self.session_ttl = session_ttl
        self._sessions: Dict[str, MfiAuthResult] = {}
        self._in_progress: Dict[str, asyncio.Task] = {}
        self._stats = {'total_attempts': 0, 'successes': 0, 'failures': 0, 'timeouts': 0}

    def _cached(self, printer_id: str) -> Optional[MfiAuthResult]:
        session = self._sessions.get(printer_id)
        if session is None:
            return None
        if datetime.now() - session.timestamp > timedelta(seconds=self.session_ttl):
            del self._sessions[printer_id]
            return None
        return session

    async def is_authentication_required(self, printer: Printer) -> bool:
        return printer.is_mfi_certified and self._cached(printer.id) is None

    async def authenticate(self, printer: Printer) -> MfiAuthResult:
        if not printer.is_mfi_certified:
            return MfiAuthResult(status=MfiAuthStatus.UNSUPPORTED, message=f"{printer.name} is not MFi certified")

        cached = self._cached(printer.id)
        if cached is not None:
            return cached

        # Callers racing on the same printer share one handshake
        task = self._in_progress.get(printer.id)
        if task is None:
            task = asyncio.ensure_future(self._authenticate(printer))
            self._in_progress[printer.id] = task
            task.add_done_callback(lambda _: self._in_progress.pop(printer.id, None))
        return await asyncio.shield(task)

    async def _authenticate(self, printer: Printer) -> MfiAuthResult:
        self._stats['total_attempts'] += 1
        logger.info(f"[MFi] Authenticating {printer.name} ({printer.id})")
        try:
            outcome = await asyncio.wait_for(self.authenticator(printer), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._stats['timeouts'] += 1
            self._stats['failures'] += 1
            logger.warning(f"[MFi] Authentication timed out for {printer.id}")
            return MfiAuthResult(status=MfiAuthStatus.TIMEOUT,
                                 message=f"MFi authentication timed out after {self.timeout:g}s")
        except MfiAuthenticationError as e:
            self._stats['failures'] += 1
            logger.warning(f"[MFi] Authentication failed for {printer.id}: {e}")
            return MfiAuthResult(status=MfiAuthStatus.FAILED, message=str(e))

        if not outcome.get('success'):
            self._stats['failures'] += 1
            return MfiAuthResult(status=MfiAuthStatus.FAILED,
                                 message=outcome.get('error', "MFi authentication rejected"))

        self._stats['successes'] += 1
        result = MfiAuthResult(
            status=MfiAuthStatus.SUCCESS,
            message="Authenticated",
            session_id=str(uuid.uuid4()),
            certificate_info=dict(outcome.get('certificate') or {}),
        )
        self._sessions[printer.id] = result
        return result

    async def validate_certificate(self, printer: Printer, certificate: bytes) -> bool:
        if self.certificate_validator is None or not certificate:
            return False
        return await self.certificate_validator(printer, certificate)

    def clear_cache(self, printer_id: Optional[str] = None):
        if printer_id is None:
            self._sessions.clear()
        else:
            self._sessions.pop(printer_id, None)

    def get_statistics(self) -> Dict[str, Any]:
        attempts = self._stats['total_attempts']
        return {
            **self._stats,
            'success_rate': round(self._stats['successes'] / attempts, 3) if attempts else 0.0,
            'cached_sessions': len(self._sessions),
            'in_progress': len(self._in_progress),
        }
