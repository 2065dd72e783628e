"""
Brother Error Handling
======================

Single place where raw printer failures (a message and maybe a code) are
classified into a ``BrotherError`` with a user-facing message,
troubleshooting steps, recovery actions and a recoverability verdict.

Transports, the connection manager, the job processor and the queue
manager pass raw failures here instead of interpreting them themselves.
"""

import logging
import re
from collections import Counter, deque
from datetime import datetime, timedelta
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple

from .config import ERROR_HISTORY_SIZE, RECENT_ERROR_WINDOW
from .events import ErrorClassified

logger = logging.getLogger(__name__)


class ErrorType(str, Enum):
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    PRINTING = "printing"
    HARDWARE = "hardware"
    CONFIGURATION = "configuration"
    PERMISSION = "permission"
    NETWORK = "network"
    UNKNOWN = "unknown"


class ErrorCode:
    """Stable error codes."""

    CONNECTION_FAILED = 'CONNECTION_FAILED'
    CONNECTION_TIMEOUT = 'CONNECTION_TIMEOUT'
    CONNECTION_LOST = 'CONNECTION_LOST'
    AUTH_FAILED = 'AUTH_FAILED'
    MFI_AUTH_FAILED = 'MFI_AUTH_FAILED'
    PRINT_FAILED = 'PRINT_FAILED'
    PRINTER_BUSY = 'PRINTER_BUSY'
    OUT_OF_LABELS = 'OUT_OF_LABELS'
    COVER_OPEN = 'COVER_OPEN'
    LOW_BATTERY = 'LOW_BATTERY'
    PRINTER_JAM = 'PRINTER_JAM'
    INVALID_SETTINGS = 'INVALID_SETTINGS'
    UNSUPPORTED_FORMAT = 'UNSUPPORTED_FORMAT'
    PERMISSION_DENIED = 'PERMISSION_DENIED'
    BLUETOOTH_DISABLED = 'BLUETOOTH_DISABLED'
    WIFI_DISCONNECTED = 'WIFI_DISCONNECTED'
    PRINTER_NOT_FOUND = 'PRINTER_NOT_FOUND'
    SDK_ERROR = 'SDK_ERROR'

    # Raised by the job processor
    TIMEOUT = 'TIMEOUT'
    CANCELLED = 'CANCELLED'
    PROCESSING_ERROR = 'PROCESSING_ERROR'
    EXECUTION_ERROR = 'EXECUTION_ERROR'

    UNKNOWN_ERROR = 'UNKNOWN_ERROR'


class RecoveryAction(str, Enum):
    """Automatic remediation applied by the queue manager."""

    RECONNECT = "reconnect"
    PAUSE_AND_NOTIFY = "pause_and_notify"
    QUEUE_FOR_LATER = "queue_for_later"
    SURFACE = "surface"


CODE_TYPES = {
    ErrorCode.CONNECTION_FAILED: ErrorType.CONNECTION,
    ErrorCode.CONNECTION_TIMEOUT: ErrorType.CONNECTION,
    ErrorCode.CONNECTION_LOST: ErrorType.CONNECTION,
    ErrorCode.TIMEOUT: ErrorType.CONNECTION,
    ErrorCode.AUTH_FAILED: ErrorType.AUTHENTICATION,
    ErrorCode.MFI_AUTH_FAILED: ErrorType.AUTHENTICATION,
    ErrorCode.PRINT_FAILED: ErrorType.PRINTING,
    ErrorCode.PRINTER_BUSY: ErrorType.PRINTING,
    ErrorCode.PROCESSING_ERROR: ErrorType.PRINTING,
    ErrorCode.EXECUTION_ERROR: ErrorType.PRINTING,
    ErrorCode.CANCELLED: ErrorType.PRINTING,
    ErrorCode.OUT_OF_LABELS: ErrorType.HARDWARE,
    ErrorCode.COVER_OPEN: ErrorType.HARDWARE,
    ErrorCode.LOW_BATTERY: ErrorType.HARDWARE,
    ErrorCode.PRINTER_JAM: ErrorType.HARDWARE,
    ErrorCode.INVALID_SETTINGS: ErrorType.CONFIGURATION,
    ErrorCode.UNSUPPORTED_FORMAT: ErrorType.CONFIGURATION,
    ErrorCode.PERMISSION_DENIED: ErrorType.PERMISSION,
    ErrorCode.BLUETOOTH_DISABLED: ErrorType.PERMISSION,
    ErrorCode.WIFI_DISCONNECTED: ErrorType.NETWORK,
    ErrorCode.PRINTER_NOT_FOUND: ErrorType.NETWORK,
    ErrorCode.SDK_ERROR: ErrorType.UNKNOWN,
}

# Checked in order; first hit wins
KEYWORD_TYPES: List[Tuple[Tuple[str, ...], ErrorType]] = [
    (('connection', 'connect'), ErrorType.CONNECTION),
    (('auth', 'mfi'), ErrorType.AUTHENTICATION),
    (('print', 'job'), ErrorType.PRINTING),
    (('battery', 'jam', 'cover', 'label'), ErrorType.HARDWARE),
    (('permission', 'bluetooth'), ErrorType.PERMISSION),
    (('network', 'wifi'), ErrorType.NETWORK),
]

CODE_PATTERNS = [
    re.compile(r'error[:\s]+(\w+)', re.IGNORECASE),
    re.compile(r'code[:\s]+(\w+)', re.IGNORECASE),
    re.compile(r'\[(\w+)\]'),
]

NON_RECOVERABLE_CODES = {
    ErrorCode.AUTH_FAILED,
    ErrorCode.MFI_AUTH_FAILED,
    ErrorCode.UNSUPPORTED_FORMAT,
    ErrorCode.SDK_ERROR,
}

RECOVERY_BY_CODE = {
    ErrorCode.CONNECTION_FAILED: RecoveryAction.RECONNECT,
    ErrorCode.CONNECTION_TIMEOUT: RecoveryAction.RECONNECT,
    ErrorCode.CONNECTION_LOST: RecoveryAction.RECONNECT,
    ErrorCode.TIMEOUT: RecoveryAction.RECONNECT,
    ErrorCode.PRINTER_BUSY: RecoveryAction.RECONNECT,
    ErrorCode.OUT_OF_LABELS: RecoveryAction.PAUSE_AND_NOTIFY,
    ErrorCode.COVER_OPEN: RecoveryAction.PAUSE_AND_NOTIFY,
    ErrorCode.LOW_BATTERY: RecoveryAction.PAUSE_AND_NOTIFY,
    ErrorCode.PRINTER_JAM: RecoveryAction.PAUSE_AND_NOTIFY,
    ErrorCode.PERMISSION_DENIED: RecoveryAction.QUEUE_FOR_LATER,
    ErrorCode.BLUETOOTH_DISABLED: RecoveryAction.QUEUE_FOR_LATER,
    ErrorCode.WIFI_DISCONNECTED: RecoveryAction.QUEUE_FOR_LATER,
}

USER_MESSAGES = {
    ErrorCode.CONNECTION_FAILED: "Unable to connect to the Brother printer. Please check that the printer is powered on and within range.",
    ErrorCode.CONNECTION_TIMEOUT: "Connection to the printer timed out. The printer may be busy or out of range.",
    ErrorCode.CONNECTION_LOST: "Connection to the printer was lost. Please check the printer and try reconnecting.",
    ErrorCode.TIMEOUT: "The printer did not finish the job in time. Please check the printer and try again.",
    ErrorCode.AUTH_FAILED: "Failed to authenticate with the printer. Please check your printer settings.",
    ErrorCode.MFI_AUTH_FAILED: "MFi authentication failed. Please ensure you're using a certified Brother printer.",
    ErrorCode.PRINT_FAILED: "Print job failed. Please check the printer status and try again.",
    ErrorCode.PRINTER_BUSY: "The printer is currently busy. Please wait and try again.",
    ErrorCode.CANCELLED: "The print job was cancelled.",
    ErrorCode.OUT_OF_LABELS: "The printer is out of labels. Please replace the label roll and try again.",
    ErrorCode.COVER_OPEN: "The printer cover is open. Please close the cover and try again.",
    ErrorCode.LOW_BATTERY: "The printer battery is low. Please charge the printer or connect to power.",
    ErrorCode.PRINTER_JAM: "There is a paper jam in the printer. Please clear the jam and try again.",
    ErrorCode.INVALID_SETTINGS: "Invalid printer settings. Please check your label size and print quality settings.",
    ErrorCode.UNSUPPORTED_FORMAT: "The image format is not supported by this printer. Please try a different format.",
    ErrorCode.PERMISSION_DENIED: "Permission denied. Please grant Bluetooth access to the print service.",
    ErrorCode.BLUETOOTH_DISABLED: "Bluetooth is disabled. Please enable Bluetooth and try again.",
    ErrorCode.WIFI_DISCONNECTED: "WiFi is disconnected. Please check your network connection.",
    ErrorCode.PRINTER_NOT_FOUND: "Brother printer not found. Please ensure the printer is powered on and discoverable.",
}

TYPE_MESSAGES = {
    ErrorType.CONNECTION: "There is a problem with the printer connection.",
    ErrorType.AUTHENTICATION: "The printer could not be authenticated.",
    ErrorType.PRINTING: "The badge could not be printed.",
    ErrorType.HARDWARE: "The printer reported a hardware problem.",
    ErrorType.CONFIGURATION: "The print settings are not valid for this printer.",
    ErrorType.PERMISSION: "The print service is missing a required permission.",
    ErrorType.NETWORK: "The printer could not be reached over the network.",
    ErrorType.UNKNOWN: "An unexpected printer error occurred. Please try again.",
}

# Specific steps shown ahead of the generic steps for the error type
CODE_STEPS = {
    ErrorCode.OUT_OF_LABELS: [
        "Replace the label roll",
        "Make sure the new roll matches the configured label size",
    ],
    ErrorCode.COVER_OPEN: [
        "Close the printer cover until it clicks",
    ],
    ErrorCode.LOW_BATTERY: [
        "Charge the printer battery or connect the power adapter",
    ],
    ErrorCode.PRINTER_JAM: [
        "Turn off the printer",
        "Open the cover and remove jammed labels",
    ],
    ErrorCode.PRINTER_BUSY: [
        "Wait for the current print to finish",
    ],
    ErrorCode.BLUETOOTH_DISABLED: [
        "Enable Bluetooth on this computer",
    ],
    ErrorCode.PRINTER_NOT_FOUND: [
        "Check that the printer is powered on and discoverable",
        "Run a new printer scan",
    ],
    ErrorCode.TIMEOUT: [
        "Check the printer display for pending errors",
    ],
}

TYPE_STEPS = {
    ErrorType.CONNECTION: [
        "Verify the printer is powered on and ready",
        "Check that Bluetooth is enabled on this computer",
        "Ensure you are within range of the printer (typically 10 meters)",
        "Try turning the printer off and on again",
        "Forget and re-pair the printer if previously connected",
        "Check for interference from other Bluetooth devices",
    ],
    ErrorType.AUTHENTICATION: [
        "Verify the printer supports MFi (Made for iPhone/iPad)",
        "Check that the printer firmware is up to date",
        "Ensure the printer is certified for your device",
        "Try resetting the printer to factory defaults",
        "Contact Brother support for MFi certification issues",
    ],
    ErrorType.PRINTING: [
        "Check that labels are loaded correctly",
        "Verify the label size matches your template",
        "Ensure the printer cover is closed securely",
        "Check for paper jams or obstructions",
        "Verify print quality settings are appropriate",
        "Try printing a test page from the printer menu",
    ],
    ErrorType.HARDWARE: [
        "Check printer status lights for error indicators",
        "Ensure labels are loaded and aligned properly",
        "Verify the printer cover is closed",
        "Check battery level and charge if necessary",
        "Clear any paper jams or obstructions",
        "Clean the print head if print quality is poor",
        "Consult the printer manual for specific error codes",
    ],
    ErrorType.CONFIGURATION: [
        "Verify label size settings match your actual labels",
        "Check print quality and density settings",
        "Ensure the image format is supported (PNG, BMP)",
        "Verify the image resolution is appropriate",
        "Try using default settings first",
    ],
    ErrorType.PERMISSION: [
        "Grant Bluetooth access to the print service",
        "On Linux, add the service user to the bluetooth and dialout groups",
        "Check that Bluetooth is enabled system-wide",
        "Restart the print service after granting permissions",
    ],
    ErrorType.NETWORK: [
        "Check that this computer is connected to the network",
        "Verify the printer is on the same network",
        "Check the printer's IP address and network settings",
        "Try restarting your WiFi router",
        "Ensure firewall settings allow printer communication on port 9100",
    ],
    ErrorType.UNKNOWN: [
        "Restart the Brother printer",
        "Restart the print service",
        "Verify printer compatibility",
        "Contact technical support if the issue persists",
    ],
}

RECOVERY_ACTIONS = {
    ErrorCode.CONNECTION_FAILED: ["Check printer power and status", "Move closer to the printer",
                                  "Restart the printer", "Try reconnecting"],
    ErrorCode.CONNECTION_TIMEOUT: ["Check printer power and status", "Move closer to the printer",
                                   "Restart the printer", "Try reconnecting"],
    ErrorCode.CONNECTION_LOST: ["Check printer connection", "Verify network/Bluetooth status",
                                "Reconnect to printer"],
    ErrorCode.AUTH_FAILED: ["Verify printer compatibility", "Check MFi certification",
                            "Reset printer settings", "Contact support if issue persists"],
    ErrorCode.MFI_AUTH_FAILED: ["Verify printer compatibility", "Check MFi certification",
                                "Reset printer settings", "Contact support if issue persists"],
    ErrorCode.OUT_OF_LABELS: ["Replace label roll", "Check label alignment",
                              "Close printer cover", "Retry printing"],
    ErrorCode.COVER_OPEN: ["Close printer cover securely", "Check for obstructions", "Retry printing"],
    ErrorCode.LOW_BATTERY: ["Charge printer battery", "Connect to power adapter",
                            "Wait for sufficient charge", "Retry printing"],
    ErrorCode.PRINTER_JAM: ["Turn off printer", "Open cover and remove jammed labels",
                            "Check label path is clear", "Close cover and restart printer"],
    ErrorCode.PERMISSION_DENIED: ["Open system settings", "Grant Bluetooth permission",
                                  "Restart the print service"],
    ErrorCode.BLUETOOTH_DISABLED: ["Open system settings", "Enable Bluetooth", "Retry"],
}

DEFAULT_RECOVERY_ACTIONS = ["Check printer status", "Restart the printer", "Try reconnecting",
                            "Contact support if issue persists"]


@dataclass(frozen=True)
class BrotherError:
    """A classified printer failure."""

    type: ErrorType
    code: str
    message: str
    technical_details: Optional[str] = None
    user_action: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    is_recoverable: bool = True
    troubleshooting_steps: Tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'code': self.code,
            'message': self.message,
            'technical_details': self.technical_details,
            'user_action': self.user_action,
            'context': {k: str(v) for k, v in self.context.items()},
            'is_recoverable': self.is_recoverable,
            'troubleshooting_steps': list(self.troubleshooting_steps),
            'timestamp': self.timestamp.isoformat(),
        }

    def __str__(self):
        return f"BrotherError(type: {self.type.value}, code: {self.code}, message: {self.message})"


def extract_code(message: str) -> str:
    """Pull a known error code out of a raw message, else ``UNKNOWN_ERROR``."""
    for pattern in CODE_PATTERNS:
        match = pattern.search(message or '')
        if match and match.group(1).upper() in CODE_TYPES:
            return match.group(1).upper()
    return ErrorCode.UNKNOWN_ERROR


def classify_message(message: str) -> ErrorType:
    """Keyword fallback used when no known code is available."""
    lowered = (message or '').lower()
    for keywords, error_type in KEYWORD_TYPES:
        if any(keyword in lowered for keyword in keywords):
            return error_type
    return ErrorType.UNKNOWN


class ErrorHandler:
    """
    Classifies raw failures and keeps a bounded history for statistics.

    Publishes ``ErrorClassified`` on the event bus for every parsed error
    when a bus is given.
    """

    def __init__(self, event_bus=None, history_size: int = ERROR_HISTORY_SIZE,
                 recent_window: float = RECENT_ERROR_WINDOW):
        self.event_bus = event_bus
        self.recent_window = recent_window
        self._history = deque(maxlen=history_size)

    def parse(self, message: str, code: Optional[str] = None,
              context: Optional[Dict[str, Any]] = None) -> BrotherError:
        """Classify a raw message/code pair and record it."""
        message = message or "Unknown printer error"
        if code:
            code = code.upper()
        else:
            code = extract_code(message)

        error_type = CODE_TYPES.get(code) or classify_message(message)

        draft = BrotherError(type=error_type, code=code, message=message)
        error = BrotherError(
            type=error_type,
            code=code,
            message=self.get_user_message(draft),
            technical_details=message,
            user_action=self._user_action(draft),
            context=dict(context or {}),
            is_recoverable=self.is_recoverable(draft),
            troubleshooting_steps=tuple(self.get_troubleshooting_steps(draft)),
        )

        self._history.append(error)
        logger.warning(f"[Errors] {error.type.value}/{error.code}: {message}")
        if self.event_bus is not None:
            self.event_bus.publish(ErrorClassified(error=error))
        return error

    def get_user_message(self, error: BrotherError) -> str:
        return USER_MESSAGES.get(error.code) or TYPE_MESSAGES[error.type]

    def get_troubleshooting_steps(self, error: BrotherError) -> List[str]:
        steps = list(CODE_STEPS.get(error.code, []))
        for step in TYPE_STEPS[error.type]:
            if step not in steps:
                steps.append(step)
        return steps

    def get_recovery_actions(self, error: BrotherError) -> List[str]:
        return list(RECOVERY_ACTIONS.get(error.code, DEFAULT_RECOVERY_ACTIONS))

    def get_recovery_action(self, error: BrotherError) -> RecoveryAction:
        """Automatic remediation for a failure. Non-recoverable errors are surfaced."""
        if not error.is_recoverable:
            return RecoveryAction.SURFACE
        return RECOVERY_BY_CODE.get(error.code, RecoveryAction.SURFACE)

    def is_recoverable(self, error: BrotherError) -> bool:
        return error.code not in NON_RECOVERABLE_CODES

    def _user_action(self, error: BrotherError) -> Optional[str]:
        actions = RECOVERY_ACTIONS.get(error.code)
        return actions[0] if actions else None

    # =========================================================================
    # History
    # =========================================================================

    def get_recent_errors(self, limit: int = 20) -> List[BrotherError]:
        """Most recent errors, newest first."""
        return list(reversed(self._history))[:limit]

    def clear_history(self):
        self._history.clear()
        logger.info("[Errors] Cleared error history")

    def get_statistics(self) -> Dict[str, Any]:
        cutoff = datetime.now() - timedelta(seconds=self.recent_window)
        return {
            'total_errors': len(self._history),
            'errors_by_type': dict(Counter(error.type.value for error in self._history)),
            'errors_by_code': dict(Counter(error.code for error in self._history)),
            'recoverable_errors': sum(1 for error in self._history if error.is_recoverable),
            'recent_errors': sum(1 for error in self._history if error.timestamp > cutoff),
        }
