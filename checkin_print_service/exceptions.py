"""
Custom exceptions for print service operations.
"""


class PrintServiceError(Exception):
    """Base exception for all print service errors."""

    def __init__(self, message: str, context: dict = None):
        """
        Initialize print service error.

        Args:
            message: Error message
            context: Optional dictionary with additional error context
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self):
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


class TransportError(PrintServiceError):
    """Raised by transport adapters. Carries a raw error code."""

    def __init__(self, message: str, code: str = None, context: dict = None):
        super().__init__(message, context)
        self.code = code


class RasterizationError(PrintServiceError):
    """Raised when a badge cannot be rendered for a label size."""
    pass


class MfiAuthenticationError(PrintServiceError):
    """Raised when accessory authentication fails."""
    pass


class PrinterNotFoundError(PrintServiceError):
    """Raised when a printer id is not in the discovery set."""
    pass


class InvalidConfigurationError(PrintServiceError):
    """Raised when service or printer configuration is invalid."""
    pass
