"""
Exception types raised by the Spanora SDK.

The SDK is fail-silent towards the host application: export and
instrumentation problems are logged, never raised. These exceptions are
only raised for mistakes the caller can fix at setup time.
"""


class SpanoraError(Exception):
    """Base class for all Spanora SDK errors."""


class ConfigurationError(SpanoraError):
    """Raised by ``init()`` when explicit settings are invalid."""
