"""
Error kinds raised across the settlement reconciliation system.

Client-side problems (unreadable or incomplete uploads) and server-side
storage failures are kept apart so the CLI can map them to exit codes.
"""


class ReconciliationError(Exception):
    """Base class for all reconciliation system errors."""


class ParseError(ReconciliationError):
    """CSV content could not be read by either parser."""


class DataValidationError(ReconciliationError):
    """Upload is empty or lacks required columns."""


class StorageError(ReconciliationError):
    """Read or write against the dataset store failed."""


class TransientReadError(StorageError):
    """Connection-level read failure that may succeed on retry."""
