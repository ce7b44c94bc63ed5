"""Domain errors raised by the ledger and the report pipeline.

Routers never see SQLAlchemy or openpyxl errors directly; services translate
them into one of these and ``medpool.main`` maps them onto HTTP responses.
"""


class LedgerError(Exception):
    """Base class for every error the ledger reports to its callers."""


class ValidationError(LedgerError):
    """A required field is missing or a unique key is already taken."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field
        self.message = message


class RecordNotFoundError(LedgerError):
    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} '{record_id}' not found")
        self.kind = kind
        self.record_id = record_id


class BusyAssetError(LedgerError):
    """The asset already has an active loan."""

    def __init__(self, asset_id: str):
        super().__init__(f"Asset '{asset_id}' is currently on loan")
        self.asset_id = asset_id


class ConcurrentModificationError(LedgerError):
    """Another context wrote the key after our snapshot was taken."""

    def __init__(self, key: str, expected: int, actual: int):
        super().__init__(f"'{key}' changed concurrently (expected version {expected}, found {actual})")
        self.key = key
        self.expected = expected
        self.actual = actual


class ExportUnavailableError(LedgerError):
    """The primary spreadsheet writer is unavailable or failed."""


class PresentationError(LedgerError):
    """The printable document could not be opened for viewing."""


class EmptyExportWarning(UserWarning):
    """A spreadsheet export matched no records; no file is produced."""
