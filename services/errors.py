"""
Custody Ledger Errors
=====================
Domain exceptions for the ledger, recorder, verifiers and detector.

Expected data absence (unknown digest, empty timeline, unreadable evidence
file during detection) is reported through result objects, not raised.
"""


class CustodyLedgerError(Exception):
    """Base class for custody-core errors."""


class InvalidInput(CustodyLedgerError, ValueError):
    """Malformed payload or request. Raised before any write."""


class StorageCorrupt(CustodyLedgerError):
    """A persisted ledger could not be read or parsed. Never auto-repaired."""


class ChainCompromised(CustodyLedgerError):
    """Chain verification failed and the caller chose to fail closed."""

    def __init__(self, chain_id, broken_at, reason=""):
        self.chain_id = chain_id
        self.broken_at = broken_at
        self.reason = reason
        super().__init__(f"Chain {chain_id} compromised at block {broken_at}: {reason}")


class MirrorWriteFailed(CustodyLedgerError):
    """The relational mirror write failed after a successful ledger append."""


class MirrorTimeout(MirrorWriteFailed):
    """The relational mirror write timed out."""


class EvidenceFileError(CustodyLedgerError, OSError):
    """An evidence file could not be read."""


class FileMissing(EvidenceFileError):
    """The referenced evidence file does not exist."""


class FileAccessError(EvidenceFileError):
    """The referenced evidence file exists but could not be read."""


class FileReadTimeout(FileAccessError):
    """Reading the evidence file did not finish before the deadline."""
