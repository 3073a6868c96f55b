"""Domain exceptions raised by the ledger services.

Routes translate these to HTTP responses; hash and signature mismatches are
never raised, they are reported as fields of a verification result.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .verification import VerificationResult


class LedgerError(Exception):
    """Base exception for ledger operations."""
    pass


class UnserializableValueError(LedgerError):
    """Value cannot be canonically serialized (cycle or unsupported type)."""

    def __init__(self, message: str, path: str = "$"):
        super().__init__(f"{message} at {path}")
        self.path = path


class NotFoundError(LedgerError):
    """Referenced entity does not exist (or was soft-deleted)."""
    pass


class ReportRunNotFoundError(NotFoundError):
    """Report run does not exist."""
    pass


class SignatureNotFoundError(NotFoundError):
    """Signature does not exist."""
    pass


class AuditEntryNotFoundError(NotFoundError):
    """An audit entry a run was built from no longer resolves."""
    pass


class UnknownPacketTypeError(LedgerError):
    """Packet type is not registered."""

    def __init__(self, packet_type: Any):
        super().__init__(f"Unknown packet type: {packet_type!r}")
        self.packet_type = packet_type


class BuilderVersionUnavailableError(LedgerError):
    """The builder that produced a run cannot be reproduced."""
    pass


class InvalidSignatureError(LedgerError):
    """Signature input failed validation."""
    pass


class InvalidOperationError(LedgerError):
    """Operation not allowed in current state."""
    pass


class AlreadyFinalizedError(LedgerError):
    """Run is sealed for this operation; create a new run instead."""
    pass


class FinalizationBlockedError(LedgerError):
    """Verification did not pass, so the run cannot be completed."""

    def __init__(self, message: str, result: "VerificationResult"):
        super().__init__(message)
        self.result = result


class StorageError(LedgerError):
    """Object storage rejected or failed an operation."""
    pass


class StorageTimeoutError(StorageError):
    """Object storage did not answer in time."""
    pass
