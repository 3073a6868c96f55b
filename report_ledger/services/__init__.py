"""Business logic services for the Report Ledger."""

from .canonical import canonical_hash, canonicalize
from .entity_store import EntityStore, SqlEntityStore
from .errors import (
    AlreadyFinalizedError,
    BuilderVersionUnavailableError,
    FinalizationBlockedError,
    InvalidOperationError,
    InvalidSignatureError,
    LedgerError,
    NotFoundError,
    ReportRunNotFoundError,
    SignatureNotFoundError,
    StorageError,
    StorageTimeoutError,
    UnknownPacketTypeError,
    UnserializableValueError,
)
from .packets import (
    CURRENT_BUILDER_VERSION,
    PACKET_DEFINITIONS,
    PacketDefinition,
    ReportPayloadBuilder,
    parse_packet_type,
)
from .renderer import ArtifactRenderer, PdfArtifactRenderer
from .report_ledger import ReportRunLedger, ReportRunPage
from .report_service import ReportService
from .signatures import SignatureChain, compute_signature_hash
from .storage import (
    LocalObjectStorage,
    ObjectStorage,
    RetryPolicy,
    SupabaseObjectStorage,
    get_object_storage,
    put_with_retry,
)
from .verification import (
    ArtifactIntegrity,
    ContentIntegrity,
    VerificationEngine,
    VerificationResult,
)

__all__ = [
    # Canonical serialization
    "canonicalize",
    "canonical_hash",
    # Payload building
    "EntityStore",
    "SqlEntityStore",
    "CURRENT_BUILDER_VERSION",
    "PACKET_DEFINITIONS",
    "PacketDefinition",
    "ReportPayloadBuilder",
    "parse_packet_type",
    # Ledger
    "ReportRunLedger",
    "ReportRunPage",
    "SignatureChain",
    "compute_signature_hash",
    "VerificationEngine",
    "VerificationResult",
    "ContentIntegrity",
    "ArtifactIntegrity",
    # Facade
    "ReportService",
    # Collaborators
    "ArtifactRenderer",
    "PdfArtifactRenderer",
    "ObjectStorage",
    "LocalObjectStorage",
    "SupabaseObjectStorage",
    "RetryPolicy",
    "get_object_storage",
    "put_with_retry",
    # Errors
    "LedgerError",
    "UnserializableValueError",
    "NotFoundError",
    "ReportRunNotFoundError",
    "SignatureNotFoundError",
    "UnknownPacketTypeError",
    "BuilderVersionUnavailableError",
    "InvalidSignatureError",
    "InvalidOperationError",
    "AlreadyFinalizedError",
    "FinalizationBlockedError",
    "StorageError",
    "StorageTimeoutError",
]
