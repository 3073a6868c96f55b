"""Report Ledger API Schemas.

- base: common configuration and error responses
- reports: report runs, signatures, verification
"""

from .base import ErrorDetail, ErrorResponse, LedgerBaseModel
from .reports import (
    # Requests
    GenerateReportRunRequest,
    RevokeSignatureRequest,
    SignReportRunRequest,
    # Runs
    ActiveReportRunResponse,
    ReportRunListResponse,
    ReportRunResponse,
    # Signatures
    SignatureListResponse,
    SignatureResponse,
    # Verification
    ArtifactCheckResponse,
    RevokedSignatureResponse,
    SignatureVerificationResponse,
    VerificationResponse,
    PublicVerificationResponse,
    # Artifacts & history
    ArtifactUrlResponse,
    HistoryEntryResponse,
    HistoryResponse,
)

__all__ = [
    "LedgerBaseModel",
    "ErrorDetail",
    "ErrorResponse",
    "GenerateReportRunRequest",
    "RevokeSignatureRequest",
    "SignReportRunRequest",
    "ActiveReportRunResponse",
    "ReportRunListResponse",
    "ReportRunResponse",
    "SignatureListResponse",
    "SignatureResponse",
    "ArtifactCheckResponse",
    "RevokedSignatureResponse",
    "SignatureVerificationResponse",
    "VerificationResponse",
    "PublicVerificationResponse",
    "ArtifactUrlResponse",
    "HistoryEntryResponse",
    "HistoryResponse",
]
