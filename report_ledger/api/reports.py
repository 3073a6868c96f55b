"""
Report API Routes: generation, signing and verification of report runs.

The core flows:
1. POST /reports/runs - Freeze a job into a draft run
2. POST /reports/runs/{id}/signatures - Sign in a role
3. POST /reports/runs/{id}/artifact - Render, store and attach the PDF
4. GET /reports/runs/{id}/verify - Prove the run is unaltered
"""

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..core import get_settings
from ..core.dependencies import AdminDep, OrgContextDep, SessionDep, StorageDep
from ..schemas import (
    ActiveReportRunResponse,
    ArtifactUrlResponse,
    GenerateReportRunRequest,
    HistoryEntryResponse,
    HistoryResponse,
    ReportRunListResponse,
    ReportRunResponse,
    RevokeSignatureRequest,
    SignatureListResponse,
    SignatureResponse,
    SignReportRunRequest,
    VerificationResponse,
)
from ..services.errors import (
    AlreadyFinalizedError,
    BuilderVersionUnavailableError,
    FinalizationBlockedError,
    InvalidOperationError,
    InvalidSignatureError,
    LedgerError,
    NotFoundError,
    StorageError,
    StorageTimeoutError,
    UnknownPacketTypeError,
    UnserializableValueError,
)
from ..services.report_service import ReportService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_report_service(session: SessionDep, storage: StorageDep) -> ReportService:
    return ReportService(session, storage=storage)


ReportServiceDep = Annotated[ReportService, Depends(get_report_service)]


def client_ip(request: Request) -> str | None:
    """Caller address, honouring the first X-Forwarded-For hop behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# =============================================================================
# ERROR MAPPING
# =============================================================================


# Most specific first; subclasses must precede their bases
ERROR_STATUS: list[tuple[type[LedgerError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (UnknownPacketTypeError, status.HTTP_400_BAD_REQUEST),
    (InvalidSignatureError, status.HTTP_400_BAD_REQUEST),
    (InvalidOperationError, status.HTTP_400_BAD_REQUEST),
    (AlreadyFinalizedError, status.HTTP_409_CONFLICT),
    (FinalizationBlockedError, status.HTTP_409_CONFLICT),
    (BuilderVersionUnavailableError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StorageTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (StorageError, status.HTTP_502_BAD_GATEWAY),
    (UnserializableValueError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def to_http_error(error: LedgerError) -> HTTPException:
    """Translate a ledger error into an HTTP response."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"{type(error).__name__}: {error}")

    if isinstance(error, FinalizationBlockedError):
        return HTTPException(
            status_code=status_code,
            detail={
                "message": str(error),
                "verification": VerificationResponse.from_result(error.result).model_dump(mode="json"),
            },
        )
    return HTTPException(status_code=status_code, detail=str(error))


# =============================================================================
# REPORT RUNS
# =============================================================================


@router.post(
    "/runs",
    response_model=ReportRunResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Generate a report run",
    description="""
    Build the report payload for a job from current data, hash it and record a
    draft run. Generating twice with unchanged data returns the same draft.
    """,
)
async def generate_report_run(
    request: GenerateReportRunRequest,
    current_user: OrgContextDep,
    service: ReportServiceDep,
):
    try:
        run = await service.generate_report_run(
            organization_id=current_user.organization_id,
            job_id=request.job_id,
            packet_type=request.packet_type,
            generated_by=current_user.id,
        )
        return ReportRunResponse.model_validate(run)
    except LedgerError as e:
        raise to_http_error(e)


@router.get(
    "/runs",
    response_model=ReportRunListResponse,
    summary="List report runs",
)
async def list_report_runs(
    current_user: OrgContextDep,
    service: ReportServiceDep,
    job_id: UUID | None = Query(default=None),
    packet_type: str | None = Query(default=None),
    run_status: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    try:
        page = await service.list_report_runs(
            current_user.organization_id,
            job_id=job_id,
            packet_type=packet_type,
            status=run_status,
            limit=limit,
            offset=offset,
        )
    except LedgerError as e:
        raise to_http_error(e)

    return ReportRunListResponse(
        items=[ReportRunResponse.model_validate(run) for run in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.get(
    "/runs/active",
    response_model=ActiveReportRunResponse,
    summary="Get or create the active report run",
    description="Latest run for the job and packet that is not complete; a draft is generated when none exists.",
)
async def get_active_report_run(
    current_user: OrgContextDep,
    service: ReportServiceDep,
    job_id: UUID = Query(...),
    packet_type: str = Query(default="insurance"),
):
    try:
        run, created = await service.get_active_report_run(
            current_user.organization_id,
            job_id,
            packet_type,
            generated_by=current_user.id,
        )
    except LedgerError as e:
        raise to_http_error(e)
    return ActiveReportRunResponse(run=ReportRunResponse.model_validate(run), created=created)


@router.get(
    "/runs/{run_id}",
    response_model=ReportRunResponse,
    summary="Get a report run",
)
async def get_report_run(
    run_id: UUID,
    current_user: OrgContextDep,
    service: ReportServiceDep,
):
    try:
        run = await service.get_report_run(run_id, current_user.organization_id)
    except LedgerError as e:
        raise to_http_error(e)
    return ReportRunResponse.model_validate(run)


@router.get(
    "/runs/{run_id}/verify",
    response_model=VerificationResponse,
    summary="Verify a report run",
    description="""
    Rebuild the payload with the builder version that produced the run, recompute
    its hash and every active signature hash, and check role completeness.

    Mismatches are reported in the body. 422 means the run cannot be checked.
    """,
)
async def verify_report_run(
    run_id: UUID,
    current_user: OrgContextDep,
    service: ReportServiceDep,
):
    try:
        result = await service.verify_report_run(run_id, current_user.organization_id)
    except LedgerError as e:
        raise to_http_error(e)
    return VerificationResponse.from_result(result)


@router.post(
    "/runs/{run_id}/artifact",
    response_model=ReportRunResponse,
    summary="Publish the report artifact",
    description="Render the frozen payload to PDF, store it and move the run out of draft.",
)
async def publish_artifact(
    run_id: UUID,
    current_user: OrgContextDep,
    service: ReportServiceDep,
):
    try:
        run = await service.publish_artifact(
            run_id,
            acting_user_id=current_user.id,
            organization_id=current_user.organization_id,
        )
    except LedgerError as e:
        raise to_http_error(e)
    return ReportRunResponse.model_validate(run)


@router.get(
    "/runs/{run_id}/artifact-url",
    response_model=ArtifactUrlResponse,
    summary="Get a signed download URL for the artifact",
)
async def get_artifact_url(
    run_id: UUID,
    current_user: OrgContextDep,
    service: ReportServiceDep,
    expires_in: int | None = Query(default=None, ge=60, le=7 * 24 * 3600),
):
    ttl = expires_in or get_settings().signed_url_ttl_seconds
    try:
        url = await service.get_artifact_url(run_id, ttl, current_user.organization_id)
    except LedgerError as e:
        raise to_http_error(e)
    return ArtifactUrlResponse(url=url, expires_in=ttl)


@router.post(
    "/runs/{run_id}/finalize",
    response_model=ReportRunResponse,
    summary="Finalize a report run",
    description="Verify the run and mark it complete. 409 with the verification result if it does not pass.",
)
async def finalize_report_run(
    run_id: UUID,
    current_user: OrgContextDep,
    service: ReportServiceDep,
):
    try:
        run = await service.finalize_report_run(
            run_id,
            acting_user_id=current_user.id,
            organization_id=current_user.organization_id,
        )
    except LedgerError as e:
        raise to_http_error(e)
    return ReportRunResponse.model_validate(run)


@router.get(
    "/runs/{run_id}/history",
    response_model=HistoryResponse,
    summary="Ledger events for a report run",
)
async def get_report_run_history(
    run_id: UUID,
    current_user: OrgContextDep,
    service: ReportServiceDep,
):
    try:
        events = await service.get_report_run_history(run_id, current_user.organization_id)
    except LedgerError as e:
        raise to_http_error(e)
    return HistoryResponse(
        report_run_id=run_id,
        events=[HistoryEntryResponse.model_validate(event) for event in events],
    )


# =============================================================================
# SIGNATURES
# =============================================================================


@router.get(
    "/runs/{run_id}/signatures",
    response_model=SignatureListResponse,
    summary="List signatures on a report run",
)
async def list_signatures(
    run_id: UUID,
    current_user: OrgContextDep,
    service: ReportServiceDep,
    include_revoked: bool = Query(default=True),
):
    try:
        signatures = await service.list_signatures(
            run_id, include_revoked, current_user.organization_id
        )
    except LedgerError as e:
        raise to_http_error(e)
    return SignatureListResponse(
        items=[SignatureResponse.model_validate(sig) for sig in signatures],
        total=len(signatures),
    )


@router.post(
    "/runs/{run_id}/signatures",
    response_model=SignatureResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Sign a report run",
    description="""
    Record a role signature. Allowed while the run is draft or final; a complete
    run is sealed (409). Signing on behalf of another account requires admin.
    """,
)
async def sign_report_run(
    run_id: UUID,
    request: SignReportRunRequest,
    http_request: Request,
    current_user: OrgContextDep,
    service: ReportServiceDep,
):
    if (
        request.signer_user_id is not None
        and request.signer_user_id != current_user.id
        and not current_user.is_admin
    ):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only admins can create signatures for other users",
        )

    try:
        signature = await service.sign_report_run(
            run_id,
            request.signature_role,
            request.signer_name,
            request.signer_title,
            request.signature_svg,
            request.attestation_text,
            signer_user_id=request.signer_user_id,
            attestation_accepted=request.attestation_accepted,
            acting_user_id=current_user.id,
            organization_id=current_user.organization_id,
            ip_address=client_ip(http_request),
            user_agent=http_request.headers.get("user-agent"),
        )
    except LedgerError as e:
        raise to_http_error(e)
    return SignatureResponse.model_validate(signature)


@router.post(
    "/signatures/{signature_id}/revoke",
    response_model=SignatureResponse,
    summary="Revoke a signature",
    description="Soft revoke; the signature stays on record but no longer counts. Admin only.",
)
async def revoke_signature(
    signature_id: UUID,
    current_user: AdminDep,
    service: ReportServiceDep,
    request: RevokeSignatureRequest | None = None,
):
    try:
        signature = await service.revoke_signature(
            signature_id,
            revoked_by=current_user.id,
            reason=request.reason if request else None,
            organization_id=current_user.organization_id,
        )
    except LedgerError as e:
        raise to_http_error(e)
    return SignatureResponse.model_validate(signature)
