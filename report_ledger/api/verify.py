"""
Public Verification Route: lets anyone holding a report check it.

No account is needed. The caller supplies the run id or the short
reference printed on the PDF and gets back the committed hashes together
with a fresh verification against source data. Only published runs
(final or complete) resolve.
"""

from fastapi import APIRouter

from ..schemas import PublicVerificationResponse
from ..services.errors import LedgerError
from .reports import ReportServiceDep, to_http_error

router = APIRouter(prefix="/verify", tags=["verify"])


@router.get(
    "/{reference}",
    response_model=PublicVerificationResponse,
    summary="Verify a published report",
    description="Accepts a full run id or a short RM-xxxxxxxx reference.",
)
async def verify_published_report(reference: str, service: ReportServiceDep):
    try:
        verification = await service.verify_by_reference(reference)
    except LedgerError as e:
        raise to_http_error(e)
    return PublicVerificationResponse.from_public(verification)
