"""Tests for signature hashing, validation and the signature chain."""

from uuid import uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from report_ledger.models import ReportRunStatus, ReportSignature, SignatureRole
from report_ledger.services.errors import (
    AlreadyFinalizedError,
    InvalidSignatureError,
    ReportRunNotFoundError,
    SignatureNotFoundError,
)
from report_ledger.services.report_service import ReportService
from report_ledger.services.signatures import (
    SignatureChain,
    check_signature,
    compute_signature_hash,
    validate_signature_svg,
)

from .conftest import ATTESTATION


@pytest.fixture
def service(session: AsyncSession, storage) -> ReportService:
    return ReportService(session, storage=storage)


@pytest.fixture
def chain(session: AsyncSession) -> SignatureChain:
    return SignatureChain(session)


@pytest.fixture
async def run(service, organization, job):
    return await service.generate_report_run(organization.id, job.id, "insurance")


# =============================================================================
# HASHING
# =============================================================================


class TestSignatureHash:
    def test_deterministic(self):
        args = ("<svg/>", "Dana Reyes", "Safety Manager", "prepared_by")
        assert compute_signature_hash(*args) == compute_signature_hash(*args)

    def test_enum_and_string_role_agree(self):
        assert compute_signature_hash("<svg/>", "A", "B", SignatureRole.APPROVED_BY) == (
            compute_signature_hash("<svg/>", "A", "B", "approved_by")
        )

    def test_field_boundaries_matter(self):
        assert compute_signature_hash("<svg/>", "Dana R", "eyes", "other") != (
            compute_signature_hash("<svg/>", "Dana", " Reyes", "other")
        )

    @pytest.mark.parametrize(
        "changed",
        [
            ("<svg></svg>", "Dana", "Lead", "prepared_by"),
            ("<svg/>", "Dan", "Lead", "prepared_by"),
            ("<svg/>", "Dana", "Leader", "prepared_by"),
            ("<svg/>", "Dana", "Lead", "reviewed_by"),
        ],
    )
    def test_every_field_is_committed(self, changed):
        base = compute_signature_hash("<svg/>", "Dana", "Lead", "prepared_by")
        assert compute_signature_hash(*changed) != base


# =============================================================================
# SVG VALIDATION
# =============================================================================


class TestValidateSvg:
    def test_accepts_svg_document(self, signature_svg):
        validate_signature_svg(signature_svg)

    def test_accepts_path_data(self):
        validate_signature_svg("M 10 10 L 20 25 C 30 40, 50 40, 60 25 Z")

    @pytest.mark.parametrize(
        "svg",
        [
            "",
            "   ",
            "just a name",
            '<svg onload="alert(1)"><path d="M0 0"/></svg>',
            "<svg><script>alert(1)</script></svg>",
            '<svg><a href="javascript:alert(1)"><path d="M0 0"/></a></svg>',
            "<svg><foreignObject><div/></foreignObject></svg>",
        ],
    )
    def test_rejects(self, svg):
        with pytest.raises(InvalidSignatureError):
            validate_signature_svg(svg)

    def test_rejects_oversized(self):
        svg = "<svg>" + "M0 0 " * 1000 + "</svg>"
        with pytest.raises(InvalidSignatureError):
            validate_signature_svg(svg, max_bytes=1000)


# =============================================================================
# SIGN
# =============================================================================


class TestSign:
    async def test_records_signature(self, chain, run, admin_user, signature_svg):
        signature = await chain.sign(
            run.id,
            "prepared_by",
            "  Dana Reyes ",
            "Safety Manager",
            signature_svg,
            signer_user_id=admin_user.id,
            attestation_text="I prepared this report.",
        )

        assert signature.signature_role == SignatureRole.PREPARED_BY
        assert signature.signer_name == "Dana Reyes"
        assert signature.organization_id == run.organization_id
        assert signature.signature_hash == compute_signature_hash(
            signature_svg, "Dana Reyes", "Safety Manager", "prepared_by"
        )
        assert signature.is_active

    async def test_external_signer_without_account(self, chain, run, signature_svg):
        signature = await chain.sign(
            run.id, "reviewed_by", "Pat Client", "Property Manager", signature_svg, ATTESTATION
        )
        assert signature.signer_user_id is None

    async def test_invalid_role(self, chain, run, signature_svg):
        with pytest.raises(InvalidSignatureError):
            await chain.sign(run.id, "witness", "Dana", "Lead", signature_svg, ATTESTATION)

    async def test_blank_name(self, chain, run, signature_svg):
        with pytest.raises(InvalidSignatureError):
            await chain.sign(run.id, "other", "   ", "Lead", signature_svg, ATTESTATION)

    async def test_attestation_required(self, chain, run, signature_svg):
        with pytest.raises(InvalidSignatureError):
            await chain.sign(
                run.id, "other", "Dana", "Lead", signature_svg, ATTESTATION, attestation_accepted=False
            )

    @pytest.mark.parametrize("text", ["", "   "])
    async def test_attestation_text_required(self, chain, run, signature_svg, text):
        with pytest.raises(InvalidSignatureError):
            await chain.sign(run.id, "other", "Dana", "Lead", signature_svg, text)

    async def test_request_context_kept_out_of_hash(self, chain, run, signature_svg):
        signature = await chain.sign(
            run.id,
            "prepared_by",
            "Dana",
            "Lead",
            signature_svg,
            ATTESTATION,
            ip_address="203.0.113.7",
            user_agent="Mozilla/5.0 (iPad)",
        )

        assert signature.ip_address == "203.0.113.7"
        assert signature.user_agent == "Mozilla/5.0 (iPad)"
        assert signature.signature_hash == compute_signature_hash(
            signature_svg, "Dana", "Lead", "prepared_by"
        )
        assert check_signature(signature).verified

    async def test_signer_must_be_member(self, session, chain, run, signature_svg):
        with pytest.raises(InvalidSignatureError):
            await chain.sign(
                run.id, "other", "Dana", "Lead", signature_svg, ATTESTATION, signer_user_id=uuid4()
            )

    async def test_unknown_run(self, chain, signature_svg):
        with pytest.raises(ReportRunNotFoundError):
            await chain.sign(uuid4(), "other", "Dana", "Lead", signature_svg, ATTESTATION)

    async def test_complete_run_is_sealed(self, session, chain, run, signature_svg):
        run.status = ReportRunStatus.COMPLETE
        await session.flush()

        with pytest.raises(AlreadyFinalizedError):
            await chain.sign(run.id, "other", "Dana", "Lead", signature_svg, ATTESTATION)

    async def test_final_run_accepts_signatures(self, session, chain, run, signature_svg):
        run.status = ReportRunStatus.FINAL
        await session.flush()

        signature = await chain.sign(run.id, "other", "Dana", "Lead", signature_svg, ATTESTATION)
        assert signature.report_run_id == run.id


# =============================================================================
# REVOKE & COMPLETENESS
# =============================================================================


class TestRevoke:
    async def test_revoke_keeps_row(self, chain, run, admin_user, signature_svg):
        signature = await chain.sign(run.id, "prepared_by", "Dana", "Lead", signature_svg, ATTESTATION)
        revoked = await chain.revoke(signature.id, revoked_by=admin_user.id, reason="Wrong person")

        assert revoked.revoked_at is not None
        assert revoked.revoked_reason == "Wrong person"
        assert not revoked.is_active

        all_sigs = await chain.list_signatures(run.id)
        active = await chain.list_signatures(run.id, include_revoked=False)
        assert [s.id for s in all_sigs] == [signature.id]
        assert active == []

    async def test_revoke_twice_is_noop(self, chain, run, admin_user, signature_svg):
        signature = await chain.sign(run.id, "prepared_by", "Dana", "Lead", signature_svg, ATTESTATION)
        first = await chain.revoke(signature.id, revoked_by=admin_user.id, reason="first")
        revoked_at = first.revoked_at

        second = await chain.revoke(signature.id, reason="second")
        assert second.revoked_at == revoked_at
        assert second.revoked_reason == "first"

    async def test_revoke_unknown(self, chain):
        with pytest.raises(SignatureNotFoundError):
            await chain.revoke(uuid4())

    async def test_revoked_role_no_longer_counts(self, chain, run, signature_svg):
        for role in ("prepared_by", "reviewed_by", "approved_by"):
            await chain.sign(run.id, role, "Dana", "Lead", signature_svg, ATTESTATION)
        assert (await chain.completeness(run)).is_complete

        approver = next(
            s for s in await chain.list_signatures(run.id)
            if s.signature_role == SignatureRole.APPROVED_BY
        )
        await chain.revoke(approver.id)

        completeness = await chain.completeness(run)
        assert not completeness.is_complete
        assert completeness.missing_roles == [SignatureRole.APPROVED_BY]

    async def test_second_signature_for_role_still_counts(self, chain, run, signature_svg):
        first = await chain.sign(run.id, "prepared_by", "Dana", "Lead", signature_svg, ATTESTATION)
        await chain.sign(run.id, "prepared_by", "Sam", "Foreman", signature_svg, ATTESTATION)
        await chain.revoke(first.id)

        completeness = await chain.completeness(run)
        assert SignatureRole.PREPARED_BY in completeness.signed_roles

    async def test_tampered_signature_fails_check(self, session, chain, run, signature_svg):
        signature = await chain.sign(run.id, "prepared_by", "Dana", "Lead", signature_svg, ATTESTATION)
        await session.execute(
            update(ReportSignature)
            .where(ReportSignature.id == signature.id)
            .values(signer_name="Mallory")
        )

        check = check_signature(signature)
        assert signature.signer_name == "Mallory"
        assert not check.verified
        assert SignatureRole.PREPARED_BY in (await chain.completeness(run)).missing_roles
