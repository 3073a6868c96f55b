"""Tests for the report HTTP API."""

from uuid import uuid4

import pytest
from sqlalchemy import update

from report_ledger.models import JobRiskScore

from .conftest import SIGNATURE_SVG, auth_headers

RUNS = "/api/v1/reports/runs"


def sign_body(role: str, **overrides) -> dict:
    body = {
        "signature_role": role,
        "signer_name": "Dana Reyes",
        "signer_title": "Safety Manager",
        "signature_svg": SIGNATURE_SVG,
        "attestation_text": "I attest this report is accurate.",
        "attestation_accepted": True,
    }
    body.update(overrides)
    return body


@pytest.fixture
def admin_headers(admin_user, organization) -> dict:
    return auth_headers(admin_user, organization)


@pytest.fixture
def member_headers(member_user, organization) -> dict:
    return auth_headers(member_user, organization)


@pytest.fixture
async def run(client, admin_headers, job) -> dict:
    response = await client.post(
        RUNS, json={"job_id": str(job.id), "packet_type": "insurance"}, headers=admin_headers
    )
    assert response.status_code == 201
    return response.json()


# =============================================================================
# AUTH
# =============================================================================


class TestAuth:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_requires_token(self, client):
        response = await client.get(RUNS)
        assert response.status_code == 401

    async def test_rejects_bad_token(self, client, organization):
        response = await client.get(
            RUNS,
            headers={"Authorization": "Bearer not-a-jwt", "X-Organization-ID": str(organization.id)},
        )
        assert response.status_code == 401

    async def test_non_member_forbidden(self, client, admin_user, organization, other_organization):
        headers = auth_headers(admin_user, organization)
        headers["X-Organization-ID"] = str(other_organization.id)
        response = await client.get(RUNS, headers=headers)
        assert response.status_code == 403


# =============================================================================
# REPORT RUNS
# =============================================================================


class TestReportRuns:
    async def test_generate(self, run, job, admin_user):
        assert run["status"] == "draft"
        assert run["packet_type"] == "insurance"
        assert run["job_id"] == str(job.id)
        assert run["generated_by"] == str(admin_user.id)
        assert len(run["data_hash"]) == 64
        assert run["reference"] == f"RM-{run['id'][:8]}"

    async def test_generate_twice_returns_same_run(self, client, admin_headers, job, run):
        response = await client.post(
            RUNS, json={"job_id": str(job.id), "packet_type": "insurance"}, headers=admin_headers
        )
        assert response.json()["id"] == run["id"]

    async def test_unknown_packet_type(self, client, admin_headers, job):
        response = await client.post(
            RUNS, json={"job_id": str(job.id), "packet_type": "summary"}, headers=admin_headers
        )
        assert response.status_code == 400

    async def test_unknown_job(self, client, admin_headers, job):
        response = await client.post(RUNS, json={"job_id": str(uuid4())}, headers=admin_headers)
        assert response.status_code == 404

    async def test_get_and_list(self, client, admin_headers, run):
        response = await client.get(f"{RUNS}/{run['id']}", headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["data_hash"] == run["data_hash"]

        listing = await client.get(RUNS, params={"status": "draft"}, headers=admin_headers)
        assert listing.json()["total"] == 1

        bad = await client.get(RUNS, params={"status": "archived"}, headers=admin_headers)
        assert bad.status_code == 400

    async def test_get_unknown_run(self, client, admin_headers, job):
        response = await client.get(f"{RUNS}/{uuid4()}", headers=admin_headers)
        assert response.status_code == 404

    async def test_active_run(self, client, admin_headers, job):
        params = {"job_id": str(job.id), "packet_type": "audit"}
        first = await client.get(f"{RUNS}/active", params=params, headers=admin_headers)
        second = await client.get(f"{RUNS}/active", params=params, headers=admin_headers)

        assert first.json()["created"] is True
        assert second.json()["created"] is False
        assert first.json()["run"]["id"] == second.json()["run"]["id"]


# =============================================================================
# VERIFY
# =============================================================================


class TestVerify:
    async def test_verify_clean_run(self, client, admin_headers, run):
        response = await client.get(f"{RUNS}/{run['id']}/verify", headers=admin_headers)
        body = response.json()

        assert response.status_code == 200
        assert body["valid"] is True
        assert body["hash_match"] is True
        assert body["missing_roles"] == ["prepared_by", "reviewed_by", "approved_by"]
        assert body["artifact"]["status"] == "not_stored"

    async def test_verify_detects_change(self, client, session, admin_headers, job, run):
        await session.execute(
            update(JobRiskScore).where(JobRiskScore.job_id == job.id).values(overall_score=60)
        )
        await session.commit()

        response = await client.get(f"{RUNS}/{run['id']}/verify", headers=admin_headers)
        body = response.json()
        assert response.status_code == 200
        assert body["hash_match"] is False
        assert body["stored_hash"] == run["data_hash"]
        assert body["computed_hash"] != run["data_hash"]


# =============================================================================
# LIFECYCLE
# =============================================================================


class TestLifecycle:
    async def test_publish_sign_finalize(self, client, admin_headers, run):
        run_url = f"{RUNS}/{run['id']}"

        published = await client.post(f"{run_url}/artifact", headers=admin_headers)
        assert published.status_code == 200
        assert published.json()["status"] == "final"

        url = await client.get(f"{run_url}/artifact-url", headers=admin_headers)
        assert url.status_code == 200
        assert url.json()["expires_in"] == 3600

        blocked = await client.post(f"{run_url}/finalize", headers=admin_headers)
        assert blocked.status_code == 409
        verification = blocked.json()["detail"]["verification"]
        assert verification["missing_roles"] == ["prepared_by", "reviewed_by", "approved_by"]

        for role in ("prepared_by", "reviewed_by", "approved_by"):
            signed = await client.post(
                f"{run_url}/signatures", json=sign_body(role), headers=admin_headers
            )
            assert signed.status_code == 201

        finalized = await client.post(f"{run_url}/finalize", headers=admin_headers)
        assert finalized.status_code == 200
        assert finalized.json()["status"] == "complete"

        sealed = await client.post(
            f"{run_url}/signatures", json=sign_body("other"), headers=admin_headers
        )
        assert sealed.status_code == 409

        history = await client.get(f"{run_url}/history", headers=admin_headers)
        actions = [event["action"] for event in history.json()["events"]]
        assert actions[0] == "report.generate"
        assert actions[-1] == "report.finalize"

    async def test_finalize_draft_rejected(self, client, admin_headers, run):
        response = await client.post(f"{RUNS}/{run['id']}/finalize", headers=admin_headers)
        assert response.status_code == 400

    async def test_artifact_url_before_publish(self, client, admin_headers, run):
        response = await client.get(f"{RUNS}/{run['id']}/artifact-url", headers=admin_headers)
        assert response.status_code == 400


# =============================================================================
# SIGNATURES
# =============================================================================


class TestSignatures:
    async def test_sign_and_list(self, client, admin_headers, admin_user, run):
        response = await client.post(
            f"{RUNS}/{run['id']}/signatures",
            json=sign_body("prepared_by", signer_user_id=str(admin_user.id)),
            headers=admin_headers,
        )
        assert response.status_code == 201
        signature = response.json()
        assert signature["is_active"] is True
        assert len(signature["signature_hash"]) == 64

        listing = await client.get(f"{RUNS}/{run['id']}/signatures", headers=admin_headers)
        assert listing.json()["total"] == 1

    async def test_attestation_must_be_accepted(self, client, admin_headers, run):
        response = await client.post(
            f"{RUNS}/{run['id']}/signatures",
            json=sign_body("prepared_by", attestation_accepted=False),
            headers=admin_headers,
        )
        assert response.status_code == 400

    @pytest.mark.parametrize(
        "attestation, expected",
        [(None, 422), ("", 422), ("   ", 400)],
        ids=["missing", "empty", "blank"],
    )
    async def test_attestation_text_required(
        self, client, admin_headers, run, attestation, expected
    ):
        body = sign_body("prepared_by", attestation_text=attestation)
        if attestation is None:
            del body["attestation_text"]
        response = await client.post(
            f"{RUNS}/{run['id']}/signatures", json=body, headers=admin_headers
        )
        assert response.status_code == expected

    async def test_records_request_context(self, client, admin_headers, run):
        headers = {
            **admin_headers,
            "User-Agent": "SiteTablet/2.1",
            "X-Forwarded-For": "198.51.100.4, 10.0.0.1",
        }
        response = await client.post(
            f"{RUNS}/{run['id']}/signatures", json=sign_body("prepared_by"), headers=headers
        )
        assert response.status_code == 201
        assert response.json()["ip_address"] == "198.51.100.4"
        assert response.json()["user_agent"] == "SiteTablet/2.1"

    async def test_unsafe_svg_rejected(self, client, admin_headers, run):
        response = await client.post(
            f"{RUNS}/{run['id']}/signatures",
            json=sign_body("prepared_by", signature_svg="<svg><script>x()</script></svg>"),
            headers=admin_headers,
        )
        assert response.status_code == 400

    async def test_member_cannot_sign_for_others(
        self, client, member_headers, admin_user, member_user, run
    ):
        for_admin = await client.post(
            f"{RUNS}/{run['id']}/signatures",
            json=sign_body("reviewed_by", signer_user_id=str(admin_user.id)),
            headers=member_headers,
        )
        assert for_admin.status_code == 403

        for_self = await client.post(
            f"{RUNS}/{run['id']}/signatures",
            json=sign_body("reviewed_by", signer_name="Sam Ortiz", signer_user_id=str(member_user.id)),
            headers=member_headers,
        )
        assert for_self.status_code == 201

    async def test_revoke_requires_admin(self, client, admin_headers, member_headers, run):
        signed = await client.post(
            f"{RUNS}/{run['id']}/signatures", json=sign_body("approved_by"), headers=admin_headers
        )
        signature_id = signed.json()["id"]

        denied = await client.post(
            f"/api/v1/reports/signatures/{signature_id}/revoke",
            json={"reason": "Wrong signer"},
            headers=member_headers,
        )
        assert denied.status_code == 403

        revoked = await client.post(
            f"/api/v1/reports/signatures/{signature_id}/revoke",
            json={"reason": "Wrong signer"},
            headers=admin_headers,
        )
        assert revoked.status_code == 200
        assert revoked.json()["is_active"] is False
        assert revoked.json()["revoked_reason"] == "Wrong signer"

        active = await client.get(
            f"{RUNS}/{run['id']}/signatures",
            params={"include_revoked": "false"},
            headers=admin_headers,
        )
        assert active.json()["total"] == 0


# =============================================================================
# PUBLIC VERIFICATION
# =============================================================================


VERIFY = "/api/v1/verify"


class TestPublicVerify:
    @pytest.fixture
    async def published(self, client, admin_headers, run) -> dict:
        response = await client.post(f"{RUNS}/{run['id']}/artifact", headers=admin_headers)
        assert response.status_code == 200
        return response.json()

    async def test_short_reference_without_token(self, client, published):
        response = await client.get(f"{VERIFY}/{published['reference']}")

        assert response.status_code == 200
        body = response.json()
        assert body["report_run_id"] == published["id"]
        assert body["reference"] == published["reference"]
        assert body["organization"] == "Summit Roofing"
        assert body["data_hash"] == published["data_hash"]
        assert body["artifact_hash"] == published["artifact_hash"]
        assert body["content_integrity"] == "match"
        assert body["artifact_integrity"] == "match"
        assert body["valid"] is True

    async def test_full_id_and_lowercase_prefix(self, client, published):
        by_id = await client.get(f"{VERIFY}/{published['id']}")
        assert by_id.status_code == 200

        lowered = await client.get(f"{VERIFY}/rm-{published['id'][:8]}")
        assert lowered.status_code == 200
        assert lowered.json()["report_run_id"] == published["id"]

    async def test_reports_changed_data(self, client, session, job, published):
        await session.execute(
            update(JobRiskScore).where(JobRiskScore.job_id == job.id).values(overall_score=60)
        )
        await session.commit()

        body = (await client.get(f"{VERIFY}/{published['reference']}")).json()
        assert body["content_integrity"] == "mismatch"
        assert body["valid"] is False

    async def test_draft_is_not_public(self, client, run):
        response = await client.get(f"{VERIFY}/{run['reference']}")
        assert response.status_code == 404

    @pytest.mark.parametrize("reference", ["RM-xyz", "RM-12345678", "not-a-run"])
    async def test_unknown_reference(self, client, published, reference):
        response = await client.get(f"{VERIFY}/{reference}")
        assert response.status_code == 404
