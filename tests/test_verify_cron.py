"""Tests for the scheduled verification sweep."""

import json

import httpx
import pytest
from sqlalchemy import select

from report_ledger.jobs.verify_cron import send_alert, verify_runs
from report_ledger.models import JobRiskScore
from report_ledger.services.report_service import ReportService


@pytest.fixture
def service(session, storage) -> ReportService:
    return ReportService(session, storage=storage)


class TestVerifyRuns:
    async def test_drafts_are_not_swept(self, session, service, organization, job):
        await service.generate_report_run(organization.id, job.id, "insurance")

        results = await verify_runs(session)
        assert results["checked"] == 0

    async def test_reports_failed_runs(self, session, service, storage, organization, job):
        audit_run = await service.generate_report_run(organization.id, job.id, "audit")
        await service.publish_artifact(audit_run.id)
        insurance_run = await service.generate_report_run(organization.id, job.id, "insurance")
        await service.publish_artifact(insurance_run.id)

        score = (
            await session.execute(select(JobRiskScore).where(JobRiskScore.job_id == job.id))
        ).scalar_one()
        score.overall_score = 60
        await session.flush()

        results = await verify_runs(session, storage=storage)

        assert results["checked"] == 2
        assert results["valid"] == 0
        failed_ids = {entry["run_id"] for entry in results["failed"]}
        assert failed_ids == {str(audit_run.id), str(insurance_run.id)}
        assert "content hash mismatch" in results["failed"][0]["problems"]

    async def test_unverifiable_runs_are_collected(self, session, service, organization, job):
        run = await service.generate_report_run(organization.id, job.id, "insurance")
        await service.publish_artifact(run.id)
        run.builder_version = 42
        await session.flush()

        results = await verify_runs(session)
        assert results["unverifiable"][0]["run_id"] == str(run.id)
        assert results["failed"] == []

    async def test_clean_runs_are_valid(self, session, service, storage, organization, job):
        run = await service.generate_report_run(organization.id, job.id, "insurance")
        await service.publish_artifact(run.id)

        results = await verify_runs(session, storage=storage, limit=10)
        assert results == {"checked": 1, "valid": 1, "failed": [], "unverifiable": []}


class TestSendAlert:
    async def test_posts_slack_payload(self):
        received: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(json.loads(request.content))
            return httpx.Response(200, text="ok")

        await send_alert(
            "Report Integrity Check Failed",
            "1 report run(s) failed verification",
            severity="critical",
            details={"failed": 1},
            webhook_url="https://hooks.example.test/alert",
            transport=httpx.MockTransport(handler),
        )

        body = received[0]
        assert body["text"] == "Report Integrity Check Failed"
        blocks = body["attachments"][0]["blocks"]
        assert blocks[0]["text"]["text"] == "Report Integrity Check Failed"

    async def test_webhook_failure_is_logged(self, caplog):
        await send_alert(
            "Title",
            "Message",
            webhook_url="https://hooks.example.test/alert",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        assert "Failed to send alert webhook" in caplog.text
