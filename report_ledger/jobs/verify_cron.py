"""
Verification Cron Job: periodic re-verification of published report runs.

Rebuilds every final and complete run from source data and checks its
content hash, signatures and stored artifact. Anything that does not verify
is sent to the alert webhook.

Typical cron schedule: 0 3 * * * (daily at 3 AM)
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ..core.config import get_settings
from ..core.logging import configure_logging
from ..models import ReportRun, ReportRunStatus
from ..services.errors import LedgerError
from ..services.storage import ObjectStorage, get_object_storage
from ..services.verification import VerificationEngine

logger = logging.getLogger(__name__)

SEVERITY_COLORS = {"critical": "#dc2626", "error": "#f59e0b"}

SWEPT_STATUSES = (ReportRunStatus.FINAL, ReportRunStatus.COMPLETE)


# =============================================================================
# ALERTING
# =============================================================================


def build_alert_payload(
    title: str,
    message: str,
    severity: str,
    details: dict | None = None,
) -> dict[str, Any]:
    """Slack incoming-webhook body with one colored attachment."""
    blocks: list[dict[str, Any]] = [
        {"type": "header", "text": {"type": "plain_text", "text": title}},
        {"type": "section", "text": {"type": "mrkdwn", "text": message}},
    ]
    if details:
        lines = [f"• *{key}*: {value}" for key, value in details.items()]
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": "\n".join(lines)}})

    sent_at = datetime.now(timezone.utc).isoformat()
    blocks.append({
        "type": "context",
        "elements": [{"type": "mrkdwn", "text": f"{severity.upper()} · {sent_at}"}],
    })
    return {
        "text": title,
        "attachments": [{"color": SEVERITY_COLORS.get(severity, "#64748b"), "blocks": blocks}],
    }


async def send_alert(
    title: str,
    message: str,
    severity: str = "error",
    details: dict | None = None,
    webhook_url: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """
    Log an alert and forward it to the configured webhook.

    Delivery problems are logged only; they never abort the sweep.
    """
    level = logging.CRITICAL if severity == "critical" else logging.ERROR
    logger.log(level, f"{title}: {message}" + (f" ({details})" if details else ""))

    url = webhook_url or get_settings().alert_webhook_url
    if not url:
        return

    payload = build_alert_payload(title, message, severity, details)
    async with httpx.AsyncClient(transport=transport, timeout=10) as client:
        try:
            response = await client.post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to send alert webhook: {e}")


# =============================================================================
# SWEEP
# =============================================================================


async def verify_runs(
    session: AsyncSession,
    storage: ObjectStorage | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    """Verify every final and complete run, newest first."""
    stmt = (
        select(ReportRun.id)
        .where(ReportRun.status.in_(SWEPT_STATUSES))
        .order_by(ReportRun.generated_at.desc())
    )
    if limit:
        stmt = stmt.limit(limit)

    verifier = VerificationEngine(session, storage=storage)
    checked, valid = 0, 0
    failed: list[dict[str, Any]] = []
    unverifiable: list[dict[str, Any]] = []

    for run_id in (await session.execute(stmt)).scalars().all():
        checked += 1
        try:
            outcome = await verifier.verify(run_id)
        except LedgerError as e:
            logger.warning(f"Report run {run_id} could not be verified: {e}")
            unverifiable.append({"run_id": str(run_id), "error": str(e)})
            continue

        if outcome.is_valid:
            valid += 1
        else:
            logger.warning(f"Report run {run_id} failed verification: {outcome.problems}")
            failed.append({"run_id": str(run_id), "problems": outcome.problems})

    return {
        "checked": checked,
        "valid": valid,
        "failed": failed,
        "unverifiable": unverifiable,
    }


async def _sweep(
    database_url: str,
    storage: ObjectStorage | None,
    limit: int | None,
) -> dict[str, Any]:
    engine = create_async_engine(database_url)
    try:
        async with async_sessionmaker(engine, expire_on_commit=False)() as session:
            results = await verify_runs(session, storage=storage, limit=limit)
            # Nothing is written by a sweep
            await session.rollback()
        return results
    finally:
        await engine.dispose()


async def run_verification_job(
    database_url: str,
    storage: ObjectStorage | None = None,
    limit: int | None = None,
    webhook_url: str | None = None,
) -> dict[str, Any]:
    """
    Sweep published runs and alert on anything that does not verify.

    Args:
        database_url: Async SQLAlchemy connection string
        storage: Artifact storage for artifact checks (None skips them)
        limit: Maximum number of runs to check
        webhook_url: Alert destination (defaults to ALERT_WEBHOOK_URL)

    Returns:
        Sweep counts and problem lists plus timing fields
    """
    started = datetime.now(timezone.utc)
    logger.info("Report verification sweep started")

    try:
        results = await _sweep(database_url, storage, limit)
    except Exception as e:
        logger.exception("Report verification sweep crashed")
        await send_alert(
            "Report Verification Job Failed",
            f"The sweep started at {started.isoformat()} did not finish.",
            severity="critical",
            details={"error": f"{type(e).__name__}: {e}"},
            webhook_url=webhook_url,
        )
        raise

    finished = datetime.now(timezone.utc)
    results.update(
        started_at=started.isoformat(),
        completed_at=finished.isoformat(),
        duration_seconds=(finished - started).total_seconds(),
    )

    n_failed, n_unverifiable = len(results["failed"]), len(results["unverifiable"])
    logger.info(
        f"Report verification sweep finished: {results['checked']} checked, "
        f"{results['valid']} valid, {n_failed} failed, {n_unverifiable} unverifiable"
    )

    if n_failed or n_unverifiable:
        await send_alert(
            "Report Integrity Check Failed",
            f"{n_failed} report run(s) failed verification and "
            f"{n_unverifiable} could not be verified.",
            severity="critical" if n_failed else "error",
            details={
                "failed": results["failed"][:5],
                "unverifiable": results["unverifiable"][:5],
            },
            webhook_url=webhook_url,
        )

    return results


# =============================================================================
# CLI ENTRY POINT
# =============================================================================


def main():
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Re-verify published report runs")
    parser.add_argument("--database-url", default=settings.database_url_async)
    parser.add_argument("--limit", type=int, help="Verify at most this many runs")
    parser.add_argument(
        "--skip-artifacts",
        action="store_true",
        help="Do not download stored artifacts to check their hashes",
    )
    args = parser.parse_args()

    configure_logging(settings.log_level)
    storage = None if args.skip_artifacts else get_object_storage(settings)

    try:
        results = asyncio.run(
            run_verification_job(args.database_url, storage=storage, limit=args.limit)
        )
    except Exception:
        sys.exit(1)

    if results["failed"]:
        sys.exit(2)


if __name__ == "__main__":
    main()
