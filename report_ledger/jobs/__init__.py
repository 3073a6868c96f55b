"""Scheduled jobs for the Report Ledger."""

from .verify_cron import run_verification_job, send_alert, verify_runs

__all__ = ["run_verification_job", "send_alert", "verify_runs"]
