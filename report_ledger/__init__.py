"""Report Ledger: tamper-evident compliance report runs with role sign-off."""

__version__ = "1.0.0"
