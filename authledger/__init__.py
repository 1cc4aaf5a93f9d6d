"""AuthLedger - authentication, sessions and a dual-pool credit ledger."""

__version__ = "1.0.0"
