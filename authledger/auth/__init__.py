"""Authentication, sessions, credit ledger and audit trail."""
