"""SQLite persistence for questions, templates, sessions and the credit ledger."""
