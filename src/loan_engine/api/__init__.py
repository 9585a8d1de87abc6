"""HTTP surface: provider webhooks, borrower initiation and operator review."""
