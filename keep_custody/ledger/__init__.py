"""Multi-identifier ledger and hash-chained event log."""
