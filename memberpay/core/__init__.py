"""Payment orchestration core: ledger, reconciliation, activation."""
