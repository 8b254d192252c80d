"""Background sweeps: ledger retry sweep and rate-window purge."""
