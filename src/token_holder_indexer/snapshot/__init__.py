"""Snapshot generation (ledger-backed, historical and hybrid live reads)."""
