"""Ingestion - event fetching, ledger transitions and incremental sync."""
