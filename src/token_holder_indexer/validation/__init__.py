"""Ledger and event-store validation reports."""
