"""Holder query engine."""
