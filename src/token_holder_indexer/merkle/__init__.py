"""Merkle distribution and whitelist trees."""
