"""Audit sink: append-only, deduplicated lifecycle event storage."""
