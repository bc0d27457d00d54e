"""Reconciliation, packaging, and deployment engine."""
