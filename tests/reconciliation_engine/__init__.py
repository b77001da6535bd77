"""Reconciliation engine tests."""
