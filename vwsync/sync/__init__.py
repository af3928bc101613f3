"""Reconciliation pipeline: parse, merge, reconcile, coordinate."""
