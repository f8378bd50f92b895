"""Inventory stock ledger and dispatch settlement engine."""

__version__ = "1.0.0"
