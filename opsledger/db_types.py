"""Database-agnostic type definitions for SQLAlchemy models.

These work with both SQLite (local runs, tests) and PostgreSQL.
"""
from sqlalchemy import Numeric, Uuid

# Native UUID on PostgreSQL, CHAR(32) on SQLite
UUIDType = Uuid

# Money columns: 12 digits, 2 decimal places
MoneyType = Numeric(12, 2)
