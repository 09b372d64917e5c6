"""
Database Models

SQLAlchemy tables backing the database state and session stores.

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- oauth.py: Serialized authorization state and session records, with upsert helpers
"""
