"""
State and Session Stores

Storage for in-flight authorization attempts and completed sessions. Every
backend stores one serialized record per key, so a write replaces the whole
record.

Key Components:
- base.py: StateStore and SessionStore interfaces
- memory.py: In-process stores for a single instance and for tests
- redis.py: Redis stores with key expiry and optional encryption
- database.py: PostgreSQL stores with optional encryption
"""
