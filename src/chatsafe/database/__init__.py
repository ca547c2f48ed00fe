"""
Local persistence for ChatSafe.

Stores the stream checkpoint and the infraction journal in SQLite.

Public API:
    - Database: Coordinator for checkpoint and journal operations
"""
