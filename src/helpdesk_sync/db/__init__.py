"""
Database module for the local sync store.

Exports:
    QueueDB: Async context manager for mutation queue operations
"""

from helpdesk_sync.db.queue import QueueDB

__all__ = ["QueueDB"]
