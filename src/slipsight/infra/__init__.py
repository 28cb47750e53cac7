"""
SlipSight Infrastructure - System infrastructure components.

This module contains:
- database: SQLite match store (SQLAlchemy)
- watcher: Replay folder enumeration, index cache and file system monitoring
"""

__all__: list[str] = []
