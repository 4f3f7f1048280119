"""
Storage layer for Usage Monitor.

SQLite persistence for expense bills, sync history and auto-sync config.
"""
