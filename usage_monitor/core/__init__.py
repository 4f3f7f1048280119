"""
Core modules for Usage Monitor.

This package contains the billing sync engine: record transformation,
concurrent paging, sync coordination and scheduling.
"""
