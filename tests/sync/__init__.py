"""
Test suite for the synchronization system.

Covers debouncing and coalescing, the intent queue and operation backlog,
suppression of the daemon's own writes, event collection, planning,
execution and reconciliation against an in-memory remote, and the
multi-directory engine.
"""
