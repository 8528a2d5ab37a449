"""
Multi-tenant Task Execution Core

Durable job queue with an atomic claim/lease protocol, retry and backoff
accounting, a deduplicating dead-letter store, and stuck-job recovery.
"""

__version__ = "1.0.0"
