"""
Offline Task Sync Engine

Local task store with a durable mutation queue, batched reconciliation
against a remote peer, and Last-Write-Wins conflict resolution.
"""

__version__ = "1.0.0"
