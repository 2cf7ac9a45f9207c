"""Sync error taxonomy.

Collaborators raise TransientSyncError / PermanentSyncError; the executor turns them
into outcomes. QueueIntegrityError never counts against a job's attempts.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for scheduler errors."""


class TransientSyncError(SyncError):
    """Network timeout, rate limiting, temporary server error. Retried with backoff."""


class PermanentSyncError(SyncError):
    """Invalid credentials, malformed payload, resource not found. Dead-lettered at once."""


class QueueIntegrityError(SyncError):
    """Lost claim race, illegal state transition, or storage unavailable."""


class InvalidAccount(SyncError):
    """The account id does not resolve to a known account."""

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id
