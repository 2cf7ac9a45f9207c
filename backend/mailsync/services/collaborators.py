"""Domain collaborators: the protocol adapters that actually talk to providers.

Adapters live outside the scheduler. Each one implements `sync(account, payload)` and
either returns a SyncResult or raises TransientSyncError / PermanentSyncError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

from kombu.utils.imports import symbol_by_name

from ..jobs import Account, SyncDomain

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncResult:
    items_synced: int = 0


class Collaborator(Protocol):
    def sync(self, account: Account, payload: dict[str, Any]) -> SyncResult:
        ...


class CollaboratorRegistry:
    """Fixed SyncDomain -> Collaborator table."""

    def __init__(self, collaborators: Optional[Mapping[SyncDomain, Collaborator]] = None):
        self._collaborators: dict[SyncDomain, Collaborator] = {}
        for domain, collaborator in (collaborators or {}).items():
            self.register(domain, collaborator)

    def register(self, domain: SyncDomain, collaborator: Collaborator) -> None:
        self._collaborators[SyncDomain(domain)] = collaborator

    def get(self, domain: SyncDomain) -> Optional[Collaborator]:
        return self._collaborators.get(SyncDomain(domain))

    def domains(self) -> list[SyncDomain]:
        return [d for d in SyncDomain if d in self._collaborators]


def load_collaborators(paths: Optional[Mapping[str, str]]) -> dict[SyncDomain, Collaborator]:
    """
    Build adapters from {"email": "pkg.module:ImapCollaborator", ...}.
    A class is instantiated without arguments; any other object is used as is.
    """
    collaborators: dict[SyncDomain, Collaborator] = {}
    for domain, path in (paths or {}).items():
        target = symbol_by_name(path)
        collaborator = target() if isinstance(target, type) else target
        if not callable(getattr(collaborator, "sync", None)):
            raise TypeError(f"{path} has no sync(account, payload) method")
        collaborators[SyncDomain(domain)] = collaborator
        logger.info(f"Registered {SyncDomain(domain).value} collaborator {path}")
    return collaborators
