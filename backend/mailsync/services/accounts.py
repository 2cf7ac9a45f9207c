"""Account lookup for the scheduler. Accounts are owned by account management; we only read."""

from __future__ import annotations

from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..errors import QueueIntegrityError
from ..jobs import Account
from ..models import AccountRecord


class AccountDirectory(Protocol):
    def resolve(self, account_id: str) -> Optional[Account]:
        ...

    def list_ids(self) -> list[str]:
        ...


class SqlAccountDirectory:
    """Resolves accounts from the accounts table. Storage errors surface as QueueIntegrityError."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def resolve(self, account_id: str) -> Optional[Account]:
        if not account_id:
            return None
        db = self._session_factory()
        try:
            row = db.get(AccountRecord, str(account_id))
            if row is None:
                return None
            return Account(
                id=row.id,
                provider=row.provider,
                display_name=row.display_name,
                protocols=dict(row.protocols or {}),
                credential_ref=row.credential_ref,
            )
        except SQLAlchemyError as e:
            raise QueueIntegrityError(f"storage unavailable: {e}") from e
        finally:
            db.close()

    def list_ids(self) -> list[str]:
        db = self._session_factory()
        try:
            return list(
                db.execute(
                    select(AccountRecord.id).order_by(AccountRecord.created_at.asc(), AccountRecord.id.asc())
                ).scalars()
            )
        except SQLAlchemyError as e:
            raise QueueIntegrityError(f"storage unavailable: {e}") from e
        finally:
            db.close()
