from __future__ import annotations

import json
import logging
import time
from typing import TYPE_CHECKING, Any, Iterable, Optional

from pydantic import ValidationError
from sqlalchemy import delete, func, select

from .models import Account
from .schema import AccountTable
from .storage import init_db, session_scope

if TYPE_CHECKING:
    from .store import AccountStore

logger = logging.getLogger(__name__)


def _account_to_row_values(account: Account) -> dict[str, Any]:
    return {
        "email": account.email,
        "user_id": account.user_id,
        "status": account.status.value,
        "payload_json": json.dumps(account.to_wire(), separators=(",", ":")),
        "created_at": int(account.created_at or 0),
        "updated_at": int(time.time() * 1000),
    }


def _row_to_account(row: AccountTable) -> Optional[Account]:
    try:
        payload = json.loads(row.payload_json or "{}")
        payload["id"] = row.id
        return Account.model_validate(payload)
    except (ValueError, ValidationError) as exc:
        logger.warning("Account row unreadable id=%s detail=%s", row.id, f"{exc.__class__.__name__}: {exc}"[:200])
        return None


class AccountsRepo:
    """SQLite persistence for the account store, keyed by the local account id."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        init_db(db_path)

    def upsert_accounts(self, accounts: Iterable[Account]) -> int:
        written = 0
        with session_scope(self.db_path) as session:
            for account in accounts:
                values = _account_to_row_values(account)
                row = session.get(AccountTable, account.id)
                if row is None:
                    session.add(AccountTable(id=account.id, **values))
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
                written += 1
            session.flush()
        logger.debug("Accounts persisted db_path=%s count=%s", self.db_path, written)
        return written

    def delete_accounts(self, ids: Iterable[str]) -> int:
        targets = [ids] if isinstance(ids, str) else list(ids)
        if not targets:
            return 0
        with session_scope(self.db_path) as session:
            result = session.execute(delete(AccountTable).where(AccountTable.id.in_(targets)))
            return int(result.rowcount or 0)

    def get(self, account_id: str) -> Optional[Account]:
        with session_scope(self.db_path) as session:
            row = session.get(AccountTable, account_id)
            return _row_to_account(row) if row is not None else None

    def load_accounts(self) -> list[Account]:
        with session_scope(self.db_path) as session:
            rows = list(
                session.execute(select(AccountTable).order_by(AccountTable.created_at.asc(), AccountTable.id.asc()))
                .scalars()
                .all()
            )
            accounts = [_row_to_account(row) for row in rows]
        return [account for account in accounts if account is not None]

    def count(self) -> int:
        with session_scope(self.db_path) as session:
            return int(session.execute(select(func.count()).select_from(AccountTable)).scalar_one() or 0)

    def save_store(self, store: "AccountStore") -> int:
        """Mirror `store` into the table: upsert every account, drop rows it no longer holds."""

        accounts = store.all()
        keep = {account.id for account in accounts}
        with session_scope(self.db_path) as session:
            stale = [
                row_id
                for row_id in session.execute(select(AccountTable.id)).scalars().all()
                if row_id not in keep
            ]
        removed = self.delete_accounts(stale)
        written = self.upsert_accounts(accounts)
        logger.info("Account store saved db_path=%s written=%s removed=%s", self.db_path, written, removed)
        return written

    def load_into(self, store: "AccountStore") -> int:
        loaded = 0
        for account in self.load_accounts():
            if store.add(account) is not None:
                loaded += 1
        logger.info("Account store loaded db_path=%s count=%s", self.db_path, loaded)
        return loaded
