from __future__ import annotations

import logging
import threading
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping, Optional, Union

from .batching import run_in_chunks
from .models import (
    Account,
    AccountFilter,
    AccountPredicate,
    AccountStats,
    AccountStatus,
    BatchOpReport,
    Credentials,
    ExportBundle,
    VerificationErrorKind,
)

if TYPE_CHECKING:
    from .verifier import VerifierClient

logger = logging.getLogger(__name__)

DEFAULT_EXPIRING_SOON_WINDOW_S = 60 * 60

Patch = Union[Mapping[str, Any], Callable[[Account], Account]]


class InsertOutcome(str, Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"
    # Store was torn down; the write is a no-op.
    DROPPED = "dropped"


def _email_key(email: Any) -> Optional[str]:
    if email is None:
        return None
    text = str(email).strip().casefold()
    return text or None


def _user_key(user_id: Any) -> Optional[str]:
    if user_id is None:
        return None
    text = str(user_id).strip()
    return text or None


def _deep_merge(base: dict[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    out = dict(base or {})
    for key, value in (patch or {}).items():
        if isinstance(value, Mapping) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def apply_patch(account: Account, patch: Patch) -> Account:
    """Return a new account with `patch` applied; `account` itself is never mutated."""

    if callable(patch):
        updated = patch(account.model_copy(deep=True))
        if not isinstance(updated, Account):
            raise TypeError("patch callable must return an Account")
    else:
        merged = _deep_merge(account.model_dump(), patch)
        merged["id"] = account.id
        updated = Account.model_validate(merged)
    if updated.id != account.id:
        raise ValueError("patch must not change the account id")
    return updated


class AccountStore:
    """Process-wide account collection plus its derived views.

    Every mutation is an upsert keyed by account id taken under one lock, so
    concurrent writers (import chunk members, manual add/delete) are last-write-wins
    per id with no lost inserts. Reads hand out copies; a reader never sees a
    half-applied multi-account mutation.
    """

    def __init__(
        self,
        accounts: Optional[Iterable[Account]] = None,
        *,
        expiring_soon_window_s: float = DEFAULT_EXPIRING_SOON_WINDOW_S,
        verifier: Optional["VerifierClient"] = None,
        check_concurrency: int = 3,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lock = threading.RLock()
        self._accounts: dict[str, Account] = {}
        self._selected: set[str] = set()
        self._filter: Optional[AccountPredicate] = None
        self._active_id: Optional[str] = None
        self._closed = False
        self.expiring_soon_window_s = max(0.0, float(expiring_soon_window_s))
        self.verifier = verifier
        self.check_concurrency = max(1, int(check_concurrency))
        self._clock = clock
        for account in accounts or []:
            self._accounts[account.id] = account.model_copy(deep=True)

    # -- lifecycle -------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Tear the store down; later writes become silent no-ops."""

        with self._lock:
            self._closed = True
        logger.info("Account store closed accounts=%s", len(self._accounts))

    def _writable(self, operation: str) -> bool:
        if self._closed:
            logger.debug("Account store write ignored after close operation=%s", operation)
            return False
        return True

    # -- reads -----------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._accounts)

    def __contains__(self, account_id: object) -> bool:
        with self._lock:
            return account_id in self._accounts

    def get(self, account_id: str) -> Optional[Account]:
        with self._lock:
            account = self._accounts.get(account_id)
            return account.model_copy(deep=True) if account is not None else None

    def all(self) -> list[Account]:
        with self._lock:
            return [account.model_copy(deep=True) for account in self._accounts.values()]

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._accounts.keys())

    def find_duplicate(self, email: Any = None, user_id: Any = None) -> Optional[Account]:
        """Return the stored account sharing `email`, or `user_id` when given."""

        email_key = _email_key(email)
        user_key = _user_key(user_id)
        if email_key is None and user_key is None:
            return None
        with self._lock:
            for account in self._accounts.values():
                if email_key is not None and _email_key(account.email) == email_key:
                    return account.model_copy(deep=True)
                if user_key is not None and _user_key(account.user_id) == user_key:
                    return account.model_copy(deep=True)
        return None

    # -- writes ----------------------------------------------------------

    def add(self, account: Account) -> Optional[Account]:
        """Upsert `account` by id. Returns the stored copy, or None after close."""

        with self._lock:
            if not self._writable("add"):
                return None
            stored = account.model_copy(deep=True)
            replaced = stored.id in self._accounts
            self._accounts[stored.id] = stored
        logger.info(
            "Account %s id=%s email=%s",
            "replaced" if replaced else "added",
            stored.id,
            stored.email,
        )
        return stored.model_copy(deep=True)

    def add_if_absent(self, account: Account) -> InsertOutcome:
        """Insert unless an account with the same email/userId (or id) is present.

        The duplicate check and the insert share one critical section, so two
        concurrent candidates resolving to the same identity insert exactly once.
        """

        with self._lock:
            if not self._writable("add_if_absent"):
                return InsertOutcome.DROPPED
            if account.id in self._accounts or self.find_duplicate(account.email, account.user_id) is not None:
                return InsertOutcome.DUPLICATE
            self._accounts[account.id] = account.model_copy(deep=True)
        logger.info("Account added id=%s email=%s", account.id, account.email)
        return InsertOutcome.INSERTED

    def remove(self, ids: Iterable[str]) -> int:
        targets = [ids] if isinstance(ids, str) else list(ids)
        removed = 0
        with self._lock:
            if not self._writable("remove"):
                return 0
            for account_id in targets:
                if self._accounts.pop(account_id, None) is not None:
                    removed += 1
                self._selected.discard(account_id)
                if self._active_id == account_id:
                    self._active_id = None
        if removed:
            logger.info("Accounts removed count=%s", removed)
        return removed

    def update(self, account_id: str, patch: Patch) -> Optional[Account]:
        """Atomically apply `patch` to one account. Returns None if absent or closed."""

        with self._lock:
            if not self._writable("update"):
                return None
            current = self._accounts.get(account_id)
            if current is None:
                return None
            updated = apply_patch(current, patch)
            self._accounts[account_id] = updated
            return updated.model_copy(deep=True)

    def update_many(self, patches: Mapping[str, Patch]) -> list[Account]:
        """Apply several patches against one consistent snapshot, all or nothing."""

        with self._lock:
            if not self._writable("update_many"):
                return []
            staged: dict[str, Account] = {}
            for account_id, patch in patches.items():
                current = self._accounts.get(account_id)
                if current is None:
                    continue
                staged[account_id] = apply_patch(current, patch)
            self._accounts.update(staged)
            return [account.model_copy(deep=True) for account in staged.values()]

    def add_tags(self, ids: Iterable[str], tags: Iterable[str]) -> int:
        wanted = [str(tag).strip() for tag in tags if str(tag).strip()]

        def _patch(account: Account) -> Account:
            for tag in wanted:
                if tag not in account.tags:
                    account.tags.append(tag)
            return account

        return len(self.update_many({account_id: _patch for account_id in ids}))

    def remove_tags(self, ids: Iterable[str], tags: Iterable[str]) -> int:
        unwanted = {str(tag).strip() for tag in tags}

        def _patch(account: Account) -> Account:
            account.tags = [tag for tag in account.tags if tag not in unwanted]
            return account

        return len(self.update_many({account_id: _patch for account_id in ids}))

    # -- filter & selection ----------------------------------------------

    @property
    def filter(self) -> Optional[AccountPredicate]:
        return self._filter

    def set_filter(self, predicate: Union[AccountFilter, AccountPredicate, Mapping[str, Any], None]) -> None:
        if isinstance(predicate, Mapping):
            predicate = AccountFilter.model_validate(dict(predicate))
        with self._lock:
            self._filter = predicate

    def get_filtered(self) -> list[Account]:
        with self._lock:
            predicate = self._filter
            snapshot = [account.model_copy(deep=True) for account in self._accounts.values()]
        if predicate is None:
            return snapshot
        return [account for account in snapshot if predicate(account)]

    @property
    def selected_ids(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._selected)

    def select(self, ids: Iterable[str]) -> None:
        with self._lock:
            self._selected.update(account_id for account_id in ids if account_id in self._accounts)

    def deselect(self, ids: Iterable[str]) -> None:
        with self._lock:
            self._selected.difference_update(ids)

    def select_all(self) -> None:
        """Select every account visible through the current filter."""

        visible = [account.id for account in self.get_filtered()]
        self.select(visible)

    def deselect_all(self) -> None:
        with self._lock:
            self._selected.clear()

    # -- active account --------------------------------------------------

    @property
    def active_account(self) -> Optional[Account]:
        with self._lock:
            if self._active_id is None:
                return None
            return self.get(self._active_id)

    def set_active(self, account_id: Optional[str]) -> bool:
        with self._lock:
            if account_id is not None and account_id not in self._accounts:
                return False
            self._active_id = account_id
            if account_id is not None:
                current = self._accounts[account_id]
                self._accounts[account_id] = current.model_copy(update={"last_used_at": int(self._clock() * 1000)})
        return True

    # -- aggregates ------------------------------------------------------

    def get_stats(self, at_ms: Optional[int] = None) -> AccountStats:
        reference = int(self._clock() * 1000) if at_ms is None else int(at_ms)
        by_status = {status.value: 0 for status in AccountStatus}
        expiring = 0
        with self._lock:
            accounts = list(self._accounts.values())
        for account in accounts:
            by_status[account.status.value] = by_status.get(account.status.value, 0) + 1
            if account.credentials.expires_within(self.expiring_soon_window_s, reference):
                expiring += 1
        return AccountStats(
            total=len(accounts),
            active_count=by_status[AccountStatus.ACTIVE.value],
            by_status=by_status,
            expiring_soon_count=expiring,
        )

    def export_data(self, ids: Optional[Iterable[str]] = None) -> dict[str, Any]:
        """Full-export payload; restricted to `ids` when given."""

        with self._lock:
            if ids is None:
                chosen = list(self._accounts.values())
            else:
                wanted = set(ids)
                chosen = [account for account in self._accounts.values() if account.id in wanted]
            bundle = ExportBundle.of(account.model_copy(deep=True) for account in chosen)
        return bundle.to_wire()

    # -- batch refresh / check -------------------------------------------

    async def batch_refresh_tokens(
        self,
        ids: Iterable[str],
        *,
        verifier: Optional["VerifierClient"] = None,
        concurrency: Optional[int] = None,
        delay_s: float = 0.0,
    ) -> BatchOpReport:
        """Mint fresh access tokens for `ids`, chunked like a batch import."""

        return await self._run_batch("refresh", ids, verifier, concurrency, delay_s, self._refresh_one)

    async def batch_check_status(
        self,
        ids: Iterable[str],
        *,
        verifier: Optional["VerifierClient"] = None,
        concurrency: Optional[int] = None,
        delay_s: float = 0.0,
    ) -> BatchOpReport:
        """Re-verify `ids` and fold subscription/usage snapshots back into the store."""

        return await self._run_batch("check", ids, verifier, concurrency, delay_s, self._check_one)

    async def _run_batch(
        self,
        operation: str,
        ids: Iterable[str],
        verifier: Optional["VerifierClient"],
        concurrency: Optional[int],
        delay_s: float,
        one: Callable[["VerifierClient", str, BatchOpReport], Awaitable[None]],
    ) -> BatchOpReport:
        client = verifier or self.verifier
        if client is None:
            raise RuntimeError(f"batch {operation} needs a verifier client")
        targets = [ids] if isinstance(ids, str) else list(dict.fromkeys(ids))
        report = BatchOpReport(total=len(targets))
        if not targets:
            return report
        size = max(1, int(concurrency or self.check_concurrency))
        logger.info("Batch %s start total=%s concurrency=%s", operation, len(targets), size)

        async def _settle(account_id: str) -> None:
            try:
                await one(client, account_id, report)
            except Exception as exc:
                detail = str(exc) or exc.__class__.__name__
                self._record_failure(report, account_id, detail, invalid=False)
                logger.warning(
                    "Batch %s record raised id=%s detail=%s",
                    operation,
                    account_id,
                    f"{exc.__class__.__name__}: {exc}",
                )

        await run_in_chunks(
            targets,
            _settle,
            chunk_size=size,
            delay_s=delay_s,
            label=f"Batch {operation}",
        )
        logger.info(
            "Batch %s finished total=%s success=%s failed=%s",
            operation,
            report.total,
            report.success,
            report.failed,
        )
        return report

    async def _refresh_one(self, client: "VerifierClient", account_id: str, report: BatchOpReport) -> None:
        account = self.get(account_id)
        if account is None:
            report.failed += 1
            report.errors.append(f"{account_id}: not found")
            return
        result = await client.refresh(account.to_verify_request())
        if not result.ok or result.data is None:
            self._record_error(report, account, result.error)
            return
        refreshed = result.data
        issued = int(self._clock() * 1000)

        def _patch(current: Account) -> Account:
            current.credentials.access_token = refreshed.access_token
            if refreshed.refresh_token:
                current.credentials.refresh_token = refreshed.refresh_token
            current.credentials.expires_at = Credentials.expiry_from(refreshed.expires_in, issued_at_ms=issued)
            current.status = AccountStatus.ACTIVE
            current.last_error = None
            return current

        self._record_success(report, account, _patch)

    async def _check_one(self, client: "VerifierClient", account_id: str, report: BatchOpReport) -> None:
        account = self.get(account_id)
        if account is None:
            report.failed += 1
            report.errors.append(f"{account_id}: not found")
            return
        result = await client.verify(account.to_verify_request())
        if not result.ok or result.data is None:
            self._record_error(report, account, result.error)
            return
        data = result.data
        checked = int(self._clock() * 1000)

        def _patch(current: Account) -> Account:
            current.credentials.access_token = data.access_token
            if data.refresh_token:
                current.credentials.refresh_token = data.refresh_token
            current.credentials.expires_at = Credentials.expiry_from(data.expires_in, issued_at_ms=checked)
            current.subscription = data.to_subscription()
            current.usage = data.usage.model_copy(update={"last_updated": checked})
            if not current.user_id and data.user_id:
                current.user_id = str(data.user_id)
            current.status = AccountStatus.ACTIVE
            current.last_error = None
            current.last_checked_at = checked
            return current

        self._record_success(report, account, _patch)

    def _record_success(self, report: BatchOpReport, account: Account, patch: Callable[[Account], Account]) -> None:
        if self.update(account.id, patch) is None:
            report.failed += 1
            report.errors.append(f"{account.email}: no longer in the store")
            return
        report.success += 1

    def _record_error(self, report: BatchOpReport, account: Account, error: Any) -> None:
        message = error.message if error is not None else "Verification failed"
        invalid = error is not None and error.kind is VerificationErrorKind.INVALID_CREDENTIAL
        self._record_failure(report, account.id, message, invalid=invalid, label=account.email)

    def _record_failure(
        self,
        report: BatchOpReport,
        account_id: str,
        message: str,
        *,
        invalid: bool,
        label: Optional[str] = None,
    ) -> None:
        report.failed += 1
        report.errors.append(f"{label or account_id}: {message}")

        def _patch(current: Account) -> Account:
            if invalid:
                current.status = AccountStatus.ERROR
            current.last_error = message
            return current

        self.update(account_id, _patch)
