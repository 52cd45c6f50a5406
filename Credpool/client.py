from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

from .core.config import CredpoolConfig, parse_config_input
from .core.dedup import DedupIndex
from .core.importer import BatchImporter
from .core.models import AccountStats, BatchOpReport, CandidateCredential, IdP, ImportReport
from .core.repos import AccountsRepo
from .core.store import AccountStore
from .core.verifier import VerifierClient

logger = logging.getLogger(__name__)


class Credpool:
    """Account pool facade: one config, one store, one verifier, one importer.

    Async methods (`a*`) are the primary surface; each has a blocking twin that
    drives it with `asyncio.run`.
    """

    def __init__(
        self,
        config: Optional[Union[CredpoolConfig, dict[str, Any]]] = None,
        *,
        store: Optional[AccountStore] = None,
        verifier: Optional[VerifierClient] = None,
        session_factory: Optional[Callable[[], Any]] = None,
    ):
        self._config = parse_config_input(config)
        self.verifier = verifier or VerifierClient(self._config.verifier, session_factory=session_factory)
        self.store = store or AccountStore(
            expiring_soon_window_s=self._config.store.expiring_soon_window_s,
            check_concurrency=self._config.store.check_concurrency,
        )
        if self.store.verifier is None:
            self.store.verifier = self.verifier
        self.importer = BatchImporter(
            self.store,
            self.verifier,
            dedup=DedupIndex(self.store),
            concurrency=self._config.importer.batch_import_concurrency,
            batch_delay_s=self._config.importer.batch_delay_s,
            default_region=self._config.importer.default_region,
        )
        self.repo: Optional[AccountsRepo] = None
        if self._config.storage.db_path:
            self.repo = AccountsRepo(self._config.storage.db_path)
            self.repo.load_into(self.store)

    @property
    def config(self) -> CredpoolConfig:
        return self._config

    @classmethod
    def from_sources(
        cls,
        *,
        verifier_url: Optional[str] = None,
        batch_import_concurrency: Optional[int] = None,
        batch_delay_s: Optional[float] = None,
        db_path: Optional[str] = None,
        proxy: Any = None,
        env_path: Optional[str] = None,
        overrides: Any = None,
        session_factory: Optional[Callable[[], Any]] = None,
    ) -> "Credpool":
        config = CredpoolConfig.from_sources(
            verifier_url=verifier_url,
            batch_import_concurrency=batch_import_concurrency,
            batch_delay_s=batch_delay_s,
            db_path=db_path,
            proxy=proxy,
            env_path=env_path,
            overrides=overrides,
        )
        return cls(config, session_factory=session_factory)

    # -- imports ---------------------------------------------------------

    def import_text(self, fmt: Any, text: str, **kwargs) -> ImportReport:
        return asyncio.run(self.aimport_text(fmt, text, **kwargs))

    async def aimport_text(self, fmt: Any, text: str, *, concurrency: Optional[int] = None) -> ImportReport:
        report = await self.importer.import_text(fmt, text, concurrency=concurrency)
        self._persist()
        return report

    def import_file(self, path: Union[str, Path], fmt: Any = None, **kwargs) -> ImportReport:
        return asyncio.run(self.aimport_file(path, fmt, **kwargs))

    async def aimport_file(
        self,
        path: Union[str, Path],
        fmt: Any = None,
        *,
        concurrency: Optional[int] = None,
    ) -> ImportReport:
        report = await self.importer.import_file(path, fmt, concurrency=concurrency)
        self._persist()
        return report

    def import_oidc(self, payload: Any, **kwargs) -> ImportReport:
        return asyncio.run(self.aimport_oidc(payload, **kwargs))

    async def aimport_oidc(self, payload: Any, *, concurrency: Optional[int] = None) -> ImportReport:
        report = await self.importer.import_oidc(payload, concurrency=concurrency)
        self._persist()
        return report

    def add_account(self, candidate: Union[CandidateCredential, dict[str, Any]]) -> ImportReport:
        return asyncio.run(self.aadd_account(candidate))

    async def aadd_account(self, candidate: Union[CandidateCredential, dict[str, Any]]) -> ImportReport:
        """Verify one credential and insert it unless it already exists."""

        if isinstance(candidate, dict):
            record = dict(candidate)
            candidate = CandidateCredential.build(
                refresh_token=record.get("refresh_token") or record.get("refreshToken") or "",
                index=1,
                email=record.get("email"),
                nickname=record.get("nickname"),
                provider=record.get("provider") or record.get("idp"),
                auth_method=record.get("auth_method") or record.get("authMethod"),
                client_id=record.get("client_id") or record.get("clientId"),
                client_secret=record.get("client_secret") or record.get("clientSecret"),
                region=record.get("region") or self._config.importer.default_region,
                default_provider=IdP.BUILDER_ID,
            )
        if not candidate.refresh_token.strip():
            report = ImportReport(total=1)
            report.add_failure(f"{candidate.label}: missing refreshToken")
            return report
        report = await self.importer.import_candidates([candidate])
        self._persist()
        return report

    # -- batch refresh / check -------------------------------------------

    def batch_refresh_tokens(self, ids: Iterable[str], **kwargs) -> BatchOpReport:
        return asyncio.run(self.abatch_refresh_tokens(ids, **kwargs))

    async def abatch_refresh_tokens(self, ids: Iterable[str], *, concurrency: Optional[int] = None) -> BatchOpReport:
        report = await self.store.batch_refresh_tokens(
            ids,
            verifier=self.verifier,
            concurrency=concurrency,
            delay_s=self._config.importer.batch_delay_s,
        )
        self._persist()
        return report

    def batch_check_status(self, ids: Iterable[str], **kwargs) -> BatchOpReport:
        return asyncio.run(self.abatch_check_status(ids, **kwargs))

    async def abatch_check_status(self, ids: Iterable[str], *, concurrency: Optional[int] = None) -> BatchOpReport:
        report = await self.store.batch_check_status(
            ids,
            verifier=self.verifier,
            concurrency=concurrency,
            delay_s=self._config.importer.batch_delay_s,
        )
        self._persist()
        return report

    # -- store passthroughs ----------------------------------------------

    def remove_accounts(self, ids: Iterable[str]) -> int:
        targets = [ids] if isinstance(ids, str) else list(ids)
        removed = self.store.remove(targets)
        if self.repo is not None and removed:
            self.repo.delete_accounts(targets)
        return removed

    def get_stats(self) -> AccountStats:
        return self.store.get_stats()

    def export_data(self, ids: Optional[Iterable[str]] = None) -> dict[str, Any]:
        if ids is None and self.store.selected_ids:
            ids = self.store.selected_ids
        return self.store.export_data(ids)

    def export_to_file(self, path: Union[str, Path], ids: Optional[Iterable[str]] = None) -> int:
        payload = self.export_data(ids)
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info("Accounts exported path=%s count=%s", str(target), len(payload.get("accounts", [])))
        return len(payload.get("accounts", []))

    # -- persistence -----------------------------------------------------

    def save(self) -> int:
        if self.repo is None:
            return 0
        return self.repo.save_store(self.store)

    def _persist(self) -> None:
        if self.repo is not None and not self.store.closed:
            self.repo.save_store(self.store)

    def close(self) -> None:
        self._persist()
        self.store.close()
