from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Union

from .batching import run_in_chunks
from .dedup import DedupIndex
from .http_utils import token_fingerprint
from .models import DEFAULT_REGION, Account, CandidateCredential, ImportReport, VerifyResult, now_ms
from .parsers import ParseResult, parse, parse_file, parse_oidc
from .store import AccountStore, InsertOutcome
from .verifier import VerifierClient

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 3
DEFAULT_BATCH_DELAY_S = 0.1


class BatchImporter:
    """Drives candidate credentials through verification into the account store.

    Candidates are verified in consecutive chunks of `concurrency`; chunk members
    run concurrently and all settle before the next chunk starts. Per-record
    failures are collected into the report and never abort the batch.
    """

    def __init__(
        self,
        store: AccountStore,
        verifier: VerifierClient,
        *,
        dedup: Optional[DedupIndex] = None,
        concurrency: int = DEFAULT_CONCURRENCY,
        batch_delay_s: float = DEFAULT_BATCH_DELAY_S,
        default_region: str = DEFAULT_REGION,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        clock_ms: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.verifier = verifier
        self.dedup = dedup or DedupIndex(store)
        self.concurrency = max(1, int(concurrency))
        self.batch_delay_s = max(0.0, float(batch_delay_s))
        self.default_region = str(default_region or DEFAULT_REGION).strip() or DEFAULT_REGION
        self._sleep = sleep or asyncio.sleep
        self._clock_ms = clock_ms

    # -- entry points ----------------------------------------------------

    async def import_text(self, fmt: Any, text: str, *, concurrency: Optional[int] = None) -> ImportReport:
        parsed = parse(fmt, text, default_region=self.default_region)
        return await self.import_parsed(parsed, concurrency=concurrency)

    async def import_file(
        self,
        path: Union[str, Path],
        fmt: Any = None,
        *,
        concurrency: Optional[int] = None,
    ) -> ImportReport:
        parsed = parse_file(path, fmt, default_region=self.default_region)
        return await self.import_parsed(parsed, concurrency=concurrency)

    async def import_oidc(self, payload: Any, *, concurrency: Optional[int] = None) -> ImportReport:
        parsed = parse_oidc(payload, default_region=self.default_region)
        return await self.import_parsed(parsed, concurrency=concurrency)

    async def import_parsed(self, parsed: ParseResult, *, concurrency: Optional[int] = None) -> ImportReport:
        report = ImportReport(total=len(parsed.rejected))
        for message in parsed.rejected:
            report.add_failure(message)
        if parsed.accounts:
            report.merge(self.import_accounts(parsed.accounts))
        if parsed.candidates:
            report.merge(await self.import_candidates(parsed.candidates, concurrency=concurrency))
        logger.info(
            "Import finished format=%s total=%s success=%s failed=%s skipped=%s",
            parsed.fmt,
            report.total,
            report.success,
            report.failed,
            report.skipped,
        )
        return report

    def import_accounts(self, accounts: Iterable[Account]) -> ImportReport:
        """Insert already-verified accounts (full export) without any network call."""

        report = ImportReport()
        skipped = 0
        for account in accounts:
            report.total += 1
            if self.dedup.exists(account.email, account.user_id):
                skipped += 1
                continue
            if account.id in self.store:
                account = account.model_copy(update={"id": uuid.uuid4().hex})
            outcome = self.store.add_if_absent(account)
            if outcome is InsertOutcome.INSERTED:
                report.add_success()
            elif outcome is InsertOutcome.DUPLICATE:
                skipped += 1
            else:
                report.add_note(f"{account.email}: dropped, account store is closed")
        if skipped:
            report.skipped += skipped
            report.add_note(f"{skipped} account(s) already exist and were skipped")
        return report

    async def import_candidates(
        self,
        candidates: Sequence[CandidateCredential],
        *,
        concurrency: Optional[int] = None,
    ) -> ImportReport:
        """Drop candidates whose email is already stored, then verify the rest."""

        fresh, present = self.dedup.partition(candidates)
        report = ImportReport(total=len(present))
        for candidate in present:
            report.add_skipped(f"{candidate.label}: {candidate.email} already exists")
        if present:
            logger.info("Import pre-check skipped existing count=%s", len(present))
        return report.merge(await self.import_batch(fresh, concurrency))

    async def import_batch(
        self,
        candidates: Sequence[CandidateCredential],
        concurrency: Optional[int] = None,
    ) -> ImportReport:
        """Verify `candidates` in bounded chunks and insert the successes.

        Report messages follow completion order, not input order.
        """

        size = max(1, int(concurrency or self.concurrency))
        report = ImportReport(total=len(candidates))
        if not candidates:
            return report

        logger.info(
            "Import batch start total=%s concurrency=%s delay_s=%s",
            len(candidates),
            size,
            self.batch_delay_s,
        )

        async def _settle(candidate: CandidateCredential) -> None:
            try:
                result = await self.verifier.verify(candidate.to_request())
            except Exception as exc:
                detail = str(exc) or exc.__class__.__name__
                report.add_failure(f"{candidate.label}: import failed ({detail})")
                logger.warning(
                    "Import record raised index=%s token_fp=%s detail=%s",
                    candidate.index,
                    token_fingerprint(candidate.refresh_token),
                    f"{exc.__class__.__name__}: {exc}",
                )
                return
            self._record(candidate, result, report)

        await run_in_chunks(
            list(candidates),
            _settle,
            chunk_size=size,
            delay_s=self.batch_delay_s,
            sleep=self._sleep,
            label="Import",
        )
        return report

    # -- internals -------------------------------------------------------

    def _record(self, candidate: CandidateCredential, result: VerifyResult, report: ImportReport) -> None:
        if not result.ok or result.data is None:
            message = result.error.message if result.error is not None else "Verification failed"
            report.add_failure(f"{candidate.label}: {message}")
            return

        account = Account.from_verification(candidate, result.data, at_ms=self._clock_ms())
        if not account.email:
            report.add_failure(f"{candidate.label}: verification returned no email")
            return

        # Chunk-mates may have resolved to the same identity since the pre-check.
        outcome = self.store.add_if_absent(account)
        if outcome is InsertOutcome.INSERTED:
            report.add_success()
            logger.info("Import record added index=%s email=%s id=%s", candidate.index, account.email, account.id)
        elif outcome is InsertOutcome.DUPLICATE:
            report.add_skipped(f"{candidate.label}: {account.email} already exists")
            logger.info("Import record duplicate index=%s email=%s", candidate.index, account.email)
        else:
            report.add_note(f"{candidate.label}: {account.email} dropped, account store is closed")
