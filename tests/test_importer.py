import asyncio
import json

import pytest

from Credpool.core.exceptions import EmptyInputError
from Credpool.core.importer import BatchImporter
from Credpool.core.models import (
    Account,
    AccountStatus,
    AuthMethod,
    CandidateCredential,
    Credentials,
    IdP,
)
from Credpool.core.store import AccountStore
from tests.fakes import FakeVerifier, RecordingSleep, invalid, network, verified


def candidates(count, prefix="rt"):
    return [CandidateCredential.build(refresh_token=f"{prefix}-{n}", index=n) for n in range(1, count + 1)]


def make_importer(store, verifier, **kwargs):
    kwargs.setdefault("sleep", RecordingSleep())
    return BatchImporter(store, verifier, **kwargs)


class TestChunking:
    async def test_five_candidates_run_in_chunks_of_two_two_one(self, store):
        verifier = FakeVerifier()
        issued_before_delay = []

        async def sleep(delay):
            issued_before_delay.append((len(verifier.calls), delay))

        importer = make_importer(store, verifier, concurrency=2, batch_delay_s=0.1, sleep=sleep)
        report = await importer.import_batch(candidates(5))

        assert report.total == 5
        assert report.success == 5
        assert len(verifier.calls) == 5
        # The delay sits between chunks only: after chunk 1 (2 issued) and chunk 2 (4 issued).
        assert issued_before_delay == [(2, 0.1), (4, 0.1)]

    async def test_next_chunk_waits_for_every_member_to_settle(self, store):
        verifier = FakeVerifier(delays={"rt-1": 0.03, "rt-2": 0.0})
        importer = make_importer(store, verifier, concurrency=2)
        await importer.import_batch(candidates(3))

        events = verifier.events
        assert events.index("start:rt-3") > events.index("end:rt-1")
        assert events.index("start:rt-3") > events.index("end:rt-2")

    async def test_in_flight_never_exceeds_concurrency(self, store):
        delays = {f"rt-{n}": 0.001 * (n % 4) for n in range(1, 11)}
        verifier = FakeVerifier(delays=delays)
        importer = make_importer(store, verifier, concurrency=3)
        report = await importer.import_batch(candidates(10))
        assert report.success == 10
        assert verifier.max_in_flight == 3

    async def test_call_level_concurrency_override(self, store):
        verifier = FakeVerifier(delays={f"rt-{n}": 0.001 for n in range(1, 6)})
        importer = make_importer(store, verifier, concurrency=5)
        await importer.import_batch(candidates(5), concurrency=1)
        assert verifier.max_in_flight == 1

    async def test_empty_batch(self, store, fake_verifier):
        report = await make_importer(store, fake_verifier).import_batch([])
        assert (report.total, report.success, report.failed) == (0, 0, 0)
        assert fake_verifier.calls == []


class TestOutcomes:
    async def test_failures_are_collected_and_never_abort(self, store):
        verifier = FakeVerifier(
            {
                "rt-1": invalid("invalid_grant"),
                "rt-2": network("Verification timed out after 30s"),
                "rt-3": RuntimeError("boom"),
            }
        )
        importer = make_importer(store, verifier, concurrency=2)
        report = await importer.import_batch(candidates(5))

        assert report.total == 5
        assert report.success == 2
        assert report.failed == 3
        assert sorted(report.errors) == sorted(
            [
                "#1: invalid_grant",
                "#2: Verification timed out after 30s",
                "#3: import failed (boom)",
            ]
        )
        assert len(verifier.calls) == 5
        assert len(store) == 2

    async def test_failures_do_not_touch_existing_accounts(self, store):
        existing = Account(
            email="keep@x.io",
            credentials=Credentials(refresh_token="rt-keep", access_token="at-keep"),
            status=AccountStatus.ACTIVE,
        )
        store.add(existing)
        before = store.get(existing.id)

        verifier = FakeVerifier({"rt-1": invalid(), "rt-2": network()})
        report = await make_importer(store, verifier).import_batch(candidates(2))

        assert report.failed == 2
        assert store.ids() == [existing.id]
        assert store.get(existing.id) == before

    @pytest.mark.parametrize("slow", ["rt-1", "rt-2"])
    async def test_same_email_in_one_chunk_inserts_once(self, store, slow):
        verifier = FakeVerifier(
            {"rt-1": verified("twin@x.io"), "rt-2": verified("TWIN@x.io", userId="other")},
            delays={slow: 0.01},
        )
        report = await make_importer(store, verifier, concurrency=2).import_batch(candidates(2))

        assert report.success == 1
        assert report.failed == 0
        assert report.skipped == 1
        assert len(report.errors) == 1
        assert report.errors[0].endswith("already exists")
        assert len(store) == 1

    async def test_same_user_id_counts_as_duplicate(self, store):
        verifier = FakeVerifier(
            {"rt-1": verified("a@x.io", userId="u-1"), "rt-2": verified("b@x.io", userId="u-1")}
        )
        report = await make_importer(store, verifier, concurrency=1).import_batch(candidates(2))
        assert (report.success, report.skipped) == (1, 1)
        assert report.errors == ["#2: b@x.io already exists"]

    async def test_verified_account_is_materialized(self, store):
        verifier = FakeVerifier({"rt-1": verified("new@x.io", subscriptionTitle="KIRO POWER", expiresIn=120)})
        importer = make_importer(store, verifier, clock_ms=lambda: 5_000)
        await importer.import_batch(candidates(1))

        [account] = store.all()
        assert account.email == "new@x.io"
        assert account.status is AccountStatus.ACTIVE
        assert account.credentials.access_token == "at-new@x.io"
        assert account.credentials.expires_at == 125_000
        assert account.subscription.type.value == "Power"
        assert account.usage.percent_used == 0.1

    async def test_missing_email_is_a_failure(self, store):
        verifier = FakeVerifier({"rt-1": verified("")})
        report = await make_importer(store, verifier).import_batch(candidates(1))
        assert report.failed == 1
        assert report.errors == ["#1: verification returned no email"]

    async def test_results_after_teardown_are_dropped(self, store):
        verifier = FakeVerifier(delays={"rt-1": 0.01})
        importer = make_importer(store, verifier)
        task = asyncio.ensure_future(importer.import_batch(candidates(1)))
        await asyncio.sleep(0)
        store.close()
        report = await task

        assert report.success == 0
        assert report.failed == 0
        assert len(store) == 0


class TestEntryPoints:
    async def test_reimporting_the_same_file_adds_nothing(self, store, tmp_path):
        path = tmp_path / "accounts.txt"
        path.write_text("a@x.io,rt-a\nb@x.io|rt-b\n", encoding="utf-8")
        verifier = FakeVerifier({"rt-a": verified("a@x.io"), "rt-b": verified("b@x.io")})
        importer = make_importer(store, verifier)

        first = await importer.import_file(path)
        second = await importer.import_file(path)

        assert (first.total, first.success, first.failed) == (2, 2, 0)
        assert (second.total, second.success, second.failed, second.skipped) == (2, 0, 0, 2)
        assert all(message.endswith("already exists") for message in second.errors)
        assert len(verifier.calls) == 2
        assert len(store) == 2

    async def test_parse_errors_stop_before_any_verification(self, store, fake_verifier):
        importer = make_importer(store, fake_verifier)
        with pytest.raises(EmptyInputError):
            await importer.import_text("csv", "email,nickname,idp,refreshToken\n")
        assert fake_verifier.calls == []

    async def test_oidc_defaults_flow_into_the_request(self, store):
        verifier = FakeVerifier({"rt-1": verified("b@x.io"), "rt-2": verified("g@x.io")})
        payload = json.dumps(
            [
                {"refreshToken": "rt-1", "clientId": "c", "clientSecret": "s"},
                {"refreshToken": "rt-2", "provider": "Github"},
                {"clientId": "orphan"},
            ]
        )
        report = await make_importer(store, verifier).import_oidc(payload)

        assert (report.total, report.success, report.failed) == (3, 2, 1)
        assert "#3: missing refreshToken" in report.errors
        requests = {request.refresh_token: request for request in verifier.calls}
        assert requests["rt-1"].provider is IdP.BUILDER_ID
        assert requests["rt-1"].auth_method is AuthMethod.IDC
        assert requests["rt-2"].auth_method is AuthMethod.SOCIAL
        by_email = {account.email: account for account in store.all()}
        assert by_email["b@x.io"].idp is IdP.BUILDER_ID
        assert by_email["g@x.io"].idp is IdP.GITHUB

    async def test_full_export_is_inserted_without_verification(self, store, fake_verifier):
        present = Account(email="old@x.io", credentials=Credentials(refresh_token="rt-old"))
        store.add(present)
        clashing_id = Account(id=present.id, email="clash@x.io", credentials=Credentials(refresh_token="rt-c"))
        fresh = Account(email="fresh@x.io", credentials=Credentials(refresh_token="rt-f"))
        duplicate = Account(email="OLD@x.io", credentials=Credentials(refresh_token="rt-dup"))
        text = json.dumps(
            {
                "version": "1.0",
                "exportedAt": 0,
                "accounts": [a.to_wire() for a in (fresh, duplicate, clashing_id)] + [{"email": "broken"}],
            }
        )

        report = await make_importer(store, fake_verifier).import_text("json", text)

        assert fake_verifier.calls == []
        assert (report.total, report.success, report.failed, report.skipped) == (4, 2, 1, 1)
        assert "1 account(s) already exist and were skipped" in report.errors
        emails = sorted(account.email for account in store.all())
        assert emails == ["clash@x.io", "fresh@x.io", "old@x.io"]
        assert store.get(present.id).email == "old@x.io"
