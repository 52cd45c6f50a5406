import pytest

from Credpool.core.models import (
    Account,
    AccountFilter,
    AccountStatus,
    AuthMethod,
    CandidateCredential,
    Credentials,
    IdP,
    ImportReport,
    Subscription,
    SubscriptionType,
    Usage,
    VerificationError,
    VerificationErrorKind,
)
from tests.fakes import verified


@pytest.mark.parametrize(
    ("current", "limit", "expected"),
    [(10, 100, 0.1), (100, 100, 1.0), (5, 0, 0.0), (5, -1, 0.0), (0, 50, 0.0)],
)
def test_percent_used(current, limit, expected):
    assert Usage(current=current, limit=limit).percent_used == expected


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("KIRO PRO+", SubscriptionType.PRO_PLUS),
        ("q_developer_pro_plus", SubscriptionType.PRO_PLUS),
        ("ProPlus Monthly", SubscriptionType.PRO_PLUS),
        ("Kiro Power", SubscriptionType.POWER),
        ("kiro pro", SubscriptionType.PRO),
        ("KIRO FREE", SubscriptionType.FREE),
        (None, SubscriptionType.FREE),
    ],
)
def test_subscription_type_from_title(title, expected):
    assert SubscriptionType.from_title(title) is expected


def test_subscription_type_falls_back_to_raw_type():
    assert SubscriptionType.from_title("", "PRO") is SubscriptionType.PRO
    assert Subscription(type="kiro power").type is SubscriptionType.POWER


def test_expiry_is_derived_from_relative_lifetime():
    assert Credentials.expiry_from(120, issued_at_ms=1_000) == 121_000
    assert Credentials.expiry_from(None, issued_at_ms=0) == 3_600_000
    assert Credentials.expiry_from(0, issued_at_ms=0) == 3_600_000


def test_credentials_time_helpers():
    creds = Credentials(refresh_token="rt", expires_at=10_000)
    assert creds.seconds_remaining(at_ms=4_000) == 6.0
    assert not creds.is_expired(at_ms=4_000)
    assert creds.is_expired(at_ms=10_000)
    assert creds.expires_within(10, at_ms=4_000)
    assert not creds.expires_within(5, at_ms=4_000)
    assert not Credentials(refresh_token="rt").expires_within(3600, at_ms=0)


def test_provider_and_auth_method_parsing():
    assert IdP.parse("github") is IdP.GITHUB
    assert IdP.parse("builder_id") is IdP.BUILDER_ID
    assert IdP.parse("yahoo", default=IdP.GOOGLE) is IdP.GOOGLE
    assert AuthMethod.parse("SOCIAL") is AuthMethod.SOCIAL
    assert AuthMethod.for_provider(IdP.BUILDER_ID) is AuthMethod.IDC
    assert AuthMethod.for_provider(IdP.GOOGLE) is AuthMethod.SOCIAL


def test_account_from_verification():
    candidate = CandidateCredential.build(
        refresh_token="rt-in",
        index=3,
        provider="Github",
        client_id="cid",
        region="eu-central-1",
    )
    data = verified("dev@x.io", subscriptionTitle="KIRO PRO+", expiresIn=600)
    account = Account.from_verification(candidate, data, at_ms=1_000)

    assert account.email == "dev@x.io"
    assert account.nickname == "dev"
    assert account.user_id == "uid-dev@x.io"
    assert account.idp is IdP.GITHUB
    assert account.status is AccountStatus.ACTIVE
    assert account.credentials.refresh_token == "rt-rotated-dev@x.io"
    assert account.credentials.expires_at == 601_000
    assert account.credentials.auth_method is AuthMethod.SOCIAL
    assert account.credentials.region == "eu-central-1"
    assert account.subscription.type is SubscriptionType.PRO_PLUS
    assert account.usage.last_updated == 1_000
    assert account.created_at == 1_000

    request = account.to_verify_request()
    assert request.refresh_token == "rt-rotated-dev@x.io"
    assert request.to_wire()["authMethod"] == "social"


def test_from_verification_keeps_token_when_not_rotated():
    candidate = CandidateCredential.build(refresh_token="rt-in", email="me@x.io")
    data = verified("", refreshToken=None)
    account = Account.from_verification(candidate, data)
    assert account.email == "me@x.io"
    assert account.credentials.refresh_token == "rt-in"


@pytest.mark.parametrize(("raw", "expected"), [(42, "42"), ("u-7", "u-7"), (None, None)])
def test_verified_user_id_is_kept_as_text(raw, expected):
    assert verified("n@x.io", userId=raw).user_id == expected


def test_verify_request_wire_shape():
    candidate = CandidateCredential.build(refresh_token="rt", client_id="c", client_secret="s")
    assert candidate.to_request().to_wire() == {
        "refreshToken": "rt",
        "clientId": "c",
        "clientSecret": "s",
        "region": "us-east-1",
        "authMethod": "IdC",
        "provider": "BuilderId",
    }


def test_account_filter_matches():
    account = Account(
        email="Alice@Example.com",
        credentials=Credentials(refresh_token="rt"),
        tags=["team-a"],
        status=AccountStatus.ACTIVE,
        idp=IdP.GOOGLE,
    )
    assert AccountFilter(search="alice").matches(account)
    assert AccountFilter(search="team-a").matches(account)
    assert not AccountFilter(search="bob").matches(account)
    assert AccountFilter(statuses={"active"}).matches(account)
    assert not AccountFilter(statuses={"error"}).matches(account)
    assert not AccountFilter(tags={"team-b"}).matches(account)
    assert AccountFilter(idps={IdP.GOOGLE}, subscription_types={SubscriptionType.FREE})(account)


def test_import_report_tally():
    report = ImportReport(total=3)
    report.add_success()
    report.add_failure("#2: invalid_grant")
    report.add_skipped("#3: a@x.io already exists")
    assert (report.success, report.failed, report.skipped) == (1, 1, 1)
    assert report.errors == ["#2: invalid_grant", "#3: a@x.io already exists"]
    assert report.summary().startswith("Imported 1 of 3 (failed=1, skipped=1)")


def test_verification_error_retryable():
    assert VerificationError(VerificationErrorKind.RATE_LIMITED, "slow down").retryable
    assert VerificationError(VerificationErrorKind.NETWORK_ERROR, "down").retryable
    assert not VerificationError(VerificationErrorKind.INVALID_CREDENTIAL, "bad").retryable
    assert not VerificationError(VerificationErrorKind.UNKNOWN, "?").retryable
