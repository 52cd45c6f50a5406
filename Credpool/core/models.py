from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_REGION = "us-east-1"
DEFAULT_EXPIRES_IN_S = 3600
EXPORT_VERSION = "1.0"

Timestamp = Union[int, float, str]


def now_ms() -> int:
    return int(time.time() * 1000)


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class IdP(str, Enum):
    BUILDER_ID = "BuilderId"
    GITHUB = "Github"
    GOOGLE = "Google"

    @classmethod
    def parse(cls, value: Any, default: Optional["IdP"] = None) -> Optional["IdP"]:
        if isinstance(value, cls):
            return value
        text = _as_str(getattr(value, "value", value))
        if text is None:
            return default
        folded = text.replace(" ", "").replace("_", "").lower()
        for member in cls:
            if member.value.lower() == folded:
                return member
        return default


class AuthMethod(str, Enum):
    IDC = "IdC"
    SOCIAL = "social"

    @classmethod
    def parse(cls, value: Any, default: Optional["AuthMethod"] = None) -> Optional["AuthMethod"]:
        if isinstance(value, cls):
            return value
        text = _as_str(getattr(value, "value", value))
        if text is None:
            return default
        for member in cls:
            if member.value.lower() == text.lower():
                return member
        return default

    @classmethod
    def for_provider(cls, provider: Optional[IdP]) -> "AuthMethod":
        # Github and Google log in through the social flow.
        if provider is None or provider == IdP.BUILDER_ID:
            return cls.IDC
        return cls.SOCIAL


class AccountStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    UNKNOWN = "unknown"


class SubscriptionType(str, Enum):
    FREE = "Free"
    PRO = "Pro"
    PRO_PLUS = "Pro+"
    POWER = "Power"

    @classmethod
    def from_title(cls, title: Any, fallback: Any = None) -> "SubscriptionType":
        """Classify an upstream display title.

        Titles vary in casing and decoration ("KIRO PRO+", "Pro_Plus", ...), so the
        match is a case-insensitive substring test, most specific tier first.
        """

        text = (_as_str(title) or _as_str(getattr(fallback, "value", fallback)) or "").upper()
        if "PRO+" in text or "PRO_PLUS" in text or "PROPLUS" in text:
            return cls.PRO_PLUS
        if "POWER" in text:
            return cls.POWER
        if "PRO" in text:
            return cls.PRO
        return cls.FREE


class VerificationErrorKind(str, Enum):
    INVALID_CREDENTIAL = "invalid_credential"
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


_RETRYABLE_KINDS = {VerificationErrorKind.RATE_LIMITED, VerificationErrorKind.NETWORK_ERROR}


@dataclass(frozen=True)
class VerificationError:
    kind: VerificationErrorKind
    message: str
    status_code: Optional[int] = None
    retry_after_s: Optional[float] = None

    @property
    def retryable(self) -> bool:
        return self.kind in _RETRYABLE_KINDS

    def __str__(self) -> str:
        return self.message


class CamelModel(BaseModel):
    """Base for records that travel as camelCase JSON (verifier wire, export files)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Credentials(CamelModel):
    access_token: str = ""
    refresh_token: str
    client_id: str = ""
    client_secret: str = ""
    region: str = DEFAULT_REGION
    # Absolute epoch milliseconds.
    expires_at: int = 0
    auth_method: Optional[AuthMethod] = None
    provider: Optional[IdP] = None

    @staticmethod
    def expiry_from(expires_in: Optional[float], *, issued_at_ms: Optional[int] = None) -> int:
        """Turn an upstream relative lifetime (seconds) into an absolute epoch-ms instant."""

        issued = now_ms() if issued_at_ms is None else int(issued_at_ms)
        lifetime = DEFAULT_EXPIRES_IN_S if not expires_in or expires_in <= 0 else expires_in
        return issued + int(lifetime * 1000)

    def seconds_remaining(self, at_ms: Optional[int] = None) -> float:
        reference = now_ms() if at_ms is None else int(at_ms)
        return (int(self.expires_at or 0) - reference) / 1000.0

    def is_expired(self, at_ms: Optional[int] = None) -> bool:
        return self.seconds_remaining(at_ms) <= 0

    def expires_within(self, window_s: float, at_ms: Optional[int] = None) -> bool:
        if not self.expires_at:
            return False
        remaining = self.seconds_remaining(at_ms)
        return 0 < remaining <= float(window_s)


class Subscription(CamelModel):
    type: SubscriptionType = SubscriptionType.FREE
    title: Optional[str] = None
    days_remaining: Optional[int] = None
    expires_at: Optional[Timestamp] = None
    management_target: Optional[Any] = None
    upgrade_capability: Optional[Any] = None
    overage_capability: Optional[Any] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, SubscriptionType):
            return value
        return SubscriptionType.from_title(value)


class Bonus(CamelModel):
    code: str
    name: str = ""
    current: float = 0
    limit: float = 0
    expires_at: Optional[Timestamp] = None


class Usage(CamelModel):
    current: float = 0
    limit: float = 0
    last_updated: int = 0
    base_limit: Optional[float] = None
    base_current: Optional[float] = None
    free_trial_limit: Optional[float] = None
    free_trial_current: Optional[float] = None
    free_trial_expiry: Optional[Timestamp] = None
    bonuses: list[Bonus] = Field(default_factory=list)
    next_reset_date: Optional[Timestamp] = None
    resource_detail: Optional[Any] = None

    @field_validator("current", "limit", mode="before")
    @classmethod
    def _none_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("bonuses", mode="before")
    @classmethod
    def _none_is_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percent_used(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.current / self.limit


class Account(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    email: str
    user_id: Optional[str] = None
    nickname: Optional[str] = None
    idp: IdP = IdP.BUILDER_ID
    credentials: Credentials
    subscription: Subscription = Field(default_factory=Subscription)
    usage: Usage = Field(default_factory=Usage)
    group_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    status: AccountStatus = AccountStatus.UNKNOWN
    created_at: int = Field(default_factory=now_ms)
    last_used_at: Optional[int] = None
    last_checked_at: Optional[int] = None
    last_error: Optional[str] = None

    @field_validator("idp", mode="before")
    @classmethod
    def _normalize_idp(cls, value: Any) -> Any:
        return IdP.parse(value, default=IdP.BUILDER_ID)

    @classmethod
    def from_verification(
        cls,
        candidate: "CandidateCredential",
        data: "VerifiedAccountData",
        *,
        at_ms: Optional[int] = None,
    ) -> "Account":
        """Materialize a full account from a candidate and its verification snapshot."""

        issued = now_ms() if at_ms is None else int(at_ms)
        email = _as_str(data.email) or _as_str(candidate.email) or ""
        nickname = candidate.nickname or (email.split("@", 1)[0] if email else None)
        credentials = Credentials(
            access_token=data.access_token,
            refresh_token=data.refresh_token or candidate.refresh_token,
            client_id=candidate.client_id,
            client_secret=candidate.client_secret,
            region=candidate.region,
            expires_at=Credentials.expiry_from(data.expires_in, issued_at_ms=issued),
            auth_method=candidate.auth_method,
            provider=candidate.provider,
        )
        return cls(
            email=email,
            user_id=_as_str(data.user_id),
            nickname=nickname,
            idp=candidate.provider,
            credentials=credentials,
            subscription=data.to_subscription(),
            usage=data.usage.model_copy(update={"last_updated": issued}),
            status=AccountStatus.ACTIVE,
            created_at=issued,
            last_used_at=issued,
            last_checked_at=issued,
        )

    def to_verify_request(self) -> "VerifyRequest":
        creds = self.credentials
        provider = creds.provider or self.idp
        return VerifyRequest(
            refresh_token=creds.refresh_token,
            client_id=creds.client_id,
            client_secret=creds.client_secret,
            region=creds.region or DEFAULT_REGION,
            auth_method=creds.auth_method or AuthMethod.for_provider(provider),
            provider=provider,
        )


class VerifyRequest(CamelModel):
    refresh_token: str
    client_id: str = ""
    client_secret: str = ""
    region: str = DEFAULT_REGION
    auth_method: AuthMethod = AuthMethod.IDC
    provider: IdP = IdP.BUILDER_ID


class CandidateCredential(BaseModel):
    """A parsed, not-yet-verified credential record."""

    refresh_token: str
    email: Optional[str] = None
    nickname: Optional[str] = None
    client_id: str = ""
    client_secret: str = ""
    region: str = DEFAULT_REGION
    auth_method: AuthMethod = AuthMethod.IDC
    provider: IdP = IdP.BUILDER_ID
    # 1-based position in the source input, used in report messages.
    index: int = 0

    @classmethod
    def build(
        cls,
        *,
        refresh_token: str,
        index: int = 0,
        email: Any = None,
        nickname: Any = None,
        provider: Any = None,
        auth_method: Any = None,
        client_id: Any = None,
        client_secret: Any = None,
        region: Any = None,
        default_provider: IdP = IdP.BUILDER_ID,
        default_region: str = DEFAULT_REGION,
    ) -> "CandidateCredential":
        resolved_provider = IdP.parse(provider, default=default_provider) or default_provider
        resolved_method = AuthMethod.parse(auth_method) or AuthMethod.for_provider(resolved_provider)
        return cls(
            refresh_token=refresh_token,
            email=_as_str(email),
            nickname=_as_str(nickname),
            client_id=_as_str(client_id) or "",
            client_secret=_as_str(client_secret) or "",
            region=_as_str(region) or _as_str(default_region) or DEFAULT_REGION,
            auth_method=resolved_method,
            provider=resolved_provider,
            index=int(index),
        )

    @property
    def label(self) -> str:
        return f"#{self.index}" if self.index else "#?"

    def to_request(self) -> VerifyRequest:
        return VerifyRequest(
            refresh_token=self.refresh_token,
            client_id=self.client_id,
            client_secret=self.client_secret,
            region=self.region,
            auth_method=self.auth_method,
            provider=self.provider,
        )


class SubscriptionCapabilities(CamelModel):
    management_target: Optional[Any] = None
    upgrade_capability: Optional[Any] = None
    overage_capability: Optional[Any] = None


class VerifiedAccountData(CamelModel):
    email: str = ""
    user_id: Optional[str] = None
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[float] = None
    subscription_type: Optional[str] = None
    subscription_title: Optional[str] = None
    days_remaining: Optional[int] = None
    expires_at: Optional[Timestamp] = None
    subscription: SubscriptionCapabilities = Field(default_factory=SubscriptionCapabilities)
    usage: Usage = Field(default_factory=Usage)

    @field_validator("subscription", "usage", mode="before")
    @classmethod
    def _none_is_default(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("user_id", mode="before")
    @classmethod
    def _user_id_as_str(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    def to_subscription(self) -> Subscription:
        return Subscription(
            type=SubscriptionType.from_title(self.subscription_title, self.subscription_type),
            title=self.subscription_title,
            days_remaining=self.days_remaining,
            expires_at=self.expires_at,
            management_target=self.subscription.management_target,
            upgrade_capability=self.subscription.upgrade_capability,
            overage_capability=self.subscription.overage_capability,
        )


class RefreshedToken(CamelModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[float] = None


@dataclass(frozen=True)
class VerifyResult:
    data: Optional[VerifiedAccountData] = None
    error: Optional[VerificationError] = None

    @property
    def ok(self) -> bool:
        return self.data is not None and self.error is None


@dataclass(frozen=True)
class RefreshResult:
    data: Optional[RefreshedToken] = None
    error: Optional[VerificationError] = None

    @property
    def ok(self) -> bool:
        return self.data is not None and self.error is None


class ImportReport(BaseModel):
    total: int = 0
    success: int = 0
    failed: int = 0
    # Already-present accounts; counted apart from success and failure.
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)

    def add_success(self) -> None:
        self.success += 1

    def add_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)

    def add_skipped(self, message: Optional[str] = None) -> None:
        self.skipped += 1
        if message:
            self.errors.append(message)

    def add_note(self, message: str) -> None:
        self.errors.append(message)

    def merge(self, other: "ImportReport") -> "ImportReport":
        self.total += other.total
        self.success += other.success
        self.failed += other.failed
        self.skipped += other.skipped
        self.errors.extend(other.errors)
        return self

    def summary(self, *, max_errors: int = 10) -> str:
        head = f"Imported {self.success} of {self.total} (failed={self.failed}, skipped={self.skipped})"
        if not self.errors:
            return head
        lines = [head] + list(self.errors[:max_errors])
        if len(self.errors) > max_errors:
            lines.append(f"... and {len(self.errors) - max_errors} more")
        return "\n".join(lines)


class BatchOpReport(BaseModel):
    total: int = 0
    success: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)


class AccountStats(BaseModel):
    total: int = 0
    active_count: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    expiring_soon_count: int = 0


class AccountFilter(BaseModel):
    """Read-only view predicate over the account collection."""

    search: Optional[str] = None
    statuses: set[AccountStatus] = Field(default_factory=set)
    tags: set[str] = Field(default_factory=set)
    idps: set[IdP] = Field(default_factory=set)
    subscription_types: set[SubscriptionType] = Field(default_factory=set)

    @field_validator("search", mode="before")
    @classmethod
    def _normalize_search(cls, value: Any) -> Any:
        return _as_str(value)

    def matches(self, account: Account) -> bool:
        if self.search:
            needle = self.search.casefold()
            haystack = (account.email, account.nickname, account.user_id, *account.tags)
            if not any(needle in str(item).casefold() for item in haystack if item):
                return False
        if self.statuses and account.status not in self.statuses:
            return False
        if self.tags and not self.tags.intersection(account.tags):
            return False
        if self.idps and account.idp not in self.idps:
            return False
        if self.subscription_types and account.subscription.type not in self.subscription_types:
            return False
        return True

    def __call__(self, account: Account) -> bool:
        return self.matches(account)


AccountPredicate = Callable[[Account], bool]


class ExportBundle(CamelModel):
    version: str = EXPORT_VERSION
    exported_at: int = Field(default_factory=now_ms)
    accounts: list[Account] = Field(default_factory=list)

    @classmethod
    def of(cls, accounts: Iterable[Account]) -> "ExportBundle":
        return cls(accounts=list(accounts))
