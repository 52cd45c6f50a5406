from __future__ import annotations

import csv
import io
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import ValidationError

from .exceptions import EmptyInputError, UnrecognizedFormatError
from .models import DEFAULT_REGION, Account, CandidateCredential, IdP

logger = logging.getLogger(__name__)

FORMAT_JSON = "json"
FORMAT_CSV = "csv"
FORMAT_TXT = "txt"
FORMAT_OIDC = "oidc"
SUPPORTED_FORMATS = (FORMAT_JSON, FORMAT_CSV, FORMAT_TXT, FORMAT_OIDC)

# Column order of the tabular export: email, nickname, idp, refreshToken, clientId, clientSecret, region.
_CSV_COLUMNS = ("email", "nickname", "idp", "refresh_token", "client_id", "client_secret", "region")
# Field order of the line format: email, refreshToken, nickname, idp.
_TXT_FIELDS = ("email", "refresh_token", "nickname", "idp")

# File-import rows without an explicit IdP are social Google logins.
_FILE_DEFAULT_IDP = IdP.GOOGLE


@dataclass
class ParseResult:
    """Normalized output of one import input.

    `candidates` still need verification; `accounts` come from a full export and are
    already verified; `rejected` holds per-record messages for records that were
    recognised but unusable (OIDC items without a refresh token, invalid export entries).
    """

    fmt: str
    candidates: list[CandidateCredential] = field(default_factory=list)
    accounts: list[Account] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.candidates) + len(self.accounts) + len(self.rejected)


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _first(record: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in record and record[key] not in (None, ""):
            return record[key]
    return None


def normalize_format(fmt: Any) -> str:
    text = (_as_str(getattr(fmt, "value", fmt)) or "").lower().lstrip(".")
    if text not in SUPPORTED_FORMATS:
        raise UnrecognizedFormatError(f"Unsupported import format: {fmt!r}", fmt=text or None)
    return text


def infer_format(path: Union[str, Path]) -> str:
    return normalize_format(Path(path).suffix)


def split_csv_line(line: str) -> list[str]:
    """Split one CSV line on commas outside double quotes; `""` inside quotes is a literal quote."""

    rows = list(csv.reader([line], skipinitialspace=True))
    if not rows:
        return []
    return [cell.strip() for cell in rows[0]]


def _non_blank_lines(text: str) -> list[str]:
    return [line for line in str(text or "").splitlines() if line.strip()]


def parse_csv(text: str, *, default_region: str = DEFAULT_REGION) -> list[CandidateCredential]:
    rows = _non_blank_lines(text)
    if len(rows) < 2:
        raise EmptyInputError("CSV input is empty or has only a header row", fmt=FORMAT_CSV)

    candidates: list[CandidateCredential] = []
    # First row is always the header.
    for line_no, line in enumerate(rows[1:], start=2):
        try:
            cells = split_csv_line(line)
        except csv.Error as exc:
            logger.debug("CSV row dropped line=%s detail=%s", line_no, str(exc))
            continue
        cells.extend([""] * (len(_CSV_COLUMNS) - len(cells)))
        record = dict(zip(_CSV_COLUMNS, cells))
        email = _as_str(record.get("email"))
        refresh_token = _as_str(record.get("refresh_token"))
        if not email or not refresh_token:
            continue
        candidates.append(
            CandidateCredential.build(
                refresh_token=refresh_token,
                index=len(candidates) + 1,
                email=email,
                nickname=record.get("nickname"),
                provider=record.get("idp"),
                client_id=record.get("client_id"),
                client_secret=record.get("client_secret"),
                region=record.get("region"),
                default_provider=_FILE_DEFAULT_IDP,
                default_region=default_region,
            )
        )

    if not candidates:
        raise EmptyInputError("No usable CSV rows (email and refreshToken are required)", fmt=FORMAT_CSV)
    return candidates


def parse_txt(text: str, *, default_region: str = DEFAULT_REGION) -> list[CandidateCredential]:
    candidates: list[CandidateCredential] = []
    for raw_line in str(text or "").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        delimiter = "|" if "|" in line else ","
        parts = [part.strip() for part in line.split(delimiter)]
        parts.extend([""] * (len(_TXT_FIELDS) - len(parts)))
        record = dict(zip(_TXT_FIELDS, parts))
        email = _as_str(record.get("email"))
        refresh_token = _as_str(record.get("refresh_token"))
        if not email or not refresh_token:
            continue
        candidates.append(
            CandidateCredential.build(
                refresh_token=refresh_token,
                index=len(candidates) + 1,
                email=email,
                nickname=record.get("nickname"),
                provider=record.get("idp"),
                default_provider=_FILE_DEFAULT_IDP,
                default_region=default_region,
            )
        )

    if not candidates:
        raise EmptyInputError("No usable lines (expected email,refreshToken or email|refreshToken)", fmt=FORMAT_TXT)
    return candidates


def _decode(raw: bytes, fmt: str) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise UnrecognizedFormatError(f"Input is not valid UTF-8 text (byte {exc.start})", fmt=fmt) from exc


def _load_json(text: str, fmt: str) -> Any:
    stripped = str(text or "").strip()
    if not stripped:
        raise EmptyInputError("JSON input is empty", fmt=fmt)
    try:
        return json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise UnrecognizedFormatError(f"Invalid JSON: {exc.msg} (line {exc.lineno})", fmt=fmt) from exc


def parse_export_json(text: str) -> ParseResult:
    """Parse the full-export shape `{version, accounts: [...]}` into ready accounts."""

    payload = _load_json(text, FORMAT_JSON)
    if not isinstance(payload, dict) or not payload.get("version") or "accounts" not in payload:
        raise UnrecognizedFormatError("JSON is not a full export (needs `version` and `accounts`)", fmt=FORMAT_JSON)
    raw_accounts = payload.get("accounts")
    if not isinstance(raw_accounts, list):
        raise UnrecognizedFormatError("Export `accounts` must be a list", fmt=FORMAT_JSON)
    if not raw_accounts:
        raise EmptyInputError("Export holds no accounts", fmt=FORMAT_JSON)

    result = ParseResult(fmt=FORMAT_JSON)
    for position, item in enumerate(raw_accounts, start=1):
        if not isinstance(item, dict):
            result.rejected.append(f"#{position}: not an account object")
            continue
        try:
            account = Account.model_validate(item)
        except ValidationError as exc:
            result.rejected.append(f"#{position}: invalid account ({exc.error_count()} field errors)")
            continue
        if not _as_str(account.email):
            result.rejected.append(f"#{position}: missing email")
            continue
        result.accounts.append(account)
    return result


def parse_oidc(payload: Any, *, default_region: str = DEFAULT_REGION) -> ParseResult:
    """Parse an OIDC credential batch: a JSON array or a single object.

    Items need `refreshToken`; `provider` defaults to BuilderId and `authMethod`
    defaults to IdC for BuilderId, social otherwise.
    """

    if isinstance(payload, bytes):
        payload = _decode(payload, FORMAT_OIDC)
    if isinstance(payload, str):
        payload = _load_json(payload, FORMAT_OIDC)
    if isinstance(payload, dict):
        items: list[Any] = [payload]
    elif isinstance(payload, list):
        items = payload
    else:
        raise UnrecognizedFormatError("OIDC input must be a JSON object or array", fmt=FORMAT_OIDC)
    if not items:
        raise EmptyInputError("OIDC input holds no credentials", fmt=FORMAT_OIDC)

    result = ParseResult(fmt=FORMAT_OIDC)
    for position, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            result.rejected.append(f"#{position}: not a credential object")
            continue
        refresh_token = _as_str(_first(item, "refreshToken", "refresh_token"))
        if not refresh_token:
            result.rejected.append(f"#{position}: missing refreshToken")
            continue
        result.candidates.append(
            CandidateCredential.build(
                refresh_token=refresh_token,
                index=position,
                email=_first(item, "email"),
                nickname=_first(item, "nickname"),
                provider=_first(item, "provider"),
                auth_method=_first(item, "authMethod", "auth_method"),
                client_id=_first(item, "clientId", "client_id"),
                client_secret=_first(item, "clientSecret", "client_secret"),
                region=_first(item, "region"),
                default_provider=IdP.BUILDER_ID,
                default_region=default_region,
            )
        )
    return result


def parse(fmt: Any, text: str, *, default_region: str = DEFAULT_REGION) -> ParseResult:
    """Parse raw import text in the declared format.

    Malformed individual records are dropped; `EmptyInputError` or
    `UnrecognizedFormatError` is raised only when the whole input is unusable.
    """

    resolved = normalize_format(fmt)
    if resolved == FORMAT_JSON:
        result = parse_export_json(text)
    elif resolved == FORMAT_OIDC:
        result = parse_oidc(text, default_region=default_region)
    elif resolved == FORMAT_CSV:
        result = ParseResult(fmt=resolved, candidates=parse_csv(text, default_region=default_region))
    else:
        result = ParseResult(fmt=resolved, candidates=parse_txt(text, default_region=default_region))

    logger.info(
        "Import input parsed format=%s candidates=%s accounts=%s rejected=%s",
        resolved,
        len(result.candidates),
        len(result.accounts),
        len(result.rejected),
    )
    return result


def parse_file(path: Union[str, Path], fmt: Any = None, *, default_region: str = DEFAULT_REGION) -> ParseResult:
    file_path = Path(path)
    resolved = normalize_format(fmt) if fmt is not None else infer_format(file_path)
    text = _decode(file_path.read_bytes(), resolved)
    return parse(resolved, text, default_region=default_region)
