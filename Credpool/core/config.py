from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigError

logger = logging.getLogger(__name__)

ENV_FILE_VAR = "CREDPOOL_ENV_FILE"
_ENV_KEYS = {
    "CREDPOOL_VERIFIER_URL": ("verifier", "base_url", str),
    "CREDPOOL_VERIFIER_PROXY": ("verifier", "proxy", str),
    "CREDPOOL_BATCH_CONCURRENCY": ("importer", "batch_import_concurrency", int),
    "CREDPOOL_BATCH_DELAY_S": ("importer", "batch_delay_s", float),
    "CREDPOOL_DB_PATH": ("storage", "db_path", str),
}


class ImporterConfig(BaseModel):
    # Chunk size of a batch import: at most this many verifications in flight.
    batch_import_concurrency: int = Field(default=3, ge=1)
    # Pause between chunks to stay under the remote rate limit.
    batch_delay_s: float = Field(default=0.1, ge=0.0)
    default_region: str = "us-east-1"


class VerifierConfig(BaseModel):
    base_url: str = "http://127.0.0.1:8899"
    verify_path: str = "/api/account/verify"
    refresh_path: str = "/api/account/refresh"
    timeout_s: float = Field(default=30.0, gt=0)
    # curl_cffi browser fingerprint used for the session.
    impersonate: Optional[str] = "chrome120"
    proxy: Optional[Union[dict[str, Any], str]] = None
    requests_per_min: Optional[int] = Field(default=None, ge=1)
    min_delay_s: float = Field(default=0.0, ge=0.0)
    max_attempts: int = Field(default=1, ge=1)
    retry_base_s: float = Field(default=1.0, ge=0.0)
    retry_max_s: float = Field(default=30.0, ge=0.0)

    @field_validator("base_url", mode="before")
    @classmethod
    def _normalize_base_url(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip().rstrip("/")
            if not text:
                raise ValueError("base_url must not be empty")
            return text
        return value

    @field_validator("impersonate", mode="before")
    @classmethod
    def _normalize_impersonate(cls, value: Any) -> Any:
        if value is None:
            return None
        text = str(value).strip()
        return text if text else None

    @field_validator("proxy", mode="before")
    @classmethod
    def _normalize_proxy(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                return None
            # Allow passing JSON-encoded proxy dicts as strings.
            if stripped.startswith("{"):
                try:
                    return json.loads(stripped)
                except json.JSONDecodeError:
                    return stripped
            return stripped
        return value

    @field_validator("proxy", mode="after")
    @classmethod
    def _validate_proxy(cls, value: Any) -> Any:
        if value is None:
            return None
        from .http_utils import normalize_http_proxies

        if normalize_http_proxies(value) is None:
            raise ValueError(
                "Invalid proxy format. Expected a URL string ('http://host:port' or 'host:port'), "
                "a dict with {'http': '...', 'https': '...'}, "
                "or a dict with {'host': '...', 'port': 8080, optional 'scheme', 'username', 'password'}."
            )
        return value


class StoreConfig(BaseModel):
    # Credentials expiring within this window count as "expiring soon".
    expiring_soon_window_s: float = Field(default=3600.0, ge=0.0)
    # Chunk size for batch refresh/check.
    check_concurrency: int = Field(default=3, ge=1)


class StorageConfig(BaseModel):
    db_path: Optional[str] = None


class CredpoolConfig(BaseModel):
    importer: ImporterConfig = Field(default_factory=ImporterConfig)
    verifier: VerifierConfig = Field(default_factory=VerifierConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

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
        use_env: bool = True,
        overrides: Any = None,
    ) -> "CredpoolConfig":
        """Build a config from env values, a few common knobs and nested overrides.

        Precedence (lowest to highest): defaults, dotenv file / process env,
        explicit keyword arguments, `overrides`. For example:

            cfg = CredpoolConfig.from_sources(
                verifier_url="https://verify.example.com",
                batch_import_concurrency=5,
                overrides={"verifier": {"max_attempts": 3}},
            )
        """

        merged = cls().model_dump()
        if use_env:
            merged = _deep_merge(merged, _env_patch(env_path))

        patch: dict[str, Any] = {"importer": {}, "verifier": {}, "storage": {}}
        if verifier_url is not None:
            patch["verifier"]["base_url"] = verifier_url
        if proxy is not None:
            patch["verifier"]["proxy"] = proxy
        if batch_import_concurrency is not None:
            patch["importer"]["batch_import_concurrency"] = batch_import_concurrency
        if batch_delay_s is not None:
            patch["importer"]["batch_delay_s"] = batch_delay_s
        if db_path is not None:
            patch["storage"]["db_path"] = db_path
        merged = _deep_merge(merged, patch)

        if overrides is not None:
            if isinstance(overrides, cls):
                overrides_data = overrides.model_dump()
            elif isinstance(overrides, dict):
                overrides_data = dict(overrides)
            else:
                raise ConfigError("overrides must be a dict, CredpoolConfig, or None")
            merged = _deep_merge(merged, overrides_data)

        try:
            return cls.model_validate(merged)
        except ValidationError as exc:
            raise ConfigError(str(exc)) from exc


def _deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    out = dict(base or {})
    for key, value in (patch or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _deep_merge(out[key], value)
        else:
            out[key] = value
    return out


def load_env_values(env_path: Optional[str] = None) -> dict[str, str]:
    """Read CREDPOOL_* values from a dotenv file (no os.environ side effects) and the process env."""

    from dotenv import dotenv_values

    values: dict[str, str] = {}
    path = env_path or os.getenv(ENV_FILE_VAR)
    if path:
        file_path = Path(path).expanduser()
        if file_path.exists():
            raw = dotenv_values(str(file_path))
            values.update({str(key): str(value) for key, value in raw.items() if key and value is not None})
        else:
            logger.warning("Env file not found path=%s", str(file_path))

    for key in _ENV_KEYS:
        env_value = os.getenv(key)
        if env_value is not None and env_value.strip():
            values[key] = env_value
    return values


def _env_patch(env_path: Optional[str]) -> dict[str, Any]:
    patch: dict[str, Any] = {}
    for key, raw in load_env_values(env_path).items():
        target = _ENV_KEYS.get(key)
        if target is None:
            continue
        section, field, cast = target
        try:
            value = cast(raw.strip())
        except ValueError as exc:
            raise ConfigError(f"{key} has an invalid value: {raw!r}") from exc
        patch.setdefault(section, {})[field] = value
    return patch


def parse_config_input(config_input: Any) -> CredpoolConfig:
    if config_input is None:
        return CredpoolConfig.from_sources()
    if isinstance(config_input, CredpoolConfig):
        return config_input.model_copy(deep=True)
    if isinstance(config_input, dict):
        try:
            return CredpoolConfig.model_validate(config_input)
        except ValidationError as exc:
            raise ConfigError(str(exc)) from exc
    raise ConfigError("config must be CredpoolConfig, dict, or None")
