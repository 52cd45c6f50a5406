from __future__ import annotations

import hashlib
from typing import Any, Optional
from urllib.parse import quote, urljoin


def _as_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _ensure_scheme(url: str, *, default_scheme: str = "http") -> str:
    if "://" in url:
        return url
    return f"{default_scheme}://{url}"


def token_fingerprint(token: Any, *, chars: int = 10) -> str:
    """Short, stable, non-reversible token label for logs."""

    text = _as_str(token)
    if not text:
        return "-"
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[: max(4, int(chars))]


def join_url(base_url: str, path: str) -> str:
    if not path:
        return base_url
    if "://" in path:
        return path
    return urljoin(base_url.rstrip("/") + "/", path.lstrip("/"))


def normalize_http_proxies(proxy: Any) -> Optional[dict[str, str]]:
    """Normalize a "proxy" value into a curl_cffi style proxies dict.

    Accepted forms:
    - None -> None
    - str -> used for both http/https (scheme inferred as http if missing)
    - dict with keys "http"/"https" -> used directly (missing scheme inferred as http)
    - dict with keys host/port[/scheme][/username/password] -> converted to URL and used for both
    """

    if proxy is None:
        return None

    if isinstance(proxy, str):
        raw = _as_str(proxy)
        if not raw:
            return None
        url = _ensure_scheme(raw)
        return {"http": url, "https": url}

    if not isinstance(proxy, dict):
        return None

    http_url = _as_str(proxy.get("http"))
    https_url = _as_str(proxy.get("https"))
    if http_url or https_url:
        http_value = _ensure_scheme(http_url or https_url or "")
        https_value = _ensure_scheme(https_url or http_url or "")
        return {"http": http_value, "https": https_value}

    host = _as_str(proxy.get("host"))
    port = _as_str(proxy.get("port"))
    if not host or not port:
        return None

    scheme = (_as_str(proxy.get("scheme")) or "http").split("://", 1)[0] or "http"
    username = _as_str(proxy.get("username") or proxy.get("user"))
    password = _as_str(proxy.get("password") or proxy.get("pass"))
    if username and password:
        netloc = f"{quote(username, safe='')}:{quote(password, safe='')}@{host}:{port}"
    else:
        netloc = f"{host}:{port}"

    url = f"{scheme}://{netloc}"
    return {"http": url, "https": url}


def parse_retry_after(headers: Optional[dict]) -> Optional[float]:
    if not headers:
        return None
    lowered = {str(key).lower(): value for key, value in headers.items()}
    value = lowered.get("retry-after")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None
