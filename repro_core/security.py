"""Helpers that keep secrets and control characters out of logs and wire output."""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

_SENSITIVE_QUERY_KEYS = ("password", "token", "authorization", "bearer", "signature")


def redact_token(value: str) -> str:
    if not value:
        return value
    if len(value) <= 6:
        return "***"
    return f"{value[:3]}***{value[-2:]}"


def redact_url(url: str) -> str:
    """Hide userinfo passwords and credential-looking query values."""

    if "://" not in url:
        return url
    parsed = urlsplit(url)
    netloc = parsed.netloc
    if parsed.password:
        netloc = netloc.replace(f":{parsed.password}@", ":***@")
    query = parsed.query
    if query:
        parts = []
        for pair in query.split("&"):
            key, sep, value = pair.partition("=")
            if sep and any(marker in key.lower() for marker in _SENSITIVE_QUERY_KEYS):
                parts.append(f"{key}={redact_token(value)}")
            else:
                parts.append(pair)
        query = "&".join(parts)
    return urlunsplit((parsed.scheme, netloc, parsed.path, query, parsed.fragment))


def single_line(value: str) -> str:
    """Truncate at the first newline so a value can never inject protocol lines."""

    return value.replace("\r", "").split("\n", 1)[0]
