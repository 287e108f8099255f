"""Shared utility functions used across PartnerDesk modules."""
from __future__ import annotations

import json
import math
import re
from typing import Any
from urllib.parse import urlsplit

_MISSING = object()

UNKNOWN = "unknown"

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def extract_json_object(text: str | None) -> dict[str, Any] | None:
    """Return the first ``{...}`` object embedded in free text, or None.

    Model answers often wrap the JSON in prose or markdown fences; anything
    that does not parse to a dict is treated as absent.
    """
    if not text:
        return None
    m = _JSON_OBJECT_RE.search(text)
    if not m:
        return None
    try:
        parsed = json.loads(m.group(0))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def normalize_url(url: str | None) -> str:
    """Strip and prefix ``https://`` when no scheme is given. Empty in, empty out."""
    url = (url or "").strip()
    if url and not url.startswith(("http://", "https://")):
        url = "https://" + url
    return url


def hostname(url: str | None) -> str:
    """Lower-cased host of *url* without a leading ``www.``; empty on failure."""
    try:
        host = urlsplit(normalize_url(url)).hostname or ""
    except ValueError:
        return ""
    return host.lower().removeprefix("www.")


def company_name_from_url(url: str | None) -> str:
    """Best-effort company name from a website address.

    ``https://www.azure-marine.co.uk`` -> ``Azure Marine``. Returns
    :data:`UNKNOWN` when nothing usable can be extracted.
    """
    host = hostname(url)
    if not host:
        return UNKNOWN
    label = host.split(".")[0]
    words = [w for w in re.split(r"[-_]+", label) if w and not w.isdigit()]
    if not words:
        return UNKNOWN
    return " ".join(w.capitalize() for w in words)


def round_half_up(value: float) -> int:
    """Round .5 away from zero for non-negative values (``round`` is banker's)."""
    return int(math.floor(value + 0.5))

