from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_PARAMS = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "gclid",
        "fbclid",
        "msclkid",
        "ref",
        "referrer",
        "source",
        "_ga",
        "_gl",
        "mc_cid",
        "mc_eid",
        "WT.mc_id",
        "campaign",
        "medium",
        "content",
        "term",
    }
)


def _is_tracking_param(name: str) -> bool:
    return name in TRACKING_PARAMS or name.lower().startswith("utm_")


def canonicalize_url(url: str) -> str | None:
    """Normalize a URL so equivalent links compare equal.

    Returns None for anything that is not an absolute http(s) URL.
    """
    try:
        parsed = urlsplit(url.strip())
    except ValueError:
        return None

    scheme = parsed.scheme.lower()
    if scheme not in ("http", "https"):
        return None

    netloc = parsed.netloc.lower()
    while netloc.startswith("www."):
        netloc = netloc[4:]
    if not netloc:
        return None

    path = parsed.path or "/"
    params = [
        (name, value)
        for name, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not _is_tracking_param(name)
    ]
    query = urlencode(sorted(params))
    return urlunsplit((scheme, netloc, path, query, ""))


def clean_content(text: str, max_length: int = 500) -> str:
    """Collapse whitespace and trim to max length."""
    if not text:
        return ""
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text


def extract_domain(url: str) -> str:
    """Extract the host from a URL, without a leading www."""
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host
