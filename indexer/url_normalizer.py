"""URL canonicalization used as the identity key for sources."""

from urllib.parse import urlsplit, urlunsplit

TRACKING_PARAMS = frozenset({"utm_source", "utm_medium", "utm_campaign"})


def _strip_tracking(query: str) -> str:
    # Works on the raw query so the remaining pairs keep their encoding and order.
    kept = [
        pair for pair in query.split("&")
        if pair and pair.split("=", 1)[0] not in TRACKING_PARAMS
    ]
    return "&".join(kept)


def normalize_url(url: str) -> str:
    """Canonicalize a URL for comparison.

    Lowercases the host, strips trailing slashes from the path (the root
    path stays ``/``) and drops the ``utm_source``, ``utm_medium`` and
    ``utm_campaign`` query parameters. Scheme, path, remaining query and
    fragment are preserved. Input that is not an absolute URL is only
    lowercased and stripped of trailing slashes.
    """
    url = url.strip()
    try:
        parts = urlsplit(url)
    except ValueError:
        parts = None

    if parts is None or not parts.scheme or not parts.netloc:
        return url.lower().rstrip("/")

    userinfo, at, host = parts.netloc.rpartition("@")
    netloc = f"{userinfo}{at}{host.lower()}"
    path = parts.path.rstrip("/") or "/"
    return urlunsplit((parts.scheme, netloc, path, _strip_tracking(parts.query), parts.fragment))


def same_source(a: str, b: str) -> bool:
    """Two URLs name the same source iff their normalized forms are equal."""
    return normalize_url(a) == normalize_url(b)
