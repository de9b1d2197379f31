"""Just-paid checkout marker handling."""

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_TRUTHY = {"1", "true", "yes"}


def consume_checkout_marker(url: str, param: str = "paddle_success") -> tuple[bool, str]:
    """Detect the one-shot success marker and strip it from ``url``.

    Returns ``(marker_present, url_without_marker)``. Other query parameters
    are preserved in order, so reloading the stripped URL cannot re-trigger
    the post-checkout refresh burst.
    """
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    present = any(key == param and value.lower() in _TRUTHY for key, value in query)
    remaining = [(key, value) for key, value in query if key != param]
    if len(remaining) == len(query):
        return False, url
    return present, urlunsplit(parts._replace(query=urlencode(remaining)))
