"""Default session key derivation from the hosting page URL."""
from __future__ import annotations

from urllib.parse import parse_qsl, unquote, urlsplit


def resolve_session_key(page_url: str, param: str = "cowebkey") -> str:
    """
    Key used when the application does not name one.

    An explicit ``?<param>=...`` in the page URL wins; otherwise the decoded
    host, path and query of the page (fragment excluded) are used so clients
    on the same page land in the same session.
    """
    parts = urlsplit(page_url)
    for name, value in parse_qsl(parts.query, keep_blank_values=True):
        if name == param:
            return value
    search = f"?{parts.query}" if parts.query else ""
    return unquote(f"{parts.netloc}{parts.path}{search}")


__all__ = ["resolve_session_key"]
