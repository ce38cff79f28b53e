# flowcore/core/utils/url.py
"""URL helpers for safe logging."""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit


def mask_database_url(url: str) -> str:
    """Replace the password of a database URL with ``***``.

    URLs ``urlsplit`` cannot handle fall back to masking everything between
    the last ``:`` before ``@`` and the ``@`` itself.
    """
    try:
        parts = urlsplit(url)
        password = parts.password
    except ValueError:
        if '@' not in url:
            return url
        credentials, host = url.split('@', 1)
        return f"{credentials.rsplit(':', 1)[0]}:***@{host}"

    if not password:
        return url
    netloc = parts.netloc.replace(f':{password}@', ':***@', 1)
    return urlunsplit(parts._replace(netloc=netloc))
