"""Address bar input: URL passthrough or search-engine query."""

from __future__ import annotations

import re
from urllib.parse import quote, urlsplit

_SCHEME = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:")
_SPECIAL_SCHEMES = frozenset({"http", "https", "ws", "wss", "ftp", "file"})

# Characters encodeURIComponent leaves alone.
_URI_COMPONENT_SAFE = "-_.!~*'()"


def is_url(text: str) -> bool:
    """Whether ``text`` parses as an absolute URL.

    Any scheme is accepted; web schemes additionally need a host.
    """
    text = text.strip()
    if not _SCHEME.match(text):
        return False
    try:
        parts = urlsplit(text)
    except ValueError:
        return False
    if any(c.isspace() for c in parts.netloc):
        return False
    scheme = parts.scheme.lower()
    if scheme in _SPECIAL_SCHEMES and scheme != "file":
        return bool(parts.hostname)
    return True


def search(query: str, template: str) -> str:
    """Turn address bar input into a URL.

    Valid URLs are returned unchanged; anything else fills the ``%s``
    placeholder of the search engine template.
    """
    if not query:
        return ""
    if is_url(query):
        return query
    return template.replace("%s", quote(query, safe=_URI_COMPONENT_SAFE))
