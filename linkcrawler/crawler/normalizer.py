"""
URL normalization for discovered links and crawl request root URLs.
"""

import logging
from typing import Iterable, List, Optional
from urllib.parse import urljoin, urlsplit

ALLOWED_SCHEMES = ('http', 'https')

logger = logging.getLogger(__name__)


class InvalidURLError(ValueError):
    """A URL that cannot be used as a crawl root."""
    pass


def normalize_link(href: str, base_url: str) -> Optional[str]:
    """
    Resolve ``href`` against ``base_url`` and strip its fragment.

    Returns None for links that cannot be parsed, have no host, or use a
    scheme other than http/https (mailto:, javascript:, ftp:, ...).
    """
    try:
        parts = urlsplit(urljoin(base_url, href.strip()))
        # Accessing the port validates it
        parts.port
    except ValueError as e:
        logger.debug(f"Unable to parse link {href!r} on {base_url}: {e}")
        return None

    if parts.scheme not in ALLOWED_SCHEMES or not parts.netloc:
        return None

    return parts._replace(fragment='').geturl()


def normalize_links(hrefs: Iterable[str], base_url: str) -> List[str]:
    """Normalize raw hrefs in document order, dropping unusable ones. Duplicates are kept."""
    links = []
    for href in hrefs:
        link = normalize_link(href, base_url)
        if link is not None:
            links.append(link)
    return links


def normalize_root_url(url: str) -> str:
    """
    Clean the root URL of a crawl request.

    The scheme defaults to http when missing and the fragment is removed.
    """
    if url is not None and not isinstance(url, str):
        raise InvalidURLError(f"url must be a string, not {type(url).__name__}")

    candidate = (url or '').strip()
    if not candidate:
        raise InvalidURLError("A url is required")

    if candidate.startswith('//'):
        candidate = 'http:' + candidate
    elif '://' not in candidate:
        candidate = 'http://' + candidate

    try:
        parts = urlsplit(candidate)
        parts.port
    except ValueError as e:
        raise InvalidURLError(f"Unable to parse url {url}: {e}") from e

    if parts.scheme not in ALLOWED_SCHEMES:
        raise InvalidURLError(f"Unsupported scheme {parts.scheme!r} in url {url}")
    if not parts.hostname:
        raise InvalidURLError(f"No host in url {url}")

    return parts._replace(fragment='').geturl()


def hostname_of(url: str) -> Optional[str]:
    """Lower-cased host name of ``url`` or None if it cannot be parsed."""
    try:
        return urlsplit(url).hostname
    except ValueError:
        return None
