"""
URL normalization and link classification.
"""

from enum import Enum
from typing import Optional, Tuple
from urllib.parse import urljoin, urlparse, urlunparse, urldefrag

import tldextract

# Offline extractor: uses the bundled public suffix snapshot, no HTTP fetch and no disk cache
_extract = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)

FUNCTIONAL_SCHEMES = ('mailto', 'tel')


class LinkKind(Enum):
    """Classification of an anchor's href relative to the audited site."""
    INTERNAL = "internal"
    FUNCTIONAL = "functional"
    EXTERNAL = "external"
    NON_FETCHABLE = "non_fetchable"


def registrable_domain(url_or_host: str) -> str:
    """
    Return the registrable domain (eTLD+1) of a URL or host name.

    Hosts without a public suffix (``localhost``, IP addresses) are returned as-is.
    """
    host = url_or_host
    if '://' in url_or_host:
        host = urlparse(url_or_host).hostname or ''
    host = host.lower().rstrip('.')
    if not host:
        return ''

    ext = _extract(host)
    if ext.domain and ext.suffix:
        return f"{ext.domain}.{ext.suffix}"
    return ext.domain or host


def normalize_url(url: str, base: Optional[str] = None) -> Optional[str]:
    """
    Normalize an http(s) URL for deduplication and comparison.

    - Joins relative URLs against base
    - Drops fragments
    - Lowercases scheme and host, removes default ports
    - Removes a trailing slash (except for the root path)
    - Keeps the query string as written
    """
    if not url:
        return None

    try:
        joined, _ = urldefrag(urljoin(base, url) if base else url)
        parsed = urlparse(joined)
        port = parsed.port
    except ValueError:
        return None

    scheme = parsed.scheme.lower()
    if scheme not in ('http', 'https'):
        return None

    hostname = (parsed.hostname or '').lower()
    if not hostname:
        return None

    if (scheme == 'http' and port == 80) or (scheme == 'https' and port == 443) or not port:
        netloc = hostname
    else:
        netloc = f"{hostname}:{port}"

    path = parsed.path or '/'
    if path != '/' and path.endswith('/'):
        path = path.rstrip('/') or '/'

    return urlunparse((scheme, netloc, path, parsed.params, parsed.query, ''))


def classify_link(href: str, page_url: str, site_domain: str) -> Tuple[LinkKind, Optional[str]]:
    """
    Resolve an anchor href against its page and classify it.

    Returns the kind together with the resolved target: the normalized URL for
    internal and external links, the raw ``mailto:``/``tel:`` target for
    functional links, and None for non-fetchable hrefs.
    """
    href = (href or '').strip()
    if not href or href.startswith('#'):
        return LinkKind.NON_FETCHABLE, None

    try:
        scheme = urlparse(href).scheme.lower()
    except ValueError:
        return LinkKind.NON_FETCHABLE, None

    if scheme in FUNCTIONAL_SCHEMES:
        return LinkKind.FUNCTIONAL, href
    if scheme and scheme not in ('http', 'https'):
        # javascript:, data:, ftp:, sms: and friends
        return LinkKind.NON_FETCHABLE, None

    resolved = normalize_url(href, base=page_url)
    if resolved is None:
        return LinkKind.NON_FETCHABLE, None

    if registrable_domain(resolved) == site_domain:
        return LinkKind.INTERNAL, resolved
    return LinkKind.EXTERNAL, resolved


def functional_scheme(target: str) -> str:
    """Return 'mailto' or 'tel' for a functional link target."""
    return urlparse(target).scheme.lower()
