"""
Pluggable page analyzers.

An analyzer is any callable ``(soup, context) -> serializable`` registered
under a name. Analyzers must not modify the document: link extraction runs
over the same tree afterwards.
"""

import re
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Comment, NavigableString

Analyzer = Callable[[BeautifulSoup, 'PageContext'], Any]

_whitespace_pattern = re.compile(r'\s+')


@dataclass(frozen=True)
class PageContext:
    """What an analyzer may know about the page besides its DOM."""
    url: str
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    site_domain: str = ""
    truncated: bool = False


def _clean_text(text: Optional[str]) -> str:
    if not text:
        return ""
    return _whitespace_pattern.sub(' ', text.strip())


def _meta_content(soup: BeautifulSoup, *selectors: Dict[str, str]) -> Optional[str]:
    for attrs in selectors:
        tag = soup.find('meta', attrs=attrs)
        if tag and tag.get('content'):
            return _clean_text(tag['content'])
    return None


def analyze_meta(soup: BeautifulSoup, context: PageContext) -> Dict[str, Any]:
    """Title, meta tags, language and canonical URL."""
    title_tag = soup.find('title')
    html_tag = soup.find('html')
    canonical = soup.find('link', attrs={'rel': 'canonical'})

    return {
        'title': _clean_text(title_tag.get_text()) if title_tag else None,
        'description': _meta_content(soup, {'name': 'description'}, {'property': 'og:description'}),
        'keywords': _meta_content(soup, {'name': 'keywords'}),
        'author': _meta_content(soup, {'name': 'author'}, {'property': 'article:author'}),
        'robots': _meta_content(soup, {'name': 'robots'}),
        'language': (html_tag.get('lang') or html_tag.get('xml:lang')) if html_tag else None,
        'canonical_url': urljoin(context.url, canonical['href']) if canonical and canonical.get('href') else None,
    }


def analyze_headings(soup: BeautifulSoup, context: PageContext) -> Dict[str, list]:
    """Extract headings (h1-h6)."""
    headings = {}
    for level in range(1, 7):
        tag_name = f'h{level}'
        headings[tag_name] = [
            _clean_text(h.get_text()) for h in soup.find_all(tag_name) if h.get_text().strip()
        ]
    return headings


def analyze_content(soup: BeautifulSoup, context: PageContext) -> Dict[str, Any]:
    """Visible word count, image alt coverage and link count."""
    root = soup.find('body') or soup
    words = 0
    for node in root.find_all(string=True):
        if isinstance(node, Comment) or not isinstance(node, NavigableString):
            continue
        if node.parent is not None and node.parent.name in ('script', 'style', 'noscript', 'template'):
            continue
        words += len(node.split())

    images = soup.find_all('img')
    return {
        'word_count': words,
        'images': len(images),
        'images_missing_alt': sum(1 for img in images if not (img.get('alt') or '').strip()),
        'anchors': len(soup.find_all('a', href=True)),
    }


def analyze_structured_data(soup: BeautifulSoup, context: PageContext) -> Dict[str, list]:
    """Extract Schema.org structured data (JSON-LD and microdata)."""
    schema_data: Dict[str, list] = {}

    for script in soup.find_all('script', type='application/ld+json'):
        try:
            data = json.loads(script.string or '')
        except json.JSONDecodeError:
            continue
        items = data if isinstance(data, list) else [data]
        for item in items:
            if isinstance(item, dict):
                schema_data.setdefault(str(item.get('@type', 'Unknown')), []).append(item)

    for element in soup.find_all(attrs={'itemtype': True}):
        item_type = element.get('itemtype', '').rstrip('/').split('/')[-1]
        if not item_type:
            continue
        properties = {}
        for prop in element.find_all(attrs={'itemprop': True}):
            prop_value = prop.get('content') or prop.get_text(strip=True)
            if prop_value:
                properties[prop.get('itemprop')] = prop_value
        if properties:
            schema_data.setdefault(item_type, []).append(properties)

    return schema_data


DEFAULT_ANALYZERS: Dict[str, Analyzer] = {
    'meta': analyze_meta,
    'headings': analyze_headings,
    'content': analyze_content,
    'structured_data': analyze_structured_data,
}


class AnalyzerSet:
    """Runs every registered analyzer over a page, isolating failures."""

    def __init__(self, analyzers: Optional[Mapping[str, Analyzer]] = None):
        self.analyzers = dict(DEFAULT_ANALYZERS if analyzers is None else analyzers)
        self.logger = logging.getLogger(__name__)
        self.failures = 0

    def __len__(self) -> int:
        return len(self.analyzers)

    def run(self, soup: BeautifulSoup, context: PageContext) -> Dict[str, Any]:
        """
        Invoke each analyzer in registration order.

        A failing analyzer gets ``{"error": "<Type>: <message>"}`` in its
        slot; the other analyzers' output is kept.
        """
        results = {}
        for name, analyzer in self.analyzers.items():
            try:
                results[name] = analyzer(soup, context)
            except Exception as e:
                self.failures += 1
                self.logger.warning(f"Analyzer '{name}' failed on {context.url}: {type(e).__name__}: {e}")
                results[name] = {'error': f"{type(e).__name__}: {e}"}
        return results
