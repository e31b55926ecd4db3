"""
Link extraction from fetched HTML.
"""

import logging
from dataclasses import dataclass, field
from typing import List

from bs4 import BeautifulSoup

from .normalizer import normalize_links


@dataclass
class ParsedPage:
    """Links found on one page."""
    url: str
    raw_links: List[str] = field(default_factory=list)
    links: List[str] = field(default_factory=list)


class ContentParser:
    """
    Finds outbound links in HTML.

    Every ``<a>`` element contributes its first ``href`` attribute, in
    document order. Links are then resolved against the page URL and
    filtered to http/https; duplicates are kept.
    """

    def __init__(self, anchor_tags: tuple = ('a',)):
        self.anchor_tags = list(anchor_tags)
        self.logger = logging.getLogger(__name__)

    def find_raw_urls(self, html_content: str) -> List[str]:
        """Return the href value of every anchor element."""
        # 'ignore' keeps the first of repeated attributes
        soup = BeautifulSoup(html_content, 'html.parser', on_duplicate_attribute='ignore')
        hrefs = []
        for tag in soup.find_all(self.anchor_tags):
            href = tag.get('href')
            if href is not None:
                hrefs.append(href)
        return hrefs

    def parse(self, url: str, html_content: str) -> ParsedPage:
        """Extract and normalize the links of the page at ``url``."""
        raw_links = self.find_raw_urls(html_content or '')
        links = normalize_links(raw_links, url)
        skipped = len(raw_links) - len(links)
        if skipped:
            self.logger.debug(f"Skipped {skipped} unusable links on {url}")
        self.logger.debug(f"Parsed {url}: {len(links)} links")
        return ParsedPage(url=url, raw_links=raw_links, links=links)
