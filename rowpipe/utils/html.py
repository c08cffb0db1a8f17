"""
HTML helpers.
=============
Readable text and absolute links from raw page HTML.
"""
import re
from typing import List, Tuple
from urllib.parse import urljoin

from bs4 import BeautifulSoup

_NOISE_TAGS = ["script", "style", "noscript", "iframe", "svg"]


def html_to_text(html: str, max_chars: int = 0) -> str:
    """Visible text with collapsed blank lines, optionally truncated."""
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(_NOISE_TAGS):
        tag.decompose()
    text = soup.get_text(separator="\n")
    lines = [line.strip() for line in text.splitlines()]
    text = re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()
    if max_chars and len(text) > max_chars:
        text = text[:max_chars]
    return text


def page_title(html: str) -> str:
    soup = BeautifulSoup(html or "", "html.parser")
    return soup.title.get_text(strip=True) if soup.title else ""


def extract_links(html: str, base_url: str) -> List[Tuple[str, str]]:
    """(absolute href, anchor text) for every http(s) anchor, in document order."""
    soup = BeautifulSoup(html or "", "html.parser")
    links = []
    for anchor in soup.find_all("a", href=True):
        href = urljoin(base_url, anchor["href"].strip())
        if not href.startswith(("http://", "https://")):
            continue
        text = " ".join(anchor.get_text(" ", strip=True).split())
        links.append((href, text[:200]))
    return links
