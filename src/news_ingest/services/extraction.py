"""Readable text extraction from article HTML."""

from __future__ import annotations

import re
from dataclasses import dataclass

import trafilatura
from lxml import etree
from lxml import html as lxml_html
from readability import Document

from news_ingest.logging import get_logger

_WHITESPACE_RE = re.compile(r"\s+")
_PAYWALL_HINTS = (
    "subscribe to continue reading",
    "subscribe to read",
    "subscribers only",
    "this article is for subscribers",
    "already a subscriber",
    "sign in to continue",
    "create a free account to continue",
    "start your free trial",
    "unlock this article",
    "to continue reading",
)
_FALLBACK_CONTAINERS = (
    "//article//p",
    "//main//p",
    "//*[contains(concat(' ', normalize-space(@class), ' '), ' content ')]//p",
    "//*[contains(concat(' ', normalize-space(@class), ' '), ' post ')]//p",
    "//body//p",
)
_NOISE_TOKENS = ("comment", "footer", "sidebar", "newsletter", "related", "share", "advert")
MIN_PARAGRAPH_CHARS = 40
MAX_FALLBACK_PARAGRAPHS = 12


@dataclass(slots=True)
class ExtractionResult:
    text: str | None
    title: str | None
    canonical_url: str | None = None
    paywalled: bool = False
    method: str = "none"


class ArticleExtractor:
    """trafilatura first, readability second, then a paragraph scrape."""

    def __init__(self) -> None:
        self._log = get_logger(__name__)

    def extract(self, html: str) -> ExtractionResult:
        root = _parse(html)
        canonical_url = _canonical_url(root) if root is not None else None
        paywalled = self._looks_paywalled(html)
        title: str | None = None

        try:
            text = trafilatura.extract(html, output_format="txt", include_comments=False)
            metadata = trafilatura.extract_metadata(html)
            if metadata is not None and metadata.title:
                title = metadata.title
        except Exception:
            self._log.debug("extraction.trafilatura_failed", exc_info=True)
            text = None
        text = (text or "").strip() or None
        if text:
            return ExtractionResult(text, title, canonical_url, paywalled, "trafilatura")

        try:
            doc = Document(html)
            title = title or doc.short_title() or None
            summary_root = _parse(doc.summary())
            if summary_root is not None:
                text = _normalize_paragraphs(summary_root.text_content()) or None
        except Exception:
            self._log.debug("extraction.readability_failed", exc_info=True)
            text = None
        if text:
            return ExtractionResult(text, title, canonical_url, paywalled, "readability")

        if root is not None:
            title = title or _first_text(root, "//title")
            text = self._scrape_paragraphs(root)
            if text:
                return ExtractionResult(text, title, canonical_url, paywalled, "paragraphs")
            description = _meta_description(root)
            if description:
                return ExtractionResult(description, title, canonical_url, paywalled, "meta")
        return ExtractionResult(None, title, canonical_url, paywalled)

    @staticmethod
    def _looks_paywalled(html: str) -> bool:
        compact = _WHITESPACE_RE.sub(" ", html).lower()
        if '"isaccessibleforfree": false' in compact or '"isaccessibleforfree":false' in compact:
            return True
        return any(hint in compact for hint in _PAYWALL_HINTS)

    @classmethod
    def _scrape_paragraphs(cls, root: lxml_html.HtmlElement) -> str | None:
        for xpath in _FALLBACK_CONTAINERS:
            paragraphs: list[str] = []
            seen: set[str] = set()
            for node in root.xpath(xpath):
                if _has_noise_ancestor(node):
                    continue
                text = _WHITESPACE_RE.sub(" ", node.text_content()).strip()
                if len(text) < MIN_PARAGRAPH_CHARS or text.lower() in seen:
                    continue
                seen.add(text.lower())
                paragraphs.append(text)
                if len(paragraphs) >= MAX_FALLBACK_PARAGRAPHS:
                    break
            if paragraphs:
                return "\n\n".join(paragraphs)
        return None


def _parse(html: str) -> lxml_html.HtmlElement | None:
    if not html or not html.strip():
        return None
    try:
        return lxml_html.fromstring(html)
    except (etree.ParserError, ValueError):
        return None


def _normalize_paragraphs(text: str) -> str:
    lines = [_WHITESPACE_RE.sub(" ", line).strip() for line in text.splitlines()]
    return "\n".join(line for line in lines if line)


def _canonical_url(root: lxml_html.HtmlElement) -> str | None:
    for xpath in (
        "//link[@rel='canonical']/@href",
        "//meta[@property='og:url']/@content",
    ):
        values = root.xpath(xpath)
        if values and str(values[0]).strip().startswith(("http://", "https://")):
            return str(values[0]).strip()
    return None


def _meta_description(root: lxml_html.HtmlElement) -> str | None:
    for xpath in (
        "//meta[@property='og:description']/@content",
        "//meta[@name='twitter:description']/@content",
        "//meta[@name='description']/@content",
    ):
        values = root.xpath(xpath)
        if values:
            description = _WHITESPACE_RE.sub(" ", str(values[0])).strip()
            if description:
                return description
    return None


def _first_text(root: lxml_html.HtmlElement, xpath: str) -> str | None:
    nodes = root.xpath(xpath)
    if not nodes:
        return None
    text = _WHITESPACE_RE.sub(" ", nodes[0].text_content()).strip()
    return text or None


def _has_noise_ancestor(node: lxml_html.HtmlElement) -> bool:
    for element in node.xpath("ancestor-or-self::*"):
        marker = f"{element.get('class') or ''} {element.get('id') or ''}".lower()
        if any(token in marker for token in _NOISE_TOKENS):
            return True
    return False
