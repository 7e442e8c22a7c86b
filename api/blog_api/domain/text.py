from __future__ import annotations

import math
import re
import unicodedata

from blog_api.domain.models import Article, SearchDocument

MAX_TITLE_LENGTH = 200
READING_CHARS_PER_MINUTE = 200

SLUG_RE = re.compile(r"^[a-z0-9\-]+$")

_CODE_BLOCK_RE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE_RE = re.compile(r"`[^`]*`")
_IMAGE_RE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]*)\]\([^)]*\)")
_MARKDOWN_MARKS_RE = re.compile(r"[#*_~`>\-]")
_WHITESPACE_RE = re.compile(r"\s+")
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def generate_slug(title: str | None) -> str:
    if not title or not title.strip():
        return ""
    slug = title.lower()
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"[^a-z0-9\-]", "", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def is_valid_slug(slug: str) -> bool:
    return bool(SLUG_RE.match(slug))


def strip_markdown(content: str | None) -> str:
    if not content:
        return ""
    text = _CODE_BLOCK_RE.sub("", content)
    text = _INLINE_CODE_RE.sub("", text)
    text = _IMAGE_RE.sub("", text)
    text = _LINK_RE.sub("", text)
    text = _MARKDOWN_MARKS_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def count_words(content: str | None) -> tuple[int, int]:
    """Return ``(word_count, reading_time_minutes)`` for markdown content.

    Counts characters of the markup-free text, which is what readers of CJK
    content expect; reading time is at least one minute for non-empty text.
    """
    stripped = strip_markdown(content)
    if not stripped:
        return 0, 0
    word_count = len(stripped)
    return word_count, max(1, math.ceil(word_count / READING_CHARS_PER_MINUTE))


def normalize_search_text(*parts: str | None) -> str:
    # Unlike word counting, link labels are kept: they are often the only mention of a topic.
    chunks: list[str] = []
    for part in parts:
        if not part:
            continue
        text = _CODE_BLOCK_RE.sub(" ", part)
        text = _IMAGE_RE.sub(" ", text)
        text = _LINK_RE.sub(r"\1", text)
        text = _MARKDOWN_MARKS_RE.sub(" ", text)
        chunks.append(text)
    joined = unicodedata.normalize("NFKC", " ".join(chunks)).lower()
    return _WHITESPACE_RE.sub(" ", joined).strip()


def tokenize(text: str | None) -> list[str]:
    if not text:
        return []
    return _TOKEN_RE.findall(unicodedata.normalize("NFKC", text).lower())


def build_search_document(article: Article) -> SearchDocument:
    return SearchDocument(
        id=article.id,
        author_id=article.author_id,
        title=article.title,
        tags=list(article.tags),
        text=normalize_search_text(article.title, article.summary, article.content),
        version=article.sync_version,
        publish_time=article.publish_time,
    )
