"""Tag column codec.

Tags are stored in a single text cell as a JSON array of strings. Reading a
corrupt cell must never block reading the article that owns it, so decoding
degrades to an empty list instead of raising.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence

logger = logging.getLogger(__name__)

EMPTY_TAGS = "[]"


def encode_tags(tags: Sequence[str] | None) -> str:
    if not tags:
        return EMPTY_TAGS
    return json.dumps(list(tags), ensure_ascii=False, separators=(",", ":"))


def decode_tags(raw: str | None) -> list[str]:
    if raw is None:
        logger.debug("tag column is null; treating as empty")
        return []
    if not isinstance(raw, str):
        logger.warning("tag column has unexpected type=%s; treating as empty", type(raw).__name__)
        return []
    if not raw.strip():
        logger.debug("tag column is blank; treating as empty")
        return []

    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, RecursionError):
        logger.warning("tag column is not valid json; treating as empty: %.200r", raw)
        return []

    if not isinstance(value, list):
        logger.warning("tag column is not a json array; treating as empty: %.200r", raw)
        return []
    if not all(isinstance(item, str) for item in value):
        logger.warning("tag column contains non-string items; treating as empty: %.200r", raw)
        return []
    return value
