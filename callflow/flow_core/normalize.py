from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

MIN_TOKEN_LENGTH = 3

_FENCE_RE = re.compile(r"^```(?:json)?\s*\n?|\n?```\s*$")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence from a model reply."""
    return _FENCE_RE.sub("", text.strip()).strip()


def _tokens(text: str) -> list[str]:
    return [t for t in text.split() if len(t) >= MIN_TOKEN_LENGTH]


def find_best_match(candidate: str | None, options: list[str]) -> str | None:
    """Return the option that ``candidate`` refers to, or None.

    Rules are tried in order, each over the options in their given order:
    case-insensitive equality, substring containment either way, then any
    pair of tokens longer than two characters where one contains the other.
    The returned value is always an element of ``options`` unchanged.
    """
    if not candidate:
        return None
    text = candidate.lower().strip()
    if not text:
        return None

    for option in options:
        if option.lower() == text:
            logger.debug("Exact match: %r -> %r", candidate, option)
            return option

    for option in options:
        opt = option.lower()
        if not opt:
            continue
        if opt in text or text in opt:
            logger.debug("Partial match: %r -> %r", candidate, option)
            return option

    candidate_tokens = _tokens(text)
    for option in options:
        for c_tok in candidate_tokens:
            for o_tok in _tokens(option.lower()):
                if o_tok in c_tok or c_tok in o_tok:
                    logger.debug("Word match: %r <-> %r -> %r", c_tok, o_tok, option)
                    return option

    logger.debug("No match found for: %r", candidate)
    return None
