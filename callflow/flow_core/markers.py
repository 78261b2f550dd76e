"""Node markers: the ``[[NODE:<id>]]`` tokens the agent speaks before each step.

The compiler instructs the agent to emit them and the traversal engine reads
them back from assistant transcripts, so both sides share this module.
"""

from __future__ import annotations

import re

MARKER_TEMPLATE = "[[NODE:{node_id}]]"

_MARKER_RE = re.compile(r"\[\[NODE:([^\]]+)\]\]")
# Agents sometimes drop the brackets
_BARE_MARKER_RE = re.compile(r"NODE:([A-Za-z0-9_-]+)")

_STRIP_RE = re.compile(r"\[\[NODE:[^\]]+\]\]\s*")
_STRIP_BARE_RE = re.compile(r"NODE:[A-Za-z0-9_-]+\s*")


def format_marker(node_id: str) -> str:
    return MARKER_TEMPLATE.format(node_id=node_id)


def parse_node_marker(transcript: str) -> str | None:
    """Return the first node id marked in ``transcript``, if any."""
    match = _MARKER_RE.search(transcript)
    if match:
        return match.group(1).strip()
    alt = _BARE_MARKER_RE.search(transcript)
    if alt:
        return alt.group(1)
    return None


def strip_node_markers(transcript: str) -> str:
    """Remove markers so the transcript can be shown to people."""
    cleaned = _STRIP_RE.sub("", transcript)
    cleaned = _STRIP_BARE_RE.sub("", cleaned)
    return cleaned.strip()
