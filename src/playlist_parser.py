"""
IPTV playlist parser.

Turns an extended M3U document into an ordered list of ChannelRecord values.
Each entry is an ``#EXTINF:`` metadata line followed by the stream URL on a
later non-comment line. Parsing is best effort: malformed entries are skipped
or defaulted, never fatal.
"""

import hashlib
import re
from typing import Dict, List, Optional

from models import ChannelRecord, DEFAULT_GROUP

METADATA_PREFIX = "#EXTINF:"
COMMENT_PREFIX = "#"

# Attribute name in the playlist -> ChannelRecord field
ATTRIBUTE_FIELDS = {
    "group-title": "group",
    "tvg-logo": "logo",
    "tvg-id": "tvg_id",
    "tvg-name": "tvg_name",
}

ATTRIBUTE_PATTERNS = {
    name: re.compile(rf'{re.escape(name)}="([^"]*)"')
    for name in ATTRIBUTE_FIELDS
}


def parse_metadata_line(line: str) -> Dict[str, str]:
    """
    Extract title and attributes from an #EXTINF line.

    The title is everything after the last comma. Attributes are matched one
    by one so a missing or malformed attribute does not affect the others.
    """
    fields = {
        "title": "",
        "group": DEFAULT_GROUP,
        "logo": "",
        "tvg_id": "",
        "tvg_name": "",
    }

    _, separator, tail = line.rpartition(",")
    if separator:
        fields["title"] = tail.strip()

    for name, pattern in ATTRIBUTE_PATTERNS.items():
        match = pattern.search(line)
        if match:
            fields[ATTRIBUTE_FIELDS[name]] = match.group(1)

    return fields


def record_id(fields: Dict[str, str]) -> str:
    """Deterministic id derived from the record content."""
    key = "\x1f".join(
        fields.get(name, "")
        for name in ("url", "title", "group", "logo", "tvg_id", "tvg_name")
    )
    return hashlib.md5(key.encode("utf-8")).hexdigest()[:16]


def parse_playlist(document: str) -> List[ChannelRecord]:
    """Parse a playlist document into channel records, in source order."""
    if not isinstance(document, str):
        raise TypeError(
            f"playlist document must be str, got {type(document).__name__}")

    records: List[ChannelRecord] = []
    seen_ids: Dict[str, int] = {}
    current: Optional[Dict[str, str]] = None

    for raw_line in document.split("\n"):
        line = raw_line.strip()
        if not line:
            continue

        if line.startswith(METADATA_PREFIX):
            # A still-open entry without URL is dropped here
            current = parse_metadata_line(line)
        elif line.startswith(COMMENT_PREFIX):
            continue
        elif current is not None:
            current["url"] = line
            base_id = record_id(current)
            occurrence = seen_ids.get(base_id, 0) + 1
            seen_ids[base_id] = occurrence
            current["id"] = base_id if occurrence == 1 else f"{base_id}-{occurrence}"
            records.append(ChannelRecord(**current))
            current = None

    return records
