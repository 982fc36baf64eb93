"""
Extract the display title and tags from a markdown document.

Sources, in order of precedence:
- YAML front matter (``title:`` and ``tags:``)
- the first ``# heading`` line
- a ``###### tags: `a` `b` `` line
- inline hashtags such as ``#idea`` (no space after the hash)
"""

import re
from typing import Any, Dict, List, NamedTuple

import yaml

DEFAULT_TITLE = "Untitled"

FRONT_MATTER_PATTERN = re.compile(r"\A---[ \t]*\n(.*?)\n(?:---|\.\.\.)[ \t]*(?:\n|\Z)", re.DOTALL)
HEADING_PATTERN = re.compile(r"^#[ \t]+(.+?)[ \t#]*$", re.MULTILINE)
TAGS_LINE_PATTERN = re.compile(r"^#{6}[ \t]+tags:(.*)$", re.MULTILINE | re.IGNORECASE)
BACKTICK_TAG_PATTERN = re.compile(r"`([^`]+)`")
HASHTAG_PATTERN = re.compile(r"(?:^|(?<=\s))#([^\s#]+)")


class NoteInfo(NamedTuple):
    title: str
    tags: List[str]


def _split_front_matter(content: str):
    match = FRONT_MATTER_PATTERN.match(content)
    if not match:
        return {}, content
    try:
        meta = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        return {}, content
    if not isinstance(meta, dict):
        meta = {}
    return meta, content[match.end():]


def _meta_tags(meta: Dict[str, Any]) -> List[str]:
    tags = meta.get("tags")
    if isinstance(tags, str):
        return [t.strip() for t in tags.split(",") if t.strip()]
    if isinstance(tags, list):
        return [str(t).strip() for t in tags if str(t).strip()]
    return []


def _body_tags(body: str) -> List[str]:
    tags = []
    for line in TAGS_LINE_PATTERN.findall(body):
        tags.extend(t.strip() for t in BACKTICK_TAG_PATTERN.findall(line))
    without_tag_lines = TAGS_LINE_PATTERN.sub("", body)
    tags.extend(HASHTAG_PATTERN.findall(without_tag_lines))
    return tags


def _unique(items: List[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


def parse_note_info(content: str) -> NoteInfo:
    """Return the title and ordered, de-duplicated tags of a document."""
    meta, body = _split_front_matter(content or "")

    title = meta.get("title")
    if not isinstance(title, str) or not title.strip():
        heading = HEADING_PATTERN.search(body)
        title = heading.group(1) if heading else DEFAULT_TITLE

    tags = _meta_tags(meta) if "tags" in meta else []
    tags.extend(_body_tags(body))
    return NoteInfo(title=title.strip(), tags=_unique(tags))
