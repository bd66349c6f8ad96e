"""
Rich-text facet detection for Bluesky posts.

Scans post text for mentions, links and hashtags and returns them as
``app.bsky.richtext.facet`` records. Facet indices are UTF-8 byte offsets into
the text. Only entities literally present in the text are returned; mentions
whose handle does not resolve to a DID are dropped.
"""

import re
import unicodedata
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import tldextract

MENTION_RE = re.compile(r"(^|\s|\()(@)([a-zA-Z0-9.-]+)(\b)")
URL_RE = re.compile(
    r"(^|\s|\()((https?://\S+)|(?P<domain>[a-z][a-z0-9]*(\.[a-z0-9]+)+)\S*)",
    re.IGNORECASE | re.MULTILINE,
)
TAG_RE = re.compile(r"(^|\s)[#＃]([^\s­⁠ ​‌‍⃢]+)")
TRAILING_LINK_PUNCT_RE = re.compile(r"[.,;:!?]$")

MAX_TAG_LENGTH = 64

MENTION_TYPE = "app.bsky.richtext.facet#mention"
LINK_TYPE = "app.bsky.richtext.facet#link"
TAG_TYPE = "app.bsky.richtext.facet#tag"

# Bundled public suffix snapshot only; detection never touches the network
_SUFFIXES = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)

HandleResolver = Callable[[str], Awaitable[str | None]]


@dataclass
class RichText:
    """Post text plus the facets detected in it."""
    text: str
    facets: list[dict[str, Any]] = field(default_factory=list)


def utf8_index(text: str, char_index: int) -> int:
    """Convert a character offset into a UTF-8 byte offset."""
    return len(text[:char_index].encode("utf-8"))


def _facet(text: str, start: int, end: int, feature: dict[str, Any]) -> dict[str, Any]:
    return {
        "index": {"byteStart": utf8_index(text, start), "byteEnd": utf8_index(text, end)},
        "features": [feature],
    }


def is_valid_domain(value: str) -> bool:
    """A dotted name with a registrable label under a real public suffix."""
    labels = value.lower().split(".")
    if len(labels) < 2 or any(not label for label in labels):
        return False
    parts = _SUFFIXES(value.lower())
    return bool(parts.suffix) and bool(parts.domain)


def _is_tag_character(ch: str) -> bool:
    return not ch.isdigit() and not unicodedata.category(ch).startswith("P")


def _strip_trailing_punctuation(value: str) -> str:
    while value and unicodedata.category(value[-1]).startswith("P"):
        value = value[:-1]
    return value


def find_mentions(text: str) -> list[tuple[int, int, str]]:
    """(start, end, handle) for every syntactically valid @mention."""
    found = []
    for match in MENTION_RE.finditer(text):
        handle = match.group(3)
        if not is_valid_domain(handle) and not handle.endswith(".test"):
            continue
        start = match.start(2)
        found.append((start, match.end(3), handle))
    return found


def find_links(text: str) -> list[tuple[int, int, str]]:
    """(start, end, uri) for every URL or bare domain."""
    found = []
    for match in URL_RE.finditer(text):
        raw = match.group(2)
        uri = raw
        if not uri.lower().startswith(("http://", "https://")):
            domain = match.group("domain")
            if not domain or not is_valid_domain(domain):
                continue
            uri = f"https://{uri}"

        start = match.start(2)
        end = match.end(2)
        if TRAILING_LINK_PUNCT_RE.search(uri):
            uri = uri[:-1]
            end -= 1
        if uri.endswith(")") and "(" not in uri:
            uri = uri[:-1]
            end -= 1
        found.append((start, end, uri))
    return found


def find_tags(text: str) -> list[tuple[int, int, str]]:
    """(start, end, tag) for every hashtag; tag excludes the leading '#'."""
    found = []
    for match in TAG_RE.finditer(text):
        raw = match.group(2)
        if raw.startswith("️"):
            continue
        tag = _strip_trailing_punctuation(raw.strip())
        if not tag or len(tag) > MAX_TAG_LENGTH:
            continue
        if not any(_is_tag_character(ch) for ch in tag):
            continue
        start = match.start(2) - 1
        found.append((start, start + 1 + len(tag), tag))
    return found


async def detect_facets(text: str, resolve_handle: HandleResolver | None = None) -> RichText:
    """
    Build a RichText for ``text``.

    Args:
        text: Post text, passed through unchanged
        resolve_handle: Coroutine mapping a handle to a DID (or None). When
            omitted, mentions are not emitted.
    """
    facets = []

    if resolve_handle is not None:
        for start, end, handle in find_mentions(text):
            did = await resolve_handle(handle)
            if did:
                facets.append(_facet(text, start, end, {"$type": MENTION_TYPE, "did": did}))

    for start, end, uri in find_links(text):
        facets.append(_facet(text, start, end, {"$type": LINK_TYPE, "uri": uri}))

    for start, end, tag in find_tags(text):
        facets.append(_facet(text, start, end, {"$type": TAG_TYPE, "tag": tag}))

    facets.sort(key=lambda f: f["index"]["byteStart"])
    return RichText(text=text, facets=facets)
