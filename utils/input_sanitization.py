"""
Input sanitization for request payloads (XSS defense).

General fields are reduced to plain text: every tag is stripped, inner text
is kept, and script/style elements are dropped together with their content.
Rich-text fields go through sanitize_html, which keeps a small allow-list of
formatting tags and only the href/target/rel attributes.

Tag and attribute stripping is done by bleach (html5lib tokenizer), so event
handler attributes and javascript: URLs disappear with the tag or attribute
that carried them. Angle brackets left in plain text come back escaped
(``&lt;``); ampersands and existing entities come back exactly as they were
given, so the transformation is idempotent.
"""
import re
from typing import Iterable, List, Optional

import bleach

from utils.payload import JsonValue, transform

# Default safe-formatting set for rich-text fields
DEFAULT_ALLOWED_TAGS: List[str] = ["p", "br", "strong", "em", "u", "ul", "ol", "li"]
ALLOWED_ATTRIBUTES: List[str] = ["href", "target", "rel"]
ALLOWED_PROTOCOLS: List[str] = ["http", "https", "mailto"]

AMPERSAND_ENTITY = "&amp;"

# Elements whose text content is code, not prose
_EXECUTABLE_ELEMENT = re.compile(
    r"<\s*(script|style)\b[^>]*>.*?<\s*/\s*\1\s*>",
    re.IGNORECASE | re.DOTALL
)


def _drop_executable_elements(value: str) -> str:
    """Remove script/style elements with their content until none remain."""
    previous = None
    while previous != value:
        previous = value
        value = _EXECUTABLE_ELEMENT.sub("", value)
    return value


def sanitize_string(value: str) -> str:
    """
    Reduce a string to safe plain text.

    Steps: strip NUL characters, trim surrounding whitespace, remove all
    markup keeping inner text. The result is trimmed again since removing
    markup can expose whitespace at the edges.
    """
    if not value:
        return value

    cleaned = value.replace("\x00", "").strip()
    cleaned = _drop_executable_elements(cleaned)
    # bleach leaves entities alone but escapes a bare &; shield literal &amp; so only
    # the escapes bleach adds are undone afterwards
    cleaned = cleaned.replace(AMPERSAND_ENTITY, AMPERSAND_ENTITY + "amp;")
    cleaned = bleach.clean(
        cleaned,
        tags=[],
        attributes={},
        strip=True,
        strip_comments=True
    )
    return cleaned.replace(AMPERSAND_ENTITY, "&").strip()


def sanitize_html(html: str, allowed_tags: Optional[Iterable[str]] = None) -> str:
    """Sanitize rich text keeping a tag allow-list and link attributes only."""
    if not html:
        return html

    tags = list(allowed_tags) if allowed_tags is not None else DEFAULT_ALLOWED_TAGS
    cleaned = html.replace("\x00", "").strip()
    cleaned = _drop_executable_elements(cleaned)
    return bleach.clean(
        cleaned,
        tags=tags,
        attributes=ALLOWED_ATTRIBUTES,
        protocols=ALLOWED_PROTOCOLS,
        strip=True,
        strip_comments=True
    ).strip()


def sanitize_payload(payload: JsonValue) -> JsonValue:
    """Apply sanitize_string to every string leaf of a request payload."""
    return transform(payload, sanitize_string)
