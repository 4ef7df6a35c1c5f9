"""
Message content normalisation.

Network payloads are a tagged union: a dict keyed by content kind
("conversation", "imageMessage", ...). Text is taken from the first
extractor in priority order that yields a non-empty string; media without a
caption falls back to a placeholder so it still counts as a message.
"""

from collections.abc import Callable
from typing import Any

from support_monitor.config import settings

Content = dict[str, Any]
Extractor = Callable[[Content], str | None]


def _field(kind: str, attribute: str | None = None) -> Extractor:
    def extract(content: Content) -> str | None:
        value = content.get(kind)
        if attribute is not None:
            value = value.get(attribute) if isinstance(value, dict) else None
        return value if isinstance(value, str) else None

    return extract


def _placeholder(kind: str, label: str) -> Extractor:
    def extract(content: Content) -> str | None:
        return label if content.get(kind) is not None else None

    return extract


TEXT_EXTRACTORS: list[Extractor] = [
    _field("conversation"),
    _field("extendedTextMessage", "text"),
    _field("imageMessage", "caption"),
    _field("videoMessage", "caption"),
    _field("documentMessage", "caption"),
    _field("buttonsResponseMessage", "selectedDisplayText"),
    _field("listResponseMessage", "title"),
]

PLACEHOLDER_EXTRACTORS: list[Extractor] = [
    _placeholder("imageMessage", "[📷 Image]"),
    _placeholder("videoMessage", "[🎥 Video]"),
    _placeholder("audioMessage", "[🎵 Audio]"),
    _placeholder("documentMessage", "[📄 Document]"),
    _placeholder("stickerMessage", "[😀 Sticker]"),
    _placeholder("locationMessage", "[📍 Location]"),
    _placeholder("contactMessage", "[👤 Contact]"),
]

CONTENT_KINDS: list[tuple[str, str]] = [
    ("imageMessage", "image"),
    ("videoMessage", "video"),
    ("audioMessage", "audio"),
    ("documentMessage", "document"),
    ("stickerMessage", "sticker"),
    ("locationMessage", "location"),
    ("contactMessage", "contact"),
]


def extract_body(content: Content | None) -> str:
    """First non-empty text in priority order, or "" when nothing usable exists."""
    if not content:
        return ""
    for extractor in (*TEXT_EXTRACTORS, *PLACEHOLDER_EXTRACTORS):
        text = extractor(content)
        if text and text.strip():
            return text
    return ""


def content_kind(content: Content | None) -> str:
    if content:
        for key, kind in CONTENT_KINDS:
            if content.get(key) is not None:
                return kind
    return "text"


def is_group_address(remote_address: str | None) -> bool:
    return bool(remote_address) and remote_address.endswith(settings.GROUP_ADDRESS_SUFFIX)


def normalize_address(remote_address: str | None) -> str:
    """Strip the network suffix from a direct-chat address."""
    if not remote_address:
        return ""
    suffix = settings.NETWORK_ADDRESS_SUFFIX
    if remote_address.endswith(suffix):
        return remote_address[: -len(suffix)]
    return remote_address


def to_network_address(address: str) -> str:
    return address if "@" in address else f"{address}{settings.NETWORK_ADDRESS_SUFFIX}"


def resolve_user_address(user_id: str | None) -> str:
    """Drop device and server parts, e.g. 5511999999999:12@s.whatsapp.net -> 5511999999999."""
    if not user_id:
        return ""
    return user_id.split("@", 1)[0].split(":", 1)[0]
