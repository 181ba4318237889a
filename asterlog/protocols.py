"""
Protocol Parsers.

This module recognizes ASTERIX surveillance data (1-byte category, 16-bit
big-endian length, FSPEC-prefixed data blocks) in captured payloads and decodes
it into the structured annotation embedded in DEBUG log records.
"""

import logging
import struct
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .fields import CATEGORY_TABLES, FX_BIT, FieldValue, Opaque, decode_field

logger = logging.getLogger("asterlog.protocols")


HEADER_SIZE = 3
MAX_CATEGORY = 250
MAX_FSPEC_BYTES = 11
# Declared lengths up to this many bytes past the buffer still count as a
# fragment of a larger message
LENGTH_SLACK = 100


class BlockDecodeError(ValueError):
    """Raised when a data block cannot be framed at all."""


@dataclass(frozen=True)
class DataBlock:
    fspec: bytes
    items: Mapping[str, FieldValue] = field(default_factory=lambda: MappingProxyType({}))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fspec": str(Opaque(self.fspec)),
            "data_items": {name: _render(value) for name, value in self.items.items()},
        }


@dataclass(frozen=True)
class AsterixMessage:
    category: int = 0
    length: int = 0
    blocks: Tuple[DataBlock, ...] = ()
    parse_error: Optional[str] = None
    unsupported: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Serialization-ready form; opaque spans become base64 text."""
        result: Dict[str, Any] = {
            "category": self.category,
            "length": self.length,
            "data_blocks": [block.to_dict() for block in self.blocks],
        }
        if self.parse_error:
            result["parse_error"] = self.parse_error
        if self.unsupported:
            result["unsupported"] = True
        return result

    def summary(self) -> str:
        item_count = sum(len(block.items) for block in self.blocks)
        text = f"ASTERIX CAT{self.category:03d}: {len(self.blocks)} block(s), {item_count} item(s)"
        if self.parse_error:
            text += f" [{self.parse_error}]"
        return text


def _render(value: FieldValue) -> Any:
    if isinstance(value, Opaque):
        return str(value)
    if isinstance(value, dict):
        return {key: _render(inner) for key, inner in value.items()}
    return value


def parse_fspec(data) -> bytes:
    """Returns the FSPEC bytes at the start of `data`.

    The bitmap ends at the first byte with a clear FX bit, or after
    MAX_FSPEC_BYTES bytes whatever their FX bits say. Empty input gives b"".
    """
    for i, byte in enumerate(data[:MAX_FSPEC_BYTES]):
        if not byte & FX_BIT:
            return bytes(data[:i + 1])
    return bytes(data[:MAX_FSPEC_BYTES])


def decode_block(data, category: int) -> Tuple[DataBlock, int]:
    """Decodes one FSPEC and the items it announces.

    Items that do not fit in the remaining bytes are skipped without an
    error, and the following items are read from the same offset.

    Returns:
        The block and the number of bytes it occupied.

    Raises:
        BlockDecodeError: If `data` is empty or holds no FSPEC.
    """
    if not data:
        raise BlockDecodeError("empty data block")

    fspec = parse_fspec(data)
    if not fspec:
        raise BlockDecodeError("failed to parse FSPEC")

    offset = len(fspec)
    items: Dict[str, FieldValue] = {}
    frn = 1
    for byte in fspec:
        # bits 7..1 are item slots, bit 0 is FX
        for bit in range(7, 0, -1):
            if byte & (1 << bit):
                name, value, consumed = decode_field(data[offset:], category, frn)
                if consumed > 0:
                    items[name] = value
                    offset += consumed
            frn += 1

    return DataBlock(fspec, MappingProxyType(items)), offset


class AsterixParser:
    """Recognizes and decodes ASTERIX messages in captured payloads.

    Both entry points are pure: they keep no state between calls and can be
    used from any number of threads or tasks at once.
    """

    @staticmethod
    def is_asterix(payload: bytes) -> bool:
        """Cheap sniff for a plausible ASTERIX header.

        Expect false positives on arbitrary binary traffic; decode() validates
        again and reports what it could not make sense of.
        """
        if len(payload) < HEADER_SIZE:
            return False

        category = payload[0]
        if category == 0 or category > MAX_CATEGORY:
            return False

        length = struct.unpack_from(">H", payload, 1)[0]
        if length < HEADER_SIZE or length > len(payload) + LENGTH_SLACK:
            return False

        return length == len(payload) or length <= len(payload) * 2

    @classmethod
    def decode(cls, payload: bytes) -> AsterixMessage:
        """Decodes as many data blocks as the payload allows.

        Never raises on malformed input. Problems are reported through
        `parse_error`, and blocks decoded before a failure are kept.
        """
        if len(payload) < HEADER_SIZE:
            return AsterixMessage(parse_error="payload too short for ASTERIX")

        view = memoryview(payload)
        category = payload[0]
        length = struct.unpack_from(">H", view, 1)[0]
        unsupported = category not in CATEGORY_TABLES

        if length < HEADER_SIZE or length > len(payload):
            return AsterixMessage(
                category=category,
                length=length,
                parse_error=f"invalid length field: {length} (payload size: {len(payload)})",
                unsupported=unsupported,
            )

        blocks: List[DataBlock] = []
        parse_error = None
        offset = HEADER_SIZE
        while offset < length and offset < len(payload):
            try:
                block, consumed = decode_block(view[offset:], category)
            except BlockDecodeError as e:
                parse_error = f"error at block {len(blocks)}, offset {offset}: {e}"
                break

            if consumed == 0:
                break

            blocks.append(block)
            offset += consumed

        if parse_error:
            logger.debug(f"CAT{category:03d} decode stopped: {parse_error}")

        return AsterixMessage(
            category=category,
            length=length,
            blocks=tuple(blocks),
            parse_error=parse_error,
            unsupported=unsupported,
        )
