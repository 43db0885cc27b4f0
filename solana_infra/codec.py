"""Anchor/borsh wire codec for the handful of types the relayer touches.

Borsh is little-endian, fixed-size arrays are raw bytes, and strings and
``Vec<u8>`` carry a u32 length prefix. Anchor prefixes instructions,
accounts and events with the first 8 bytes of
``sha256("<namespace>:<Name>")``.
"""

from __future__ import annotations

import hashlib
import struct

from solders.pubkey import Pubkey

from core.errors import ValidationError


def sighash(namespace: str, name: str) -> bytes:
    """Anchor 8-byte discriminator for ``namespace:name``."""
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


def instruction_discriminator(snake_name: str) -> bytes:
    return sighash("global", snake_name)


def account_discriminator(type_name: str) -> bytes:
    return sighash("account", type_name)


def event_discriminator(type_name: str) -> bytes:
    return sighash("event", type_name)


class DecodeError(ValidationError):
    """Account or event payload does not match the expected layout."""


class BorshWriter:
    """Append-only borsh encoder."""

    def __init__(self) -> None:
        self._parts: list[bytes] = []

    def raw(self, data: bytes) -> BorshWriter:
        self._parts.append(bytes(data))
        return self

    def fixed(self, data: bytes, length: int) -> BorshWriter:
        if len(data) != length:
            raise ValidationError(f"expected {length} bytes, got {len(data)}")
        return self.raw(data)

    def u8(self, value: int) -> BorshWriter:
        return self.raw(struct.pack("<B", value))

    def u32(self, value: int) -> BorshWriter:
        return self.raw(struct.pack("<I", value))

    def u64(self, value: int) -> BorshWriter:
        return self.raw(struct.pack("<Q", value))

    def u128(self, value: int) -> BorshWriter:
        if not 0 <= value < 2**128:
            raise ValidationError(f"u128 out of range: {value}")
        return self.raw(value.to_bytes(16, "little"))

    def pubkey(self, key: Pubkey) -> BorshWriter:
        return self.raw(bytes(key))

    def vec_u8(self, data: bytes) -> BorshWriter:
        return self.u32(len(data)).raw(data)

    def string(self, text: str) -> BorshWriter:
        return self.vec_u8(text.encode("utf-8"))

    def build(self) -> bytes:
        return b"".join(self._parts)


class BorshReader:
    """Cursor over a borsh payload; raises DecodeError on truncation."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = bytes(data)
        self._offset = offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def take(self, length: int) -> bytes:
        if length < 0 or self._offset + length > len(self._data):
            raise DecodeError(
                f"payload truncated: need {length} bytes at offset {self._offset}, "
                f"have {self.remaining}"
            )
        chunk = self._data[self._offset:self._offset + length]
        self._offset += length
        return chunk

    def u8(self) -> int:
        return self.take(1)[0]

    def u32(self) -> int:
        return struct.unpack("<I", self.take(4))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self.take(8))[0]

    def u128(self) -> int:
        return int.from_bytes(self.take(16), "little")

    def pubkey(self) -> Pubkey:
        return Pubkey.from_bytes(self.take(32))

    def vec_u8(self) -> bytes:
        return self.take(self.u32())

    def string(self) -> str:
        raw = self.vec_u8()
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"invalid utf-8 string: {exc}") from exc

    def expect(self, discriminator: bytes, label: str) -> None:
        found = self.take(len(discriminator))
        if found != discriminator:
            raise DecodeError(f"{label}: discriminator mismatch ({found.hex()})")
