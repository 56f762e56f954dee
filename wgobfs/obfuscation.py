"""Packet obfuscation: a key-derived CRC8 keystream plus random padding."""

from __future__ import annotations

import random
from enum import IntEnum
from functools import lru_cache

MAX_DUMMY_LENGTH_TOTAL = 1024
MAX_DUMMY_LENGTH_HANDSHAKE = 512
MAX_DUMMY_LENGTH_DATA = 4
OBFUSCATION_VERSION = 1

_rng = random.Random()


class PacketType(IntEnum):
    """WireGuard message types (first 32-bit little-endian word)."""

    HANDSHAKE = 0x01
    HANDSHAKE_RESP = 0x02
    COOKIE = 0x03
    DATA = 0x04


def packet_type(data: bytes) -> int:
    """Return the 32-bit little-endian type word at the start of ``data``."""
    if len(data) < 4:
        raise ValueError("packet is shorter than 4 bytes")
    return int.from_bytes(data[:4], "little")


def is_obfuscated(data: bytes) -> bool:
    """True unless the packet starts with a plain WireGuard message type."""
    return not 1 <= packet_type(data) <= 4


def _key_bytes(key: bytes | str) -> bytes:
    key_bytes = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    if not key_bytes:
        raise ValueError("key must not be empty")
    return key_bytes


@lru_cache(maxsize=512)
def _keystream(key: bytes, length: int) -> bytes:
    crc = 0
    stream = bytearray()
    key_length = len(key)
    for index in range(length):
        inbyte = (key[index % key_length] + length + key_length) & 0xFF
        for _ in range(8):
            mix = (crc ^ inbyte) & 0x01
            crc >>= 1
            if mix:
                crc ^= 0x8C
            inbyte >>= 1
        stream.append(crc)
    return bytes(stream)


def xor_data(data: bytes, key: bytes | str) -> bytes:
    """XOR ``data`` with a keystream derived from ``key`` and the data length.

    The operation is its own inverse for data of the same length.
    """
    if not data:
        return b""
    stream = _keystream(_key_bytes(key), len(data))
    mixed = int.from_bytes(data, "little") ^ int.from_bytes(stream, "little")
    return mixed.to_bytes(len(data), "little")


def encode(
    data: bytes,
    key: bytes | str,
    version: int = OBFUSCATION_VERSION,
    rng: random.Random | None = None,
) -> bytes:
    """Obfuscate a plain packet.

    From version 1 on, the first byte is masked with a random value stored in
    the second byte and, for packets under the size cap, padding of 0xFF bytes
    is appended with its length kept in bytes 2-3. ``rng`` needs ``randint``
    and ``randrange``.
    """
    if len(data) < 4:
        raise ValueError("packet is shorter than 4 bytes")
    if rng is None:
        rng = _rng
    buffer = bytearray(data)
    if version >= 1:
        kind = packet_type(buffer)
        rnd = rng.randint(1, 255)
        buffer[0] ^= rnd
        buffer[1] = rnd
        if len(buffer) < MAX_DUMMY_LENGTH_TOTAL:
            if kind in (PacketType.HANDSHAKE, PacketType.HANDSHAKE_RESP):
                dummy = rng.randrange(MAX_DUMMY_LENGTH_HANDSHAKE)
            elif kind in (PacketType.COOKIE, PacketType.DATA) and MAX_DUMMY_LENGTH_DATA > 0:
                dummy = rng.randrange(MAX_DUMMY_LENGTH_DATA)
            else:
                dummy = 0
            dummy = min(dummy, MAX_DUMMY_LENGTH_TOTAL - len(buffer))
            buffer[2:4] = dummy.to_bytes(2, "little")
            buffer += b"\xff" * dummy
    return xor_data(bytes(buffer), key)


def decode(data: bytes, key: bytes | str) -> tuple[bytes, int]:
    """Undo :func:`encode`, returning the packet and the detected version.

    Version 0 means the peer does not mask or pad. A corrupt padding length
    can leave the result shorter than 4 bytes; callers must check.
    """
    if len(data) < 4:
        raise ValueError("packet is shorter than 4 bytes")
    buffer = bytearray(xor_data(data, key))
    if not is_obfuscated(buffer):
        return bytes(buffer), 0
    buffer[0] ^= buffer[1]
    buffer[1] = 0
    dummy = int.from_bytes(buffer[2:4], "little")
    buffer[2:4] = b"\x00\x00"
    return bytes(buffer[: max(len(buffer) - dummy, 0)]), OBFUSCATION_VERSION