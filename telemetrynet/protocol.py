"""Wire format for status, data and telemetry packets.

Every packet starts with a 16-byte header holding, in big-endian order,
the packet type (2 bytes), the packet code (2 bytes), the total packet
length (4 bytes) and a CRC-32C (4 bytes) computed over the first 8 bytes,
followed by 4 bytes of padding.  Data packets carry their payload after
the header.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

WATCHDOG_TIMEOUT_S = 10
CONFIRM_TIMEOUT_S = 5

SIZEOF_PACKET_COMMON = 16
SIZEOF_PACKET_CRC_DATA = 8
OFFSET_OF_TYPE = 0
OFFSET_OF_CODE = 2
OFFSET_OF_LENGTH = 4
OFFSET_OF_CRC = 8
OFFSET_OF_DATA = SIZEOF_PACKET_COMMON
OFFSET_OF_SRC_INDEX = OFFSET_OF_DATA
SIZEOF_DATA_COMMON = SIZEOF_PACKET_COMMON + 4

_POLY = 0x82F63B78
_MASK32 = 0xFFFFFFFF

_HEADER = struct.Struct(">HHII4x")
_INDEX = struct.Struct("<I")
_TELEMETRY = struct.Struct("<I3f4f")

TELEMETRY_SIZE = _TELEMETRY.size


class PacketType(IntEnum):
    STATUS = 0
    DATA = 1


class StatusCode(IntEnum):
    READY = 0
    BUSY = 1
    CONFIRM = 2


class DataCode(IntEnum):
    RAW_DATA = 0
    NEW_CONN = 1
    DEL_CONN = 2
    TELEMETRY = 3


def _make_table() -> tuple[int, ...]:
    table = []
    for n in range(256):
        c = n
        for _ in range(8):
            c = (c >> 1) ^ _POLY if c & 1 else c >> 1
        table.append(c)
    return tuple(table)


_TABLE = _make_table()


def crc32c(data: bytes, crc: int = 0) -> int:
    """Return the CRC-32C (Castagnoli) of ``data``, continuing from ``crc``."""
    crc = ~crc & _MASK32
    for byte in data:
        crc = _TABLE[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return ~crc & _MASK32


def _require(packet: bytes, size: int) -> None:
    if len(packet) < size:
        raise ValueError(f"packet too short: {len(packet)} bytes, need {size}")


@dataclass(frozen=True)
class Header:
    """The common 16-byte packet header."""

    packet_type: int
    code: int
    length: int
    crc: int = 0

    def to_bytes(self) -> bytes:
        try:
            return _HEADER.pack(self.packet_type, self.code, self.length, self.crc)
        except struct.error as exc:
            raise ValueError(f"header field out of range: {exc}") from None

    @classmethod
    def from_bytes(cls, data: bytes) -> "Header":
        _require(data, SIZEOF_PACKET_COMMON)
        packet_type, code, length, crc = _HEADER.unpack_from(data)
        return cls(packet_type, code, length, crc)


@dataclass(frozen=True)
class Telemetry:
    """Position and orientation reported by one client."""

    src_index: int = 0
    position: tuple[float, float, float] = (0.0, 0.0, 0.0)
    orientation: tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)

    def to_bytes(self) -> bytes:
        if len(self.position) != 3 or len(self.orientation) != 4:
            raise ValueError("position needs 3 and orientation 4 components")
        try:
            return _TELEMETRY.pack(self.src_index, *self.position, *self.orientation)
        except struct.error as exc:
            raise ValueError(f"telemetry field out of range: {exc}") from None

    @classmethod
    def from_bytes(cls, data: bytes) -> "Telemetry":
        _require(data, TELEMETRY_SIZE)
        values = _TELEMETRY.unpack_from(data)
        return cls(values[0], tuple(values[1:4]), tuple(values[4:8]))


def seal(packet: bytes) -> bytes:
    """Return ``packet`` with its CRC field computed and filled in."""
    _require(packet, SIZEOF_PACKET_COMMON)
    crc = crc32c(bytes(packet[:SIZEOF_PACKET_CRC_DATA]))
    return (
        bytes(packet[:OFFSET_OF_CRC])
        + struct.pack(">I", crc)
        + bytes(packet[OFFSET_OF_CRC + 4 :])
    )


def packet_ok(packet: bytes) -> bool:
    """Tell whether the header's CRC matches its contents."""
    _require(packet, SIZEOF_PACKET_COMMON)
    return crc32c(bytes(packet[:SIZEOF_PACKET_CRC_DATA])) == packet_crc(packet)


def packet_type(packet: bytes) -> int:
    _require(packet, SIZEOF_PACKET_COMMON)
    return struct.unpack_from(">H", packet, OFFSET_OF_TYPE)[0]


def packet_code(packet: bytes) -> int:
    _require(packet, SIZEOF_PACKET_COMMON)
    return struct.unpack_from(">H", packet, OFFSET_OF_CODE)[0]


def packet_length(packet: bytes) -> int:
    _require(packet, SIZEOF_PACKET_COMMON)
    return struct.unpack_from(">I", packet, OFFSET_OF_LENGTH)[0]


def packet_crc(packet: bytes) -> int:
    _require(packet, SIZEOF_PACKET_COMMON)
    return struct.unpack_from(">I", packet, OFFSET_OF_CRC)[0]


def payload(packet: bytes) -> bytes:
    """Return the bytes that follow the header."""
    _require(packet, SIZEOF_PACKET_COMMON)
    return bytes(packet[OFFSET_OF_DATA:])


def new_status_packet(code: int) -> bytes:
    """Build a sealed header-only status packet."""
    header = Header(PacketType.STATUS, code, SIZEOF_PACKET_COMMON)
    return seal(header.to_bytes())


def new_data_packet(data: bytes, code: int) -> bytes:
    """Build a sealed data packet carrying ``data``."""
    header = Header(PacketType.DATA, code, SIZEOF_PACKET_COMMON + len(data))
    return seal(header.to_bytes()) + bytes(data)


def new_conn_packet(src_index: int) -> bytes:
    return new_data_packet(_pack_index(src_index), DataCode.NEW_CONN)


def del_conn_packet(src_index: int) -> bytes:
    return new_data_packet(_pack_index(src_index), DataCode.DEL_CONN)


def telemetry_packet(telemetry: Telemetry) -> bytes:
    return new_data_packet(telemetry.to_bytes(), DataCode.TELEMETRY)


def set_telemetry_src(packet: bytes, src_index: int) -> bytes:
    """Return ``packet`` with the source index in its payload replaced."""
    _require(packet, SIZEOF_DATA_COMMON)
    return (
        bytes(packet[:OFFSET_OF_SRC_INDEX])
        + _pack_index(src_index)
        + bytes(packet[SIZEOF_DATA_COMMON:])
    )


def src_index_of(packet: bytes) -> int:
    """Return the source index at the start of a data packet's payload."""
    _require(packet, SIZEOF_DATA_COMMON)
    return _INDEX.unpack_from(packet, OFFSET_OF_SRC_INDEX)[0]


def _pack_index(src_index: int) -> bytes:
    try:
        return _INDEX.pack(src_index)
    except struct.error as exc:
        raise ValueError(f"source index out of range: {exc}") from None