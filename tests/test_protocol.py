import pytest

from telemetrynet.protocol import (
    OFFSET_OF_DATA,
    SIZEOF_PACKET_COMMON,
    TELEMETRY_SIZE,
    DataCode,
    Header,
    PacketType,
    StatusCode,
    Telemetry,
    crc32c,
    del_conn_packet,
    new_conn_packet,
    new_data_packet,
    new_status_packet,
    packet_code,
    packet_crc,
    packet_length,
    packet_ok,
    packet_type,
    payload,
    seal,
    set_telemetry_src,
    src_index_of,
    telemetry_packet,
)


def test_crc32c_check_value():
    assert crc32c(b"123456789") == 0xE3069283


def test_crc32c_empty_is_zero():
    assert crc32c(b"") == 0


def test_crc32c_chains():
    assert crc32c(b"6789", crc32c(b"12345")) == crc32c(b"123456789")


def test_status_packet_layout():
    packet = new_status_packet(StatusCode.CONFIRM)
    assert len(packet) == SIZEOF_PACKET_COMMON
    assert packet[:8] == bytes([0, 0, 0, 2, 0, 0, 0, 16])
    assert packet_type(packet) == PacketType.STATUS
    assert packet_code(packet) == StatusCode.CONFIRM
    assert packet_length(packet) == SIZEOF_PACKET_COMMON
    assert packet_ok(packet)


def test_tampered_packet_fails_check():
    packet = bytearray(new_status_packet(StatusCode.READY))
    packet[3] ^= 0x01
    assert not packet_ok(bytes(packet))


def test_seal_repairs_crc():
    packet = bytearray(new_status_packet(StatusCode.READY))
    packet[3] = StatusCode.BUSY
    resealed = seal(bytes(packet))
    assert packet_ok(resealed)
    assert packet_code(resealed) == StatusCode.BUSY
    assert packet_crc(resealed) == crc32c(resealed[:8])


def test_data_packet_carries_payload():
    data = b"hello world"
    packet = new_data_packet(data, DataCode.RAW_DATA)
    assert packet_type(packet) == PacketType.DATA
    assert packet_code(packet) == DataCode.RAW_DATA
    assert packet_length(packet) == SIZEOF_PACKET_COMMON + len(data)
    assert len(packet) == packet_length(packet)
    assert payload(packet) == data
    assert packet_ok(packet)


@pytest.mark.parametrize(
    "builder, code",
    [(new_conn_packet, DataCode.NEW_CONN), (del_conn_packet, DataCode.DEL_CONN)],
)
def test_connection_packets(builder, code):
    packet = builder(3)
    assert packet_code(packet) == code
    assert src_index_of(packet) == 3
    assert packet_length(packet) == SIZEOF_PACKET_COMMON + 4
    assert packet_ok(packet)


def test_connection_packet_rejects_negative_index():
    with pytest.raises(ValueError):
        new_conn_packet(-1)


def test_telemetry_round_trip():
    t = Telemetry(2, (1.0, 2.0, 3.0), (0.0, 0.0, 0.5, 1.0))
    assert Telemetry.from_bytes(t.to_bytes()) == t


def test_telemetry_packet():
    t = Telemetry(1, (0.5, -1.0, 4.0), (1.0, 0.0, 0.0, 0.0))
    packet = telemetry_packet(t)
    assert packet_code(packet) == DataCode.TELEMETRY
    assert packet_length(packet) == SIZEOF_PACKET_COMMON + TELEMETRY_SIZE
    assert Telemetry.from_bytes(payload(packet)) == t
    assert src_index_of(packet) == t.src_index


def test_set_telemetry_src():
    t = Telemetry(0, (1.0, 2.0, 3.0), (0.0, 0.0, 0.0, 1.0))
    packet = telemetry_packet(t)
    updated = set_telemetry_src(packet, 3)
    assert len(updated) == len(packet)
    assert src_index_of(updated) == 3
    assert updated[:OFFSET_OF_DATA] == packet[:OFFSET_OF_DATA]
    assert packet_ok(updated)
    restored = Telemetry.from_bytes(payload(updated))
    assert restored.position == t.position
    assert restored.orientation == t.orientation


def test_telemetry_wrong_component_count():
    with pytest.raises(ValueError):
        Telemetry(0, (1.0, 2.0), (0.0, 0.0, 0.0, 1.0)).to_bytes()


def test_header_round_trip():
    header = Header(PacketType.DATA, DataCode.TELEMETRY, 48, 12345)
    raw = header.to_bytes()
    assert len(raw) == SIZEOF_PACKET_COMMON
    assert Header.from_bytes(raw) == header


def test_header_out_of_range():
    with pytest.raises(ValueError):
        Header(PacketType.DATA, 70000, 16).to_bytes()


def test_short_inputs_rejected():
    with pytest.raises(ValueError):
        Header.from_bytes(b"\x00" * 8)
    with pytest.raises(ValueError):
        packet_type(b"\x00")
    with pytest.raises(ValueError):
        src_index_of(new_status_packet(StatusCode.READY))
    with pytest.raises(ValueError):
        Telemetry.from_bytes(b"\x00" * 10)