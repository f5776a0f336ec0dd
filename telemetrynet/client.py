"""Telemetry client: reports its own telemetry and tracks its peers."""

from __future__ import annotations

import logging
import socket
import sys
import threading
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from .endpoint import Endpoint, EndpointContext
from .protocol import (
    DataCode,
    PacketType,
    StatusCode,
    Telemetry,
    packet_code,
    packet_type,
    payload,
    src_index_of,
    telemetry_packet,
)

log = logging.getLogger(__name__)

N_CLIENT_ENDPOINTS = 4
SEND_INTERVAL_S = 0.5


@dataclass
class _Peer:
    valid: bool = False
    telemetry: Telemetry = Telemetry()


class ClientRegistry:
    """What this client knows about the other clients of the server."""

    def __init__(self, size: int = N_CLIENT_ENDPOINTS) -> None:
        if size < 1:
            raise ValueError("registry size must be at least 1")
        self._peers = [_Peer() for _ in range(size)]
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._peers)

    def handle_packet(self, endpoint: Optional[Endpoint], packet: bytes) -> None:
        """Update the registry from one packet received from the server."""
        kind = packet_type(packet)
        if kind == PacketType.STATUS:
            if packet_code(packet) == StatusCode.CONFIRM:
                log.debug("confirm packet status")
        elif kind == PacketType.DATA:
            self._handle_data(packet)

    def valid_count(self) -> int:
        """Number of peers currently known to be connected."""
        with self._lock:
            return sum(peer.valid for peer in self._peers)

    def telemetry(self, index: int) -> Optional[Telemetry]:
        """Latest telemetry of peer ``index``, or None if it is not connected."""
        if not 0 <= index < len(self._peers):
            raise IndexError(f"peer index {index} out of range")
        with self._lock:
            peer = self._peers[index]
            return peer.telemetry if peer.valid else None

    def _handle_data(self, packet: bytes) -> None:
        code = packet_code(packet)
        if code == DataCode.RAW_DATA:
            log.info("raw data packet")
        elif code in (DataCode.NEW_CONN, DataCode.DEL_CONN):
            index = src_index_of(packet)
            connected = code == DataCode.NEW_CONN
            log.info("%s src_index=%d", "new connection" if connected else "lost connection", index)
            with self._lock:
                peer = self._peer(index)
                if peer is not None:
                    peer.valid = connected
        elif code == DataCode.TELEMETRY:
            telemetry = Telemetry.from_bytes(payload(packet))
            log.debug("telemetry src_index=%d", telemetry.src_index)
            with self._lock:
                peer = self._peer(telemetry.src_index)
                if peer is not None and peer.valid:
                    peer.telemetry = telemetry
                else:
                    log.info("telemetry from invalid client %d", telemetry.src_index)

    def _peer(self, index: int) -> Optional[_Peer]:
        if index < len(self._peers):
            return self._peers[index]
        log.warning("peer index %d out of range", index)
        return None


def run(
    host: str,
    port: int | str,
    registry: Optional[ClientRegistry] = None,
    interval: float = SEND_INTERVAL_S,
) -> ClientRegistry:
    """Connect to a server and report telemetry until the connection ends."""
    if interval < 0:
        raise ValueError("interval must not be negative")
    if registry is None:
        registry = ClientRegistry()
    family, socktype, proto, _, address = socket.getaddrinfo(
        host, port, socket.AF_UNSPEC, socket.SOCK_STREAM
    )[0]
    sock = socket.socket(family, socktype, proto)
    try:
        sock.connect(address)
    except OSError:
        sock.close()
        raise
    log.info("connection established")

    with EndpointContext(1, registry.handle_packet) as context:
        container = context.new_endpoint(sock, server=False)
        if container is None:
            raise RuntimeError("no endpoint slot available")
        while container.valid:
            container.send_packet(telemetry_packet(Telemetry(src_index=0)))
            log.info("%d valid clients", registry.valid_count())
            time.sleep(interval)
    return registry


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) < 2:
        print("Usage:\ntelemetrynet-client <hostname> <service or port>")
        return 1
    logging.basicConfig(level=logging.INFO)
    try:
        run(args[0], args[1])
    except socket.gaierror as exc:
        print(f"hostname lookup failed: {exc}")
        return 1
    except OSError as exc:
        print(f"connect: {exc}")
        return 1
    except KeyboardInterrupt:
        log.info("interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())