"""Telemetry server: relays packets between connected clients."""

from __future__ import annotations

import logging
import selectors
import socket
import sys
import threading
from typing import Optional, Sequence

from .endpoint import Endpoint, EndpointContext
from .fifo import BoundedFifo, FifoClosed
from .protocol import (
    CONFIRM_TIMEOUT_S,
    WATCHDOG_TIMEOUT_S,
    DataCode,
    PacketType,
    StatusCode,
    del_conn_packet,
    new_conn_packet,
    packet_code,
    packet_type,
    set_telemetry_src,
)

log = logging.getLogger(__name__)

N_ENDPOINTS = 4
LISTEN_BACKLOG = 2
SERVER_FIFO_CAPACITY = 5


class Server:
    """Accepts clients, announces joins and leaves, and relays their data."""

    def __init__(
        self,
        n_endpoints: int = N_ENDPOINTS,
        *,
        watchdog_timeout: float = WATCHDOG_TIMEOUT_S,
        confirm_timeout: float = CONFIRM_TIMEOUT_S,
        fifo_capacity: int = SERVER_FIFO_CAPACITY,
    ) -> None:
        self._events: BoundedFifo[tuple[DataCode, Endpoint]] = BoundedFifo(
            fifo_capacity
        )
        self._clients: list[Endpoint] = []
        self._clients_lock = threading.Lock()
        self._stop = threading.Event()
        self._closed = False
        self.ready = threading.Event()
        self.addresses: list = []
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        self._thread = threading.Thread(
            target=self._run_events, name="server-events", daemon=True
        )
        self._thread.start()
        self.context = EndpointContext(
            n_endpoints,
            self.handle_packet,
            new_cb=self.on_new,
            delete_cb=self.on_delete,
            watchdog_timeout=watchdog_timeout,
            confirm_timeout=confirm_timeout,
        )

    def handle_packet(self, endpoint: Endpoint, packet: bytes) -> None:
        """Relay data packets from ``endpoint`` to every other client."""
        kind = packet_type(packet)
        code = packet_code(packet)
        if kind == PacketType.STATUS:
            if code == StatusCode.CONFIRM:
                log.debug("confirm packet status")
        elif kind == PacketType.DATA:
            if code == DataCode.RAW_DATA:
                self.context.broadcast_packet(packet, endpoint)
            elif code == DataCode.TELEMETRY:
                stamped = set_telemetry_src(packet, endpoint.container.index)
                self.context.broadcast_packet(stamped, endpoint)

    def on_new(self, endpoint: Endpoint) -> None:
        endpoint.user_data = endpoint.container.index
        self._post(DataCode.NEW_CONN, endpoint)

    def on_delete(self, endpoint: Endpoint) -> None:
        self._post(DataCode.DEL_CONN, endpoint)

    def clients(self) -> tuple[Endpoint, ...]:
        """Registered clients, most recently connected first."""
        with self._clients_lock:
            return tuple(self._clients)

    def serve(self, host: Optional[str], port: int | str) -> None:
        """Listen on ``host`` ("+" or None for every address) until stopped."""
        name = None if host in (None, "+") else host
        infos = socket.getaddrinfo(
            name, port, socket.AF_UNSPEC, socket.SOCK_STREAM, 0, socket.AI_PASSIVE
        )
        listeners: list[socket.socket] = []
        selector = selectors.DefaultSelector()
        try:
            for family, socktype, proto, _, address in infos:
                sock = self._listen(family, socktype, proto, address)
                if sock is not None:
                    listeners.append(sock)
                    selector.register(sock, selectors.EVENT_READ)
            if not listeners:
                raise OSError(f"no address could be bound for {host!r} port {port!r}")
            self.addresses = [sock.getsockname() for sock in listeners]
            selector.register(self._wake_r, selectors.EVENT_READ)
            self.ready.set()
            while not self._stop.is_set():
                for key, _ in selector.select():
                    if key.fileobj is self._wake_r:
                        self._drain_wakeup()
                    elif not self._stop.is_set():
                        self.context.new_endpoint(key.fileobj, server=True)
        finally:
            selector.close()
            for sock in listeners:
                sock.close()

    def stop(self) -> None:
        """Make :meth:`serve` return."""
        self._stop.set()
        try:
            self._wake_w.send(b"\0")
        except OSError:
            pass

    def close(self) -> None:
        """Stop serving, drop every client and stop the event thread."""
        if self._closed:
            return
        self._closed = True
        self.stop()
        self.context.close()
        self._events.close()
        self._thread.join()
        self._wake_r.close()
        self._wake_w.close()

    def _listen(self, family, socktype, proto, address) -> Optional[socket.socket]:
        try:
            sock = socket.socket(family, socktype, proto)
        except OSError as exc:
            log.error("socket: %s", exc)
            return None
        try:
            if hasattr(socket, "SO_REUSEPORT"):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.bind(address)
            sock.listen(LISTEN_BACKLOG)
            sock.setblocking(False)
        except OSError as exc:
            log.error("cannot listen on %s: %s", address, exc)
            sock.close()
            return None
        return sock

    def _drain_wakeup(self) -> None:
        try:
            while self._wake_r.recv(4096):
                pass
        except OSError:
            pass

    def _post(self, code: DataCode, endpoint: Endpoint) -> None:
        try:
            self._events.write((code, endpoint))
        except FifoClosed:
            log.debug("event for closed server dropped")

    @staticmethod
    def _send(endpoint: Endpoint, packet: bytes) -> None:
        # Only the endpoint itself may receive it, never a later occupant of its slot.
        endpoint.container._send_to(endpoint, packet)

    def _run_events(self) -> None:
        for code, endpoint in self._events:
            if code == DataCode.NEW_CONN:
                with self._clients_lock:
                    others = list(self._clients)
                announcement = new_conn_packet(endpoint.user_data)
                for other in others:
                    self._send(other, announcement)
                    self._send(endpoint, new_conn_packet(other.user_data))
                with self._clients_lock:
                    self._clients.insert(0, endpoint)
            elif code == DataCode.DEL_CONN:
                with self._clients_lock:
                    if endpoint in self._clients:
                        self._clients.remove(endpoint)
                    others = list(self._clients)
                farewell = del_conn_packet(endpoint.user_data)
                for other in others:
                    self._send(other, farewell)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) < 2:
        print("Usage: telemetrynet-server <address or +(ipv4 and ipv6)> <service or port>")
        return 1
    logging.basicConfig(level=logging.INFO)
    server = Server()
    try:
        server.serve(args[0], args[1])
    except socket.gaierror as exc:
        print(f"getaddrinfo error: {exc}")
        return 1
    except OSError as exc:
        print(f"server error: {exc}")
        return 1
    except KeyboardInterrupt:
        log.info("interrupted")
    finally:
        server.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())