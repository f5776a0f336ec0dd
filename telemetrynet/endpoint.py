"""Non-blocking packet endpoints multiplexed by a selector thread.

An :class:`EndpointContext` owns a fixed number of
:class:`EndpointContainer` slots.  Each occupied slot holds one
:class:`Endpoint` wrapping a connected socket.  One I/O thread waits for
socket readiness and drives sending and receiving.  A second thread hands
every complete packet received to the receive callback.
"""

from __future__ import annotations

import logging
import selectors
import socket
import threading
from enum import Enum
from typing import Any, Callable

from .fifo import BoundedFifo, CountingSemaphore, FifoClosed
from .protocol import (
    CONFIRM_TIMEOUT_S,
    SIZEOF_PACKET_COMMON,
    WATCHDOG_TIMEOUT_S,
    StatusCode,
    new_status_packet,
    packet_length,
    packet_ok,
)
from .timer import Timer

log = logging.getLogger(__name__)

FIFO_CAPACITY = 32
_RECV_CHUNK = 65536

RecvCallback = Callable[["Endpoint", bytes], object]
EndpointCallback = Callable[["Endpoint"], object]


class SendState(Enum):
    OPEN = "open"  # nothing being sent
    READY = "ready"  # a packet has been taken from the queue
    IN_PROGRESS = "in_progress"  # the socket could not take all of it yet
    VERIFY = "verify"
    ERROR = "error"


class RecvState(Enum):
    HEADER = "header"
    IN_PROGRESS = "in_progress"
    DISCARD = "discard"
    ERROR = "error"


def set_nonblocking(sock: socket.socket, nonblock: bool) -> None:
    """Switch ``sock`` between blocking and non-blocking mode."""
    sock.setblocking(not nonblock)


class Endpoint:
    """One connected socket with its send queue and receive state."""

    def __init__(
        self,
        context: EndpointContext,
        container: EndpointContainer,
        sock: socket.socket,
    ) -> None:
        self.context = context
        self.container = container
        self.sock = sock
        self.user_data: Any = None
        self.send_state = SendState.OPEN
        self.recv_state = RecvState.HEADER
        self.send_fifo: BoundedFifo[bytes] = BoundedFifo(FIFO_CAPACITY)
        self._send_view = memoryview(b"")
        self._recv_buf = bytearray()
        self._recv_len = 0
        self._interest = 0
        self._closed = False
        self.send_timer = Timer(self._on_send_idle)
        self.recv_timer = Timer(self._on_recv_idle)
        self.send_timer.set(context.confirm_timeout)
        self.recv_timer.set(context.watchdog_timeout)
        self._update_interest()
        if context.new_cb is not None:
            context.new_cb(self)

    @property
    def closed(self) -> bool:
        return self._closed

    def send_packet(self, packet: bytes) -> bool:
        """Queue ``packet`` for sending; return False if the queue is full."""
        packet_length(packet)  # rejects anything shorter than a header
        if self._closed or self.send_fifo.full():
            return False
        self.send_fifo.write(bytes(packet))
        if self.send_state is SendState.OPEN:
            self._prepare_send()
            self._update_interest()
        return True

    def process_send(self) -> None:
        """Write as much queued data as the socket accepts."""
        try:
            self._send_pending()
        finally:
            self._update_interest()

    def process_recv(self) -> None:
        """Read what the socket has and queue every complete packet."""
        while self.recv_state is not RecvState.ERROR:
            try:
                chunk = self.sock.recv(_RECV_CHUNK)
            except BlockingIOError:
                return
            except OSError as exc:
                log.error("receive failed: %s", exc)
                self.recv_state = RecvState.ERROR
                return
            if not chunk:
                log.info("connection lost")
                self.recv_state = RecvState.ERROR
                return
            self._recv_buf += chunk
            self.recv_timer.set(self.context.watchdog_timeout)
            self._parse_received()

    def close(self) -> None:
        """Stop the timers, close the socket and report the deletion."""
        if self._closed:
            return
        self._closed = True
        self.send_timer.close()
        self.recv_timer.close()
        self.context._unwatch(self.sock)
        self.sock.close()
        self.send_fifo.close()
        self._send_view = memoryview(b"")
        if self.context.delete_cb is not None:
            self.context.delete_cb(self)

    def _prepare_send(self) -> None:
        packet = self.send_fifo.read()
        self._send_view = memoryview(packet)[: packet_length(packet)]
        self.send_state = SendState.READY

    def _send_pending(self) -> None:
        if self.send_state is SendState.OPEN:
            if not self.send_fifo.ready():
                return
            self._prepare_send()
        elif self.send_state is SendState.ERROR:
            return
        while True:
            try:
                sent = self.sock.send(self._send_view)
            except BlockingIOError:
                if self.send_state is SendState.READY:
                    self.send_state = SendState.IN_PROGRESS
                return
            except OSError as exc:
                log.error("send failed: %s", exc)
                self._send_view = memoryview(b"")
                self.send_state = SendState.ERROR
                return
            self.send_timer.set(self.context.confirm_timeout)
            if sent == len(self._send_view):
                self._send_view = memoryview(b"")
                if self.send_fifo.ready():
                    self._prepare_send()
                    continue
                self.send_state = SendState.OPEN
                return
            log.debug("partial send of %d bytes", sent)
            self._send_view = self._send_view[sent:]

    def _parse_received(self) -> None:
        buf = self._recv_buf
        while self.recv_state is not RecvState.ERROR:
            if self.recv_state is RecvState.HEADER:
                if len(buf) < SIZEOF_PACKET_COMMON:
                    return
                if not packet_ok(buf):
                    log.warning("malformed packet header")
                    self.recv_state = RecvState.ERROR
                    return
                length = packet_length(buf)
                if length < SIZEOF_PACKET_COMMON:
                    log.warning("packet length %d shorter than its header", length)
                    self.recv_state = RecvState.ERROR
                    return
                self._recv_len = length
                self.recv_state = RecvState.IN_PROGRESS
            else:
                if len(buf) < self._recv_len:
                    return
                packet = bytes(buf[: self._recv_len])
                del buf[: self._recv_len]
                self.recv_state = RecvState.HEADER
                self._deliver(packet)

    def _deliver(self, packet: bytes) -> None:
        fifo = self.context.recv_fifo
        if fifo.full():
            return
        try:
            fifo.write((self, packet))
        except FifoClosed:
            pass

    def _update_interest(self) -> None:
        if self._closed:
            return
        want = selectors.EVENT_READ
        if self.send_state in (SendState.READY, SendState.IN_PROGRESS):
            want |= selectors.EVENT_WRITE
        if want != self._interest:
            self.context._watch(
                self.sock, want, self.container, first=self._interest == 0
            )
            self._interest = want

    def _on_send_idle(self) -> None:
        # Nothing was sent for a while: tell the peer we are still here.
        self.container._send_to(self, new_status_packet(StatusCode.CONFIRM))

    def _on_recv_idle(self) -> None:
        log.info("receive watchdog expired")
        self.container._delete_if(self)


class EndpointContainer:
    """A slot that holds at most one endpoint, guarded by a lock."""

    def __init__(self, context: EndpointContext, index: int) -> None:
        self.context = context
        self.index = index
        self.valid = False
        self.endpoint: Endpoint | None = None
        self._lock = threading.RLock()

    def send_packet(self, packet: bytes, exclude: Endpoint | None = None) -> None:
        """Queue ``packet`` on the held endpoint unless it is ``exclude``."""
        with self._lock:
            if self.valid and self.endpoint is not exclude:
                self.endpoint.send_packet(packet)

    def new_endpoint(self, sock: socket.socket) -> bool:
        """Wrap ``sock`` in an endpoint if the slot is free; tell whether it was."""
        with self._lock:
            if self.valid:
                return False
            self.endpoint = Endpoint(self.context, self, sock)
            self.valid = True
            self.context._active.release()
            return True

    def delete_endpoint(self) -> None:
        with self._lock:
            if self.valid:
                self._delete_locked()

    def process_recv(self) -> bool:
        """Receive on the endpoint; return whether it is still valid."""
        with self._lock:
            if self.valid:
                self.endpoint.process_recv()
                if self.endpoint.recv_state is RecvState.ERROR:
                    self._delete_locked()
            return self.valid

    def process_send(self) -> bool:
        """Send on the endpoint; return whether it is still valid."""
        with self._lock:
            if self.valid:
                self.endpoint.process_send()
                if self.endpoint.send_state is SendState.ERROR:
                    self._delete_locked()
            return self.valid

    def _send_to(self, endpoint: Endpoint, packet: bytes) -> None:
        with self._lock:
            if self.valid and self.endpoint is endpoint:
                endpoint.send_packet(packet)

    def _delete_if(self, endpoint: Endpoint) -> None:
        with self._lock:
            if self.valid and self.endpoint is endpoint:
                self._delete_locked()

    def _delete_locked(self) -> None:
        endpoint = self.endpoint
        self.valid = False
        self.endpoint = None
        endpoint.close()
        self.context._active.acquire()


class EndpointContext:
    """A fixed pool of endpoint slots served by an I/O and a receive thread."""

    def __init__(
        self,
        n_endpoints: int,
        recv_cb: RecvCallback,
        *,
        new_cb: EndpointCallback | None = None,
        delete_cb: EndpointCallback | None = None,
        watchdog_timeout: float = WATCHDOG_TIMEOUT_S,
        confirm_timeout: float = CONFIRM_TIMEOUT_S,
        recv_capacity: int = FIFO_CAPACITY,
    ) -> None:
        if n_endpoints < 1:
            raise ValueError("at least one endpoint slot is needed")
        if watchdog_timeout < 0 or confirm_timeout < 0:
            raise ValueError("timeouts must not be negative")
        self.recv_cb = recv_cb
        self.new_cb = new_cb
        self.delete_cb = delete_cb
        self.watchdog_timeout = watchdog_timeout
        self.confirm_timeout = confirm_timeout
        self.recv_fifo: BoundedFifo[tuple[Endpoint, bytes]] = BoundedFifo(
            recv_capacity
        )
        self._active = CountingSemaphore(0)
        self.endpoints = tuple(EndpointContainer(self, i) for i in range(n_endpoints))

        self._selector = selectors.DefaultSelector()
        self._sel_lock = threading.Lock()
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self._wake_w.setblocking(False)
        self._selector.register(self._wake_r, selectors.EVENT_READ, None)
        self._stopping = False
        self._closed = False

        self._io_thread = threading.Thread(
            target=self._io_loop, name="endpoint-io", daemon=True
        )
        self._recv_thread = threading.Thread(
            target=self._recv_loop, name="endpoint-recv", daemon=True
        )
        self._io_thread.start()
        self._recv_thread.start()

    def new_endpoint(
        self, sock: socket.socket, server: bool = False
    ) -> EndpointContainer | None:
        """Take a connected socket, or accept one from a listener if ``server``.

        Returns the container that now holds it, or None when no slot is
        free or accepting failed.
        """
        if self._closed:
            raise RuntimeError("endpoint context is closed")
        if server:
            try:
                conn, peer = sock.accept()
            except OSError as exc:
                log.error("accept failed: %s", exc)
                return None
            log.info("accepted connection from %s", peer)
        else:
            conn = sock
        if self._active.value() >= len(self.endpoints):
            conn.close()
            return None
        set_nonblocking(conn, True)
        for container in self.endpoints:
            if container.new_endpoint(conn):
                return container
        conn.close()
        return None

    def broadcast_packet(self, packet: bytes, src: Endpoint | None = None) -> None:
        """Queue ``packet`` on every endpoint except ``src``."""
        for container in self.endpoints:
            container.send_packet(packet, src)

    def active_count(self) -> int:
        return self._active.value()

    def close(self) -> None:
        """Drop every endpoint and stop the threads."""
        if self._closed:
            return
        self._closed = True
        for container in self.endpoints:
            container.delete_endpoint()
        self.recv_fifo.close()
        self._stopping = True
        self._wake()
        current = threading.current_thread()
        for thread in (self._io_thread, self._recv_thread):
            if thread is not current:
                thread.join()
        with self._sel_lock:
            self._selector.close()
        self._wake_r.close()
        self._wake_w.close()

    def __enter__(self) -> EndpointContext:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _watch(
        self,
        sock: socket.socket,
        events: int,
        container: EndpointContainer,
        first: bool,
    ) -> None:
        with self._sel_lock:
            try:
                if first:
                    self._selector.register(sock, events, container)
                else:
                    self._selector.modify(sock, events, container)
            except (KeyError, ValueError, OSError) as exc:
                log.error("cannot watch socket: %s", exc)
        self._wake()

    def _unwatch(self, sock: socket.socket) -> None:
        with self._sel_lock:
            try:
                self._selector.unregister(sock)
            except (KeyError, ValueError):
                pass

    def _wake(self) -> None:
        try:
            self._wake_w.send(b"\0")
        except (BlockingIOError, OSError):
            pass

    def _drain_wakeup(self) -> None:
        try:
            while self._wake_r.recv(4096):
                pass
        except (BlockingIOError, OSError):
            pass

    def _io_loop(self) -> None:
        while not self._stopping:
            try:
                events = self._selector.select()
            except (OSError, ValueError) as exc:
                log.error("selector failed: %s", exc)
                return
            for key, mask in events:
                container = key.data
                if container is None:
                    self._drain_wakeup()
                    continue
                if mask & selectors.EVENT_READ and not container.process_recv():
                    continue
                if mask & selectors.EVENT_WRITE:
                    container.process_send()

    def _recv_loop(self) -> None:
        for endpoint, packet in self.recv_fifo:
            try:
                self.recv_cb(endpoint, packet)
            except Exception:
                log.exception("receive callback failed")