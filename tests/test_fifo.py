import threading
import time

import pytest

from telemetrynet.fifo import BoundedFifo, CountingSemaphore, FifoClosed


def test_semaphore_counts():
    sem = CountingSemaphore(2)
    assert sem.value() == 2
    assert sem.acquire() is True
    assert sem.value() == 1
    sem.release()
    sem.release()
    assert sem.value() == 3


def test_semaphore_negative_rejected():
    with pytest.raises(ValueError):
        CountingSemaphore(-1)


def test_semaphore_blocks_until_release():
    sem = CountingSemaphore(0)
    done = threading.Event()

    def worker():
        sem.acquire()
        done.set()

    thread = threading.Thread(target=worker)
    thread.start()
    assert not done.wait(0.1)
    sem.release()
    assert done.wait(2)
    thread.join(2)
    assert sem.value() == 0


def test_fifo_order():
    fifo = BoundedFifo(4)
    for item in ("a", "b", "c"):
        fifo.write(item)
    assert [fifo.read(), fifo.read(), fifo.read()] == ["a", "b", "c"]


def test_ready_and_full():
    fifo = BoundedFifo(2)
    assert fifo.ready() == 0
    assert not fifo.full()
    fifo.write(1)
    fifo.write(2)
    assert fifo.ready() == 2
    assert len(fifo) == 2
    assert fifo.full()
    fifo.read()
    assert not fifo.full()


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        BoundedFifo(0)


def test_closed_fifo_drains_then_raises():
    fifo = BoundedFifo(3)
    fifo.write("x")
    fifo.close()
    assert fifo.read() == "x"
    with pytest.raises(FifoClosed):
        fifo.read()


def test_write_after_close_raises():
    fifo = BoundedFifo(3)
    fifo.close()
    with pytest.raises(FifoClosed):
        fifo.write("y")


def test_close_wakes_blocked_reader():
    fifo = BoundedFifo(1)
    errors = []

    def reader():
        try:
            fifo.read()
        except FifoClosed as exc:
            errors.append(exc)

    thread = threading.Thread(target=reader)
    thread.start()
    time.sleep(0.05)
    fifo.close()
    thread.join(2)
    assert not thread.is_alive()
    assert len(errors) == 1
    assert fifo.ready() == 0
    with pytest.raises(FifoClosed):
        fifo.read()


def test_writer_blocks_while_full():
    fifo = BoundedFifo(1)
    fifo.write(1)
    written = threading.Event()

    def writer():
        fifo.write(2)
        written.set()

    thread = threading.Thread(target=writer)
    thread.start()
    assert not written.wait(0.1)
    assert fifo.read() == 1
    assert written.wait(2)
    thread.join(2)
    assert fifo.read() == 2


def test_iteration_until_close():
    fifo = BoundedFifo(8)
    for n in range(5):
        fifo.write(n)
    fifo.close()
    assert list(fifo) == [0, 1, 2, 3, 4]


def test_producer_consumer():
    fifo = BoundedFifo(2)
    items = list(range(50))

    def producer():
        for item in items:
            fifo.write(item)
        fifo.close()

    thread = threading.Thread(target=producer)
    thread.start()
    received = list(fifo)
    thread.join(2)
    assert received == items