import threading
import time

from sona.common.locks import ReadWriteLock


def test_readers_share_the_lock() -> None:
    lock = ReadWriteLock()
    inside = threading.Barrier(3, timeout=1.0)

    def reader() -> None:
        with lock.read_lock():
            inside.wait()

    threads = [threading.Thread(target=reader) for _ in range(2)]
    for t in threads:
        t.start()
    # the barrier only trips if both readers hold the lock at once
    inside.wait()
    for t in threads:
        t.join(timeout=1.0)
    assert not any(t.is_alive() for t in threads)


def test_writer_excludes_readers() -> None:
    lock = ReadWriteLock()
    events = []
    lock.acquire_write()

    def reader() -> None:
        with lock.read_lock():
            events.append("read")

    t = threading.Thread(target=reader)
    t.start()
    time.sleep(0.05)
    events.append("write-done")
    lock.release_write()
    t.join(timeout=1.0)
    assert events == ["write-done", "read"]


def test_waiting_writer_blocks_new_readers() -> None:
    lock = ReadWriteLock()
    order = []
    lock.acquire_read()

    def writer() -> None:
        with lock.write_lock():
            order.append("write")

    def reader() -> None:
        with lock.read_lock():
            order.append("read")

    w = threading.Thread(target=writer)
    w.start()
    time.sleep(0.05)
    r = threading.Thread(target=reader)
    r.start()
    time.sleep(0.05)
    assert order == []
    lock.release_read()
    w.join(timeout=1.0)
    r.join(timeout=1.0)
    assert order == ["write", "read"]
