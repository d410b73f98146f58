"""Tests for hostcore port allocation."""

import json
import socket
import threading

import pytest

from hostcore.errors import NoPortAvailable
from hostcore.network import MIN_SAFE_PORT, PortAllocator, check_port


def _free_block(size: int, start: int = 45000) -> int:
    """First port of ``size`` consecutive bindable ports."""
    port = start
    while port + size < 65000:
        if all(check_port(p) for p in range(port, port + size)):
            return port
        port += size
    pytest.skip("no free port block available")


def test_allocate_within_range_and_ascending(tmp_path):
    start = _free_block(5)
    allocator = PortAllocator(tmp_path / "ports.json", start, start + 4)

    first = allocator.allocate("a")
    second = allocator.allocate("b")

    assert first == start
    assert second == start + 1
    assert allocator.list_used() == {first, second}


def test_ledger_is_persisted(tmp_path):
    start = _free_block(3)
    ledger = tmp_path / "ports.json"
    allocator = PortAllocator(ledger, start, start + 2)
    port = allocator.allocate("a")

    data = json.loads(ledger.read_text())
    assert data["used_ports"] == [port]
    assert data["port_range"] == {"min": start, "max": start + 2}

    reloaded = PortAllocator(ledger, start, start + 2)
    assert reloaded.list_used() == {port}
    assert reloaded.allocate("b") == start + 1


def test_skips_ports_in_ledger(tmp_path):
    start = _free_block(3)
    ledger = tmp_path / "ports.json"
    ledger.write_text(json.dumps({"used_ports": [start], "port_range": {"min": start, "max": start + 2}}))

    allocator = PortAllocator(ledger, start, start + 2)
    assert allocator.allocate("a") == start + 1


def test_skips_port_that_is_bound_outside_the_ledger(tmp_path):
    start = _free_block(3)
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", start))
        s.listen(1)
        allocator = PortAllocator(tmp_path / "ports.json", start, start + 2)
        assert allocator.allocate("a") == start + 1


def test_exhaustion_raises_without_growing(tmp_path):
    start = _free_block(2)
    allocator = PortAllocator(tmp_path / "ports.json", start, start + 1)
    allocator.allocate("a")
    allocator.allocate("b")

    with pytest.raises(NoPortAvailable):
        allocator.allocate("c")
    assert allocator.list_used() == {start, start + 1}


def test_release_then_allocate_reuses_port(tmp_path):
    start = _free_block(3)
    allocator = PortAllocator(tmp_path / "ports.json", start, start + 2)
    ports = [allocator.allocate(str(i)) for i in range(3)]

    allocator.release(ports[0])
    assert allocator.allocate("again") == ports[0]


def test_release_unallocated_port_is_noop(tmp_path):
    start = _free_block(2)
    ledger = tmp_path / "ports.json"
    allocator = PortAllocator(ledger, start, start + 1)
    allocator.allocate("a")
    before = ledger.read_text()

    allocator.release(start + 1)
    allocator.release(start + 1)
    allocator.release(None)

    assert ledger.read_text() == before
    assert allocator.list_used() == {start}


def test_concurrent_allocations_never_collide(tmp_path):
    start = _free_block(20)
    allocator = PortAllocator(tmp_path / "ports.json", start, start + 19)
    results: list[int] = []
    lock = threading.Lock()

    def worker(i: int) -> None:
        port = allocator.allocate(f"app-{i}")
        with lock:
            results.append(port)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 20
    assert len(set(results)) == 20
    assert all(start <= p <= start + 19 for p in results)


def test_corrupt_ledger_starts_empty(tmp_path):
    start = _free_block(2)
    ledger = tmp_path / "ports.json"
    ledger.write_text("{not json")

    allocator = PortAllocator(ledger, start, start + 1)
    assert allocator.list_used() == set()
    allocator.allocate("a")
    assert json.loads(ledger.read_text())["used_ports"] == [start]


def test_privileged_ports_are_clamped(tmp_path):
    allocator = PortAllocator(tmp_path / "ports.json", 80, 2000)
    assert allocator.port_min == MIN_SAFE_PORT


def test_invalid_range_rejected(tmp_path):
    with pytest.raises(ValueError):
        PortAllocator(tmp_path / "ports.json", 5000, 4000)
