"""Tests for memtier.locks.KeyedLock."""

import threading

import pytest

from memtier.locks import KeyedLock
from memtier.protocols import ConsolidationInProgress, LockTimeout


def test_same_key_is_exclusive():
    locks = KeyedLock()
    with locks.hold("k"):
        assert locks.locked("k")
        with pytest.raises(LockTimeout) as exc_info:
            with locks.hold("k", timeout=0):
                pass
        assert exc_info.value.key == "k"
    assert not locks.locked("k")


def test_different_keys_are_independent():
    locks = KeyedLock()
    with locks.hold(("acme", "u1")):
        with locks.hold(("acme", "u2"), timeout=0):
            assert locks.locked(("acme", "u1"))
            assert locks.locked(("acme", "u2"))


def test_entries_are_released():
    locks = KeyedLock()
    with locks.hold("a"):
        with locks.hold("b"):
            assert len(locks) == 2
    assert len(locks) == 0


def test_error_factory():
    locks = KeyedLock()
    with locks.hold("acme"):
        with pytest.raises(ConsolidationInProgress) as exc_info:
            with locks.hold("acme", timeout=0, error_factory=ConsolidationInProgress):
                pass
    assert exc_info.value.tenant_id == "acme"
    assert len(locks) == 0


def test_timeout_waits_then_fails():
    locks = KeyedLock()
    held = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold("k"):
            held.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert held.wait(5)
        with pytest.raises(LockTimeout):
            with locks.hold("k", timeout=0.05):
                pass
    finally:
        release.set()
        thread.join(5)

    with locks.hold("k", timeout=1):
        pass


def test_serializes_critical_section():
    locks = KeyedLock()
    counter = {"value": 0}

    def work():
        for _ in range(200):
            with locks.hold("counter"):
                current = counter["value"]
                counter["value"] = current + 1

    threads = [threading.Thread(target=work) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert counter["value"] == 800
    assert len(locks) == 0
