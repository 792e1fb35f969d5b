"""Tests for single instance locking."""

import os

import pytest

from syncloop.process_lock import ProcessLock


@pytest.fixture
def lock(config):
    lock = ProcessLock(config)
    yield lock
    lock.release()


def test_acquire_records_pid(lock):
    assert lock.acquire()

    assert lock.lock_file.read_text() == str(os.getpid())


def test_second_lock_is_refused(lock, config):
    assert lock.acquire()

    other = ProcessLock(config)
    assert other.acquire() is False
    assert other.is_locked()
    assert other.owner_pid() == os.getpid()


def test_release_allows_reacquire(lock, config):
    assert lock.acquire()
    lock.release()

    other = ProcessLock(config)
    assert not other.is_locked()
    assert other.owner_pid() is None
    assert other.acquire()
    other.release()


def test_is_process_running():
    assert ProcessLock.is_process_running(os.getpid())
