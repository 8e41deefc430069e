from __future__ import annotations

import fcntl
import os
import shutil
import subprocess
import threading
from pathlib import Path
from typing import Iterator

import pytest

import update_core
from update_core import acquire_run_lock, get_pid, is_run_locked, release_run_lock


@pytest.fixture(autouse=True)
def _release_locks() -> Iterator[None]:
    yield
    for key in list(update_core._LOCK_HANDLES):
        release_run_lock(key)


@pytest.fixture
def pid_file(tmp_path: Path) -> Path:
    return tmp_path / "state" / "update_on_idle.pid"


def test_acquire_and_release(pid_file: Path) -> None:
    assert not is_run_locked(pid_file)

    assert acquire_run_lock(pid_file)
    assert get_pid(pid_file) == os.getpid()
    assert is_run_locked(pid_file)

    release_run_lock(pid_file)
    assert pid_file.exists()
    assert get_pid(pid_file) is None
    assert not is_run_locked(pid_file)
    assert acquire_run_lock(pid_file)


def test_leftover_pid_file_without_lock_is_taken(pid_file: Path) -> None:
    pid_file.parent.mkdir(parents=True)
    pid_file.write_text("424242", encoding="utf-8")

    assert not is_run_locked(pid_file)
    assert acquire_run_lock(pid_file)
    assert get_pid(pid_file) == os.getpid()


def test_second_acquire_in_same_process_fails(pid_file: Path) -> None:
    assert acquire_run_lock(pid_file)
    assert not acquire_run_lock(pid_file)
    assert get_pid(pid_file) == os.getpid()


@pytest.mark.skipif(shutil.which("bash") is None, reason="needs bash")
def test_lock_held_by_another_updater_process_blocks(pid_file: Path) -> None:
    pid_file.parent.mkdir(parents=True)
    handle = open(pid_file, "a+")
    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    # The child shares the locked file description under the console-script name
    child = subprocess.Popen(
        ["bash", "-c", "exec -a update-on-idle sleep 30"],
        pass_fds=[handle.fileno()],
    )
    handle.write(str(child.pid))
    handle.close()
    try:
        assert is_run_locked(pid_file)
        assert not acquire_run_lock(pid_file)
        assert get_pid(pid_file) == child.pid
    finally:
        child.kill()
        child.wait()

    assert not is_run_locked(pid_file)
    assert acquire_run_lock(pid_file)


def test_concurrent_acquire_has_one_winner(pid_file: Path) -> None:
    pid_file.parent.mkdir(parents=True)
    workers = 8
    barrier = threading.Barrier(workers)
    results: list[bool] = []

    def contend() -> None:
        barrier.wait()
        results.append(acquire_run_lock(pid_file))

    threads = [threading.Thread(target=contend) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count(True) == 1
    assert get_pid(pid_file) == os.getpid()


def test_garbage_pid_file(pid_file: Path) -> None:
    pid_file.parent.mkdir(parents=True)
    pid_file.write_text("not a pid", encoding="utf-8")

    assert get_pid(pid_file) is None
    assert acquire_run_lock(pid_file)


def test_release_without_lock_is_a_no_op(pid_file: Path) -> None:
    pid_file.parent.mkdir(parents=True)
    pid_file.write_text("424242", encoding="utf-8")

    release_run_lock(pid_file)
    assert get_pid(pid_file) == 424242
