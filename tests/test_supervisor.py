from __future__ import annotations

import signal
import threading

import psutil
import pytest

from conftest import wait_until
from fcvm.errors import SpawnError
from fcvm.models import ExitKind, ExitStatus, HostConfig, VmPaths
from fcvm.orchestration.supervisor import ProcessSupervisor, firecracker_args


def _spawn(fake_firecracker_bin, short_dir, **kwargs):
    kwargs.setdefault("pid_file", short_dir / "vm.pid")
    kwargs.setdefault("console_log", short_dir / "vm.console.log")
    return ProcessSupervisor.spawn(fake_firecracker_bin, short_dir / "vm.socket", ["--id", "vm"], **kwargs)


def test_exit_status_classification():
    assert ExitStatus.from_returncode(0).kind is ExitKind.CLEAN
    assert ExitStatus.from_returncode(-9) == ExitStatus(ExitKind.SIGNAL, signal=9)
    assert ExitStatus.from_returncode(3) == ExitStatus(ExitKind.CRASH, code=3)


def test_missing_binary(short_dir):
    with pytest.raises(SpawnError, match="not found"):
        ProcessSupervisor.spawn(short_dir / "nope", short_dir / "vm.socket")
    assert not (short_dir / "vm.socket").exists()


def test_non_executable_binary(short_dir):
    binary = short_dir / "firecracker"
    binary.write_text("#!/bin/sh\n")
    binary.chmod(0o644)
    with pytest.raises(SpawnError, match="not executable"):
        ProcessSupervisor.spawn(binary, short_dir / "vm.socket")


def test_spawn_terminate_cleanup(fake_firecracker_bin, short_dir):
    stale = short_dir / "vm.socket"
    stale.write_text("stale")
    sup = _spawn(fake_firecracker_bin, short_dir)
    try:
        sup.wait_for_socket(10.0)
        assert sup.is_running()
        assert psutil.pid_exists(sup.pid)
        assert (short_dir / "vm.pid").read_text() == str(sup.pid)
        status = sup.terminate(grace_period=5.0)
        assert status.kind is ExitKind.SIGNAL
        assert status.signal == signal.SIGTERM
        assert not sup.is_running()
    finally:
        sup.terminate(0)
        sup.cleanup()
    assert not (short_dir / "vm.socket").exists()
    assert not (short_dir / "vm.pid").exists()
    assert not (short_dir / "vm.console.log").exists()
    sup.cleanup()


def test_keep_logs(fake_firecracker_bin, short_dir):
    console = short_dir / "vm.console.log"
    sup = _spawn(fake_firecracker_bin, short_dir, keep_logs=True)
    sup.wait_for_socket(10.0)
    assert wait_until(lambda: "listening" in console.read_text())
    sup.terminate(grace_period=5.0)
    sup.cleanup()
    assert console.exists()
    assert not (short_dir / "vm.socket").exists()


def test_log_file_is_created_before_spawn(fake_firecracker_bin, short_dir):
    log_file = short_dir / "logs" / "vm.log"
    sup = _spawn(fake_firecracker_bin, short_dir, log_file=log_file)
    try:
        assert log_file.exists()
    finally:
        sup.terminate(0)
        sup.cleanup()
    assert not log_file.exists()


def test_exit_before_socket_reports_output(fake_firecracker_bin, short_dir, monkeypatch):
    monkeypatch.setenv("FAKE_FC_EXIT_CODE", "3")
    sup = _spawn(fake_firecracker_bin, short_dir)
    try:
        with pytest.raises(SpawnError) as exc:
            sup.wait_for_socket(10.0)
        assert "CrashExit" in str(exc.value)
        assert "refusing to start" in str(exc.value)
        assert sup.exit_status == ExitStatus(ExitKind.CRASH, code=3)
    finally:
        sup.cleanup()


def test_socket_never_appears(fake_firecracker_bin, short_dir, monkeypatch):
    monkeypatch.setenv("FAKE_FC_NO_SOCKET", "1")
    sup = _spawn(fake_firecracker_bin, short_dir)
    try:
        with pytest.raises(SpawnError, match="did not appear"):
            sup.wait_for_socket(0.3)
    finally:
        sup.terminate(0)
        sup.cleanup()
    assert not sup.is_running()


def test_terminate_escalates_to_kill(fake_firecracker_bin, short_dir, monkeypatch):
    monkeypatch.setenv("FAKE_FC_IGNORE_SIGTERM", "1")
    sup = _spawn(fake_firecracker_bin, short_dir)
    try:
        sup.wait_for_socket(10.0)
        status = sup.terminate(grace_period=0.3)
        assert status == ExitStatus(ExitKind.SIGNAL, signal=signal.SIGKILL)
    finally:
        sup.cleanup()


def test_exit_callbacks(fake_firecracker_bin, short_dir):
    seen = []
    fired = threading.Event()

    def on_exit(status):
        seen.append(status)
        fired.set()

    sup = _spawn(fake_firecracker_bin, short_dir)
    sup.add_exit_callback(on_exit)
    sup.wait_for_socket(10.0)
    sup.terminate(grace_period=5.0)
    assert fired.wait(5.0)
    late = []
    sup.add_exit_callback(late.append)
    sup.cleanup()
    assert seen == late
    assert sup.wait(0) == seen[0]


def test_firecracker_args(short_dir):
    host = HostConfig(
        firecracker_bin=short_dir / "fc",
        run_dir=short_dir,
        log_level="Debug",
        boot_timer=True,
        no_seccomp=True,
        http_api_max_payload_size=51200,
        mmds_size_limit=102400,
        extra_args=["--show-level"],
    )
    paths = VmPaths(short_dir / "a.socket", short_dir / "a.pid", short_dir / "a.console.log", short_dir / "a.log")
    args = firecracker_args(host, "a", paths)
    assert args == [
        "--id", "a",
        "--log-path", str(short_dir / "a.log"),
        "--level", "Debug",
        "--boot-timer",
        "--no-seccomp",
        "--http-api-max-payload-size", "51200",
        "--mmds-size-limit", "102400",
        "--show-level",
    ]


def test_firecracker_args_range_checks(short_dir):
    paths = VmPaths(short_dir / "a.socket", short_dir / "a.pid", short_dir / "a.console.log")
    with pytest.raises(SpawnError):
        firecracker_args(HostConfig(short_dir / "fc", short_dir, http_api_max_payload_size=10), "a", paths)
    with pytest.raises(SpawnError):
        firecracker_args(HostConfig(short_dir / "fc", short_dir, mmds_size_limit=600_000_000), "a", paths)


def test_pid_file_failure_kills_child(fake_firecracker_bin, short_dir):
    pid_file = short_dir / "vm.pid"
    pid_file.mkdir()
    before = {p.pid for p in psutil.Process().children(recursive=True)}
    with pytest.raises(SpawnError, match="pid file"):
        _spawn(fake_firecracker_bin, short_dir, pid_file=pid_file)
    leftover = [p for p in psutil.Process().children(recursive=True) if p.pid not in before]
    assert leftover == []
    assert not (short_dir / "vm.socket").exists()
    assert not (short_dir / "vm.console.log").exists()


def test_unwritable_console_log_is_spawn_error(fake_firecracker_bin, short_dir):
    console = short_dir / "vm.console.log"
    console.mkdir()
    with pytest.raises(SpawnError, match="cannot prepare"):
        _spawn(fake_firecracker_bin, short_dir, console_log=console)
