#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Process supervisor for the hypervisor child.
Owns the child process from spawn to exit: reaps it on a background thread,
terminates it (signal, grace period, then kill) and removes the files it left behind.
"""
import contextlib
import logging
import os
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import psutil

from fcvm.errors import CleanupError, SpawnError
from fcvm.models import ExitStatus, HostConfig, VmPaths
from fcvm.utils.filesystem import unlink_all, unlink_quiet

logger = logging.getLogger("fcvm")

HTTP_API_MAX_PAYLOAD_MIN = 1024
HTTP_API_MAX_PAYLOAD_MAX = 10_000_000
MMDS_SIZE_LIMIT_MAX = 512_000_000

SOCKET_POLL_INITIAL = 0.01
SOCKET_POLL_MAX = 0.25
CONSOLE_TAIL_BYTES = 2048


def firecracker_args(host: HostConfig, vm_id: str, paths: VmPaths) -> List[str]:
    """Launch arguments for one VM, excluding `--api-sock`."""
    args = ["--id", vm_id]
    if paths.log_file is not None:
        args += ["--log-path", str(paths.log_file)]
        if host.log_level:
            args += ["--level", host.log_level]
    if host.boot_timer:
        args.append("--boot-timer")
    if host.no_seccomp:
        args.append("--no-seccomp")
    if host.http_api_max_payload_size is not None:
        size = host.http_api_max_payload_size
        if not HTTP_API_MAX_PAYLOAD_MIN <= size <= HTTP_API_MAX_PAYLOAD_MAX:
            raise SpawnError(
                f"http_api_max_payload_size {size} outside {HTTP_API_MAX_PAYLOAD_MIN}..{HTTP_API_MAX_PAYLOAD_MAX}"
            )
        args += ["--http-api-max-payload-size", str(size)]
    if host.mmds_size_limit is not None:
        if not 0 <= host.mmds_size_limit <= MMDS_SIZE_LIMIT_MAX:
            raise SpawnError(f"mmds_size_limit {host.mmds_size_limit} outside 0..{MMDS_SIZE_LIMIT_MAX}")
        args += ["--mmds-size-limit", str(host.mmds_size_limit)]
    return args + list(host.extra_args)


def _signal_number(sig) -> int:
    if isinstance(sig, str):
        name = sig.upper()
        if not name.startswith("SIG"):
            name = f"SIG{name}"
        return int(getattr(signal, name))
    return int(sig)


class ProcessSupervisor:
    """Owns one hypervisor child process."""

    def __init__(
        self,
        proc: subprocess.Popen,
        socket_path: Path,
        ephemeral: Sequence[Path] = (),
        console_log: Optional[Path] = None,
    ):
        self._proc = proc
        self.pid = proc.pid
        self.socket_path = Path(socket_path)
        self.console_log = console_log
        self._ephemeral = [Path(p) for p in ephemeral]
        try:
            self._ps: Optional[psutil.Process] = psutil.Process(proc.pid)
        except psutil.NoSuchProcess:
            self._ps = None
        self._exited = threading.Event()
        self._exit_status: Optional[ExitStatus] = None
        self._callbacks: List[Callable[[ExitStatus], None]] = []
        self._cb_lock = threading.Lock()
        self._cleaned = False
        self._reaper = threading.Thread(target=self._reap, name=f"fcvm-reaper-{proc.pid}", daemon=True)
        self._reaper.start()

    @classmethod
    def spawn(
        cls,
        binary_path: Path,
        socket_path: Path,
        extra_args: Sequence[str] = (),
        pid_file: Optional[Path] = None,
        console_log: Optional[Path] = None,
        log_file: Optional[Path] = None,
        keep_logs: bool = False,
    ) -> "ProcessSupervisor":
        """Start `binary_path --api-sock socket_path *extra_args`. Raises SpawnError."""
        binary = Path(binary_path)
        if not binary.is_file():
            raise SpawnError(f"Firecracker binary not found: {binary}")
        if not os.access(binary, os.X_OK):
            raise SpawnError(f"Firecracker binary is not executable: {binary}")
        socket_path = Path(socket_path)
        ephemeral: List[Path] = [socket_path]
        stdout = subprocess.DEVNULL
        console_fh = None
        try:
            socket_path.parent.mkdir(parents=True, exist_ok=True)
            # a stale socket would let us connect to a dead listener
            unlink_quiet(socket_path)
            if log_file is not None:
                # the hypervisor refuses to start if --log-path does not exist
                log_file.parent.mkdir(parents=True, exist_ok=True)
                log_file.touch(exist_ok=True)
                log_file.chmod(0o644)
                if not keep_logs:
                    ephemeral.append(log_file)
            if console_log is not None:
                console_log.parent.mkdir(parents=True, exist_ok=True)
                console_fh = console_log.open("ab")
                stdout = console_fh
                if not keep_logs:
                    ephemeral.append(console_log)
        except OSError as e:
            with contextlib.suppress(OSError):
                unlink_all(ephemeral)
            raise SpawnError(f"cannot prepare files for {binary}: {e}") from e

        cmd = [str(binary), "--api-sock", str(socket_path), *extra_args]
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=stdout,
                stderr=subprocess.STDOUT,
                close_fds=True,
                start_new_session=True,
            )
        except OSError as e:
            # unlink_all logs what it could not remove
            with contextlib.suppress(OSError):
                unlink_all(ephemeral)
            raise SpawnError(f"failed to spawn {binary}: {e}") from e
        finally:
            # the child holds its own descriptor
            if console_fh is not None:
                console_fh.close()
        logger.info("firecracker started (pid=%s) socket=%s", proc.pid, socket_path)

        if pid_file is not None:
            try:
                pid_file.parent.mkdir(parents=True, exist_ok=True)
                pid_file.write_text(str(proc.pid))
            except OSError as e:
                # nobody else knows about this child yet
                proc.kill()
                proc.wait()
                with contextlib.suppress(OSError):
                    unlink_all(ephemeral)
                raise SpawnError(f"failed to write pid file {pid_file}: {e}") from e
            ephemeral.append(pid_file)
        return cls(proc, socket_path, ephemeral=ephemeral, console_log=console_log)

    @property
    def exit_status(self) -> Optional[ExitStatus]:
        return self._exit_status

    def is_running(self) -> bool:
        return not self._exited.is_set()

    def add_exit_callback(self, callback: Callable[[ExitStatus], None]) -> None:
        """Call `callback(status)` once the child exits (immediately if it already has)."""
        with self._cb_lock:
            if self._exit_status is None:
                self._callbacks.append(callback)
                return
        callback(self._exit_status)

    def _reap(self) -> None:
        returncode = self._proc.wait()
        status = ExitStatus.from_returncode(returncode)
        with self._cb_lock:
            self._exit_status = status
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        self._exited.set()
        logger.info("firecracker pid=%s exited: %s", self.pid, status.kind.value)
        for cb in callbacks:
            try:
                cb(status)
            except Exception:
                logger.exception("exit callback failed for pid=%s", self.pid)

    def wait(self, timeout: Optional[float] = None) -> Optional[ExitStatus]:
        """Block until the child exits. Returns None if `timeout` expires first."""
        if not self._exited.wait(timeout):
            return None
        return self._exit_status

    def wait_for_socket(self, timeout: float) -> None:
        """Poll for the API socket with exponential backoff. Raises SpawnError."""
        deadline = time.monotonic() + timeout
        delay = SOCKET_POLL_INITIAL
        while True:
            if self.socket_path.exists():
                return
            if self._exited.is_set():
                raise SpawnError(
                    f"firecracker exited ({self._exit_status.kind.value}) before creating "
                    f"{self.socket_path}{self._console_tail()}"
                )
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise SpawnError(f"API socket {self.socket_path} did not appear within {timeout:.1f}s")
            time.sleep(min(delay, remaining))
            delay = min(delay * 2, SOCKET_POLL_MAX)

    def _console_tail(self) -> str:
        if self.console_log is None:
            return ""
        try:
            with self.console_log.open("rb") as f:
                f.seek(0, os.SEEK_END)
                f.seek(max(f.tell() - CONSOLE_TAIL_BYTES, 0))
                tail = f.read().decode("utf-8", errors="replace").strip()
        except OSError:
            return ""
        return f"; output: {tail}" if tail else ""

    def _send(self, sig: int) -> None:
        if self._exited.is_set() or self._ps is None:
            return
        try:
            self._ps.send_signal(sig)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            pass

    def terminate(self, grace_period: float, stop_signal="SIGTERM", kill_timeout: float = 5.0) -> Optional[ExitStatus]:
        """Signal the child, wait `grace_period`, then SIGKILL. Returns the exit status."""
        if self._exited.is_set():
            return self._exit_status
        sig = _signal_number(stop_signal)
        logger.info("terminating firecracker pid=%s with signal %d", self.pid, sig)
        self._send(sig)
        if self._exited.wait(max(grace_period, 0)):
            return self._exit_status
        logger.warning("firecracker pid=%s still alive after %.1fs, killing", self.pid, grace_period)
        self._send(signal.SIGKILL)
        if not self._exited.wait(kill_timeout):
            logger.error("firecracker pid=%s did not exit after SIGKILL", self.pid)
            return None
        return self._exit_status

    def cleanup(self) -> None:
        """Remove the socket and every ephemeral file. Idempotent. Raises CleanupError."""
        if self._cleaned:
            return
        self._cleaned = True
        try:
            unlink_all(self._ephemeral)
        except OSError as e:
            raise CleanupError(f"cleanup for pid={self.pid} incomplete: {e}") from e
