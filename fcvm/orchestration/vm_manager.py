#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
VM Manager module for fcvm.
This module drives microVMs through their lifecycle (create, configure, boot,
pause, resume, snapshot, restore, stop, destroy) and tears a VM down whenever it fails.
"""
import contextlib
import dataclasses
import logging
import threading
import time
import uuid
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set

from fcvm.api import UnixTransport
from fcvm.config import build_spec
from fcvm.errors import (
    AlreadyBooted,
    ApiError,
    ConnectError,
    ConnectFailure,
    FcvmError,
    FieldError,
    InvalidTransition,
    OperationTimeout,
    SpawnError,
    TransportError,
    TransportTimeout,
    ValidationError,
)
from fcvm.models import (
    ExitStatus,
    GuestAction,
    HostConfig,
    InstanceInfo,
    RateLimiter,
    SnapshotCreateParams,
    SnapshotLoadParams,
    SnapshotType,
    VmSpec,
    VmState,
    VmStateTarget,
)
from fcvm.state import EXIT_EXPECTED_STATES
from fcvm.utils import filesystem
from fcvm.utils.network import missing_taps
from .handle import VMHandle
from .supervisor import ProcessSupervisor, firecracker_args

logger = logging.getLogger("fcvm")

CONNECT_RETRY_INITIAL = 0.01
CONNECT_RETRY_MAX = 0.2


class _Deadline:
    """Optional absolute deadline for one lifecycle operation."""

    def __init__(self, timeout: Optional[float]):
        self.timeout = timeout
        self.expires = None if timeout is None else time.monotonic() + timeout
        # set once a call timeout was shortened to fit the deadline
        self.capped = False

    def remaining(self) -> Optional[float]:
        if self.expires is None:
            return None
        return self.expires - time.monotonic()

    def expired(self) -> bool:
        return self.expires is not None and time.monotonic() >= self.expires

    def cap(self, value: float) -> float:
        remaining = self.remaining()
        if remaining is None or remaining >= value:
            return value
        self.capped = True
        return max(remaining, 0.001)

    def check(self, operation: str, vm_id: str) -> None:
        if self.expired():
            raise OperationTimeout(f"{operation} on vm={vm_id} exceeded {self.timeout:.1f}s")


class VMManager:
    """Manager for microVM lifecycle operations.

    Every handle created here is owned by this manager until `destroy`. Use the
    manager as a context manager to destroy every remaining handle on exit.
    """

    def __init__(self, host_config: HostConfig):
        self.host = host_config
        self._lock = threading.Lock()
        self._handles: Dict[str, VMHandle] = {}
        self._pending: Set[str] = set()

    def __enter__(self) -> "VMManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy_all()

    # create

    def create(self, spec: VmSpec, timeout: Optional[float] = None) -> VMHandle:
        """Validate `spec`, spawn the hypervisor and connect to it. Returns a handle in Created."""
        deadline = _Deadline(timeout)
        if not spec.validated:
            spec = build_spec(spec, min_mem_mib=self.host.min_mem_mib, max_vcpus=self.host.max_vcpus)
        vm_id = spec.vm_id or f"vm-{uuid.uuid4().hex[:12]}"
        if spec.vm_id is None:
            spec = dataclasses.replace(spec, vm_id=vm_id)
        with self._lock:
            if vm_id in self._handles or vm_id in self._pending:
                raise ValidationError([FieldError("vm_id", f"'{vm_id}' is already in use")])
            self._pending.add(vm_id)
        try:
            return self._create(spec, vm_id, deadline)
        finally:
            with self._lock:
                self._pending.discard(vm_id)

    def _create(self, spec: VmSpec, vm_id: str, deadline: _Deadline) -> VMHandle:
        paths = filesystem.paths(self.host, vm_id)
        if not filesystem.socket_path_fits(paths.socket_file):
            raise ValidationError(
                [FieldError("vm_id", f"socket path {paths.socket_file} exceeds {filesystem.MAX_SOCKET_PATH} bytes")]
            )
        if self.host.check_tap_devices and spec.network_interfaces:
            missing = missing_taps(n.host_dev_name for n in spec.network_interfaces)
            if missing:
                raise ValidationError(
                    [FieldError("network_interfaces.host_dev_name", f"tap device '{m}' does not exist") for m in missing]
                )
        if spec.logger is not None and paths.log_file is not None:
            # the hypervisor accepts a single logger configuration
            raise ValidationError(
                [FieldError("logger", f"host log_dir already sends the hypervisor log to {paths.log_file}")]
            )
        args = firecracker_args(self.host, vm_id, paths)

        try:
            filesystem.ensure_dirs(paths)
        except OSError as e:
            raise SpawnError(f"cannot create runtime directories for vm={vm_id}: {e}") from e
        supervisor = ProcessSupervisor.spawn(
            self.host.firecracker_bin,
            paths.socket_file,
            args,
            pid_file=paths.pid_file,
            console_log=paths.console_log,
            log_file=paths.log_file,
            keep_logs=self.host.keep_logs,
        )
        handle = VMHandle(vm_id, spec, paths, supervisor)
        with self._lock:
            self._handles[vm_id] = handle
        supervisor.add_exit_callback(lambda status: self._on_exit(handle, status))
        try:
            self._connect(handle, deadline)
            handle.instance_info = handle.client.get_instance_info(timeout=deadline.cap(self.host.request_timeout))
        except (FcvmError, OSError) as e:
            self._fail(handle, f"create: {e}")
            with self._lock:
                self._handles.pop(vm_id, None)
            if deadline.expired():
                raise OperationTimeout(f"create of vm={vm_id} exceeded {deadline.timeout:.1f}s") from e
            raise
        logger.info("vm=%s created (pid=%s)", vm_id, supervisor.pid)
        return handle

    def _connect(self, handle: VMHandle, deadline: _Deadline) -> None:
        """Wait for the API socket, then connect, retrying refusals within the socket window."""
        window = _Deadline(deadline.cap(self.host.socket_timeout))
        handle.supervisor.wait_for_socket(window.cap(self.host.socket_timeout))
        delay = CONNECT_RETRY_INITIAL
        while True:
            try:
                transport = UnixTransport.connect(
                    handle.paths.socket_file,
                    timeout=window.cap(self.host.socket_timeout),
                    request_timeout=self.host.request_timeout,
                )
                break
            except ConnectError as e:
                # the socket file exists slightly before the listener accepts
                if e.reason is not ConnectFailure.REFUSED or window.expired() or not handle.supervisor.is_running():
                    raise
            time.sleep(min(delay, max(window.remaining() or 0, 0)))
            delay = min(delay * 2, CONNECT_RETRY_MAX)
        handle.attach(transport)

    # failure handling

    def _on_exit(self, handle: VMHandle, status: ExitStatus) -> None:
        """Exit watcher, runs on the supervisor's reaper thread."""
        detail = f"code={status.code}" if status.signal is None else f"signal={status.signal}"
        reason = f"hypervisor exited unexpectedly ({status.kind.value}, {detail})"
        if not handle.state.fail(reason, spare=EXIT_EXPECTED_STATES):
            return
        handle.abort_transport(reason)
        handle.release(kill_timeout=self.host.kill_timeout)

    def _fail(self, handle: VMHandle, reason: str) -> None:
        handle.state.fail(reason)
        handle.release(stop_signal=self.host.stop_signal, kill_timeout=self.host.kill_timeout)

    @contextlib.contextmanager
    def _guard(self, handle: VMHandle, operation: str, deadline: _Deadline, fatal_api: bool = True) -> Iterator[None]:
        """Fail and tear down the handle when the wrapped calls fail.

        Transport errors are always fatal since the connection is no longer usable.
        ApiError is fatal only when `fatal_api` is set.
        """
        try:
            yield
        except AlreadyBooted:
            raise
        except ApiError:
            if fatal_api:
                self._fail(handle, f"{operation} rejected")
            raise
        except TransportTimeout as e:
            self._fail(handle, f"{operation}: {e}")
            if deadline.capped or deadline.expired():
                raise OperationTimeout(f"{operation} on vm={handle.vm_id} exceeded {deadline.timeout:.1f}s") from e
            raise
        except (FcvmError, OSError) as e:
            self._fail(handle, f"{operation}: {e}")
            raise

    def _client(self, handle: VMHandle, operation: str):
        if handle.client is None or handle.released:
            raise InvalidTransition(handle.state.state, operation)
        return handle.client

    # lifecycle

    def configure(self, handle: VMHandle, timeout: Optional[float] = None) -> None:
        """Issue every pre-boot setting in declaration order. Leaves the handle ready to boot."""
        deadline = _Deadline(timeout)
        with handle.op_lock:
            handle.state.require("configure", VmState.CREATED)
            client = self._client(handle, "configure")
            handle.state.transition(VmState.CONFIGURING)
            with self._guard(handle, "configure", deadline):
                self._issue_config(handle, client, deadline)
            handle.state.configured = True
            logger.info("vm=%s configured", handle.vm_id)

    def _issue_config(self, handle: VMHandle, client, deadline: _Deadline) -> None:
        spec = handle.spec
        vm_id = handle.vm_id

        def t() -> float:
            deadline.check("configure", vm_id)
            return deadline.cap(self.host.request_timeout)

        client.put_machine_config(spec.machine, timeout=t())
        client.put_boot_source(spec.boot_source, timeout=t())
        seen = set()
        for i, drive in enumerate(spec.drives):
            if drive.drive_id in seen:
                raise ValidationError([FieldError(f"drives[{i}].drive_id", f"duplicate drive id '{drive.drive_id}'")])
            seen.add(drive.drive_id)
            client.put_drive(drive.drive_id, drive, timeout=t())
        seen = set()
        for i, iface in enumerate(spec.network_interfaces):
            if iface.iface_id in seen:
                raise ValidationError(
                    [FieldError(f"network_interfaces[{i}].iface_id", f"duplicate interface id '{iface.iface_id}'")]
                )
            seen.add(iface.iface_id)
            client.put_network_interface(iface.iface_id, iface, timeout=t())
        if spec.vsock is not None:
            client.put_vsock(spec.vsock, timeout=t())
        if spec.balloon is not None:
            client.put_balloon(spec.balloon, timeout=t())
        if spec.mmds is not None:
            client.put_mmds_config(spec.mmds, timeout=t())
            if spec.mmds.metadata is not None:
                client.put_mmds(spec.mmds.metadata, timeout=t())
        if spec.logger is not None:
            client.put_logger(spec.logger, timeout=t())
        if spec.metrics is not None:
            client.put_metrics(spec.metrics, timeout=t())
        if spec.entropy is not None:
            client.put_entropy(spec.entropy, timeout=t())

    def boot(self, handle: VMHandle, timeout: Optional[float] = None) -> None:
        """Start the guest. Configures first when called from Created."""
        deadline = _Deadline(timeout)
        with handle.op_lock:
            if handle.state.state in (VmState.RUNNING, VmState.PAUSED):
                raise AlreadyBooted(f"vm={handle.vm_id} is already {handle.state.state.value}")
            if handle.state.state is VmState.CREATED:
                self.configure(handle, timeout=deadline.remaining())
            handle.state.require("boot", VmState.CONFIGURING)
            if not handle.state.configured:
                raise InvalidTransition(handle.state.state, "boot before configuration completed")
            client = self._client(handle, "boot")
            handle.state.transition(VmState.BOOTING)
            try:
                with self._guard(handle, "boot", deadline):
                    deadline.check("boot", handle.vm_id)
                    client.start_instance(timeout=deadline.cap(self.host.request_timeout))
            except AlreadyBooted:
                handle.state.transition(VmState.RUNNING)
                raise
            handle.state.transition(VmState.RUNNING)
            logger.info("vm=%s booted", handle.vm_id)

    def pause(self, handle: VMHandle, timeout: Optional[float] = None) -> None:
        with handle.op_lock:
            handle.state.require("pause", VmState.RUNNING)
            client = self._client(handle, "pause")
            deadline = _Deadline(timeout)
            with self._guard(handle, "pause", deadline, fatal_api=False):
                client.patch_vm_state(VmStateTarget.PAUSED, timeout=deadline.cap(self.host.request_timeout))
            handle.state.transition(VmState.PAUSED)

    def resume(self, handle: VMHandle, timeout: Optional[float] = None) -> None:
        with handle.op_lock:
            handle.state.require("resume", VmState.PAUSED)
            client = self._client(handle, "resume")
            deadline = _Deadline(timeout)
            with self._guard(handle, "resume", deadline, fatal_api=False):
                client.patch_vm_state(VmStateTarget.RESUMED, timeout=deadline.cap(self.host.request_timeout))
            handle.state.transition(VmState.RUNNING)

    def snapshot(
        self,
        handle: VMHandle,
        snapshot_path,
        mem_file_path,
        snapshot_type: SnapshotType = SnapshotType.FULL,
        timeout: Optional[float] = None,
    ) -> SnapshotCreateParams:
        """Write guest state and memory of a paused VM to disk. The VM stays paused."""
        params = SnapshotCreateParams(Path(snapshot_path), Path(mem_file_path), SnapshotType(snapshot_type))
        with handle.op_lock:
            handle.state.require("snapshot", VmState.PAUSED)
            client = self._client(handle, "snapshot")
            deadline = _Deadline(timeout)
            with self._guard(handle, "snapshot", deadline, fatal_api=False):
                client.put_snapshot_create(params, timeout=deadline.cap(self.host.request_timeout))
            logger.info("vm=%s snapshot written to %s", handle.vm_id, params.snapshot_path)
            return params

    def restore(self, handle: VMHandle, params: SnapshotLoadParams, timeout: Optional[float] = None) -> None:
        """Load a snapshot into a freshly created handle instead of configuring and booting it.

        The handle ends in Running when `params.resume_vm` is set and in Paused otherwise.
        Devices come from the snapshot, the handle's spec is not issued.
        """
        deadline = _Deadline(timeout)
        with handle.op_lock:
            handle.state.require("restore", VmState.CREATED)
            client = self._client(handle, "restore")
            handle.state.transition(VmState.CONFIGURING)
            handle.state.transition(VmState.BOOTING)
            with self._guard(handle, "restore", deadline):
                deadline.check("restore", handle.vm_id)
                client.put_snapshot_load(params, timeout=deadline.cap(self.host.request_timeout))
            handle.state.configured = True
            handle.state.transition(VmState.RUNNING)
            if not params.resume_vm:
                handle.state.transition(VmState.PAUSED)
            logger.info("vm=%s restored from %s", handle.vm_id, params.snapshot_path)

    def stop(self, handle: VMHandle, grace_period: Optional[float] = None, timeout: Optional[float] = None) -> None:
        """Ask the guest to shut down, then terminate the process if it has not exited within `grace_period`."""
        grace = self.host.grace_period if grace_period is None else grace_period
        deadline = _Deadline(timeout)
        with handle.op_lock:
            client = self._client(handle, "stop")
            previous = handle.state.advance("stop", VmState.STOPPING, VmState.RUNNING, VmState.PAUSED)
            try:
                if previous is VmState.PAUSED:
                    client.patch_vm_state(VmStateTarget.RESUMED, timeout=deadline.cap(self.host.request_timeout))
                if self.host.shutdown_action:
                    action = GuestAction(self.host.shutdown_action)
                    client.put_guest_action(action, timeout=deadline.cap(self.host.request_timeout))
            except (ApiError, TransportError) as e:
                logger.warning("vm=%s: graceful shutdown request failed (%s), terminating", handle.vm_id, e)
            status = handle.supervisor.wait(deadline.cap(grace))
            if status is None:
                if deadline.capped or deadline.expired():
                    self._fail(handle, "stop timed out")
                    raise OperationTimeout(f"stop of vm={handle.vm_id} exceeded {timeout:.1f}s")
                logger.info("vm=%s: guest did not exit within %.1fs, terminating", handle.vm_id, grace)
            handle.release(
                grace_period=deadline.cap(self.host.kill_timeout),
                stop_signal=self.host.stop_signal,
                kill_timeout=self.host.kill_timeout,
            )
            handle.state.transition(VmState.STOPPED)
            logger.info("vm=%s stopped", handle.vm_id)

    def destroy(self, handle: VMHandle) -> None:
        """Terminate and clean up from any state. Idempotent, never raises for cleanup problems."""
        with handle.op_lock:
            # a crash seen by the exit watcher leaves Failed in place
            handle.state.begin_stop()
            handle.release(stop_signal=self.host.stop_signal, kill_timeout=self.host.kill_timeout)
            handle.state.finish_stop()
        with self._lock:
            if self._handles.get(handle.vm_id) is handle:
                del self._handles[handle.vm_id]

    # queries and post-boot updates

    def get_state(self, handle: VMHandle) -> VmState:
        return handle.get_state()

    def get_instance_info(self, handle: VMHandle, timeout: Optional[float] = None) -> InstanceInfo:
        with handle.op_lock:
            client = self._client(handle, "query instance info")
            deadline = _Deadline(timeout)
            with self._guard(handle, "get_instance_info", deadline, fatal_api=False):
                info = client.get_instance_info(timeout=deadline.cap(self.host.request_timeout))
            handle.instance_info = info
            return info

    def update_drive(
        self,
        handle: VMHandle,
        drive_id: str,
        path_on_host=None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: Optional[float] = None,
    ) -> None:
        with handle.op_lock:
            handle.state.require("update drive", VmState.RUNNING, VmState.PAUSED)
            client = self._client(handle, "update drive")
            deadline = _Deadline(timeout)
            with self._guard(handle, "update_drive", deadline, fatal_api=False):
                client.patch_drive(
                    drive_id,
                    path_on_host=path_on_host,
                    rate_limiter=rate_limiter,
                    timeout=deadline.cap(self.host.request_timeout),
                )

    def update_network_interface(
        self,
        handle: VMHandle,
        iface_id: str,
        rx_rate_limiter: Optional[RateLimiter] = None,
        tx_rate_limiter: Optional[RateLimiter] = None,
        timeout: Optional[float] = None,
    ) -> None:
        with handle.op_lock:
            handle.state.require("update network interface", VmState.RUNNING, VmState.PAUSED)
            client = self._client(handle, "update network interface")
            deadline = _Deadline(timeout)
            with self._guard(handle, "update_network_interface", deadline, fatal_api=False):
                client.patch_network_interface(
                    iface_id,
                    rx_rate_limiter=rx_rate_limiter,
                    tx_rate_limiter=tx_rate_limiter,
                    timeout=deadline.cap(self.host.request_timeout),
                )

    def update_balloon(self, handle: VMHandle, amount_mib: int, timeout: Optional[float] = None) -> None:
        with handle.op_lock:
            handle.state.require("update balloon", VmState.RUNNING, VmState.PAUSED)
            client = self._client(handle, "update balloon")
            deadline = _Deadline(timeout)
            with self._guard(handle, "update_balloon", deadline, fatal_api=False):
                client.patch_balloon(amount_mib, timeout=deadline.cap(self.host.request_timeout))

    def list_handles(self) -> List[VMHandle]:
        with self._lock:
            return list(self._handles.values())

    def destroy_all(self) -> None:
        for handle in self.list_handles():
            try:
                self.destroy(handle)
            except FcvmError as e:
                logger.error("vm=%s: destroy failed: %s", handle.vm_id, e)
