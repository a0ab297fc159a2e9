#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Live representation of one microVM.
A VMHandle owns the hypervisor child process, its control connection and its state.
Releasing a handle terminates the process and removes its files exactly once.
"""
import logging
import threading
from typing import Optional

from fcvm.api import FirecrackerClient, UnixTransport
from fcvm.errors import CleanupError
from fcvm.models import InstanceInfo, VmPaths, VmSpec, VmState
from fcvm.state import StateManager
from .supervisor import ProcessSupervisor

logger = logging.getLogger("fcvm")


class VMHandle:
    def __init__(self, vm_id: str, spec: VmSpec, paths: VmPaths, supervisor: ProcessSupervisor):
        self.vm_id = vm_id
        # kept for diagnostics, never re-submitted
        self.spec = spec
        self.paths = paths
        self.supervisor = supervisor
        self.state = StateManager(vm_id)
        self.transport: Optional[UnixTransport] = None
        self.client: Optional[FirecrackerClient] = None
        self.instance_info: Optional[InstanceInfo] = None
        # serializes lifecycle operations on this handle
        self.op_lock = threading.RLock()
        self._release_lock = threading.Lock()
        self._released = False

    def __repr__(self) -> str:
        return f"VMHandle(vm_id={self.vm_id!r}, state={self.state.state.value}, pid={self.supervisor.pid})"

    @property
    def released(self) -> bool:
        return self._released

    def attach(self, transport: UnixTransport) -> None:
        self.transport = transport
        self.client = FirecrackerClient(transport)

    def get_state(self) -> VmState:
        return self.state.state

    def abort_transport(self, reason: str) -> None:
        """Break the connection so any in-flight call fails with Disconnected."""
        if self.transport is not None:
            self.transport.abort(reason)

    def release(self, grace_period: float = 0.0, stop_signal="SIGTERM", kill_timeout: float = 5.0) -> bool:
        """Terminate the process, close the connection and remove files.

        Runs once; later calls return False. Cleanup problems are logged, not raised.
        """
        # held for the whole teardown; concurrent callers block until it completes
        with self._release_lock:
            if self._released:
                return False
            self._released = True
            if self.transport is not None:
                self.transport.close()
            status = self.supervisor.terminate(grace_period, stop_signal=stop_signal, kill_timeout=kill_timeout)
            if status is None:
                logger.error("vm=%s: process pid=%s survived termination", self.vm_id, self.supervisor.pid)
            try:
                self.supervisor.cleanup()
            except CleanupError as e:
                logger.warning("vm=%s: %s", self.vm_id, e)
        logger.info("vm=%s released", self.vm_id)
        return True
