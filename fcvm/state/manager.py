#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
State management module for fcvm.
This module holds the closed VmState transition table and the per-handle state holder.
"""
import logging
import threading
import time
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from fcvm.errors import InvalidTransition
from fcvm.models import VmState

logger = logging.getLogger("fcvm")

_TRANSITIONS: Dict[VmState, FrozenSet[VmState]] = {
    VmState.CREATED: frozenset({VmState.CONFIGURING, VmState.STOPPING, VmState.FAILED}),
    VmState.CONFIGURING: frozenset({VmState.BOOTING, VmState.STOPPING, VmState.FAILED}),
    VmState.BOOTING: frozenset({VmState.RUNNING, VmState.STOPPING, VmState.FAILED}),
    VmState.RUNNING: frozenset({VmState.PAUSED, VmState.STOPPING, VmState.FAILED}),
    VmState.PAUSED: frozenset({VmState.RUNNING, VmState.STOPPING, VmState.FAILED}),
    VmState.STOPPING: frozenset({VmState.STOPPED, VmState.FAILED}),
    VmState.STOPPED: frozenset(),
    VmState.FAILED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in _TRANSITIONS.items() if not targets)

# states in which the hypervisor process is expected to exit
EXIT_EXPECTED_STATES = frozenset({VmState.STOPPING, VmState.STOPPED, VmState.FAILED})


def can_transition(src: VmState, dst: VmState) -> bool:
    return dst in _TRANSITIONS[src]


class StateManager:
    """Current state of one VM plus its transition history."""

    def __init__(self, vm_id: str):
        self.vm_id = vm_id
        self._lock = threading.Lock()
        self._state = VmState.CREATED
        self._history: List[Tuple[VmState, float]] = [(VmState.CREATED, time.time())]
        self.configured = False
        self.failure_reason: Optional[str] = None

    @property
    def state(self) -> VmState:
        return self._state

    @property
    def history(self) -> List[VmState]:
        with self._lock:
            return [s for s, _ in self._history]

    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def require(self, operation: str, *allowed: VmState) -> VmState:
        """Raise InvalidTransition unless the current state is one of `allowed`."""
        with self._lock:
            if self._state not in allowed:
                raise InvalidTransition(self._state, operation)
            return self._state

    def transition(self, dst: VmState) -> None:
        with self._lock:
            src = self._state
            if not can_transition(src, dst):
                raise InvalidTransition(src, f"move to {dst.value}")
            self._set(dst)
        logger.info("vm=%s %s -> %s", self.vm_id, src.value, dst.value)

    def advance(self, operation: str, dst: VmState, *allowed: VmState) -> VmState:
        """Check the current state against `allowed` and move to `dst` in one step.

        Returns the state that was left. Raises InvalidTransition otherwise.
        """
        with self._lock:
            src = self._state
            if src not in allowed or not can_transition(src, dst):
                raise InvalidTransition(src, operation)
            self._set(dst)
        logger.info("vm=%s %s -> %s", self.vm_id, src.value, dst.value)
        return src

    def begin_stop(self) -> bool:
        """Move to Stopping unless the state is already terminal. Returns False when it was."""
        with self._lock:
            src = self._state
            if src in TERMINAL_STATES:
                return False
            if src is VmState.STOPPING:
                return True
            self._set(VmState.STOPPING)
        logger.info("vm=%s %s -> %s", self.vm_id, src.value, VmState.STOPPING.value)
        return True

    def finish_stop(self) -> bool:
        """Move Stopping to Stopped. Any other state is left alone and False is returned."""
        with self._lock:
            if self._state is not VmState.STOPPING:
                return False
            self._set(VmState.STOPPED)
        logger.info("vm=%s %s -> %s", self.vm_id, VmState.STOPPING.value, VmState.STOPPED.value)
        return True

    def fail(self, reason: str, spare: Iterable[VmState] = ()) -> bool:
        """Force Failed from any non-terminal state.

        Returns False, leaving the state alone, if it is terminal or one of `spare`.
        """
        with self._lock:
            if self._state in TERMINAL_STATES or self._state in spare:
                return False
            src = self._state
            self.failure_reason = reason
            self._set(VmState.FAILED)
        logger.error("vm=%s %s -> Failed: %s", self.vm_id, src.value, reason)
        return True

    def _set(self, dst: VmState) -> None:
        self._state = dst
        self._history.append((dst, time.time()))
