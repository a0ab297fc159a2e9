#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Filesystem utilities module for fcvm.
This module contains filesystem-related utility functions.
"""
import logging
import os
from pathlib import Path
from typing import Iterable

from fcvm.models import HostConfig, VmPaths

logger = logging.getLogger("fcvm")

# sizeof(sockaddr_un.sun_path) - 1
MAX_SOCKET_PATH = 107


def paths(host: HostConfig, vm_id: str) -> VmPaths:
    """Generate VmPaths for a VM id from the host configuration."""
    run_dir = Path(host.run_dir)
    log_dir = Path(host.log_dir) if host.log_dir else run_dir
    return VmPaths(
        socket_file=run_dir / f"{vm_id}.socket",
        pid_file=run_dir / f"{vm_id}.pid",
        console_log=log_dir / f"{vm_id}.console.log",
        log_file=log_dir / f"{vm_id}.log" if host.log_dir else None,
    )


def ensure_dirs(vm_paths: VmPaths) -> None:
    """Ensure all required directories exist."""
    vm_paths.socket_file.parent.mkdir(parents=True, exist_ok=True)
    vm_paths.pid_file.parent.mkdir(parents=True, exist_ok=True)
    vm_paths.console_log.parent.mkdir(parents=True, exist_ok=True)
    if vm_paths.log_file is not None:
        vm_paths.log_file.parent.mkdir(parents=True, exist_ok=True)


def socket_path_fits(path: Path) -> bool:
    return len(os.fsencode(str(path))) <= MAX_SOCKET_PATH


def unlink_quiet(path: Path) -> bool:
    """Remove a file; a missing file is not an error. Returns True if something was removed."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


def unlink_all(files: Iterable[Path]) -> None:
    """Remove every file, attempting all of them before re-raising the first failure."""
    first_error = None
    for p in files:
        try:
            if unlink_quiet(p):
                logger.debug("removed %s", p)
        except OSError as e:
            logger.warning("failed to remove %s: %s", p, e)
            if first_error is None:
                first_error = e
    if first_error is not None:
        raise first_error
