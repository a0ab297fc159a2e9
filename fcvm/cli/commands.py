#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
CLI commands module for fcvm.
This module contains the command-line commands: validate, render and run a VM spec file.
Every command prints one JSON document; failures print {"error": ...} and exit with code 1.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, NoReturn, Optional

import pydantic
import typer

from fcvm.config import ConfigManager, validate_spec
from fcvm.errors import FcvmError, ValidationError
from fcvm.models import HostConfig, SpecDocument, VmSpec, VmState
from fcvm.orchestration import VMManager
from fcvm.utils.filesystem import paths

logger = logging.getLogger("fcvm")

WAIT_POLL_INTERVAL = 1.0


def fail(msg: str, **details: Any) -> NoReturn:
    """Print an error as JSON and exit with code 1."""
    typer.echo(json.dumps({"error": msg, **details}))
    raise typer.Exit(code=1)


def succeed(data: Dict[str, Any]) -> NoReturn:
    """Print a result as JSON and exit with code 0."""
    typer.echo(json.dumps(data, default=str))
    raise typer.Exit(code=0)


def read_spec(path: Path) -> VmSpec:
    """Load a JSON spec document from `path`."""
    try:
        with path.open("r", encoding="utf-8") as f:
            obj = json.load(f)
    except (OSError, ValueError) as e:
        fail(f"Invalid JSON '{path}': {e}")
    try:
        return SpecDocument.model_validate(obj).to_spec()
    except pydantic.ValidationError as e:
        fail(f"Invalid spec '{path}'", errors=[f"{'.'.join(map(str, err['loc']))}: {err['msg']}" for err in e.errors()])


class CLICommands:
    """CLI commands handler."""

    def __init__(self, host_config: Optional[HostConfig] = None):
        self.config_manager = ConfigManager()
        self.host = host_config or self.config_manager.load_host_config()

    def validate(self, spec_file: Path):
        """Validate a spec file without touching any process."""
        spec = read_spec(spec_file)
        errors = validate_spec(spec, min_mem_mib=self.host.min_mem_mib, max_vcpus=self.host.max_vcpus)
        if errors:
            fail("Spec validation failed", errors=[str(e) for e in errors])
        succeed({"status": "ok", "vm_id": spec.vm_id})

    def render(self, spec_file: Path, output: Optional[Path] = None):
        """Print the hypervisor configuration document for a spec file, or write it to `output`."""
        spec = read_spec(spec_file)
        vm_paths = paths(self.host, spec.vm_id) if spec.vm_id else None
        log_level = self.host.log_level or "Info"
        if output is None:
            succeed(self.config_manager.render_vm_config(spec, vm_paths, log_level=log_level))
        try:
            self.config_manager.write_vm_config(spec, output, vm_paths, log_level=log_level)
        except OSError as e:
            fail(f"Cannot write {output}: {e}")
        succeed({"status": "ok", "written": str(output)})

    def run(self, spec_file: Path, timeout: Optional[float] = None, grace_period: Optional[float] = None):
        """Create and boot a VM, block until it exits or the user interrupts, then stop and destroy it."""
        spec = read_spec(spec_file)
        with VMManager(self.host) as manager:
            try:
                handle = manager.create(spec, timeout=timeout)
                manager.boot(handle, timeout=timeout)
                info = manager.get_instance_info(handle)
            except ValidationError as e:
                fail("Spec validation failed", errors=[str(err) for err in e.errors])
            except FcvmError as e:
                fail(f"VM start failed: {e}")
            typer.echo(
                json.dumps(
                    {
                        "status": "running",
                        "vm_id": handle.vm_id,
                        "pid": handle.supervisor.pid,
                        "socket": str(handle.paths.socket_file),
                        "instance": {"id": info.id, "state": info.state, "vmm_version": info.vmm_version},
                    }
                )
            )
            try:
                while handle.supervisor.wait(WAIT_POLL_INTERVAL) is None:
                    pass
            except KeyboardInterrupt:
                logger.info("vm=%s: interrupted, stopping", handle.vm_id)
            if manager.get_state(handle) in (VmState.RUNNING, VmState.PAUSED):
                try:
                    manager.stop(handle, grace_period=grace_period, timeout=timeout)
                except FcvmError as e:
                    logger.warning("vm=%s: stop failed: %s", handle.vm_id, e)
            manager.destroy(handle)
            state = manager.get_state(handle)
            status = handle.supervisor.exit_status
            result = {
                "status": state.value,
                "vm_id": handle.vm_id,
                "exit": status.kind.value if status else None,
            }
            if state is VmState.FAILED:
                fail(handle.state.failure_reason or "VM failed", **result)
            succeed(result)
