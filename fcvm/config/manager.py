#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration management module for fcvm.
This module handles host configuration loading, logging setup and rendering of
the full hypervisor configuration document.
"""
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from fcvm.models import HostConfig, VmPaths, VmSpec

logger = logging.getLogger("fcvm")
_DEF_HANDLER_SET = False

DEFAULT_CONFIG_PATH = "/etc/fcvm/config.json"
DEFAULT_FIRECRACKER_BIN = "/usr/bin/firecracker"
DEFAULT_RUN_DIR = "/run/fcvm"

_FLOAT_KEYS = ("socket_timeout", "request_timeout", "grace_period", "kill_timeout")
_BOOL_KEYS = ("keep_logs", "check_tap_devices", "boot_timer", "no_seccomp")
_INT_KEYS = ("min_mem_mib", "max_vcpus", "http_api_max_payload_size", "mmds_size_limit")
_STR_KEYS = ("shutdown_action", "stop_signal", "log_level")


def apply_logging_from_cfg(cfg: Dict[str, Any]) -> None:
    """Apply logging configuration from the loaded config (once per process)."""
    global _DEF_HANDLER_SET
    if _DEF_HANDLER_SET:
        return
    log_cfg = cfg.get("logging", {}) if isinstance(cfg.get("logging"), dict) else {}
    level = str(log_cfg.get("level", "INFO")).upper()
    try:
        logger.setLevel(getattr(logging, level))
    except AttributeError:
        logger.setLevel(logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    _DEF_HANDLER_SET = True


class ConfigManager:
    """Manager for configuration operations."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.environ.get("FCVM_CONFIG", DEFAULT_CONFIG_PATH)

    def load_config(self) -> Dict[str, Any]:
        """Load the raw config dict.
        Precedence: env > JSON file (FCVM_CONFIG) > built-in defaults.
        A syntax error in the file is fatal; a missing file is not.
        """
        cfg: Dict[str, Any] = {
            "firecracker_bin": DEFAULT_FIRECRACKER_BIN,
            "run_dir": DEFAULT_RUN_DIR,
        }
        p = Path(self.config_path)
        if p.exists():
            with p.open("r", encoding="utf-8") as f:
                try:
                    file_cfg = json.load(f)
                except ValueError as e:
                    raise RuntimeError(f"Invalid JSON in FCVM_CONFIG='{self.config_path}': {e}") from e
            if not isinstance(file_cfg, dict):
                raise RuntimeError(f"FCVM_CONFIG='{self.config_path}' must contain a JSON object")
            cfg.update(file_cfg)
        for env, key in (
            ("FCVM_FIRECRACKER_BIN", "firecracker_bin"),
            ("FCVM_RUN_DIR", "run_dir"),
            ("FCVM_LOG_DIR", "log_dir"),
        ):
            value = os.environ.get(env)
            if value:
                cfg[key] = value
        return cfg

    def load_host_config(self, cfg: Optional[Dict[str, Any]] = None) -> HostConfig:
        """Build a HostConfig from the raw config dict."""
        cfg = self.load_config() if cfg is None else cfg
        host = HostConfig(
            firecracker_bin=Path(cfg["firecracker_bin"]),
            run_dir=Path(cfg["run_dir"]),
            log_dir=Path(cfg["log_dir"]) if cfg.get("log_dir") else None,
        )
        extra = cfg.get("extra_args")
        if extra is not None:
            if not isinstance(extra, list):
                raise RuntimeError("extra_args must be a list of strings")
            host.extra_args = [str(a) for a in extra]
        for key, cast in [(k, float) for k in _FLOAT_KEYS] + [(k, int) for k in _INT_KEYS]:
            if cfg.get(key) is not None:
                try:
                    setattr(host, key, cast(cfg[key]))
                except (TypeError, ValueError) as e:
                    raise RuntimeError(f"Invalid value for {key}: {cfg[key]!r}") from e
        for key in _BOOL_KEYS:
            if key in cfg:
                setattr(host, key, bool(cfg[key]))
        for key in _STR_KEYS:
            if cfg.get(key) is not None:
                setattr(host, key, str(cfg[key]))
        return host

    @staticmethod
    def render_vm_config(spec: VmSpec, paths: Optional[VmPaths] = None, log_level: str = "Info") -> Dict[str, Any]:
        """Render the full hypervisor JSON configuration for `spec`."""
        cfg: Dict[str, Any] = {
            "boot-source": spec.boot_source.to_api(),
            "drives": [d.to_api() for d in spec.drives],
            "machine-config": spec.machine.to_api(),
            "network-interfaces": [n.to_api() for n in spec.network_interfaces],
            "vsock": spec.vsock.to_api() if spec.vsock else None,
            "balloon": spec.balloon.to_api() if spec.balloon else None,
            "mmds-config": spec.mmds.to_api() if spec.mmds else None,
            "logger": spec.logger.to_api() if spec.logger else None,
            "metrics": spec.metrics.to_api() if spec.metrics else None,
            "entropy": spec.entropy.to_api() if spec.entropy else None,
        }
        if paths is not None and paths.log_file is not None:
            cfg["logger"] = {
                "log_path": str(paths.log_file),
                "level": log_level,
                "show_level": False,
                "show_log_origin": False,
            }
        return cfg

    def write_vm_config(
        self, spec: VmSpec, target: Path, paths: Optional[VmPaths] = None, log_level: str = "Info"
    ) -> None:
        """Write the rendered configuration to `target`."""
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("w", encoding="utf-8") as f:
            json.dump(self.render_vm_config(spec, paths, log_level=log_level), f, indent=2)
        logger.info("Wrote VM config to %s", target)
