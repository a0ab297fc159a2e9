#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Configuration builder for fcvm.
Assembles and validates the boot-time VmSpec. Validation is pure: it reads the
filesystem to check paths but never spawns a process or opens a socket, and it
either returns a complete spec or raises ValidationError listing every problem.
"""
import dataclasses
from pathlib import Path
from typing import List, Optional

from fcvm.errors import FieldError, ValidationError
from fcvm.models import (
    DEFAULT_BOOT_ARGS,
    BalloonConfig,
    BootSource,
    CpuTemplate,
    DriveConfig,
    EntropyConfig,
    LoggerConfig,
    LogLevel,
    MachineConfig,
    MetricsConfig,
    MmdsConfig,
    MmdsVersion,
    NetworkInterfaceConfig,
    RateLimiter,
    VmSpec,
    VsockConfig,
)
from fcvm.utils.filesystem import socket_path_fits
from fcvm.utils.validation import (
    rate_limiter_errors,
    validate_int,
    validate_device_id,
    validate_ifname,
    validate_ipv4,
    validate_mac,
    validate_name,
    validate_readable_file,
)

DEFAULT_MIN_MEM_MIB = 128
DEFAULT_MAX_VCPUS = 32
MIN_GUEST_CID = 3


def validate_spec(
    spec: VmSpec,
    min_mem_mib: int = DEFAULT_MIN_MEM_MIB,
    max_vcpus: int = DEFAULT_MAX_VCPUS,
) -> List[FieldError]:
    """Return every rule violation in `spec` (empty list when valid)."""
    errors: List[FieldError] = []

    def check(field: str, fn, *args, **kwargs) -> bool:
        try:
            fn(*args, **kwargs)
        except ValueError as e:
            errors.append(FieldError(field, str(e)))
            return False
        return True

    if spec.vm_id is not None:
        check("vm_id", validate_name, "VM id", spec.vm_id)

    m = spec.machine
    mem_ok = False
    if m is None:
        errors.append(FieldError("machine", "machine configuration is required"))
    else:
        vcpus_ok = check("machine.vcpu_count", validate_int, m.vcpu_count, 1, max_vcpus)
        if vcpus_ok and m.smt and m.vcpu_count > 1 and m.vcpu_count % 2:
            errors.append(FieldError("machine.vcpu_count", "must be 1 or even when smt is enabled"))
        mem_ok = check("machine.mem_size_mib", validate_int, m.mem_size_mib, max(min_mem_mib, 1))

    boot = spec.boot_source
    if boot is None:
        errors.append(FieldError("boot_source", "boot source is required"))
    else:
        check("boot_source.kernel_image_path", validate_readable_file, boot.kernel_image_path)
        if boot.initrd_path is not None:
            check("boot_source.initrd_path", validate_readable_file, boot.initrd_path)
        if not isinstance(boot.boot_args, str):
            errors.append(FieldError("boot_source.boot_args", "must be a string"))

    seen_drives = set()
    roots = []
    for i, drive in enumerate(spec.drives):
        field = f"drives[{i}]"
        check(f"{field}.drive_id", validate_device_id, "drive id", drive.drive_id)
        if drive.drive_id in seen_drives:
            errors.append(FieldError(f"{field}.drive_id", f"duplicate drive id '{drive.drive_id}'"))
        seen_drives.add(drive.drive_id)
        check(f"{field}.path_on_host", validate_readable_file, drive.path_on_host, writable=not drive.is_read_only)
        if drive.is_root_device:
            roots.append(drive.drive_id)
        for bucket, msg in rate_limiter_errors(drive.rate_limiter):
            errors.append(FieldError(f"{field}.rate_limiter.{bucket}", msg))
    if len(roots) > 1:
        errors.append(FieldError("drives", f"exactly one root drive allowed, got {len(roots)}: {', '.join(roots)}"))
    elif not roots and (boot is None or boot.initrd_path is None):
        errors.append(FieldError("drives", "a root drive is required unless an initrd is supplied"))

    seen_ifaces = set()
    seen_taps = set()
    for i, iface in enumerate(spec.network_interfaces):
        field = f"network_interfaces[{i}]"
        check(f"{field}.iface_id", validate_device_id, "interface id", iface.iface_id)
        if iface.iface_id in seen_ifaces:
            errors.append(FieldError(f"{field}.iface_id", f"duplicate interface id '{iface.iface_id}'"))
        seen_ifaces.add(iface.iface_id)
        check(f"{field}.host_dev_name", validate_ifname, iface.host_dev_name)
        if iface.host_dev_name in seen_taps:
            errors.append(FieldError(f"{field}.host_dev_name", f"tap '{iface.host_dev_name}' used twice"))
        seen_taps.add(iface.host_dev_name)
        if iface.guest_mac is not None:
            check(f"{field}.guest_mac", validate_mac, iface.guest_mac)
        for name, limiter in (("rx_rate_limiter", iface.rx_rate_limiter), ("tx_rate_limiter", iface.tx_rate_limiter)):
            for bucket, msg in rate_limiter_errors(limiter):
                errors.append(FieldError(f"{field}.{name}.{bucket}", msg))

    if spec.vsock is not None:
        check("vsock.guest_cid", validate_int, spec.vsock.guest_cid, MIN_GUEST_CID)
        uds = Path(spec.vsock.uds_path)
        if not uds.parent.is_dir():
            errors.append(FieldError("vsock.uds_path", f"directory {uds.parent} does not exist"))
        if not socket_path_fits(uds):
            errors.append(FieldError("vsock.uds_path", "path too long for a UNIX socket"))

    if spec.balloon is not None:
        amount_ok = check("balloon.amount_mib", validate_int, spec.balloon.amount_mib, 0)
        if amount_ok and mem_ok and spec.balloon.amount_mib > m.mem_size_mib:
            errors.append(FieldError("balloon.amount_mib", "cannot exceed guest memory"))
        check("balloon.stats_polling_interval_s", validate_int, spec.balloon.stats_polling_interval_s, 0)

    if spec.mmds is not None:
        if not spec.mmds.network_interfaces:
            errors.append(FieldError("mmds.network_interfaces", "at least one interface is required"))
        for iface_id in spec.mmds.network_interfaces:
            if iface_id not in seen_ifaces:
                errors.append(FieldError("mmds.network_interfaces", f"unknown interface id '{iface_id}'"))
        if spec.mmds.ipv4_address is not None:
            check("mmds.ipv4_address", validate_ipv4, spec.mmds.ipv4_address)

    for name, target in (
        ("logger.log_path", spec.logger.log_path if spec.logger else None),
        ("metrics.metrics_path", spec.metrics.metrics_path if spec.metrics else None),
    ):
        if target is not None and not Path(target).parent.is_dir():
            errors.append(FieldError(name, f"directory {Path(target).parent} does not exist"))
    if spec.logger is not None and spec.logger.level not in list(LogLevel):
        errors.append(FieldError("logger.level", f"unknown log level '{spec.logger.level}'"))

    if spec.entropy is not None:
        for bucket, msg in rate_limiter_errors(spec.entropy.rate_limiter):
            errors.append(FieldError(f"entropy.rate_limiter.{bucket}", msg))

    return errors


def build_spec(
    spec: VmSpec,
    min_mem_mib: int = DEFAULT_MIN_MEM_MIB,
    max_vcpus: int = DEFAULT_MAX_VCPUS,
) -> VmSpec:
    """Validate `spec` and return it marked as validated. Raises ValidationError."""
    errors = validate_spec(spec, min_mem_mib=min_mem_mib, max_vcpus=max_vcpus)
    if errors:
        raise ValidationError(errors)
    return dataclasses.replace(spec, validated=True)


class ConfigBuilder:
    """Fluent collector for VmSpec parts.

    Example:
        spec = (ConfigBuilder()
                .machine(vcpu_count=2, mem_size_mib=256)
                .boot_source("/var/lib/fc/vmlinux")
                .drive("rootfs", "/var/lib/fc/rootfs.ext4", root=True)
                .build())
    """

    def __init__(self, min_mem_mib: int = DEFAULT_MIN_MEM_MIB, max_vcpus: int = DEFAULT_MAX_VCPUS):
        self.min_mem_mib = min_mem_mib
        self.max_vcpus = max_vcpus
        self._vm_id: Optional[str] = None
        self._machine: Optional[MachineConfig] = None
        self._boot: Optional[BootSource] = None
        self._drives: List[DriveConfig] = []
        self._ifaces: List[NetworkInterfaceConfig] = []
        self._vsock: Optional[VsockConfig] = None
        self._balloon: Optional[BalloonConfig] = None
        self._mmds: Optional[MmdsConfig] = None
        self._logger: Optional[LoggerConfig] = None
        self._metrics: Optional[MetricsConfig] = None
        self._entropy: Optional[EntropyConfig] = None

    def vm_id(self, vm_id: str) -> "ConfigBuilder":
        self._vm_id = vm_id
        return self

    def machine(
        self,
        vcpu_count: int,
        mem_size_mib: int,
        cpu_template: Optional[CpuTemplate] = None,
        smt: bool = False,
        track_dirty_pages: bool = False,
    ) -> "ConfigBuilder":
        self._machine = MachineConfig(vcpu_count, mem_size_mib, cpu_template, smt, track_dirty_pages)
        return self

    def boot_source(self, kernel_image_path, boot_args: str = DEFAULT_BOOT_ARGS, initrd_path=None) -> "ConfigBuilder":
        self._boot = BootSource(
            Path(kernel_image_path),
            boot_args,
            Path(initrd_path) if initrd_path is not None else None,
        )
        return self

    def drive(
        self,
        drive_id: str,
        path_on_host,
        root: bool = False,
        read_only: bool = False,
        rate_limiter: Optional[RateLimiter] = None,
        partuuid: Optional[str] = None,
    ) -> "ConfigBuilder":
        self._drives.append(DriveConfig(drive_id, Path(path_on_host), root, read_only, rate_limiter, partuuid))
        return self

    def network_interface(
        self,
        iface_id: str,
        host_dev_name: str,
        guest_mac: Optional[str] = None,
        rx_rate_limiter: Optional[RateLimiter] = None,
        tx_rate_limiter: Optional[RateLimiter] = None,
    ) -> "ConfigBuilder":
        self._ifaces.append(NetworkInterfaceConfig(iface_id, host_dev_name, guest_mac, rx_rate_limiter, tx_rate_limiter))
        return self

    def vsock(self, guest_cid: int, uds_path) -> "ConfigBuilder":
        self._vsock = VsockConfig(guest_cid, Path(uds_path))
        return self

    def balloon(self, amount_mib: int, deflate_on_oom: bool = False, stats_polling_interval_s: int = 0) -> "ConfigBuilder":
        self._balloon = BalloonConfig(amount_mib, deflate_on_oom, stats_polling_interval_s)
        return self

    def mmds(
        self,
        network_interfaces,
        version: MmdsVersion = MmdsVersion.V1,
        ipv4_address: Optional[str] = None,
        metadata=None,
    ) -> "ConfigBuilder":
        self._mmds = MmdsConfig(tuple(network_interfaces), MmdsVersion(version), ipv4_address, metadata)
        return self

    def logger(
        self,
        log_path,
        level: LogLevel = LogLevel.INFO,
        show_level: bool = False,
        show_log_origin: bool = False,
        module: Optional[str] = None,
    ) -> "ConfigBuilder":
        self._logger = LoggerConfig(Path(log_path), LogLevel(level), show_level, show_log_origin, module)
        return self

    def metrics(self, metrics_path) -> "ConfigBuilder":
        self._metrics = MetricsConfig(Path(metrics_path))
        return self

    def entropy(self, rate_limiter: Optional[RateLimiter] = None) -> "ConfigBuilder":
        self._entropy = EntropyConfig(rate_limiter)
        return self

    def build(self) -> VmSpec:
        """Validate everything collected so far and return an immutable VmSpec."""
        spec = VmSpec(
            machine=self._machine,
            boot_source=self._boot,
            drives=tuple(self._drives),
            network_interfaces=tuple(self._ifaces),
            vm_id=self._vm_id,
            vsock=self._vsock,
            balloon=self._balloon,
            mmds=self._mmds,
            logger=self._logger,
            metrics=self._metrics,
            entropy=self._entropy,
        )
        return build_spec(spec, min_mem_mib=self.min_mem_mib, max_vcpus=self.max_vcpus)
