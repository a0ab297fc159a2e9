#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Data models for the fcvm SDK.
This module contains the data classes used throughout the package.
"""
import dataclasses
import enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

DEFAULT_BOOT_ARGS = "console=ttyS0 reboot=k panic=1 pci=off"


class VmState(enum.Enum):
    """Lifecycle state of a VM handle."""

    CREATED = "Created"
    CONFIGURING = "Configuring"
    BOOTING = "Booting"
    RUNNING = "Running"
    PAUSED = "Paused"
    STOPPING = "Stopping"
    STOPPED = "Stopped"
    FAILED = "Failed"


class GuestAction(str, enum.Enum):
    INSTANCE_START = "InstanceStart"
    SEND_CTRL_ALT_DEL = "SendCtrlAltDel"
    FLUSH_METRICS = "FlushMetrics"


class VmStateTarget(str, enum.Enum):
    """Values accepted by PATCH /vm."""

    PAUSED = "Paused"
    RESUMED = "Resumed"


class CpuTemplate(str, enum.Enum):
    C3 = "C3"
    T2 = "T2"
    T2S = "T2S"
    T2CL = "T2CL"
    T2A = "T2A"
    V1N1 = "V1N1"
    NONE = "None"


class MmdsVersion(str, enum.Enum):
    V1 = "V1"
    V2 = "V2"


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclasses.dataclass(frozen=True)
class TokenBucket:
    """Token bucket budget. `refill_time` is in milliseconds."""

    size: int
    refill_time: int
    one_time_burst: Optional[int] = None

    def to_api(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "size": self.size,
                "refill_time": self.refill_time,
                "one_time_burst": self.one_time_burst,
            }
        )


@dataclasses.dataclass(frozen=True)
class RateLimiter:
    """I/O rate limiter made of an optional bandwidth and an optional ops bucket."""

    bandwidth: Optional[TokenBucket] = None
    ops: Optional[TokenBucket] = None

    def to_api(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "bandwidth": self.bandwidth.to_api() if self.bandwidth else None,
                "ops": self.ops.to_api() if self.ops else None,
            }
        )


@dataclasses.dataclass(frozen=True)
class MachineConfig:
    """vCPU and memory sizing."""

    vcpu_count: int
    mem_size_mib: int
    cpu_template: Optional[CpuTemplate] = None
    smt: bool = False
    track_dirty_pages: bool = False

    def to_api(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "vcpu_count": self.vcpu_count,
                "mem_size_mib": self.mem_size_mib,
                "smt": self.smt,
                "track_dirty_pages": self.track_dirty_pages,
                "cpu_template": self.cpu_template.value if self.cpu_template else None,
            }
        )


@dataclasses.dataclass(frozen=True)
class BootSource:
    """Kernel, optional initrd and kernel command line."""

    kernel_image_path: Path
    boot_args: str = DEFAULT_BOOT_ARGS
    initrd_path: Optional[Path] = None

    def to_api(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "kernel_image_path": str(self.kernel_image_path),
                "boot_args": self.boot_args,
                "initrd_path": str(self.initrd_path) if self.initrd_path else None,
            }
        )


@dataclasses.dataclass(frozen=True)
class DriveConfig:
    """Block device backed by a host file."""

    drive_id: str
    path_on_host: Path
    is_root_device: bool = False
    is_read_only: bool = False
    rate_limiter: Optional[RateLimiter] = None
    partuuid: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "drive_id": self.drive_id,
                "path_on_host": str(self.path_on_host),
                "is_root_device": self.is_root_device,
                "is_read_only": self.is_read_only,
                "partuuid": self.partuuid,
                "rate_limiter": self.rate_limiter.to_api() if self.rate_limiter else None,
            }
        )


@dataclasses.dataclass(frozen=True)
class NetworkInterfaceConfig:
    """Guest network interface attached to a caller-supplied host tap device."""

    iface_id: str
    host_dev_name: str
    guest_mac: Optional[str] = None
    rx_rate_limiter: Optional[RateLimiter] = None
    tx_rate_limiter: Optional[RateLimiter] = None

    def to_api(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "iface_id": self.iface_id,
                "host_dev_name": self.host_dev_name,
                "guest_mac": self.guest_mac,
                "rx_rate_limiter": self.rx_rate_limiter.to_api() if self.rx_rate_limiter else None,
                "tx_rate_limiter": self.tx_rate_limiter.to_api() if self.tx_rate_limiter else None,
            }
        )


@dataclasses.dataclass(frozen=True)
class VsockConfig:
    guest_cid: int
    uds_path: Path

    def to_api(self) -> Dict[str, Any]:
        return {"guest_cid": self.guest_cid, "uds_path": str(self.uds_path)}


@dataclasses.dataclass(frozen=True)
class BalloonConfig:
    amount_mib: int
    deflate_on_oom: bool = False
    stats_polling_interval_s: int = 0

    def to_api(self) -> Dict[str, Any]:
        return {
            "amount_mib": self.amount_mib,
            "deflate_on_oom": self.deflate_on_oom,
            "stats_polling_interval_s": self.stats_polling_interval_s,
        }


@dataclasses.dataclass(frozen=True)
class MmdsConfig:
    """Metadata service settings and the initial metadata document."""

    network_interfaces: Tuple[str, ...]
    version: MmdsVersion = MmdsVersion.V1
    ipv4_address: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = dataclasses.field(default=None, compare=False, hash=False)

    def to_api(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "version": self.version.value,
                "network_interfaces": list(self.network_interfaces),
                "ipv4_address": self.ipv4_address,
            }
        )


class LogLevel(str, enum.Enum):
    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"
    DEBUG = "Debug"
    TRACE = "Trace"
    OFF = "Off"


@dataclasses.dataclass(frozen=True)
class LoggerConfig:
    """Hypervisor log sink set through the API instead of --log-path."""

    log_path: Path
    level: LogLevel = LogLevel.INFO
    show_level: bool = False
    show_log_origin: bool = False
    module: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        return _drop_none(
            {
                "log_path": str(self.log_path),
                "level": LogLevel(self.level).value,
                "show_level": self.show_level,
                "show_log_origin": self.show_log_origin,
                "module": self.module,
            }
        )


@dataclasses.dataclass(frozen=True)
class MetricsConfig:
    metrics_path: Path

    def to_api(self) -> Dict[str, Any]:
        return {"metrics_path": str(self.metrics_path)}


@dataclasses.dataclass(frozen=True)
class EntropyConfig:
    """virtio-rng device, optionally rate limited."""

    rate_limiter: Optional[RateLimiter] = None

    def to_api(self) -> Dict[str, Any]:
        return _drop_none({"rate_limiter": self.rate_limiter.to_api() if self.rate_limiter else None})


class SnapshotType(str, enum.Enum):
    FULL = "Full"
    DIFF = "Diff"


class MemoryBackendType(str, enum.Enum):
    FILE = "File"
    UFFD = "Uffd"


@dataclasses.dataclass(frozen=True)
class SnapshotCreateParams:
    snapshot_path: Path
    mem_file_path: Path
    snapshot_type: SnapshotType = SnapshotType.FULL

    def to_api(self) -> Dict[str, Any]:
        return {
            "snapshot_type": SnapshotType(self.snapshot_type).value,
            "snapshot_path": str(self.snapshot_path),
            "mem_file_path": str(self.mem_file_path),
        }


@dataclasses.dataclass(frozen=True)
class SnapshotLoadParams:
    """Snapshot to load into a hypervisor that has not been configured yet.

    `mem_backend_path` is the memory file for the File backend, or the UDS of
    a page-fault handler for the Uffd backend.
    """

    snapshot_path: Path
    mem_backend_path: Path
    mem_backend_type: MemoryBackendType = MemoryBackendType.FILE
    track_dirty_pages: bool = False
    resume_vm: bool = False

    def to_api(self) -> Dict[str, Any]:
        return {
            "snapshot_path": str(self.snapshot_path),
            "mem_backend": {
                "backend_type": MemoryBackendType(self.mem_backend_type).value,
                "backend_path": str(self.mem_backend_path),
            },
            "track_dirty_pages": self.track_dirty_pages,
            "resume_vm": self.resume_vm,
        }


@dataclasses.dataclass(frozen=True)
class VmSpec:
    """Immutable boot-time description of a microVM.

    `validated` is set by the configuration builder; specs constructed directly
    are validated again when handed to the orchestrator.
    """

    machine: MachineConfig
    boot_source: BootSource
    drives: Tuple[DriveConfig, ...] = ()
    network_interfaces: Tuple[NetworkInterfaceConfig, ...] = ()
    vm_id: Optional[str] = None
    vsock: Optional[VsockConfig] = None
    balloon: Optional[BalloonConfig] = None
    mmds: Optional[MmdsConfig] = None
    logger: Optional[LoggerConfig] = None
    metrics: Optional[MetricsConfig] = None
    entropy: Optional[EntropyConfig] = None
    validated: bool = dataclasses.field(default=False, compare=False, repr=False)

    @property
    def root_drive(self) -> Optional[DriveConfig]:
        for drive in self.drives:
            if drive.is_root_device:
                return drive
        return None


@dataclasses.dataclass
class HostConfig:
    """Host-side settings injected into the orchestrator."""

    firecracker_bin: Path
    run_dir: Path
    log_dir: Optional[Path] = None
    extra_args: List[str] = dataclasses.field(default_factory=list)
    socket_timeout: float = 5.0
    request_timeout: float = 10.0
    grace_period: float = 5.0
    kill_timeout: float = 5.0
    shutdown_action: str = GuestAction.SEND_CTRL_ALT_DEL.value
    stop_signal: str = "SIGTERM"
    log_level: Optional[str] = None
    boot_timer: bool = False
    no_seccomp: bool = False
    http_api_max_payload_size: Optional[int] = None
    mmds_size_limit: Optional[int] = None
    keep_logs: bool = False
    check_tap_devices: bool = False
    min_mem_mib: int = 128
    max_vcpus: int = 32


@dataclasses.dataclass
class VmPaths:
    """Computed file paths (socket, PID, console log, hypervisor log) for a VM."""

    socket_file: Path
    pid_file: Path
    console_log: Path
    log_file: Optional[Path] = None


@dataclasses.dataclass(frozen=True)
class InstanceInfo:
    """Response of GET /."""

    id: str
    state: str
    vmm_version: str
    app_name: str = "Firecracker"

    @classmethod
    def from_api(cls, body: Dict[str, Any]) -> "InstanceInfo":
        return cls(
            id=str(body.get("id", "")),
            state=str(body.get("state", "")),
            vmm_version=str(body.get("vmm_version", "")),
            app_name=str(body.get("app_name", "Firecracker")),
        )


class ExitKind(enum.Enum):
    CLEAN = "CleanExit"
    SIGNAL = "UserSignal"
    CRASH = "CrashExit"


@dataclasses.dataclass(frozen=True)
class ExitStatus:
    """Classified exit of the hypervisor process."""

    kind: ExitKind
    code: Optional[int] = None
    signal: Optional[int] = None

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitStatus":
        if returncode == 0:
            return cls(ExitKind.CLEAN, code=0)
        if returncode < 0:
            return cls(ExitKind.SIGNAL, signal=-returncode)
        return cls(ExitKind.CRASH, code=returncode)


# JSON spec documents


class TokenBucketDocument(BaseModel):
    size: int
    refill_time: int
    one_time_burst: Optional[int] = None


class RateLimiterDocument(BaseModel):
    bandwidth: Optional[TokenBucketDocument] = None
    ops: Optional[TokenBucketDocument] = None


class MachineDocument(BaseModel):
    vcpu_count: int
    mem_size_mib: int
    cpu_template: Optional[CpuTemplate] = None
    smt: bool = False
    track_dirty_pages: bool = False


class BootSourceDocument(BaseModel):
    kernel_image_path: str
    boot_args: str = DEFAULT_BOOT_ARGS
    initrd_path: Optional[str] = None


class DriveDocument(BaseModel):
    drive_id: str
    path_on_host: str
    is_root_device: bool = False
    is_read_only: bool = False
    partuuid: Optional[str] = None
    rate_limiter: Optional[RateLimiterDocument] = None


class NetworkInterfaceDocument(BaseModel):
    iface_id: str
    host_dev_name: str
    guest_mac: Optional[str] = None
    rx_rate_limiter: Optional[RateLimiterDocument] = None
    tx_rate_limiter: Optional[RateLimiterDocument] = None


class VsockDocument(BaseModel):
    guest_cid: int
    uds_path: str


class BalloonDocument(BaseModel):
    amount_mib: int
    deflate_on_oom: bool = False
    stats_polling_interval_s: int = 0


class MmdsDocument(BaseModel):
    network_interfaces: List[str]
    version: MmdsVersion = MmdsVersion.V1
    ipv4_address: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class LoggerDocument(BaseModel):
    log_path: str
    level: LogLevel = LogLevel.INFO
    show_level: bool = False
    show_log_origin: bool = False
    module: Optional[str] = None


class MetricsDocument(BaseModel):
    metrics_path: str


class EntropyDocument(BaseModel):
    rate_limiter: Optional[RateLimiterDocument] = None


class SpecDocument(BaseModel):
    """JSON document accepted by the CLI; mirrors the hypervisor's config file layout."""

    vm_id: Optional[str] = None
    machine_config: MachineDocument = Field(alias="machine-config")
    boot_source: BootSourceDocument = Field(alias="boot-source")
    drives: List[DriveDocument] = Field(default_factory=list)
    network_interfaces: List[NetworkInterfaceDocument] = Field(default_factory=list, alias="network-interfaces")
    vsock: Optional[VsockDocument] = None
    balloon: Optional[BalloonDocument] = None
    mmds: Optional[MmdsDocument] = None
    logger: Optional[LoggerDocument] = None
    metrics: Optional[MetricsDocument] = None
    entropy: Optional[EntropyDocument] = None

    model_config = {"populate_by_name": True}

    def to_spec(self) -> VmSpec:
        """Convert to an (unvalidated) VmSpec."""
        return VmSpec(
            vm_id=self.vm_id,
            machine=MachineConfig(**self.machine_config.model_dump()),
            boot_source=BootSource(
                kernel_image_path=Path(self.boot_source.kernel_image_path),
                boot_args=self.boot_source.boot_args,
                initrd_path=Path(self.boot_source.initrd_path) if self.boot_source.initrd_path else None,
            ),
            drives=tuple(
                DriveConfig(
                    drive_id=d.drive_id,
                    path_on_host=Path(d.path_on_host),
                    is_root_device=d.is_root_device,
                    is_read_only=d.is_read_only,
                    partuuid=d.partuuid,
                    rate_limiter=_limiter(d.rate_limiter),
                )
                for d in self.drives
            ),
            network_interfaces=tuple(
                NetworkInterfaceConfig(
                    iface_id=n.iface_id,
                    host_dev_name=n.host_dev_name,
                    guest_mac=n.guest_mac,
                    rx_rate_limiter=_limiter(n.rx_rate_limiter),
                    tx_rate_limiter=_limiter(n.tx_rate_limiter),
                )
                for n in self.network_interfaces
            ),
            vsock=VsockConfig(self.vsock.guest_cid, Path(self.vsock.uds_path)) if self.vsock else None,
            balloon=BalloonConfig(**self.balloon.model_dump()) if self.balloon else None,
            mmds=(
                MmdsConfig(
                    network_interfaces=tuple(self.mmds.network_interfaces),
                    version=self.mmds.version,
                    ipv4_address=self.mmds.ipv4_address,
                    metadata=self.mmds.metadata,
                )
                if self.mmds
                else None
            ),
            logger=(
                LoggerConfig(
                    log_path=Path(self.logger.log_path),
                    level=self.logger.level,
                    show_level=self.logger.show_level,
                    show_log_origin=self.logger.show_log_origin,
                    module=self.logger.module,
                )
                if self.logger
                else None
            ),
            metrics=MetricsConfig(Path(self.metrics.metrics_path)) if self.metrics else None,
            entropy=EntropyConfig(_limiter(self.entropy.rate_limiter)) if self.entropy else None,
        )


def _limiter(doc: Optional[RateLimiterDocument]) -> Optional[RateLimiter]:
    if doc is None:
        return None
    return RateLimiter(
        bandwidth=TokenBucket(**doc.bandwidth.model_dump()) if doc.bandwidth else None,
        ops=TokenBucket(**doc.ops.model_dump()) if doc.ops else None,
    )
