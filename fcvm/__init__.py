"""
fcvm: lifecycle orchestration for Firecracker microVMs.

Build a spec with ConfigBuilder, then drive it with VMManager:

    spec = ConfigBuilder().machine(2, 256).boot_source(kernel).drive("rootfs", image, root=True).build()
    with VMManager(ConfigManager().load_host_config()) as manager:
        vm = manager.create(spec)
        manager.boot(vm)
"""
from .api import FirecrackerClient, UnixTransport
from .config import ConfigBuilder, ConfigManager, build_spec, validate_spec
from .errors import (
    AlreadyBooted,
    ApiError,
    CleanupError,
    ConnectError,
    Disconnected,
    FcvmError,
    InvalidTransition,
    MalformedResponse,
    OperationTimeout,
    SpawnError,
    TransportError,
    TransportTimeout,
    ValidationError,
)
from .models import (
    BalloonConfig,
    BootSource,
    DriveConfig,
    EntropyConfig,
    HostConfig,
    LoggerConfig,
    LogLevel,
    MachineConfig,
    MemoryBackendType,
    MetricsConfig,
    MmdsConfig,
    NetworkInterfaceConfig,
    RateLimiter,
    SnapshotCreateParams,
    SnapshotLoadParams,
    SnapshotType,
    TokenBucket,
    VmSpec,
    VmState,
    VsockConfig,
)
from .orchestration import ProcessSupervisor, VMHandle, VMManager

__version__ = "0.1.0"

__all__ = [
    "AlreadyBooted",
    "ApiError",
    "BalloonConfig",
    "BootSource",
    "CleanupError",
    "ConfigBuilder",
    "ConfigManager",
    "ConnectError",
    "Disconnected",
    "DriveConfig",
    "EntropyConfig",
    "FcvmError",
    "FirecrackerClient",
    "HostConfig",
    "InvalidTransition",
    "LogLevel",
    "LoggerConfig",
    "MachineConfig",
    "MalformedResponse",
    "MemoryBackendType",
    "MetricsConfig",
    "MmdsConfig",
    "NetworkInterfaceConfig",
    "OperationTimeout",
    "ProcessSupervisor",
    "RateLimiter",
    "SnapshotCreateParams",
    "SnapshotLoadParams",
    "SnapshotType",
    "SpawnError",
    "TokenBucket",
    "TransportError",
    "TransportTimeout",
    "UnixTransport",
    "VMHandle",
    "VMManager",
    "ValidationError",
    "VmSpec",
    "VmState",
    "VsockConfig",
    "build_spec",
    "validate_spec",
]
