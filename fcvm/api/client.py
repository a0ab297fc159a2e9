#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Typed client for the Firecracker control API.
Every call builds a request, sends it over the transport, parses the JSON body and
maps 4xx and 5xx responses to ApiError.
"""
import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

from fcvm.errors import AlreadyBooted, ApiError, MalformedResponse
from fcvm.models import (
    BalloonConfig,
    BootSource,
    DriveConfig,
    GuestAction,
    InstanceInfo,
    MachineConfig,
    EntropyConfig,
    LoggerConfig,
    MetricsConfig,
    MmdsConfig,
    NetworkInterfaceConfig,
    RateLimiter,
    SnapshotCreateParams,
    SnapshotLoadParams,
    VmStateTarget,
    VsockConfig,
)
from .transport import Request, UnixTransport

logger = logging.getLogger("fcvm")

# fault_message prefix the hypervisor uses when a pre-boot resource is touched after start
_AFTER_START_FAULT = "not supported after starting the microvm"


class FirecrackerClient:
    """Control API of a single hypervisor instance."""

    def __init__(self, transport: UnixTransport):
        self.transport = transport
        self._booted = False

    @property
    def booted(self) -> bool:
        return self._booted

    def _request(
        self,
        method: str,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        payload = json.dumps(body).encode("utf-8") if body is not None else None
        logger.debug("%s %s %s", method, path, payload.decode("utf-8") if payload else "")
        response = self.transport.send(Request(method, path, payload), timeout=timeout)
        parsed: Any = None
        if response.body:
            try:
                parsed = json.loads(response.body.decode("utf-8"))
            except (UnicodeDecodeError, ValueError) as e:
                if response.ok:
                    raise MalformedResponse(f"{method} {path}: response body is not JSON") from e
                parsed = {"fault_message": response.body.decode("utf-8", errors="replace")}
        if not response.ok:
            if not 400 <= response.status < 600:
                # redirects and informational codes are not part of this API
                raise MalformedResponse(f"{method} {path}: unexpected status {response.status}")
            raise ApiError.from_response(response.status, parsed, method, path)
        return parsed

    def _get(self, path: str, timeout: Optional[float] = None) -> Any:
        return self._request("GET", path, timeout=timeout)

    def _put(self, path: str, body: Dict[str, Any], timeout: Optional[float] = None) -> None:
        self._request("PUT", path, body, timeout=timeout)

    def _patch(self, path: str, body: Dict[str, Any], timeout: Optional[float] = None) -> None:
        self._request("PATCH", path, body, timeout=timeout)

    # pre-boot configuration

    def put_machine_config(self, cfg: MachineConfig, timeout: Optional[float] = None) -> None:
        self._put("/machine-config", cfg.to_api(), timeout=timeout)

    def put_boot_source(self, cfg: BootSource, timeout: Optional[float] = None) -> None:
        self._put("/boot-source", cfg.to_api(), timeout=timeout)

    def put_drive(self, drive_id: str, cfg: DriveConfig, timeout: Optional[float] = None) -> None:
        body = cfg.to_api()
        body["drive_id"] = drive_id
        self._put(f"/drives/{quote(drive_id, safe='')}", body, timeout=timeout)

    def put_network_interface(
        self, iface_id: str, cfg: NetworkInterfaceConfig, timeout: Optional[float] = None
    ) -> None:
        body = cfg.to_api()
        body["iface_id"] = iface_id
        self._put(f"/network-interfaces/{quote(iface_id, safe='')}", body, timeout=timeout)

    def put_vsock(self, cfg: VsockConfig, timeout: Optional[float] = None) -> None:
        self._put("/vsock", cfg.to_api(), timeout=timeout)

    def put_balloon(self, cfg: BalloonConfig, timeout: Optional[float] = None) -> None:
        self._put("/balloon", cfg.to_api(), timeout=timeout)

    def put_mmds_config(self, cfg: MmdsConfig, timeout: Optional[float] = None) -> None:
        self._put("/mmds/config", cfg.to_api(), timeout=timeout)

    def put_logger(self, cfg: LoggerConfig, timeout: Optional[float] = None) -> None:
        self._put("/logger", cfg.to_api(), timeout=timeout)

    def put_metrics(self, cfg: MetricsConfig, timeout: Optional[float] = None) -> None:
        self._put("/metrics", cfg.to_api(), timeout=timeout)

    def put_entropy(self, cfg: EntropyConfig, timeout: Optional[float] = None) -> None:
        self._put("/entropy", cfg.to_api(), timeout=timeout)

    # actions and runtime state

    def put_guest_action(self, action: GuestAction, timeout: Optional[float] = None) -> None:
        """Send a guest action. InstanceStart is not idempotent."""
        action = GuestAction(action)
        if action is GuestAction.INSTANCE_START and self._booted:
            raise AlreadyBooted()
        try:
            self._put("/actions", {"action_type": action.value}, timeout=timeout)
        except ApiError as e:
            if action is GuestAction.INSTANCE_START and _AFTER_START_FAULT in e.message.lower():
                self._booted = True
                raise AlreadyBooted(e.message) from e
            raise
        if action is GuestAction.INSTANCE_START:
            self._booted = True

    def start_instance(self, timeout: Optional[float] = None) -> None:
        self.put_guest_action(GuestAction.INSTANCE_START, timeout=timeout)

    def patch_vm_state(self, target: VmStateTarget, timeout: Optional[float] = None) -> None:
        self._patch("/vm", {"state": VmStateTarget(target).value}, timeout=timeout)

    def get_instance_info(self, timeout: Optional[float] = None) -> InstanceInfo:
        return InstanceInfo.from_api(self._get("/", timeout=timeout) or {})

    def get_version(self, timeout: Optional[float] = None) -> str:
        body = self._get("/version", timeout=timeout) or {}
        return str(body.get("firecracker_version", ""))

    def get_machine_config(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._get("/machine-config", timeout=timeout) or {}

    def get_vm_config(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._get("/vm/config", timeout=timeout) or {}

    # post-boot updates

    def patch_drive(
        self,
        drive_id: str,
        path_on_host: Optional[str] = None,
        rate_limiter: Optional[RateLimiter] = None,
        timeout: Optional[float] = None,
    ) -> None:
        body: Dict[str, Any] = {"drive_id": drive_id}
        if path_on_host is not None:
            body["path_on_host"] = str(path_on_host)
        if rate_limiter is not None:
            body["rate_limiter"] = rate_limiter.to_api()
        self._patch(f"/drives/{quote(drive_id, safe='')}", body, timeout=timeout)

    def patch_network_interface(
        self,
        iface_id: str,
        rx_rate_limiter: Optional[RateLimiter] = None,
        tx_rate_limiter: Optional[RateLimiter] = None,
        timeout: Optional[float] = None,
    ) -> None:
        body: Dict[str, Any] = {"iface_id": iface_id}
        if rx_rate_limiter is not None:
            body["rx_rate_limiter"] = rx_rate_limiter.to_api()
        if tx_rate_limiter is not None:
            body["tx_rate_limiter"] = tx_rate_limiter.to_api()
        self._patch(f"/network-interfaces/{quote(iface_id, safe='')}", body, timeout=timeout)

    def get_balloon(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self._get("/balloon", timeout=timeout) or {}

    def patch_balloon(self, amount_mib: int, timeout: Optional[float] = None) -> None:
        self._patch("/balloon", {"amount_mib": amount_mib}, timeout=timeout)

    # snapshots

    def put_snapshot_create(self, params: SnapshotCreateParams, timeout: Optional[float] = None) -> None:
        """Write guest state and memory to disk. The VM must be paused."""
        self._put("/snapshot/create", params.to_api(), timeout=timeout)

    def put_snapshot_load(self, params: SnapshotLoadParams, timeout: Optional[float] = None) -> None:
        """Restore a snapshot into an unconfigured hypervisor. The guest counts as booted afterwards."""
        if self._booted:
            raise AlreadyBooted("snapshot load is not allowed after the microVM started", path="/snapshot/load")
        self._put("/snapshot/load", params.to_api(), timeout=timeout)
        self._booted = True

    # metadata service

    def put_mmds(self, data: Dict[str, Any], timeout: Optional[float] = None) -> None:
        self._put("/mmds", data, timeout=timeout)

    def patch_mmds(self, data: Dict[str, Any], timeout: Optional[float] = None) -> None:
        self._patch("/mmds", data, timeout=timeout)

    def get_mmds(self, timeout: Optional[float] = None) -> Any:
        return self._get("/mmds", timeout=timeout)

    def close(self) -> None:
        self.transport.close()
