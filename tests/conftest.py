from __future__ import annotations

import os
import shlex
import shutil
import stat
import sys
import tempfile
import threading
import time
from pathlib import Path

import pytest

import fake_firecracker
from fcvm.config import ConfigBuilder
from fcvm.models import HostConfig
from fcvm.orchestration import VMManager

FAKE_SOURCE = Path(__file__).with_name("fake_firecracker.py")


@pytest.fixture(autouse=True)
def _clean_fake_env(monkeypatch):
    """Never leak behaviour toggles between tests."""
    for name in list(os.environ):
        if name.startswith("FAKE_FC_") or name.startswith("FCVM_"):
            monkeypatch.delenv(name, raising=False)
    yield


@pytest.fixture
def short_dir():
    """A short directory under /tmp; UNIX socket paths are limited to 107 bytes."""
    path = Path(tempfile.mkdtemp(prefix="fcvm-", dir="/tmp"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def fake_firecracker_bin(tmp_path):
    """Executable wrapper that runs the fake hypervisor with this interpreter."""
    wrapper = tmp_path / "firecracker"
    wrapper.write_text(
        "#!/bin/sh\n" f"exec {shlex.quote(sys.executable)} {shlex.quote(str(FAKE_SOURCE))} \"$@\"\n"
    )
    wrapper.chmod(wrapper.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return wrapper


@pytest.fixture
def host(fake_firecracker_bin, short_dir):
    return HostConfig(
        firecracker_bin=fake_firecracker_bin,
        run_dir=short_dir / "run",
        socket_timeout=10.0,
        request_timeout=5.0,
        grace_period=2.0,
        kill_timeout=5.0,
    )


@pytest.fixture
def images(tmp_path):
    kernel = tmp_path / "vmlinux"
    kernel.write_bytes(b"\x7fELF")
    rootfs = tmp_path / "rootfs.ext4"
    rootfs.write_bytes(b"\0" * 4096)
    return kernel, rootfs


@pytest.fixture
def spec(images):
    kernel, rootfs = images
    return ConfigBuilder().machine(vcpu_count=2, mem_size_mib=256).boot_source(kernel).drive(
        "rootfs", rootfs, root=True
    ).build()


@pytest.fixture
def manager(host):
    with VMManager(host) as m:
        yield m


@pytest.fixture
def fake_server(short_dir):
    """In-thread fake hypervisor; yields its socket path."""
    path = short_dir / "api.sock"
    server = fake_firecracker.make_server(path, instance_id="test-vm")
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield path
    server.shutdown()
    server.server_close()


def wait_until(predicate, timeout=5.0, interval=0.02):
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
