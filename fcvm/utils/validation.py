#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Field validators for fcvm.
Each check raises ValueError with a human message; the configuration builder
collects them into FieldErrors.
"""
import os
import re
from pathlib import Path
from typing import Optional

from fcvm.models import RateLimiter, TokenBucket

_DEVICE_ID_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")
_VM_ID_RE = re.compile(r"^[A-Za-z0-9-]{1,64}$")
_MAC_RE = re.compile(r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$")
_IPV4_RE = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")

# IFNAMSIZ includes the trailing NUL
MAX_IFNAME = 15


def validate_name(entity: str, name: str) -> None:
    """Validate a VM id (alnum and dashes only, at most 64 chars)."""
    if not _VM_ID_RE.match(name or ""):
        raise ValueError(f"Invalid {entity} '{name}'. Only A-Z, a-z, 0-9 and '-' allowed (1-64 chars)")


def validate_device_id(entity: str, name: str) -> None:
    """Validate a drive or interface id (alnum and underscore, at most 64 chars)."""
    if not _DEVICE_ID_RE.match(name or ""):
        raise ValueError(f"Invalid {entity} '{name}'. Only A-Z, a-z, 0-9 and '_' allowed (1-64 chars)")


def validate_ifname(name: str) -> None:
    if not name:
        raise ValueError("host device name is required")
    if len(name) > MAX_IFNAME:
        raise ValueError(f"host device name '{name}' longer than {MAX_IFNAME} characters")
    if "/" in name or any(ch.isspace() for ch in name) or name in (".", ".."):
        raise ValueError(f"host device name '{name}' contains forbidden characters")


def validate_mac(mac: str) -> None:
    if not _MAC_RE.match(mac or ""):
        raise ValueError(f"invalid MAC address '{mac}'")
    if int(mac.split(":")[0], 16) & 0x01:
        raise ValueError(f"MAC address '{mac}' is multicast")


def validate_ipv4(address: str) -> None:
    m = _IPV4_RE.match(address or "")
    if not m or any(int(octet) > 255 for octet in m.groups()):
        raise ValueError(f"invalid IPv4 address '{address}'")


def validate_readable_file(path: Path, writable: bool = False) -> None:
    """Ensure `path` is an existing regular file (or block device) the process can open."""
    p = Path(path)
    if not p.exists():
        raise ValueError(f"{p} does not exist")
    if p.is_dir():
        raise ValueError(f"{p} is a directory")
    if not os.access(p, os.R_OK):
        raise ValueError(f"{p} is not readable")
    if writable and not os.access(p, os.W_OK):
        raise ValueError(f"{p} is not writable")


def validate_int(value, minimum: Optional[int] = None, maximum: Optional[int] = None) -> None:
    """Ensure `value` is an int (bools rejected) within the optional bounds."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"must be an integer (got {value!r})")
    if minimum is not None and value < minimum:
        raise ValueError(f"must be >= {minimum} (got {value})")
    if maximum is not None and value > maximum:
        raise ValueError(f"must be <= {maximum} (got {value})")


def validate_token_bucket(bucket: TokenBucket) -> None:
    for name in ("size", "refill_time", "one_time_burst"):
        value = getattr(bucket, name)
        if value is None and name == "one_time_burst":
            continue
        try:
            validate_int(value, minimum=0)
        except ValueError as e:
            raise ValueError(f"{name} {e}") from None


def rate_limiter_errors(limiter: Optional[RateLimiter]):
    """Yield (bucket name, message) for every invalid bucket of a limiter."""
    if limiter is None:
        return
    for name in ("bandwidth", "ops"):
        bucket = getattr(limiter, name)
        if bucket is None:
            continue
        try:
            validate_token_bucket(bucket)
        except ValueError as e:
            yield name, str(e)
