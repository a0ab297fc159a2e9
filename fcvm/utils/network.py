#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Host network helpers.
Tap devices are created by the caller; fcvm only checks that they exist.
"""

from __future__ import annotations

import logging
from typing import Iterable, List

from pyroute2 import IPRoute, NetlinkError

logger = logging.getLogger("fcvm")


def tap_exists(name: str) -> bool:
    """Return True if a link called `name` exists on the host."""
    try:
        with IPRoute() as ipr:
            return bool(ipr.link_lookup(ifname=name))
    except NetlinkError as e:
        logger.warning("netlink lookup for %s failed: %s", name, e)
        return False


def missing_taps(names: Iterable[str]) -> List[str]:
    """Return the subset of `names` that are not present on the host."""
    return [n for n in names if not tap_exists(n)]
