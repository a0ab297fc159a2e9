#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# Licensed to the Apache Software Foundation (ASF) under one
# or more contributor license agreements.  See the NOTICE file
# distributed with this work for additional information
# regarding copyright ownership.  The ASF licenses this file
# to you under the Apache License, Version 2.0 (the
# "License"); you may not use this file except in compliance
# with the License.  You may obtain a copy of the License at
#
#   http://www.apache.org/licenses/LICENSE/2.0
#
# Unless required by applicable law or agreed to in writing,
# software distributed under the License is distributed on an
# "AS IS" BASIS, WITHOUT WARRANTIES OR CONDITIONS OF ANY
# KIND, either express or implied.  See the License for the
# specific language governing permissions and limitations
# under the License.
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer

from fcvm.cli import CLICommands
from fcvm.config import ConfigManager, apply_logging_from_cfg

logger = logging.getLogger("fcvm")

cli = typer.Typer(help="Drive Firecracker microVMs from JSON spec files.")


@cli.command()
def validate(spec_file: Path):
    """Validate a VM spec file."""
    cli_commands = CLICommands()
    cli_commands.validate(spec_file)


@cli.command()
def render(spec_file: Path, output: Optional[Path] = None):
    """Print the hypervisor configuration for a VM spec file, or write it with --output."""
    cli_commands = CLICommands()
    cli_commands.render(spec_file, output=output)


@cli.command()
def run(spec_file: Path, timeout: Optional[float] = None, grace_period: Optional[float] = None):
    """Create and boot a VM, then stop and destroy it when it exits or on Ctrl-C."""
    cli_commands = CLICommands()
    cli_commands.run(spec_file, timeout=timeout, grace_period=grace_period)


def main():
    """Main entry point."""
    try:
        cfg = ConfigManager().load_config()
    except RuntimeError as e:
        typer.echo(json.dumps({"error": str(e)}))
        raise SystemExit(1)
    apply_logging_from_cfg(cfg)
    cli()


if __name__ == "__main__":
    main()
