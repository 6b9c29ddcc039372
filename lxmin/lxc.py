# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
lxmin LXC - Adapter over the lxc command line tool.

Every method maps to exactly one lxc invocation. Output is parsed from
the tool's YAML/CSV formats; failures carry the tool's stderr verbatim.
"""

import asyncio
from pathlib import Path
from typing import List, Set, Type

import aiofiles
import structlog
import yaml

from lxmin.exceptions import ExportError, ExternalToolError

logger = structlog.get_logger()


class LXCClient:
    """Runs lxc subcommands as asyncio subprocesses."""

    def __init__(self, binary: str = "lxc"):
        self.binary = binary

    async def _run(
        self,
        *args: str,
        stdin: bytes | None = None,
        error_cls: Type[ExternalToolError] = ExternalToolError,
    ) -> bytes:
        command = (self.binary, *args)
        logger.debug("lxc_command_started", command=" ".join(command))

        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise error_cls(
                f"Failed to run {self.binary}: {e}",
                args=command,
            ) from e

        stdout, stderr = await proc.communicate(stdin)

        if proc.returncode != 0:
            err = stderr.decode(errors="replace").strip()
            raise error_cls(
                f"'{' '.join(command)}' failed: {err or f'exit status {proc.returncode}'}",
                stderr=err,
                returncode=proc.returncode,
                args=command,
            )

        return stdout

    async def instance_exists(self, instance: str) -> bool:
        """Check whether an instance with exactly this name exists."""
        out = await self._run("list", instance, "-c", "n", "-f", "csv")
        names = [line.strip() for line in out.decode().splitlines()]
        return instance in names

    async def list_profiles(self, instance: str) -> List[str]:
        """Return the instance's profiles in application order."""
        out = await self._run("config", "show", instance)
        data = yaml.safe_load(out) or {}
        profiles = data.get("profiles") or []
        return [str(p) for p in profiles]

    async def export_profile(self, profile: str, dest: Path) -> int:
        """Write the profile's YAML definition to dest and return its size."""
        out = await self._run("profile", "show", profile, error_cls=ExportError)
        async with aiofiles.open(dest, "wb") as f:
            await f.write(out)
        return len(out)

    async def export_instance(self, instance: str, dest: Path, optimized: bool = False) -> int:
        """Export the instance to a compressed archive at dest and return its size."""
        args = ["export"]
        if optimized:
            args.append("--optimized-storage")
        args.extend([instance, str(dest)])
        await self._run(*args, error_cls=ExportError)

        try:
            return dest.stat().st_size
        except FileNotFoundError as e:
            raise ExportError(
                f"lxc export reported success but {dest} is missing",
                args=(self.binary, *args),
            ) from e

    async def list_existing_profiles(self) -> Set[str]:
        """Return the names of all profiles defined on this host."""
        out = await self._run("profile", "list", "-f", "yaml")
        entries = yaml.safe_load(out) or []
        return {str(entry["name"]) for entry in entries if isinstance(entry, dict) and "name" in entry}

    async def create_profile(self, name: str) -> None:
        await self._run("profile", "create", name)

    async def edit_profile(self, name: str, content: bytes) -> None:
        """Replace the profile's configuration with the given YAML content."""
        await self._run("profile", "edit", name, stdin=content)

    async def import_instance(self, archive: Path) -> None:
        await self._run("import", str(archive))

    async def start_instance(self, instance: str) -> None:
        await self._run("start", instance)
