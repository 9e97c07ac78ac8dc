# Author: PB
# Maintainer: PB
# Original date: 2025.06.10
# License: (c) HRDAG, 2025, GPL-2 or newer
#
# ------
# src/snapmirror/system/execution.py

"""Thin wrapper around subprocess for zfs, restic, rsync and fusermount."""

import subprocess
from typing import Optional

import loguru

from snapmirror.system.exceptions import (
    BackendLogicError,
    BackendTransportError,
    ToolMissingError,
)

logger = loguru.logger


class CommandExecutor:
    """Run external commands with consistent error translation.

    OSError (tool missing, not executable) always becomes
    BackendTransportError. A non-zero exit only raises when ``check=True``;
    callers that treat "not found" as a clean negative pass ``check=False``
    and inspect ``returncode`` themselves.
    """

    @staticmethod
    def run_local(cmd: list[str], check: bool = False,
                  timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except OSError as e:
            raise BackendTransportError(
                f"Failed to execute {cmd[0]}: {e}", command=cmd
            ) from e
        except subprocess.TimeoutExpired as e:
            raise BackendTransportError(
                f"{cmd[0]} timed out after {timeout}s", command=cmd
            ) from e

        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise BackendLogicError(
                f"{cmd[0]} command failed: {stderr}", command=cmd, stderr=stderr
            )
        return result

    @staticmethod
    def run_sudo(cmd: list[str], check: bool = False,
                 timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        # -n: never prompt, fail instead
        return CommandExecutor.run_local(["sudo", "-n", *cmd], check=check, timeout=timeout)

    @staticmethod
    def spawn(cmd: list[str]) -> subprocess.Popen:
        """Start a long-running background process (e.g. ``restic mount``)."""
        logger.debug(f"Spawning: {' '.join(cmd)}")
        try:
            return subprocess.Popen(
                cmd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise BackendTransportError(
                f"Failed to start {cmd[0]}: {e}", command=cmd
            ) from e


def check_tool_installed(tool: str, version_arg: str = "--version") -> None:
    """Raise ToolMissingError unless ``tool`` runs successfully."""
    try:
        result = CommandExecutor.run_local([tool, version_arg], check=False, timeout=30)
    except BackendTransportError as e:
        raise ToolMissingError(
            f"{tool} is not installed. Please install {tool} and try again.",
            tool=tool,
        ) from e
    if result.returncode != 0:
        raise ToolMissingError(f"{tool} command failed", tool=tool)
