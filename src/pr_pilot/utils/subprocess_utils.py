"""Standardized subprocess utilities for git and shell execution."""

import logging
import re
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)

# https://x-access-token:<secret>@github.com/... -> https://***@github.com/...
_CREDENTIAL_URL = re.compile(r"(https?://)[^/\s@]+@")


def redact(text: str) -> str:
    """Strip credentials embedded in clone/push URLs."""
    return _CREDENTIAL_URL.sub(r"\1***@", text or "")


class SubprocessError(Exception):
    """Exception raised when a subprocess command fails or times out."""

    def __init__(
        self,
        cmd: str,
        returncode: int,
        stderr: str,
        stdout: str = "",
        cwd: Optional[Path] = None,
        timed_out: bool = False,
    ):
        self.cmd = redact(cmd)
        self.returncode = returncode
        self.stderr = redact(stderr)
        self.stdout = stdout
        self.cwd = cwd
        self.timed_out = timed_out

        where = f" (cwd: {cwd})" if cwd else ""
        if timed_out:
            message = f"Command timed out{where}: {self.cmd}"
        else:
            message = (
                f"Command failed with exit code {returncode}{where}: {self.cmd}\n"
                f"stderr: {self.stderr}"
            )
        super().__init__(message)


def _cmd_str(cmd: Union[str, List[str]]) -> str:
    return cmd if isinstance(cmd, str) else " ".join(cmd)


def run_command(
    cmd: Union[str, List[str]],
    *,
    cwd: Optional[Path] = None,
    capture_output: bool = True,
    check: bool = True,
    timeout: Optional[int] = None,
    env: Optional[Dict[str, str]] = None,
    shell: bool = False,
) -> subprocess.CompletedProcess:
    """
    Run a command with standardized error handling.

    Args:
        cmd: Command to run (string or list)
        cwd: Working directory
        capture_output: Capture stdout/stderr
        check: Raise exception on non-zero exit
        timeout: Timeout in seconds
        env: Environment variables
        shell: Use shell execution

    Returns:
        CompletedProcess with stdout, stderr, returncode

    Raises:
        SubprocessError: If check=True and command fails, or on timeout
    """
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture_output,
            text=True,
            timeout=timeout,
            env=env,
            shell=shell,
            check=False,  # We handle check ourselves for better error messages
        )
    except subprocess.TimeoutExpired as e:
        logger.error(f"Command timed out after {timeout}s: {redact(_cmd_str(cmd))}")
        stdout = e.stdout.decode() if isinstance(e.stdout, bytes) else (e.stdout or "")
        stderr = e.stderr.decode() if isinstance(e.stderr, bytes) else (e.stderr or "")
        raise SubprocessError(
            cmd=_cmd_str(cmd),
            returncode=-1,
            stderr=stderr,
            stdout=stdout,
            cwd=cwd,
            timed_out=True,
        ) from e

    if check and result.returncode != 0:
        raise SubprocessError(
            cmd=_cmd_str(cmd),
            returncode=result.returncode,
            stderr=result.stderr,
            stdout=result.stdout,
            cwd=cwd,
        )

    return result


def run_git_command(
    args: List[str],
    *,
    cwd: Optional[Path] = None,
    check: bool = True,
    timeout: Optional[int] = 60,
) -> subprocess.CompletedProcess:
    """
    Run a git command with standardized error handling.

    Args:
        args: Git command arguments (without 'git' prefix)
        cwd: Working directory (git repo)
        check: Raise exception on non-zero exit
        timeout: Timeout in seconds (None waits indefinitely)

    Raises:
        SubprocessError: If check=True and command fails
    """
    cmd = ["git"] + args

    try:
        return run_command(
            cmd,
            cwd=cwd,
            capture_output=True,
            check=check,
            timeout=timeout,
        )
    except SubprocessError:
        logger.error(f"Git command failed in {cwd}: {redact(' '.join(args))}")
        raise
