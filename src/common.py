"""Common utilities for the reconciler."""

import getpass
import logging
import socket
import subprocess
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Sentinel return codes for run_command. Real processes return 0..255, or
# -N when killed by signal N, so these never collide with either.
# Command timed out
TIMEOUT_RC = -1000
# Command could not be started
EXEC_ERROR_RC = -1001


def run_command(
    cmd: list[str],
    cwd: Optional[Path] = None,
    timeout: int = 600,
    capture: bool = True,
    env: Optional[dict] = None,
    input_data: Optional[str] = None,
) -> tuple[int, str, str]:
    """Run a command and return (returncode, stdout, stderr)."""
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=capture,
            text=True,
            timeout=timeout,
            env=env,
            input=input_data,
            check=False  # We handle return codes explicitly
        )
        return result.returncode, result.stdout, result.stderr
    except subprocess.TimeoutExpired:
        return TIMEOUT_RC, '', f'Command timed out after {timeout}s'
    except OSError as e:
        return EXEC_ERROR_RC, '', str(e)


def who_am_i() -> str:
    """Return user@host for lock ownership records."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = 'unknown'
    return f'{user}@{socket.gethostname()}'
