# FILE: core/commands.py
# PURPOSE: Runs external system utilities and checks run preconditions.
import logging
import os
import shutil
import subprocess
from typing import Iterable, List, Optional

from .errors import DependencyMissingError, PrivilegeError

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """An external command exited non-zero or could not be started."""

    def __init__(self, argv, returncode=None, stderr=""):
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        super().__init__(f"{' '.join(self.argv)} failed (rc={returncode}): {self.stderr}")


def run_command(argv: List[str], timeout: int = 10) -> str:
    """Run argv in list form (never through a shell) and return its stdout."""
    logger.debug("exec: %s", " ".join(argv))
    try:
        proc = subprocess.run(argv, capture_output=True, text=True, timeout=timeout, check=False)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise CommandError(argv, None, str(e)) from e
    if proc.returncode != 0:
        raise CommandError(argv, proc.returncode, proc.stderr)
    return proc.stdout


def check_privileges():
    if os.geteuid() != 0:
        raise PrivilegeError("Root privileges are required to change tc and iptables state.")


def check_dependencies(binaries: Iterable[str], which=None):
    which = which or shutil.which
    missing = [b for b in binaries if which(b) is None]
    if missing:
        raise DependencyMissingError(f"Missing required tools: {', '.join(missing)}")


def required_binaries(log_file: Optional[str], resolver: str) -> List[str]:
    needed = ["tc", "iptables"]
    needed.append("tail" if log_file else "journalctl")
    if resolver == "lsof":
        needed.append("lsof")
    return needed
