# FILE: core/resolver.py
# PURPOSE: Maps a (protocol, local port) pair to the processes holding that socket.
import logging
from typing import List, Optional

import psutil

from .commands import CommandError, run_command

logger = logging.getLogger(__name__)


class PsutilResolver:
    """Reads the socket table through psutil, keeping the system's listing order."""

    def find_owning_process(self, protocol: str, local_port: int) -> List[int]:
        try:
            conns = psutil.net_connections(kind=protocol)
        except psutil.Error as e:
            logger.debug("Socket table unavailable: %s", e)
            return []
        return [c.pid for c in conns if c.pid and c.laddr and c.laddr.port == local_port]


class LsofResolver:
    def __init__(self, runner=run_command):
        self.run = runner

    def find_owning_process(self, protocol: str, local_port: int) -> List[int]:
        try:
            output = self.run(["lsof", "-n", "-P", "-t", "-i", f"{protocol}:{local_port}"])
        except CommandError as e:
            # lsof exits 1 with no output when nothing matches.
            if e.returncode != 1:
                logger.debug("lsof lookup failed: %s", e)
            return []
        return [int(tok) for tok in output.split() if tok.isdigit()]


def make_resolver(name: str):
    return LsofResolver() if name == "lsof" else PsutilResolver()


def process_name(pid: int) -> Optional[str]:
    try:
        return psutil.Process(pid).name()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None
