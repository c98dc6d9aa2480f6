# FILE: core/stream.py
# PURPOSE: Follows the kernel log (journal or a syslog file) as a line iterator.
import logging
import subprocess
from typing import List, Optional

from .errors import StreamFailure

logger = logging.getLogger(__name__)


def stream_command(log_file: Optional[str]) -> List[str]:
    if log_file:
        return ["tail", "-n", "0", "-F", log_file]
    return ["journalctl", "-k", "-f", "-n", "0", "-o", "short"]


class LogStream:
    """Iterates over new log lines until closed.

    close() may be called from a signal handler; it terminates the follower
    process so a blocked read returns. An end of stream that was not asked for
    raises StreamFailure.
    """

    def __init__(self, log_file: Optional[str] = None):
        self.argv = stream_command(log_file)
        self._proc = None
        self.closed = False

    def open(self):
        try:
            self._proc = subprocess.Popen(self.argv, stdout=subprocess.PIPE,
                                          stderr=subprocess.DEVNULL, text=True, bufsize=1,
                                          encoding="utf-8", errors="replace")
        except OSError as e:
            raise StreamFailure(f"Could not start {self.argv[0]}: {e}") from e
        logger.debug("Following log with: %s", " ".join(self.argv))
        return self

    def __iter__(self):
        if self.closed:
            return
        if self._proc is None:
            self.open()
        for line in self._proc.stdout:
            yield line.rstrip("\n")
        if not self.closed:
            rc = self._proc.wait()
            raise StreamFailure(f"Log stream '{self.argv[0]}' ended unexpectedly (rc={rc}).")

    def close(self):
        self.closed = True
        if self._proc is not None and self._proc.poll() is None:
            self._proc.terminate()

    def wait(self, timeout=5):
        if self._proc is None:
            return
        try:
            self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            self._proc.kill()
            self._proc.wait()
