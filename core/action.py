# FILE: core/action.py
# PURPOSE: Invokes the user's handler with each attributed pid.
import logging
import subprocess

from .data_models import AttributionResult, Outcome

logger = logging.getLogger(__name__)


class ActionRunner:
    """Runs `<handler> <pid>` synchronously. Its exit status is logged, never raised."""

    def __init__(self, handler: str, timeout: int = 30):
        self.handler = handler
        self.timeout = timeout

    def __call__(self, result: AttributionResult):
        if result.outcome is not Outcome.DELIVERED or result.pid is None:
            return None
        try:
            proc = subprocess.run([self.handler, str(result.pid)], timeout=self.timeout, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Action %s failed for pid %d: %s", self.handler, result.pid, e)
            return None
        logger.info("Action %s for pid %d exited with status %d",
                    self.handler, result.pid, proc.returncode)
        return proc.returncode
