# FILE: core/lifecycle.py
# PURPOSE: Single-instance lock plus setup/teardown sequencing around the correlator.
import logging
import os

from .errors import AlreadyRunningError, SetupFailure, TeardownFailure

logger = logging.getLogger(__name__)


class InstanceLock:
    """Exclusive lock file. A crashed run leaves it behind; remove it by hand."""

    def __init__(self, path: str):
        self.path = path
        self.held = False

    def acquire(self):
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise AlreadyRunningError(
                f"Another instance appears to be running (lock file {self.path} exists). "
                f"If it is not, delete the file and retry.")
        except OSError as e:
            raise SetupFailure(f"Could not create lock file {self.path}: {e}") from e
        with os.fdopen(fd, "w") as f:
            f.write(f"{os.getpid()}\n")
        self.held = True

    def release(self):
        if not self.held:
            return
        try:
            os.unlink(self.path)
        except OSError as e:
            raise TeardownFailure(f"Could not remove lock file {self.path}: {e}") from e
        finally:
            self.held = False


class LifecycleManager:
    """Runs lock -> shaping -> classifier -> correlator, and always unwinds in reverse."""

    def __init__(self, lock, shaping, classifier, correlator, stream):
        self.lock = lock
        self.shaping = shaping
        self.classifier = classifier
        self.correlator = correlator
        self.stream = stream
        self._shaping_started = False
        self._classifier_started = False

    def run(self) -> int:
        self.lock.acquire()
        try:
            # Flags go up before install() so a half-installed component is still removed.
            self._shaping_started = True
            self.shaping.install()
            self._classifier_started = True
            self.classifier.install()
            if self.correlator.cancel.is_set():
                return 0
            logger.info("Waiting for matching traffic (Ctrl+C to stop)...")
            return self.correlator.run(self.stream)
        finally:
            self.teardown()

    def cancel(self):
        """Safe to call from a signal handler."""
        self.correlator.cancel.set()
        self.stream.close()

    def handle_signal(self, signum, frame):
        logger.info("Received signal %d, shutting down.", signum)
        self.cancel()

    def teardown(self):
        self.stream.close()
        self.stream.wait()
        steps = []
        if self._classifier_started:
            steps.append(("classifier", self.classifier.remove))
        if self._shaping_started:
            steps.append(("shaping", self.shaping.remove))
        steps.append(("lock", self.lock.release))

        for name, step in steps:
            try:
                step()
            except TeardownFailure as e:
                logger.error("Teardown of %s failed, manual cleanup required: %s", name, e)
        self._classifier_started = self._shaping_started = False
