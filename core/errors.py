# FILE: core/errors.py
# PURPOSE: Error taxonomy. Every fatal condition maps to its own exit status.


class NetblameError(Exception):
    """Base class for conditions that stop a run."""
    exit_code = 1


class ConfigurationError(NetblameError):
    exit_code = 2


class AlreadyRunningError(NetblameError):
    exit_code = 3


class PrivilegeError(NetblameError):
    exit_code = 4


class DependencyMissingError(NetblameError):
    exit_code = 5


class SetupFailure(NetblameError):
    exit_code = 6


class StreamFailure(NetblameError):
    exit_code = 7


class TeardownFailure(NetblameError):
    """A cleanup step failed. Reported, never fatal."""
