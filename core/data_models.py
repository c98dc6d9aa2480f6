# ==============================================================================
# FILE: core/data_models.py
# PURPOSE: Defines shared data structures and the recent-results state.
# ==============================================================================
import collections
import enum
import ipaddress
import time
from dataclasses import dataclass, field, asdict
from threading import Lock
from typing import Optional, Tuple

from .errors import ConfigurationError

PROTOCOLS = ("tcp", "udp")


@dataclass(frozen=True)
class TrafficFilter:
    """Selection predicate shared by the shaping and classification rules."""
    destination: str
    port: Optional[int] = None
    protocols: Tuple[str, ...] = ("tcp", "udp")
    tcp_new_only: bool = False

    def __post_init__(self):
        try:
            addr = ipaddress.ip_address(self.destination)
        except ValueError:
            raise ConfigurationError(f"Invalid destination address: {self.destination!r}")
        if addr.version != 4:
            raise ConfigurationError("Only IPv4 destinations are supported.")
        object.__setattr__(self, "destination", str(addr))

        if self.port is not None and not 1 <= self.port <= 65535:
            raise ConfigurationError(f"Port out of range: {self.port}")
        if not self.protocols:
            raise ConfigurationError("Select at least one protocol (TCP and/or UDP).")
        for proto in self.protocols:
            if proto not in PROTOCOLS:
                raise ConfigurationError(f"Unsupported protocol: {proto!r}")
        if self.tcp_new_only and "tcp" not in self.protocols:
            raise ConfigurationError("--tcp-new-only requires TCP to be monitored.")


@dataclass(frozen=True)
class RunConfig:
    filter: TrafficFilter
    delay_ms: int = 500
    rate_per_minute: int = 20
    action: Optional[str] = None
    interface: Optional[str] = None
    log_file: Optional[str] = None
    resolver: str = "psutil"
    lock_path: str = "/run/netblame.lock"
    web_port: Optional[int] = None
    verbose: bool = False

    def __post_init__(self):
        if self.delay_ms < 1:
            raise ConfigurationError("Delay must be at least 1 ms.")
        if self.rate_per_minute < 1:
            raise ConfigurationError("Rate limit must be at least 1 per minute.")
        if self.resolver not in ("psutil", "lsof"):
            raise ConfigurationError(f"Unknown resolver: {self.resolver!r}")


class Outcome(enum.Enum):
    DELIVERED = "delivered"
    RESOLUTION_FAILED = "resolution_failed"
    PARSE_DEGRADED = "parse_degraded"


@dataclass
class AttributionEvent:
    protocol: Optional[str]
    source_port: Optional[int]
    raw: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class AttributionResult:
    outcome: Outcome
    protocol: Optional[str] = None
    source_port: Optional[int] = None
    pid: Optional[int] = None
    process_name: Optional[str] = None
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self):
        data = asdict(self)
        data['outcome'] = self.outcome.value
        return data


# Shared with the web surface; written only by the correlator's sink.
data_lock = Lock()
recent_results = collections.deque(maxlen=200)
# Describes the current run for display (interface, destination, tag)
run_info = {}
