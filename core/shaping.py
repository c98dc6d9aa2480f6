# FILE: core/shaping.py
# PURPOSE: Delays matching egress packets with a prio + netem qdisc tree.
#
# Layout installed on the interface:
#
#   1: prio bands 4          (root; default priomap only uses bands 1:1-1:3)
#   `-- 1:4 -> 40: netem delay <N>ms
#   u32 filters on 1:0 steer the target traffic into 1:4
import logging
import re
from typing import List, Optional

from .commands import CommandError, run_command
from .data_models import TrafficFilter
from .errors import SetupFailure, TeardownFailure

logger = logging.getLogger(__name__)

ROOT_HANDLE = "1:"
BAND_COUNT = 4
DELAY_BAND = "1:4"
DELAY_HANDLE = "40:"
IP_PROTO_NUMBERS = {"tcp": 6, "udp": 17}

# What tc prints when there is no root qdisc of ours to delete.
_NOTHING_TO_RESET = ("handle of zero", "No such file or directory", "Invalid handle")


def _sanitize_interface(iface: str) -> str:
    if not iface or not re.match(r'^[a-zA-Z0-9._-]{1,15}$', iface):
        raise ValueError(f"Invalid interface name: {iface!r}")
    return iface


def match_predicate(traffic_filter: TrafficFilter, protocol: str) -> List[str]:
    """u32 match tokens selecting one protocol of the filter."""
    tokens = [
        "match", "ip", "dst", f"{traffic_filter.destination}/32",
        "match", "ip", "protocol", str(IP_PROTO_NUMBERS[protocol]), "0xff",
    ]
    if traffic_filter.port is not None:
        tokens += ["match", "ip", "dport", str(traffic_filter.port), "0xffff"]
    return tokens


class TcAdapter:
    """Thin wrapper over the `tc` binary."""

    def __init__(self, runner=run_command):
        self.run = runner

    def reset(self, interface) -> bool:
        """Delete the root qdisc. Returns False when there was nothing to delete."""
        try:
            self.run(["tc", "qdisc", "del", "dev", _sanitize_interface(interface), "root"])
        except CommandError as e:
            if any(marker in e.stderr for marker in _NOTHING_TO_RESET):
                return False
            raise
        return True

    def add_root_priority_discipline(self, interface, handle, band_count):
        self.run(["tc", "qdisc", "add", "dev", _sanitize_interface(interface), "root",
                  "handle", handle, "prio", "bands", str(band_count)])

    def add_delay_discipline(self, interface, parent_band, handle, delay_ms):
        self.run(["tc", "qdisc", "add", "dev", _sanitize_interface(interface), "parent", parent_band,
                  "handle", handle, "netem", "delay", f"{delay_ms}ms"])

    def add_filter_rule(self, interface, parent_handle, predicate, target_band):
        self.run(["tc", "filter", "add", "dev", _sanitize_interface(interface), "parent", parent_handle,
                  "protocol", "ip", "prio", "1", "u32", *predicate, "flowid", target_band])


class ShapingController:
    """Owns the shaping state on one interface between install() and remove()."""

    def __init__(self, traffic_filter: TrafficFilter, delay_ms: int, interface: str,
                 tc: Optional[TcAdapter] = None):
        self.filter = traffic_filter
        self.delay_ms = delay_ms
        self.interface = interface
        self.tc = tc or TcAdapter()
        self.installed = False

    def install(self):
        try:
            if self.tc.reset(self.interface):
                logger.info("Removed existing root qdisc on %s", self.interface)
            self.tc.add_root_priority_discipline(self.interface, ROOT_HANDLE, BAND_COUNT)
            self.installed = True
            self.tc.add_delay_discipline(self.interface, DELAY_BAND, DELAY_HANDLE, self.delay_ms)
            for proto in self.filter.protocols:
                self.tc.add_filter_rule(self.interface, "1:0",
                                        match_predicate(self.filter, proto), DELAY_BAND)
        except (CommandError, ValueError) as e:
            raise SetupFailure(f"Could not install traffic shaping on {self.interface}: {e}") from e
        logger.info("Delaying %s traffic to %s by %dms on %s",
                    "/".join(self.filter.protocols), self.filter.destination,
                    self.delay_ms, self.interface)

    def remove(self):
        try:
            self.tc.reset(self.interface)
        except (CommandError, ValueError) as e:
            raise TeardownFailure(
                f"Could not remove traffic shaping ({e}). Clean up manually with: "
                f"tc qdisc del dev {self.interface} root") from e
        finally:
            self.installed = False
        logger.info("Traffic shaping removed from %s", self.interface)

    def __enter__(self):
        self.install()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.remove()
        return False
