# FILE: core/classifier.py
# PURPOSE: Logs matching outbound packets through a tagged, rate-limited iptables chain.
import logging
import os
import re
from typing import List, Optional, Tuple

from .commands import CommandError, run_command
from .data_models import TrafficFilter
from .errors import SetupFailure, TeardownFailure

logger = logging.getLogger(__name__)

TAG_PREFIX = "NETBLAME"
OUTBOUND_CHAIN = "OUTPUT"


def make_tag(pid: Optional[int] = None) -> str:
    """Process-unique tag used as chain name, rule comment and log prefix."""
    return f"{TAG_PREFIX}{pid if pid is not None else os.getpid()}"


def log_prefix(tag: str) -> str:
    return f"{tag}: "


def hashlimit_name(tag: str, protocol: str) -> str:
    # Kernel limit on hashlimit table names is 15 characters.
    return f"{re.sub(r'[^a-z0-9]', '', tag.lower())[-10:]}_{protocol}"


def match_predicate(traffic_filter: TrafficFilter, protocol: str) -> List[str]:
    args = ["-d", traffic_filter.destination, "-p", protocol]
    if traffic_filter.port is not None:
        args += ["--dport", str(traffic_filter.port)]
    if protocol == "tcp" and traffic_filter.tcp_new_only:
        args += ["-m", "conntrack", "--ctstate", "NEW"]
    return args


def rate_limit_spec(tag: str, protocol: str, per_minute: int) -> List[str]:
    """At most `per_minute` events per (src ip, dst ip, src port), no burst credit."""
    return [
        "-m", "hashlimit",
        "--hashlimit-name", hashlimit_name(tag, protocol),
        "--hashlimit-upto", f"{per_minute}/minute",
        "--hashlimit-burst", "1",
        "--hashlimit-mode", "srcip,dstip,srcport",
    ]


class IptablesAdapter:
    """Thin wrapper over the `iptables` binary (filter table)."""

    def __init__(self, runner=run_command):
        self.run = runner

    def _iptables(self, *args):
        return self.run(["iptables", "-w", *args])

    def create_chain(self, tag):
        self._iptables("-N", tag)

    def append_log_rule(self, tag, predicate, rate_spec, prefix):
        self._iptables("-A", tag, *predicate, *rate_spec, "-j", "LOG", "--log-prefix", prefix)

    def insert_into_outbound_path(self, tag, priority):
        self._iptables("-I", OUTBOUND_CHAIN, str(priority),
                       "-m", "comment", "--comment", tag, "-j", tag)

    def list_outbound_path_rules(self) -> List[Tuple[int, str]]:
        output = self._iptables("-L", OUTBOUND_CHAIN, "-n", "--line-numbers")
        rules = []
        for line in output.splitlines():
            num, _, rest = line.strip().partition(" ")
            if num.isdigit():
                rules.append((int(num), rest))
        return rules

    def delete_outbound_path_rule(self, index):
        self._iptables("-D", OUTBOUND_CHAIN, str(index))

    def flush_chain(self, tag):
        self._iptables("-F", tag)

    def delete_chain(self, tag):
        self._iptables("-X", tag)


class Classifier:
    """Owns the tagged rule chain and its jump from OUTPUT."""

    def __init__(self, traffic_filter: TrafficFilter, rate_per_minute: int, tag: str,
                 iptables: Optional[IptablesAdapter] = None):
        self.filter = traffic_filter
        self.rate_per_minute = rate_per_minute
        self.tag = tag
        self.iptables = iptables or IptablesAdapter()

    def install(self):
        try:
            self.iptables.create_chain(self.tag)
            for proto in self.filter.protocols:
                self.iptables.append_log_rule(
                    self.tag,
                    match_predicate(self.filter, proto),
                    rate_limit_spec(self.tag, proto, self.rate_per_minute),
                    log_prefix(self.tag),
                )
            self.iptables.insert_into_outbound_path(self.tag, 1)
        except CommandError as e:
            raise SetupFailure(f"Could not install classification chain {self.tag}: {e}") from e
        logger.info("Logging chain %s installed (max %d events/min per source port)",
                    self.tag, self.rate_per_minute)

    def remove(self):
        """Delete only the OUTPUT jumps carrying our tag, then our chain."""
        failures = []
        marker = f"/* {self.tag} */"
        try:
            ours = [idx for idx, text in self.iptables.list_outbound_path_rules() if marker in text]
            # Highest index first so the remaining indices stay valid.
            for idx in sorted(ours, reverse=True):
                self.iptables.delete_outbound_path_rule(idx)
        except CommandError as e:
            failures.append(f"{e} (try: iptables -D {OUTBOUND_CHAIN} -m comment "
                            f"--comment {self.tag} -j {self.tag})")

        for step, hint in ((self.iptables.flush_chain, f"iptables -F {self.tag}"),
                           (self.iptables.delete_chain, f"iptables -X {self.tag}")):
            try:
                step(self.tag)
            except CommandError as e:
                failures.append(f"{e} (try: {hint})")

        if failures:
            raise TeardownFailure("Could not fully remove classification rules: " + "; ".join(failures))
        logger.info("Logging chain %s removed", self.tag)

    def __enter__(self):
        self.install()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.remove()
        return False
