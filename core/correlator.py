# FILE: core/correlator.py
# PURPOSE: Turns tagged log lines into attribution results, one line at a time.
import logging
import re
import threading
from typing import Callable, Iterable, Iterator, Optional, Sequence

from .classifier import log_prefix
from .data_models import (
    AttributionEvent, AttributionResult, Outcome, PROTOCOLS, data_lock, recent_results
)
from .resolver import process_name

logger = logging.getLogger(__name__)

_PROTO_RE = re.compile(r"\bPROTO=(\w+)")
_SPT_RE = re.compile(r"\bSPT=(\d+)")


def parse_line(line: str) -> AttributionEvent:
    proto = _PROTO_RE.search(line)
    sport = _SPT_RE.search(line)
    return AttributionEvent(
        protocol=proto.group(1).lower() if proto else None,
        source_port=int(sport.group(1)) if sport else None,
        raw=line,
    )


class EventCorrelator:
    """Consumes the log stream strictly in order and resolves each tagged line.

    Cancellation is cooperative: `cancel` is checked before each line, so a
    resolution that already started is always finished and delivered.
    """

    def __init__(self, tag: str, resolver, sinks: Sequence[Callable] = (),
                 cancel: Optional[threading.Event] = None, name_lookup=process_name):
        self.marker = log_prefix(tag).rstrip()
        self.resolver = resolver
        self.sinks = list(sinks)
        self.cancel = cancel or threading.Event()
        self.name_lookup = name_lookup

    def process_line(self, line: str) -> AttributionResult:
        event = parse_line(line)
        if event.protocol is None or event.source_port is None:
            logger.debug("Log line without PROTO/SPT: %s", line)
            return AttributionResult(Outcome.PARSE_DEGRADED, event.protocol, event.source_port,
                                     error="missing PROTO= or SPT= token",
                                     timestamp=event.timestamp)
        if event.protocol not in PROTOCOLS:
            logger.debug("Log line with unsupported protocol: %s", line)
            return AttributionResult(Outcome.PARSE_DEGRADED, event.protocol, event.source_port,
                                     error=f"unsupported protocol {event.protocol!r}",
                                     timestamp=event.timestamp)

        pids = self.resolver.find_owning_process(event.protocol, event.source_port)
        if not pids:
            return AttributionResult(Outcome.RESOLUTION_FAILED, event.protocol, event.source_port,
                                     error="no process holds this socket (it may have exited)",
                                     timestamp=event.timestamp)
        # Several owners (shared or inherited socket): the last one listed wins.
        pid = pids[-1]
        return AttributionResult(Outcome.DELIVERED, event.protocol, event.source_port,
                                 pid=pid, process_name=self.name_lookup(pid),
                                 timestamp=event.timestamp)

    def results(self, lines: Iterable[str]) -> Iterator[AttributionResult]:
        for line in lines:
            if self.cancel.is_set():
                break
            if self.marker not in line:
                continue
            yield self.process_line(line)

    def run(self, lines: Iterable[str]) -> int:
        """Deliver every result to the sinks in arrival order. Returns the count handled."""
        handled = 0
        for result in self.results(lines):
            for sink in self.sinks:
                sink(result)
            handled += 1
        return handled


def report_result(result: AttributionResult):
    """Prints resolution results; other outcomes only go to the debug log."""
    if result.outcome is Outcome.DELIVERED:
        name = f" ({result.process_name})" if result.process_name else ""
        print(f"[Attribution] {result.protocol}/{result.source_port} -> pid {result.pid}{name}")
    elif result.outcome is Outcome.RESOLUTION_FAILED:
        print(f"[Attribution] {result.protocol}/{result.source_port} -> no owning process found")
    else:
        logger.debug("Skipped unparseable event: %s", result.error)


def publish_result(result: AttributionResult):
    with data_lock:
        recent_results.append(result.to_dict())
