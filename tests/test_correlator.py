"""
Event correlator tests: line parsing, tie-break, ordering, degraded lines,
resolution failures and cooperative cancellation.

Run: pytest tests/test_correlator.py -v
"""

import pytest

from core.correlator import EventCorrelator, parse_line, publish_result, report_result
from core.data_models import AttributionResult, Outcome, data_lock, recent_results
from fakes import StubResolver, log_line

TAG = "NETBLAME42"


def make_correlator(table=None, sinks=()):
    resolver = StubResolver(table)
    return EventCorrelator(TAG, resolver, sinks, name_lookup=lambda pid: f"proc{pid}"), resolver


class TestParseLine:

    def test_extracts_protocol_and_port(self):
        event = parse_line(f"{TAG}: OUT=eth0 PROTO=tcp SPT=4321 DPT=443")
        assert event.protocol == "tcp"
        assert event.source_port == 4321

    def test_normalises_protocol_case(self):
        assert parse_line(log_line(TAG, proto="UDP", sport=5353)).protocol == "udp"

    def test_missing_tokens_leave_fields_unset(self):
        event = parse_line(f"{TAG}: OUT=eth0 PROTO=ICMP TYPE=8 CODE=0")
        assert event.protocol == "icmp"
        assert event.source_port is None

    def test_does_not_confuse_dpt_with_spt(self):
        assert parse_line(f"{TAG}: PROTO=TCP DPT=443").source_port is None


class TestEventCorrelator:

    def test_last_listed_owner_wins(self):
        correlator, _ = make_correlator({("tcp", 4321): [111, 222]})
        results = list(correlator.results([f"kernel: {TAG}: PROTO=tcp SPT=4321 DPT=443"]))
        assert len(results) == 1
        assert results[0].outcome is Outcome.DELIVERED
        assert results[0].pid == 222
        assert results[0].process_name == "proc222"

    def test_results_keep_arrival_order(self):
        table = {("tcp", 1000): [10], ("udp", 2000): [20], ("tcp", 3000): [30]}
        delivered = []
        correlator, _ = make_correlator(table, sinks=[delivered.append])
        lines = [log_line(TAG, "TCP", 1000), log_line(TAG, "UDP", 2000), log_line(TAG, "TCP", 3000)]
        assert correlator.run(lines) == 3
        assert [r.pid for r in delivered] == [10, 20, 30]

    def test_ignores_untagged_lines(self):
        correlator, resolver = make_correlator({("tcp", 4321): [1]})
        lines = ["kernel: usb 1-1: new device", log_line("NETBLAME420", "TCP", 4321)]
        assert list(correlator.results(lines)) == []
        assert resolver.queries == []

    def test_degraded_line_does_not_stop_loop(self):
        correlator, resolver = make_correlator({("tcp", 5555): [77]})
        lines = [log_line(TAG, "TCP", sport=None), log_line(TAG, "TCP", 5555)]
        results = list(correlator.results(lines))
        assert [r.outcome for r in results] == [Outcome.PARSE_DEGRADED, Outcome.DELIVERED]
        assert results[0].pid is None
        assert results[1].pid == 77
        assert resolver.queries == [("tcp", 5555)]

    def test_empty_listing_is_resolution_failure(self):
        correlator, _ = make_correlator({})
        delivered = []
        correlator.sinks.append(delivered.append)
        correlator.run([log_line(TAG, "UDP", 6000), log_line(TAG, "UDP", 6001)])
        assert [r.outcome for r in delivered] == [Outcome.RESOLUTION_FAILED] * 2
        assert delivered[0].source_port == 6000
        assert delivered[0].error

    def test_unsupported_protocol_does_not_stop_loop(self):
        correlator, resolver = make_correlator({("tcp", 1): [9]})
        lines = [f"kernel: {TAG}: PROTO=ICMP SPT=5 DPT=7", log_line(TAG, "TCP", 1)]
        results = list(correlator.results(lines))
        assert [r.outcome for r in results] == [Outcome.PARSE_DEGRADED, Outcome.DELIVERED]
        assert "icmp" in results[0].error
        assert resolver.queries == [("tcp", 1)]

    def test_cancel_stops_before_next_line(self):
        correlator, resolver = make_correlator({("tcp", 1): [1], ("tcp", 2): [2]})

        def cancel_after_first(result):
            correlator.cancel.set()

        correlator.sinks.append(cancel_after_first)
        handled = correlator.run([log_line(TAG, "TCP", 1), log_line(TAG, "TCP", 2)])
        assert handled == 1
        assert resolver.queries == [("tcp", 1)]


class TestSinks:

    @pytest.fixture(autouse=True)
    def clear_results(self):
        with data_lock:
            recent_results.clear()
        yield
        with data_lock:
            recent_results.clear()

    def test_report_delivered(self, capsys):
        report_result(AttributionResult(Outcome.DELIVERED, "tcp", 4321, pid=222, process_name="curl"))
        assert capsys.readouterr().out.strip() == "[Attribution] tcp/4321 -> pid 222 (curl)"

    def test_report_resolution_failure(self, capsys):
        report_result(AttributionResult(Outcome.RESOLUTION_FAILED, "udp", 53))
        assert "no owning process" in capsys.readouterr().out

    def test_degraded_is_quiet(self, capsys):
        report_result(AttributionResult(Outcome.PARSE_DEGRADED, error="missing"))
        assert capsys.readouterr().out == ""

    def test_publish_serialises_outcome(self):
        publish_result(AttributionResult(Outcome.DELIVERED, "tcp", 1, pid=5))
        with data_lock:
            assert recent_results[-1]['outcome'] == "delivered"
            assert recent_results[-1]['pid'] == 5
