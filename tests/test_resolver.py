"""
Socket-table resolver tests (psutil and lsof adapters).

Run: pytest tests/test_resolver.py -v
"""

from collections import namedtuple
from unittest.mock import MagicMock, patch

import psutil

from core.commands import CommandError
from core.resolver import LsofResolver, PsutilResolver, make_resolver, process_name

addr = namedtuple("addr", ["ip", "port"])
sconn = namedtuple("sconn", ["fd", "family", "type", "laddr", "raddr", "status", "pid"])


def conn(port, pid):
    return sconn(3, 2, 1, addr("192.168.1.10", port), addr("1.2.3.4", 443), "ESTABLISHED", pid)


class TestPsutilResolver:

    def test_keeps_listing_order(self):
        table = [conn(4321, 111), conn(8080, 999), conn(4321, 222)]
        with patch("core.resolver.psutil.net_connections", return_value=table) as nc:
            assert PsutilResolver().find_owning_process("tcp", 4321) == [111, 222]
        nc.assert_called_once_with(kind="tcp")

    def test_skips_entries_without_pid(self):
        table = [conn(4321, None), sconn(3, 2, 2, (), (), "NONE", 5)]
        with patch("core.resolver.psutil.net_connections", return_value=table):
            assert PsutilResolver().find_owning_process("udp", 4321) == []

    def test_access_denied_is_empty(self):
        with patch("core.resolver.psutil.net_connections", side_effect=psutil.AccessDenied()):
            assert PsutilResolver().find_owning_process("tcp", 1) == []


class TestLsofResolver:

    def test_parses_pid_lines(self):
        runner = MagicMock(return_value="111\n222\n")
        assert LsofResolver(runner).find_owning_process("udp", 53) == [111, 222]
        runner.assert_called_once_with(["lsof", "-n", "-P", "-t", "-i", "udp:53"])

    def test_no_match_is_empty(self):
        runner = MagicMock(side_effect=CommandError(["lsof"], 1, ""))
        assert LsofResolver(runner).find_owning_process("tcp", 1) == []


class TestHelpers:

    def test_make_resolver(self):
        assert isinstance(make_resolver("lsof"), LsofResolver)
        assert isinstance(make_resolver("psutil"), PsutilResolver)

    def test_process_name_of_exited_process(self):
        with patch("core.resolver.psutil.Process", side_effect=psutil.NoSuchProcess(99999)):
            assert process_name(99999) is None
