"""Tests for the procfs backend."""

import os
import socket
import sys

import pytest

from conftest import BOOT_TIME, hex_address, socket_row
from pywir.backends import Deadline
from pywir.errors import DeadlineExceeded, NotFound, ParseError, PermissionDenied, UnsupportedPlatform
from pywir.models import OWNER_UNKNOWN, ProcessState, Protocol
from pywir.procfs import (
    ProcfsConnectionResolver,
    ProcfsEnumerator,
    ProcfsEnvironmentReader,
    ProcfsProcessProvider,
    decode_address,
    iter_fd_table,
    parse_boot_time,
    parse_cmdline,
    parse_socket_line,
    parse_socket_table,
    parse_stat,
    parse_status,
    resolve_owner,
    split_environ,
)

linux_only = pytest.mark.skipif(
    not sys.platform.startswith("linux"), reason="requires a live /proc"
)

STAT_FILLER = " ".join(["0"] * 17)


class TestParsers:
    """Tests for the procfs record parsers."""

    def test_parse_stat(self):
        """Test the fields needed from a stat record are extracted."""
        raw = f"42 (bash) S 7 {STAT_FILLER} 12345 0 0\n"
        assert parse_stat(raw) == ("bash", "S", 7, 12345)

    def test_parse_stat_name_with_spaces_and_parens(self):
        """Test command names may contain spaces and parentheses."""
        raw = f"42 (my (odd) proc) R 1 {STAT_FILLER} 99\n"
        name, state, ppid, ticks = parse_stat(raw)
        assert name == "my (odd) proc"
        assert state == "R"
        assert ppid == 1
        assert ticks == 99

    @pytest.mark.parametrize(
        "raw",
        ["", "42 bash S 1", "42 (bash) S 1 2 3", f"42 (bash) S x {STAT_FILLER} 5"],
    )
    def test_parse_stat_rejects_malformed(self, raw):
        """Test records that don't match the schema raise ParseError."""
        with pytest.raises(ParseError):
            parse_stat(raw)

    def test_parse_status(self):
        """Test the real uid and memory counters are extracted."""
        raw = (
            "Name:\tsshd\n"
            "Uid:\t0\t1000\t1000\t1000\n"
            "VmSize:\t   15000 kB\n"
            "VmRSS:\t     800 kB\n"
        )
        assert parse_status(raw) == (0, 15000, 800)

    def test_parse_status_kernel_thread(self):
        """Test missing memory counters default to zero."""
        assert parse_status("Name:\tkthreadd\nUid:\t0\t0\t0\t0\n") == (0, 0, 0)

    def test_parse_cmdline(self):
        """Test NUL separators become spaces and padding is trimmed."""
        assert parse_cmdline(b"python3\0-m\0http.server\0\0") == "python3 -m http.server"

    def test_parse_cmdline_empty(self):
        """Test kernel threads have an empty command line."""
        assert parse_cmdline(b"") == ""

    def test_parse_boot_time(self):
        """Test the btime line of /proc/stat is found."""
        assert parse_boot_time("cpu 1 2 3\nbtime 1600000000\nctxt 5\n") == 1600000000

    def test_parse_boot_time_missing(self):
        """Test a missing btime line yields None."""
        assert parse_boot_time("cpu 1 2 3\n") is None


class TestSplitEnviron:
    """Tests for split_environ."""

    def test_synthetic_buffer(self):
        """Test a NUL-terminated buffer splits into its entries."""
        assert split_environ(b"A=1\0B=2\0\0") == ["A=1", "B=2"]

    def test_drops_entries_without_equals(self):
        """Test malformed entries are dropped."""
        assert split_environ(b"A=1\0garbage\0C=x=y\0") == ["A=1", "C=x=y"]

    def test_preserves_order_and_duplicates(self):
        """Test entries keep kernel order and are not de-duplicated."""
        assert split_environ(b"Z=1\0A=2\0Z=3") == ["Z=1", "A=2", "Z=3"]

    def test_empty_buffer(self):
        """Test an empty environment."""
        assert split_environ(b"") == []


class TestSocketTable:
    """Tests for socket table decoding."""

    def test_decode_ipv4(self):
        """Test an IPv4 address in host byte order decodes to a dotted quad."""
        assert decode_address(hex_address("127.0.0.1", 8080)) == ("127.0.0.1", 8080)

    def test_decode_ipv4_wildcard(self):
        """Test the wildcard address."""
        assert decode_address("00000000:0016") == ("0.0.0.0", 22)

    def test_decode_ipv6(self):
        """Test IPv6 addresses are decoded word by word."""
        assert decode_address(hex_address("::1", 443)) == ("::1", 443)
        assert decode_address(hex_address("fe80::1:2", 1)) == ("fe80::1:2", 1)

    @pytest.mark.parametrize("raw", ["0100007F", "XYZ:0050", "0100:0050", "0100007F:ZZ"])
    def test_decode_rejects_malformed(self, raw):
        """Test undecodable addresses raise ParseError."""
        with pytest.raises(ParseError):
            decode_address(raw)

    def test_parse_socket_line(self):
        """Test a full socket table row."""
        row = parse_socket_line(
            socket_row(0, ("10.0.0.5", 22), ("10.0.0.9", 51000), 0x01, 777)
        )
        assert row.local_address == "10.0.0.5"
        assert row.local_port == 22
        assert row.remote_address == "10.0.0.9"
        assert row.remote_port == 51000
        assert row.state == 1
        assert row.inode == 777

    def test_parse_socket_table_skips_header_and_bad_rows(self):
        """Test a malformed row is skipped without aborting the table."""
        raw = "\n".join(
            [
                "  sl  local_address rem_address   st ...",
                socket_row(0, ("0.0.0.0", 80), ("0.0.0.0", 0), 0x0A, 1),
                "   1: garbage",
                socket_row(2, ("0.0.0.0", 81), ("0.0.0.0", 0), 0x0A, 2),
            ]
        )
        rows = list(parse_socket_table(raw))
        assert [row.local_port for row in rows] == [80, 81]


class TestResolveOwner:
    """Tests for socket owner correlation."""

    def test_first_matching_process_wins(self):
        """Test the first process holding the socket is the owner."""
        table = [
            (10, ["/dev/null", "pipe:[5]"]),
            (20, ["socket:[999]", "socket:[1234]"]),
            (30, ["socket:[1234]"]),
        ]
        assert resolve_owner(1234, table) == 20

    def test_no_owner(self):
        """Test an unmatched socket yields the owner sentinel."""
        assert resolve_owner(1234, [(10, ["socket:[12345]"])]) == OWNER_UNKNOWN

    def test_exact_match_only(self):
        """Test inode prefixes do not match."""
        assert resolve_owner(12, [(10, ["socket:[123]"])]) == OWNER_UNKNOWN

    def test_scan_halts_early(self):
        """Test processes after the owner are never visited."""
        visited = []

        def table():
            for pid in (1, 2, 3):
                visited.append(pid)
                yield pid, [f"socket:[{pid}00]"]

        assert resolve_owner(200, table()) == 2
        assert visited == [1, 2]

    def test_iter_fd_table(self, fake_proc):
        """Test descriptor links are read from every process."""
        fake_proc.add_process(5, fds=("socket:[1]", "/dev/null"))
        fake_proc.add_process(6, fds=("pipe:[2]",))
        table = dict(iter_fd_table(fake_proc.root))
        assert sorted(table[5]) == ["/dev/null", "socket:[1]"]
        assert table[6] == ["pipe:[2]"]

    def test_iter_fd_table_skips_processes_without_fd_dir(self, fake_proc):
        """Test a process whose fd directory is gone is skipped."""
        fake_proc.add_process(5, fds=("socket:[1]",))
        base = fake_proc.add_process(6)
        (base / "fd").rmdir()
        assert [pid for pid, _ in iter_fd_table(fake_proc.root)] == [5]

    def test_iter_fd_table_missing_root(self, tmp_path):
        """Test a missing proc root yields nothing."""
        assert list(iter_fd_table(tmp_path / "nowhere")) == []

    def test_iter_fd_table_deadline(self, fake_proc):
        """Test an expired deadline stops the walk."""
        fake_proc.add_process(5)
        with pytest.raises(DeadlineExceeded):
            list(iter_fd_table(fake_proc.root, Deadline(0)))


class TestProcfsProcessProvider:
    """Tests for ProcfsProcessProvider against a synthetic /proc."""

    def test_get(self, fake_proc):
        """Test a process record is assembled from stat, status and cmdline."""
        fake_proc.add_process(
            42,
            name="nginx",
            state="S",
            ppid=1,
            starttime=1000,
            uid=0,
            vsz=20000,
            rss=3000,
            cmdline=b"nginx: master process\0-g\0daemon off;\0",
        )
        provider = ProcfsProcessProvider(fake_proc.root, ticks_per_second=100)

        info = provider.get(42)

        assert info.pid == 42
        assert info.ppid == 1
        assert info.name == "nginx"
        assert info.state is ProcessState.SLEEPING
        assert info.uid == 0
        assert info.username == "root"
        assert info.vsz_kb == 20000
        assert info.rss_kb == 3000
        assert info.cmdline == "nginx: master process -g daemon off;"
        assert info.start_time == BOOT_TIME + 10.0

    def test_unknown_state_code(self, fake_proc):
        """Test an unrecognized state character maps to UNKNOWN."""
        fake_proc.add_process(42, state="Q")
        info = ProcfsProcessProvider(fake_proc.root, ticks_per_second=100).get(42)
        assert info.state is ProcessState.UNKNOWN

    def test_missing_process(self, fake_proc):
        """Test a pid with no directory raises NotFound."""
        with pytest.raises(NotFound):
            ProcfsProcessProvider(fake_proc.root).get(4242)

    @pytest.mark.parametrize("pid", [0, -5])
    def test_invalid_pid(self, fake_proc, pid):
        """Test non-positive pids are never found."""
        with pytest.raises(NotFound):
            ProcfsProcessProvider(fake_proc.root).get(pid)

    def test_process_exits_mid_read(self, fake_proc):
        """Test a status file that vanished after stat raises NotFound."""
        base = fake_proc.add_process(42)
        (base / "status").unlink()
        with pytest.raises(NotFound):
            ProcfsProcessProvider(fake_proc.root).get(42)

    def test_malformed_stat(self, fake_proc):
        """Test a malformed stat record raises ParseError."""
        base = fake_proc.add_process(42)
        (base / "stat").write_text("garbage")
        with pytest.raises(ParseError):
            ProcfsProcessProvider(fake_proc.root).get(42)

    def test_non_utf8_name(self, fake_proc):
        """Test a command name that is not valid UTF-8 is decoded with replacement."""
        base = fake_proc.add_process(42)
        (base / "stat").write_bytes(
            b"42 (bad\xff) S 1 " + STAT_FILLER.encode() + b" 500 0 0\n"
        )
        (base / "status").write_bytes(b"Name:\tbad\xff\nUid:\t1000\t1000\t1000\t1000\n")

        info = ProcfsProcessProvider(fake_proc.root).get(42)

        assert info.name == "bad\ufffd"
        assert info.uid == 1000

    def test_missing_cmdline(self, fake_proc):
        """Test an unreadable command line is reported as empty."""
        base = fake_proc.add_process(42)
        (base / "cmdline").unlink()
        assert ProcfsProcessProvider(fake_proc.root).get(42).cmdline == ""

    def test_start_time_absent_without_boot_time(self, fake_proc):
        """Test start time is None rather than wrong when btime is unknown."""
        fake_proc.add_process(42)
        (fake_proc.root / "stat").write_text("cpu 1 2 3\n")
        info = ProcfsProcessProvider(fake_proc.root, ticks_per_second=100).get(42)
        assert info.start_time is None

    def test_boot_time_read_once(self, fake_proc):
        """Test the boot time is only read on first use."""
        fake_proc.add_process(42)
        provider = ProcfsProcessProvider(fake_proc.root, ticks_per_second=100)
        first = provider.get(42)
        (fake_proc.root / "stat").write_text("btime 5\n")
        assert provider.get(42).start_time == first.start_time

    def test_unknown_uid_falls_back_to_number(self, fake_proc):
        """Test a uid with no account is shown as its number."""
        fake_proc.add_process(42, uid=3_999_999)
        assert ProcfsProcessProvider(fake_proc.root).get(42).username == "3999999"

    @linux_only
    def test_live_self(self):
        """Test the live provider reads the test process itself."""
        info = ProcfsProcessProvider().get(os.getpid())
        assert info.pid == os.getpid()
        assert info.ppid == os.getppid()
        assert isinstance(info.state, ProcessState)
        assert info.start_time is not None

    @linux_only
    def test_live_repeatable(self):
        """Test two immediate reads agree apart from memory counters."""
        provider = ProcfsProcessProvider()
        first = provider.get(os.getpid())
        second = provider.get(os.getpid())
        assert (first.pid, first.ppid, first.name, first.cmdline, first.uid) == (
            second.pid,
            second.ppid,
            second.name,
            second.cmdline,
            second.uid,
        )
        assert first.start_time == second.start_time


class TestProcfsEnumerator:
    """Tests for ProcfsEnumerator."""

    def test_list_all(self, fake_proc):
        """Test every numeric entry is resolved in pid order."""
        for pid in (30, 2, 11):
            fake_proc.add_process(pid)
        (fake_proc.root / "self").mkdir()
        provider = ProcfsProcessProvider(fake_proc.root)

        processes = ProcfsEnumerator(provider, fake_proc.root).list_all()

        assert [proc.pid for proc in processes] == [2, 11, 30]

    def test_skips_unreadable_entries(self, fake_proc):
        """Test vanished or malformed processes are omitted silently."""
        fake_proc.add_process(2)
        (fake_proc.add_process(3) / "stat").write_text("garbage")
        (fake_proc.root / "4").mkdir()
        provider = ProcfsProcessProvider(fake_proc.root)

        processes = ProcfsEnumerator(provider, fake_proc.root).list_all()

        assert [proc.pid for proc in processes] == [2]

    def test_lists_process_with_non_utf8_name(self, fake_proc):
        """Test one process with an undecodable name doesn't abort the listing."""
        fake_proc.add_process(2)
        base = fake_proc.add_process(42)
        (base / "stat").write_bytes(
            b"42 (bad\xff) S 1 " + STAT_FILLER.encode() + b" 500 0 0\n"
        )
        provider = ProcfsProcessProvider(fake_proc.root)

        processes = ProcfsEnumerator(provider, fake_proc.root).list_all()

        assert [proc.pid for proc in processes] == [2, 42]
        assert processes[1].name == "bad\ufffd"

    def test_empty_table(self, fake_proc):
        """Test an empty process table is a valid, empty result."""
        provider = ProcfsProcessProvider(fake_proc.root)
        assert ProcfsEnumerator(provider, fake_proc.root).list_all() == []

    def test_missing_proc_root(self, tmp_path):
        """Test a missing proc filesystem is reported as unsupported."""
        provider = ProcfsProcessProvider(tmp_path / "nowhere")
        with pytest.raises(UnsupportedPlatform):
            ProcfsEnumerator(provider, tmp_path / "nowhere").list_all()


class TestProcfsEnvironmentReader:
    """Tests for ProcfsEnvironmentReader."""

    def test_read(self, fake_proc):
        """Test the environ buffer is split into entries."""
        fake_proc.add_process(42, environ=b"HOME=/root\0PATH=/bin:/usr/bin\0junk\0\0")
        assert ProcfsEnvironmentReader(fake_proc.root).read(42) == [
            "HOME=/root",
            "PATH=/bin:/usr/bin",
        ]

    def test_missing_process(self, fake_proc):
        """Test a missing process raises NotFound."""
        with pytest.raises(NotFound):
            ProcfsEnvironmentReader(fake_proc.root).read(42)

    @pytest.mark.skipif(os.geteuid() == 0, reason="root can read any file")
    def test_permission_denied(self, fake_proc):
        """Test an unreadable environ raises PermissionDenied."""
        base = fake_proc.add_process(42, environ=b"A=1\0")
        (base / "environ").chmod(0)
        with pytest.raises(PermissionDenied):
            ProcfsEnvironmentReader(fake_proc.root).read(42)

    @linux_only
    def test_live_self(self):
        """Test the live reader sees this process's environment."""
        # /proc/<pid>/environ reflects the environment at exec time
        env = ProcfsEnvironmentReader().read(os.getpid())
        assert all("=" in entry for entry in env)


class TestProcfsConnectionResolver:
    """Tests for ProcfsConnectionResolver against synthetic socket tables."""

    def test_resolve_with_owner(self, fake_proc):
        """Test a listening socket is matched to its owning process."""
        fake_proc.add_process(100, fds=("/dev/null", "socket:[5555]"))
        fake_proc.add_process(200, fds=("socket:[6666]",))
        fake_proc.write_table(
            "tcp",
            [
                socket_row(0, ("0.0.0.0", 22), ("0.0.0.0", 0), 0x0A, 6666),
                socket_row(1, ("127.0.0.1", 8080), ("0.0.0.0", 0), 0x0A, 5555),
            ],
        )

        connections = ProcfsConnectionResolver(fake_proc.root).resolve(8080)

        assert len(connections) == 1
        conn = connections[0]
        assert conn.protocol is Protocol.TCP
        assert conn.local_address == "127.0.0.1"
        assert conn.local_port == 8080
        assert conn.remote_port == 0
        assert conn.state == "LISTEN"
        assert conn.pid == 100

    def test_only_requested_port_is_returned(self, fake_proc):
        """Test resolving one port never returns another port's sockets."""
        fake_proc.write_table(
            "tcp",
            [
                socket_row(0, ("0.0.0.0", 22), ("0.0.0.0", 0), 0x0A, 1),
                socket_row(1, ("10.0.0.1", 22), ("10.0.0.2", 8080), 0x01, 2),
                socket_row(2, ("0.0.0.0", 8080), ("0.0.0.0", 0), 0x0A, 3),
            ],
        )
        connections = ProcfsConnectionResolver(fake_proc.root).resolve(8080)
        assert [conn.local_port for conn in connections] == [8080]

    def test_ipv4_and_ipv6_results_are_merged(self, fake_proc):
        """Test tcp and tcp6 tables are both scanned, IPv4 first."""
        fake_proc.add_process(100, fds=("socket:[10]", "socket:[11]"))
        fake_proc.write_table(
            "tcp", [socket_row(0, ("0.0.0.0", 443), ("0.0.0.0", 0), 0x0A, 10)]
        )
        fake_proc.write_table(
            "tcp6", [socket_row(0, ("::", 443), ("::", 0), 0x0A, 11)]
        )

        connections = ProcfsConnectionResolver(fake_proc.root).resolve(443)

        assert [conn.protocol for conn in connections] == [Protocol.TCP, Protocol.TCP6]
        assert connections[1].local_address == "::"
        assert all(conn.pid == 100 for conn in connections)

    def test_unowned_socket(self, fake_proc):
        """Test a socket nobody holds is returned with the owner sentinel."""
        fake_proc.add_process(100, fds=("socket:[1]",))
        fake_proc.write_table(
            "tcp", [socket_row(0, ("0.0.0.0", 9000), ("0.0.0.0", 0), 0x0A, 77)]
        )
        [conn] = ProcfsConnectionResolver(fake_proc.root).resolve(9000)
        assert conn.pid == OWNER_UNKNOWN
        assert not conn.has_owner

    def test_time_wait_socket_has_no_owner(self, fake_proc):
        """Test inode 0 sockets skip the descriptor scan."""
        fake_proc.add_process(100, fds=("socket:[0]",))
        fake_proc.write_table(
            "tcp",
            [socket_row(0, ("127.0.0.1", 9000), ("127.0.0.1", 40000), 0x06, 0)],
        )
        [conn] = ProcfsConnectionResolver(fake_proc.root).resolve(9000)
        assert conn.state == "TIME_WAIT"
        assert conn.pid == OWNER_UNKNOWN

    def test_udp_tables_only_when_enabled(self, fake_proc):
        """Test UDP sockets are only reported when requested."""
        fake_proc.write_table(
            "udp", [socket_row(0, ("0.0.0.0", 53), ("0.0.0.0", 0), 0x07, 5)]
        )
        assert ProcfsConnectionResolver(fake_proc.root).resolve(53) == []

        [conn] = ProcfsConnectionResolver(fake_proc.root, include_udp=True).resolve(53)
        assert conn.protocol is Protocol.UDP
        assert conn.state == "CLOSE"

    def test_missing_tables(self, fake_proc):
        """Test absent socket tables contribute nothing."""
        assert ProcfsConnectionResolver(fake_proc.root).resolve(80) == []

    def test_deadline_exceeded(self, fake_proc):
        """Test the descriptor scan honors an expired deadline."""
        fake_proc.add_process(100, fds=("socket:[5]",))
        fake_proc.write_table(
            "tcp", [socket_row(0, ("0.0.0.0", 80), ("0.0.0.0", 0), 0x0A, 5)]
        )
        with pytest.raises(DeadlineExceeded):
            ProcfsConnectionResolver(fake_proc.root).resolve(80, Deadline(0))

    @linux_only
    def test_live_listening_socket(self):
        """Test a socket opened by this test is resolved to this process."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server:
            server.bind(("127.0.0.1", 0))
            server.listen()
            port = server.getsockname()[1]

            connections = ProcfsConnectionResolver().resolve(port)

        assert connections, "listening socket not found in /proc/net/tcp"
        assert all(conn.local_port == port for conn in connections)
        listening = [conn for conn in connections if conn.state == "LISTEN"]
        assert listening[0].pid == os.getpid()
