"""
Structured-text backend reading the Linux proc filesystem.

Every query re-reads the files it needs; nothing is cached except the
system boot time, which cannot change while the host is up.
"""

import ipaddress
import logging
import os
import sys
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from pywir.backends import Deadline
from pywir.config import DEFAULT_PROC_ROOT
from pywir.errors import NotFound, ParseError, PermissionDenied, UnsupportedPlatform
from pywir.models import (
    OWNER_UNKNOWN,
    ConnectionInfo,
    EnvironmentSet,
    ProcessInfo,
    ProcessState,
    Protocol,
    tcp_state_label,
)
from pywir.users import username_for_uid

log = logging.getLogger(__name__)

# Index of starttime (field 22) in the fields following the command name.
STAT_STARTTIME_INDEX = 19

SOCKET_TABLES = {
    Protocol.TCP: "tcp",
    Protocol.TCP6: "tcp6",
    Protocol.UDP: "udp",
    Protocol.UDP6: "udp6",
}

_MISSING = (FileNotFoundError, NotADirectoryError, ProcessLookupError)


# ---------------------------------------------------------------------------
# Record parsers
# ---------------------------------------------------------------------------


def parse_stat(raw: str) -> tuple[str, str, int, int]:
    """
    Parse a /proc/<pid>/stat record.

    The command name sits between the first '(' and the last ')', and may
    itself contain spaces or parentheses.

    Returns:
        (name, state code, ppid, start time in clock ticks since boot)

    Raises:
        ParseError: If the record does not match the stat schema.
    """
    open_paren = raw.find("(")
    close_paren = raw.rfind(")")
    if open_paren == -1 or close_paren < open_paren:
        raise ParseError(f"malformed stat record: {raw[:64]!r}")

    name = raw[open_paren + 1 : close_paren]
    fields = raw[close_paren + 1 :].split()
    if len(fields) <= STAT_STARTTIME_INDEX:
        raise ParseError(f"stat record for {name!r} has {len(fields)} fields")

    try:
        ppid = int(fields[1])
        starttime = int(fields[STAT_STARTTIME_INDEX])
    except ValueError as exc:
        raise ParseError(f"stat record for {name!r}: {exc}") from None

    return name, fields[0], ppid, starttime


def parse_status(raw: str) -> tuple[int, int, int]:
    """
    Parse the uid and memory counters out of a /proc/<pid>/status record.

    Returns:
        (real uid, VmSize in kB, VmRSS in kB). Missing counters are 0, as
        they are for kernel threads.
    """
    uid = vsz = rss = 0
    for line in raw.splitlines():
        key, _, value = line.partition(":")
        parts = value.split()
        if not parts:
            continue
        try:
            if key == "Uid":
                uid = int(parts[0])
            elif key == "VmSize":
                vsz = int(parts[0])
            elif key == "VmRSS":
                rss = int(parts[0])
        except ValueError:
            log.debug("Ignoring malformed status line %r", line)
    return uid, vsz, rss


def parse_cmdline(raw: bytes) -> str:
    """Turn a NUL-separated argument buffer into a single command line."""
    return raw.replace(b"\0", b" ").rstrip(b" ").decode("utf-8", errors="replace")


def parse_boot_time(raw: str) -> int | None:
    """Return the 'btime' value of /proc/stat, or None if it is missing."""
    for line in raw.splitlines():
        if line.startswith("btime "):
            try:
                return int(line.split()[1])
            except (IndexError, ValueError):
                return None
    return None


def split_environ(buffer: bytes) -> EnvironmentSet:
    """
    Split a NUL-separated environment buffer into 'NAME=value' strings.

    Empty strings and strings without '=' are dropped.
    """
    return [
        entry.decode("utf-8", errors="replace")
        for entry in buffer.split(b"\0")
        if b"=" in entry
    ]


def _network_order(raw: bytes) -> bytes:
    """Reorder the 32-bit host-order words of a procfs address."""
    if sys.byteorder == "big":
        return raw
    return b"".join(raw[i : i + 4][::-1] for i in range(0, len(raw), 4))


def decode_address(hex_addr: str) -> tuple[str, int]:
    """
    Decode an 'ADDR:PORT' hex pair from a /proc/net socket table.

    IPv4 addresses are one host-order word, IPv6 addresses four of them;
    the port is big-endian hex.

    Raises:
        ParseError: If the pair cannot be decoded.
    """
    host_hex, sep, port_hex = hex_addr.partition(":")
    try:
        if not sep:
            raise ValueError("missing port")
        raw = bytes.fromhex(host_hex)
        if len(raw) not in (4, 16):
            raise ValueError(f"unexpected address length {len(raw)}")
        address = ipaddress.ip_address(_network_order(raw))
        port = int(port_hex, 16)
    except ValueError as exc:
        raise ParseError(f"bad socket address {hex_addr!r}: {exc}") from None
    return str(address), port


@dataclass(slots=True, frozen=True)
class SocketRow:
    """One row of a /proc/net/{tcp,tcp6,udp,udp6} table."""

    local_address: str
    local_port: int
    remote_address: str
    remote_port: int
    state: int
    inode: int


def parse_socket_line(line: str) -> SocketRow:
    """
    Parse one data row of a socket table.

    Layout: sl local_address rem_address st tx:rx tr:when retrnsmt uid timeout inode

    Raises:
        ParseError: If the row does not match the table schema.
    """
    parts = line.split()
    if len(parts) < 10:
        raise ParseError(f"short socket row: {line!r}")

    local_address, local_port = decode_address(parts[1])
    remote_address, remote_port = decode_address(parts[2])
    try:
        state = int(parts[3], 16)
        inode = int(parts[9])
    except ValueError as exc:
        raise ParseError(f"bad socket row {line!r}: {exc}") from None

    return SocketRow(
        local_address=local_address,
        local_port=local_port,
        remote_address=remote_address,
        remote_port=remote_port,
        state=state,
        inode=inode,
    )


def parse_socket_table(raw: str) -> Iterator[SocketRow]:
    """Yield the parseable rows of a socket table, skipping the header."""
    for line in raw.splitlines()[1:]:
        if not line.strip():
            continue
        try:
            yield parse_socket_line(line)
        except ParseError as exc:
            log.debug("Skipping socket row: %s", exc)


# ---------------------------------------------------------------------------
# Socket ownership
# ---------------------------------------------------------------------------


def resolve_owner(inode: int, fd_table: Iterable[tuple[int, Iterable[str]]]) -> int:
    """
    Find the process holding a socket.

    Args:
        inode: Socket inode from the socket table.
        fd_table: (pid, descriptor link targets) pairs, scanned in order.

    Returns:
        The pid of the first process with a 'socket:[inode]' descriptor, or
        OWNER_UNKNOWN if none has one.
    """
    target = f"socket:[{inode}]"
    for pid, links in fd_table:
        if target in links:
            return pid
    return OWNER_UNKNOWN


def list_pids(proc_root: Path) -> list[int]:
    """
    List the numeric entries of the process namespace, in ascending order.

    Raises:
        OSError: If proc_root itself cannot be listed.
    """
    with os.scandir(proc_root) as entries:
        return sorted(int(entry.name) for entry in entries if entry.name.isdigit())


def _read_fd_links(fd_dir: Path) -> list[str]:
    links = []
    with os.scandir(fd_dir) as entries:
        for entry in entries:
            try:
                links.append(os.readlink(entry.path))
            except OSError:
                continue  # closed since the listing
    return links


def iter_fd_table(
    proc_root: Path, deadline: Deadline | None = None
) -> Iterator[tuple[int, list[str]]]:
    """
    Lazily walk every process's descriptor table.

    Processes whose fd directory is unreadable or gone are skipped.

    Raises:
        DeadlineExceeded: If the deadline passes mid-walk.
    """
    try:
        pids = list_pids(proc_root)
    except OSError as exc:
        log.warning("Cannot list %s: %s", proc_root, exc)
        return

    for pid in pids:
        if deadline is not None:
            deadline.check()
        try:
            links = _read_fd_links(proc_root / str(pid) / "fd")
        except OSError:
            continue
        yield pid, links


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


def _read_text(path: Path) -> str:
    # Command names are arbitrary bytes, not necessarily UTF-8
    return path.read_bytes().decode("utf-8", errors="replace")


def _clock_ticks() -> int | None:
    try:
        ticks = os.sysconf("SC_CLK_TCK")
    except (ValueError, OSError):
        return None
    return ticks if ticks > 0 else None


class ProcfsProcessProvider:
    """Builds ProcessInfo records from /proc/<pid>/{stat,status,cmdline}."""

    def __init__(
        self,
        proc_root: Path = DEFAULT_PROC_ROOT,
        ticks_per_second: int | None = None,
    ) -> None:
        """
        Initialize the provider.

        Args:
            proc_root: Mount point of the proc filesystem.
            ticks_per_second: Clock tick rate. Defaults to SC_CLK_TCK.
        """
        self._proc_root = Path(proc_root)
        self._ticks_per_second = ticks_per_second or _clock_ticks()
        self._boot_time: int | None = None
        self._boot_time_read = False

    @property
    def boot_time(self) -> int | None:
        """System boot time in seconds since the epoch, read once."""
        if not self._boot_time_read:
            self._boot_time_read = True
            try:
                self._boot_time = parse_boot_time(
                    (self._proc_root / "stat").read_text()
                )
            except OSError as exc:
                log.warning("Cannot read boot time: %s", exc)
        return self._boot_time

    def get(self, pid: int) -> ProcessInfo:
        """
        Snapshot a process.

        Raises:
            NotFound: The process does not exist (or exited mid-read).
            PermissionDenied: Its stat record is unreadable.
            ParseError: Its stat record is malformed.
        """
        if pid <= 0:
            raise NotFound(pid)

        base = self._proc_root / str(pid)
        try:
            name, code, ppid, ticks = parse_stat(_read_text(base / "stat"))
            uid, vsz, rss = parse_status(_read_text(base / "status"))
        except _MISSING:
            log.debug("Process %d exited before it could be read", pid)
            raise NotFound(pid) from None
        except PermissionError:
            raise PermissionDenied(pid) from None

        return ProcessInfo(
            pid=pid,
            ppid=ppid,
            name=name,
            cmdline=self._read_cmdline(base),
            username=username_for_uid(uid),
            uid=uid,
            state=ProcessState.from_code(code),
            vsz_kb=vsz,
            rss_kb=rss,
            start_time=self._start_time(ticks),
        )

    def _read_cmdline(self, base: Path) -> str:
        try:
            return parse_cmdline((base / "cmdline").read_bytes())
        except OSError:
            return ""

    def _start_time(self, ticks: int) -> float | None:
        boot_time = self.boot_time
        if not boot_time or not self._ticks_per_second:
            return None
        return boot_time + ticks / self._ticks_per_second


class ProcfsEnumerator:
    """Lists every process by scanning the numeric entries of /proc."""

    def __init__(
        self, provider: ProcfsProcessProvider, proc_root: Path = DEFAULT_PROC_ROOT
    ) -> None:
        self._provider = provider
        self._proc_root = Path(proc_root)

    def list_all(self) -> list[ProcessInfo]:
        """
        Snapshot every process under the proc root, in pid order.

        Processes that exit or turn unreadable mid-scan are skipped.

        Raises:
            UnsupportedPlatform: If the proc root cannot be listed.
        """
        try:
            pids = list_pids(self._proc_root)
        except OSError as exc:
            raise UnsupportedPlatform(
                f"proc filesystem unavailable at {self._proc_root}: {exc}"
            ) from exc

        processes: list[ProcessInfo] = []
        for pid in pids:
            try:
                processes.append(self._provider.get(pid))
            except (NotFound, PermissionDenied, ParseError) as exc:
                # Exited or unreadable since the listing
                log.debug("Skipping pid %d: %s", pid, exc)
                continue
        return processes


class ProcfsEnvironmentReader:
    """Reads /proc/<pid>/environ."""

    def __init__(self, proc_root: Path = DEFAULT_PROC_ROOT) -> None:
        self._proc_root = Path(proc_root)

    def read(self, pid: int) -> EnvironmentSet:
        """
        Return the environment of a process.

        Raises:
            NotFound: The process does not exist.
            PermissionDenied: The caller may not read its environment.
        """
        if pid <= 0:
            raise NotFound(pid)
        try:
            buffer = (self._proc_root / str(pid) / "environ").read_bytes()
        except _MISSING:
            raise NotFound(pid) from None
        except PermissionError:
            raise PermissionDenied(pid) from None
        return split_environ(buffer)


class ProcfsConnectionResolver:
    """
    Resolves a port by scanning /proc/net socket tables.

    Each matching socket's inode is then looked up in every process's
    descriptor table to find its owner.
    """

    def __init__(
        self, proc_root: Path = DEFAULT_PROC_ROOT, include_udp: bool = False
    ) -> None:
        """
        Initialize the resolver.

        Args:
            proc_root: Mount point of the proc filesystem.
            include_udp: Also scan the udp and udp6 tables.
        """
        self._proc_root = Path(proc_root)
        self._protocols = [Protocol.TCP, Protocol.TCP6]
        if include_udp:
            self._protocols += [Protocol.UDP, Protocol.UDP6]

    def resolve(
        self, port: int, deadline: Deadline | None = None
    ) -> list[ConnectionInfo]:
        """
        Return every socket bound to a local port, IPv4 tables first.

        Raises:
            DeadlineExceeded: If the descriptor scan outlives the deadline.
        """
        connections: list[ConnectionInfo] = []
        for protocol in self._protocols:
            for row in self._read_table(protocol):
                if row.local_port != port:
                    continue
                connections.append(
                    ConnectionInfo(
                        protocol=protocol,
                        local_address=row.local_address,
                        local_port=row.local_port,
                        remote_address=row.remote_address,
                        remote_port=row.remote_port,
                        state=tcp_state_label(row.state),
                        pid=self._owner(row.inode, deadline),
                    )
                )
        return connections

    def _owner(self, inode: int, deadline: Deadline | None) -> int:
        # Sockets in TIME_WAIT have no inode and no owner
        if inode == 0:
            return OWNER_UNKNOWN
        return resolve_owner(inode, iter_fd_table(self._proc_root, deadline))

    def _read_table(self, protocol: Protocol) -> list[SocketRow]:
        path = self._proc_root / "net" / SOCKET_TABLES[protocol]
        try:
            raw = path.read_text()
        except FileNotFoundError:
            log.debug("No %s socket table at %s", protocol.value, path)
            return []
        except OSError as exc:
            log.warning("Cannot read %s: %s", path, exc)
            return []
        return list(parse_socket_table(raw))
