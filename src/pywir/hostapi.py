"""
Host-API backend for macOS.

Process records come from psutil, environments from the raw
KERN_PROCARGS2 sysctl buffer, and port ownership from lsof.
"""

import ctypes
import ctypes.util
import errno
import functools
import logging
import os
import struct
import subprocess
import sys
from dataclasses import dataclass

import psutil

from pywir.backends import Deadline
from pywir.config import DEFAULT_LSOF
from pywir.errors import (
    DeadlineExceeded,
    NotFound,
    ParseError,
    PermissionDenied,
    UnsupportedPlatform,
)
from pywir.models import (
    ConnectionInfo,
    EnvironmentSet,
    ProcessInfo,
    ProcessState,
    Protocol,
)
from pywir.users import username_for_uid

log = logging.getLogger(__name__)

CTL_KERN = 1
KERN_PROCARGS2 = 49

PSUTIL_STATES = {
    psutil.STATUS_IDLE: ProcessState.IDLE,
    psutil.STATUS_RUNNING: ProcessState.RUNNING,
    psutil.STATUS_SLEEPING: ProcessState.SLEEPING,
    psutil.STATUS_STOPPED: ProcessState.STOPPED,
    psutil.STATUS_ZOMBIE: ProcessState.ZOMBIE,
}


def state_from_status(status: str) -> ProcessState:
    """Map a psutil status string to a ProcessState."""
    return PSUTIL_STATES.get(status, ProcessState.UNKNOWN)


class PsutilProcessProvider:
    """Builds ProcessInfo records through psutil's kernel bindings."""

    def get(self, pid: int) -> ProcessInfo:
        """
        Snapshot a process.

        Uses oneshot() so psutil fetches the kernel records once.

        Raises:
            NotFound: The process does not exist.
            PermissionDenied: Its basic record is unreadable.
        """
        if pid <= 0:
            raise NotFound(pid)

        try:
            proc = psutil.Process(pid)
            with proc.oneshot():
                ppid = proc.ppid()
                name = proc.name()
                uid = proc.uids().real
                state = state_from_status(proc.status())
                start_time = proc.create_time()
                cmdline = self._cmdline(proc)
                vsz_kb, rss_kb = self._memory(proc)
        except psutil.NoSuchProcess:
            log.debug("Process %d exited before it could be read", pid)
            raise NotFound(pid) from None
        except psutil.AccessDenied:
            raise PermissionDenied(pid) from None

        return ProcessInfo(
            pid=pid,
            ppid=ppid,
            name=name,
            cmdline=cmdline,
            username=username_for_uid(uid),
            uid=uid,
            state=state,
            vsz_kb=vsz_kb,
            rss_kb=rss_kb,
            start_time=start_time or None,
        )

    def _cmdline(self, proc: psutil.Process) -> str:
        try:
            args = proc.cmdline()
        except (psutil.AccessDenied, psutil.ZombieProcess):
            args = []
        if args:
            return " ".join(args)
        try:
            return proc.exe()
        except (psutil.AccessDenied, psutil.ZombieProcess):
            return ""

    def _memory(self, proc: psutil.Process) -> tuple[int, int]:
        try:
            mem = proc.memory_info()
        except (psutil.AccessDenied, psutil.ZombieProcess):
            return 0, 0
        return mem.vms // 1024, mem.rss // 1024


class PsutilEnumerator:
    """Lists every process from psutil's bulk pid query."""

    def __init__(self, provider: PsutilProcessProvider) -> None:
        self._provider = provider

    def list_all(self) -> list[ProcessInfo]:
        """Snapshot every process psutil can see, skipping unreadable ones."""
        processes: list[ProcessInfo] = []
        for pid in psutil.pids():
            try:
                processes.append(self._provider.get(pid))
            except (NotFound, PermissionDenied) as exc:
                log.debug("Skipping pid %d: %s", pid, exc)
                continue
        return processes


# ---------------------------------------------------------------------------
# Environment via KERN_PROCARGS2
# ---------------------------------------------------------------------------


class ByteCursor:
    """Forward-only cursor over an immutable byte buffer."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    @property
    def position(self) -> int:
        return self._pos

    @property
    def at_end(self) -> bool:
        return self._pos >= len(self._data)

    def read_int32(self) -> int:
        """Read a native-endian int32."""
        size = struct.calcsize("=i")
        if self._pos + size > len(self._data):
            raise ParseError(
                f"need {size} bytes at offset {self._pos}, buffer has {len(self._data)}"
            )
        (value,) = struct.unpack_from("=i", self._data, self._pos)
        self._pos += size
        return value

    def read_cstring(self) -> bytes:
        """Read up to the next NUL, or to the end if there is none."""
        end = self._data.find(b"\0", self._pos)
        if end == -1:
            end = len(self._data)
        value = self._data[self._pos : end]
        self._pos = min(end + 1, len(self._data))
        return value

    def skip_nuls(self) -> None:
        while self._pos < len(self._data) and self._data[self._pos] == 0:
            self._pos += 1


def parse_procargs(buffer: bytes) -> EnvironmentSet:
    """
    Extract the environment from a KERN_PROCARGS2 buffer.

    Layout: int32 argc, executable path, NUL padding, argc argument
    strings, then 'NAME=value' strings up to an empty string or the end.
    Strings without '=' are dropped.

    Raises:
        ParseError: If the buffer is too short to hold argc, or argc is
            negative.
    """
    cursor = ByteCursor(buffer)
    argc = cursor.read_int32()
    if argc < 0:
        raise ParseError(f"negative argc {argc}")

    cursor.read_cstring()  # executable path
    cursor.skip_nuls()
    for _ in range(argc):
        if cursor.at_end:
            break
        cursor.read_cstring()

    environ: EnvironmentSet = []
    while not cursor.at_end:
        entry = cursor.read_cstring()
        if not entry:
            break
        if b"=" in entry:
            environ.append(entry.decode("utf-8", errors="replace"))
    return environ


@functools.cache
def _libc() -> ctypes.CDLL:
    libc = ctypes.CDLL(ctypes.util.find_library("c"), use_errno=True)
    libc.sysctl.argtypes = (
        ctypes.POINTER(ctypes.c_int),
        ctypes.c_uint,
        ctypes.c_void_p,
        ctypes.POINTER(ctypes.c_size_t),
        ctypes.c_void_p,
        ctypes.c_size_t,
    )
    libc.sysctl.restype = ctypes.c_int
    return libc


def _raise_for_errno(err: int, pid: int) -> None:
    if err == errno.ESRCH:
        raise NotFound(pid)
    # EINVAL is what the kernel returns for other users' processes
    if err in (errno.EPERM, errno.EINVAL, errno.EACCES):
        raise PermissionDenied(pid)
    raise OSError(err, os.strerror(err))


def read_procargs(pid: int) -> bytes:
    """Fetch the raw KERN_PROCARGS2 buffer of a process."""
    if sys.platform != "darwin":
        raise UnsupportedPlatform("KERN_PROCARGS2 is only available on macOS")

    libc = _libc()
    mib = (ctypes.c_int * 3)(CTL_KERN, KERN_PROCARGS2, pid)
    size = ctypes.c_size_t(0)
    if libc.sysctl(mib, 3, None, ctypes.byref(size), None, 0) != 0:
        _raise_for_errno(ctypes.get_errno(), pid)

    buf = ctypes.create_string_buffer(size.value)
    if libc.sysctl(mib, 3, buf, ctypes.byref(size), None, 0) != 0:
        _raise_for_errno(ctypes.get_errno(), pid)
    return buf.raw[: size.value]


class SysctlEnvironmentReader:
    """Reads a process environment from its KERN_PROCARGS2 buffer."""

    def read(self, pid: int) -> EnvironmentSet:
        """
        Return the environment of a process.

        Raises:
            NotFound: The process does not exist.
            PermissionDenied: The caller may not read its arguments.
        """
        if pid <= 0:
            raise NotFound(pid)
        return parse_procargs(read_procargs(pid))


# ---------------------------------------------------------------------------
# Connections via lsof
# ---------------------------------------------------------------------------


def _split_host_port(text: str) -> tuple[str, int] | None:
    host, sep, port = text.rpartition(":")
    if not sep:
        return None
    try:
        port_number = 0 if port == "*" else int(port)
    except ValueError:
        return None
    return host.strip("[]"), port_number


def parse_lsof_name(name: str) -> tuple[str, int, str, int] | None:
    """
    Parse an lsof network name such as '127.0.0.1:8080->10.0.0.2:51234'.

    Returns:
        (local address, local port, remote address, remote port), with an
        empty remote for listening sockets, or None if unparseable.
    """
    local_text, _, remote_text = name.partition("->")
    local = _split_host_port(local_text)
    if local is None:
        return None
    remote = _split_host_port(remote_text) if remote_text else ("", 0)
    if remote is None:
        remote = ("", 0)
    return local[0], local[1], remote[0], remote[1]


@dataclass(slots=True)
class _LsofRecord:
    """Connection being assembled from lsof's field output."""

    pid: int
    family: str = "IPv4"
    transport: str = "TCP"
    address: tuple[str, int, str, int] | None = None
    protocol: Protocol = Protocol.TCP
    state: str = "UNKNOWN"
    capturing: bool = False  # current file is the one that matched

    def attach(self, address: tuple[str, int, str, int]) -> None:
        self.address = address
        self.protocol = _protocol_for(self.transport, self.family)
        self.capturing = True

    def to_connection(self) -> ConnectionInfo:
        local_address, local_port, remote_address, remote_port = self.address
        return ConnectionInfo(
            protocol=self.protocol,
            local_address=local_address,
            local_port=local_port,
            remote_address=remote_address,
            remote_port=remote_port,
            state=self.state,
            pid=self.pid,
        )


def _protocol_for(transport: str, family: str) -> Protocol:
    udp = transport.upper() == "UDP"
    if family == "IPv6":
        return Protocol.UDP6 if udp else Protocol.TCP6
    return Protocol.UDP if udp else Protocol.TCP


def parse_lsof_output(lines: list[str], port: int) -> list[ConnectionInfo]:
    """
    Parse 'lsof -F pctPnT' output into connections on a port.

    Each 'p' line starts a new record; address fields that follow attach to
    it until the next 'p' line flushes it. Only the first address whose
    local port equals port is kept, and records without one are dropped.
    """
    records: list[_LsofRecord] = []
    current: _LsofRecord | None = None

    for line in lines:
        if not line:
            continue
        tag, value = line[0], line[1:]

        if tag == "p":
            if current is not None:
                records.append(current)
            try:
                current = _LsofRecord(pid=int(value))
            except ValueError:
                log.debug("Ignoring lsof record with pid %r", value)
                current = None
            continue

        if current is None:
            continue

        if tag == "f":
            current.capturing = False
        elif tag == "t":
            current.capturing = False
            current.family = value
        elif tag == "P":
            current.transport = value
        elif tag == "n":
            if current.address is None:
                address = parse_lsof_name(value)
                if address is not None and address[1] == port:
                    current.attach(address)
        elif tag == "T":
            if current.capturing and value.startswith("ST="):
                current.state = value[3:]

    if current is not None:
        records.append(current)

    return [record.to_connection() for record in records if record.address]


class LsofConnectionResolver:
    """Resolves a port by delegating to lsof."""

    def __init__(self, lsof_path: str = DEFAULT_LSOF, include_udp: bool = False) -> None:
        self._lsof_path = lsof_path
        self._include_udp = include_udp

    def command(self, port: int) -> list[str]:
        """The lsof invocation used for a port."""
        cmd = [self._lsof_path, "-nP", f"-iTCP:{port}"]
        if self._include_udp:
            cmd.append(f"-iUDP:{port}")
        cmd += ["-F", "pctPnT"]
        return cmd

    def resolve(
        self, port: int, deadline: Deadline | None = None
    ) -> list[ConnectionInfo]:
        """
        Return every socket bound to a local port.

        Raises:
            UnsupportedPlatform: lsof is not installed.
            PermissionDenied: lsof reported a permission failure.
            DeadlineExceeded: lsof did not finish before the deadline.
        """
        timeout = None
        if deadline is not None:
            deadline.check()
            timeout = deadline.remaining()

        try:
            result = subprocess.run(
                self.command(port),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError:
            raise UnsupportedPlatform(f"{self._lsof_path} is not installed") from None
        except subprocess.TimeoutExpired:
            raise DeadlineExceeded(f"lsof did not finish within {timeout:g}s") from None

        if result.returncode != 0:
            if not result.stdout.strip():
                if "permission" in result.stderr.lower():
                    raise PermissionDenied(message=result.stderr.strip())
                # lsof exits 1 when nothing matches
                log.debug("lsof found nothing on port %d", port)
                return []
            log.warning(
                "lsof exited with status %d, using partial output", result.returncode
            )

        return parse_lsof_output(result.stdout.splitlines(), port)
