"""Shared fixtures for pywir tests."""

import ipaddress
import os
import sys
from pathlib import Path

import pytest

from pywir.models import ProcessInfo, ProcessState

BOOT_TIME = 1_700_000_000

SOCKET_HEADER = (
    "  sl  local_address rem_address   st tx_queue rx_queue tr tm->when "
    "retrnsmt   uid  timeout inode"
)


def _host_order(packed: bytes) -> str:
    if sys.byteorder == "little":
        packed = b"".join(packed[i : i + 4][::-1] for i in range(0, len(packed), 4))
    return packed.hex().upper()


def hex_address(address: str, port: int) -> str:
    """Encode an address the way /proc/net socket tables do."""
    return f"{_host_order(ipaddress.ip_address(address).packed)}:{port:04X}"


def socket_row(
    slot: int,
    local: tuple[str, int],
    remote: tuple[str, int],
    state: int,
    inode: int,
    uid: int = 1000,
) -> str:
    return (
        f"  {slot:2d}: {hex_address(*local)} {hex_address(*remote)} {state:02X} "
        f"00000000:00000000 00:00000000 00000000 {uid:5d}        0 {inode} 1 "
        "0000000000000000 100 0 0 10 0"
    )


class FakeProc:
    """A synthetic proc filesystem rooted in a temporary directory."""

    def __init__(self, root: Path) -> None:
        self.root = root
        (root / "net").mkdir(parents=True)
        (root / "stat").write_text(
            "cpu  1 2 3 4 5 6 7 0 0 0\n"
            f"btime {BOOT_TIME}\n"
            "processes 4242\n"
        )

    def add_process(
        self,
        pid: int,
        name: str = "proc",
        state: str = "S",
        ppid: int = 1,
        starttime: int = 500,
        uid: int = 1000,
        vsz: int = 2048,
        rss: int = 512,
        cmdline: bytes = b"",
        environ: bytes = b"",
        fds: tuple[str, ...] = (),
    ) -> Path:
        base = self.root / str(pid)
        (base / "fd").mkdir(parents=True)
        filler = " ".join(["0"] * 17)
        (base / "stat").write_text(
            f"{pid} ({name}) {state} {ppid} {filler} {starttime} 0 0 0\n"
        )
        (base / "status").write_text(
            f"Name:\t{name}\n"
            f"State:\t{state}\n"
            f"PPid:\t{ppid}\n"
            f"Uid:\t{uid}\t{uid}\t{uid}\t{uid}\n"
            f"VmSize:\t   {vsz} kB\n"
            f"VmRSS:\t    {rss} kB\n"
        )
        (base / "cmdline").write_bytes(cmdline)
        (base / "environ").write_bytes(environ)
        for fd, target in enumerate(fds):
            os.symlink(target, base / "fd" / str(fd))
        return base

    def write_table(self, table: str, rows: list[str]) -> None:
        (self.root / "net" / table).write_text(
            "\n".join([SOCKET_HEADER, *rows]) + "\n"
        )


@pytest.fixture
def fake_proc(tmp_path: Path) -> FakeProc:
    return FakeProc(tmp_path / "proc")


def make_process(pid: int, ppid: int = 0, name: str = "proc", **overrides) -> ProcessInfo:
    fields = dict(
        pid=pid,
        ppid=ppid,
        name=name,
        cmdline=f"/usr/bin/{name}",
        username="tester",
        uid=1000,
        state=ProcessState.SLEEPING,
        vsz_kb=2048,
        rss_kb=512,
        start_time=float(BOOT_TIME),
    )
    fields.update(overrides)
    return ProcessInfo(**fields)
