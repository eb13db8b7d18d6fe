"""Data models for pywir."""

from dataclasses import dataclass
from enum import Enum

# Owner sentinel for sockets whose process could not be resolved.
OWNER_UNKNOWN = -1

TCP_STATES = {
    1: "ESTABLISHED",
    2: "SYN_SENT",
    3: "SYN_RECV",
    4: "FIN_WAIT1",
    5: "FIN_WAIT2",
    6: "TIME_WAIT",
    7: "CLOSE",
    8: "CLOSE_WAIT",
    9: "LAST_ACK",
    10: "LISTEN",
    11: "CLOSING",
}


def tcp_state_label(code: int) -> str:
    """Translate a kernel TCP state code into its label."""
    return TCP_STATES.get(code, "UNKNOWN")


class ProcessState(Enum):
    """Process scheduler state, valued by its single-character procfs code."""

    RUNNING = "R"
    SLEEPING = "S"
    WAITING_ON_DISK = "D"
    ZOMBIE = "Z"
    STOPPED = "T"
    TRACING_STOP = "t"
    IDLE = "I"
    WAKING = "W"
    DEAD = "X"
    WAKE_KILL = "K"
    PARKED = "P"
    UNKNOWN = "?"

    @classmethod
    def from_code(cls, code: str) -> "ProcessState":
        """Map a procfs state character to a ProcessState."""
        if code == "x":
            return cls.DEAD
        try:
            return cls(code)
        except ValueError:
            return cls.UNKNOWN

    @property
    def label(self) -> str:
        """Human readable name, e.g. 'waiting_on_disk'."""
        return self.name.lower()


class Protocol(Enum):
    """Transport protocol tag of a socket table."""

    TCP = "TCP"
    TCP6 = "TCP6"
    UDP = "UDP"
    UDP6 = "UDP6"


@dataclass(slots=True, frozen=True)
class ProcessInfo:
    """Immutable snapshot of a process."""

    pid: int
    ppid: int  # 0 for a root process or when unknown
    name: str
    cmdline: str  # empty for kernel threads
    username: str
    uid: int
    state: ProcessState
    vsz_kb: int
    rss_kb: int
    start_time: float | None  # seconds since the epoch

    def __post_init__(self) -> None:
        if self.pid <= 0:
            raise ValueError(f"pid must be positive, got {self.pid}")


@dataclass(slots=True, frozen=True)
class ConnectionInfo:
    """Immutable snapshot of a socket bound to a local port."""

    protocol: Protocol
    local_address: str
    local_port: int
    remote_address: str
    remote_port: int
    state: str  # 'LISTEN', 'ESTABLISHED', ..., 'UNKNOWN'
    pid: int = OWNER_UNKNOWN

    @property
    def has_owner(self) -> bool:
        """Whether an owning process was resolved."""
        return self.pid != OWNER_UNKNOWN and self.pid > 0


AncestryChain = list[ProcessInfo]
EnvironmentSet = list[str]
