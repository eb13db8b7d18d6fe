"""Text and JSON rendering of inspection results."""

import json
from collections.abc import Mapping, Sequence
from datetime import datetime
from enum import Enum
from typing import Any

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from pywir.models import (
    AncestryChain,
    ConnectionInfo,
    EnvironmentSet,
    ProcessInfo,
    ProcessState,
)

# Ports below this are reserved for privileged services.
PRIVILEGED_PORT_LIMIT = 1024


class OutputMode(Enum):
    """Output formats selectable from the command line."""

    NORMAL = "normal"
    SHORT = "short"
    JSON = "json"
    WARNINGS = "warnings"


def format_start_time(start_time: float | None) -> str:
    """Format an epoch timestamp as local time, or 'unknown'."""
    if start_time is None:
        return "unknown"
    return datetime.fromtimestamp(start_time).strftime("%Y-%m-%d %H:%M:%S")


def connection_warnings(conn: ConnectionInfo, proc: ProcessInfo | None) -> list[str]:
    """Security warnings about a single connection's owner."""
    if proc is None:
        return []
    warnings = []
    if proc.uid == 0 and conn.local_port >= PRIVILEGED_PORT_LIMIT:
        warnings.append(
            f"Process '{proc.name}' (PID {proc.pid}) running as root on non-system port"
        )
    if proc.state is ProcessState.ZOMBIE:
        warnings.append(f"Zombie process '{proc.name}' (PID {proc.pid}) holding port")
    return warnings


def process_to_dict(proc: ProcessInfo) -> dict[str, Any]:
    return {
        "pid": proc.pid,
        "name": proc.name,
        "ppid": proc.ppid,
        "user": proc.username,
        "uid": proc.uid,
        "state": proc.state.value,
        "cmdline": proc.cmdline,
        "start_time": proc.start_time,
        "memory": {"vsz_kb": proc.vsz_kb, "rss_kb": proc.rss_kb},
    }


def chain_to_dict(chain: AncestryChain) -> dict[str, Any] | None:
    """Nest an ancestry chain so each node holds its parent."""
    node: dict[str, Any] | None = None
    for proc in reversed(chain):
        entry: dict[str, Any] = {
            "pid": proc.pid,
            "name": proc.name,
            "user": proc.username,
        }
        if node is not None:
            entry["parent"] = node
        node = entry
    return node


def connection_to_dict(
    conn: ConnectionInfo, proc: ProcessInfo | None
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "protocol": conn.protocol.value,
        "state": conn.state,
        "local_address": conn.local_address,
        "local_port": conn.local_port,
        "remote_address": conn.remote_address,
        "remote_port": conn.remote_port,
        "pid": conn.pid if conn.has_owner else None,
        "process": None,
    }
    if proc is not None:
        entry["process"] = {
            "pid": proc.pid,
            "name": proc.name,
            "user": proc.username,
            "cmdline": proc.cmdline,
        }
    return entry


class Renderer:
    """
    Writes inspection results to a console.

    Color is an explicit setting; when off, no ANSI styling is emitted.
    """

    def __init__(
        self,
        console: Console | None = None,
        err_console: Console | None = None,
        color: bool = True,
    ) -> None:
        """
        Initialize the Renderer.

        Args:
            console: Destination for results. Defaults to stdout.
            err_console: Destination for errors. Defaults to stderr.
            color: Whether to style output.
        """
        self._color = color
        self._out = console or Console(no_color=not color, highlight=False)
        self._err = err_console or Console(
            stderr=True, no_color=not color, highlight=False
        )

    @property
    def color(self) -> bool:
        return self._color

    def _print(self, text: str = "", style: str | None = None) -> None:
        self._out.print(text, style=style if self._color else None, soft_wrap=True)

    def _json(self, document: Any) -> None:
        self._out.print(
            json.dumps(document, indent=2),
            markup=False,
            emoji=False,
            highlight=False,
            soft_wrap=True,
        )

    def _label(self, label: str, value: str, style: str = "cyan") -> None:
        label_text = f"[{style}]{label}[/{style}]" if self._color else label
        self._print(f"  {label_text}{escape(value)}")

    # Messages

    def error(self, message: str) -> None:
        prefix = "[bold red]Error:[/bold red] " if self._color else "Error: "
        self._err.print(prefix + escape(message), soft_wrap=True)

    def warning(self, message: str) -> None:
        prefix = "[yellow]Warning:[/yellow] " if self._color else "Warning: "
        self._print(prefix + escape(message))

    def success(self, message: str) -> None:
        prefix = "[green]✓[/green] " if self._color else "OK: "
        self._print(prefix + escape(message))

    # Process

    def process(self, proc: ProcessInfo, mode: OutputMode = OutputMode.NORMAL) -> None:
        if mode is OutputMode.JSON:
            self._json(process_to_dict(proc))
        elif mode is OutputMode.SHORT:
            cmdline = proc.cmdline or "(no cmdline)"
            self._print(
                escape(
                    f"PID {proc.pid}: {proc.name}[{proc.ppid}] by {proc.username} - {cmdline}"
                )
            )
        else:
            self._print("Process Information", style="bold")
            self._label("PID: ", str(proc.pid))
            self._label("Name: ", proc.name)
            self._label("User: ", f"{proc.username} (UID: {proc.uid})")
            self._label("Parent PID: ", str(proc.ppid))
            self._label("State: ", f"{proc.state.value} ({proc.state.label})")
            self._label("Started: ", format_start_time(proc.start_time))
            if proc.cmdline:
                self._label("Command: ", proc.cmdline)
            self._label("Memory: ", f"VSZ={proc.vsz_kb} KB, RSS={proc.rss_kb} KB")

    def tree(self, chain: AncestryChain, mode: OutputMode = OutputMode.NORMAL) -> None:
        if mode is OutputMode.JSON:
            self._json(chain_to_dict(chain))
            return

        self._print("Process Ancestry Tree", style="bold")
        for depth, proc in enumerate(chain):
            indent = "  " * depth + ("└─ " if depth else "")
            name = escape(proc.name)
            if self._color:
                name = f"[green]{name}[/green]"
            line = f"{indent}{name}[{proc.pid}]"
            if proc.username:
                line += f" ({escape(proc.username)})"
            self._print(line)

    def environment(
        self, environ: EnvironmentSet, mode: OutputMode = OutputMode.NORMAL
    ) -> None:
        if mode is OutputMode.JSON:
            self._json({"environment": list(environ), "count": len(environ)})
            return

        self._print(f"Environment Variables ({len(environ)} total)", style="bold")
        for entry in environ:
            name, sep, value = entry.partition("=")
            if sep and self._color:
                self._print(f"  [cyan]{escape(name)}[/cyan]={escape(value)}")
            else:
                self._print(f"  {escape(entry)}")

    # Ports

    def port(
        self,
        port: int,
        connections: Sequence[ConnectionInfo],
        owners: Mapping[int, ProcessInfo],
        mode: OutputMode = OutputMode.NORMAL,
    ) -> None:
        """
        Render the connections found on a port.

        Args:
            port: The queried port.
            connections: Sockets bound to it.
            owners: Process records of the owning pids that could be read.
            mode: Output format.
        """
        if mode is OutputMode.WARNINGS:
            self._port_warnings(port, connections, owners)
        elif mode is OutputMode.JSON:
            self._json(
                {
                    "port": port,
                    "connection_count": len(connections),
                    "connections": [
                        connection_to_dict(conn, owners.get(conn.pid))
                        for conn in connections
                    ],
                }
            )
        elif mode is OutputMode.SHORT:
            for conn in connections:
                proc = owners.get(conn.pid)
                if proc is not None:
                    text = f"Port {port}: {proc.name}[{proc.pid}] by {proc.username} ({conn.state})"
                else:
                    text = f"Port {port}: Unknown process ({conn.state})"
                self._print(escape(text))
        else:
            self._port_normal(port, connections, owners)

    def _port_normal(
        self,
        port: int,
        connections: Sequence[ConnectionInfo],
        owners: Mapping[int, ProcessInfo],
    ) -> None:
        self._print(f"Port {port} Connections ({len(connections)} found)", style="bold")
        for index, conn in enumerate(connections, start=1):
            self._print()
            self._print(f"Connection #{index}:", style="cyan")
            self._print(f"  Protocol: {escape(conn.protocol.value)}")
            self._print(f"  State: {escape(conn.state)}")
            self._print(escape(f"  Local: {conn.local_address or '*'}:{conn.local_port}"))
            if conn.remote_port > 0:
                self._print(escape(f"  Remote: {conn.remote_address}:{conn.remote_port}"))

            proc = owners.get(conn.pid)
            if proc is None:
                self._print("  Process: Unknown")
                continue
            self._label("Process: ", f"{proc.name} (PID: {proc.pid})", style="green")
            self._print(f"  User: {escape(proc.username)}")
            if proc.cmdline:
                self._print(f"  Command: {escape(proc.cmdline)}")
            if proc.uid == 0 and conn.local_port >= PRIVILEGED_PORT_LIMIT:
                self.warning("Process running with elevated privileges (root)")

    def _port_warnings(
        self,
        port: int,
        connections: Sequence[ConnectionInfo],
        owners: Mapping[int, ProcessInfo],
    ) -> None:
        self._print(f"Port {port} - Security Warnings", style="bold")
        found = False
        for conn in connections:
            for message in connection_warnings(conn, owners.get(conn.pid)):
                found = True
                self.warning(message)

        if len(connections) > 1:
            found = True
            self.warning(f"Multiple processes ({len(connections)}) listening on port {port}")

        if not found:
            self.success(f"No warnings found for port {port}")

    # Process list

    def process_list(
        self, processes: Sequence[ProcessInfo], mode: OutputMode = OutputMode.NORMAL
    ) -> None:
        if mode is OutputMode.JSON:
            self._json(
                {
                    "process_count": len(processes),
                    "processes": [process_to_dict(proc) for proc in processes],
                }
            )
            return

        if mode is OutputMode.SHORT:
            for proc in processes:
                self._print(escape(f"{proc.pid}: {proc.name} by {proc.username}"))
            return

        self._print(f"Running Processes ({len(processes)} total)", style="bold")
        table = Table(box=box.SIMPLE_HEAD, show_edge=False, pad_edge=False)
        table.add_column("PID", justify="right")
        table.add_column("PPID", justify="right")
        table.add_column("NAME", style="green" if self._color else None, max_width=20)
        table.add_column("USER", style="cyan" if self._color else None, max_width=12)
        table.add_column("COMMAND", no_wrap=True, max_width=60)
        for proc in processes:
            table.add_row(
                str(proc.pid),
                str(proc.ppid),
                escape(proc.name),
                escape(proc.username),
                escape(proc.cmdline or "(no cmdline)"),
            )
        self._out.print(table)
        self._print(f"Total: {len(processes)} processes", style="bold")
