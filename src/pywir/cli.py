"""Command-line entry point for pywir."""

import argparse
import dataclasses
import logging
import sys
from collections.abc import Sequence
from importlib.metadata import PackageNotFoundError, version

from rich.console import Console
from rich.logging import RichHandler

from pywir.config import Settings
from pywir.errors import WirError
from pywir.inspector import Inspector, get_inspector
from pywir.models import ConnectionInfo, ProcessInfo
from pywir.render import OutputMode, Renderer

log = logging.getLogger(__name__)

try:
    __version__ = version("pywir")
except PackageNotFoundError:
    # Running from a source tree that was never installed
    __version__ = "0+unknown"

DESCRIPTION = "Explain why a process is running and who owns a port."

EPILOG = """\
examples:
  pywir --port 8080
  pywir --pid 1234 --tree
  pywir --all --short
  pywir --port 3000 --json
  pywir --pid 5678 --env
"""


def _positive_int(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid PID: {text}") from None
    if value < 1:
        raise argparse.ArgumentTypeError("PID must be positive")
    return value


def _port_number(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid port number: {text}") from None
    if not 1 <= value <= 65535:
        raise argparse.ArgumentTypeError("port must be between 1 and 65535")
    return value


def _timeout(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid timeout: {text}") from None
    if value <= 0:
        raise argparse.ArgumentTypeError("timeout must be positive")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pywir",
        description=DESCRIPTION,
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    target = parser.add_argument_group("target")
    target.add_argument("--pid", type=_positive_int, help="explain a specific PID")
    target.add_argument("--port", type=_port_number, help="explain port usage")
    target.add_argument("--all", action="store_true", help="list all running processes")

    output = parser.add_argument_group("output")
    output.add_argument("--short", action="store_true", help="one-line summary")
    output.add_argument("--tree", action="store_true", help="show full process ancestry tree")
    output.add_argument("--json", action="store_true", help="output result as JSON")
    output.add_argument("--warnings", action="store_true", help="show only warnings")
    output.add_argument("--no-color", action="store_true", help="disable colorized output")
    output.add_argument(
        "--env", action="store_true", help="show only environment variables for the process"
    )
    output.add_argument(
        "-i",
        "--interactive",
        action="store_true",
        help="enable interactive mode (kill process with 'k')",
    )

    scan = parser.add_argument_group("scanning")
    scan.add_argument("--udp", action="store_true", help="also inspect UDP sockets")
    scan.add_argument(
        "--timeout", type=_timeout, help="give up a port scan after this many seconds"
    )

    parser.add_argument("-v", "--verbose", action="store_true", help="log debug details")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def validate_args(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    """Reject option combinations that make no sense together."""
    modes = [args.pid is not None, args.port is not None, args.all]
    if not any(modes):
        parser.error("must specify either --port, --pid, or --all")
    if args.pid is not None and args.port is not None:
        parser.error("cannot specify both --port and --pid")
    if args.all and (args.pid is not None or args.port is not None):
        parser.error("cannot combine --all with --port or --pid")

    if sum([args.short, args.json, args.tree, args.env]) > 1:
        parser.error("cannot specify multiple output formats (--short, --json, --tree, --env)")
    if args.env and args.pid is None:
        parser.error("--env can only be used with --pid")
    if args.tree and args.pid is None:
        parser.error("--tree can only be used with --pid")
    if args.warnings and args.port is None:
        parser.error("--warnings can only be used with --port")
    if args.interactive and args.pid is None and args.port is None:
        parser.error("--interactive can only be used with --pid or --port")
    if args.interactive and args.json:
        parser.error("--interactive cannot be used with --json")


def output_mode(args: argparse.Namespace) -> OutputMode:
    if args.warnings:
        return OutputMode.WARNINGS
    if args.json:
        return OutputMode.JSON
    if args.short:
        return OutputMode.SHORT
    return OutputMode.NORMAL


def configure_logging(verbose: bool, color: bool) -> None:
    handler = RichHandler(
        console=Console(stderr=True, no_color=not color),
        show_time=False,
        show_path=False,
    )
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )


def run_interactive(processes: list[ProcessInfo]) -> None:
    from pywir.app import KillApp

    KillApp(processes).run()


def _resolve_owners(
    inspector: Inspector, connections: Sequence[ConnectionInfo]
) -> dict[int, ProcessInfo]:
    owners: dict[int, ProcessInfo] = {}
    for conn in connections:
        if not conn.has_owner or conn.pid in owners:
            continue
        try:
            owners[conn.pid] = inspector.process(conn.pid)
        except WirError as exc:
            # Owner exited after the socket scan
            log.debug("Cannot read owner %d: %s", conn.pid, exc)
    return owners


def handle_pid(inspector: Inspector, renderer: Renderer, args: argparse.Namespace) -> int:
    mode = output_mode(args)
    info = inspector.process(args.pid)

    if args.env:
        renderer.environment(inspector.environ(args.pid), mode)
    elif args.tree:
        renderer.tree(inspector.chain(args.pid), mode)
    else:
        renderer.process(info, mode)

    if args.interactive:
        run_interactive([info])
    return 0


def handle_port(inspector: Inspector, renderer: Renderer, args: argparse.Namespace) -> int:
    connections = inspector.port(args.port)
    if not connections:
        renderer.error(f"No connections found on port {args.port}")
        return 1

    owners = _resolve_owners(inspector, connections)
    renderer.port(args.port, connections, owners, output_mode(args))

    if args.interactive and owners:
        run_interactive(list(owners.values()))
    return 0


def handle_all(inspector: Inspector, renderer: Renderer, args: argparse.Namespace) -> int:
    processes = inspector.all_processes()
    if not processes:
        renderer.error("No processes found")
        return 1
    renderer.process_list(processes, output_mode(args))
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for the pywir command."""
    parser = build_parser()
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv:
        parser.print_help()
        return 0

    args = parser.parse_args(argv)
    validate_args(parser, args)

    try:
        settings = Settings.from_env()
    except ValueError as exc:
        parser.error(str(exc))
    settings = dataclasses.replace(
        settings,
        color=settings.color and not args.no_color,
        include_udp=args.udp,
        scan_timeout=args.timeout or settings.scan_timeout,
    )

    configure_logging(args.verbose, settings.color)
    renderer = Renderer(color=settings.color)

    try:
        inspector = get_inspector(settings)
        if args.pid is not None:
            return handle_pid(inspector, renderer, args)
        if args.port is not None:
            return handle_port(inspector, renderer, args)
        return handle_all(inspector, renderer, args)
    except WirError as exc:
        renderer.error(str(exc))
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
