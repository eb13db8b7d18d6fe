"""Selects the inspection backends for the current host."""

import sys
from dataclasses import dataclass, field

from pywir.ancestry import AncestryBuilder
from pywir.backends import (
    ConnectionResolver,
    Deadline,
    EnvironmentReader,
    ProcessEnumerator,
    ProcessInfoProvider,
)
from pywir.config import Settings
from pywir.errors import UnsupportedPlatform
from pywir.models import AncestryChain, ConnectionInfo, EnvironmentSet, ProcessInfo


@dataclass(slots=True, frozen=True)
class Inspector:
    """The five read-only queries, bound to one host backend."""

    provider: ProcessInfoProvider
    enumerator: ProcessEnumerator
    ancestry: AncestryBuilder
    environment: EnvironmentReader
    connections: ConnectionResolver
    settings: Settings = field(default_factory=Settings)

    def process(self, pid: int) -> ProcessInfo:
        """Snapshot a single process."""
        return self.provider.get(pid)

    def all_processes(self) -> list[ProcessInfo]:
        """Snapshot every readable process."""
        return self.enumerator.list_all()

    def chain(self, pid: int) -> AncestryChain:
        """Build the ancestry chain of a process."""
        return self.ancestry.build_chain(pid)

    def environ(self, pid: int) -> EnvironmentSet:
        """Read the environment of a process."""
        return self.environment.read(pid)

    def port(self, port: int) -> list[ConnectionInfo]:
        """Resolve a port within the configured scan timeout."""
        return self.connections.resolve(port, Deadline(self.settings.scan_timeout))


def get_inspector(settings: Settings | None = None, platform: str | None = None) -> Inspector:
    """
    Build the Inspector for a platform.

    Args:
        settings: Runtime settings. Defaults to Settings().
        platform: A sys.platform value. Defaults to the running host.

    Raises:
        UnsupportedPlatform: No backend exists for the platform.
    """
    settings = settings or Settings()
    platform = platform or sys.platform

    if platform.startswith("linux"):
        from pywir import procfs

        provider = procfs.ProcfsProcessProvider(settings.proc_root)
        return Inspector(
            provider=provider,
            enumerator=procfs.ProcfsEnumerator(provider, settings.proc_root),
            ancestry=AncestryBuilder(provider),
            environment=procfs.ProcfsEnvironmentReader(settings.proc_root),
            connections=procfs.ProcfsConnectionResolver(
                settings.proc_root, include_udp=settings.include_udp
            ),
            settings=settings,
        )

    if platform == "darwin":
        from pywir import hostapi

        provider = hostapi.PsutilProcessProvider()
        return Inspector(
            provider=provider,
            enumerator=hostapi.PsutilEnumerator(provider),
            ancestry=AncestryBuilder(provider),
            environment=hostapi.SysctlEnvironmentReader(),
            connections=hostapi.LsofConnectionResolver(
                settings.lsof_path, include_udp=settings.include_udp
            ),
            settings=settings,
        )

    raise UnsupportedPlatform(f"no inspection backend for platform {platform!r}")
