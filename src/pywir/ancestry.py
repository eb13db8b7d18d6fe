"""Process ancestry chains."""

import logging

from pywir.backends import ProcessInfoProvider
from pywir.errors import NotFound, ParseError, PermissionDenied
from pywir.models import AncestryChain

log = logging.getLogger(__name__)


class AncestryBuilder:
    """
    Walks parent links from a process towards the root.

    A lookup failure part way up ends the chain at the last process that
    could be read; only a failure on the starting process is an error.
    """

    def __init__(
        self, provider: ProcessInfoProvider, max_depth: int | None = None
    ) -> None:
        """
        Initialize the AncestryBuilder.

        Args:
            provider: Source of process records.
            max_depth: Maximum chain length, or None for no limit.
        """
        self._provider = provider
        self._max_depth = max_depth

    def build_chain(self, pid: int) -> AncestryChain:
        """
        Build the ancestry chain of a process, starting with the process.

        Raises:
            NotFound: The starting process does not exist.
            PermissionDenied: The starting process is unreadable.
        """
        current = self._provider.get(pid)
        chain: AncestryChain = [current]
        seen = {current.pid}

        while self._max_depth is None or len(chain) < self._max_depth:
            parent_pid = current.ppid
            # A self-referencing parent marks the root
            if parent_pid <= 0 or parent_pid == current.pid or parent_pid in seen:
                break
            try:
                parent = self._provider.get(parent_pid)
            except (NotFound, PermissionDenied, ParseError) as exc:
                log.debug("Ancestry of %d stops at %d: %s", pid, current.pid, exc)
                break
            chain.append(parent)
            seen.add(parent.pid)
            current = parent

        return chain
