from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from .process import ProcessRunner

logger = logging.getLogger(__name__)


def parse_keyserver_list(output: bytes) -> tuple[str, ...]:
    """Split discovery output into endpoints, ignoring blank lines."""

    lines = output.decode("utf-8").splitlines()
    return tuple(line.strip() for line in lines if line.strip())


class KeyserverDiscovery:
    """Run the discovery command and return the known keyserver endpoints.

    An empty list is a valid outcome, not an error.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        command: Sequence[str],
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("Keyserver discovery command must not be empty")
        self._runner = runner
        self._command = list(command)
        self._env = env

    def discover(self) -> tuple[str, ...]:
        result = self._runner.run(self._command, env=self._env)
        keyservers = parse_keyserver_list(result.stdout)
        logger.info("Discovered keyservers", extra={"count": len(keyservers)})
        return keyservers
