"""Ephemeral (ramdisk) volume management.

Wraps an external utility exposing ``path <name>``, ``create <name>`` and
``destroy <name>``. ``path`` exits non-zero when the volume does not exist.
"""

from __future__ import annotations

import logging
from pathlib import Path

from keysign_ceremony.ceremony.workflow.errors import NonZeroExit, VolumeError

from .process import ProcessRunner

logger = logging.getLogger(__name__)


class EphemeralVolume:
    def __init__(self, runner: ProcessRunner, *, binary: str = "ramdisk") -> None:
        self._runner = runner
        self._binary = binary

    def locate(self, name: str) -> Path | None:
        try:
            result = self._runner.run([self._binary, "path", name])
        except NonZeroExit:
            return None
        path = result.stdout.decode("utf-8").strip()
        return Path(path) if path else None

    def create(self, name: str) -> Path:
        try:
            self._runner.run([self._binary, "create", name])
        except NonZeroExit as e:
            raise VolumeError(f"Could not create volume {name!r}: {e}") from e

        path = self.locate(name)
        if path is None:
            raise VolumeError(f"Volume {name!r} was created but its path cannot be resolved")
        logger.info("Volume created", extra={"volume": name, "path": str(path)})
        return path

    def destroy(self, name: str) -> None:
        try:
            self._runner.run([self._binary, "destroy", name])
        except NonZeroExit as e:
            raise VolumeError(f"Could not destroy volume {name!r}: {e}") from e
        logger.info("Volume destroyed", extra={"volume": name})
