"""Subprocess execution for ceremony tools.

All external tools (volume manager, secret store, keyserver discovery, gpg)
are invoked through :class:`ProcessRunner`. Secrets reach a child process only
through a :class:`SecretHandoff`, never through argv, the environment or disk.
"""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType

from keysign_ceremony.ceremony.workflow.errors import NonZeroExit

logger = logging.getLogger(__name__)

# Variables that select a runtime version or inject library paths.
VERSION_MANAGER_VARS: frozenset[str] = frozenset(
    {
        "RBENV_VERSION",
        "PYENV_VERSION",
        "VIRTUAL_ENV",
        "BUNDLE_GEMFILE",
        "RUBYOPT",
        "RUBYLIB",
        "PYTHONPATH",
        "PYTHONHOME",
    }
)


@dataclass(frozen=True, slots=True)
class ProcessResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: bytes
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class SecretHandoff:
    """A one-shot private pipe for passing a secret to a single child.

    Usage: build the child's argv with :attr:`read_fd`, spawn the child with
    that descriptor inherited, call :meth:`close_read_end` in the parent, then
    :meth:`transfer` to write the payload and close the write end.

    ``os.pipe`` descriptors are non-inheritable, so only the child that is
    explicitly handed ``read_fd`` ever sees the channel.
    """

    def __init__(self, payload: bytes) -> None:
        self._payload: bytes | None = payload
        self.read_fd, self._write_fd = os.pipe()
        self._read_open = True
        self._write_open = True

    def close_read_end(self) -> None:
        if self._read_open:
            os.close(self.read_fd)
            self._read_open = False

    def transfer(self) -> None:
        if self._payload is None:
            raise RuntimeError("Secret has already been transferred")
        payload, self._payload = self._payload, None
        try:
            view = memoryview(payload)
            while view:
                written = os.write(self._write_fd, view)
                view = view[written:]
        except BrokenPipeError:
            # The child exited before reading; its exit status reports the failure.
            logger.debug("Secret reader closed the channel early")
        finally:
            self._close_write_end()

    def _close_write_end(self) -> None:
        if self._write_open:
            os.close(self._write_fd)
            self._write_open = False

    def close(self) -> None:
        self._payload = None
        self.close_read_end()
        self._close_write_end()

    def __enter__(self) -> SecretHandoff:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


class ProcessRunner:
    """Run external commands, blocking until they exit."""

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        input: bytes | None = None,
        handoff: SecretHandoff | None = None,
        check: bool = True,
    ) -> ProcessResult:
        """Run ``argv`` and capture its output.

        Args:
            argv: Program and arguments.
            cwd: Working directory for the child.
            env: Full environment for the child (inherits ours when None).
            input: Bytes written to the child's stdin.
            handoff: Secret channel whose read end the child inherits.
            check: Raise :class:`NonZeroExit` on a non-zero exit status.

        Returns:
            The captured result.
        """

        args = [str(a) for a in argv]
        logger.debug("Running command", extra={"program": args[0], "cwd": str(cwd or "")})
        pass_fds: tuple[int, ...] = (handoff.read_fd,) if handoff is not None else ()

        proc = subprocess.Popen(
            args,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=subprocess.PIPE if input is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            pass_fds=pass_fds,
        )
        if handoff is not None:
            handoff.close_read_end()
            handoff.transfer()
        stdout, stderr = proc.communicate(input)

        result = ProcessResult(
            argv=tuple(args), returncode=proc.returncode, stdout=stdout, stderr=stderr
        )
        if check and not result.ok:
            raise NonZeroExit(args, result.returncode, stderr)
        return result


def clean_tool_environment(
    environ: Mapping[str, str] | None = None,
    *,
    version_manager_roots: Iterable[Path] = (),
    drop_vars: Iterable[str] = VERSION_MANAGER_VARS,
) -> dict[str, str]:
    """Return a copy of ``environ`` without runtime version-manager state.

    PATH entries under any of ``version_manager_roots`` are removed, as are
    the variables in ``drop_vars``. This keeps helper tools from running
    under whatever interpreter version the ceremony itself was launched with.
    """

    env = dict(os.environ if environ is None else environ)
    roots = [str(Path(r).expanduser()) for r in version_manager_roots]

    path = env.get("PATH")
    if path is not None:
        kept = [d for d in path.split(os.pathsep) if not any(d.startswith(r) for r in roots)]
        env["PATH"] = os.pathsep.join(kept)

    for name in drop_vars:
        env.pop(name, None)
    return env
