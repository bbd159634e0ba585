"""Test configuration and fixtures."""

from __future__ import annotations

import io
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from keysign_ceremony.ceremony.signing import (
    CeremonyContext,
    Operator,
    SigningCeremony,
)
from keysign_ceremony.ceremony.tools.keyservers import KeyserverDiscovery
from keysign_ceremony.ceremony.tools.process import ProcessResult, SecretHandoff
from keysign_ceremony.ceremony.tools.secrets import SecretStore
from keysign_ceremony.ceremony.tools.volume import EphemeralVolume
from keysign_ceremony.ceremony.workflow.errors import NonZeroExit

TARGET = "A" * 40
RAMDISK = "gpg-ceremony"


def _colon_record(fingerprint: str) -> str:
    pub = ":".join(["pub", "u", "4096", "1", fingerprint[-16:]] + [""] * 7)
    fpr = ":".join(["fpr"] + [""] * 8 + [fingerprint, ""])
    return f"{pub}\n{fpr}\n"


_GPG_OPS = (
    "--list-keys",
    "--list-secret-keys",
    "--import",
    "--recv-keys",
    "--send-keys",
    "--sign-key",
    "--fingerprint",
)


@dataclass
class Call:
    argv: tuple[str, ...]
    cwd: Path | None
    env: dict[str, str] | None
    input: bytes | None
    secret: bytes | None


@dataclass
class FakeToolchain:
    """Simulates the ramdisk utility, fetch-password, ls-servers, gpg and gpgconf.

    External state (volume, keyring contents) lives here so it survives
    across ceremony runs, like the real tools' state would.
    """

    volume_root: Path
    secrets: dict[str, bytes] = field(default_factory=dict)
    keyservers: list[str] = field(default_factory=list)
    # Keys each keyserver can serve; a keyserver missing here serves nothing.
    keyserver_keys: dict[str, set[str]] = field(default_factory=dict)
    failing_keyservers: set[str] = field(default_factory=set)
    fail_ops: set[str] = field(default_factory=set)
    # Identifier -> primary fingerprints reported by `--with-colons --fingerprint`.
    fingerprint_matches: dict[str, list[str]] = field(default_factory=dict)

    volume_exists: bool = False
    # Set by any gpg call, cleared by `gpgconf --kill all`.
    agents_running: bool = False
    public_keys: set[str] = field(default_factory=set)
    secret_keys: set[str] = field(default_factory=set)
    signatures: list[tuple[str, str]] = field(default_factory=list)
    published: list[tuple[str, str]] = field(default_factory=list)
    calls: list[Call] = field(default_factory=list)

    @property
    def volume_path(self) -> Path:
        return self.volume_root / RAMDISK

    def add_identity(
        self, label: str, fingerprint: str, passphrase: bytes = b"correct horse"
    ) -> None:
        self.secrets[f"gnupg/{label}/fingerprint"] = fingerprint.encode() + b"\n"
        self.secrets[f"gnupg/{label}/pubkey"] = f"PUB:{fingerprint}\n".encode()
        self.secrets[f"gnupg/{label}/privkey"] = f"SEC:{fingerprint}\n".encode()
        self.secrets[f"gnupg/{label}/passphrase"] = passphrase + b"\n"

    def ops(self, op: str) -> list[Call]:
        return [c for c in self.calls if c.argv[0] == "gpg" and op in c.argv]

    def tool_calls(self, program: str, *args: str) -> list[Call]:
        return [c for c in self.calls if c.argv[: 1 + len(args)] == (program, *args)]

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
        secret = None
        if handoff is not None:
            handoff.transfer()
            secret = os.read(handoff.read_fd, 4096)
            handoff.close_read_end()

        args = tuple(str(a) for a in argv)
        self.calls.append(
            Call(
                argv=args,
                cwd=cwd,
                env=dict(env) if env is not None else None,
                input=input,
                secret=secret,
            )
        )

        code, out = self._dispatch(args, input, secret)
        result = ProcessResult(argv=args, returncode=code, stdout=out)
        if check and code != 0:
            raise NonZeroExit(args, code)
        return result

    def _dispatch(
        self, args: tuple[str, ...], input: bytes | None, secret: bytes | None
    ) -> tuple[int, bytes]:
        program = args[0]
        if program in self.fail_ops:
            return 1, b""
        if program == "ramdisk":
            return self._ramdisk(args[1])
        if program == "fetch-password":
            value = self.secrets.get(args[1])
            return (0, value) if value is not None else (1, b"")
        if program == "ls-servers":
            return 0, "".join(f"{k}\n" for k in self.keyservers).encode()
        if program == "gpg":
            self.agents_running = True
            return self._gpg(args, input, secret)
        if program == "gpgconf":
            self.agents_running = False
            return 0, b""
        return 127, b""

    def _ramdisk(self, command: str) -> tuple[int, bytes]:
        if "ramdisk-" + command in self.fail_ops:
            return 1, b""
        if command == "path":
            return (0, f"{self.volume_path}\n".encode()) if self.volume_exists else (1, b"")
        if command == "create":
            self.volume_exists = True
            return 0, b""
        if command == "destroy":
            if not self.volume_exists:
                return 1, b""
            self.volume_exists = False
            self.public_keys.clear()
            self.secret_keys.clear()
            return 0, b""
        return 2, b""

    def _gpg(
        self, args: tuple[str, ...], input: bytes | None, secret: bytes | None
    ) -> tuple[int, bytes]:
        op = next(a for a in args if a in _GPG_OPS)
        if op in self.fail_ops:
            return 2, b""
        key = args[-1]

        if op == "--list-keys":
            return (0, b"") if key in self.public_keys else (2, b"")
        if op == "--list-secret-keys":
            return (0, b"") if key in self.secret_keys else (2, b"")
        if op == "--import":
            for line in (input or b"").decode().splitlines():
                kind, _, fpr = line.partition(":")
                (self.public_keys if kind == "PUB" else self.secret_keys).add(fpr)
            return 0, b""
        if op in {"--recv-keys", "--send-keys"}:
            keyserver = args[args.index("--keyserver") + 1]
            if keyserver in self.failing_keyservers:
                return 2, b""
            if op == "--send-keys":
                self.published.append((keyserver, key))
                return 0, b""
            if key not in self.keyserver_keys.get(keyserver, set()):
                return 2, b""
            self.public_keys.add(key)
            return 0, b""
        if op == "--fingerprint":
            if "--with-colons" in args:
                matches = self.fingerprint_matches.get(key, [key])
                out = "".join(_colon_record(m) for m in matches)
                return 0, out.encode()
            return 0, f"pub   rsa4096\n      {key}\nuid   Target <t@example.org>\n".encode()
        if op == "--sign-key":
            signer = args[args.index("--default-key") + 1]
            if secret != b"correct horse":
                return 2, b""
            self.signatures.append((signer, key))
            return 0, b""
        return 2, b""


@pytest.fixture
def toolchain(tmp_path: Path) -> FakeToolchain:
    tools = FakeToolchain(volume_root=tmp_path / "ramdisks")
    tools.add_identity("org-release", "F1")
    tools.keyservers = ["hkps://keys.example.org"]
    tools.keyserver_keys = {"hkps://keys.example.org": {TARGET}}
    return tools


def build_ceremony(
    tools: FakeToolchain,
    *,
    identities: Sequence[str] = ("org-release",),
    target: str = TARGET,
    answer: str = "sign\n",
    stdout: io.StringIO | None = None,
) -> SigningCeremony:
    return SigningCeremony(
        context=CeremonyContext(identity_labels=tuple(identities), target_key=target),
        runner=tools,  # type: ignore[arg-type]
        volume=EphemeralVolume(tools),  # type: ignore[arg-type]
        secrets=SecretStore(tools, env={"PATH": "/usr/bin"}),  # type: ignore[arg-type]
        discovery=KeyserverDiscovery(
            tools,  # type: ignore[arg-type]
            command=["ls-servers", "--silent", "-NSat", "keyserver"],
            env={"PATH": "/usr/bin"},
        ),
        operator=Operator(stdin=io.StringIO(answer), stdout=stdout or io.StringIO()),
        ramdisk_name=RAMDISK,
    )


@pytest.fixture
def clean_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run in an empty directory with no ceremony variables set."""

    for name in list(os.environ):
        if name.startswith("CEREMONY_") or name == "LOG_LEVEL":
            monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def make_ceremony(toolchain: FakeToolchain) -> Callable[..., SigningCeremony]:
    def _make(**kwargs: Any) -> SigningCeremony:
        return build_ceremony(toolchain, **kwargs)

    return _make
