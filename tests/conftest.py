"""Shared fixtures: a fake runtime archive and a recording sandbox runner."""

from collections.abc import Callable, Mapping, Sequence
import io
import logging
import pathlib
import tarfile

import pytest

from rpack.config import BuildConfig
from rpack.relocate import RELOCATION_MANIFEST
from rpack.steps import CommandResult


DEPLOY_SANDBOX: str = "/app/.root"


def _tool_content(rel: str) -> bytes:
    return (
        f"#!/bin/sh\n# {rel}\n"
        f"FAKECHROOT_BASE={DEPLOY_SANDBOX}\n"
        f"LD_LIBRARY_PATH={DEPLOY_SANDBOX}/usr/lib:{DEPLOY_SANDBOX}/lib\n"
    ).encode("utf-8")


def _add_file(tf: tarfile.TarFile, name: str, data: bytes, mode: int = 0o644) -> None:
    info: tarfile.TarInfo = tarfile.TarInfo(name)
    info.size = len(data)
    info.mode = mode
    tf.addfile(info, io.BytesIO(data))


def _add_dir(tf: tarfile.TarFile, name: str) -> None:
    info: tarfile.TarInfo = tarfile.TarInfo(name)
    info.type = tarfile.DIRTYPE
    info.mode = 0o755
    tf.addfile(info)


def build_runtime_archive(path: pathlib.Path, extra: Mapping[str, bytes] | None = None) -> pathlib.Path:
    """Write a minimal runtime archive with a ``.root/`` sandbox.

    ``extra`` adds files by archive member name.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tf:
        _add_dir(tf, ".root")
        _add_dir(tf, ".root/tmp")
        for rel in RELOCATION_MANIFEST:
            _add_file(tf, f".root/{rel}", _tool_content(rel), mode=0o755)
        _add_file(tf, ".root/tmp/leftover.txt", b"scratch\n")
        _add_file(tf, ".root/var/cache/apt/archives/libxml2.deb", b"deb" * 100)
        _add_file(tf, ".root/var/cache/apt/pkgcache.bin", b"bin")
        _add_file(tf, ".root/var/lib/apt/lists/archive_ubuntu_Packages", b"index")
        _add_file(tf, ".root/usr/lib/R/library/base/DESCRIPTION", b"Package: base\n")
        link: tarfile.TarInfo = tarfile.TarInfo(".root/app")
        link.type = tarfile.SYMTYPE
        link.linkname = "/app"
        tf.addfile(link)
        for name, data in (extra or {}).items():
            _add_file(tf, name, data)
    return path


class FakeRunner:
    """Records sandboxed commands instead of running them.

    Simulates R: running the init wrapper creates the completion sentinel
    unless ``init_succeeds`` is false.
    """

    def __init__(self, *, init_succeeds: bool = True, fail_on: str | None = None) -> None:
        self.init_succeeds: bool = init_succeeds
        self.fail_on: str | None = fail_on
        self.calls: list[list[str]] = []

    def inner(self) -> list[list[str]]:
        """Commands as run inside the sandbox (launcher prefix stripped)."""

        out: list[list[str]] = []
        for cmd in self.calls:
            argv: list[str] = cmd[4:]
            if argv[0:3] == ["/bin/sh", "-c", 'cd "$0" && exec "$@"']:
                argv = argv[4:]
            out.append(argv)
        return out

    def __call__(self, argv: Sequence[str], env: Mapping[str, str]) -> CommandResult:
        cmd: list[str] = list(argv)
        self.calls.append(cmd)
        root: pathlib.Path = pathlib.Path(cmd[3])

        if self.fail_on is not None and self.fail_on in cmd:
            return CommandResult(argv=tuple(cmd), returncode=100, output=f"E: {self.fail_on} failed\nsecond line\n")

        if "--slave" in cmd:
            if self.init_succeeds is True:
                sentinel: pathlib.Path = root / "tmp" / ".rpack-init-done"
                sentinel.parent.mkdir(parents=True, exist_ok=True)
                sentinel.write_text("")
                return CommandResult(argv=tuple(cmd), returncode=0, output="installing 'jsonlite'\n")
            # Exit status under fakechroot is unreliable; report success anyway.
            return CommandResult(argv=tuple(cmd), returncode=0, output="Error: package 'nope' not found\n")

        return CommandResult(argv=tuple(cmd), returncode=0, output="")


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("rpack_tests")


@pytest.fixture
def dist(tmp_path: pathlib.Path) -> pathlib.Path:
    """A local distribution tree serving one runtime archive."""

    root: pathlib.Path = tmp_path / "dist"
    build_runtime_archive(root / "latest" / "R-3.6.3-heroku-16.tar.gz")
    return root


@pytest.fixture
def workspace(tmp_path: pathlib.Path) -> pathlib.Path:
    ws: pathlib.Path = tmp_path / "build"
    ws.mkdir()
    return ws


@pytest.fixture
def make_config(workspace: pathlib.Path, dist: pathlib.Path) -> Callable[..., BuildConfig]:
    def _make(**overrides: object) -> BuildConfig:
        values: dict[str, object] = {
            "workspace": workspace,
            "stack": "heroku-16",
            "r_version": "3.6.3",
            "bucket": "test-bucket",
            "binaries_url": dist.as_uri(),
            "build_tag": "latest",
            "cran_mirror": "https://cran.example.org",
        }
        values.update(overrides)
        return BuildConfig(**values)  # type: ignore[arg-type]

    return _make


@pytest.fixture
def runtime_archive() -> Callable[..., pathlib.Path]:
    return build_runtime_archive


@pytest.fixture
def fake_runner() -> type[FakeRunner]:
    return FakeRunner


@pytest.fixture(autouse=True)
def _reset_rpack_logger():
    yield
    rpack_logger: logging.Logger = logging.getLogger("rpack")
    rpack_logger.handlers.clear()
    rpack_logger.propagate = True
    rpack_logger.setLevel(logging.NOTSET)
