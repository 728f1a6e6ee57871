"""Sandbox relocation over the fixed manifest."""

import logging
import pathlib

import pytest

from rpack.relocate import RELOCATION_MANIFEST, SELF_LINK, link_self, relocate, substitute_in_files
from rpack.steps import BuildError


@pytest.fixture
def sandbox_root(tmp_path: pathlib.Path) -> pathlib.Path:
    root = tmp_path / ".root"
    for i, rel in enumerate(RELOCATION_MANIFEST):
        p = root / rel
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(f"base=/app/.root\x00lib=/app/.root/usr/lib\r\n#{i}\n".encode("utf-8"))
    return root


def _snapshot(root: pathlib.Path) -> dict[str, bytes]:
    return {rel: (root / rel).read_bytes() for rel in RELOCATION_MANIFEST}


def test_round_trip_restores_bytes(sandbox_root: pathlib.Path, logger: logging.Logger):
    before = _snapshot(sandbox_root)
    relocate(sandbox_root, "/app/.root", "/tmp/build_abc/.root", logger)
    middle = _snapshot(sandbox_root)
    relocate(sandbox_root, "/tmp/build_abc/.root", "/app/.root", logger)

    assert _snapshot(sandbox_root) == before
    for content in middle.values():
        assert b"/app/.root" not in content
        assert content.count(b"/tmp/build_abc/.root") == 2


def test_counts_per_file(sandbox_root: pathlib.Path, logger: logging.Logger):
    counts = relocate(sandbox_root, pathlib.Path("/app/.root"), pathlib.Path("/w/.root"), logger)
    assert sorted(p.relative_to(sandbox_root).as_posix() for p in counts) == sorted(RELOCATION_MANIFEST)
    assert set(counts.values()) == {2}


def test_only_manifest_files_are_touched(sandbox_root: pathlib.Path, logger: logging.Logger):
    other = sandbox_root / "usr/bin/other-tool"
    other.write_text("/app/.root\n")
    relocate(sandbox_root, "/app/.root", "/w/.root", logger)
    assert other.read_text() == "/app/.root\n"


def test_pattern_not_found_warns(sandbox_root: pathlib.Path, logger: logging.Logger, caplog):
    with caplog.at_level(logging.WARNING, logger="rpack_tests"):
        counts = relocate(sandbox_root, "/app/.root/", "/w/.root", logger, manifest=["usr/bin/ldd"])
    # Only the lib path has a slash after the root.
    assert list(counts.values()) == [1]

    with caplog.at_level(logging.WARNING, logger="rpack_tests"):
        counts = relocate(sandbox_root, "/nowhere", "/w", logger, manifest=["usr/bin/ldd"])
    assert list(counts.values()) == [0]
    assert "does not reference /nowhere" in caplog.text


def test_missing_manifest_file_is_an_error(sandbox_root: pathlib.Path, logger: logging.Logger):
    (sandbox_root / "usr/bin/ldd").unlink()
    with pytest.raises(BuildError, match="missing"):
        relocate(sandbox_root, "/app/.root", "/w/.root", logger)


def test_substitute_preserves_mode(tmp_path: pathlib.Path):
    p = tmp_path / "tool"
    p.write_text("/a/b\n")
    p.chmod(0o755)
    assert substitute_in_files([p], "/a/b", "/c") == {p: 1}
    assert p.read_text() == "/c\n"
    assert p.stat().st_mode & 0o777 == 0o755


def test_empty_old_path_is_refused(tmp_path: pathlib.Path):
    with pytest.raises(BuildError):
        substitute_in_files([], "", "/x")


class TestLinkSelf:
    def test_replaces_existing_symlink(self, tmp_path: pathlib.Path):
        root = tmp_path / ".root"
        root.mkdir()
        (root / SELF_LINK).symlink_to("/app")
        link = link_self(root, tmp_path)
        assert link.is_symlink()
        assert link.readlink() == tmp_path

    def test_creates_missing_link(self, tmp_path: pathlib.Path):
        root = tmp_path / ".root"
        root.mkdir()
        assert link_self(root, tmp_path).resolve() == tmp_path.resolve()

    def test_refuses_real_directory(self, tmp_path: pathlib.Path):
        root = tmp_path / ".root"
        (root / SELF_LINK).mkdir(parents=True)
        with pytest.raises(BuildError, match="real directory"):
            link_self(root, tmp_path)
