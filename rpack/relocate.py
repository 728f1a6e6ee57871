"""Sandbox relocation.

The sandbox tooling (``fakechroot``/``fakeroot`` launchers, their environment
files, and R's own startup scripts) embeds the absolute path of the sandbox
root. The archive ships with the deployment path baked in; for the build the
path is swapped to the workspace, and swapped back once the build is done.

The set of rewritten files is a fixed manifest, never a directory scan.
"""

from collections.abc import Iterable
import logging
import os
import pathlib

from rpack.steps import BuildError


SELF_LINK: str = "app"

# Paths relative to the sandbox root.
RELOCATION_MANIFEST: tuple[str, ...] = (
    "usr/bin/fakechroot",
    "usr/bin/fakeroot",
    "usr/bin/ldd",
    "etc/fakechroot/chroot.env",
    "usr/lib/R/bin/R",
    "usr/lib/R/etc/ldpaths",
    "usr/lib/R/etc/Renviron",
)


def substitute_in_files(paths: Iterable[pathlib.Path], old: str, new: str) -> dict[pathlib.Path, int]:
    """Replace every occurrence of ``old`` with ``new`` in each file, in place.

    Substitution is byte-level so binary-safe content and line endings are kept.
    File modes are preserved.

    :param paths: Files to rewrite.
    :param old: Exact string to replace.
    :param new: Replacement string.
    :returns: Number of replacements per file.
    :raises BuildError: If a file is missing or cannot be rewritten.
    """

    if len(old) == 0:
        raise BuildError("Refusing to substitute an empty path string.")

    old_b: bytes = old.encode("utf-8")
    new_b: bytes = new.encode("utf-8")
    counts: dict[pathlib.Path, int] = {}
    for p in paths:
        if p.is_file() is False:
            raise BuildError(f"Relocation target is missing: {p}")
        try:
            data: bytes = p.read_bytes()
            n: int = data.count(old_b)
            if n > 0:
                p.write_bytes(data.replace(old_b, new_b))
        except OSError as e:
            raise BuildError(f"Failed to rewrite {p}: {e}") from e
        counts[p] = n
    return counts


def relocate(
    sandbox_root: pathlib.Path,
    old: str | os.PathLike[str],
    new: str | os.PathLike[str],
    logger: logging.Logger,
    manifest: Iterable[str] = RELOCATION_MANIFEST,
) -> dict[pathlib.Path, int]:
    """Rewrite the embedded sandbox path across the relocation manifest.

    A file in which ``old`` does not occur is left untouched and reported as a
    warning; it is not an error.

    :param sandbox_root: Sandbox root on the host.
    :param old: Path currently embedded.
    :param new: Path to embed instead.
    :param logger: Build logger.
    :param manifest: Sandbox-relative files to rewrite.
    :returns: Number of replacements per file.
    :raises BuildError: If a manifest file is missing.
    """

    old_s: str = os.fspath(old)
    new_s: str = os.fspath(new)
    logger.info(f"rpack: relocating sandbox {old_s} -> {new_s}")

    paths: list[pathlib.Path] = [sandbox_root / rel for rel in manifest]
    counts: dict[pathlib.Path, int] = substitute_in_files(paths, old_s, new_s)
    for p, n in counts.items():
        if n == 0:
            logger.warning(f"rpack: {p.relative_to(sandbox_root)} does not reference {old_s}")
        elif logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"rpack: {p.relative_to(sandbox_root)}: {n} replacement(s)")
    return counts


def link_self(sandbox_root: pathlib.Path, target: pathlib.Path) -> pathlib.Path:
    """Point the sandbox's self-reference link at ``target`` (host side).

    :param sandbox_root: Sandbox root on the host.
    :param target: Directory the link should resolve to.
    :returns: The link path.
    :raises BuildError: If the link cannot be created.
    """

    link: pathlib.Path = sandbox_root / SELF_LINK
    try:
        if link.is_symlink() is True or link.is_file() is True:
            link.unlink()
        elif link.is_dir() is True:
            raise BuildError(f"Sandbox self-reference is a real directory: {link}")
        link.symlink_to(target, target_is_directory=True)
    except OSError as e:
        raise BuildError(f"Failed to link {link} -> {target}: {e}") from e
    return link
