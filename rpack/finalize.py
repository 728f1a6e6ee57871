"""Turning the build workspace into a deployable app.

Finalization relinks the sandbox to the deployment path, prunes build
residue, reverses the relocation, installs the runtime wrappers and the
profile hook, and writes the declarations file for later build stages.
"""

from dataclasses import dataclass
import logging
import pathlib
import shutil

from rpack.config import BuildConfig
from rpack.relocate import SELF_LINK, relocate
from rpack.sandbox import Sandbox
from rpack.steps import BuildError, CommandResult, StepResult
from rpack.templates import ENTRY_WRAPPER_TEMPLATE, PROFILE_HOOK_TEMPLATE, render


ENTRY_POINTS: tuple[str, ...] = ("R", "Rscript")
PROFILE_HOOK_RELPATH: str = ".profile.d/rpack.sh"
STEP_NAME: str = "finalizing app"

# Glob patterns relative to the sandbox root.
PRUNE_PATTERNS: tuple[str, ...] = (
    "tmp/*",
    "var/cache/apt/archives/*.deb",
    "var/cache/apt/*.bin",
    "var/lib/apt/lists/*",
    "var/lib/dpkg/*-old",
)


@dataclass(frozen=True, slots=True)
class PruneStats:
    """Build residue removed from the sandbox.

    :ivar paths_removed: Number of files/directories removed.
    :ivar bytes_removed: Total file bytes removed (best-effort).
    """

    paths_removed: int
    bytes_removed: int


def _tree_size(path: pathlib.Path) -> int:
    """Total size of regular files under a path, symlinks counted by their own size.

    :param path: File, symlink or directory.
    :returns: Size in bytes; unreadable entries count as 0.
    """

    if path.is_symlink() is True or path.is_file() is True:
        try:
            return path.lstat().st_size
        except OSError:
            return 0
    total: int = 0
    for p in path.rglob("*"):
        try:
            if p.is_symlink() is False and p.is_file() is True:
                total += p.stat().st_size
        except OSError:
            pass
    return total


def prune_sandbox(sandbox_root: pathlib.Path, patterns: tuple[str, ...] = PRUNE_PATTERNS) -> PruneStats:
    """Delete build-only residue inside the sandbox.

    :param sandbox_root: Sandbox root on the host.
    :param patterns: Glob patterns relative to the sandbox root.
    :returns: Removal statistics.
    :raises BuildError: If a path cannot be removed.
    """

    removed: int = 0
    size: int = 0
    for pattern in patterns:
        for p in sorted(sandbox_root.glob(pattern)):
            size += _tree_size(p)
            try:
                if p.is_dir() is True and p.is_symlink() is False:
                    shutil.rmtree(p)
                else:
                    p.unlink()
            except OSError as e:
                raise BuildError(f"Failed to remove {p}: {e}") from e
            removed += 1
    return PruneStats(paths_removed=removed, bytes_removed=size)


def relink_to_deploy(config: BuildConfig, sandbox: Sandbox) -> CommandResult:
    """Point the sandbox's self-reference link at the deployment path.

    :param config: Build config.
    :param sandbox: Sandbox to run ``ln`` in.
    :returns: Command result.
    """

    return sandbox.run(["ln", "-nsf", str(config.deploy_dir), f"/{SELF_LINK}"])


def _write_executable(path: pathlib.Path, content: str) -> None:
    """Write a text file with mode 0755, creating parent directories.

    :param path: Target file.
    :param content: File content.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(0o755)


def install_runtime_files(config: BuildConfig) -> list[pathlib.Path]:
    """Install the entry-point wrappers and the profile hook.

    :param config: Build config.
    :returns: Installed files.
    """

    values: dict[str, str] = {
        "DEPLOY_DIR": str(config.deploy_dir),
        "SANDBOX_ROOT": str(config.deploy_sandbox_root),
        "R_VERSION": config.r_version,
        "CRAN_MIRROR": config.cran_mirror,
    }

    installed: list[pathlib.Path] = []
    for entry in ENTRY_POINTS:
        wrapper: pathlib.Path = config.workspace / "bin" / entry
        _write_executable(wrapper, render(ENTRY_WRAPPER_TEMPLATE, {**values, "ENTRY": entry}))
        installed.append(wrapper)

    hook: pathlib.Path = config.workspace / PROFILE_HOOK_RELPATH
    hook.parent.mkdir(parents=True, exist_ok=True)
    hook.write_text(render(PROFILE_HOOK_TEMPLATE, values), encoding="utf-8")
    installed.append(hook)
    return installed


def export_declarations(config: BuildConfig) -> dict[str, str]:
    """Resolved configuration handed to later build stages.

    :param config: Build config.
    :returns: Variables in declaration order.
    """

    return {
        "RPACK_BUCKET": config.bucket,
        "RPACK_R_VERSION": config.r_version,
        "RPACK_BUILD_DIR": str(config.workspace),
        "RPACK_SANDBOX_DIR": str(config.sandbox_root),
        "RPACK_DEPLOY_SANDBOX_DIR": str(config.deploy_sandbox_root),
        "CRAN_MIRROR": config.cran_mirror,
    }


def write_export_file(path: pathlib.Path, declarations: dict[str, str]) -> None:
    """Write ``export KEY="value"`` lines for later build stages to source.

    :param path: Declarations file.
    :param declarations: Variables to export.
    """

    lines: list[str] = []
    for key, value in declarations.items():
        escaped: str = value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("`", "\\`")
        lines.append(f'export {key}="{escaped}"')
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def finalize_app(
    *,
    config: BuildConfig,
    sandbox: Sandbox,
    export_path: pathlib.Path | None,
    logger: logging.Logger,
) -> StepResult:
    """Finalize the workspace into a deployable app.

    :param config: Build config.
    :param sandbox: Sandbox used for the relink.
    :param export_path: Where to write the declarations file, or ``None``.
    :param logger: Build logger.
    :returns: Step result.
    :raises BuildError: If pruning or relocation fails.
    """

    relink: CommandResult = relink_to_deploy(config, sandbox)
    if relink.ok is False:
        return StepResult.from_command(STEP_NAME, relink)

    stats: PruneStats = prune_sandbox(config.sandbox_root)
    logger.info(
        f"rpack: pruned build residue ({stats.paths_removed} paths, {stats.bytes_removed / (1024 * 1024):.1f} MiB)"
    )

    relocate(config.sandbox_root, config.sandbox_root, config.deploy_sandbox_root, logger)

    installed: list[pathlib.Path] = install_runtime_files(config)
    if logger.isEnabledFor(logging.DEBUG) is True:
        for p in installed:
            logger.debug(f"rpack: installed {p.relative_to(config.workspace)}")

    if export_path is not None:
        write_export_file(export_path, export_declarations(config))
        logger.info(f"rpack: wrote {export_path}")
    return StepResult.success(STEP_NAME)
