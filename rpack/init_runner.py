"""Running the app's init script inside the sandbox.

The init script (``init.r`` or ``init.R``) installs R packages at build time.
It is wrapped in a generated script that sets the CRAN mirror and, as its last
statement, creates a completion sentinel inside the sandbox. The sentinel is
the only success signal: the exit status of R under ``fakechroot`` is not
reliable.
"""

import logging
import pathlib

from rpack.config import BuildConfig
from rpack.sandbox import Sandbox
from rpack.steps import BuildError, CommandResult, InitFailedError, StepResult, indent
from rpack.templates import INIT_WRAPPER_TEMPLATE, r_string, render


INIT_SCRIPT_NAMES: tuple[str, ...] = ("init.r", "init.R")
RUN_SCRIPT_NAME: str = "run.R"
WRAPPER_NAME: str = ".rpack-init.R"
SENTINEL_RELPATH: str = "tmp/.rpack-init-done"
STEP_NAME: str = "running init script"

R_SCRIPT_ARGS: tuple[str, ...] = ("R", "--no-save", "--quiet", "--slave", "-f")


def find_init_script(workspace: pathlib.Path) -> pathlib.Path | None:
    """Select the init script by precedence.

    :param workspace: Build workspace.
    :returns: The first existing init script, or ``None``.
    """

    # Compare listed names; case-insensitive filesystems would match both spellings.
    names: set[str] = {p.name for p in workspace.iterdir()} if workspace.is_dir() is True else set()
    for name in INIT_SCRIPT_NAMES:
        if name in names and (workspace / name).is_file() is True:
            return workspace / name
    return None


def render_init_wrapper(*, script: pathlib.Path, build_dir: str, cran_mirror: str, sentinel: str) -> str:
    """Render the init wrapper around the app's init script.

    :param script: The app's init script on the host.
    :param build_dir: Workspace path exported as ``BUILD_DIR``.
    :param cran_mirror: CRAN mirror URL.
    :param sentinel: Sentinel path as seen from inside the sandbox.
    :returns: Wrapper source.
    :raises BuildError: If the init script cannot be read.
    """

    try:
        content: str = script.read_text(encoding="utf-8")
    except OSError as e:
        raise BuildError(f"Failed to read init script {script}: {e}") from e

    return render(
        INIT_WRAPPER_TEMPLATE,
        {
            "CRAN_MIRROR": r_string(cran_mirror),
            "BUILD_DIR": r_string(build_dir),
            "SCRIPT_NAME": script.name,
            "SCRIPT": content.rstrip("\n"),
            "SENTINEL": r_string(sentinel),
        },
    )


def sentinel_path(config: BuildConfig) -> pathlib.Path:
    """Host path of the completion sentinel.

    :param config: Build config.
    :returns: Sentinel path inside the sandbox root.
    """

    return config.sandbox_root / SENTINEL_RELPATH


def run_init_script(
    *,
    config: BuildConfig,
    sandbox: Sandbox,
    script: pathlib.Path,
    logger: logging.Logger,
) -> StepResult:
    """Run an init script inside the sandbox and check its sentinel.

    :param config: Build config.
    :param sandbox: Sandbox to run R in.
    :param script: The app's init script.
    :param logger: Build logger.
    :returns: Step result; failed when the sentinel is absent.
    """

    sentinel: pathlib.Path = sentinel_path(config)
    sentinel.unlink(missing_ok=True)
    sentinel.parent.mkdir(parents=True, exist_ok=True)

    wrapper: pathlib.Path = config.workspace / WRAPPER_NAME
    wrapper.write_text(
        render_init_wrapper(
            script=script,
            build_dir=str(config.workspace),
            cran_mirror=config.cran_mirror,
            sentinel=f"/{SENTINEL_RELPATH}",
        ),
        encoding="utf-8",
    )
    logger.info(f"rpack: executing {script.name}")

    deploy_dir: str = str(config.deploy_dir)
    try:
        result: CommandResult = sandbox.run(
            [*R_SCRIPT_ARGS, f"{deploy_dir}/{WRAPPER_NAME}"],
            cwd=deploy_dir,
        )
    finally:
        wrapper.unlink(missing_ok=True)

    if len(result.output) > 0:
        logger.info(indent(result.output))

    if sentinel.is_file() is False:
        logger.error(f"rpack: {script.name} failed; R packages were not installed")
        return StepResult.failure(
            STEP_NAME,
            f"{script.name} did not complete (exit={result.returncode})",
            error=InitFailedError,
        )

    logger.info(f"rpack: {script.name} completed")
    return StepResult.success(STEP_NAME)
