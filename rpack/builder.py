"""Build orchestration.

A build is a linear pipeline over one workspace:

- Check the stack, then download and extract the runtime archive.
- Relocate the sandbox to the workspace so its tooling works during the build.
- Install ``Aptfile`` packages and run the init script, when present.
- Finalize: relink, prune, relocate back to the deployment path, and install
  the runtime wrappers.

The supervisor stops at the first failed step; there are no retries.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import logging
import pathlib
import time

from rpack.config import BuildConfig, check_stack
from rpack.deps import MANIFEST_NAME, install_from_manifest
from rpack.fetch import fetch_runtime
from rpack.finalize import finalize_app
from rpack.init_runner import RUN_SCRIPT_NAME, find_init_script, run_init_script
from rpack.relocate import link_self, relocate
from rpack.sandbox import Runner, Sandbox
from rpack.steps import Step, StepResult, run_pipeline


@dataclass(slots=True)
class BuildContext:
    """State shared by the steps of one build.

    :ivar config: Resolved build config.
    :ivar sandbox: Sandbox over the workspace's sandbox root.
    :ivar logger: Build logger.
    :ivar export_path: Declarations file for later build stages.
    """

    config: BuildConfig
    sandbox: Sandbox
    logger: logging.Logger
    export_path: pathlib.Path | None = None


def _check_stack(ctx: BuildContext) -> StepResult:
    """Refuse unsupported stacks before anything is downloaded.

    :param ctx: Build context.
    :returns: Step result.
    :raises StackMismatchError: If the stack tag does not match.
    """

    check_stack(ctx.config)
    return StepResult.success("checking stack")


def _fetch(ctx: BuildContext) -> StepResult:
    """Download and extract the runtime archive into the workspace.

    :param ctx: Build context.
    :returns: Step result.
    :raises BuildError: If the download or extraction fails.
    """

    fetch_runtime(ctx.config, ctx.logger)
    return StepResult.success("fetching runtime")


def _relocate_to_workspace(ctx: BuildContext) -> StepResult:
    """Point the sandbox tooling and self link at the workspace.

    :param ctx: Build context.
    :returns: Step result.
    """

    config: BuildConfig = ctx.config
    relocate(config.sandbox_root, config.deploy_sandbox_root, config.sandbox_root, ctx.logger)
    link_self(config.sandbox_root, config.workspace)
    return StepResult.success("relocating sandbox to workspace")


def _install_deps(ctx: BuildContext) -> StepResult:
    """Install the system packages listed in the workspace manifest.

    :param ctx: Build context.
    :returns: Step result.
    """

    return install_from_manifest(ctx.sandbox, ctx.config.workspace, ctx.logger)


def _finalize(ctx: BuildContext) -> StepResult:
    """Prune, relocate back to the deployment path and install runtime files.

    :param ctx: Build context.
    :returns: Step result.
    """

    return finalize_app(
        config=ctx.config,
        sandbox=ctx.sandbox,
        export_path=ctx.export_path,
        logger=ctx.logger,
    )


def plan_steps(config: BuildConfig, logger: logging.Logger) -> list[Step]:
    """Select the pipeline steps for a workspace.

    :param config: Build config.
    :param logger: Build logger.
    :returns: Steps in execution order.
    """

    steps: list[Step] = [
        Step(name="checking stack", action=_check_stack),
        Step(name="fetching runtime", action=_fetch),
        Step(name="relocating sandbox to workspace", action=_relocate_to_workspace),
    ]

    if (config.workspace / MANIFEST_NAME).is_file() is True:
        steps.append(Step(name="installing system packages", action=_install_deps))

    init_script: pathlib.Path | None = find_init_script(config.workspace)
    if init_script is not None:

        def _run_init(ctx: BuildContext) -> StepResult:
            """Run the selected init script."""

            return run_init_script(config=ctx.config, sandbox=ctx.sandbox, script=init_script, logger=ctx.logger)

        steps.append(Step(name="running init script", action=_run_init))
    else:
        logger.info(f"rpack: no init.r/init.R found; {RUN_SCRIPT_NAME} is assumed to run the app directly")

    steps.append(Step(name="finalizing app", action=_finalize))
    return steps


def compile_app(
    *,
    config: BuildConfig,
    env: Mapping[str, str],
    logger: logging.Logger | None = None,
    export_path: pathlib.Path | None = None,
    runner: Runner | None = None,
) -> list[StepResult]:
    """Build the workspace into a deployable app.

    :param config: Resolved build config.
    :param env: Environment for sandboxed commands.
    :param logger: Optional build logger.
    :param export_path: Optional declarations file for later build stages.
    :param runner: Optional process runner for sandboxed commands.
    :returns: Step results.
    :raises BuildError: On the first failed step.
    """

    if logger is None:
        logger = logging.getLogger("rpack")

    t0: float = time.perf_counter()
    logger.info(f"rpack: build_dir={config.workspace}")
    logger.info(f"rpack: stack={config.stack or '(unset)'} r_version={config.r_version}")
    if logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"rpack: bucket={config.bucket} build_tag={config.build_tag} cran_mirror={config.cran_mirror}")

    ctx: BuildContext = BuildContext(
        config=config,
        sandbox=Sandbox(config.sandbox_root, env, runner=runner, logger=logger),
        logger=logger,
        export_path=export_path,
    )
    results: list[StepResult] = run_pipeline(plan_steps(config, logger), ctx, logger)

    t1: float = time.perf_counter()
    logger.info(f"rpack: done in {t1 - t0:.2f}s")
    return results
