"""Command line interface for rpack."""

import argparse
import logging
import os
import pathlib
import sys
import textwrap

from rpack.builder import compile_app
from rpack.config import (
    DEFAULT_ENV_ALLOW,
    DEFAULT_DEPLOY_DIR,
    DEFAULT_ENV_DENY,
    BuildConfig,
    filter_env,
    read_env_dir,
    resolve_build_config,
)
from rpack.deps import MANIFEST_NAME
from rpack.init_runner import INIT_SCRIPT_NAMES, RUN_SCRIPT_NAME
from rpack.steps import BuildError


ERROR_PREFIX: str = " !     "


class _BuildLogFormatter(logging.Formatter):
    """Build log formatter: bare messages, errors marked on every line.

    :param error_prefix: Prefix for each line of ERROR and CRITICAL records.
    """

    def __init__(self, error_prefix: str = ERROR_PREFIX) -> None:
        super().__init__("%(message)s")
        self.error_prefix: str = error_prefix

    def format(self, record: logging.LogRecord) -> str:
        """Format a record, prefixing error lines.

        :param record: Log record.
        :returns: Formatted text.
        """

        message: str = super().format(record)
        if record.levelno < logging.ERROR:
            return message
        return textwrap.indent(message, self.error_prefix, lambda line: True)


def _log_level(*, verbose: int, quiet: int) -> int:
    """Map ``-v``/``-q`` counts to a log level; ``-q`` wins over ``-v``.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Logging level.
    """

    if quiet >= 2:
        return logging.ERROR
    if quiet == 1:
        return logging.WARNING
    return logging.DEBUG if verbose >= 1 else logging.INFO


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Send the rpack logger to stderr in build log format.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setFormatter(_BuildLogFormatter())

    logger: logging.Logger = logging.getLogger("rpack")
    logger.setLevel(_log_level(verbose=verbose, quiet=quiet))
    logger.propagate = False
    logger.handlers = [handler]
    return logger


def _build_env(env_dir: pathlib.Path | None) -> dict[str, str]:
    """Merge the process environment with the filtered env directory.

    :param env_dir: Optional env directory.
    :returns: Effective environment.
    """

    env: dict[str, str] = dict(os.environ)
    allow: str = env.get("RPACK_ENV_ALLOW", DEFAULT_ENV_ALLOW)
    deny: str = env.get("RPACK_ENV_DENY", DEFAULT_ENV_DENY)
    env.update(filter_env(read_env_dir(env_dir), allow, deny))
    return env


def _detect(build_dir: pathlib.Path) -> bool:
    """Whether a workspace looks like an R app.

    :param build_dir: Build workspace.
    :returns: True if an init script, the run script or the manifest is present.
    """

    names: tuple[str, ...] = (*INIT_SCRIPT_NAMES, RUN_SCRIPT_NAME, MANIFEST_NAME)
    return any((build_dir / name).is_file() for name in names)


def main(argv: list[str] | None = None) -> int:
    """Run the rpack CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="rpack",
        description="Vendor a sandboxed R runtime into an app at build time.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_compile = subparsers.add_parser(
        "compile",
        help="Build the app directory.",
    )
    p_compile.add_argument(
        "build_dir",
        type=pathlib.Path,
        help="App directory being built.",
    )
    p_compile.add_argument(
        "cache_dir",
        type=pathlib.Path,
        nargs="?",
        default=None,
        help="Build cache directory kept between builds.",
    )
    p_compile.add_argument(
        "env_dir",
        type=pathlib.Path,
        nargs="?",
        default=None,
        help="Directory of app config vars, one file per variable.",
    )
    p_compile.add_argument(
        "--export-file",
        type=pathlib.Path,
        default=pathlib.Path("export"),
        help="Where to write variables for later build stages (default: ./export).",
    )
    p_compile.add_argument(
        "--deploy-dir",
        type=pathlib.Path,
        default=DEFAULT_DEPLOY_DIR,
        help="Path the app is mounted at when deployed.",
    )
    p_compile.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging.",
    )
    p_compile.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass twice to only show errors.",
    )

    p_detect = subparsers.add_parser(
        "detect",
        help="Exit 0 if the app directory looks like an R app.",
    )
    p_detect.add_argument(
        "build_dir",
        type=pathlib.Path,
        help="App directory to inspect.",
    )

    ns = parser.parse_args(argv)
    if ns.command == "detect":
        if _detect(ns.build_dir) is True:
            print("R")
            return 0
        return 1

    if ns.command == "compile":
        logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)
        env: dict[str, str] = _build_env(ns.env_dir)
        try:
            config: BuildConfig = resolve_build_config(
                workspace=ns.build_dir,
                env=env,
                cache_dir=ns.cache_dir,
                deploy_dir=ns.deploy_dir,
            )
            compile_app(
                config=config,
                env=env,
                logger=logger,
                export_path=ns.export_file,
            )
        except BuildError as e:
            logger.error(f"rpack: {e}")
            return 1
        return 0

    raise AssertionError(f"Unhandled command: {ns.command}")

