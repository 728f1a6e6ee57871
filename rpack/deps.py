"""System package installation inside the sandbox (``Aptfile``)."""

import logging
import pathlib

from rpack.sandbox import Sandbox
from rpack.steps import BuildError, CommandResult, StepResult, indent


MANIFEST_NAME: str = "Aptfile"
STEP_NAME: str = "installing system packages"


def read_manifest(path: pathlib.Path) -> list[str]:
    """Read package names from a dependency manifest.

    One name per line; blank lines are skipped and anything after the first
    whitespace-separated token is ignored. Order and duplicates are kept.

    :param path: Manifest file.
    :returns: Package names.
    :raises BuildError: If the manifest cannot be read.
    """

    try:
        text: str = path.read_text(encoding="utf-8")
    except OSError as e:
        raise BuildError(f"Failed to read {path}: {e}") from e

    packages: list[str] = []
    for line in text.splitlines():
        tokens: list[str] = line.split()
        if len(tokens) == 0:
            continue
        packages.append(tokens[0])
    return packages


def install_system_packages(sandbox: Sandbox, packages: list[str], logger: logging.Logger) -> StepResult:
    """Install system packages with apt-get inside the sandbox.

    Index refresh and install must succeed; cache cleanup is best effort.

    :param sandbox: Sandbox to run apt-get in.
    :param packages: Package names, installed in a single apt-get call.
    :param logger: Build logger.
    :returns: Step result.
    """

    if len(packages) == 0:
        logger.info("rpack: Aptfile lists no packages")
        return StepResult.success(STEP_NAME)

    logger.info(f"rpack: apt packages: {' '.join(packages)}")

    refresh: CommandResult = sandbox.run(["apt-get", "-q", "update"])
    if refresh.ok is False:
        return StepResult.from_command(STEP_NAME, refresh)

    install: CommandResult = sandbox.run(
        ["apt-get", "-q", "-y", "--no-install-recommends", "install", *packages]
    )
    if logger.isEnabledFor(logging.DEBUG) is True and len(install.output) > 0:
        logger.debug(indent(install.output))
    if install.ok is False:
        return StepResult.from_command(STEP_NAME, install)

    sandbox.run(["apt-get", "clean"])
    sandbox.run(["/bin/sh", "-c", "rm -rf /var/lib/apt/lists/*"])
    return StepResult.success(STEP_NAME)


def install_from_manifest(sandbox: Sandbox, workspace: pathlib.Path, logger: logging.Logger) -> StepResult:
    """Install the packages listed in the workspace's ``Aptfile``.

    :param sandbox: Sandbox to run apt-get in.
    :param workspace: Build workspace holding the manifest.
    :param logger: Build logger.
    :returns: Step result.
    """

    return install_system_packages(sandbox, read_manifest(workspace / MANIFEST_NAME), logger)
