"""Sandboxed command execution.

Every command that must see the vendored filesystem goes through the same
"enter sandbox, run command, exit" pattern: ``fakechroot fakeroot chroot
<root> ...``. Calls are synchronous and have no timeout.
"""

from collections.abc import Callable, Mapping, Sequence
import logging
import pathlib
import subprocess

from rpack.steps import CommandResult


Runner = Callable[[Sequence[str], Mapping[str, str]], CommandResult]

FAKECHROOT: str = "fakechroot"
FAKEROOT: str = "fakeroot"
CHROOT: str = "chroot"


def run_process(argv: Sequence[str], env: Mapping[str, str]) -> CommandResult:
    """Run a command to completion, capturing combined output.

    :param argv: Command line.
    :param env: Process environment.
    :returns: Command result.
    """

    try:
        proc = subprocess.run(
            list(argv),
            env=dict(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
        )
    except FileNotFoundError as e:
        return CommandResult(argv=tuple(argv), returncode=127, output=f"{argv[0]}: command not found ({e})")
    return CommandResult(argv=tuple(argv), returncode=proc.returncode, output=proc.stdout or "")


class Sandbox:
    """A vendored filesystem root that commands can be run inside.

    :param root: Sandbox root on the host.
    :param env: Environment passed to sandboxed commands.
    :param runner: Process runner; defaults to :func:`run_process`.
    :param logger: Optional logger for debug output.
    """

    def __init__(
        self,
        root: pathlib.Path,
        env: Mapping[str, str],
        runner: Runner | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.root: pathlib.Path = root
        self.env: dict[str, str] = dict(env)
        self.runner: Runner = runner if runner is not None else run_process
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("rpack")

    def command(self, argv: Sequence[str], cwd: str | None = None) -> list[str]:
        """Build the host command line that runs ``argv`` inside the sandbox.

        :param argv: Command to run inside the sandbox.
        :param cwd: Optional working directory inside the sandbox.
        :returns: Host command line.
        """

        cmd: list[str] = [FAKECHROOT, FAKEROOT, CHROOT, str(self.root)]
        if cwd is None:
            return [*cmd, *argv]
        # chroot starts in "/", so change directory in a shell first.
        return [*cmd, "/bin/sh", "-c", 'cd "$0" && exec "$@"', cwd, *argv]

    def run(self, argv: Sequence[str], cwd: str | None = None) -> CommandResult:
        """Run a command inside the sandbox and wait for it.

        :param argv: Command to run inside the sandbox.
        :param cwd: Optional working directory inside the sandbox.
        :returns: Command result (never raises on non-zero exit).
        """

        cmd: list[str] = self.command(argv, cwd=cwd)
        if self.logger.isEnabledFor(logging.DEBUG) is True:
            self.logger.debug(f"rpack: sandbox: {' '.join(argv)}")
        return self.runner(cmd, self.env)
