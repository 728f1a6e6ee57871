"""Build steps and the fail-fast supervisor.

Every phase of a build is a :class:`Step`. A step returns a
:class:`StepResult`; the supervisor runs steps strictly in order and stops at
the first failed result. Conditions that cannot be expressed as a result (bad
configuration, network errors) are raised as :class:`BuildError` directly.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
import logging
import textwrap
import time
from typing import Any


class BuildError(RuntimeError):
    """Raised when a build step fails."""


class StackMismatchError(BuildError):
    """Raised when the build runs on an unsupported stack."""


class InitFailedError(BuildError):
    """Raised when the init script did not leave its completion sentinel."""


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of one external command.

    :ivar argv: Command line as executed.
    :ivar returncode: Process exit status.
    :ivar output: Combined stdout/stderr text.
    """

    argv: tuple[str, ...]
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        """Whether the command exited with status 0."""

        return self.returncode == 0


@dataclass(frozen=True, slots=True)
class StepResult:
    """Outcome of one build step.

    :ivar name: Step name.
    :ivar ok: Whether the step succeeded.
    :ivar diagnostics: Output to surface in the build log on failure.
    :ivar error: Exception type raised by the supervisor on failure.
    """

    name: str
    ok: bool
    diagnostics: str = ""
    error: type[BuildError] = BuildError

    @classmethod
    def success(cls, name: str) -> "StepResult":
        """Build a successful result.

        :param name: Step name.
        :returns: Step result.
        """

        return cls(name=name, ok=True)

    @classmethod
    def failure(cls, name: str, diagnostics: str, error: type[BuildError] = BuildError) -> "StepResult":
        """Build a failed result.

        :param name: Step name.
        :param diagnostics: Output to surface in the build log.
        :param error: Exception type the supervisor raises.
        :returns: Step result.
        """

        return cls(name=name, ok=False, diagnostics=diagnostics, error=error)

    @classmethod
    def from_command(cls, name: str, result: CommandResult) -> "StepResult":
        """Turn a command result into a step result.

        A non-zero exit becomes a failure carrying the command line and its output.

        :param name: Step name.
        :param result: Command result.
        :returns: Step result.
        """

        if result.ok is True:
            return cls.success(name)
        return cls.failure(
            name,
            f"command failed (exit={result.returncode}): {' '.join(result.argv)}\n{result.output}",
        )


@dataclass(frozen=True, slots=True)
class Step:
    """A named pipeline step.

    :ivar name: Human-readable step name used in the build log.
    :ivar action: Callable receiving the build context.
    """

    name: str
    action: Callable[[Any], StepResult]


def indent(text: str, prefix: str = "       ") -> str:
    """Indent command output for the build log.

    :param text: Raw output.
    :param prefix: Indentation prefix.
    :returns: Indented text without a trailing newline.
    """

    return textwrap.indent(text.rstrip("\n"), prefix, lambda line: True)


def run_pipeline(steps: Sequence[Step], ctx: Any, logger: logging.Logger) -> list[StepResult]:
    """Run build steps in order, halting on the first failure.

    :param steps: Steps to run.
    :param ctx: Build context handed to every step.
    :param logger: Build logger.
    :returns: Results of all steps (all successful).
    :raises BuildError: On the first failed step.
    """

    results: list[StepResult] = []
    for step in steps:
        logger.info(f"rpack: {step.name}")
        t0: float = time.perf_counter()
        result: StepResult = step.action(ctx)
        t1: float = time.perf_counter()
        results.append(result)

        if result.ok is False:
            if len(result.diagnostics) > 0:
                logger.error(indent(result.diagnostics))
            raise result.error(f"{step.name} failed")

        if logger.isEnabledFor(logging.DEBUG) is True:
            logger.debug(f"rpack: {step.name} done in {t1 - t0:.2f}s")
    return results
