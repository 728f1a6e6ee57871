"""Build configuration resolution.

Configuration comes from two places:

- The process environment (``STACK`` and the ``RPACK_*`` knobs).
- The host's env directory: one file per variable, where the file name is the
  key and the file content is the value. These are imported through an
  allow/deny pattern pair so build-breaking variables never leak in.
"""

from collections.abc import Mapping
from dataclasses import dataclass
import pathlib
import re

from rpack.steps import BuildError, StackMismatchError


SUPPORTED_STACK: str = "heroku-16"
DEFAULT_R_VERSION: str = "3.6.3"
DEFAULT_BUCKET: str = "heroku-buildpack-r"
DEFAULT_BUILD_TAG: str = "latest"
DEFAULT_CRAN_MIRROR: str = "https://cloud.r-project.org"
DEFAULT_DEPLOY_DIR: pathlib.Path = pathlib.Path("/app")

VERSION_FILE: str = ".r-version"
SANDBOX_DIRNAME: str = ".root"

DEFAULT_ENV_ALLOW: str = ""
DEFAULT_ENV_DENY: str = (
    r"^(PATH|GIT_DIR|CPATH|CPPATH|LD_PRELOAD|LIBRARY_PATH|LD_LIBRARY_PATH|JAVA_OPTS|JAVA_TOOL_OPTIONS)$"
)


@dataclass(frozen=True, slots=True)
class BuildConfig:
    """Resolved build configuration.

    :ivar workspace: Build workspace (``BUILD_DIR``).
    :ivar stack: Platform stack tag of the running build.
    :ivar r_version: R version to vendor.
    :ivar bucket: Distribution bucket name.
    :ivar binaries_url: Base URL of the binary distribution.
    :ivar build_tag: Build identifier tag inside the bucket.
    :ivar cran_mirror: CRAN mirror used by the init script.
    :ivar deploy_dir: Deployment mount point of the app.
    :ivar cache_dir: Optional host build cache directory.
    :ivar supported_stack: The only stack tag this build can run on.
    """

    workspace: pathlib.Path
    stack: str
    r_version: str
    bucket: str
    binaries_url: str
    build_tag: str
    cran_mirror: str
    deploy_dir: pathlib.Path = DEFAULT_DEPLOY_DIR
    cache_dir: pathlib.Path | None = None
    supported_stack: str = SUPPORTED_STACK

    @property
    def sandbox_root(self) -> pathlib.Path:
        """Sandbox root inside the workspace."""

        return self.workspace / SANDBOX_DIRNAME

    @property
    def deploy_sandbox_root(self) -> pathlib.Path:
        """Sandbox root at the deployment path."""

        return self.deploy_dir / SANDBOX_DIRNAME


def filter_env(env: Mapping[str, str], allow: str, deny: str) -> dict[str, str]:
    """Filter a variable mapping through allow/deny patterns.

    An empty pattern for ``allow`` matches every key; an empty ``deny`` pattern
    matches none.

    :param env: Candidate variables.
    :param allow: Regex a key must match (``re.search`` semantics).
    :param deny: Regex a key must not match.
    :returns: Filtered copy of ``env``.
    """

    allow_re: re.Pattern[str] = re.compile(allow)
    deny_re: re.Pattern[str] | None = re.compile(deny) if len(deny) > 0 else None

    out: dict[str, str] = {}
    for key, value in env.items():
        if allow_re.search(key) is None:
            continue
        if deny_re is not None and deny_re.search(key) is not None:
            continue
        out[key] = value
    return out


def read_env_dir(env_dir: pathlib.Path | None) -> dict[str, str]:
    """Read an env directory into a mapping.

    :param env_dir: Directory with one file per variable, or ``None``.
    :returns: Variables keyed by file name.
    """

    if env_dir is None or env_dir.is_dir() is False:
        return {}

    out: dict[str, str] = {}
    for p in sorted(env_dir.iterdir()):
        if p.is_file() is False:
            continue
        # Trailing newlines are not part of the value, as with $(cat file).
        out[p.name] = p.read_text(encoding="utf-8").rstrip("\n")
    return out


def resolve_version(workspace: pathlib.Path, default: str) -> str:
    """Resolve the R version, honoring the workspace override file.

    :param workspace: Build workspace.
    :param default: Version used without an override.
    :returns: Version string.
    """

    version_file: pathlib.Path = workspace / VERSION_FILE
    if version_file.is_file() is False:
        return default

    for line in version_file.read_text(encoding="utf-8").splitlines():
        v: str = line.strip()
        if len(v) > 0:
            return v
    return default


def resolve_build_config(
    *,
    workspace: pathlib.Path,
    env: Mapping[str, str],
    cache_dir: pathlib.Path | None = None,
    deploy_dir: pathlib.Path = DEFAULT_DEPLOY_DIR,
) -> BuildConfig:
    """Resolve environment knobs into a :class:`BuildConfig`.

    :param workspace: Build workspace.
    :param env: Effective environment (process env plus imported env dir).
    :param cache_dir: Optional build cache directory.
    :param deploy_dir: Deployment mount point.
    :returns: Resolved config.
    :raises BuildError: If the workspace does not exist.
    """

    if workspace.is_dir() is False:
        raise BuildError(f"Build directory does not exist: {workspace}")

    bucket: str = env.get("RPACK_BUCKET", DEFAULT_BUCKET)
    binaries_url: str = env.get("RPACK_BINARIES_URL", f"https://{bucket}.s3.amazonaws.com")
    default_version: str = env.get("RPACK_R_VERSION", DEFAULT_R_VERSION)

    return BuildConfig(
        workspace=workspace.resolve(),
        stack=env.get("STACK", ""),
        r_version=resolve_version(workspace, default_version),
        bucket=bucket,
        binaries_url=binaries_url.rstrip("/"),
        build_tag=env.get("RPACK_BUILD_TAG", DEFAULT_BUILD_TAG),
        cran_mirror=env.get("CRAN_MIRROR", DEFAULT_CRAN_MIRROR),
        deploy_dir=deploy_dir,
        cache_dir=cache_dir,
    )


def check_stack(config: BuildConfig) -> None:
    """Refuse to build on anything but the supported stack.

    :param config: Build config.
    :raises StackMismatchError: If the stack tag does not match.
    """

    if config.stack != config.supported_stack:
        stack: str = config.stack if len(config.stack) > 0 else "(unset)"
        raise StackMismatchError(
            f"Unsupported stack {stack!r}; this buildpack only supports {config.supported_stack!r}. "
            "Change the app's stack and redeploy."
        )
