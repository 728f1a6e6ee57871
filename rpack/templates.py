"""Text templates written into the workspace.

Templates use ``__RPACK_*__`` markers that are replaced verbatim.
"""

import re
import textwrap

from rpack.steps import BuildError


_MARKER_RE: re.Pattern[str] = re.compile(r"__RPACK_([A-Z_]+?)__")


def render(template: str, values: dict[str, str]) -> str:
    """Replace ``__RPACK_<KEY>__`` markers in a template.

    Markers are replaced in a single pass, so inserted values are never
    rendered again.

    :param template: Template text.
    :param values: Replacement values keyed by marker name, e.g. ``BUILD_DIR``.
    :returns: Rendered text.
    :raises BuildError: If the template has a marker with no value.
    """

    def substitute(m: re.Match[str]) -> str:
        key: str = m.group(1)
        if key not in values:
            raise BuildError(f"Internal error: template marker {m.group(0)} has no value.")
        return values[key]

    return _MARKER_RE.sub(substitute, template)


def r_string(value: str) -> str:
    """Escape a value for use inside a double-quoted R string literal.

    :param value: Raw value.
    :returns: Escaped value, without the surrounding quotes.
    """

    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


INIT_WRAPPER_TEMPLATE: str = textwrap.dedent(
    r'''
    # This file was generated by rpack. It runs the app's init script once at
    # build time and is removed afterwards.

    local({
      r <- getOption("repos")
      r["CRAN"] <- "__RPACK_CRAN_MIRROR__"
      options(repos = r)
    })
    Sys.setenv(BUILD_DIR = "__RPACK_BUILD_DIR__")

    # ---- __RPACK_SCRIPT_NAME__ ----
    __RPACK_SCRIPT__
    # ---- end of __RPACK_SCRIPT_NAME__ ----

    invisible(file.create("__RPACK_SENTINEL__"))
    '''
).lstrip()


ENTRY_WRAPPER_TEMPLATE: str = textwrap.dedent(
    r'''
    #!/usr/bin/env bash
    # This file was generated by rpack. It runs __RPACK_ENTRY__ inside the vendored sandbox.
    set -e
    exec fakechroot fakeroot chroot "__RPACK_SANDBOX_ROOT__" \
      /bin/sh -c 'cd "$0" && exec "$@"' "__RPACK_DEPLOY_DIR__" __RPACK_ENTRY__ "$@"
    '''
).lstrip()


PROFILE_HOOK_TEMPLATE: str = textwrap.dedent(
    r'''
    # This file was generated by rpack. Sourced at dyno start.
    export PATH="__RPACK_DEPLOY_DIR__/bin:$PATH"
    export R_HOME="__RPACK_SANDBOX_ROOT__/usr/lib/R"
    export R_VERSION="__RPACK_R_VERSION__"
    export CRAN_MIRROR="${CRAN_MIRROR:-__RPACK_CRAN_MIRROR__}"
    export FAKECHROOT_EXCLUDE_PATH="${FAKECHROOT_EXCLUDE_PATH:-/dev:/proc:/sys}"
    '''
).lstrip()
