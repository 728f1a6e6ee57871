"""rpack.

A build-time provisioning tool that vendors a sandboxed R runtime into a
deployable app directory and makes the sandbox relocatable between the build
workspace and the deployment path.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
