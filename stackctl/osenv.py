"""
Child process environment.

The OS environment passed to component verbs is filtered per
OsEnvironmentMode, then component parameters and engine variables are
layered on top.
"""

import fnmatch
import logging
import os
from typing import Mapping, Optional, Sequence

from stackctl.schemas import OsEnvironmentMode

logger = logging.getLogger("stackctl")

WELL_KNOWN_OS_ENV = (
    "AWS_PROFILE", "AWS_DEFAULT_REGION",
    "AZURE_*", "ARM_*",
    "GOOGLE_APPLICATION_CREDENTIALS",
    "KUBECONFIG",
    "HUB", "HUB_*",
    "DOCKER_*", "VIRTUAL_ENV",
    "HOME", "LANG", "LC_*", "LOGNAME", "PATH", "LD_LIBRARY_PATH",
    "SHELL", "SSH_AUTH_SOCK", "TERM", "TMPDIR", "USER",
)

IAC_INJECTED_ENV = ("TF_VAR_*",)


def _matches(name: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)


def filter_os_environment(
    mode: OsEnvironmentMode,
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """
    Select the OS variables a component process inherits.

    everything: all variables
    no-tfvars: all but TF_VAR_* variables
    strict: only the well-known toolchain variables (PATH, HOME, cloud credentials, ...)
    """
    environ = dict(os.environ if environ is None else environ)
    mode = OsEnvironmentMode(mode)
    if mode == OsEnvironmentMode.EVERYTHING:
        return environ
    if mode == OsEnvironmentMode.NO_TFVARS:
        return {k: v for k, v in environ.items() if not _matches(k, IAC_INJECTED_ENV)}
    return {k: v for k, v in environ.items() if _matches(k, WELL_KNOWN_OS_ENV)}


def build_environment(
    mode: OsEnvironmentMode,
    parameters: Mapping[str, str],
    engine: Mapping[str, str],
    environ: Optional[Mapping[str, str]] = None,
) -> dict[str, str]:
    """
    Assemble a child environment.

    Args:
        mode: OS environment filtering mode
        parameters: Parameter values keyed by their `env:` variable name
        engine: HUB_* variables set by the executor
        environ: OS environment (defaults to os.environ)

    Returns:
        Filtered OS variables overlaid with parameters, then engine variables
    """
    env = filter_os_environment(mode, environ)
    for name, value in parameters.items():
        if name in env and env[name] != value:
            logger.debug(f"Parameter overrides OS environment variable {name}")
        env[name] = value
    env.update(engine)
    return dict(sorted(env.items()))
