"""
stackctl - Stack lifecycle execution engine

Composes infrastructure stacks out of components, resolves their
dependency order and parameters, and drives deploy/undeploy/backup
verbs as a checkpointed, resumable sequence recorded in a state file.
"""

__version__ = "0.1.0"
__author__ = "Platform Team"


__all__ = ["StackctlConfig", "load_config", "get_stackctl_home"]

from .config import StackctlConfig, load_config, get_stackctl_home
