"""
Error classes for stackctl.

These error types classify failures at the engine boundaries:
- ManifestError: The stack cannot be understood (bad YAML, unsatisfiable requires)
- ParameterResolutionError: A parameter value cannot be determined
- ExecutionError: A component verb failed or could not be started
- StateIOError: The state journal cannot be read or written
- SyncError: The control plane rejected a patch
- InterruptedRun: A signal stopped the run between two components

Error handling contract:
- Errors are raised where the condition is detected and propagate upwards
- Business logic never exits the process
- The CLI dispatcher maps each error class to a process exit code
"""

from typing import Optional, Sequence


class StackError(Exception):
    """Base exception for stackctl."""

    exit_code = 1


class ConfigError(StackError):
    """Configuration validation error."""

    exit_code = 2


class ManifestError(StackError):
    """
    Manifest error - the stack cannot be executed as declared.

    Examples:
    - Malformed YAML in hub.yaml or a parameters file
    - Duplicate component names
    - A component requires a capability nothing provides
    - A dependency cycle between components

    Always fatal: raised before any component runs.
    """

    exit_code = 2


class ParameterResolutionError(StackError):
    """
    Parameter resolution error - a value cannot be determined.

    Examples:
    - A required parameter has neither value nor default
    - An expression refers to an unknown name
    - An expression fails to evaluate
    - Substitution recursion does not terminate

    During elaboration this is fatal. During execution it aborts only the
    component being prepared; with --force the component is skipped.
    """

    exit_code = 3

    def __init__(self, message: str, problems: Optional[Sequence[str]] = None):
        self.problems = list(problems or [])
        if self.problems:
            message = message + ":\n\t" + "\n\t".join(self.problems)
        super().__init__(message)


class ExecutionError(StackError):
    """Raised when a component verb fails."""

    exit_code = 1

    def __init__(self, component: str, message: str, cause: Optional[Exception] = None):
        self.component = component
        self.cause = cause
        super().__init__(f"Component '{component}' failed: {message}")


class StateIOError(StackError):
    """
    State journal I/O error.

    Tolerated on read (the run starts fresh), fatal on write: a checkpoint
    that cannot be persisted stops the run.
    """

    exit_code = 4


class SyncError(StackError):
    """Raised when the control plane rejects a state patch."""

    exit_code = 5


class InterruptedRun(StackError):
    """
    The run was stopped by SIGINT or SIGTERM between two components.

    The component running when the signal arrived finished and was
    recorded; a later run resumes at the first incomplete component.
    """

    exit_code = 130
