"""
Request schema - the parameters of one lifecycle invocation.

A Request is constructed once per invocation (by the CLI or a caller) and
is read-only thereafter.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class OsEnvironmentMode(str, Enum):
    """How much of the OS environment a component process inherits."""
    EVERYTHING = "everything"
    NO_TFVARS = "no-tfvars"
    STRICT = "strict"


@dataclass(frozen=True)
class Request:
    """
    One execution of a lifecycle verb over a stack.

    Attributes:
        verb: Lifecycle verb (deploy, undeploy, backup, ...)
        manifest_path: Path to the elaborate manifest
        state_paths: State file destinations (first one is read first)
        components: Restrict execution to these components
        offset: Start at this component
        limit: Stop after this component (inclusive)
        guess_component: Start at the first component not yet done per prior state
        dry_run: Run the `<verb>-test` implementation and keep state authoritative
        force: Continue past failures, marking the rest skipped
        os_environment_mode: Child environment filtering mode
        environment_overrides: Explicit `-e` overrides, applied to fromEnv parameters
        relay_output: Stream child output to the console while capturing it
    """
    verb: str
    manifest_path: str
    state_paths: tuple[str, ...] = field(default_factory=tuple)
    components: tuple[str, ...] = field(default_factory=tuple)
    offset: Optional[str] = None
    limit: Optional[str] = None
    guess_component: bool = False
    dry_run: bool = False
    force: bool = False
    os_environment_mode: OsEnvironmentMode = OsEnvironmentMode.EVERYTHING
    environment_overrides: dict[str, str] = field(default_factory=dict)
    relay_output: bool = True

    def __post_init__(self):
        if not self.verb:
            raise ValueError("verb is required")
        if self.components and (self.offset or self.limit):
            raise ValueError("components filter cannot be combined with offset or limit")

    @property
    def is_undeploy(self) -> bool:
        return self.verb == "undeploy"

    def options(self) -> dict[str, object]:
        """Options recorded on the lifecycle operation."""
        result: dict[str, object] = {}
        if self.dry_run:
            result["dryRun"] = True
        if self.force:
            result["force"] = True
        if self.components:
            result["components"] = list(self.components)
        if self.offset:
            result["offset"] = self.offset
        if self.limit:
            result["limit"] = self.limit
        if self.guess_component:
            result["guessComponent"] = True
        return result
