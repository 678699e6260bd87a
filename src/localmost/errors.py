# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class LocalmostError(Exception):
    """Base class for every error the engine raises on purpose."""


class WorkflowParseError(LocalmostError):
    """The workflow document cannot be turned into an executable job graph."""


class CycleError(WorkflowParseError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Circular dependency detected involving job: {job_id}")


class UnknownDependencyError(WorkflowParseError):
    def __init__(self, job_id: str, dependency: str):
        self.job_id = job_id
        self.dependency = dependency
        super().__init__(f'Job "{job_id}" depends on unknown job: {dependency}')


class MissingInputError(WorkflowParseError):
    def __init__(self, name: str, workflow: str | None = None):
        self.name = name
        self.workflow = workflow
        where = f" of reusable workflow {workflow}" if workflow else ""
        super().__init__(f'Required input "{name}"{where} was not provided and has no default')


class ValidationError(LocalmostError, TypeError):
    """A loaded document has a field of the wrong shape. The message carries the field path."""


@dataclass(eq=False)
class PolicyError(LocalmostError):
    """
    Invalid .localmostrc content.

    `errors` holds every problem found, each qualified with its field path,
    so the CLI can print them all at once.
    """
    message: str
    errors: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        return "\n".join([self.message, *(f"  {e}" for e in self.errors)])


class ActionError(LocalmostError):
    """An action reference could not be resolved, fetched or loaded."""


class MissingSecretError(LocalmostError):
    def __init__(self, names: list[str]):
        self.names = list(names)
        super().__init__(
            "Missing secrets: " + ", ".join(self.names)
            + ". Export them in the environment or use --secrets stub."
        )
