from .dag import compute_job_order, dependency_levels
from .errors import (
    CycleError,
    LocalmostError,
    MissingInputError,
    PolicyError,
    UnknownDependencyError,
    WorkflowParseError,
)
from .executor import execute_step, run_steps
from .expressions import evaluate_condition, expand
from .matrix import find_matching_combination, generate_matrix_combinations, parse_matrix_spec
from .model import Job, JobResult, Step, StepResult, Workflow
from .parser import parse_reusable_workflow, parse_workflow, parse_workflow_file
from .policy_cache import PolicyCache
from .runner import RunOptions, run_workflow
from .sandbox import compile_profile

__all__ = [
    "compute_job_order", "dependency_levels",
    "CycleError", "LocalmostError", "MissingInputError", "PolicyError", "UnknownDependencyError",
    "WorkflowParseError",
    "execute_step", "run_steps",
    "evaluate_condition", "expand",
    "find_matching_combination", "generate_matrix_combinations", "parse_matrix_spec",
    "Job", "JobResult", "Step", "StepResult", "Workflow",
    "parse_reusable_workflow", "parse_workflow", "parse_workflow_file",
    "PolicyCache",
    "RunOptions", "run_workflow",
    "compile_profile",
]
