"""Durable workflow execution."""

from calmirror.workflows.runner import (
    ActivityError,
    NonDeterministicWorkflowError,
    WorkflowContext,
    WorkflowRunner,
)

__all__ = [
    "ActivityError",
    "NonDeterministicWorkflowError",
    "WorkflowContext",
    "WorkflowRunner",
]
