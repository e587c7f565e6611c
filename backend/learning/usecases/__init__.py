"""Use case layer for the Learning context.

Re-export common use cases for convenient imports in tests.
"""

from .grading import GradingGate, GradingRepoProtocol
from .submissions import (
    LearningSubmissionRepoProtocol,
    SubmissionContext,
    SubmissionWorkflow,
    SubmitInput,
    SubmitResult,
)

__all__ = [
    "GradingGate",
    "GradingRepoProtocol",
    "LearningSubmissionRepoProtocol",
    "SubmissionContext",
    "SubmissionWorkflow",
    "SubmitInput",
    "SubmitResult",
]
