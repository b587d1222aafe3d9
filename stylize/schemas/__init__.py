# API and payload schemas
from stylize.schemas.job import (
    CreateJobRequest,
    RefineJobRequest,
    SetAvatarRequest,
    JobStatusView,
    InitialStep,
    RefineStep,
    ExecutionPayload,
    StepResult,
    parse_payload,
)

__all__ = [
    "CreateJobRequest",
    "RefineJobRequest",
    "SetAvatarRequest",
    "JobStatusView",
    "InitialStep",
    "RefineStep",
    "ExecutionPayload",
    "StepResult",
    "parse_payload",
]
