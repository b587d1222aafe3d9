"""
Job Schemas
Pydantic models for job API requests, responses and execution payloads.
"""

from datetime import datetime
from typing import Annotated, Optional, List, Literal, Union
from enum import Enum
from pydantic import BaseModel, Field, TypeAdapter, field_validator, model_validator

from stylize.models.job import JobMode


class AspectRatio(str, Enum):
    SQUARE = "1:1"
    PORTRAIT = "9:16"


class Quality(str, Enum):
    STANDARD = "standard"
    HIGH = "high"


class CreateJobRequest(BaseModel):
    """Schema for a new generation request."""
    reference_image_ids: List[str] = Field(..., min_length=1)
    mode: JobMode
    preset_id: Optional[str] = None
    prompt: Optional[str] = Field(None, max_length=2000)
    negative_prompt: Optional[str] = Field(None, max_length=2000)
    seed_post_id: Optional[str] = None
    aspect_ratio: AspectRatio = AspectRatio.SQUARE
    quality: Quality = Quality.STANDARD

    @field_validator("reference_image_ids")
    @classmethod
    def dedupe_ids(cls, v):
        return list(dict.fromkeys(v))

    @model_validator(mode="after")
    def check_mode_inputs(self):
        if self.mode == JobMode.PRESET and not self.preset_id:
            raise ValueError("preset_id is required for preset mode")
        if self.mode == JobMode.FREEFORM_PROMPT and not (self.prompt and self.prompt.strip()):
            raise ValueError("prompt is required for freeform-prompt mode")
        if self.mode == JobMode.STYLE_TRANSFER_FROM_POST and not self.seed_post_id:
            raise ValueError("seed_post_id is required for style-transfer-from-post mode")
        return self


class RefineJobRequest(BaseModel):
    instruction: str = Field(..., min_length=1, max_length=500)


class SetAvatarRequest(BaseModel):
    version_id: str


class CreateJobResponse(BaseModel):
    job_id: str
    status: str
    estimated_ms: int


class RefineJobResponse(BaseModel):
    job_id: str
    status: str
    requested_version_id: str


class VersionView(BaseModel):
    version_id: str
    base_version_id: Optional[str] = None
    instruction: Optional[str] = None
    image_url: str
    thumb_url: str
    width: Optional[int] = None
    height: Optional[int] = None
    has_watermark: bool = False
    created_at: datetime


class ErrorView(BaseModel):
    code: str
    message: str
    retryable: bool


class TimingView(BaseModel):
    estimated_total_ms: int
    elapsed_ms: int
    remaining_ms: int


class JobStatusView(BaseModel):
    """Schema for the polled job status."""
    job_id: str
    status: str
    mode: str
    visibility: str
    versions: List[VersionView] = []
    error: Optional[ErrorView] = None
    refine_error: Optional[ErrorView] = None
    timing: TimingView
    created_at: datetime
    updated_at: datetime


class JobSummary(BaseModel):
    job_id: str
    status: str
    mode: str
    version_count: int
    created_at: datetime
    updated_at: datetime


class PublishResponse(BaseModel):
    job_id: str
    version_id: str
    public_url: str


class AvatarResponse(BaseModel):
    job_id: str
    version_id: str
    image_url: str
    thumb_url: str


class DeleteResponse(BaseModel):
    job_id: str
    deleted: bool
    archived_path: Optional[str] = None


# --- Execution payloads ---


class InitialStep(BaseModel):
    """Produce the first version of a job."""
    type: Literal["initial"] = "initial"
    job_id: str
    requested_version_id: str = "v1"


class RefineStep(BaseModel):
    """Produce a new version from an existing base version."""
    type: Literal["refine"] = "refine"
    job_id: str
    requested_version_id: str
    base_version_id: str
    instruction: str


ExecutionPayload = Annotated[Union[InitialStep, RefineStep], Field(discriminator="type")]

_payload_adapter = TypeAdapter(ExecutionPayload)


def parse_payload(data) -> Union[InitialStep, RefineStep]:
    """Validate a raw dict (queue message, HTTP body) into a payload."""
    return _payload_adapter.validate_python(data)


class StepResult(BaseModel):
    """Outcome of one execution step."""
    job_id: str
    version_id: str
    outcome: Literal["succeeded", "noop", "failed", "retry", "deferred", "aborted"]
    code: Optional[str] = None
    retryable: bool = False

    @property
    def should_redeliver(self) -> bool:
        return self.outcome == "retry"
