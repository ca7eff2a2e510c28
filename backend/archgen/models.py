import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from sqlalchemy import JSON, DateTime, Text, UniqueConstraint
from sqlmodel import Field, Relationship, SQLModel


def get_datetime_utc() -> datetime:
    return datetime.now(timezone.utc)


class InputKind(str, Enum):
    PROMPT = "PROMPT"
    REPO_URL = "REPO_URL"


class ScaleProfile(str, Enum):
    PROTOTYPE = "PROTOTYPE"
    DAU_1K = "DAU_1K"
    DAU_1M = "DAU_1M"


class DetailLevel(str, Enum):
    OVERVIEW = "OVERVIEW"
    STANDARD = "STANDARD"
    DETAILED = "DETAILED"


class JobKind(str, Enum):
    GENERATE_DESIGN = "GENERATE_DESIGN"
    RENDER_DIAGRAM = "RENDER_DIAGRAM"


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Generic message
class Message(SQLModel):
    message: str


class DesignConstraints(SQLModel):
    must_use: list[str] = Field(default_factory=list)
    avoid: list[str] = Field(default_factory=list)
    preferred_language: str | None = None


# Design requests

class DesignRequestBase(SQLModel):
    title: str = Field(min_length=1, max_length=200)
    input_kind: InputKind
    prompt_text: str | None = Field(default=None, max_length=5000, sa_type=Text)
    repo_url: str | None = Field(default=None, max_length=2048)
    scale_profile: ScaleProfile = ScaleProfile.PROTOTYPE
    detail_level: DetailLevel = DetailLevel.STANDARD


# Properties to receive via API on creation
class DesignRequestCreate(DesignRequestBase):
    project_id: uuid.UUID
    user_id: uuid.UUID
    constraints: DesignConstraints = Field(default_factory=DesignConstraints)
    # Quick-enhancement directives forwarded to the first generation job only.
    enhancements: list[str] = Field(default_factory=list)


# Database model, database table inferred from class name
class DesignRequest(DesignRequestBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    constraints: dict = Field(default_factory=dict, sa_type=JSON)
    project_id: uuid.UUID = Field(index=True)
    user_id: uuid.UUID = Field(index=True)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    design_versions: list["DesignVersion"] = Relationship(
        back_populates="design_request", cascade_delete=True
    )
    diagram_versions: list["DiagramVersion"] = Relationship(
        back_populates="design_request", cascade_delete=True
    )
    jobs: list["Job"] = Relationship(back_populates="design_request", cascade_delete=True)

    @property
    def content(self) -> str | None:
        if self.input_kind == InputKind.PROMPT:
            return self.prompt_text
        return self.repo_url


class DesignRequestPublic(DesignRequestBase):
    id: uuid.UUID
    constraints: dict
    project_id: uuid.UUID
    user_id: uuid.UUID
    created_at: datetime | None = None
    updated_at: datetime | None = None


# Versions

class DesignVersion(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("design_request_id", "version", name="uq_designversion_request_version"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    version: int = Field(ge=1)
    design_data: dict = Field(default_factory=dict, sa_type=JSON)
    # Diagram text produced alongside the design, kept so a retried job can resume after this row.
    diagram_source: str | None = Field(default=None, sa_type=Text)
    # At most one row per job; NULLs do not collide.
    job_id: uuid.UUID | None = Field(default=None, unique=True, index=True)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    design_request_id: uuid.UUID = Field(
        foreign_key="designrequest.id", nullable=False, ondelete="CASCADE", index=True
    )
    design_request: DesignRequest | None = Relationship(back_populates="design_versions")


class DesignVersionPublic(SQLModel):
    id: uuid.UUID
    design_request_id: uuid.UUID
    version: int
    design_data: dict
    created_at: datetime | None = None


class DiagramVersion(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("design_request_id", "version", name="uq_diagramversion_request_version"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    version: int = Field(ge=1)
    mermaid_source: str = Field(sa_type=Text)
    # None means the client renders from mermaid_source.
    svg_content: str | None = Field(default=None, sa_type=Text)
    job_id: uuid.UUID | None = Field(default=None, unique=True, index=True)
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    design_request_id: uuid.UUID = Field(
        foreign_key="designrequest.id", nullable=False, ondelete="CASCADE", index=True
    )
    design_version_id: uuid.UUID | None = Field(
        default=None, foreign_key="designversion.id", nullable=True, ondelete="SET NULL", index=True
    )
    design_request: DesignRequest | None = Relationship(back_populates="diagram_versions")


class DiagramVersionPublic(SQLModel):
    id: uuid.UUID
    design_request_id: uuid.UUID
    design_version_id: uuid.UUID | None = None
    version: int
    mermaid_source: str
    svg_content: str | None = None
    created_at: datetime | None = None


# Jobs

class JobBase(SQLModel):
    kind: JobKind
    status: JobStatus = Field(default=JobStatus.PENDING, index=True)
    progress: int = Field(default=0, ge=0, le=100)
    error: str | None = Field(default=None, sa_type=Text)


class Job(JobBase, table=True):
    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    # The original job input, kept for audit and re-enqueueing.
    payload: dict = Field(default_factory=dict, sa_type=JSON)
    attempts: int = 0
    created_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
        index=True,
    )
    updated_at: datetime | None = Field(
        default_factory=get_datetime_utc,
        sa_type=DateTime(timezone=True),  # type: ignore
    )
    started_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore
    completed_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))  # type: ignore
    design_request_id: uuid.UUID = Field(
        foreign_key="designrequest.id", nullable=False, ondelete="CASCADE", index=True
    )
    design_request: DesignRequest | None = Relationship(back_populates="jobs")


class JobPublic(JobBase):
    id: uuid.UUID
    design_request_id: uuid.UUID
    attempts: int = 0
    message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobStatusRead(SQLModel):
    job_id: uuid.UUID
    kind: JobKind | None = None
    status: JobStatus
    progress: int
    message: str | None = None
    source: Literal["cache", "store"]


# Request bodies / responses for the job-creating operations

class RefinementCreate(SQLModel):
    refinement_instruction: str = Field(min_length=1, max_length=2000)
    detail_level: DetailLevel | None = None
    enhancements: list[str] = Field(default_factory=list)


class RenderCreate(SQLModel):
    diagram_source: str = Field(min_length=1)


class JobCreated(SQLModel):
    job_id: uuid.UUID


class DesignRequestCreated(SQLModel):
    design_request: DesignRequestPublic
    job_id: uuid.UUID


# Request reads

class DesignRequestSummary(DesignRequestPublic):
    design_version_count: int = 0
    latest_job: JobPublic | None = None


class DesignRequestsPublic(SQLModel):
    data: list[DesignRequestSummary]
    count: int


class DesignRequestDetail(DesignRequestPublic):
    latest_design_version: DesignVersionPublic | None = None
    latest_diagram_version: DiagramVersionPublic | None = None
    latest_job: JobPublic | None = None
