from typing import Any

from pydantic import BaseModel, Field, field_validator

from archgen.models import DesignConstraints, DetailLevel, InputKind, ScaleProfile


class Component(BaseModel):
    name: str = Field(description="Component name")
    type: str = Field(description="Frontend/Backend/Service/Infrastructure/Gateway/Worker")
    description: str = Field(description="What this component does")
    technologies: list[str] = Field(default_factory=list, description="Technology names used")
    icon: str | None = Field(default=None, description="Icon identifier, e.g. 'react', 'postgresql'")
    cloud_provider: str | None = Field(default=None, description="AWS/GCP/Azure/Vercel/Netlify if applicable")
    framework: str | None = Field(default=None, description="Specific framework used")


class DataStore(BaseModel):
    name: str = Field(description="Data store name")
    type: str = Field(description="Relational/NoSQL/In-Memory/Object Storage/Search/Stream")
    description: str = Field(description="Purpose of this data store")
    technology: str = Field(description="Specific technology (PostgreSQL, Redis, etc.)")
    icon: str | None = None
    cloud_service: str | None = Field(default=None, description="Managed service name (Amazon RDS, Cloud SQL, etc.)")


class ApiSpec(BaseModel):
    name: str = Field(description="API name")
    type: str = Field(description="REST/GraphQL/WebSocket/gRPC")
    description: str = Field(description="What this API handles")
    endpoints: list[str] = Field(default_factory=list, description="Example endpoints")
    protocol: str | None = Field(default=None, description="HTTP/HTTPS/WSS/HTTP/2")
    authentication: str | None = Field(default=None, description="JWT/OAuth2/API Key/Session")


class SecurityItem(BaseModel):
    category: str = Field(description="Security category name")
    measures: list[str] = Field(default_factory=list, description="Specific security measures")
    tools: list[str] = Field(default_factory=list, description="Security tools/services used")


class ScaleChange(BaseModel):
    category: str = Field(description="Infrastructure area")
    description: str = Field(description="What changes for this scale profile")
    services: list[str] = Field(default_factory=list, description="Cloud services that help with scaling")


class DesignOutput(BaseModel):
    """Structured architecture stored on every DesignVersion."""
    components: list[Component] = Field(default_factory=list)
    data_stores: list[DataStore] = Field(default_factory=list)
    apis: list[ApiSpec] = Field(default_factory=list)
    security: list[SecurityItem] = Field(default_factory=list)
    scale_changes: list[ScaleChange] = Field(default_factory=list)
    cloud_provider: str | None = Field(default=None, description="Primary cloud provider (AWS/GCP/Azure/Multi-cloud)")
    architecture_style: str | None = Field(
        default=None, description="Monolith/Microservices/Serverless/Hybrid/Event-Driven"
    )

    @field_validator("components", "data_stores", "apis", "security", "scale_changes", mode="before")
    @classmethod
    def _null_to_empty(cls, value: Any) -> Any:
        # Models occasionally emit null for an empty section.
        return [] if value is None else value


class GeneratedDesign(BaseModel):
    """Artifact returned by a DesignProducer."""
    design: DesignOutput = Field(description="The structured architecture design")
    mermaid_diagram: str = Field(
        description="Mermaid flowchart for the architecture. Return only Mermaid syntax, no markdown fence."
    )


class DesignInput(BaseModel):
    """Everything a DesignProducer needs for one generation or refinement call."""
    input_kind: InputKind = InputKind.PROMPT
    prompt_text: str | None = None
    repo_url: str | None = None
    constraints: DesignConstraints = Field(default_factory=DesignConstraints)
    scale_profile: ScaleProfile = ScaleProfile.PROTOTYPE
    detail_level: DetailLevel = DetailLevel.STANDARD
    enhancements: list[str] = Field(default_factory=list)
    refinement_instruction: str | None = None
    prior_design: DesignOutput | None = None

    @property
    def is_refinement(self) -> bool:
        return bool(self.refinement_instruction) and self.prior_design is not None


class RenderResult(BaseModel):
    source: str
    svg: str | None = None
    error: str | None = None
