"""
Deterministic architecture used when the LLM is unavailable or returns garbage.

Everything here is a pure function of the DesignInput so a retried job produces
the same design, and nothing here may raise for a well-formed input.
"""
from archgen.agent.artifacts import (
    ApiSpec,
    Component,
    DataStore,
    DesignInput,
    DesignOutput,
    GeneratedDesign,
    ScaleChange,
    SecurityItem,
)
from archgen.models import DetailLevel, ScaleProfile

OVERVIEW_DIAGRAM = """flowchart TB
    subgraph Clients["Clients"]
        Client["Users"]
    end

    subgraph Backend["Backend"]
        API["API"]
        Services["Services"]
    end

    subgraph Data["Data"]
        DB["Database"]
        Cache["Cache"]
    end

    Client --> API
    API --> Services
    Services --> DB
    Services --> Cache

    style Client fill:#E8F5E9,stroke:#2E7D32,color:#1B5E20
    style API fill:#E3F2FD,stroke:#1565C0,color:#0D47A1
    style Services fill:#FFF3E0,stroke:#EF6C00,color:#E65100
    style DB fill:#F3E5F5,stroke:#7B1FA2,color:#4A148C
    style Cache fill:#FFEBEE,stroke:#C62828,color:#B71C1C"""

STANDARD_DIAGRAM = """flowchart TB
    subgraph Clients["Client Layer"]
        Web["Web App<br/>{frontend}"]
        Mobile["Mobile<br/>React Native"]
    end

    subgraph Gateway["API Gateway"]
        LB["Load Balancer"]
        API["API Server<br/>{api_framework}"]
    end

    subgraph Services["Services"]
        Auth["Auth<br/>JWT + OAuth"]
        Core["Core<br/>{language}"]
    end

    subgraph Data["Data Layer"]
        DB["{database}<br/>Primary DB"]
        Cache["Redis<br/>Cache"]
    end

    Web --> LB
    Mobile --> LB
    LB --> API
    API --> Auth
    API --> Core
    Auth --> Cache
    Core --> DB
    Core --> Cache

    style Web fill:#E8F5E9,stroke:#2E7D32,color:#1B5E20
    style Mobile fill:#E8F5E9,stroke:#2E7D32,color:#1B5E20
    style LB fill:#E3F2FD,stroke:#1565C0,color:#0D47A1
    style API fill:#E3F2FD,stroke:#1565C0,color:#0D47A1
    style Auth fill:#FFF3E0,stroke:#EF6C00,color:#E65100
    style Core fill:#FFF3E0,stroke:#EF6C00,color:#E65100
    style DB fill:#F3E5F5,stroke:#7B1FA2,color:#4A148C
    style Cache fill:#FFEBEE,stroke:#C62828,color:#B71C1C"""

DETAILED_DIAGRAM = """flowchart TB
    subgraph Clients["Client Layer"]
        Web["Web App<br/>{frontend}<br/>Tailwind CSS"]
        Mobile["Mobile App<br/>React Native"]
    end

    subgraph Edge["Edge Layer"]
        CDN["CloudFront CDN<br/>Edge Caching + WAF"]
        DNS["Route 53<br/>DNS + Health Checks"]
    end

    subgraph Gateway["API Gateway Layer"]
        ALB["Application LB<br/>SSL Termination"]
        APIGW["API Gateway<br/>{api_framework} + {language}<br/>Rate Limiting + Auth"]
    end

    subgraph Services["Service Layer"]
        Auth["Auth Service<br/>JWT + OAuth2"]
        Core["Core Service<br/>Domain Logic"]
        Worker["Background Worker<br/>Job Processing"]
    end

    subgraph Data["Data Layer"]
        Primary["{database}<br/>{database_service}"]
        Cache["Redis<br/>ElastiCache"]
        Queue["Message Queue<br/>Amazon SQS"]
        S3["Object Storage<br/>Amazon S3"]
    end

    subgraph Monitoring["Observability"]
        Logs["CloudWatch Logs"]
        Metrics["Prometheus + Grafana"]
        Traces["X-Ray Tracing"]
    end

    DNS --> CDN
    CDN --> ALB
    Web --> CDN
    Mobile --> ALB
    ALB --> APIGW
    APIGW -->|"JWT Auth"| Auth
    APIGW -->|"REST"| Core
    Core --> Primary
    Core --> Cache
    Core -->|"Enqueue"| Queue
    Queue -->|"Process"| Worker
    Worker --> Primary
    Worker --> S3
    Auth --> Cache
    Core --> Logs
    Core --> Metrics
    APIGW --> Traces

    style Web fill:#E8F5E9,stroke:#2E7D32,color:#1B5E20
    style Mobile fill:#E8F5E9,stroke:#2E7D32,color:#1B5E20
    style CDN fill:#ECEFF1,stroke:#546E7A,color:#37474F
    style DNS fill:#ECEFF1,stroke:#546E7A,color:#37474F
    style ALB fill:#E3F2FD,stroke:#1565C0,color:#0D47A1
    style APIGW fill:#E3F2FD,stroke:#1565C0,color:#0D47A1
    style Auth fill:#FFF3E0,stroke:#EF6C00,color:#E65100
    style Core fill:#FFF3E0,stroke:#EF6C00,color:#E65100
    style Worker fill:#FFF3E0,stroke:#EF6C00,color:#E65100
    style Primary fill:#F3E5F5,stroke:#7B1FA2,color:#4A148C
    style Cache fill:#FFEBEE,stroke:#C62828,color:#B71C1C
    style Queue fill:#FFF8E1,stroke:#F9A825,color:#F57F17
    style S3 fill:#F3E5F5,stroke:#7B1FA2,color:#4A148C
    style Logs fill:#E0F7FA,stroke:#00838F,color:#006064
    style Metrics fill:#E0F7FA,stroke:#00838F,color:#006064
    style Traces fill:#E0F7FA,stroke:#00838F,color:#006064"""


def _pick(must_use: list[str], options: list[str], default: str) -> str:
    lowered = {item.lower(): item for item in must_use}
    for option in options:
        if option.lower() in lowered:
            return lowered[option.lower()]
    return default


def _without(technologies: list[str], avoid: list[str]) -> list[str]:
    avoided = {item.lower() for item in avoid}
    return [tech for tech in technologies if tech.lower() not in avoided]


def build_fallback_design(input_data: DesignInput) -> DesignOutput:
    constraints = input_data.constraints
    language = constraints.preferred_language or "TypeScript"
    must_use = constraints.must_use
    avoid = constraints.avoid
    is_large = input_data.scale_profile == ScaleProfile.DAU_1M
    is_medium = input_data.scale_profile == ScaleProfile.DAU_1K

    frontend = _pick(must_use, ["Next.js", "Vite"], "Vite")
    api_framework = _pick(must_use, ["Express", "Fastify", "FastAPI", "Django", "Spring Boot"], "Fastify")
    database = _pick(must_use, ["PostgreSQL", "MySQL", "MongoDB"], "PostgreSQL")
    if database.lower() in {item.lower() for item in avoid}:
        database = "MySQL" if database != "MySQL" else "PostgreSQL"

    if is_large:
        compute = "Auto-scaling Kubernetes clusters across regions"
        database_scaling = "Multi-region database with read replicas"
    elif is_medium:
        compute = "Horizontal pod autoscaling"
        database_scaling = "Managed database with a read replica"
    else:
        compute = "Single instance deployment"
        database_scaling = "Single managed database instance"

    return DesignOutput(
        components=[
            Component(
                name="Web Application",
                type="Frontend",
                description="Single-page application with responsive design",
                technologies=_without([f"React + {language}", "Tailwind CSS", frontend], avoid),
                icon="react",
                cloud_provider="Vercel",
                framework=frontend,
            ),
            Component(
                name="API Gateway",
                type="Gateway",
                description="Central API layer handling authentication and routing",
                technologies=_without([api_framework, language, "JWT Authentication"], avoid),
                icon="api",
                cloud_provider="AWS",
                framework=api_framework,
            ),
            Component(
                name="Core Service",
                type="Backend",
                description="Business logic implementation with domain patterns",
                technologies=_without([language, "Domain Events"], avoid),
                icon="server",
            ),
        ],
        data_stores=[
            DataStore(
                name="Primary Database",
                type="Relational" if database != "MongoDB" else "NoSQL",
                description="Main data store for structured business data",
                technology=database,
                icon=database.lower(),
                cloud_service="Amazon Aurora" if is_large else "Amazon RDS",
            ),
            DataStore(
                name="Cache Layer",
                type="In-Memory",
                description="Caching for sessions and hot data",
                technology="Redis",
                icon="redis",
                cloud_service="Amazon ElastiCache",
            ),
        ],
        apis=[
            ApiSpec(
                name="REST API",
                type="REST",
                description="Primary API for client-server communication",
                endpoints=["POST /api/auth/login", "GET /api/resources", "POST /api/resources"],
                protocol="HTTPS",
                authentication="JWT",
            ),
            ApiSpec(
                name="WebSocket API",
                type="WebSocket",
                description="Real-time communication for live updates",
                endpoints=["wss://api.example.com/ws"],
                protocol="WSS",
                authentication="JWT",
            ),
        ],
        security=[
            SecurityItem(
                category="Authentication",
                measures=["JWT-based auth with refresh tokens", "OAuth 2.0 support", "Rate limiting"],
                tools=["AWS Cognito"],
            ),
            SecurityItem(
                category="Data Protection",
                measures=["TLS 1.3 encryption", "Password hashing", "Input validation"],
                tools=["AWS KMS"],
            ),
        ],
        scale_changes=[
            ScaleChange(
                category="Compute",
                description=compute,
                services=["EKS", "Fargate", "CloudFront"] if is_large else ["EC2", "ALB"],
            ),
            ScaleChange(
                category="Database",
                description=database_scaling,
                services=["Aurora Global Database"] if is_large else ["RDS"],
            ),
        ],
        cloud_provider="AWS",
        architecture_style="Microservices" if is_large else "Modular Monolith",
    )


def build_fallback_diagram(input_data: DesignInput, design: DesignOutput) -> str:
    if input_data.detail_level == DetailLevel.OVERVIEW:
        return OVERVIEW_DIAGRAM

    web = next((c for c in design.components if c.type == "Frontend"), None)
    gateway = next((c for c in design.components if c.type == "Gateway"), None)
    primary = design.data_stores[0] if design.data_stores else None
    values = {
        "frontend": (web.framework if web else None) or "React",
        "api_framework": (gateway.framework if gateway else None) or "REST",
        "language": input_data.constraints.preferred_language or "TypeScript",
        "database": primary.technology if primary else "PostgreSQL",
        "database_service": (primary.cloud_service if primary else None) or "Managed",
    }
    template = DETAILED_DIAGRAM if input_data.detail_level == DetailLevel.DETAILED else STANDARD_DIAGRAM
    return template.format(**values)


def generate_fallback_design(input_data: DesignInput) -> GeneratedDesign:
    if input_data.is_refinement:
        design = input_data.prior_design.model_copy(deep=True)
        if not design.components:
            design = build_fallback_design(input_data)
        design.scale_changes.append(
            ScaleChange(category="Requested Change", description=input_data.refinement_instruction)
        )
    else:
        design = build_fallback_design(input_data)

    return GeneratedDesign(design=design, mermaid_diagram=build_fallback_diagram(input_data, design))
