from archgen.models import DetailLevel, ScaleProfile

ARCHITECTURE_SYSTEM_PROMPT = """
You are an expert software architect. Your job is to design a comprehensive, production-ready
system architecture from a product description or a code repository, and to return it as a
structured `GeneratedDesign`.

You must generate:
1. **design.components**: the runtime components (clients, gateways, services, workers) with their technologies.
2. **design.data_stores**: every database, cache, queue, object store or search index.
3. **design.apis**: the externally visible APIs with example endpoints, protocol and authentication.
4. **design.security**: security categories with concrete measures and tools.
5. **design.scale_changes**: what changes in each infrastructure area for the requested scale profile.
6. **design.cloud_provider** and **design.architecture_style** when they can be decided.
7. **mermaid_diagram**: a Mermaid flowchart of the same architecture.

Rules:
- Respect the technology constraints: use everything listed under "Must Use", never use anything under "Avoid".
- Size the architecture for the scale profile; a prototype should stay small.
- Never return null for a list; use an empty list instead.
- `mermaid_diagram` must contain Mermaid syntax only (no ``` fences) and start with `flowchart TB` or `flowchart LR`.
- Group related nodes with subgraphs, use simple alphanumeric node IDs, quote labels with spaces.
- Use labeled arrows like `A -->|"label"| B`.
- Give every node an explicit style line using these palettes:
  - Clients: fill:#E8F5E9,stroke:#2E7D32,color:#1B5E20
  - APIs/Gateways: fill:#E3F2FD,stroke:#1565C0,color:#0D47A1
  - Services: fill:#FFF3E0,stroke:#EF6C00,color:#E65100
  - Databases: fill:#F3E5F5,stroke:#7B1FA2,color:#4A148C
  - Caches: fill:#FFEBEE,stroke:#C62828,color:#B71C1C
  - External: fill:#ECEFF1,stroke:#546E7A,color:#37474F
  - Queues: fill:#FFF8E1,stroke:#F9A825,color:#F57F17
- Make the JSON valid and complete according to the schema.
"""

SCALE_DESCRIPTIONS: dict[ScaleProfile, str] = {
    ScaleProfile.PROTOTYPE: "a prototype/MVP with minimal infrastructure, no scaling concerns",
    ScaleProfile.DAU_1K: "a production system handling ~1,000 daily active users with basic redundancy",
    ScaleProfile.DAU_1M: (
        "a large-scale production system handling ~1,000,000 daily active users with high availability"
    ),
}

DETAIL_LEVEL_INSTRUCTIONS: dict[DetailLevel, str] = {
    DetailLevel.OVERVIEW: """
Generate a HIGH-LEVEL OVERVIEW diagram:
- Show only 4-6 main component groups (e.g. "Frontend", "Backend", "Database", "External Services")
- Use simple labels without specific technology names
- Focus on data flow direction only
- Keep it clean and easy to understand at a glance""",
    DetailLevel.STANDARD: """
Generate a STANDARD detail diagram:
- Show 6-10 components with their main technologies
- Include primary databases and caches
- Show main API connections
- Include the cloud provider if relevant
- Add technology names to node labels""",
    DetailLevel.DETAILED: """
Generate a HIGHLY DETAILED diagram:
- Show all components with specific technologies
- Include protocol types (HTTP, gRPC, WebSocket, etc.)
- Show specific cloud services (AWS Lambda, S3, CloudFront, etc.)
- Include authentication flows, monitoring and logging services
- Include the CI/CD pipeline if relevant
- Show data replication and failover paths""",
}
