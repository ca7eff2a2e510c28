import re

from archgen.agent.artifacts import DesignInput, GeneratedDesign
from archgen.agent.base import BaseAgent
from archgen.agent.prompts.architecture import (
    ARCHITECTURE_SYSTEM_PROMPT,
    DETAIL_LEVEL_INSTRUCTIONS,
    SCALE_DESCRIPTIONS,
)
from archgen.models import InputKind

DIAGRAM_DECLARATION = re.compile(
    r"^\s*(flowchart|graph|sequenceDiagram|classDiagram|stateDiagram|erDiagram|journey|gantt|pie|mindmap)\b",
    flags=re.IGNORECASE,
)

# (name fragments, style) pairs checked in order; the last entry is the catch-all.
NODE_STYLE_RULES: list[tuple[tuple[str, ...], str]] = [
    (("client", "web", "mobile", "user"), "fill:#E8F5E9,stroke:#2E7D32,color:#1B5E20"),
    (("api", "gateway", "lb", "load"), "fill:#E3F2FD,stroke:#1565C0,color:#0D47A1"),
    (("db", "database", "postgres", "mongo"), "fill:#F3E5F5,stroke:#7B1FA2,color:#4A148C"),
    (("cache", "redis"), "fill:#FFEBEE,stroke:#C62828,color:#B71C1C"),
    (("queue", "kafka", "rabbit"), "fill:#FFF8E1,stroke:#F9A825,color:#F57F17"),
    (("service", "worker"), "fill:#FFF3E0,stroke:#EF6C00,color:#E65100"),
    ((), "fill:#ECEFF1,stroke:#546E7A,color:#37474F"),
]


def format_user_prompt(input_data: DesignInput) -> str:
    detail_instructions = DETAIL_LEVEL_INSTRUCTIONS[input_data.detail_level]

    if input_data.is_refinement:
        return (
            "You are refining an existing architecture design based on user feedback.\n\n"
            f"EXISTING DESIGN:\n{input_data.prior_design.model_dump_json(indent=2)}\n\n"
            f"USER REFINEMENT REQUEST:\n{input_data.refinement_instruction}\n\n"
            "Update the design and diagram based on the feedback. Keep what works, "
            "modify what the user asked to change.\n"
            f"{detail_instructions}\n\n"
            "Provide the complete updated design with all fields."
        )

    lines = ["Design a software architecture for the following:", ""]
    if input_data.input_kind == InputKind.PROMPT and input_data.prompt_text:
        lines += ["**Product Description:**", input_data.prompt_text, ""]
    elif input_data.input_kind == InputKind.REPO_URL and input_data.repo_url:
        lines += [
            f"**GitHub Repository:** {input_data.repo_url}",
            "Analyze this as a codebase that needs architecture improvements.",
            "",
        ]

    lines.append(
        f"**Scale Profile:** {input_data.scale_profile.value} - "
        f"Design for {SCALE_DESCRIPTIONS[input_data.scale_profile]}"
    )
    lines.append(f"**Detail Level:** {input_data.detail_level.value}")
    lines.append(detail_instructions)
    lines.append("")

    constraints = input_data.constraints
    if constraints.must_use:
        lines.append(f"**Must Use Technologies:** {', '.join(constraints.must_use)}")
    if constraints.avoid:
        lines.append(f"**Avoid Technologies:** {', '.join(constraints.avoid)}")
    if constraints.preferred_language:
        lines.append(f"**Preferred Programming Language:** {constraints.preferred_language}")

    if input_data.enhancements:
        lines += ["", "**Quick Suggestions to Include:**"]
        lines += [f"{i}. {item}" for i, item in enumerate(input_data.enhancements, start=1)]
        lines.append("Incorporate these suggestions into the architecture design.")

    lines += [
        "",
        "Provide a complete architecture design with all specified fields, "
        "and a Mermaid diagram with proper styling.",
    ]
    return "\n".join(lines)


def normalize_mermaid(code: str) -> str:
    text = (code or "").strip()
    if not text:
        return ""

    fenced = re.match(r"```(?:mermaid)?\s*([\s\S]*?)\s*```$", text, flags=re.IGNORECASE)
    if fenced:
        text = fenced.group(1).strip()
    text = re.sub(r"^[\uFEFF\u200B-\u200D]+", "", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [ln.rstrip() for ln in text.split("\n")]
    if lines and lines[0].strip().lower() == "mermaid":
        lines = lines[1:]
    text = "\n".join(lines).strip()

    if not DIAGRAM_DECLARATION.match(text):
        text = f"flowchart TB\n{text}"

    # Notes are not supported inside flowcharts.
    text = "\n".join(
        line for line in text.split("\n")
        if not re.match(r"^\s*note\s+(left|right)\s+of\b", line, flags=re.IGNORECASE)
    )
    # Dotted labeled edges render inconsistently; use plain labeled arrows.
    text = re.sub(r"---\s*\|\s*([^|\n]+?)\s*\|\s*", lambda m: f" -->|{m.group(1).strip()}| ", text)
    return text.strip()


def add_default_styles(diagram: str) -> str:
    """Append a style line per node when the diagram carries none."""
    if "style " in diagram:
        return diagram

    subgraph_ids = set(re.findall(r"^\s*subgraph\s+(\w+)", diagram, flags=re.MULTILINE))
    nodes: list[str] = []
    for node in re.findall(r"\b(\w+)[\[\(\{]", diagram):
        if node not in subgraph_ids and node not in nodes:
            nodes.append(node)

    styles = []
    for node in nodes:
        lowered = node.lower()
        for fragments, style in NODE_STYLE_RULES:
            if not fragments or any(fragment in lowered for fragment in fragments):
                styles.append(f"style {node} {style}")
                break

    if not styles:
        return diagram
    return diagram + "\n\n    " + "\n    ".join(styles)


class ArchitectureAgent(BaseAgent[DesignInput, GeneratedDesign]):
    """
    Agent that asks the LLM for a structured architecture and a Mermaid diagram,
    either from scratch or by refining a prior design.
    """

    async def run(self, input_data: DesignInput) -> GeneratedDesign:
        generated = await self.llm.generate_structured(
            system_prompt=ARCHITECTURE_SYSTEM_PROMPT,
            user_prompt=format_user_prompt(input_data),
            response_schema=GeneratedDesign,
        )

        diagram = normalize_mermaid(generated.mermaid_diagram)
        if not diagram:
            raise ValueError("ArchitectureAgent received an empty diagram.")
        if not generated.design.components:
            raise ValueError("ArchitectureAgent received a design without components.")

        generated.mermaid_diagram = add_default_styles(diagram)
        return generated
