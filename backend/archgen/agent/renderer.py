import asyncio
import logging
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from archgen.agent.artifacts import RenderResult
from archgen.core.config import settings

logger = logging.getLogger(__name__)

VALID_DIAGRAM_TYPES = (
    "flowchart",
    "graph",
    "sequencediagram",
    "classdiagram",
    "statediagram",
    "erdiagram",
    "journey",
    "gantt",
    "pie",
    "mindmap",
)


def validate_diagram_source(source: str) -> str | None:
    """Return an error message for unusable diagram source, or None when it looks valid."""
    text = (source or "").strip()
    if not text:
        return "Empty diagram source"
    first_line = text.split("\n", 1)[0].lower()
    if not any(diagram_type in first_line for diagram_type in VALID_DIAGRAM_TYPES):
        return "Invalid diagram type. Must start with a valid Mermaid diagram declaration."
    return None


class DiagramRenderer(ABC):
    @abstractmethod
    async def render(self, source: str) -> RenderResult:
        """Never raises: failures come back as RenderResult(svg=None, error=...)."""
        pass


class MermaidRenderer(DiagramRenderer):
    """
    Validates Mermaid source and, when mermaid-cli is available, renders it to SVG.
    Without the CLI only the source is stored and the client renders it.
    """

    def __init__(self, cli_path: str | None = None, timeout: float | None = None):
        self.cli_path = cli_path if cli_path is not None else settings.MERMAID_CLI_PATH
        self.timeout = timeout or settings.RENDER_TIMEOUT_SECONDS

    async def render(self, source: str) -> RenderResult:
        error = validate_diagram_source(source)
        if error:
            logger.info("Diagram not rendered: %s", error)
            return RenderResult(source=source, svg=None, error=error)

        normalized = source.strip()
        if not self.cli_path:
            return RenderResult(source=normalized, svg=None)

        try:
            svg = await self._render_with_cli(normalized)
        except Exception as exc:
            logger.warning("mermaid-cli rendering failed: %s", exc)
            return RenderResult(source=normalized, svg=None, error=str(exc) or type(exc).__name__)
        return RenderResult(source=normalized, svg=svg)

    async def _render_with_cli(self, source: str) -> str:
        executable = shutil.which(self.cli_path) or self.cli_path
        with tempfile.TemporaryDirectory(prefix="archgen_mmd_") as tmp:
            input_path = Path(tmp) / "diagram.mmd"
            output_path = Path(tmp) / "diagram.svg"
            input_path.write_text(source, encoding="utf-8")

            process = await asyncio.create_subprocess_exec(
                executable,
                "-i", str(input_path),
                "-o", str(output_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
                raise RuntimeError(f"mermaid-cli timed out after {self.timeout}s")

            if process.returncode != 0:
                detail = stderr.decode("utf-8", errors="replace").strip()
                raise RuntimeError(f"mermaid-cli exited with {process.returncode}: {detail[:500]}")
            return output_path.read_text(encoding="utf-8")
