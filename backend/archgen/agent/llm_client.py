import json
import logging
import re
from typing import TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from archgen.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

STRUCTURED_MAX_TOKENS = 6000


def _extract_fenced_block(text: str) -> str | None:
    blocks = re.findall(r"```(?:json)?\s*(.*?)\s*```", text, re.DOTALL | re.IGNORECASE)
    return blocks[0].strip() if blocks else None


def _extract_json_object(text: str) -> str | None:
    """Return the first balanced {...} span, ignoring braces inside strings."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def parse_candidates(raw_text: str) -> list[str]:
    """Candidate JSON strings to try, most likely first, without duplicates."""
    text = (raw_text or "").strip()
    if not text:
        return []

    candidates = [_extract_fenced_block(text), text, _extract_json_object(text)]
    unique: list[str] = []
    for candidate in candidates:
        if candidate and candidate.strip() not in unique:
            unique.append(candidate.strip())
    return unique


class LLMClient:
    """Structured generation against any OpenAI-compatible chat completions endpoint."""

    def __init__(
        self,
        model_name: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
    ):
        self.model_name = model_name or settings.MODEL_DEFAULT
        self.client = AsyncOpenAI(
            base_url=base_url or settings.LLM_BASE_URL,
            api_key=api_key or settings.LLM_API_KEY,
        )

    async def generate_structured(
        self,
        system_prompt: str,
        user_prompt: str,
        response_schema: type[T],
        *,
        temperature: float = 0.7,
    ) -> T:
        """
        Ask the model for a JSON object matching `response_schema`.
        The schema is appended to the system prompt and the provider's JSON mode is requested.
        Raises ValueError when the model output cannot be parsed into the schema.
        """
        schema_json = json.dumps(response_schema.model_json_schema())
        augmented_system_prompt = (
            f"{system_prompt}\n\n"
            "CRITICAL: Respond with ONLY a valid JSON object matching this JSON Schema. "
            "No markdown code blocks and no conversational text.\n\n"
            f"EXPECTED SCHEMA:\n{schema_json}"
        )

        logger.info("Issuing structured request to model %s...", self.model_name)
        response = await self.client.chat.completions.create(
            model=self.model_name,
            messages=[
                {"role": "system", "content": augmented_system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            response_format={"type": "json_object"},
            temperature=temperature,
            max_tokens=STRUCTURED_MAX_TOKENS,
        )

        if not getattr(response, "choices", None):
            logger.error("Received no choices from %s: %s", self.model_name, response)
            raise ValueError(f"Provider {self.model_name} returned no output")

        text_response = response.choices[0].message.content or ""
        candidates = parse_candidates(text_response)
        if not candidates:
            raise ValueError("Model returned empty content for structured response")

        parse_errors: list[str] = []
        for candidate in candidates:
            try:
                return response_schema.model_validate(json.loads(candidate, strict=False))
            except (json.JSONDecodeError, ValidationError) as candidate_error:
                parse_errors.append(str(candidate_error))
        raise ValueError(
            "Unable to parse structured response: " + " | ".join(parse_errors[:3])
        )
