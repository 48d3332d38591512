import json
import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from app.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*([\s\S]*?)\s*```\s*$")
_INNER_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


def _strip_code_fences(text: str) -> str:
    if not text:
        return ""
    fenced = _FENCE_RE.match(text)
    return fenced.group(1).strip() if fenced else text.strip()


def _first_json_object(text: str) -> str | None:
    """Slice out the first balanced {...} block, ignoring braces inside strings."""
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    in_string = escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return None


def _json_candidates(raw_text: str) -> list[str]:
    text = (raw_text or "").strip()
    if not text:
        return []
    candidates = [m.strip() for m in _INNER_FENCE_RE.findall(text)[:1]]
    candidates.append(text)
    balanced = _first_json_object(text)
    if balanced:
        candidates.append(balanced)
    return list(dict.fromkeys(c for c in candidates if c))


@dataclass
class ToolCallRequest:
    id: str
    name: str
    arguments: str = ""

    def parsed_arguments(self) -> dict[str, Any]:
        if not self.arguments.strip():
            return {}
        try:
            parsed = json.loads(self.arguments)
        except json.JSONDecodeError:
            logger.warning("Tool %s received unparseable arguments: %s", self.name, self.arguments)
            return {}
        return parsed if isinstance(parsed, dict) else {}


class LLMClient:
    """OpenAI-compatible chat client used for titles, insights and streamed chat turns."""

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

    def _chat_completion_kwargs(self, *, temperature: float | None) -> dict:
        model_name = (self.model_name or "").lower()
        # GPT-5 family rejects non-default temperature values.
        if model_name.startswith("gpt-5") or temperature is None:
            return {}
        return {"temperature": temperature}

    async def _complete(self, system_prompt: str, user_prompt: str, temperature: float | None) -> str:
        response = await self.client.chat.completions.create(
            model=self.model_name,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            **self._chat_completion_kwargs(temperature=temperature),
        )
        if not getattr(response, "choices", None):
            logger.error("Received no choices from %s: %s", self.model_name, response)
            raise ValueError(f"Provider {self.model_name} returned no output")
        return response.choices[0].message.content or ""

    async def generate_structured(
        self, system_prompt: str, user_prompt: str, response_schema: type[T]
    ) -> T:
        """
        Ask for JSON matching `response_schema` and validate it.
        A second attempt with stricter instructions follows a parse failure.
        """
        schema_json = json.dumps(response_schema.model_json_schema())
        base_prompt = (
            f"{system_prompt}\n\n"
            "Respond with ONLY a JSON object matching this JSON Schema, "
            "with no markdown fences or commentary.\n\n"
            f"SCHEMA:\n{schema_json}"
        )
        attempts = [
            (base_prompt, 0.2),
            (f"{base_prompt}\n\nYour previous answer was not valid JSON. Return only the JSON object.", 0),
        ]

        last_error: Exception | None = None
        for attempt, (prompt, temperature) in enumerate(attempts, start=1):
            logger.info(
                "Issuing structured request to model %s (attempt %s/%s)...",
                self.model_name,
                attempt,
                len(attempts),
            )
            text = await self._complete(prompt, user_prompt, temperature)
            for candidate in _json_candidates(text):
                try:
                    return response_schema.model_validate(json.loads(candidate, strict=False))
                except (json.JSONDecodeError, ValidationError) as e:
                    last_error = e
            if last_error is None:
                last_error = ValueError("Model returned empty content for structured response")
            logger.warning(
                "Structured parsing failed for %s on attempt %s/%s: %s",
                self.model_name,
                attempt,
                len(attempts),
                last_error,
            )
        raise last_error or ValueError("Structured generation failed")

    async def generate_text(
        self, system_prompt: str, user_prompt: str, *, temperature: float = 0.2
    ) -> str:
        logger.info("Issuing text request to model %s...", self.model_name)
        text = _strip_code_fences(await self._complete(system_prompt, user_prompt, temperature))
        if not text:
            raise ValueError("Model returned empty content")
        return text

    async def stream_chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        *,
        temperature: float | None = None,
    ) -> AsyncIterator[str | ToolCallRequest]:
        """
        Stream one assistant turn.
        Yields text deltas as they arrive, then any tool calls the model requested,
        assembled from their streamed fragments.
        """
        kwargs: dict[str, Any] = self._chat_completion_kwargs(temperature=temperature)
        if tools:
            kwargs["tools"] = tools
        stream = await self.client.chat.completions.create(
            model=self.model_name,
            messages=messages,
            stream=True,
            **kwargs,
        )

        calls: dict[int, ToolCallRequest] = {}
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                yield delta.content
            for fragment in delta.tool_calls or []:
                call = calls.setdefault(fragment.index, ToolCallRequest(id="", name=""))
                if fragment.id:
                    call.id = fragment.id
                if fragment.function and fragment.function.name:
                    call.name += fragment.function.name
                if fragment.function and fragment.function.arguments:
                    call.arguments += fragment.function.arguments

        for index in sorted(calls):
            call = calls[index]
            if call.name:
                yield call
