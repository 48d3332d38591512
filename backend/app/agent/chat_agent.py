import json
import logging
from collections.abc import AsyncIterator
from typing import Any

from pydantic import BaseModel, Field

from app.agent.base import BaseAgent
from app.agent.llm_client import ToolCallRequest
from app.agent.tools import ToolContext, execute_tool, tool_definitions
from app.core.config import settings
from app.memory.service import message_text

logger = logging.getLogger(__name__)


class ChatTurn(BaseModel):
    system_prompt: str
    messages: list[dict[str, Any]]
    memory_enabled: bool = True


class ChatResult(BaseModel):
    text: str = ""
    tool_calls: list[dict[str, Any]] = Field(default_factory=list)
    memories: list[dict[str, Any]] = Field(default_factory=list)
    steps: int = 0


def to_llm_messages(messages: list[dict[str, Any]], window: int | None = None) -> list[dict[str, Any]]:
    """Flatten stored chat messages to role/content pairs, keeping the most recent `window`."""
    window = window or settings.CHAT_HISTORY_WINDOW
    converted = []
    for message in messages[-window:]:
        role = message.get("role")
        if role not in ("user", "assistant"):
            continue
        text = message_text(message)
        if text.strip():
            converted.append({"role": role, "content": text})
    return converted


def _assistant_tool_message(text: str, calls: list[ToolCallRequest]) -> dict[str, Any]:
    return {
        "role": "assistant",
        "content": text or None,
        "tool_calls": [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments or "{}"},
            }
            for call in calls
        ],
    }


class ChatAgent(BaseAgent[ChatTurn, ChatResult]):
    """Streams one assistant reply, running tool calls between model steps."""

    def __init__(
        self,
        context: ToolContext,
        model_name: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        max_steps: int | None = None,
    ):
        super().__init__(model_name=model_name, base_url=base_url, api_key=api_key)
        self.context = context
        self.max_steps = max_steps or settings.CHAT_MAX_TOOL_STEPS

    async def stream(self, turn: ChatTurn) -> AsyncIterator[dict[str, Any]]:
        """
        Yield UI events for one reply:
        text-delta, tool-call, tool-result and a final finish event carrying the result.
        """
        history: list[dict[str, Any]] = [{"role": "system", "content": turn.system_prompt}]
        history.extend(to_llm_messages(turn.messages))
        tools = tool_definitions(memory_enabled=turn.memory_enabled)

        result = ChatResult()
        text_so_far: list[str] = []
        for step in range(1, self.max_steps + 1):
            result.steps = step
            # The last step runs without tools so the model has to answer in text.
            step_tools = tools if step < self.max_steps else None
            step_text: list[str] = []
            calls: list[ToolCallRequest] = []

            async for item in self.llm.stream_chat(history, step_tools):
                if isinstance(item, ToolCallRequest):
                    calls.append(item)
                else:
                    step_text.append(item)
                    yield {"type": "text-delta", "delta": item}
            text_so_far.extend(step_text)

            if not calls:
                break

            history.append(_assistant_tool_message("".join(step_text), calls))
            for call in calls:
                args = call.parsed_arguments()
                yield {
                    "type": "tool-call",
                    "toolCallId": call.id,
                    "toolName": call.name,
                    "args": args,
                }
                tool_result = await execute_tool(self.context, call.name, args)
                result.tool_calls.append(
                    {"toolCallId": call.id, "toolName": call.name, "args": args, "result": tool_result}
                )
                yield {
                    "type": "tool-result",
                    "toolCallId": call.id,
                    "toolName": call.name,
                    "result": tool_result,
                }
                history.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(tool_result, default=str),
                    }
                )

        result.text = "".join(text_so_far)
        result.memories = list(self.context.memories)
        logger.info(
            "Chat reply finished after %s step(s) with %s tool call(s)",
            result.steps,
            len(result.tool_calls),
        )
        yield {"type": "finish", "result": result}

    async def run(self, input_data: ChatTurn) -> ChatResult:
        result = ChatResult()
        async for event in self.stream(input_data):
            if event["type"] == "finish":
                result = event["result"]
        return result
