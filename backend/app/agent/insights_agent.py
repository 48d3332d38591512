import logging
from typing import Any

from openai import OpenAIError
from pydantic import BaseModel, Field, ValidationError
from sqlmodel import Session

from app import crud
from app.agent.base import BaseAgent
from app.agent.prompts.chat import INSIGHTS_SYSTEM_PROMPT, build_insights_user_prompt
from app.core.config import settings
from app.memory.service import MemoryService, message_text
from app.models import Chat

logger = logging.getLogger(__name__)

ANALYZE_AFTER_MESSAGES = 15
MIN_MEANINGFUL_MESSAGES = 5
MESSAGE_CONTENT_LIMIT = 1000


class ChatInsights(BaseModel):
    one_sentence_summary: str
    full_summary: str
    topics: list[str] = Field(default_factory=list)
    user_context: str | None = None


class InsightsInput(BaseModel):
    title: str | None = None
    messages: list[dict[str, Any]]


def _clip(text: str) -> str:
    return text[:MESSAGE_CONTENT_LIMIT] + "..." if len(text) > MESSAGE_CONTENT_LIMIT else text


def build_transcript(messages: list[dict[str, Any]]) -> str:
    lines = []
    for message in messages:
        text = message_text(message).strip()
        if text:
            lines.append(f"{message.get('role', 'user')}: {_clip(text)}")
    return "\n".join(lines)


def should_analyze_conversation(messages: list[dict[str, Any]], is_new_chat: bool = False) -> bool:
    # Greetings and one-word replies do not count.
    meaningful = [m for m in messages if len(message_text(m)) > 10]
    return len(messages) >= ANALYZE_AFTER_MESSAGES or (
        is_new_chat and len(meaningful) >= MIN_MEANINGFUL_MESSAGES
    )


class InsightsAgent(BaseAgent[InsightsInput, ChatInsights]):
    def __init__(self, model_name: str | None = None, **kwargs):
        super().__init__(model_name=model_name or settings.MODEL_INSIGHTS, **kwargs)

    async def run(self, input_data: InsightsInput) -> ChatInsights:
        prompt = build_insights_user_prompt(input_data.title, build_transcript(input_data.messages))
        return await self.llm.generate_structured(
            INSIGHTS_SYSTEM_PROMPT.strip(), prompt, ChatInsights
        )


async def refresh_chat_insights(
    session: Session,
    chat: Chat,
    messages: list[dict[str, Any]],
    *,
    memory: MemoryService | None = None,
    papr_user_id: str | None = None,
    agent: InsightsAgent | None = None,
) -> ChatInsights | None:
    """Summarize the conversation onto the chat row and, when possible, into memory."""
    agent = agent or InsightsAgent()
    try:
        insights = await agent.run(InsightsInput(title=chat.title, messages=messages))
    except (OpenAIError, ValidationError, ValueError) as exc:
        logger.error("Failed to analyze chat %s: %s", chat.id, exc)
        return None

    crud.update_chat_insights(session=session, db_chat=chat, insights=insights.model_dump())
    logger.info("Saved insights for chat %s", chat.id)

    if memory and papr_user_id:
        content = (
            f"CONVERSATION SUMMARY: {chat.title}\n\n"
            f"{insights.one_sentence_summary}\n\n{insights.full_summary}\n\n"
            f"TOPICS: {', '.join(insights.topics)}"
        )
        await memory.store_content(
            papr_user_id,
            content,
            "text",
            {
                "sourceType": "PaprChat_ConversationSummary",
                "topics": insights.topics,
                "hierarchical_structures": "conversations",
                "customMetadata": {"chat_id": str(chat.id), "message_count": len(messages)},
            },
        )
    return insights
