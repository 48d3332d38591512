from pydantic import BaseModel

DEFAULT_CHAT_MODEL = "gpt-5-mini"


class ChatModel(BaseModel):
    id: str
    name: str
    description: str
    supports_reasoning: bool = False
    is_premium: bool = False
    group: str = "OpenAI"


CHAT_MODELS: list[ChatModel] = [
    ChatModel(
        id="auto",
        name="Auto",
        description="Automatically selects the best model for your request",
        supports_reasoning=True,
        group="Auto",
    ),
    ChatModel(
        id="gpt-5",
        name="GPT 5",
        description="OpenAI's flagship model",
        supports_reasoning=True,
    ),
    ChatModel(
        id="gpt-5-mini",
        name="GPT 5 Mini",
        description="Smaller, faster OpenAI model",
        supports_reasoning=True,
    ),
    ChatModel(
        id="o4-mini",
        name="OpenAI o4-mini",
        description="Optimized reasoning model",
        supports_reasoning=True,
        is_premium=True,
    ),
    ChatModel(
        id="gemini-2.5-flash",
        name="Gemini 2.5 Flash",
        description="Fast responses for general-purpose tasks",
        group="Google",
    ),
    ChatModel(
        id="gemini-2.5-pro",
        name="Gemini 2.5 Pro",
        description="Advanced reasoning for complex tasks",
        supports_reasoning=True,
        is_premium=True,
        group="Google",
    ),
]

_BY_ID = {model.id: model for model in CHAT_MODELS}


def get_chat_model(model_id: str | None) -> ChatModel | None:
    return _BY_ID.get(model_id or DEFAULT_CHAT_MODEL)


def is_premium_model(model_id: str | None) -> bool:
    model = get_chat_model(model_id)
    return bool(model and model.is_premium)


def resolve_model_name(model_id: str | None) -> str:
    """Provider model name for a catalogue id; "auto" maps to the default model."""
    if not model_id or model_id == "auto":
        return DEFAULT_CHAT_MODEL
    return model_id
