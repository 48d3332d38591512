from datetime import date
from typing import Any

CONTEXT_CONTENT_LIMIT = 1000
INSIGHTS_CONVERSATION_LIMIT = 2500


def base_system_prompt(
    user_name: str | None = None,
    use_case: str | None = None,
    today: date | None = None,
) -> str:
    today = today or date.today()
    lines = [
        "You are Pen, an AI creative assistant that helps people write, plan and build.",
        "Keep your responses concise and helpful.",
        f"Today's date is {today.strftime('%A, %B %d, %Y')}.",
    ]
    if user_name:
        lines.append(f"The user's name is {user_name}.")
    if use_case:
        lines.append(f"The user is using this assistant for: {use_case}.")
    return "\n".join(lines)


MEMORY_TOOLS_PROMPT = """
IMPORTANT MEMORY TOOL INSTRUCTIONS:
You have access to a memory search tool that can find relevant past conversations and information.
You also have an add_memory tool that stores important information for future conversations.

Pick the most appropriate category when adding a memory:
1. preferences: profile details and style choices (name, time zone, role, communication style, likes and dislikes).
2. goals: long-term objectives and active projects the user is working on.
3. tasks: concrete to-dos, deadlines and follow-ups.
4. knowledge: technical facts, configuration details and learned patterns.

When using the search_memories tool:
1. ONLY search when the user asks about past conversations or you genuinely need earlier context.
2. DO NOT search for general knowledge.
3. NEVER include the raw tool response or any JSON in your message text.
4. Reference what you found in a natural conversational way; the results are shown to the user separately.
5. If the first search misses, try again with different keywords. You can make up to 5 searches per response.
"""

TASK_TOOLS_PROMPT = """
TASK PLANNING INSTRUCTIONS:
For requests that need several steps, call create_task_plan first with a short ordered list of tasks.
Each task may list dependencies by the title of an earlier task.
Work through the plan in order. Mark a task in_progress with update_task when you start it and call
complete_task when it is finished. Use get_task_status to check what is left and add_task when a new
step turns up. Never paste tool output or JSON into your reply; summarize progress in plain language.
"""

BOOK_WORKFLOW_PROMPT = """
BOOK WORKFLOW INSTRUCTIONS:
Books move through fixed stages: planned, drafted, and for picture books segmented, illustrated and
composed, then completed. Use get_book_progress to see the current stage.
A stage can only be left once the user has approved it: ask the user to review the work, and call
approve_workflow_step only after they explicitly approve. Then call advance_workflow to move on.
If advancing fails, tell the user what is missing instead of retrying.
"""

TITLE_SYSTEM_PROMPT = """
Generate a concise title that summarizes the user's message. Rules:
- Maximum 80 characters
- No quotes, colons, or prefixes like "Here is" or "Title:"
- Just return the title directly
- Make it descriptive and clear
"""

INSIGHTS_SYSTEM_PROMPT = """
Extract insights from conversation. Be very concise.
- one_sentence_summary: one line describing what the conversation was about.
- full_summary: two or three sentences covering the outcome.
- topics: the main topics discussed, at most five.
- user_context: what the conversation reveals about the user's goals, preferences and expertise, or null.
"""


def build_contexts_section(contexts: list[dict[str, Any]] | None) -> str:
    if not contexts:
        return ""
    blocks = []
    for index, context in enumerate(contexts, start=1):
        title = context.get("title") or "Untitled"
        kind = context.get("kind") or "text"
        content = str(context.get("content") or "")
        if len(content) > CONTEXT_CONTENT_LIMIT:
            content = content[:CONTEXT_CONTENT_LIMIT] + "..."
        blocks.append(f"[DOCUMENT {index}]: {title} ({kind})\n{content}")
    return "CONTEXT INFORMATION:\n" + "\n\n".join(blocks)


def build_chat_system_prompt(
    *,
    user_name: str | None = None,
    use_case: str | None = None,
    contexts: list[dict[str, Any]] | None = None,
    memory_prompt: str = "",
    memory_tools: bool = True,
) -> str:
    sections = [base_system_prompt(user_name, use_case)]
    if memory_tools:
        sections.append(MEMORY_TOOLS_PROMPT.strip())
    sections.append(TASK_TOOLS_PROMPT.strip())
    sections.append(BOOK_WORKFLOW_PROMPT.strip())
    contexts_section = build_contexts_section(contexts)
    if contexts_section:
        sections.append(contexts_section)
    if memory_prompt:
        sections.append(memory_prompt)
    return "\n\n".join(sections)


def build_insights_user_prompt(title: str | None, transcript: str) -> str:
    if len(transcript) > INSIGHTS_CONVERSATION_LIMIT:
        transcript = transcript[:INSIGHTS_CONVERSATION_LIMIT] + "..."
    return f"CHAT TITLE: {title or 'Untitled'}\n\nCONVERSATION:\n{transcript}"
