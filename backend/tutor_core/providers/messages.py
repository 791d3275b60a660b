"""Prompt construction helpers shared by all provider adapters.

Messages travel through the core as plain ``{"role", "content"}`` dicts and
are converted to backend-specific shapes only at the adapter boundary.
"""

from typing import Any, Iterable, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage


CONTEXT_PREFIX = "Context: "


def message_content(message: Any) -> str:
    """Extract plain-text content from dict, ORM or LangChain message objects."""
    if isinstance(message, dict):
        content = message.get("content", "")
        return content if isinstance(content, str) else str(content)

    if isinstance(message, BaseMessage):
        content = getattr(message, "content", "")
        return content if isinstance(content, str) else str(content)

    if hasattr(message, "content"):
        content = message.content
        return content if isinstance(content, str) else str(content)

    return str(message) if message is not None else ""


def message_role(message: Any) -> str:
    """Infer a normalized role for dict, ORM or LangChain message objects."""
    if isinstance(message, dict):
        return str(message.get("role", "user")).lower()

    if isinstance(message, AIMessage):
        return "assistant"
    if isinstance(message, HumanMessage):
        return "user"
    if isinstance(message, SystemMessage):
        return "system"

    role = getattr(message, "role", None)
    if role:
        return str(role).lower()

    return "user"


def build_prompt_messages(
    message: str,
    system_prompt: Optional[str] = None,
    context_note: Optional[str] = None,
    history: Iterable[Any] = (),
) -> List[dict]:
    """
    Build the ordered prompt sequence sent to a backend.

    Order: system prompt, history (oldest first), context note, current
    user message. Only user/assistant turns are taken from history.
    """
    prompt: List[dict] = []

    if system_prompt:
        prompt.append({"role": "system", "content": system_prompt})

    for item in history:
        role = message_role(item)
        if role in ("user", "assistant"):
            prompt.append({"role": role, "content": message_content(item)})

    if context_note:
        prompt.append({"role": "system", "content": f"{CONTEXT_PREFIX}{context_note}"})

    prompt.append({"role": "user", "content": message})
    return prompt


def to_langchain_messages(prompt: Iterable[dict]) -> List[BaseMessage]:
    """Convert canonical prompt dicts into LangChain message objects."""
    converted: List[BaseMessage] = []
    for item in prompt:
        role = message_role(item)
        content = message_content(item)
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted
