"""LangSmith tracing for provider calls."""

import logging
import os
from typing import Any, Dict, Iterable, Optional

from ..core.config import Settings

logger = logging.getLogger(__name__)

BASE_TAGS = ("tutor-core",)


def initialize_langsmith(settings: Settings) -> bool:
    """
    Export LangSmith settings into the environment read by LangChain.

    Returns:
        True when tracing was requested and an API key is present.
    """
    tracing_enabled = bool(settings.LANGSMITH_TRACING) and bool(settings.LANGSMITH_API_KEY.strip())

    os.environ["LANGSMITH_TRACING"] = "true" if tracing_enabled else "false"
    os.environ["LANGCHAIN_TRACING_V2"] = "true" if tracing_enabled else "false"

    exported = {
        "LANGSMITH_API_KEY": settings.LANGSMITH_API_KEY,
        "LANGSMITH_ENDPOINT": settings.LANGSMITH_ENDPOINT,
        "LANGSMITH_PROJECT": settings.LANGSMITH_PROJECT,
        "LANGSMITH_WORKSPACE_ID": settings.LANGSMITH_WORKSPACE_ID,
    }
    for key, value in exported.items():
        if value:
            os.environ[key] = value

    if tracing_enabled:
        logger.info(
            "LangSmith tracing enabled (project=%s, endpoint=%s)",
            settings.LANGSMITH_PROJECT,
            settings.LANGSMITH_ENDPOINT,
        )
    else:
        logger.info("LangSmith tracing disabled")

    return tracing_enabled


def build_trace_config(
    thread_id: str,
    tags: Optional[Iterable[str]] = None,
    metadata: Optional[Dict[str, Any]] = None,
    run_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the runnable config attached to a provider call."""
    config: Dict[str, Any] = {
        "configurable": {"thread_id": thread_id},
        "tags": [*BASE_TAGS, *(tags or [])],
    }
    if metadata:
        config["metadata"] = {key: value for key, value in metadata.items() if value is not None}
    if run_name:
        config["run_name"] = run_name
    return config
