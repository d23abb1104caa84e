"""Article-writing workflow: outline and draft stream from a secondary model,
confirmation and the final answer are rendered by the caller."""
from __future__ import annotations

from typing import Any, AsyncIterator

from stepflow.agent.messages import Message, TextPart
from stepflow.agent.prompts import (
    CONFIRMATION_TOOL_DESCRIPTION,
    DRAFT_TOOL_DESCRIPTION,
    FINAL_ANSWER_TOOL_DESCRIPTION,
    OUTLINE_TOOL_DESCRIPTION,
    build_draft_prompt,
    build_outline_prompt,
)
from stepflow.agent.providers.base import ChatRequest, ModelAdapter
from stepflow.agent.tool_registry import ToolDefinition

TONE_PROPERTY = {
    "type": "string",
    "description": "The tone of the blog, e.g. professional, casual, humorous.",
    "default": "casual",
}
TITLE_PROPERTY = {"type": "string", "description": "The title of the blog."}


def _text_stream(adapter: ModelAdapter, model: str, prompt: str) -> AsyncIterator[str]:
    request = ChatRequest(
        model=model,
        system_prompt="",
        messages=[Message(role="user", parts=[TextPart(content=prompt)])],
    )
    return adapter.complete_text(request)


def build_writer_tools(adapter: ModelAdapter, model: str) -> list[ToolDefinition]:
    """Build the writer tools bound to the model that streams outlines and drafts."""

    async def generate_outline(title: str, tone: str = "casual") -> AsyncIterator[dict[str, Any]]:
        outline = ""
        chunks = _text_stream(adapter, model, build_outline_prompt(title, tone))
        try:
            async for chunk in chunks:
                outline += chunk
                yield {"status": "loading", "text": chunk, "outline": outline}
        finally:
            await chunks.aclose()
        yield {"status": "success", "outline": outline}

    async def generate_draft(outline: str, title: str, tone: str = "casual") -> AsyncIterator[dict[str, Any]]:
        draft = ""
        chunks = _text_stream(adapter, model, build_draft_prompt(outline, title, tone))
        try:
            async for chunk in chunks:
                draft += chunk
                yield {"status": "loading", "text": chunk, "draft": draft}
        finally:
            await chunks.aclose()
        yield {"status": "success", "draft": draft}

    return [
        ToolDefinition(
            name="generateOutline",
            description=OUTLINE_TOOL_DESCRIPTION,
            input_schema={
                "type": "object",
                "properties": {"title": TITLE_PROPERTY, "tone": TONE_PROPERTY},
                "required": ["title"],
            },
            output_schema={
                "type": "object",
                "properties": {"outline": {"type": "string", "description": "The outline of the blog."}},
                "required": ["outline"],
            },
            executor=generate_outline,
        ),
        ToolDefinition(
            name="generateDraft",
            description=DRAFT_TOOL_DESCRIPTION,
            input_schema={
                "type": "object",
                "properties": {
                    "outline": {"type": "string", "description": "The outline bullet points of the blog."},
                    "title": TITLE_PROPERTY,
                    "tone": TONE_PROPERTY,
                },
                "required": ["outline", "title"],
            },
            output_schema={
                "type": "object",
                "properties": {
                    "draft": {
                        "type": "string",
                        "minLength": 0,
                        "maxLength": 200,
                        "description": "The draft of the blog.",
                    },
                },
                "required": ["draft"],
            },
            executor=generate_draft,
        ),
        ToolDefinition(
            name="askForConfirmation",
            description=CONFIRMATION_TOOL_DESCRIPTION,
            input_schema={"type": "object", "properties": {}},
        ),
        ToolDefinition(
            name="showFinalAnswer",
            description=FINAL_ANSWER_TOOL_DESCRIPTION,
            input_schema={
                "type": "object",
                "properties": {"message": {"type": "string"}},
                "required": ["message"],
            },
            is_final=True,
        ),
    ]
