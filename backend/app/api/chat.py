"""Chat API: answers analytics questions by letting the model call tools."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from openai import APIError, AsyncOpenAI
from pydantic import BaseModel, Field, ValidationError

from app.chat.registry import build_tools_map, openai_tool_specs
from app.core.config import settings
from app.core.time import now_utc

logger = logging.getLogger(__name__)

router = APIRouter()

SYSTEM_PROMPT = (
    "You are a web analytics assistant. Answer questions about website traffic, "
    "events and conversions by calling the available tools. "
    "Call get-websites first when you do not know the website ID, and "
    "set-active-website once the user picks one. "
    "Dates are YYYY-MM-DD. Quote the numbers the tools return and do not invent data."
)


class ChatMessage(BaseModel):
    role: str = Field(pattern=r"^(user|assistant)$")
    content: str


class ChatRequest(BaseModel):
    messages: list[ChatMessage] = Field(min_length=1)
    websiteId: Optional[str] = None


def _client() -> AsyncOpenAI:
    return AsyncOpenAI(api_key=settings.OPENAI_API_KEY, base_url=settings.OPENAI_BASE_URL)


async def run_tool(name: str, raw_arguments: str, website_id: Optional[str] = None) -> dict[str, Any]:
    """Execute one tool call and return a JSON-serializable payload for the model."""
    tool = build_tools_map().get(name)
    if tool is None:
        return {"error": f"Unknown tool: {name}"}
    try:
        arguments = json.loads(raw_arguments or "{}")
    except json.JSONDecodeError:
        return {"error": "Tool arguments were not valid JSON"}
    if not isinstance(arguments, dict):
        return {"error": "Tool arguments must be a JSON object"}
    if website_id and tool.needs_website:
        arguments.setdefault("websiteId", website_id)

    try:
        return {"result": await run_in_threadpool(tool.execute, arguments)}
    except ValidationError as e:
        return {"error": "Invalid tool input", "details": e.errors(include_url=False)}
    except ValueError as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("Chat tool %s failed", name)
        return {"error": f"Tool execution failed: {e}"}


@router.post("")
async def chat(request: ChatRequest):
    if not settings.OPENAI_API_KEY:
        return JSONResponse(
            status_code=500,
            content={
                "error": "OPENAI_API_KEY is not configured",
                "message": "Set OPENAI_API_KEY to enable chat",
                "timestamp": now_utc().isoformat(),
            },
        )

    client = _client()
    tools = openai_tool_specs()
    messages: list[dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
    messages.extend(message.model_dump() for message in request.messages)
    tool_calls_made: list[dict[str, Any]] = []

    try:
        for step in range(max(1, settings.CHAT_MAX_STEPS)):
            response = await client.chat.completions.create(
                model=settings.CHAT_MODEL,
                messages=messages,
                tools=tools,
                max_tokens=settings.CHAT_MAX_TOKENS,
            )
            message = response.choices[0].message
            if not message.tool_calls:
                return {
                    "message": message.content or "",
                    "toolCalls": tool_calls_made,
                    "steps": step + 1,
                    "timestamp": now_utc().isoformat(),
                }

            messages.append(message.model_dump(exclude_none=True))
            for call in message.tool_calls:
                payload = await run_tool(call.function.name, call.function.arguments, request.websiteId)
                tool_calls_made.append({"name": call.function.name, "ok": "error" not in payload})
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": json.dumps(payload, default=str),
                })
    except APIError as e:
        logger.error("Chat completion failed: %s", e)
        return JSONResponse(
            status_code=502,
            content={"error": "Model request failed", "message": str(e), "timestamp": now_utc().isoformat()},
        )

    logger.warning("Chat stopped after %s steps without a final answer", settings.CHAT_MAX_STEPS)
    return {
        "message": "I could not finish the analysis within the allowed number of steps.",
        "toolCalls": tool_calls_made,
        "steps": settings.CHAT_MAX_STEPS,
        "timestamp": now_utc().isoformat(),
    }
