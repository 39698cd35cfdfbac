"""Multi-model provider abstraction: one completion call plus a tool-calling loop.

Conversations are provider-neutral lists of dicts:

    {"role": "system" | "user", "content": str | [{"text": ..., "cache": bool}]}
    {"role": "assistant", "content": str, "tool_calls": [{"id", "name", "arguments"}]}
    {"role": "tool", "tool_call_id": ..., "name": ..., "content": str}

Each provider function converts them to its own wire format.
"""

import inspect
import json
import os
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import httpx
import structlog
from dotenv import load_dotenv

from storyloom.models import ContextMessage

logger = structlog.get_logger(__name__)

DEFAULT_MODEL = "claude-sonnet"
DEFAULT_MAX_STEPS = 10
ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"


@dataclass
class ModelConfig:
    provider: str
    model_id: str
    env_key: str
    base_url: str | None = None
    thinking: bool = False


MODELS: dict[str, ModelConfig] = {
    # Standard models
    "gpt-4o": ModelConfig("openai", "gpt-4o", "OPENAI_API_KEY"),
    "gemini-flash": ModelConfig("google", "gemini-2.5-flash", "GOOGLE_API_KEY"),
    "claude-sonnet": ModelConfig("anthropic", "claude-sonnet-4-20250514", "ANTHROPIC_API_KEY"),
    "grok": ModelConfig("openai", "grok-3-latest", "XAI_API_KEY", base_url="https://api.x.ai/v1"),
    # Thinking models
    "o3": ModelConfig("openai", "o3", "OPENAI_API_KEY", thinking=True),
    "claude-opus": ModelConfig("anthropic", "claude-opus-4-20250514", "ANTHROPIC_API_KEY", thinking=True),
    "gemini-pro": ModelConfig("google", "gemini-2.5-pro", "GOOGLE_API_KEY", thinking=True),
}


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict = field(default_factory=dict)


@dataclass
class Completion:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"


class GenerationAborted(Exception):
    """The caller's abort signal was set mid-loop."""


def _load_env() -> None:
    """Load the nearest .env walking up from CWD."""
    cwd = Path.cwd()
    for parent in [cwd, *cwd.parents]:
        env_file = parent / ".env"
        if env_file.exists():
            load_dotenv(env_file)
            return


def _get_api_key(config: ModelConfig) -> str:
    """Get API key from environment, raising clear error if missing."""
    _load_env()
    key = os.environ.get(config.env_key)
    if not key:
        raise ValueError(
            f"API key not found: set {config.env_key} environment variable "
            f"or add it to a .env file."
        )
    return key


def resolve_model(model_key: str | None = None) -> str:
    """Explicit key, then STORYLOOM_MODEL, then the default."""
    key = model_key or os.environ.get("STORYLOOM_MODEL") or DEFAULT_MODEL
    if key not in MODELS:
        raise ValueError(f"Unknown model: {key}. Available: {list(MODELS.keys())}")
    return key


def as_message_dict(message: ContextMessage | dict) -> dict:
    return message.to_dict() if isinstance(message, ContextMessage) else message


def _text_of(content) -> str:
    if isinstance(content, str):
        return content
    return "".join(part["text"] for part in content)


def _tool_specs(tools) -> list[tuple[str, str, dict]]:
    return [(t.name, t.description, t.json_schema()) for t in tools or []]


# --- OpenAI ---

async def _send_openai(config: ModelConfig, messages: list[dict], tools) -> Completion:
    """Send via OpenAI SDK (also handles OpenAI-compatible APIs like xAI)."""
    from openai import AsyncOpenAI
    kwargs = {"api_key": _get_api_key(config)}
    if config.base_url:
        kwargs["base_url"] = config.base_url
    client = AsyncOpenAI(**kwargs)

    api_messages = []
    for msg in messages:
        role = msg["role"]
        if role == "system":
            # reasoning models take a developer message instead of system
            api_messages.append({"role": "developer" if config.thinking else "system",
                                 "content": _text_of(msg["content"])})
        elif role == "assistant":
            entry: dict = {"role": "assistant", "content": msg.get("content") or None}
            if msg.get("tool_calls"):
                entry["tool_calls"] = [{
                    "id": c["id"], "type": "function",
                    "function": {"name": c["name"], "arguments": json.dumps(c["arguments"])},
                } for c in msg["tool_calls"]]
            api_messages.append(entry)
        elif role == "tool":
            api_messages.append({"role": "tool", "tool_call_id": msg["tool_call_id"],
                                 "content": msg["content"]})
        else:
            api_messages.append({"role": role, "content": _text_of(msg["content"])})

    create_kwargs: dict = {"model": config.model_id, "messages": api_messages}
    if config.thinking:
        create_kwargs["reasoning_effort"] = "high"
    specs = _tool_specs(tools)
    if specs:
        create_kwargs["tools"] = [
            {"type": "function", "function": {"name": n, "description": d, "parameters": s}}
            for n, d, s in specs
        ]

    response = await client.chat.completions.create(**create_kwargs)
    choice = response.choices[0]
    calls = [
        ToolCall(c.id, c.function.name, json.loads(c.function.arguments or "{}"))
        for c in choice.message.tool_calls or []
    ]
    return Completion(choice.message.content or "", calls, choice.finish_reason or "stop")


# --- Google ---

async def _send_google(config: ModelConfig, messages: list[dict], tools) -> Completion:
    """Send via Google GenAI SDK (google-genai, not deprecated google-generativeai)."""
    from google import genai
    types = genai.types

    client = genai.Client(api_key=_get_api_key(config))

    system_parts = []
    contents = []
    for msg in messages:
        role = msg["role"]
        if role == "system":
            system_parts.append(_text_of(msg["content"]))
        elif role == "assistant":
            parts = [types.Part(text=msg["content"])] if msg.get("content") else []
            parts.extend(
                types.Part(function_call=types.FunctionCall(name=c["name"], args=c["arguments"]))
                for c in msg.get("tool_calls", [])
            )
            contents.append(types.Content(role="model", parts=parts))
        elif role == "tool":
            result = json.loads(msg["content"])
            if not isinstance(result, dict):
                result = {"result": result}
            contents.append(types.Content(role="user", parts=[types.Part(
                function_response=types.FunctionResponse(name=msg["name"], response=result),
            )]))
        else:
            contents.append(types.Content(role="user", parts=[
                types.Part(text=_text_of(msg["content"]))]))

    config_kwargs: dict = {}
    if system_parts:
        config_kwargs["system_instruction"] = "\n\n".join(system_parts)
    if config.thinking:
        config_kwargs["thinking_config"] = types.ThinkingConfig(thinking_budget=10000)
        config_kwargs["http_options"] = types.HttpOptions(timeout=300_000)
    specs = _tool_specs(tools)
    if specs:
        config_kwargs["tools"] = [types.Tool(function_declarations=[
            types.FunctionDeclaration(name=n, description=d, parameters_json_schema=s)
            for n, d, s in specs
        ])]

    response = await client.aio.models.generate_content(
        model=config.model_id,
        contents=contents,
        config=types.GenerateContentConfig(**config_kwargs) if config_kwargs else None,
    )
    candidate = response.candidates[0] if response.candidates else None
    parts = candidate.content.parts if candidate and candidate.content and candidate.content.parts else []
    text = "".join(p.text for p in parts if p.text)
    calls = [
        ToolCall(fc.id or f"call-{uuid.uuid4().hex[:8]}", fc.name, dict(fc.args or {}))
        for fc in response.function_calls or []
    ]
    finish = str(candidate.finish_reason) if candidate and candidate.finish_reason else "stop"
    return Completion(text, calls, "tool-calls" if calls else finish)


# --- Anthropic ---

def _anthropic_blocks(content) -> list[dict] | str:
    """Text blocks; cache-annotated parts get an ephemeral cache_control."""
    if isinstance(content, str):
        return content
    blocks = []
    for part in content:
        block = {"type": "text", "text": part["text"]}
        if part.get("cache"):
            block["cache_control"] = {"type": "ephemeral"}
        blocks.append(block)
    return blocks


def _anthropic_messages(messages: list[dict]) -> tuple[list[dict], list[dict]]:
    system: list[dict] = []
    out: list[dict] = []
    for msg in messages:
        role = msg["role"]
        if role == "system":
            blocks = _anthropic_blocks(msg["content"])
            system.extend([{"type": "text", "text": blocks}] if isinstance(blocks, str) else blocks)
        elif role == "assistant":
            blocks = [{"type": "text", "text": msg["content"]}] if msg.get("content") else []
            blocks.extend({"type": "tool_use", "id": c["id"], "name": c["name"],
                           "input": c["arguments"]} for c in msg.get("tool_calls", []))
            out.append({"role": "assistant", "content": blocks})
        elif role == "tool":
            result = {"type": "tool_result", "tool_use_id": msg["tool_call_id"],
                      "content": msg["content"]}
            # Consecutive tool results share one user turn
            if out and out[-1]["role"] == "user" and isinstance(out[-1]["content"], list) \
                    and out[-1]["content"] and out[-1]["content"][0].get("type") == "tool_result":
                out[-1]["content"].append(result)
            else:
                out.append({"role": "user", "content": [result]})
        else:
            out.append({"role": "user", "content": _anthropic_blocks(msg["content"])})
    return system, out


async def _send_anthropic(config: ModelConfig, messages: list[dict], tools) -> Completion:
    """Send via Anthropic API using httpx directly."""
    api_key = _get_api_key(config)
    system, api_messages = _anthropic_messages(messages)
    specs = _tool_specs(tools)

    body: dict = {
        "model": config.model_id,
        "max_tokens": 16384 if config.thinking else 4096,
        "messages": api_messages,
    }
    if system:
        body["system"] = system
    if specs:
        body["tools"] = [{"name": n, "description": d, "input_schema": s} for n, d, s in specs]
    elif config.thinking:
        body["thinking"] = {"type": "enabled", "budget_tokens": 10000}

    async with httpx.AsyncClient(timeout=300.0 if config.thinking else 120.0) as client:
        response = await client.post(
            ANTHROPIC_URL,
            headers={
                "x-api-key": api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            },
            json=body,
        )
    response.raise_for_status()
    data = response.json()
    # Skip thinking blocks
    text = "".join(b["text"] for b in data["content"] if b["type"] == "text")
    calls = [ToolCall(b["id"], b["name"], b.get("input") or {})
             for b in data["content"] if b["type"] == "tool_use"]
    return Completion(text, calls, data.get("stop_reason") or "stop")


_DISPATCH = {
    "openai": _send_openai,
    "google": _send_google,
    "anthropic": _send_anthropic,
}


async def generate(model_key: str, messages: list, tools=None) -> Completion:
    """Send a conversation to a model and return one completion.

    Args:
        model_key: Key from MODELS dict (e.g., "gpt-4o", "gemini-flash", "claude-sonnet")
        messages: ContextMessage objects or provider-neutral message dicts
        tools: Optional ToolDefinition list offered to the model
    """
    if model_key not in MODELS:
        raise ValueError(f"Unknown model: {model_key}. Available: {list(MODELS.keys())}")

    config = MODELS[model_key]
    dispatch_fn = _DISPATCH[config.provider]
    logger.debug("Model request", model=model_key, messages=len(messages),
                 tools=len(tools or []))
    return await dispatch_fn(config, [as_message_dict(m) for m in messages], tools)


async def _execute_tool(tool, arguments: dict) -> Any:
    result = tool.execute(arguments)
    if inspect.isawaitable(result):
        result = await result
    return result


def _check_abort(abort) -> None:
    if abort is not None and abort.is_set():
        raise GenerationAborted("Generation aborted")


async def run_tool_loop(model_key: str, messages: list, tools=None,
                        max_steps: int = DEFAULT_MAX_STEPS, abort=None):
    """Drive generate() until the model stops calling tools.

    Yields event dicts: text-delta, tool-call, tool-result and a final finish
    event carrying finish_reason and step_count. Raises GenerationAborted when
    the abort event (an asyncio.Event) is set between steps.
    """
    conversation = [as_message_dict(m) for m in messages]
    by_name = {t.name: t for t in tools or []}

    for step in range(1, max_steps + 1):
        _check_abort(abort)
        completion = await generate(model_key, conversation, tools)
        _check_abort(abort)

        if completion.text:
            yield {"type": "text-delta", "text": completion.text}
        if not completion.tool_calls:
            yield {"type": "finish", "finish_reason": completion.finish_reason, "step_count": step}
            return

        conversation.append({
            "role": "assistant",
            "content": completion.text,
            "tool_calls": [asdict(c) for c in completion.tool_calls],
        })
        for call in completion.tool_calls:
            yield {"type": "tool-call", "id": call.id, "name": call.name, "input": call.arguments}
            tool = by_name.get(call.name)
            if tool is None:
                output = {"error": f"Unknown tool: {call.name}"}
            else:
                output = await _execute_tool(tool, call.arguments)
            yield {"type": "tool-result", "id": call.id, "name": call.name, "output": output}
            conversation.append({
                "role": "tool", "tool_call_id": call.id, "name": call.name,
                "content": json.dumps(output, default=str),
            })

    logger.warning("Tool loop hit step limit", model=model_key, max_steps=max_steps)
    yield {"type": "finish", "finish_reason": "max-steps", "step_count": max_steps}


async def collect_text(events) -> str:
    """Drain a run_tool_loop event stream, returning the concatenated text."""
    chunks = []
    async for event in events:
        if event["type"] == "text-delta":
            chunks.append(event["text"])
    return "".join(chunks)
