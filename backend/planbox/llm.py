"""
Language model calls. Gemini models go through the google.genai SDK,
`claude-*` models through Anthropic. Both take the same role-tagged
`contents` list the chat builds: [{"role": "user", "parts": [{"text": ...}]}].
"""

import asyncio
import os

import anthropic

from planbox.errors import CollaboratorError, ConfigurationError


LLM_TIMEOUT = 300  # seconds
CLAUDE_MAX_TOKENS = 16000


def _get_gemini_key():
    key = os.getenv("GEMINI_API_KEY")
    if not key:
        from planbox.config import get_settings
        key = get_settings().gemini_api_key
    return key


def _get_anthropic_key():
    key = os.getenv("ANTHROPIC_API_KEY")
    if not key:
        from planbox.config import get_settings
        key = get_settings().anthropic_api_key
    return key


def _part_text(content: dict) -> str:
    return "\n".join(p.get("text", "") for p in content.get("parts", []) if isinstance(p, dict))


def to_claude_messages(contents: list) -> list:
    """Flatten parts to text and merge consecutive same-role turns."""
    messages = []
    for content in contents:
        role = "assistant" if content.get("role") in ("model", "assistant") else "user"
        text = _part_text(content)
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n\n" + text
        else:
            messages.append({"role": role, "content": text})
    return messages


async def _gemini_generate(contents: list, model: str, apply_mode: bool) -> str:
    api_key = _get_gemini_key()
    if not api_key:
        raise ConfigurationError("GEMINI_API_KEY not set")

    from google import genai
    from google.genai import types

    client = genai.Client(api_key=api_key)
    config = types.GenerateContentConfig(
        temperature=0.2 if apply_mode else 0.7,
        response_mime_type="application/json" if apply_mode else None,
    )
    response = await asyncio.wait_for(
        client.aio.models.generate_content(model=model, contents=contents, config=config),
        timeout=LLM_TIMEOUT,
    )
    return response.text or ""


async def _claude_generate(contents: list, model: str) -> str:
    api_key = _get_anthropic_key()
    if not api_key:
        raise ConfigurationError("ANTHROPIC_API_KEY not set")

    client = anthropic.AsyncAnthropic(api_key=api_key)
    response = await asyncio.wait_for(
        client.messages.create(
            model=model,
            max_tokens=CLAUDE_MAX_TOKENS,
            messages=to_claude_messages(contents),
        ),
        timeout=LLM_TIMEOUT,
    )
    return "".join(block.text for block in response.content if getattr(block, "type", "") == "text")


async def generate_text(contents: list, model: str | None = None, apply_mode: bool = False) -> str:
    """Send `contents` to the model and return its text reply."""
    if not model:
        from planbox.config import get_settings
        model = get_settings().default_model

    print(f"  [llm] {model}: {len(contents)} part(s), apply_mode={apply_mode}")
    try:
        if model.startswith("claude"):
            return await _claude_generate(contents, model)
        return await _gemini_generate(contents, model, apply_mode)
    except ConfigurationError:
        raise
    except asyncio.TimeoutError:
        raise CollaboratorError(f"{model} timed out after {LLM_TIMEOUT}s")
    except Exception as e:
        raise CollaboratorError(f"{model} call failed: {e}") from e
