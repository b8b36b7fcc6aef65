"""
Completion-service client.

The orchestrator talks to the model through `CompletionClient`: an ordered
message list (role/content dicts, plus assistant `tool_calls` and `tool`
results), optional function declarations, a tool-choice mode and a
temperature. `GeminiClient` implements it over google-generativeai.
Every failure surfaces as `CompletionError`.
"""

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Tuple
import asyncio
import json
import logging

from config import settings
from errors import CompletionError

logger = logging.getLogger(__name__)

TOOL_CHOICE_AUTO = "auto"
TOOL_CHOICE_NONE = "none"


@dataclass
class ToolCall:
    name: str
    arguments: str = "{}"  # JSON string, as produced by the model


@dataclass
class Completion:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


@dataclass
class CompletionChunk:
    text: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


class CompletionClient(Protocol):
    async def complete(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: str = TOOL_CHOICE_AUTO,
        temperature: Optional[float] = None,
        json_mode: bool = False,
    ) -> Completion:
        ...

    def stream(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: str = TOOL_CHOICE_AUTO,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[CompletionChunk]:
        ...


# ========================================
# MESSAGE CONVERSION
# ========================================

def to_gemini_contents(messages: List[Dict[str, Any]]) -> Tuple[Optional[str], List[Dict[str, Any]]]:
    """
    Convert role/content messages into Gemini contents.

    Returns:
        (system_instruction, contents)
    """
    system_parts: List[str] = []
    contents: List[Dict[str, Any]] = []

    for message in messages:
        role = message.get("role")
        content = message.get("content") or ""

        if role == "system":
            if content:
                system_parts.append(content)
        elif role == "assistant":
            parts: List[Dict[str, Any]] = []
            if content:
                parts.append({"text": content})
            for call in message.get("tool_calls") or []:
                args = call.get("arguments") or {}
                if isinstance(args, str):
                    try:
                        args = json.loads(args)
                    except ValueError:
                        args = {}
                parts.append({"function_call": {"name": call["name"], "args": args}})
            if parts:
                contents.append({"role": "model", "parts": parts})
        elif role == "tool":
            try:
                response = json.loads(content) if content else {}
            except ValueError:
                response = {"result": content}
            if not isinstance(response, dict):
                response = {"result": response}
            contents.append({
                "role": "user",
                "parts": [{"function_response": {"name": message.get("name", ""), "response": response}}],
            })
        elif content:
            contents.append({"role": "user", "parts": [{"text": content}]})

    system_instruction = "\n\n".join(system_parts) or None
    return system_instruction, contents


def to_tool_config(tool_choice: str) -> Dict[str, Any]:
    """auto / none, or an action name to force exactly that call."""
    if tool_choice in (TOOL_CHOICE_AUTO, TOOL_CHOICE_NONE):
        return {"function_calling_config": {"mode": tool_choice}}
    return {"function_calling_config": {"mode": "any", "allowed_function_names": [tool_choice]}}


def _to_plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _to_plain(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
        return [_to_plain(item) for item in value]
    return value


def _finish_reason_name(candidate: Any) -> str:
    reason = getattr(candidate, "finish_reason", None)
    return getattr(reason, "name", str(reason or ""))


def parse_candidate(response: Any) -> CompletionChunk:
    """Pull text and function calls out of a (possibly partial) response."""
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return CompletionChunk()

    candidate = candidates[0]
    if _finish_reason_name(candidate) == "MALFORMED_FUNCTION_CALL":
        raw = getattr(candidate, "finish_message", "") or ""
        raise CompletionError("Model produced a malformed function call", failed_generation=raw)

    texts: List[str] = []
    calls: List[ToolCall] = []
    content = getattr(candidate, "content", None)
    for part in getattr(content, "parts", None) or []:
        fn = getattr(part, "function_call", None)
        if fn is not None and getattr(fn, "name", ""):
            args = _to_plain(fn.args) if fn.args is not None else {}
            calls.append(ToolCall(name=fn.name, arguments=json.dumps(args)))
            continue
        text = getattr(part, "text", "")
        if text:
            texts.append(text)
    return CompletionChunk(text="".join(texts), tool_calls=calls)


# ========================================
# GEMINI CLIENT
# ========================================

class GeminiClient:
    """CompletionClient over Google Gemini."""

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None, timeout: Optional[float] = None):
        api_key = api_key or settings.GEMINI_API_KEY
        if not api_key:
            raise ValueError("GEMINI_API_KEY environment variable not set")

        genai.configure(api_key=api_key)
        self.model_name = model_name or settings.GEMINI_MODEL
        self.timeout = timeout or settings.LLM_TIMEOUT_SECONDS

    def _prepare(self, messages, tools, tool_choice, temperature, json_mode=False):
        system_instruction, contents = to_gemini_contents(messages)
        if not contents:
            raise CompletionError("No user content to send")

        model = genai.GenerativeModel(self.model_name, system_instruction=system_instruction)
        generation_config: Dict[str, Any] = {
            "temperature": settings.LLM_TEMPERATURE if temperature is None else temperature,
        }
        if json_mode:
            generation_config["response_mime_type"] = "application/json"

        kwargs: Dict[str, Any] = {
            "generation_config": generation_config,
            "request_options": {"timeout": self.timeout},
        }
        if tools:
            kwargs["tools"] = [{"function_declarations": tools}]
            kwargs["tool_config"] = to_tool_config(tool_choice)
        return model, contents, kwargs

    async def complete(self, messages, tools=None, tool_choice=TOOL_CHOICE_AUTO, temperature=None, json_mode=False) -> Completion:
        model, contents, kwargs = self._prepare(messages, tools, tool_choice, temperature, json_mode)
        try:
            response = await asyncio.wait_for(
                model.generate_content_async(contents, **kwargs),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise CompletionError(f"Gemini request timed out after {self.timeout}s") from e
        except (google_exceptions.GoogleAPIError, ValueError, TypeError) as e:
            logger.error(f"[LLM] Gemini request failed: {str(e)}")
            raise CompletionError(f"Gemini request failed: {str(e)}") from e

        chunk = parse_candidate(response)
        return Completion(text=chunk.text, tool_calls=chunk.tool_calls)

    async def stream(self, messages, tools=None, tool_choice=TOOL_CHOICE_AUTO, temperature=None) -> AsyncIterator[CompletionChunk]:
        model, contents, kwargs = self._prepare(messages, tools, tool_choice, temperature)
        try:
            response = await asyncio.wait_for(
                model.generate_content_async(contents, stream=True, **kwargs),
                timeout=self.timeout,
            )
            partials = response.__aiter__()
            while True:
                # Each read is bounded; a stalled stream must not hold the turn
                try:
                    partial = await asyncio.wait_for(partials.__anext__(), timeout=self.timeout)
                except StopAsyncIteration:
                    break
                yield parse_candidate(partial)
        except asyncio.TimeoutError as e:
            raise CompletionError(f"Gemini stream timed out after {self.timeout}s") from e
        except (google_exceptions.GoogleAPIError, ValueError, TypeError) as e:
            logger.error(f"[LLM] Gemini stream failed: {str(e)}")
            raise CompletionError(f"Gemini stream failed: {str(e)}") from e
