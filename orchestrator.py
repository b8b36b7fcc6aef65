"""
Chat turn orchestrator.

One turn moves through

    received -> context-built -> model-called -> actions-extracted
             -> actions-executed -> reply-assembled -> persisted -> done

with `error` reachable from any state. `run_turn` returns the whole result;
`stream_turn` yields `start`, `chunk`, `action`, `done` and `error` events
as they happen.

Model calls go down a fallback ladder: a structured call with tools, then
recovery of calls from a rejected generation, then a plain retry without
tools. If all of them fail the turn still completes with a fixed reply.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional
import asyncio
import json
import logging
import weakref

from sqlalchemy.orm import Session

import conversation
from actions import ActionOutcome, ActionRegistry, registry as default_registry
from ai_context import TurnContext, build_turn_context
from config import settings
from errors import CompletionError, CounsellorError, FatalTurnError, ValidationError
from executor import ActionExecutor
from extractor import (
    SOURCE_RECOVERED,
    ExtractedCall,
    StreamingTextFilter,
    extract,
    recover_failed_generation,
    strip_pseudo_calls,
)
from llm_client import CompletionChunk, CompletionClient, TOOL_CHOICE_AUTO, TOOL_CHOICE_NONE, ToolCall
from prompts import (
    EMPTY_REPLY,
    FALLBACK_REPLY,
    FOLLOWUP_INSTRUCTION,
    SERVICE_UNAVAILABLE_REPLY,
    get_system_prompt,
    get_text_only_correction,
)

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    RECEIVED = "received"
    CONTEXT_BUILT = "context-built"
    MODEL_CALLED = "model-called"
    ACTIONS_EXTRACTED = "actions-extracted"
    ACTIONS_EXECUTED = "actions-executed"
    REPLY_ASSEMBLED = "reply-assembled"
    PERSISTED = "persisted"
    DONE = "done"
    ERROR = "error"


@dataclass
class TurnResult:
    conversation_id: int
    message: str
    actions: List[ActionOutcome] = field(default_factory=list)
    state: TurnState = TurnState.DONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "message": self.message,
            "actions": [outcome.to_dict() for outcome in self.actions],
        }


@dataclass
class ModelResult:
    """What one rung of the fallback ladder produced."""

    text: str = ""
    calls: List[ExtractedCall] = field(default_factory=list)
    source: Optional[str] = None
    failed: bool = False


class _Turn:
    """Tracks the state of a single turn for logging."""

    def __init__(self, user_id: int):
        self.user_id = user_id
        self.state = TurnState.RECEIVED
        logger.debug(f"[TURN] user {user_id}: {self.state.value}")

    def advance(self, state: TurnState):
        self.state = state
        logger.debug(f"[TURN] user {self.user_id}: {state.value}")

    def fail(self, error: Exception):
        logger.error(f"[TURN] user {self.user_id} failed in state {self.state.value}: {str(error)}")
        self.state = TurnState.ERROR


def _cancelled(cancel_event: Optional[asyncio.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


_STREAM_END = object()
_STREAM_CANCELLED = object()


async def _read_chunk(chunks: AsyncIterator[CompletionChunk]):
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return _STREAM_END


async def _next_chunk(chunks: AsyncIterator[CompletionChunk], cancel_event: Optional[asyncio.Event]):
    """Next stream chunk, `_STREAM_END`, or `_STREAM_CANCELLED` if the client left first."""
    if cancel_event is None:
        return await _read_chunk(chunks)
    if cancel_event.is_set():
        return _STREAM_CANCELLED

    read = asyncio.ensure_future(_read_chunk(chunks))
    cancelled = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        cancelled.cancel()
        if not read.done():
            read.cancel()
    if read.cancelled():
        return _STREAM_CANCELLED
    return read.result()


class Orchestrator:
    def __init__(
        self,
        client: CompletionClient,
        session_factory: Callable[[], Session],
        registry: Optional[ActionRegistry] = None,
        recommender=None,
        history_window: Optional[int] = None,
        serialize_user_turns: Optional[bool] = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.registry = registry or default_registry
        self.executor = ActionExecutor(session_factory, self.registry, recommender)
        self.history_window = settings.HISTORY_WINDOW if history_window is None else history_window
        self.serialize_user_turns = (
            settings.SERIALIZE_USER_TURNS if serialize_user_turns is None else serialize_user_turns
        )
        self._user_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()

    # ========================================
    # PUBLIC API
    # ========================================

    async def run_turn(self, user_id: int, message: str, conversation_id: Optional[int] = None) -> TurnResult:
        """
        Process one user message end to end.

        Raises:
            ValidationError: empty message
            NotFoundError: unknown user or conversation
            FatalTurnError: the turn could not be persisted
        """
        message = self._check_message(message)
        lock = self._user_lock(user_id)
        if lock is None:
            return await self._run_turn(user_id, message, conversation_id)
        async with lock:
            return await self._run_turn(user_id, message, conversation_id)

    async def stream_turn(
        self,
        user_id: int,
        message: str,
        conversation_id: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Streaming variant of `run_turn`. Ends with a `done` or `error` event."""
        try:
            message = self._check_message(message)
        except ValidationError as e:
            yield {"type": "error", "message": e.user_message}
            return

        lock = self._user_lock(user_id)
        if lock is None:
            async for event in self._stream_turn(user_id, message, conversation_id, cancel_event):
                yield event
            return
        async with lock:
            async for event in self._stream_turn(user_id, message, conversation_id, cancel_event):
                yield event

    # ========================================
    # BUFFERED TURN
    # ========================================

    async def _run_turn(self, user_id: int, message: str, conversation_id: Optional[int]) -> TurnResult:
        turn = _Turn(user_id)
        try:
            context = await build_turn_context(self.session_factory, user_id, conversation_id)
            turn.advance(TurnState.CONTEXT_BUILT)

            messages = self._prompt_messages(context, message)
            model = await self._call_model(messages)
            turn.advance(TurnState.MODEL_CALLED)
            turn.advance(TurnState.ACTIONS_EXTRACTED)

            executed = [pair async for pair in self.executor.run(model.calls, context)]
            outcomes = [outcome for _, outcome in executed]
            turn.advance(TurnState.ACTIONS_EXECUTED)

            reply = await self._assemble_reply(messages, model, executed)
            turn.advance(TurnState.REPLY_ASSEMBLED)

            await self._persist(context.conversation_id, message, reply)
            turn.advance(TurnState.PERSISTED)
        except CounsellorError as e:
            turn.fail(e)
            raise

        turn.advance(TurnState.DONE)
        logger.info(f"[ENDPOINT] Turn done for user {user_id}: {len(outcomes)} actions, {len(reply)} chars")
        return TurnResult(context.conversation_id, reply, outcomes, turn.state)

    # ========================================
    # STREAMING TURN
    # ========================================

    async def _stream_turn(
        self,
        user_id: int,
        message: str,
        conversation_id: Optional[int],
        cancel_event: Optional[asyncio.Event],
    ) -> AsyncIterator[Dict[str, Any]]:
        turn = _Turn(user_id)
        try:
            context = await build_turn_context(self.session_factory, user_id, conversation_id)
            turn.advance(TurnState.CONTEXT_BUILT)
            yield {"type": "start", "conversation_id": context.conversation_id}

            messages = self._prompt_messages(context, message)
            names = self.registry.names
            text_filter = StreamingTextFilter(names)
            tool_calls: List[ToolCall] = []
            emitted = False
            failure: Optional[CompletionError] = None

            chunks = self.client.stream(messages, tools=self.registry.function_declarations(), tool_choice=TOOL_CHOICE_AUTO)
            try:
                while True:
                    chunk = await _next_chunk(chunks, cancel_event)
                    if chunk is _STREAM_END or chunk is _STREAM_CANCELLED or _cancelled(cancel_event):
                        break
                    tool_calls.extend(chunk.tool_calls)
                    visible = text_filter.feed(chunk.text)
                    if visible:
                        emitted = True
                        yield {"type": "chunk", "content": visible}
            except CompletionError as e:
                logger.warning(f"[LLM] Stream failed: {str(e)}")
                failure = e

            if _cancelled(cancel_event):
                logger.info(f"[ENDPOINT] Stream cancelled by client for user {user_id}")
                await self._persist_partial(context.conversation_id, message, text_filter.text, [])
                return

            tail = text_filter.flush()
            if tail:
                emitted = True
                yield {"type": "chunk", "content": tail}

            if failure is not None and not emitted and not tool_calls:
                model = await self._fallback(messages, failure)
                if model.text:
                    yield {"type": "chunk", "content": model.text}
                    emitted = True
            else:
                calls, source = extract(text_filter.raw, tool_calls, names)
                model = ModelResult(text=text_filter.text, calls=calls, source=source)
            turn.advance(TurnState.MODEL_CALLED)
            turn.advance(TurnState.ACTIONS_EXTRACTED)

            executed = []
            async for call, outcome in self.executor.run(model.calls, context, cancel_event):
                executed.append((call, outcome))
                yield {"type": "action", "action": outcome.to_dict()}
            outcomes = [outcome for _, outcome in executed]
            turn.advance(TurnState.ACTIONS_EXECUTED)

            if _cancelled(cancel_event):
                logger.info(f"[ENDPOINT] Stream cancelled by client for user {user_id}")
                await self._persist_partial(context.conversation_id, message, model.text, outcomes)
                return

            reply = await self._assemble_reply(messages, model, executed)
            if not model.text:
                yield {"type": "chunk", "content": reply}
            turn.advance(TurnState.REPLY_ASSEMBLED)

            await self._persist(context.conversation_id, message, reply)
            turn.advance(TurnState.PERSISTED)

            turn.advance(TurnState.DONE)
            yield {
                "type": "done",
                "conversation_id": context.conversation_id,
                "message": reply,
                "actions": [outcome.to_dict() for outcome in outcomes],
            }
        except CounsellorError as e:
            turn.fail(e)
            yield {"type": "error", "message": e.user_message}
        except Exception as e:
            logger.exception(f"[ERROR] Unexpected error in chat stream: {str(e)}")
            turn.fail(e)
            yield {"type": "error", "message": FatalTurnError.user_message}

    # ========================================
    # MODEL CALLS
    # ========================================

    def _prompt_messages(self, context: TurnContext, message: str) -> List[Dict[str, Any]]:
        return [
            {"role": "system", "content": get_system_prompt(context)},
            *conversation.prompt_window(context.history, self.history_window),
            {"role": "user", "content": message},
        ]

    async def _call_model(self, messages: List[Dict[str, Any]]) -> ModelResult:
        names = self.registry.names
        try:
            completion = await self.client.complete(
                messages,
                tools=self.registry.function_declarations(),
                tool_choice=TOOL_CHOICE_AUTO,
            )
        except CompletionError as e:
            logger.warning(f"[LLM] Structured call failed: {str(e)}")
            return await self._fallback(messages, e)

        calls, source = extract(completion.text, completion.tool_calls, names)
        if calls:
            logger.info(f"[EXTRACT] {len(calls)} calls from {source} channel")
        return ModelResult(strip_pseudo_calls(completion.text, names), calls, source)

    async def _fallback(self, messages: List[Dict[str, Any]], error: CompletionError) -> ModelResult:
        names = self.registry.names

        if error.failed_generation:
            calls = recover_failed_generation(error.failed_generation, names)
            if calls:
                logger.info(f"[EXTRACT] Recovered {len(calls)} calls from failed generation")
                return ModelResult("", calls, SOURCE_RECOVERED)

        retry = [*messages, {"role": "system", "content": get_text_only_correction(names)}]
        try:
            completion = await self.client.complete(retry, tools=None, tool_choice=TOOL_CHOICE_NONE)
        except CompletionError as e:
            logger.error(f"[LLM] Text-only retry failed: {str(e)}")
            return ModelResult(SERVICE_UNAVAILABLE_REPLY, failed=True)

        calls, source = extract(completion.text, completion.tool_calls, names)
        if calls:
            logger.info(f"[EXTRACT] {len(calls)} calls from text-only retry ({source})")
        return ModelResult(strip_pseudo_calls(completion.text, names), calls, source)

    async def _assemble_reply(self, messages: List[Dict[str, Any]], model: ModelResult, executed) -> str:
        """Model text if any, else a follow-up summary of the actions, else a fixed sentence."""
        if model.text:
            return model.text
        if not executed:
            return EMPTY_REPLY

        summary = await self._follow_up(messages, executed)
        return summary or FALLBACK_REPLY

    async def _follow_up(self, messages: List[Dict[str, Any]], executed) -> Optional[str]:
        """Second completion seeded with action outcomes as tool results."""
        followup = [
            *messages,
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"name": call.name, "arguments": call.arguments} for call, _ in executed],
            },
        ]
        for _, outcome in executed:
            followup.append({
                "role": "tool",
                "name": outcome.action,
                "content": json.dumps(outcome.to_dict(), default=str),
            })
        followup.append({"role": "system", "content": FOLLOWUP_INSTRUCTION})

        try:
            completion = await self.client.complete(
                followup,
                tools=self.registry.function_declarations(),
                tool_choice=TOOL_CHOICE_NONE,
            )
        except CompletionError as e:
            logger.warning(f"[LLM] Follow-up summary failed: {str(e)}")
            return None
        return strip_pseudo_calls(completion.text, self.registry.names) or None

    # ========================================
    # PERSISTENCE
    # ========================================

    def _append_messages(self, conversation_id: int, user_message: str, reply: Optional[str]):
        with self.session_factory() as db:
            conversation.add_message(db, conversation_id, "user", user_message)
            if reply:
                conversation.add_message(db, conversation_id, "assistant", reply)

    async def _persist(self, conversation_id: int, user_message: str, reply: str):
        try:
            await asyncio.to_thread(self._append_messages, conversation_id, user_message, reply)
        except Exception as e:
            logger.exception(f"[ERROR] Failed to persist turn for conversation {conversation_id}: {str(e)}")
            raise FatalTurnError(str(e)) from e

    async def _persist_partial(self, conversation_id: int, user_message: str, text: str, outcomes: List[ActionOutcome]):
        """Save what a cancelled turn produced so far."""
        reply = text or (FALLBACK_REPLY if outcomes else None)
        try:
            await asyncio.to_thread(self._append_messages, conversation_id, user_message, reply)
        except Exception as e:
            logger.exception(f"[ERROR] Failed to persist cancelled turn for conversation {conversation_id}: {str(e)}")

    # ========================================
    # HELPERS
    # ========================================

    def _check_message(self, message: str) -> str:
        if not message or not message.strip():
            raise ValidationError("message", "is required")
        return message.strip()

    def _user_lock(self, user_id: int) -> Optional[asyncio.Lock]:
        """Per-user lock serializing turns for one user, or None when disabled."""
        if not self.serialize_user_turns:
            return None
        lock = self._user_locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._user_locks[user_id] = lock
        return lock
