"""
Action executor.

Runs extracted calls in order. Every call gets its own database session and
its own error boundary: a failure becomes a failed ActionOutcome and the
remaining calls still run.
"""

from typing import AsyncIterator, Callable, Iterable, List, Optional, Tuple
import asyncio
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from actions import ActionContext, ActionDefinition, ActionOutcome, ActionRegistry, registry as default_registry
from ai_context import TurnContext
from errors import ExternalServiceError, NotFoundError, StoreError, ValidationError
from extractor import ExtractedCall
from normalizer import normalize_arguments

logger = logging.getLogger(__name__)


class ActionExecutor:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        registry: Optional[ActionRegistry] = None,
        recommender=None,
    ):
        self.session_factory = session_factory
        self.registry = registry or default_registry
        self.recommender = recommender

    async def run(
        self,
        calls: Iterable[ExtractedCall],
        turn: TurnContext,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[Tuple[ExtractedCall, ActionOutcome]]:
        """
        Yield (call, outcome) for every call, in order, as soon as it
        completes. When `cancel_event` is set no further calls are started.
        """
        for call in calls:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"[ACTION] Turn cancelled, skipping remaining actions for user {turn.user_id}")
                return

            yield call, await self.execute_one(call, turn)

    async def execute(self, calls: Iterable[ExtractedCall], turn: TurnContext) -> List[ActionOutcome]:
        return [outcome async for _, outcome in self.run(calls, turn)]

    async def execute_one(self, call: ExtractedCall, turn: TurnContext) -> ActionOutcome:
        definition = self.registry.get(call.name)
        if definition is None:
            logger.warning(f"[ACTION] Unknown action requested: {call.name}")
            return ActionOutcome(call.name, False, f"I don't know how to do '{call.name}'.")

        try:
            args = normalize_arguments(definition.args, call.arguments)
            if definition.is_async:
                context = ActionContext(user_id=turn.user_id, turn=turn, recommender=self.recommender)
                outcome = await definition.handler(context, args)
            else:
                # Runs to completion in its thread even if the awaiting turn is cancelled
                outcome = await asyncio.to_thread(self._run_sync, definition, turn, args)
        except ValidationError as e:
            logger.warning(f"[ACTION] {call.name} rejected: {str(e)}")
            outcome = ActionOutcome(call.name, False, f"I couldn't {definition.label}: {e.user_message}")
        except NotFoundError as e:
            logger.info(f"[ACTION] {call.name} target not found: {str(e)}")
            outcome = ActionOutcome(call.name, False, e.user_message)
        except ExternalServiceError as e:
            logger.error(f"[ACTION] {call.name} external service failure: {str(e)}")
            outcome = ActionOutcome(call.name, False, f"I couldn't {definition.label}. {e.user_message}")
        except SQLAlchemyError as e:
            error = StoreError(str(e))
            logger.error(f"[ACTION] {call.name} store failure: {str(e)}")
            outcome = ActionOutcome(call.name, False, error.user_message)
        except Exception as e:
            logger.exception(f"[ACTION] {call.name} failed unexpectedly: {str(e)}")
            outcome = ActionOutcome(call.name, False, f"Something went wrong while trying to {definition.label}.")

        status = "ok" if outcome.success else "failed"
        logger.info(f"[ACTION] {call.name} ({call.source}) {status}: {outcome.message}")
        return outcome

    def _run_sync(self, definition: ActionDefinition, turn: TurnContext, args) -> ActionOutcome:
        with self.session_factory() as db:
            context = ActionContext(user_id=turn.user_id, turn=turn, db=db, recommender=self.recommender)
            return definition.handler(context, args)
