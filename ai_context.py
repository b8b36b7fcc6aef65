# AI Counsellor Context Builder
# ==============================
# Builds the explicit per-turn context handed to the prompt and to action
# handlers. The reads are independent and run concurrently, each on its own
# database session.

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional
import asyncio

from sqlalchemy.orm import Session

import conversation
import crud
from errors import NotFoundError


@dataclass
class TurnContext:
    user_id: int
    email: str = ""
    name: Optional[str] = None
    stage: int = 1
    profile: Dict = field(default_factory=dict)
    shortlist: List[Dict] = field(default_factory=list)
    tasks: List[Dict] = field(default_factory=list)
    conversation_id: Optional[int] = None
    history: List[Dict] = field(default_factory=list)

    @property
    def locked(self) -> Optional[Dict]:
        for entry in self.shortlist:
            if entry.get("is_locked"):
                return entry
        return None


def _load_user(session_factory: Callable[[], Session], user_id: int) -> Dict:
    with session_factory() as db:
        user = crud.get_user(db, user_id)
        if not user:
            raise NotFoundError("User not found")
        return {
            "email": user.email,
            "name": user.name,
            "stage": user.stage or 1,
            "profile": dict(user.profile_data or {}),
        }


def _load_shortlist(session_factory: Callable[[], Session], user_id: int) -> List[Dict]:
    with session_factory() as db:
        return [entry.to_dict() for entry in crud.get_user_shortlists(db, user_id)]


def _load_tasks(session_factory: Callable[[], Session], user_id: int) -> List[Dict]:
    with session_factory() as db:
        return [task.to_dict() for task in crud.get_all_tasks(db, user_id)]


def _load_conversation(session_factory: Callable[[], Session], user_id: int, conversation_id: Optional[int]) -> Optional[Dict]:
    with session_factory() as db:
        if conversation_id is not None:
            convo = conversation.get(db, conversation_id, user_id)
            if not convo:
                raise NotFoundError("Conversation not found")
        else:
            convo = conversation.get_latest(db, user_id)
        if convo is None:
            return None
        return {"id": convo.id, "messages": list(convo.messages or [])}


def _create_conversation(session_factory: Callable[[], Session], user_id: int) -> Dict:
    with session_factory() as db:
        convo = conversation.create(db, user_id)
        return {"id": convo.id, "messages": []}


async def build_turn_context(
    session_factory: Callable[[], Session],
    user_id: int,
    conversation_id: Optional[int] = None,
) -> TurnContext:
    """
    Gather profile, shortlist, tasks and conversation concurrently.
    A first conversation is created only once the user is known to exist.
    """
    user, shortlist, tasks, convo = await asyncio.gather(
        asyncio.to_thread(_load_user, session_factory, user_id),
        asyncio.to_thread(_load_shortlist, session_factory, user_id),
        asyncio.to_thread(_load_tasks, session_factory, user_id),
        asyncio.to_thread(_load_conversation, session_factory, user_id, conversation_id),
    )
    if convo is None:
        convo = await asyncio.to_thread(_create_conversation, session_factory, user_id)

    return TurnContext(
        user_id=user_id,
        email=user["email"],
        name=user["name"],
        stage=user["stage"],
        profile=user["profile"],
        shortlist=shortlist,
        tasks=tasks,
        conversation_id=convo["id"],
        history=convo["messages"],
    )
