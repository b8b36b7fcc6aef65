"""
Conversation session management.

One conversation row per chat thread, holding an append-only message log.
The full log stays in storage; only a bounded suffix is replayed into
prompts.
"""

from sqlalchemy.orm import Session
from sqlalchemy import and_
from models import Conversation
from config import settings
from typing import List, Optional, Dict
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

ROLES = ("user", "assistant")


def create(db: Session, user_id: int) -> Conversation:
    """Create a new, empty conversation for a user."""
    try:
        conversation = Conversation(user_id=user_id, messages=[])
        db.add(conversation)
        db.commit()
        db.refresh(conversation)
        return conversation
    except Exception as e:
        logger.error(f"[ERROR] conversation create failed: {str(e)}")
        db.rollback()
        raise


def get_latest(db: Session, user_id: int) -> Optional[Conversation]:
    """Most recently updated conversation, if any."""
    return db.query(Conversation).filter(
        Conversation.user_id == user_id
    ).order_by(Conversation.updated_at.desc(), Conversation.id.desc()).first()


def get_or_create(db: Session, user_id: int) -> Conversation:
    """Return the most recently updated conversation, creating one if none exist."""
    conversation = get_latest(db, user_id)
    if conversation:
        return conversation
    return create(db, user_id)


def get(db: Session, conversation_id: int, user_id: int) -> Optional[Conversation]:
    """Get a conversation owned by the given user."""
    return db.query(Conversation).filter(
        and_(Conversation.id == conversation_id, Conversation.user_id == user_id)
    ).first()


def list_for_user(db: Session, user_id: int) -> List[Conversation]:
    return db.query(Conversation).filter(
        Conversation.user_id == user_id
    ).order_by(Conversation.updated_at.desc(), Conversation.id.desc()).all()


def add_message(db: Session, conversation_id: int, role: str, content: str) -> Conversation:
    """Append one message and bump updated_at in a single commit."""
    if role not in ROLES:
        raise ValueError(f"Unsupported role: {role}")

    try:
        conversation = db.query(Conversation).filter(
            Conversation.id == conversation_id
        ).with_for_update().first()
        if not conversation:
            raise ValueError(f"Conversation {conversation_id} not found")

        now = datetime.utcnow()
        message = {"role": role, "content": content, "timestamp": now.isoformat()}
        # Reassign so the JSON column is marked dirty
        conversation.messages = [*(conversation.messages or []), message]
        conversation.updated_at = now
        db.commit()
        db.refresh(conversation)
        return conversation
    except Exception as e:
        logger.error(f"[ERROR] add_message failed: {str(e)}")
        db.rollback()
        raise


def get_history(db: Session, conversation_id: int) -> List[Dict]:
    """Full ordered message log."""
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        return []
    return list(conversation.messages or [])


def prompt_window(messages: List[Dict], window: Optional[int] = None) -> List[Dict]:
    """Bounded suffix of the log, reduced to role/content for prompting."""
    window = settings.HISTORY_WINDOW if window is None else window
    if window <= 0:
        return []
    return [
        {"role": m.get("role"), "content": m.get("content") or ""}
        for m in messages[-window:]
        if m.get("role") in ROLES
    ]


def clear(db: Session, conversation_id: int, user_id: int) -> Optional[Conversation]:
    """Truncate a conversation's message log."""
    try:
        conversation = get(db, conversation_id, user_id)
        if not conversation:
            return None
        conversation.messages = []
        conversation.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(conversation)
        return conversation
    except Exception as e:
        logger.error(f"[ERROR] conversation clear failed: {str(e)}")
        db.rollback()
        raise


def delete(db: Session, conversation_id: int, user_id: int) -> bool:
    try:
        conversation = get(db, conversation_id, user_id)
        if not conversation:
            return False
        db.delete(conversation)
        db.commit()
        return True
    except Exception as e:
        logger.error(f"[ERROR] conversation delete failed: {str(e)}")
        db.rollback()
        raise
