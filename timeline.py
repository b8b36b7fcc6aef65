"""
Application timeline for the locked university.

The model drafts the milestones; when it fails or returns nothing usable the
student gets a fixed three-phase default instead of an error.
"""

from datetime import date, timedelta
from typing import Callable, Dict, List, Optional
import asyncio
import json
import logging

from sqlalchemy.orm import Session

import crud
from errors import ConflictError, ExternalServiceError, NotFoundError
from extractor import find_matching_brace
from llm_client import CompletionClient, TOOL_CHOICE_NONE
from prompts import get_timeline_prompt

logger = logging.getLogger(__name__)

PHASE_STATUSES = ("upcoming", "current", "urgent")


def months_until_intake(profile: Dict, today: date) -> Optional[int]:
    """Whole months from today to the intake (Fall starts in September, anything else in January)."""
    try:
        year = int(float(profile.get("target_intake_year")))
    except (TypeError, ValueError):
        return None
    month = 9 if str(profile.get("target_intake_season") or "").lower() == "fall" else 1
    return max(0, (year - today.year) * 12 + (month - today.month))


def default_timeline(today: date) -> List[Dict]:
    def deadline(days: int) -> str:
        return (today + timedelta(days=days)).isoformat()

    return [
        {
            "phase": "Test Preparation",
            "deadline": deadline(60),
            "tasks": ["Complete IELTS/TOEFL", "Complete GRE/GMAT if required"],
            "status": "current",
            "description": "Focus on achieving target test scores",
        },
        {
            "phase": "Document Preparation",
            "deadline": deadline(90),
            "tasks": ["Draft SOP", "Request LORs", "Gather transcripts"],
            "status": "upcoming",
            "description": "Prepare all application materials",
        },
        {
            "phase": "Application Submission",
            "deadline": deadline(120),
            "tasks": ["Submit application", "Pay application fee"],
            "status": "upcoming",
            "description": "Submit complete application before deadline",
        },
    ]


def parse_timeline(text: str) -> List[Dict]:
    """
    Accepts a bare array or an object wrapping it under `timeline` or
    `milestones`. Items without a phase name are dropped.
    """
    text = (text or "").strip()
    try:
        payload = json.loads(text)
    except ValueError:
        start = text.find("{")
        end = find_matching_brace(text, start) if start >= 0 else None
        if end is None:
            raise ExternalServiceError("Timeline output was not JSON")
        try:
            payload = json.loads(text[start:end + 1])
        except ValueError as e:
            raise ExternalServiceError("Timeline output was not JSON") from e

    if isinstance(payload, dict):
        payload = payload.get("timeline") or payload.get("milestones") or []
    if not isinstance(payload, list):
        raise ExternalServiceError("Timeline output was not a list")

    phases = []
    for item in payload:
        if not isinstance(item, dict) or not item.get("phase"):
            continue
        tasks = item.get("tasks")
        status = str(item.get("status") or "upcoming").lower()
        phases.append({
            "phase": str(item["phase"]),
            "deadline": str(item["deadline"]) if item.get("deadline") else None,
            "tasks": [str(t) for t in tasks] if isinstance(tasks, list) else [],
            "status": status if status in PHASE_STATUSES else "upcoming",
            "description": str(item["description"]) if item.get("description") else None,
        })
    return phases


class TimelineService:
    def __init__(self, client: CompletionClient, session_factory: Callable[[], Session]):
        self.client = client
        self.session_factory = session_factory

    def _read_locked(self, user_id: int) -> Dict:
        with self.session_factory() as db:
            user = crud.get_user(db, user_id)
            if not user:
                raise NotFoundError("User not found")
            entry = crud.get_locked_university(db, user_id)
            if not entry:
                raise ConflictError("Lock a university first to see your application timeline.")
            return {
                "profile": dict(user.profile_data or {}),
                "university": entry.to_dict(),
                "locked_at": user.locked_at.isoformat() if user.locked_at else None,
            }

    async def get_timeline(self, user_id: int, today: Optional[date] = None) -> Dict:
        """
        Timeline for the user's locked university.

        Raises:
            NotFoundError: unknown user
            ConflictError: no university is locked
        """
        today = today or date.today()
        state = await asyncio.to_thread(self._read_locked, user_id)
        university = state["university"]
        months = months_until_intake(state["profile"], today)

        try:
            completion = await self.client.complete(
                [{"role": "user", "content": get_timeline_prompt(university, state["profile"], today, months)}],
                tools=None,
                tool_choice=TOOL_CHOICE_NONE,
                temperature=0.5,
                json_mode=True,
            )
            phases = parse_timeline(completion.text)
        except ExternalServiceError as e:
            logger.warning(f"[LLM] Timeline generation failed for user {user_id}, using default: {str(e)}")
            phases = []

        generated = bool(phases)
        if not generated:
            phases = default_timeline(today)
        logger.info(f"[SUCCESS] Timeline for {university['uni_name']}: {len(phases)} phases (generated={generated})")

        return {
            "university": university,
            "locked_at": state["locked_at"],
            "months_until_intake": months,
            "timeline": phases,
            "generated": generated,
        }
