"""
University recommendations with a profile-hash cache.

A cached entry is served only while its stored hash equals the hash of the
current critical profile fields and it is younger than the freshness window.
"""

from typing import Callable, Dict, List, Optional
import asyncio
import json
import logging

from sqlalchemy.orm import Session

import crud
from config import settings
from errors import ExternalServiceError, NotFoundError
from extractor import find_matching_brace
from llm_client import CompletionClient, TOOL_CHOICE_NONE
from prompts import get_recommendation_prompt

logger = logging.getLogger(__name__)

CATEGORIES = ("dream", "target", "safe")


def empty_recommendations() -> Dict[str, List]:
    return {category: [] for category in CATEGORIES}


def parse_recommendations(text: str) -> Dict[str, List]:
    """Parse the model's JSON, tolerating prose around the object."""
    text = (text or "").strip()
    try:
        payload = json.loads(text)
    except ValueError:
        start = text.find("{")
        end = find_matching_brace(text, start) if start >= 0 else None
        if end is None:
            raise ExternalServiceError("Recommendation output was not JSON")
        try:
            payload = json.loads(text[start:end + 1])
        except ValueError as e:
            raise ExternalServiceError("Recommendation output was not JSON") from e

    if not isinstance(payload, dict):
        raise ExternalServiceError("Recommendation output was not an object")

    result = empty_recommendations()
    for category in CATEGORIES:
        items = payload.get(category) or payload.get(category.capitalize()) or []
        if not isinstance(items, list):
            logger.warning(f"[LLM] Ignoring non-list '{category}' in recommendation output")
            items = []
        result[category] = [item for item in items if isinstance(item, dict) and item.get("name")]
    return result


class RecommendationService:
    def __init__(self, client: CompletionClient, session_factory: Callable[[], Session], max_age_hours: Optional[int] = None):
        self.client = client
        self.session_factory = session_factory
        self.max_age_hours = max_age_hours or settings.RECOMMENDATION_CACHE_HOURS

    def _read_profile(self, user_id: int) -> Dict:
        with self.session_factory() as db:
            user = crud.get_user(db, user_id)
            if not user:
                raise NotFoundError("User not found")
            return dict(user.profile_data or {})

    def _read_cache(self, user_id: int, profile_hash: str) -> Optional[Dict]:
        with self.session_factory() as db:
            cached = crud.get_cached_recommendations(db, user_id, profile_hash, self.max_age_hours)
            if not cached:
                return None
            return {
                **cached.recommendations,
                "cached": True,
                "generated_at": cached.generated_at.isoformat(),
            }

    def _write_cache(self, user_id: int, payload: Dict, profile_hash: str) -> str:
        with self.session_factory() as db:
            entry = crud.save_recommendations(db, user_id, payload, profile_hash)
            return entry.generated_at.isoformat()

    def _invalidate(self, user_id: int) -> int:
        with self.session_factory() as db:
            return crud.invalidate_recommendations(db, user_id)

    async def get_recommendations(self, user_id: int, refresh: bool = False) -> Dict:
        """
        Serve cached recommendations or generate fresh ones.
        Always reads the profile from the store, never from turn state.
        """
        profile = await asyncio.to_thread(self._read_profile, user_id)
        profile_hash = crud.compute_profile_hash(profile)

        if refresh:
            deleted = await asyncio.to_thread(self._invalidate, user_id)
            logger.info(f"[CACHE] Refresh requested for user {user_id}, dropped {deleted} entries")
        else:
            cached = await asyncio.to_thread(self._read_cache, user_id, profile_hash)
            if cached:
                logger.info(f"[CACHE] Recommendation cache hit for user {user_id}")
                return cached

        if not profile.get("gpa") and not profile.get("preferred_countries"):
            logger.info(f"[LOGIC] Profile too sparse for recommendations (user {user_id})")
            return {**empty_recommendations(), "cached": False, "generated_at": None}

        payload = await self._generate(profile)
        generated_at = await asyncio.to_thread(self._write_cache, user_id, payload, profile_hash)
        return {**payload, "cached": False, "generated_at": generated_at}

    async def _generate(self, profile: Dict) -> Dict[str, List]:
        completion = await self.client.complete(
            [{"role": "user", "content": get_recommendation_prompt(profile)}],
            tools=None,
            tool_choice=TOOL_CHOICE_NONE,
            temperature=0.4,
            json_mode=True,
        )
        recommendations = parse_recommendations(completion.text)
        logger.info(
            f"[SUCCESS] Generated recommendations: "
            f"{len(recommendations['dream'])} dream, {len(recommendations['target'])} target, {len(recommendations['safe'])} safe"
        )
        return recommendations
