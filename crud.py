"""
CRUD operations for database models.

Every write commits on success and rolls back before re-raising on failure,
so each call is atomic at the row level.
"""

from sqlalchemy.orm import Session
from sqlalchemy import and_
from models import (
    User, ShortlistEntry, Task, Conversation, RecommendationCache,
    Stage, TaskStatus, Priority, CategoryEnum, CRITICAL_PROFILE_FIELDS,
)
from typing import List, Optional, Dict, Tuple
from datetime import datetime, timedelta
import hashlib
import json
import logging

logger = logging.getLogger(__name__)

# Application tasks created when a university is locked
DEFAULT_APPLICATION_TASKS = [
    {
        "title": "Draft Statement of Purpose (SOP)",
        "description": "Draft your SOP highlighting why this university aligns with your goals",
        "category": "essays",
        "priority": Priority.HIGH.value,
    },
    {
        "title": "Request Letters of Recommendation (LOR)",
        "description": "Request 2-3 letters from professors or employers",
        "category": "recommendations",
        "priority": Priority.HIGH.value,
    },
    {
        "title": "Request Official Transcripts",
        "description": "Get official transcripts from your institution",
        "category": "academic",
        "priority": Priority.MEDIUM.value,
    },
    {
        "title": "Check Visa Requirements",
        "description": "Review student visa documents and financial proof rules",
        "category": "visa",
        "priority": Priority.MEDIUM.value,
    },
]

# ========================================
# USERS
# ========================================

def get_user(db: Session, user_id: int) -> Optional[User]:
    """Get user by ID."""
    return db.query(User).filter(User.id == user_id).first()

def get_user_by_email(db: Session, email: str) -> Optional[User]:
    """Get user by email."""
    return db.query(User).filter(User.email == email).first()

def get_or_create_user(db: Session, email: str, name: Optional[str] = None) -> User:
    """
    Get or create user (UPSERT pattern).
    New users start at the onboarding stage with an empty profile.
    """
    try:
        user = get_user_by_email(db, email)
        if user:
            return user

        user = User(email=email, name=name, profile_data={}, stage=int(Stage.ONBOARDING))
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    except Exception as e:
        logger.error(f"[ERROR] get_or_create_user failed: {str(e)}")
        db.rollback()
        raise

def upsert_profile(db: Session, email: str, name: Optional[str], fields: Dict, final_submit: bool = False) -> User:
    """
    Onboarding upsert: merge profile fields and, on final submit, mark
    onboarding complete and move the user out of the onboarding stage.
    """
    user = get_or_create_user(db, email, name)
    if name:
        user.name = name
    db.commit()

    updates = {key: value for key, value in fields.items() if value is not None}
    if final_submit:
        updates["onboarding_completed"] = True
    if updates:
        update_profile_fields(db, user.id, updates)
    if final_submit:
        advance_stage(db, user.id, Stage.DISCOVERY)

    db.refresh(user)
    return user

def update_profile_fields(db: Session, user_id: int, updates: Dict) -> Dict:
    """
    Merge fields into the stored profile mapping (never replaces it).
    Invalidates cached recommendations when a critical field changes.

    Returns:
        The updated profile mapping
    """
    try:
        user = get_user(db, user_id)
        if not user:
            raise ValueError(f"User {user_id} not found")

        current = dict(user.profile_data or {})
        merged = {**current, **updates}
        critical_changed = any(current.get(f) != merged.get(f) for f in CRITICAL_PROFILE_FIELDS)

        # Reassign so the JSON column is marked dirty
        user.profile_data = merged
        if "name" in updates and updates["name"]:
            user.name = updates["name"]

        if critical_changed:
            deleted = db.query(RecommendationCache).filter(RecommendationCache.user_id == user_id).delete()
            logger.info(f"[CACHE] Critical profile change for user {user_id}, invalidated {deleted} cached entries")

        db.commit()
        return merged
    except Exception as e:
        logger.error(f"[ERROR] update_profile_fields failed: {str(e)}")
        db.rollback()
        raise

def advance_stage(db: Session, user_id: int, stage: int) -> int:
    """Move the user forward to `stage`; never moves backwards."""
    try:
        user = get_user(db, user_id)
        if not user:
            raise ValueError(f"User {user_id} not found")
        if (user.stage or Stage.ONBOARDING) < stage:
            user.stage = int(stage)
            db.commit()
        return user.stage
    except Exception as e:
        logger.error(f"[ERROR] advance_stage failed: {str(e)}")
        db.rollback()
        raise

def delete_user(db: Session, user_id: int) -> bool:
    """
    Delete a user account and everything it owns.
    Owned rows are removed before the user row so nothing is orphaned.
    """
    try:
        user = get_user(db, user_id)
        if not user:
            return False

        db.query(Task).filter(Task.user_id == user_id).delete()
        db.query(ShortlistEntry).filter(ShortlistEntry.user_id == user_id).delete()
        db.query(Conversation).filter(Conversation.user_id == user_id).delete()
        db.query(RecommendationCache).filter(RecommendationCache.user_id == user_id).delete()
        db.delete(user)
        db.commit()
        logger.info(f"[ACCOUNT] Deleted user {user_id} and owned data")
        return True
    except Exception as e:
        logger.error(f"[ERROR] delete_user failed: {str(e)}")
        db.rollback()
        raise

# ========================================
# SHORTLIST
# ========================================

def normalize_university_name(name: str) -> str:
    """Case and whitespace-insensitive key for a university name."""
    return " ".join((name or "").split()).lower()

def get_user_shortlists(db: Session, user_id: int) -> List[ShortlistEntry]:
    """Get all shortlisted universities for a user, oldest first."""
    return db.query(ShortlistEntry).filter(ShortlistEntry.user_id == user_id).order_by(ShortlistEntry.id.asc()).all()

def find_shortlist_entry(db: Session, user_id: int, uni_name: str) -> Optional[ShortlistEntry]:
    key = normalize_university_name(uni_name)
    for entry in get_user_shortlists(db, user_id):
        if normalize_university_name(entry.uni_name) == key:
            return entry
    return None

def add_to_shortlist(
    db: Session,
    user_id: int,
    uni_name: str,
    country: Optional[str] = None,
    category: Optional[str] = None,
    fit_score: Optional[int] = None,
    why_fits: Optional[str] = None,
    key_risks: Optional[List[str]] = None,
    acceptance_chance: Optional[str] = None,
) -> Tuple[ShortlistEntry, bool]:
    """
    Add university to user's shortlist. Idempotent per (user, name).

    Returns:
        (entry, created) - created is False when the university was already listed
    """
    try:
        existing = find_shortlist_entry(db, user_id, uni_name)
        if existing:
            return existing, False

        entry = ShortlistEntry(
            user_id=user_id,
            uni_name=" ".join(uni_name.split()),
            country=country,
            category=category or CategoryEnum.TARGET.value,
            fit_score=fit_score,
            why_fits=why_fits,
            key_risks=key_risks,
            acceptance_chance=acceptance_chance,
        )
        db.add(entry)

        user = get_user(db, user_id)
        if user and (user.stage or Stage.ONBOARDING) < Stage.SHORTLIST:
            user.stage = int(Stage.SHORTLIST)

        db.commit()
        db.refresh(entry)
        return entry, True
    except Exception as e:
        logger.error(f"[ERROR] add_to_shortlist failed: {str(e)}")
        db.rollback()
        raise

def get_locked_university(db: Session, user_id: int) -> Optional[ShortlistEntry]:
    """Get user's locked university."""
    return db.query(ShortlistEntry).filter(
        and_(
            ShortlistEntry.user_id == user_id,
            ShortlistEntry.is_locked == True
        )
    ).first()

def lock_university(db: Session, user_id: int, entry_id: int) -> ShortlistEntry:
    """
    Lock a university for application (unlock others).
    Replaces the previous lock's AI-generated tasks with the default
    application tasks for the new university and moves the user to the
    locked stage.
    """
    try:
        entry = db.query(ShortlistEntry).filter(
            and_(ShortlistEntry.id == entry_id, ShortlistEntry.user_id == user_id)
        ).first()
        if not entry:
            raise ValueError("University not in shortlist")

        previous = get_locked_university(db, user_id)
        if previous and previous.id != entry.id:
            previous.is_locked = False
            _delete_ai_tasks_for_university(db, user_id, previous.id)

        entry.is_locked = True

        user = get_user(db, user_id)
        user.locked_university_id = entry.id
        user.locked_at = datetime.utcnow()
        user.stage = int(Stage.LOCKED)

        has_tasks = db.query(Task).filter(
            and_(Task.user_id == user_id, Task.university_id == entry.id, Task.ai_generated == True)
        ).first()
        if not has_tasks:
            for task_data in DEFAULT_APPLICATION_TASKS:
                db.add(Task(user_id=user_id, university_id=entry.id, ai_generated=True, **task_data))

        db.commit()
        db.refresh(entry)
        return entry
    except Exception as e:
        logger.error(f"[ERROR] lock_university failed: {str(e)}")
        db.rollback()
        raise

def unlock_university(db: Session, user_id: int, entry_id: int) -> ShortlistEntry:
    """Unlock a university and drop its AI-generated tasks."""
    try:
        entry = db.query(ShortlistEntry).filter(
            and_(ShortlistEntry.id == entry_id, ShortlistEntry.user_id == user_id)
        ).first()
        if not entry:
            raise ValueError("University not in shortlist")

        entry.is_locked = False
        deleted = _delete_ai_tasks_for_university(db, user_id, entry.id)

        user = get_user(db, user_id)
        if user.locked_university_id == entry.id:
            user.locked_university_id = None
            user.locked_at = None
            user.stage = int(Stage.SHORTLIST)

        db.commit()
        db.refresh(entry)
        logger.info(f"[TASKS] Unlocked {entry.uni_name} for user {user_id}, removed {deleted} AI tasks")
        return entry
    except Exception as e:
        logger.error(f"[ERROR] unlock_university failed: {str(e)}")
        db.rollback()
        raise

def remove_from_shortlist(db: Session, user_id: int, entry_id: int) -> bool:
    """Delete a shortlist entry. Locked entries cannot be removed."""
    try:
        entry = db.query(ShortlistEntry).filter(
            and_(ShortlistEntry.id == entry_id, ShortlistEntry.user_id == user_id)
        ).first()
        if not entry:
            return False
        if entry.is_locked:
            raise ValueError("Unlock the university before removing it")

        db.query(Task).filter(Task.university_id == entry.id).update({"university_id": None})
        db.delete(entry)
        db.commit()
        return True
    except Exception as e:
        logger.error(f"[ERROR] remove_from_shortlist failed: {str(e)}")
        db.rollback()
        raise

def _delete_ai_tasks_for_university(db: Session, user_id: int, university_id: int) -> int:
    return db.query(Task).filter(
        and_(
            Task.user_id == user_id,
            Task.university_id == university_id,
            Task.ai_generated == True,
        )
    ).delete()

# ========================================
# TASKS
# ========================================

def create_task(
    db: Session,
    user_id: int,
    title: str,
    description: Optional[str] = None,
    category: Optional[str] = None,
    priority: Optional[str] = None,
    due_date: Optional[str] = None,
    ai_generated: bool = False,
    university_id: Optional[int] = None,
) -> Task:
    """Create a new task."""
    try:
        task = Task(
            user_id=user_id,
            title=title,
            description=description,
            category=category,
            priority=priority or Priority.MEDIUM.value,
            due_date=due_date,
            ai_generated=ai_generated,
            university_id=university_id,
        )
        db.add(task)
        db.commit()
        db.refresh(task)
        return task
    except Exception as e:
        logger.error(f"[ERROR] create_task failed: {str(e)}")
        db.rollback()
        raise

def get_all_tasks(db: Session, user_id: int) -> List[Task]:
    """Get all tasks for a user in stable (id) order."""
    return db.query(Task).filter(Task.user_id == user_id).order_by(Task.id.asc()).all()

def set_task_status(db: Session, user_id: int, task_id: int, status: str) -> Task:
    """
    Set a task's status. completed_at is set when completed and cleared
    when the task goes back to pending.
    """
    try:
        task = db.query(Task).filter(and_(Task.id == task_id, Task.user_id == user_id)).first()
        if not task:
            raise ValueError(f"Task {task_id} not found")

        task.status = status
        task.completed_at = datetime.utcnow() if status == TaskStatus.COMPLETED.value else None
        task.updated_at = datetime.utcnow()
        db.commit()
        db.refresh(task)
        return task
    except Exception as e:
        logger.error(f"[ERROR] set_task_status failed: {str(e)}")
        db.rollback()
        raise

# ========================================
# RECOMMENDATION CACHE
# ========================================

def compute_profile_hash(profile: Dict) -> str:
    """Hash of the profile fields that affect recommendations."""
    relevant = {field: (profile or {}).get(field) for field in CRITICAL_PROFILE_FIELDS}
    encoded = json.dumps(relevant, sort_keys=True, default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

def get_cached_recommendations(
    db: Session,
    user_id: int,
    profile_hash: str,
    max_age_hours: int = 24,
    now: Optional[datetime] = None,
) -> Optional[RecommendationCache]:
    """Return the newest cache entry if its hash matches and it is still fresh."""
    cached = db.query(RecommendationCache).filter(
        and_(
            RecommendationCache.user_id == user_id,
            RecommendationCache.profile_hash == profile_hash,
        )
    ).order_by(RecommendationCache.generated_at.desc()).first()

    if not cached or not cached.generated_at:
        return None

    age = (now or datetime.utcnow()) - cached.generated_at
    if age >= timedelta(hours=max_age_hours):
        return None
    return cached

def save_recommendations(db: Session, user_id: int, recommendations: Dict, profile_hash: str) -> RecommendationCache:
    try:
        entry = RecommendationCache(
            user_id=user_id,
            recommendations=recommendations,
            profile_hash=profile_hash,
            generated_at=datetime.utcnow(),
        )
        db.add(entry)
        db.commit()
        db.refresh(entry)
        return entry
    except Exception as e:
        logger.error(f"[ERROR] save_recommendations failed: {str(e)}")
        db.rollback()
        raise

def invalidate_recommendations(db: Session, user_id: int) -> int:
    """Delete all cached recommendations for a user."""
    try:
        deleted = db.query(RecommendationCache).filter(RecommendationCache.user_id == user_id).delete()
        db.commit()
        return deleted
    except Exception as e:
        logger.error(f"[ERROR] invalidate_recommendations failed: {str(e)}")
        db.rollback()
        raise

def clean_old_recommendations(db: Session, days: int = 7) -> int:
    """Remove cache entries older than `days`."""
    try:
        cutoff = datetime.utcnow() - timedelta(days=days)
        deleted = db.query(RecommendationCache).filter(RecommendationCache.generated_at < cutoff).delete()
        db.commit()
        logger.info(f"[CACHE] Removed {deleted} stale recommendation entries")
        return deleted
    except Exception as e:
        logger.error(f"[ERROR] clean_old_recommendations failed: {str(e)}")
        db.rollback()
        raise
