from sqlalchemy import Column, Integer, String, Boolean, Float, ForeignKey, DateTime, Text, JSON
from sqlalchemy.orm import declarative_base
from datetime import datetime
import enum

Base = declarative_base()

# Enums
class Stage(enum.IntEnum):
    ONBOARDING = 1
    DISCOVERY = 2
    SHORTLIST = 3
    LOCKED = 4

class CategoryEnum(str, enum.Enum):
    DREAM = "Dream"
    TARGET = "Target"
    SAFE = "Safe"

class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"

class Priority(str, enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

# Fixed set of profile keys stored in User.profile_data
PROFILE_FIELDS = (
    "name",
    "education_level",
    "degree",
    "graduation_year",
    "gpa",
    "gpa_scale",
    "intended_degree",
    "field_of_study",
    "target_intake_year",
    "target_intake_season",
    "preferred_countries",
    "budget_range_min",
    "budget_range_max",
    "funding_plan",
    "ielts_status",
    "toefl_status",
    "gre_status",
    "gmat_status",
    "sop_status",
    "onboarding_completed",
)

# Fields that change recommendations; a change invalidates the cache
CRITICAL_PROFILE_FIELDS = (
    "gpa",
    "gpa_scale",
    "budget_range_min",
    "budget_range_max",
    "preferred_countries",
    "intended_degree",
    "field_of_study",
)

# Models
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255))
    email = Column(String(255), unique=True, nullable=False, index=True)
    profile_data = Column(JSON, nullable=False, default=dict)
    stage = Column(Integer, nullable=False, default=int(Stage.ONBOARDING))
    locked_university_id = Column(Integer, nullable=True)
    locked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class ShortlistEntry(Base):
    __tablename__ = "shortlists"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    uni_name = Column(String(255), nullable=False)
    country = Column(String(100))
    category = Column(String(20), default=CategoryEnum.TARGET.value)  # Dream | Target | Safe
    fit_score = Column(Integer)
    why_fits = Column(Text)
    key_risks = Column(JSON)
    acceptance_chance = Column(String(20))
    is_locked = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "uni_name": self.uni_name,
            "country": self.country,
            "category": self.category,
            "fit_score": self.fit_score,
            "why_fits": self.why_fits,
            "key_risks": self.key_risks or [],
            "acceptance_chance": self.acceptance_chance,
            "is_locked": bool(self.is_locked),
        }

class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    category = Column(String(50))
    priority = Column(String(20), default=Priority.MEDIUM.value)
    due_date = Column(String(50))
    status = Column(String(20), default=TaskStatus.PENDING.value, nullable=False)
    ai_generated = Column(Boolean, default=False, nullable=False)
    university_id = Column(Integer, ForeignKey("shortlists.id", ondelete="SET NULL"), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "priority": self.priority,
            "due_date": self.due_date,
            "status": self.status,
            "ai_generated": bool(self.ai_generated),
            "university_id": self.university_id,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    messages = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

class RecommendationCache(Base):
    __tablename__ = "user_recommendations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    recommendations = Column(JSON, nullable=False)
    profile_hash = Column(String(64))
    generated_at = Column(DateTime, default=datetime.utcnow)
