"""
Pydantic schemas for API requests and responses.
"""

from pydantic import BaseModel, EmailStr, Field
from typing import Any, List, Optional, Dict
from datetime import datetime

# User Profile Schemas
class UserProfileCreate(BaseModel):
    name: str
    email: EmailStr
    education_level: Optional[str] = None
    degree: Optional[str] = None
    graduation_year: Optional[int] = None
    gpa: Optional[float] = None
    gpa_scale: Optional[float] = None
    intended_degree: Optional[str] = None
    field_of_study: Optional[str] = None
    target_intake_year: Optional[int] = None
    target_intake_season: Optional[str] = None
    preferred_countries: List[str] = []
    budget_range_min: Optional[int] = None
    budget_range_max: Optional[int] = None
    funding_plan: Optional[str] = None
    ielts_status: Optional[str] = None
    toefl_status: Optional[str] = None
    gre_status: Optional[str] = None
    gmat_status: Optional[str] = None
    sop_status: Optional[str] = None
    final_submit: Optional[bool] = False  # Flag to mark onboarding as complete

# Onboarding Schema
class OnboardingResponse(BaseModel):
    user_id: int
    onboarding_completed: bool
    current_stage: int
    profile: Dict[str, Any] = {}

# Chat Schemas
class ChatRequest(BaseModel):
    email: EmailStr
    message: str = Field(..., min_length=1)
    conversation_id: Optional[int] = None

class ActionOutcomeResponse(BaseModel):
    action: str
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None

class ChatResponse(BaseModel):
    conversation_id: int
    message: str
    actions: List[ActionOutcomeResponse] = []

# Conversation Schemas
class MessageResponse(BaseModel):
    role: str
    content: str
    timestamp: Optional[str] = None

class ConversationSummary(BaseModel):
    id: int
    title: str = "New conversation"
    message_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

class ConversationResponse(BaseModel):
    id: int
    messages: List[MessageResponse] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary] = []
    count: int = 0

# Shortlist Schemas
class ShortlistEntryResponse(BaseModel):
    id: int
    uni_name: str
    country: Optional[str] = None
    category: Optional[str] = None
    fit_score: Optional[int] = None
    why_fits: Optional[str] = None
    key_risks: List[str] = []
    acceptance_chance: Optional[str] = None
    is_locked: bool = False

class ShortlistResponse(BaseModel):
    shortlists: List[ShortlistEntryResponse] = []
    count: int = 0
    locked_university_id: Optional[int] = None

# Task Schemas
class TaskResponse(BaseModel):
    id: int
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    due_date: Optional[str] = None
    status: str = "pending"
    ai_generated: bool = False
    university_id: Optional[int] = None
    completed_at: Optional[str] = None

class TaskListResponse(BaseModel):
    tasks: List[TaskResponse] = []
    count: int = 0

# Recommendation Schemas
class UniversityRecommendation(BaseModel):
    name: str
    country: Optional[str] = None
    location: Optional[str] = None
    acceptance_chance: Optional[str] = None
    why_fits: Optional[str] = None

class RecommendationsResponse(BaseModel):
    dream: List[UniversityRecommendation] = []
    target: List[UniversityRecommendation] = []
    safe: List[UniversityRecommendation] = []
    cached: bool = False
    generated_at: Optional[str] = None

# Timeline Schemas
class TimelinePhase(BaseModel):
    phase: str
    deadline: Optional[str] = None
    tasks: List[str] = []
    status: str = "upcoming"
    description: Optional[str] = None

class TimelineResponse(BaseModel):
    university: ShortlistEntryResponse
    locked_at: Optional[str] = None
    months_until_intake: Optional[int] = None
    timeline: List[TimelinePhase] = []
    generated: bool = False

# Generic Schemas
class StatusResponse(BaseModel):
    success: bool
    message: str

# Error Schema
class ErrorResponse(BaseModel):
    error: str
    message: str
