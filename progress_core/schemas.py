from pydantic import BaseModel, ConfigDict, Field, field_validator
from datetime import datetime
from typing import List, Optional

from progress_core.models import (
    Badge,
    DailyGoal,
    GamificationStats,
    PortfolioProfile,
    Project,
    ProjectLinks,
    ProjectStatus,
    WeeklyChallenge,
)


# Project input schemas
class ProjectBase(BaseModel):
    title: str = Field(..., max_length=200)
    description: str = ""
    category: str = ""
    role: str = ""
    tech_stack: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    status: ProjectStatus = "in_progress"
    achievements: List[str] = Field(default_factory=list)
    links: ProjectLinks = Field(default_factory=ProjectLinks)
    xp_value: int = Field(default=0, ge=0)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be empty")
        return value


class ProjectCreate(ProjectBase):
    pass


class ProjectUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = None
    category: Optional[str] = None
    role: Optional[str] = None
    tech_stack: Optional[List[str]] = None
    image_url: Optional[str] = None
    status: Optional[ProjectStatus] = None
    achievements: Optional[List[str]] = None
    links: Optional[ProjectLinks] = None
    xp_value: Optional[int] = Field(None, ge=0)

    @field_validator("title")
    @classmethod
    def title_not_blank(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            raise ValueError("title cannot be cleared")
        value = value.strip()
        if not value:
            raise ValueError("title must not be empty")
        return value


# Derived stats
class ProfileStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_projects: int
    total_xp: int


class LevelProgress(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: int
    xp_into_level: int
    xp_to_next_level: int
    percent: float  # [0, 100)


class DerivedStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    profile: ProfileStats
    gamification_total_xp: int = 0
    level_progress: LevelProgress
    unlocked_badges: int = 0
    total_badges: int = 0
    completed_goals: int = 0
    total_goals: int = 0
    streak_days: int = 0


class CoreSnapshot(BaseModel):
    """Everything the UI projection layer reads, at one store revision"""
    model_config = ConfigDict(frozen=True)

    owner_id: Optional[str] = None
    revision: int = 0
    projects: List[Project] = Field(default_factory=list)
    portfolio: Optional[PortfolioProfile] = None
    gamification: Optional[GamificationStats] = None
    daily_goals: List[DailyGoal] = Field(default_factory=list)
    badges: List[Badge] = Field(default_factory=list)
    weekly_challenge: Optional[WeeklyChallenge] = None
    derived: DerivedStats


class CoreNotice(BaseModel):
    """Celebration-worthy event for the UI (level up, badge unlocked, goal completed)"""
    model_config = ConfigDict(frozen=True)

    kind: str
    title: str
    message: str
    created_at: datetime


# Read-only views
class PublicPortfolio(BaseModel):
    model_config = ConfigDict(frozen=True)

    portfolio: PortfolioProfile
    projects: List[Project] = Field(default_factory=list)


class LeaderboardEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    username: str
    total_xp: int
    level: int
    rank: int


class Leaderboard(BaseModel):
    model_config = ConfigDict(frozen=True)

    entries: List[LeaderboardEntry] = Field(default_factory=list)
    current_user_rank: Optional[int] = None


# HTTP request bodies
class SessionCreate(BaseModel):
    owner_id: str = Field(..., min_length=1)
    owner_token: Optional[str] = None  # e.g. email; used for username and share slug


class GoalCompletion(BaseModel):
    reward_xp: Optional[int] = Field(None, ge=0)


class ShareSlugResponse(BaseModel):
    share_slug: str
