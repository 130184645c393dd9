from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, JSON, UniqueConstraint
from datetime import datetime, timezone

from progress_core.constants import (
    COLLECTION_PROJECTS,
    COLLECTION_PORTFOLIO,
    COLLECTION_GAMIFICATION,
    COLLECTION_DAILY_GOALS,
    COLLECTION_BADGES,
    COLLECTION_WEEKLY_CHALLENGES,
)
from progress_core.infrastructure.database import Base


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ProjectRow(Base):
    __tablename__ = COLLECTION_PROJECTS

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(String, default="")
    category = Column(String, default="")
    role = Column(String, default="")
    tech_stack = Column(JSON, default=list)
    image_url = Column(String, nullable=True)
    status = Column(String, default="in_progress")  # in_progress, completed, upcoming
    achievements = Column(JSON, default=list)
    links = Column(JSON, default=dict)  # {"github": ..., "site": ..., "doc": ...}
    xp_value = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class PortfolioRow(Base):
    __tablename__ = COLLECTION_PORTFOLIO

    user_id = Column(String, primary_key=True, index=True)
    username = Column(String, nullable=True)
    bio = Column(String, nullable=True)
    avatar_url = Column(String, nullable=True)
    total_projects = Column(Integer, default=0)
    total_xp = Column(Integer, default=0)
    share_slug = Column(String, nullable=True, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class GamificationRow(Base):
    __tablename__ = COLLECTION_GAMIFICATION

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=False, unique=True, index=True)
    username = Column(String, nullable=True)
    total_xp = Column(Integer, default=0, index=True)
    level = Column(Integer, default=1)
    streak_days = Column(Integer, default=0)
    last_activity_date = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class DailyGoalRow(Base):
    __tablename__ = COLLECTION_DAILY_GOALS

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(String, default="")
    reward_xp = Column(Integer, default=0)
    status = Column(String, default="pending")  # pending, completed
    goal_date = Column(Date, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)


class BadgeRow(Base):
    __tablename__ = COLLECTION_BADGES
    __table_args__ = (UniqueConstraint("user_id", "badge_id", name="uq_user_badge"),)

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    badge_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    description = Column(String, default="")
    icon = Column(String, default="")
    xp_value = Column(Integer, default=0)
    unlocked = Column(Boolean, default=False)
    unlocked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class WeeklyChallengeRow(Base):
    __tablename__ = COLLECTION_WEEKLY_CHALLENGES

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(String, default="")
    reward_xp = Column(Integer, default=0)
    progress = Column(Integer, default=0)
    target_progress = Column(Integer, default=1)
    deadline = Column(DateTime(timezone=True), nullable=False)
    status = Column(String, default="active")  # active, completed, expired
    created_at = Column(DateTime(timezone=True), default=utc_now)


ROW_MODELS = {
    COLLECTION_PROJECTS: ProjectRow,
    COLLECTION_PORTFOLIO: PortfolioRow,
    COLLECTION_GAMIFICATION: GamificationRow,
    COLLECTION_DAILY_GOALS: DailyGoalRow,
    COLLECTION_BADGES: BadgeRow,
    COLLECTION_WEEKLY_CHALLENGES: WeeklyChallengeRow,
}
