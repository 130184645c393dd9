"""
Entity models for the tracked collections.

Entities are immutable snapshots: a change always produces a new instance
(`model_copy(update=...)`) that replaces the old one in the entity store.
"""
from datetime import date, datetime
from typing import ClassVar, Dict, List, Literal, Optional, Type

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from progress_core.constants import (
    COLLECTION_PROJECTS,
    COLLECTION_PORTFOLIO,
    COLLECTION_GAMIFICATION,
    COLLECTION_DAILY_GOALS,
    COLLECTION_BADGES,
    COLLECTION_WEEKLY_CHALLENGES,
)

ProjectStatus = Literal["in_progress", "completed", "upcoming"]
GoalStatus = Literal["pending", "completed"]
ChallengeStatus = Literal["active", "completed", "expired"]
ChangeKind = Literal["insert", "update", "delete"]


class Entity(BaseModel):
    """Base class for everything held in the entity store"""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    key_field: ClassVar[str] = "id"

    @property
    def key(self) -> str:
        return getattr(self, self.key_field)

    @property
    def owner_id(self) -> str:
        return getattr(self, "user_id")


class ProjectLinks(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    github: Optional[str] = None
    site: Optional[str] = None
    # Older rows store the document link under "pdf"
    doc: Optional[str] = Field(default=None, validation_alias=AliasChoices("doc", "pdf"))


class Project(Entity):
    id: str
    user_id: str
    title: str
    description: str = ""
    category: str = ""
    role: str = ""
    tech_stack: List[str] = Field(default_factory=list)
    image_url: Optional[str] = None
    status: ProjectStatus = "in_progress"
    achievements: List[str] = Field(default_factory=list)
    links: ProjectLinks = Field(default_factory=ProjectLinks)
    xp_value: int = Field(default=0, ge=0)
    created_at: datetime
    updated_at: datetime


class PortfolioProfile(Entity):
    key_field: ClassVar[str] = "user_id"

    user_id: str
    username: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    total_projects: int = 0  # Derived
    total_xp: int = 0  # Derived
    share_slug: Optional[str] = None  # Set once, then immutable
    created_at: datetime
    updated_at: datetime


class GamificationStats(Entity):
    id: str
    user_id: str
    username: Optional[str] = None
    total_xp: int = Field(default=0, ge=0)
    level: int = Field(default=1, ge=1)
    streak_days: int = Field(default=0, ge=0)  # Maintained remotely
    last_activity_date: Optional[date] = None
    updated_at: Optional[datetime] = None


class DailyGoal(Entity):
    id: str
    user_id: str
    title: str
    description: str = ""
    reward_xp: int = Field(default=0, ge=0)
    status: GoalStatus = "pending"
    goal_date: date
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Badge(Entity):
    id: str
    user_id: str
    badge_id: str  # Stable catalog key
    title: str
    description: str = ""
    icon: str = ""
    xp_value: int = 0
    unlocked: bool = False
    unlocked_at: Optional[datetime] = None


class WeeklyChallenge(Entity):
    id: str
    user_id: str
    title: str
    description: str = ""
    reward_xp: int = Field(default=0, ge=0)
    progress: int = Field(default=0, ge=0)
    target_progress: int = Field(default=1, ge=1)
    deadline: datetime
    status: ChallengeStatus = "active"
    created_at: Optional[datetime] = None


class ChangeEvent(BaseModel):
    """Normalized push event"""
    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    collection: str
    key: str
    entity: Optional[Entity] = None  # None for deletes


COLLECTION_MODELS: Dict[str, Type[Entity]] = {
    COLLECTION_PROJECTS: Project,
    COLLECTION_PORTFOLIO: PortfolioProfile,
    COLLECTION_GAMIFICATION: GamificationStats,
    COLLECTION_DAILY_GOALS: DailyGoal,
    COLLECTION_BADGES: Badge,
    COLLECTION_WEEKLY_CHALLENGES: WeeklyChallenge,
}


def model_for(collection: str) -> Type[Entity]:
    """Get the entity model for a collection"""
    try:
        return COLLECTION_MODELS[collection]
    except KeyError:
        raise ValueError(f"Unknown collection: {collection}") from None


def key_field_for(collection: str) -> str:
    """Get the name of the key field for a collection"""
    return model_for(collection).key_field
