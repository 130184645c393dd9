"""
Badge eligibility service.

The catalog is closed: every badge has one fixed predicate over the current
aggregates. Unlocking is a false -> true transition committed through a
conditional remote write, so overlapping evaluations (here or in another
session) never unlock a badge twice.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, NamedTuple, Optional, Set

from progress_core.constants import (
    BADGE_EARLY_BIRD_HOUR,
    BADGE_FIRST_INTERVIEW_XP,
    BADGE_KNOWLEDGE_SEEKER_XP,
    BADGE_STREAK_MASTER_DAYS,
    COLLECTION_BADGES,
    COLLECTION_DAILY_GOALS,
    COLLECTION_GAMIFICATION,
    GOAL_STATUS_COMPLETED,
)
from progress_core.exceptions import NotFoundException, RemoteError, decode_remote_error
from progress_core.interfaces import PersistenceService
from progress_core.models import Badge
from progress_core.repositories.entity_store import EntityStore
from progress_core.services.date_service import DateService
from progress_core.services.flight import CoalescingTask
from progress_core.services.session_service import SessionHandle

logger = logging.getLogger("progress_core.badges")


@dataclass(frozen=True)
class BadgeContext:
    """Aggregates a badge predicate is evaluated against"""
    total_xp: int
    streak_days: int
    completed_goals: int
    now: datetime


class BadgeRule(NamedTuple):
    badge_id: str
    title: str
    description: str
    icon: str
    xp_value: int
    predicate: Callable[[BadgeContext], bool]


BADGE_CATALOG: List[BadgeRule] = [
    BadgeRule(
        "first_interview",
        "First Interview",
        "Complete your first interview",
        "ri-trophy-line",
        50,
        lambda ctx: ctx.total_xp >= BADGE_FIRST_INTERVIEW_XP,
    ),
    BadgeRule(
        "streak_master",
        "Streak Master",
        "Maintain a 7-day streak",
        "ri-fire-line",
        100,
        lambda ctx: ctx.streak_days >= BADGE_STREAK_MASTER_DAYS,
    ),
    BadgeRule(
        "early_bird",
        "Early Bird",
        "Complete a goal before 10 AM",
        "ri-sun-line",
        75,
        lambda ctx: ctx.completed_goals >= 1 and DateService.is_before_hour(ctx.now, BADGE_EARLY_BIRD_HOUR),
    ),
    BadgeRule(
        "knowledge_seeker",
        "Knowledge Seeker",
        "Earn 500 XP",
        "ri-book-open-line",
        150,
        lambda ctx: ctx.total_xp >= BADGE_KNOWLEDGE_SEEKER_XP,
    ),
]


def eligible_badge_ids(context: BadgeContext) -> List[str]:
    """Catalog keys whose predicate holds for `context`"""
    return [rule.badge_id for rule in BADGE_CATALOG if rule.predicate(context)]


class BadgeService:
    """Service for badge eligibility checks and unlocks"""

    def __init__(
        self,
        store: EntityStore,
        persistence: PersistenceService,
        session: SessionHandle,
        date_service: DateService,
        on_changed: Optional[Callable[[], None]] = None,
        on_unlocked: Optional[Callable[[Badge], None]] = None,
    ):
        self.store = store
        self.persistence = persistence
        self.session = session
        self.date_service = date_service
        self._on_changed = on_changed
        self._on_unlocked = on_unlocked
        self._unlocking: Set[str] = set()
        self._background = CoalescingTask("badge-evaluation", self._evaluate_from_store)

    def context_from_store(self) -> BadgeContext:
        """Build the evaluation context from the current store content"""
        stats = self.store.first(COLLECTION_GAMIFICATION)
        goals = self.store.list(COLLECTION_DAILY_GOALS)
        return BadgeContext(
            total_xp=stats.total_xp if stats else 0,
            streak_days=stats.streak_days if stats else 0,
            completed_goals=sum(1 for goal in goals if goal.status == GOAL_STATUS_COMPLETED),
            now=self.date_service.now(),
        )

    def request_evaluation(self) -> None:
        """Schedule an evaluation from the store (coalesced)"""
        self._background.request()

    async def wait(self) -> None:
        await self._background.wait()

    async def _evaluate_from_store(self) -> None:
        if self.session.owner_id is None:
            return
        await self.evaluate(self.context_from_store())

    def _find(self, badge_id: str) -> Optional[Badge]:
        for badge in self.store.list(COLLECTION_BADGES):
            if badge.badge_id == badge_id:
                return badge
        return None

    async def evaluate(self, context: BadgeContext) -> List[Badge]:
        """
        Unlock every eligible badge that is still locked.

        Failures are logged, not raised: evaluation always follows an
        operation that already succeeded.

        Args:
            context: Aggregates to evaluate against (post-update totals)

        Returns:
            Badges unlocked by this call
        """
        owner_id = self.session.owner_id
        if owner_id is None:
            return []
        epoch = self.session.epoch

        unlocked: List[Badge] = []
        for badge_id in eligible_badge_ids(context):
            badge = self._find(badge_id)
            if badge is None or badge.unlocked or badge.key in self._unlocking:
                continue

            self._unlocking.add(badge.key)
            try:
                updated = await self.persistence.update(
                    COLLECTION_BADGES,
                    badge.key,
                    {"unlocked": True, "unlocked_at": self.date_service.now()},
                    expected={"unlocked": False},
                )
            except RemoteError as e:
                error = decode_remote_error(e, COLLECTION_BADGES, badge.key)
                if isinstance(error, NotFoundException):
                    logger.info(f"Badge {badge_id} already unlocked elsewhere")
                else:
                    logger.error(f"Error unlocking badge {badge_id}: {error}")
                continue
            except Exception as e:
                logger.error(f"Error unlocking badge {badge_id}: {e}")
                continue
            finally:
                self._unlocking.discard(badge.key)

            if not self.session.is_current(epoch):
                logger.info(f"Discarding unlock of {badge_id}: owner changed")
                return unlocked

            current = self.store.get(COLLECTION_BADGES, updated.key)
            if current is not None and current.unlocked:
                # A push event already delivered the unlock
                continue

            self.store.upsert(COLLECTION_BADGES, updated)
            unlocked.append(updated)
            logger.info(f"Badge unlocked: {badge_id}")
            if self._on_unlocked:
                self._on_unlocked(updated)

        if unlocked and self._on_changed:
            self._on_changed()
        return unlocked

    def cancel(self) -> None:
        self._background.cancel()
        self._unlocking.clear()
