"""
Progress core service.

Wires the entity store, derived stats, mutation coordinator and change feed
for the current owner, and resets all of it whenever the owner changes.
"""
import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Tuple, TypeVar

from progress_core.constants import (
    ALL_COLLECTIONS,
    BADGE_TRIGGER_COLLECTIONS,
    CHALLENGE_STATUS_ACTIVE,
    COLLECTION_BADGES,
    COLLECTION_DAILY_GOALS,
    COLLECTION_GAMIFICATION,
    COLLECTION_PORTFOLIO,
    COLLECTION_PROJECTS,
    COLLECTION_WEEKLY_CHALLENGES,
    INITIAL_CHALLENGE_DAYS,
    INITIAL_CHALLENGE_DESCRIPTION,
    INITIAL_CHALLENGE_REWARD_XP,
    INITIAL_CHALLENGE_TARGET,
    INITIAL_CHALLENGE_TITLE,
)
from progress_core.exceptions import NotFoundException, RemoteError, decode_remote_error
from progress_core.interfaces import PersistenceService, PushService
from progress_core.models import (
    DailyGoal,
    Entity,
    GamificationStats,
    PortfolioProfile,
    Project,
    WeeklyChallenge,
)
from progress_core.repositories.entity_store import EntityStore
from progress_core.schemas import CoreNotice, CoreSnapshot, Leaderboard, PublicPortfolio
from progress_core.services.badge_service import BADGE_CATALOG, BadgeService
from progress_core.services.challenge_service import ChallengeService
from progress_core.services.change_feed_service import ChangeFeedAdapter
from progress_core.services.date_service import DateService
from progress_core.services.leaderboard_service import LeaderboardService
from progress_core.services.mutation_service import MutationCoordinator
from progress_core.services.notice_service import NoticeService
from progress_core.services.public_view_service import PublicViewService
from progress_core.services.session_service import SessionHandle
from progress_core.services.stats_service import StatsService

logger = logging.getLogger("progress_core.core")

T = TypeVar("T")


class ProgressCore:
    """Client-side state reconciliation core for one session"""

    def __init__(
        self,
        persistence: PersistenceService,
        push: PushService,
        session: Optional[SessionHandle] = None,
        date_service: Optional[DateService] = None,
    ):
        self.persistence = persistence
        self.push = push
        self.session = session or SessionHandle()
        self.date_service = date_service or DateService()

        self.store = EntityStore()
        self.stats = StatsService(self.store, lambda: self.session.owner_id)
        self.notices = NoticeService(self.date_service)
        self.badges = BadgeService(
            self.store,
            persistence,
            self.session,
            self.date_service,
            on_changed=self.stats.request,
            on_unlocked=lambda badge: self.notices.badge_unlocked(badge.title),
        )
        self.mutations = MutationCoordinator(
            self.store,
            persistence,
            self.session,
            self.stats,
            self.badges,
            self.notices,
            self.date_service,
        )
        self.feed = ChangeFeedAdapter(
            self.store, push, on_merged=self._on_merged, in_flight=self.mutations.is_in_flight
        )
        self.challenges = ChallengeService(self.store, persistence, self.session, self.date_service)
        self.leaderboard = LeaderboardService(persistence)
        self.public_view = PublicViewService(persistence)

        self._loading: Optional[asyncio.Task] = None
        self._dispose_session = self.session.add_listener(self._on_owner_changed)

    # Session lifecycle

    async def sign_in(self, owner_id: str, owner_token: Optional[str] = None) -> CoreSnapshot:
        """Switch to `owner_id` and wait for its data to load"""
        self.session.sign_in(owner_id, owner_token)
        await self.ready()
        return self.snapshot

    async def sign_out(self) -> CoreSnapshot:
        self.session.sign_out()
        await self.ready()
        return self.snapshot

    async def ready(self) -> None:
        """Wait for the current owner's initial load"""
        if self._loading is not None:
            await asyncio.shield(self._loading)
        self.stats.flush()

    def _on_owner_changed(self, previous: Optional[str], current: Optional[str]) -> None:
        # Previous owner's subscriptions go away before anything new is set up
        self.feed.cancel_all()
        self.badges.cancel()
        self.mutations.reset()
        self.store.clear()
        self.stats.reset()
        self.stats.request()

        if self._loading is not None and not self._loading.done():
            self._loading.cancel()
        self._loading = None

        if current is not None:
            epoch = self.session.epoch
            self._loading = asyncio.get_running_loop().create_task(
                self._start(current, epoch), name=f"load:{current}"
            )

    async def _start(self, owner_id: str, epoch: int) -> None:
        for collection in ALL_COLLECTIONS:
            self.feed.subscribe(collection, owner_id)
        await self.load(owner_id, epoch)

    # Initial load

    async def refresh(self) -> CoreSnapshot:
        """Reload every collection of the current owner"""
        owner_id = self.session.require_owner()
        await self.load(owner_id, self.session.epoch)
        self.stats.flush()
        return self.snapshot

    async def load(self, owner_id: str, epoch: int) -> None:
        """
        Fetch all collections and replace the store content in one step.

        Read failures never block: each collection falls back to an empty or
        default value and the failure is logged.
        """
        logger.info(f"Loading data for {owner_id}")

        # Stats first: creating them seeds badges and the weekly challenge
        gamification = await self._load_gamification(owner_id)
        projects, portfolio, goals, badges, challenge = await asyncio.gather(
            self._degrade("projects", self.persistence.fetch_all(COLLECTION_PROJECTS, owner_id), []),
            self._load_portfolio(owner_id),
            self._load_daily_goals(owner_id),
            self._degrade("badges", self.persistence.fetch_all(COLLECTION_BADGES, owner_id), []),
            self._load_weekly_challenge(owner_id),
        )

        if not self.session.is_current(epoch):
            logger.info(f"Discarding load for {owner_id}: owner changed")
            return

        self.store.replace_all(COLLECTION_PROJECTS, projects)
        self.store.replace_all(COLLECTION_PORTFOLIO, [portfolio])
        self.store.replace_all(COLLECTION_GAMIFICATION, [gamification])
        self.store.replace_all(COLLECTION_DAILY_GOALS, goals)
        self.store.replace_all(COLLECTION_BADGES, badges)
        self.store.replace_all(COLLECTION_WEEKLY_CHALLENGES, [challenge] if challenge else [])
        self.stats.request()
        self.badges.request_evaluation()

    async def _degrade(self, name: str, call: Awaitable[T], default: T) -> T:
        try:
            return await call
        except Exception as e:
            logger.error(f"Error fetching {name}: {e}")
            return default

    async def _load_portfolio(self, owner_id: str) -> PortfolioProfile:
        now = self.date_service.now()
        fields = {
            "user_id": owner_id,
            "username": self.session.username,
            "total_projects": 0,
            "total_xp": 0,
            "created_at": now,
            "updated_at": now,
        }
        default = PortfolioProfile.model_validate(fields)

        try:
            return await self.persistence.fetch_one(COLLECTION_PORTFOLIO, {"user_id": owner_id})
        except RemoteError as e:
            if not isinstance(decode_remote_error(e, COLLECTION_PORTFOLIO, owner_id), NotFoundException):
                logger.error(f"Error fetching portfolio: {e}")
                return default
        except Exception as e:
            logger.error(f"Error fetching portfolio: {e}")
            return default

        # Portfolio doesn't exist yet, create one
        return await self._degrade(
            "portfolio (create)", self.persistence.create(COLLECTION_PORTFOLIO, fields), default
        )

    async def _load_gamification(self, owner_id: str) -> GamificationStats:
        now = self.date_service.now()
        fields = {
            "id": str(uuid.uuid4()),
            "user_id": owner_id,
            "username": self.session.username,
            "total_xp": 0,
            "level": 1,
            "streak_days": 0,
            "last_activity_date": now.date(),
            "updated_at": now,
        }
        default = GamificationStats.model_validate({**fields, "id": owner_id})

        try:
            return await self.persistence.fetch_one(COLLECTION_GAMIFICATION, {"user_id": owner_id})
        except RemoteError as e:
            if not isinstance(decode_remote_error(e, COLLECTION_GAMIFICATION, owner_id), NotFoundException):
                logger.error(f"Error fetching gamification data: {e}")
                return default
        except Exception as e:
            logger.error(f"Error fetching gamification data: {e}")
            return default

        try:
            created = await self.persistence.create(COLLECTION_GAMIFICATION, fields)
        except Exception as e:
            logger.error(f"Error creating gamification data: {e}")
            return default

        await self._seed(owner_id)
        return created

    async def _seed(self, owner_id: str) -> None:
        """Create the badge catalog and the first weekly challenge for a new owner"""
        now = self.date_service.now()
        rows: List[Tuple[str, dict]] = [
            (COLLECTION_BADGES, {
                "id": str(uuid.uuid4()),
                "user_id": owner_id,
                "badge_id": rule.badge_id,
                "title": rule.title,
                "description": rule.description,
                "icon": rule.icon,
                "xp_value": rule.xp_value,
                "unlocked": False,
            })
            for rule in BADGE_CATALOG
        ]
        rows.append((COLLECTION_WEEKLY_CHALLENGES, {
            "id": str(uuid.uuid4()),
            "user_id": owner_id,
            "title": INITIAL_CHALLENGE_TITLE,
            "description": INITIAL_CHALLENGE_DESCRIPTION,
            "reward_xp": INITIAL_CHALLENGE_REWARD_XP,
            "progress": 0,
            "target_progress": INITIAL_CHALLENGE_TARGET,
            "deadline": now + timedelta(days=INITIAL_CHALLENGE_DAYS),
            "status": CHALLENGE_STATUS_ACTIVE,
            "created_at": now,
        }))

        for collection, fields in rows:
            await self._degrade(f"{collection} (seed)", self.persistence.create(collection, fields), None)

    async def _load_daily_goals(self, owner_id: str) -> List[DailyGoal]:
        goals = await self._degrade(
            "daily goals", self.persistence.fetch_all(COLLECTION_DAILY_GOALS, owner_id), []
        )
        today = self.date_service.today()
        # Fetched newest first; goals are shown oldest first
        return [goal for goal in reversed(goals) if goal.goal_date == today]

    async def _load_weekly_challenge(self, owner_id: str) -> Optional[WeeklyChallenge]:
        challenges = await self._degrade(
            "weekly challenge", self.persistence.fetch_all(COLLECTION_WEEKLY_CHALLENGES, owner_id), []
        )
        for challenge in challenges:
            if challenge.status == CHALLENGE_STATUS_ACTIVE:
                return challenge
        return None

    # Push merges

    def _on_merged(self, collection: str, previous: Optional[Entity], current: Optional[Entity]) -> None:
        self.stats.request()

        if collection in BADGE_TRIGGER_COLLECTIONS:
            self.badges.request_evaluation()

        if collection == COLLECTION_GAMIFICATION and previous is not None and current is not None:
            if current.level > previous.level:
                self.notices.level_up(current.level)

        if collection == COLLECTION_BADGES and current is not None and current.unlocked:
            if previous is None or not previous.unlocked:
                self.notices.badge_unlocked(current.title)

    # UI read boundary

    @property
    def snapshot(self) -> CoreSnapshot:
        return self.stats.snapshot

    def add_snapshot_listener(self, listener: Callable[[CoreSnapshot], None]) -> Callable[[], None]:
        return self.stats.add_listener(listener)

    def add_notice_listener(self, listener: Callable[[CoreNotice], None]) -> Callable[[], None]:
        return self.notices.add_listener(listener)

    async def fetch_leaderboard(self) -> Leaderboard:
        owner_id = self.session.owner_id
        stats = self.store.first(COLLECTION_GAMIFICATION)
        return await self.leaderboard.fetch(owner_id, stats.total_xp if stats else None)

    async def fetch_public_portfolio(self, share_slug: str) -> PublicPortfolio:
        return await self.public_view.fetch_public_portfolio(share_slug)

    # UI write boundary

    async def add_project(self, data: Mapping[str, Any]) -> Project:
        return await self.mutations.add_project(data)

    async def update_project(self, project_id: str, fields: Mapping[str, Any]) -> Project:
        return await self.mutations.update_project(project_id, fields)

    async def delete_project(self, project_id: str) -> None:
        await self.mutations.delete_project(project_id)

    async def complete_goal(self, goal_id: str, reward_xp: Optional[int] = None) -> DailyGoal:
        return await self.mutations.complete_goal(goal_id, reward_xp)

    async def generate_share_slug(self) -> str:
        return await self.mutations.generate_share_slug()

    async def sweep_challenges(self) -> None:
        updated = await self.challenges.sweep()
        if updated is not None:
            self.stats.request()

    # Shutdown

    async def drain(self) -> None:
        """Wait for background work (secondary writes, badge checks) and publish"""
        await self.ready()
        await self.mutations.drain()
        await self.badges.wait()
        await asyncio.sleep(0)
        self.stats.flush()

    async def close(self) -> None:
        self.feed.cancel_all()
        await self.drain()
        self._dispose_session()
