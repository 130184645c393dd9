"""
Derived stats calculation service.

The compute_* functions are pure: the same input always yields the same
(equal) output, which lets the snapshot publisher suppress unchanged snapshots.
StatsService coalesces recomputation requests so that a burst of triggers in
one loop tick produces a single pass and at most one published snapshot.
"""
import asyncio
import logging
from typing import Callable, Iterable, List, Optional

from progress_core.constants import (
    COLLECTION_BADGES,
    COLLECTION_DAILY_GOALS,
    COLLECTION_GAMIFICATION,
    COLLECTION_PORTFOLIO,
    COLLECTION_PROJECTS,
    COLLECTION_WEEKLY_CHALLENGES,
    GOAL_STATUS_COMPLETED,
    XP_PER_LEVEL,
)
from progress_core.models import Project
from progress_core.repositories.entity_store import EntityStore
from progress_core.schemas import CoreSnapshot, DerivedStats, LevelProgress, ProfileStats

logger = logging.getLogger("progress_core.stats")

SnapshotListener = Callable[[CoreSnapshot], None]


def compute_profile_stats(projects: Iterable[Project]) -> ProfileStats:
    """Count projects and sum their XP"""
    total_projects = 0
    total_xp = 0
    for project in projects:
        total_projects += 1
        total_xp += project.xp_value
    return ProfileStats(total_projects=total_projects, total_xp=total_xp)


def compute_level(total_xp: int) -> int:
    """
    Calculate level from total XP.

    Level = floor(total_xp / 1000) + 1, so 0 -> 1, 999 -> 1, 1000 -> 2.
    """
    if total_xp < 0:
        raise ValueError(f"total_xp must be non-negative, got {total_xp}")
    return total_xp // XP_PER_LEVEL + 1


def compute_progress_to_next_level(total_xp: int) -> float:
    """Percentage of the current level already earned, in [0, 100)"""
    if total_xp < 0:
        raise ValueError(f"total_xp must be non-negative, got {total_xp}")
    return (total_xp % XP_PER_LEVEL) / XP_PER_LEVEL * 100


def compute_level_progress(total_xp: int) -> LevelProgress:
    """Level plus XP earned into it and XP still missing for the next one"""
    xp_into_level = total_xp % XP_PER_LEVEL if total_xp >= 0 else 0
    return LevelProgress(
        level=compute_level(total_xp),
        xp_into_level=xp_into_level,
        xp_to_next_level=XP_PER_LEVEL - xp_into_level,
        percent=compute_progress_to_next_level(total_xp),
    )


def compute_derived_stats(store: EntityStore) -> DerivedStats:
    """Recompute every derived value from the current store content"""
    projects: List[Project] = store.list(COLLECTION_PROJECTS)
    gamification = store.first(COLLECTION_GAMIFICATION)
    goals = store.list(COLLECTION_DAILY_GOALS)
    badges = store.list(COLLECTION_BADGES)

    gamification_xp = gamification.total_xp if gamification else 0

    return DerivedStats(
        profile=compute_profile_stats(projects),
        gamification_total_xp=gamification_xp,
        level_progress=compute_level_progress(gamification_xp),
        unlocked_badges=sum(1 for badge in badges if badge.unlocked),
        total_badges=len(badges),
        completed_goals=sum(1 for goal in goals if goal.status == GOAL_STATUS_COMPLETED),
        total_goals=len(goals),
        streak_days=gamification.streak_days if gamification else 0,
    )


def build_snapshot(store: EntityStore, derived: DerivedStats, owner_id: Optional[str]) -> CoreSnapshot:
    """Assemble the UI-facing snapshot of the store"""
    return CoreSnapshot(
        owner_id=owner_id,
        revision=store.revision,
        projects=store.list(COLLECTION_PROJECTS),
        portfolio=store.first(COLLECTION_PORTFOLIO),
        gamification=store.first(COLLECTION_GAMIFICATION),
        daily_goals=store.list(COLLECTION_DAILY_GOALS),
        badges=store.list(COLLECTION_BADGES),
        weekly_challenge=store.first(COLLECTION_WEEKLY_CHALLENGES),
        derived=derived,
    )


class StatsService:
    """Service for coalesced recomputation and snapshot publication"""

    def __init__(self, store: EntityStore, owner_provider: Callable[[], Optional[str]]):
        self.store = store
        self._owner_provider = owner_provider
        self._listeners: List[SnapshotListener] = []
        self._scheduled = False
        self._last_stats: Optional[DerivedStats] = None
        self._last_snapshot: Optional[CoreSnapshot] = None
        self.passes = 0

    @property
    def stats(self) -> DerivedStats:
        """Latest derived stats (computed on demand if never run)"""
        if self._last_stats is None:
            return compute_derived_stats(self.store)
        return self._last_stats

    @property
    def snapshot(self) -> CoreSnapshot:
        """Latest published snapshot, or a fresh one if none was published"""
        if self._last_snapshot is None:
            return build_snapshot(self.store, self.stats, self._owner_provider())
        return self._last_snapshot

    @property
    def pending(self) -> bool:
        return self._scheduled

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a snapshot listener; returns its disposer"""
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    def request(self) -> None:
        """
        Ask for a recomputation pass.

        Requests issued in the same loop tick share one pass. Without a running
        loop the pass runs immediately.
        """
        if self._scheduled:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._run()
            return

        self._scheduled = True
        loop.call_soon(self._run)

    def flush(self) -> None:
        """Run a pending pass now"""
        if self._scheduled:
            self._run()

    def reset(self) -> None:
        """Forget the published state (owner change)"""
        self._last_stats = None
        self._last_snapshot = None

    def _run(self) -> None:
        self._scheduled = False
        self.passes += 1

        derived = compute_derived_stats(self.store)
        self._sync_profile_totals(derived.profile)

        owner_id = self._owner_provider()
        previous = self._last_snapshot
        if (
            previous is not None
            and previous.derived == derived
            and previous.revision == self.store.revision
            and previous.owner_id == owner_id
        ):
            self._last_stats = derived
            return

        snapshot = build_snapshot(self.store, derived, owner_id)
        self._last_stats = derived
        self._last_snapshot = snapshot

        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Snapshot listener failed: {e}")

    def _sync_profile_totals(self, profile_stats: ProfileStats) -> None:
        """Keep the local profile's derived totals equal to the project slice"""
        profile = self.store.first(COLLECTION_PORTFOLIO)
        if profile is None:
            return
        if (
            profile.total_projects == profile_stats.total_projects
            and profile.total_xp == profile_stats.total_xp
        ):
            return
        self.store.upsert(
            COLLECTION_PORTFOLIO,
            profile.model_copy(update={
                "total_projects": profile_stats.total_projects,
                "total_xp": profile_stats.total_xp,
            }),
        )
