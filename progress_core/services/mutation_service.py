"""
Mutation coordination service.

Every user write goes through the same state machine:

    idle -> optimistic_applied -> confirmed      (remote write succeeded)
    idle -> optimistic_applied -> rolled_back    (remote write failed)

The optimistic value is applied to the entity store before the remote call
and replaced by the authoritative value (or rolled back) when the call
returns. A rollback only restores a slot that still holds what the mutation
put there; anything written to that id in the meantime wins.

Results that come back after the owner changed are discarded.
"""
import logging
import uuid
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Mapping, Optional, Set, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from progress_core.constants import (
    COLLECTION_DAILY_GOALS,
    COLLECTION_GAMIFICATION,
    COLLECTION_PORTFOLIO,
    COLLECTION_PROJECTS,
    GOAL_STATUS_COMPLETED,
    GOAL_STATUS_PENDING,
    MUTATION_HISTORY_SIZE,
)
from progress_core.exceptions import (
    NotFoundException,
    ProgressCoreException,
    RemoteError,
    UnknownRemoteException,
    ValidationException,
    decode_remote_error,
)
from progress_core.interfaces import PersistenceService, RowUpdate
from progress_core.models import DailyGoal, GamificationStats, Project
from progress_core.repositories.entity_store import EntityStore
from progress_core.schemas import ProfileStats, ProjectCreate, ProjectUpdate
from progress_core.services.badge_service import BadgeContext, BadgeService
from progress_core.services.date_service import DateService
from progress_core.services.flight import CoalescingTask, SingleFlight
from progress_core.services.notice_service import NoticeService
from progress_core.services.session_service import SessionHandle
from progress_core.services.stats_service import StatsService, compute_level, compute_profile_stats

logger = logging.getLogger("progress_core.mutations")

SchemaT = TypeVar("SchemaT", bound=BaseModel)


class MutationState(str, Enum):
    IDLE = "idle"
    OPTIMISTIC_APPLIED = "optimistic_applied"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"


_TRANSITIONS = {
    MutationState.IDLE: {MutationState.OPTIMISTIC_APPLIED},
    MutationState.OPTIMISTIC_APPLIED: {MutationState.CONFIRMED, MutationState.ROLLED_BACK},
    MutationState.CONFIRMED: set(),
    MutationState.ROLLED_BACK: set(),
}


class MutationRecord:
    """One logical write and where it is in its lifecycle"""

    def __init__(self, kind: str, collection: str, key: str, owner_id: str, epoch: int):
        self.kind = kind
        self.collection = collection
        self.key = key
        self.owner_id = owner_id
        self.epoch = epoch
        self.state = MutationState.IDLE
        self.error: Optional[str] = None
        self.discarded = False  # Result arrived after an owner change

    @property
    def terminal(self) -> bool:
        return self.state in (MutationState.CONFIRMED, MutationState.ROLLED_BACK)

    def transition(self, new_state: MutationState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid mutation transition for {self.kind} {self.key}: "
                f"{self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def __repr__(self) -> str:
        return f"<MutationRecord {self.kind} {self.key} {self.state.value}>"


class MutationCoordinator:
    """Service orchestrating optimistic writes against the persistence service"""

    def __init__(
        self,
        store: EntityStore,
        persistence: PersistenceService,
        session: SessionHandle,
        stats: StatsService,
        badges: BadgeService,
        notices: NoticeService,
        date_service: Optional[DateService] = None,
    ):
        self.store = store
        self.persistence = persistence
        self.session = session
        self.stats = stats
        self.badges = badges
        self.notices = notices
        self.date_service = date_service or DateService()
        self.history: Deque[MutationRecord] = deque(maxlen=MUTATION_HISTORY_SIZE)
        self._in_flight: Set[MutationRecord] = set()
        self._completing_goals: Set[str] = set()
        self._slug_flight = SingleFlight()
        self._profile_syncs: Dict[str, CoalescingTask] = {}
        self._pending_totals: Dict[str, Tuple[ProfileStats, int]] = {}

    # Helpers

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def is_in_flight(self, collection: str, key: str) -> bool:
        """Whether an optimistic write to this entity awaits its remote result"""
        return any(
            record.collection == collection and record.key == key
            for record in self._in_flight
        )

    @property
    def profile_sync_owners(self) -> List[str]:
        return list(self._profile_syncs)

    def _begin(self, kind: str, collection: str, key: str, owner_id: str) -> MutationRecord:
        record = MutationRecord(kind, collection, key, owner_id, self.session.epoch)
        self.history.append(record)
        self._in_flight.add(record)
        return record

    def _apply(self, record: MutationRecord) -> None:
        record.transition(MutationState.OPTIMISTIC_APPLIED)
        self.stats.request()

    def _confirm(self, record: MutationRecord) -> None:
        record.transition(MutationState.CONFIRMED)
        self._in_flight.discard(record)
        self.stats.request()

    def _roll_back(self, record: MutationRecord, error: Exception, restore: Callable[[], None]) -> None:
        record.error = str(error)
        if self._is_stale(record):
            record.discarded = True
        else:
            restore()
        record.transition(MutationState.ROLLED_BACK)
        self._in_flight.discard(record)
        self.stats.request()
        logger.warning(f"Rolled back {record.kind} {record.key}: {error}")

    def _is_stale(self, record: MutationRecord) -> bool:
        return not self.session.is_current(record.epoch)

    def _discard_if_stale(self, record: MutationRecord) -> bool:
        """Finish a successful mutation whose owner is gone without touching the store"""
        if not self._is_stale(record):
            return False
        record.discarded = True
        record.transition(MutationState.CONFIRMED)
        self._in_flight.discard(record)
        logger.info(f"Discarding result of {record.kind} {record.key}: owner changed")
        return True

    @staticmethod
    async def _remote(call: Awaitable[Any], collection: str, key: Optional[str] = None) -> Any:
        """Await a persistence call, decoding its failures into the taxonomy"""
        try:
            return await call
        except RemoteError as e:
            if e.collection is not None and e.collection != collection:
                raise decode_remote_error(e, e.collection, e.key) from e
            raise decode_remote_error(e, collection, key) from e
        except ProgressCoreException:
            raise
        except Exception as e:
            raise UnknownRemoteException(None, str(e)) from e

    @staticmethod
    def _validate(schema: Type[SchemaT], data: Union[SchemaT, Mapping[str, Any]]) -> SchemaT:
        if isinstance(data, schema):
            return data
        try:
            return schema.model_validate(dict(data))
        except ValidationError as e:
            first = e.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or schema.__name__
            raise ValidationException(field, first["msg"]) from e

    # Projects

    async def add_project(self, data: Union[ProjectCreate, Mapping[str, Any]]) -> Project:
        """
        Create a project.

        The provisional entity uses a client-generated id, which the remote
        create keeps, so confirmation and the matching push event land in
        the same store slot.

        Raises:
            NotAuthenticatedException: If nobody is signed in
            ValidationException: If the data is invalid (nothing is sent)
            ConflictException, PermissionDeniedException, UnknownRemoteException:
                If the remote create fails (the provisional entity is removed)
        """
        owner_id = self.session.require_owner()
        project_data = self._validate(ProjectCreate, data)

        now = self.date_service.now()
        key = str(uuid.uuid4())
        fields = {"id": key, "user_id": owner_id, **project_data.model_dump()}
        provisional = Project.model_validate({**fields, "created_at": now, "updated_at": now})

        record = self._begin("add_project", COLLECTION_PROJECTS, key, owner_id)
        self.store.upsert(COLLECTION_PROJECTS, provisional, position=0)
        self._apply(record)
        logger.info(f"Adding project {key}: {project_data.title}")

        try:
            created = await self._remote(
                self.persistence.create(COLLECTION_PROJECTS, fields), COLLECTION_PROJECTS, key
            )
        except ProgressCoreException as e:
            def restore() -> None:
                if self.store.get(COLLECTION_PROJECTS, key) is provisional:
                    self.store.remove(COLLECTION_PROJECTS, key)
            self._roll_back(record, e, restore)
            raise

        if self._discard_if_stale(record):
            return created

        self.store.replace(COLLECTION_PROJECTS, key, created)
        self._confirm(record)
        self._request_profile_sync()
        return created

    async def update_project(
        self,
        project_id: str,
        fields: Union[ProjectUpdate, Mapping[str, Any]],
    ) -> Project:
        """
        Update a project with a partial field set.

        Raises:
            NotAuthenticatedException: If nobody is signed in
            ValidationException: If a field is invalid
            NotFoundException: If the project is not in the local store
            ConflictException, PermissionDeniedException, UnknownRemoteException:
                If the remote update fails (the previous value is restored)
        """
        owner_id = self.session.require_owner()
        changes = self._validate(ProjectUpdate, fields).model_dump(exclude_unset=True)

        current = self.store.get(COLLECTION_PROJECTS, project_id)
        if current is None:
            raise NotFoundException(COLLECTION_PROJECTS, project_id)

        now = self.date_service.now()
        optimistic = Project.model_validate({**current.model_dump(), **changes, "updated_at": now})

        record = self._begin("update_project", COLLECTION_PROJECTS, project_id, owner_id)
        self.store.upsert(COLLECTION_PROJECTS, optimistic)
        self._apply(record)

        try:
            updated = await self._remote(
                self.persistence.update(COLLECTION_PROJECTS, project_id, {**changes, "updated_at": now}),
                COLLECTION_PROJECTS,
                project_id,
            )
        except ProgressCoreException as e:
            def restore() -> None:
                if self.store.get(COLLECTION_PROJECTS, project_id) is optimistic:
                    self.store.upsert(COLLECTION_PROJECTS, current)
            self._roll_back(record, e, restore)
            raise

        if self._discard_if_stale(record):
            return updated

        self.store.upsert(COLLECTION_PROJECTS, updated)
        self._confirm(record)
        # XP may or may not have changed; recomputation is cheap and idempotent
        self._request_profile_sync()
        return updated

    async def delete_project(self, project_id: str) -> None:
        """
        Delete a project.

        The removed entity and its list position are kept until the remote
        delete answers; on failure it is put back unchanged.
        """
        owner_id = self.session.require_owner()

        current = self.store.get(COLLECTION_PROJECTS, project_id)
        if current is None:
            raise NotFoundException(COLLECTION_PROJECTS, project_id)
        position = self.store.index_of(COLLECTION_PROJECTS, project_id)

        record = self._begin("delete_project", COLLECTION_PROJECTS, project_id, owner_id)
        self.store.remove(COLLECTION_PROJECTS, project_id)
        self._apply(record)

        try:
            await self._remote(
                self.persistence.delete(COLLECTION_PROJECTS, project_id),
                COLLECTION_PROJECTS,
                project_id,
            )
        except ProgressCoreException as e:
            def restore() -> None:
                if self.store.get(COLLECTION_PROJECTS, project_id) is None:
                    self.store.upsert(COLLECTION_PROJECTS, current, position=position)
            self._roll_back(record, e, restore)
            raise

        if self._discard_if_stale(record):
            return

        self._confirm(record)
        self._request_profile_sync()

    # Goals

    async def complete_goal(self, goal_id: str, reward_xp: Optional[int] = None) -> DailyGoal:
        """
        Complete a pending daily goal and award its XP.

        The goal and the new XP total are written in one transaction, so a
        failure leaves neither changed remotely. Completing a goal that is
        already completed (or being completed) is a no-op. Badge eligibility
        is checked against the new totals.

        Args:
            goal_id: Goal to complete
            reward_xp: XP to award; defaults to the goal's reward

        Returns:
            The goal as stored after the call
        """
        owner_id = self.session.require_owner()

        goal = self.store.get(COLLECTION_DAILY_GOALS, goal_id)
        if goal is None:
            raise NotFoundException(COLLECTION_DAILY_GOALS, goal_id)
        if goal.status == GOAL_STATUS_COMPLETED or goal_id in self._completing_goals:
            logger.info(f"Goal {goal_id} already completed, nothing to do")
            return goal

        reward = goal.reward_xp if reward_xp is None else reward_xp
        if reward < 0:
            raise ValidationException("reward_xp", "must be non-negative")

        stats = self.store.first(COLLECTION_GAMIFICATION)
        if stats is None:
            raise NotFoundException(COLLECTION_GAMIFICATION, owner_id)

        now = self.date_service.now()
        new_total_xp = stats.total_xp + reward
        new_level = compute_level(new_total_xp)

        completed_goal = goal.model_copy(update={"status": GOAL_STATUS_COMPLETED, "updated_at": now})
        new_stats = stats.model_copy(update={
            "total_xp": new_total_xp,
            "level": new_level,
            "last_activity_date": now.date(),
            "updated_at": now,
        })

        record = self._begin("complete_goal", COLLECTION_DAILY_GOALS, goal_id, owner_id)
        self._completing_goals.add(goal_id)
        self.store.upsert(COLLECTION_DAILY_GOALS, completed_goal)
        self.store.upsert(COLLECTION_GAMIFICATION, new_stats)
        self._apply(record)

        def restore() -> None:
            if self.store.get(COLLECTION_DAILY_GOALS, goal_id) is completed_goal:
                self.store.upsert(COLLECTION_DAILY_GOALS, goal)
            if self.store.get(COLLECTION_GAMIFICATION, stats.key) is new_stats:
                self.store.upsert(COLLECTION_GAMIFICATION, stats)

        try:
            try:
                confirmed_goal, confirmed_stats = await self._remote(
                    self.persistence.update_many([
                        RowUpdate(
                            COLLECTION_DAILY_GOALS,
                            goal_id,
                            {"status": GOAL_STATUS_COMPLETED, "updated_at": now},
                            expected={"status": GOAL_STATUS_PENDING},
                        ),
                        RowUpdate(
                            COLLECTION_GAMIFICATION,
                            stats.key,
                            {
                                "total_xp": new_total_xp,
                                "level": new_level,
                                "last_activity_date": now.date(),
                                "updated_at": now,
                            },
                        ),
                    ]),
                    COLLECTION_DAILY_GOALS,
                    goal_id,
                )
            except NotFoundException as e:
                if e.collection != COLLECTION_DAILY_GOALS:
                    raise
                return self._goal_completed_elsewhere(record, e, goal, stats, new_stats)
        except ProgressCoreException as e:
            self._roll_back(record, e, restore)
            raise
        finally:
            self._completing_goals.discard(goal_id)

        if self._discard_if_stale(record):
            return confirmed_goal

        self.store.upsert(COLLECTION_DAILY_GOALS, confirmed_goal)
        self.store.upsert(COLLECTION_GAMIFICATION, confirmed_stats)
        self._confirm(record)

        self.notices.goal_completed(reward)
        if confirmed_stats.level > stats.level:
            self.notices.level_up(confirmed_stats.level)

        completed_goals = sum(
            1 for item in self.store.list(COLLECTION_DAILY_GOALS)
            if item.status == GOAL_STATUS_COMPLETED
        )
        await self.badges.evaluate(BadgeContext(
            total_xp=confirmed_stats.total_xp,
            streak_days=confirmed_stats.streak_days,
            completed_goals=completed_goals,
            now=now,
        ))
        return confirmed_goal

    def _goal_completed_elsewhere(
        self,
        record: MutationRecord,
        error: NotFoundException,
        goal: DailyGoal,
        stats: GamificationStats,
        new_stats: GamificationStats,
    ) -> DailyGoal:
        """The conditional goal update matched nothing: another session completed it first"""
        def restore() -> None:
            if self.store.get(COLLECTION_GAMIFICATION, stats.key) is new_stats:
                self.store.upsert(COLLECTION_GAMIFICATION, stats)

        self._roll_back(record, error, restore)
        logger.info(f"Goal {goal.id} was completed elsewhere; no XP awarded")
        stored = self.store.get(COLLECTION_DAILY_GOALS, goal.id)
        return stored if stored is not None else goal

    # Portfolio

    async def generate_share_slug(self) -> str:
        """
        Get the owner's public share slug, creating it on first use.

        Overlapping calls for one owner share a single creation, so only one
        slug is ever persisted.
        """
        owner_id = self.session.require_owner()

        profile = self.store.get(COLLECTION_PORTFOLIO, owner_id)
        if profile is not None and profile.share_slug:
            return profile.share_slug

        return await self._slug_flight.run(owner_id, lambda: self._create_share_slug(owner_id))

    async def _create_share_slug(self, owner_id: str) -> str:
        now = self.date_service.now()
        slug = f"{self.session.slug_token}-{int(now.timestamp() * 1000)}"

        record = self._begin("generate_share_slug", COLLECTION_PORTFOLIO, owner_id, owner_id)
        profile = self.store.get(COLLECTION_PORTFOLIO, owner_id)
        optimistic = None
        if profile is not None:
            optimistic = profile.model_copy(update={"share_slug": slug})
            self.store.upsert(COLLECTION_PORTFOLIO, optimistic)
        self._apply(record)

        def restore() -> None:
            if optimistic is not None and self.store.get(COLLECTION_PORTFOLIO, owner_id) is optimistic:
                self.store.upsert(COLLECTION_PORTFOLIO, profile)

        try:
            try:
                updated = await self._remote(
                    self.persistence.update(
                        COLLECTION_PORTFOLIO,
                        owner_id,
                        {"share_slug": slug, "updated_at": now},
                        expected={"share_slug": None},
                    ),
                    COLLECTION_PORTFOLIO,
                    owner_id,
                )
            except NotFoundException:
                # Either the slug already exists remotely or there is no profile row
                updated = await self._remote(
                    self.persistence.fetch_one(COLLECTION_PORTFOLIO, {"user_id": owner_id}),
                    COLLECTION_PORTFOLIO,
                    owner_id,
                )
                if not updated.share_slug:
                    raise NotFoundException(COLLECTION_PORTFOLIO, owner_id)
        except ProgressCoreException as e:
            self._roll_back(record, e, restore)
            raise

        if self._discard_if_stale(record):
            return updated.share_slug

        self.store.upsert(COLLECTION_PORTFOLIO, updated)
        self._confirm(record)
        logger.info(f"Share slug for {owner_id}: {updated.share_slug}")
        return updated.share_slug

    # Secondary writes

    def _request_profile_sync(self) -> None:
        """
        Queue a write of the current total_projects/total_xp to the profile.

        The totals and owner are captured now; at most one write per owner is
        in flight, and requests made meanwhile collapse into one more write
        carrying the latest totals.
        """
        owner_id = self.session.owner_id
        if owner_id is None:
            return

        totals = compute_profile_stats(self.store.list(COLLECTION_PROJECTS))
        self._pending_totals[owner_id] = (totals, self.session.epoch)

        task = self._profile_syncs.get(owner_id)
        if task is None:
            task = CoalescingTask(
                f"profile-stats-sync:{owner_id}",
                lambda: self._sync_profile_stats(owner_id),
            )
            self._profile_syncs[owner_id] = task
        task.request()

    async def _sync_profile_stats(self, owner_id: str) -> None:
        """
        Persist the latest queued totals for `owner_id`.

        Runs after a primary project write has succeeded; failures are logged
        and never reach the caller of that write.
        """
        pending = self._pending_totals.pop(owner_id, None)
        if pending is None:
            return
        totals, epoch = pending

        try:
            updated = await self._remote(
                self.persistence.update(
                    COLLECTION_PORTFOLIO,
                    owner_id,
                    {
                        "total_projects": totals.total_projects,
                        "total_xp": totals.total_xp,
                        "updated_at": self.date_service.now(),
                    },
                ),
                COLLECTION_PORTFOLIO,
                owner_id,
            )
        except ProgressCoreException as e:
            logger.error(f"Error updating portfolio stats: {e}")
            return

        if not self.session.is_current(epoch):
            return
        self.store.upsert(COLLECTION_PORTFOLIO, updated)
        self.stats.request()

    async def drain(self) -> None:
        """Wait for background secondary writes to finish"""
        for task in list(self._profile_syncs.values()):
            await task.wait()

    def reset(self) -> None:
        """Forget per-owner bookkeeping (owner change); in-flight calls discard themselves"""
        self._completing_goals.clear()
        # Finished profile syncs are dropped; a running one still writes its owner's totals
        self._profile_syncs = {
            owner_id: task for owner_id, task in self._profile_syncs.items() if task.running
        }
        self._pending_totals = {
            owner_id: pending for owner_id, pending in self._pending_totals.items()
            if owner_id in self._profile_syncs
        }
