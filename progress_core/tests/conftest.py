"""
Shared fixtures.

FakePersistence is an in-memory PersistenceService with the same conditional
update and error-code behavior as the SQL service, plus failure injection and
gates for holding a call open while the test changes the world around it.
"""
import asyncio
import itertools
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pytest

from progress_core.constants import (
    ALL_COLLECTIONS,
    COLLECTION_BADGES,
    COLLECTION_DAILY_GOALS,
    COLLECTION_GAMIFICATION,
    COLLECTION_PORTFOLIO,
    COLLECTION_PROJECTS,
    COLLECTION_WEEKLY_CHALLENGES,
)
from progress_core.exceptions import (
    RemoteError,
    CODE_NO_ROWS,
    CODE_UNIQUE_VIOLATION,
)
from progress_core.infrastructure.database import create_db_engine, create_session_factory, init_db, Base
from progress_core.infrastructure.push import LocalPushService
from progress_core.interfaces import RowUpdate
from progress_core.models import Entity, key_field_for, model_for
from progress_core.services.badge_service import BADGE_CATALOG
from progress_core.services.date_service import DateService
from progress_core.services.progress_service import ProgressCore
from progress_core.services.session_service import SessionHandle

# Afternoon, so the early-bird badge never unlocks by accident
FIXED_NOW = datetime(2026, 3, 10, 14, 0, tzinfo=timezone.utc)
TODAY = FIXED_NOW.date()

OWNER = "owner-a"
OTHER_OWNER = "owner-b"


class FakePersistence:
    """In-memory persistence service"""

    def __init__(self, push: Optional[LocalPushService] = None, now: datetime = FIXED_NOW):
        self.push = push
        self.now = now
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in ALL_COLLECTIONS}
        self.calls: List[Tuple[str, str]] = []
        self._failures: Dict[Tuple[str, str], Tuple[RemoteError, bool]] = {}
        self._gates: Dict[Tuple[str, str], asyncio.Event] = {}
        self._order = itertools.count()

    # Test controls

    def fail(self, op: str, collection: str, code: Optional[str] = "XX000",
             message: str = "remote failure", once: bool = False) -> None:
        """Make every `op` on `collection` raise RemoteError(code)"""
        self._failures[(op, collection)] = (RemoteError(code, message, collection), once)

    def gate(self, op: str, collection: str) -> asyncio.Event:
        """Hold `op` on `collection` until the returned event is set"""
        event = asyncio.Event()
        self._gates[(op, collection)] = event
        return event

    def count(self, op: str, collection: str) -> int:
        return self.calls.count((op, collection))

    def seed(self, collection: str, **fields) -> Entity:
        """Insert a row directly, without events"""
        row = self._with_defaults(collection, dict(fields))
        self.tables[collection][row[key_field_for(collection)]] = row
        return model_for(collection).model_validate(row)

    def row(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        return self.tables[collection].get(key)

    # Internals

    async def _enter(self, op: str, collection: str) -> None:
        self.calls.append((op, collection))
        gate = self._gates.get((op, collection))
        if gate is not None:
            await gate.wait()
        failure = self._failures.get((op, collection))
        if failure is not None:
            error, once = failure
            if once:
                del self._failures[(op, collection)]
            raise error

    def _with_defaults(self, collection: str, row: Dict[str, Any]) -> Dict[str, Any]:
        fields = model_for(collection).model_fields
        for name in ("created_at", "updated_at"):
            if name in fields and row.get(name) is None:
                row[name] = self.now
        row["_order"] = next(self._order)
        return row

    def _entity(self, collection: str, row: Dict[str, Any]) -> Entity:
        return model_for(collection).model_validate(row)

    def _publish(self, collection: str, event_type: str, new: dict, old: dict) -> None:
        if self.push is None:
            return
        owner_id = (new or old).get("user_id")
        self.push.publish(collection, owner_id, {"eventType": event_type, "new": new, "old": old})

    # PersistenceService

    async def fetch_all(self, collection: str, owner_id: str) -> List[Entity]:
        await self._enter("fetch_all", collection)
        rows = [row for row in self.tables[collection].values() if row.get("user_id") == owner_id]
        rows.sort(key=lambda row: row["_order"], reverse=True)
        return [self._entity(collection, row) for row in rows]

    async def fetch_one(self, collection: str, filters: Mapping[str, Any]) -> Entity:
        await self._enter("fetch_one", collection)
        rows = [
            row for row in self.tables[collection].values()
            if all(row.get(field) == value for field, value in filters.items())
        ]
        if len(rows) != 1:
            raise RemoteError(CODE_NO_ROWS, "JSON object requested, multiple (or no) rows returned")
        return self._entity(collection, rows[0])

    async def create(self, collection: str, fields: Mapping[str, Any]) -> Entity:
        await self._enter("create", collection)
        key_field = key_field_for(collection)
        row = dict(fields)
        row.setdefault(key_field, str(uuid.uuid4()))
        if row[key_field] in self.tables[collection]:
            raise RemoteError(CODE_UNIQUE_VIOLATION, "duplicate key value violates unique constraint")
        row = self._with_defaults(collection, row)
        self.tables[collection][row[key_field]] = row
        self._publish(collection, "INSERT", dict(row), {})
        return self._entity(collection, row)

    async def update(self, collection: str, key: str, fields: Mapping[str, Any],
                     expected: Optional[Mapping[str, Any]] = None) -> Entity:
        updated = await self.update_many([RowUpdate(collection, key, fields, expected)])
        return updated[0]

    async def update_many(self, updates: Sequence[RowUpdate]) -> List[Entity]:
        # Every row is checked before any is written
        rows = []
        for update in updates:
            await self._enter("update", update.collection)
            rows.append(self._matching_row(update))

        results = []
        for update, row in zip(updates, rows):
            old = dict(row)
            row.update(update.fields)
            self._publish(update.collection, "UPDATE", dict(row), old)
            results.append(self._entity(update.collection, row))
        return results

    def _matching_row(self, update: RowUpdate) -> Dict[str, Any]:
        collection, key = update.collection, update.key
        row = self.tables[collection].get(key)
        if row is None:
            raise RemoteError(CODE_NO_ROWS, "No rows matched", collection, key)
        for field, value in (update.expected or {}).items():
            if row.get(field) != value:
                raise RemoteError(CODE_NO_ROWS, "No rows matched the update filter", collection, key)
        if "share_slug" in update.fields:
            for other_key, other in self.tables[collection].items():
                if other_key != key and other.get("share_slug") == update.fields["share_slug"]:
                    raise RemoteError(CODE_UNIQUE_VIOLATION, "duplicate key value violates unique constraint")
        return row

    async def delete(self, collection: str, key: str) -> None:
        await self._enter("delete", collection)
        row = self.tables[collection].pop(key, None)
        if row is not None:
            self._publish(collection, "DELETE", {}, {key_field_for(collection): key, "user_id": row["user_id"]})

    async def fetch_top(self, collection: str, order_by: str, limit: int) -> List[Entity]:
        await self._enter("fetch_top", collection)
        rows = sorted(self.tables[collection].values(), key=lambda row: row.get(order_by) or 0, reverse=True)
        return [self._entity(collection, row) for row in rows[:limit]]

    async def count_above(self, collection: str, field: str, value: Any) -> int:
        await self._enter("count_above", collection)
        return sum(1 for row in self.tables[collection].values() if (row.get(field) or 0) > value)


# Row builders

def project_row(owner_id: str = OWNER, **overrides) -> Dict[str, Any]:
    row = {
        "id": str(uuid.uuid4()),
        "user_id": owner_id,
        "title": "Portfolio site",
        "description": "",
        "category": "web",
        "role": "developer",
        "tech_stack": ["python"],
        "status": "in_progress",
        "achievements": [],
        "links": {},
        "xp_value": 100,
        "created_at": FIXED_NOW,
        "updated_at": FIXED_NOW,
    }
    row.update(overrides)
    return row


def goal_row(owner_id: str = OWNER, **overrides) -> Dict[str, Any]:
    row = {
        "id": str(uuid.uuid4()),
        "user_id": owner_id,
        "title": "Practice interview",
        "description": "",
        "reward_xp": 25,
        "status": "pending",
        "goal_date": TODAY,
    }
    row.update(overrides)
    return row


def seed_owner(
    persistence: FakePersistence,
    owner_id: str = OWNER,
    total_xp: int = 0,
    streak_days: int = 0,
    goals: Optional[List[Dict[str, Any]]] = None,
    projects: Optional[List[Dict[str, Any]]] = None,
    challenge_deadline: Optional[datetime] = None,
) -> None:
    """Seed a returning owner: stats, profile, locked badges, goals, projects, challenge"""
    persistence.seed(
        COLLECTION_GAMIFICATION,
        id=f"stats-{owner_id}",
        user_id=owner_id,
        username=owner_id,
        total_xp=total_xp,
        level=total_xp // 1000 + 1,
        streak_days=streak_days,
        last_activity_date=TODAY - timedelta(days=1),
    )
    persistence.seed(COLLECTION_PORTFOLIO, user_id=owner_id, username=owner_id)
    for rule in BADGE_CATALOG:
        persistence.seed(
            COLLECTION_BADGES,
            id=f"{owner_id}-{rule.badge_id}",
            user_id=owner_id,
            badge_id=rule.badge_id,
            title=rule.title,
            description=rule.description,
            icon=rule.icon,
            xp_value=rule.xp_value,
            unlocked=False,
        )
    for goal in goals or []:
        persistence.seed(COLLECTION_DAILY_GOALS, **goal)
    for project in projects or []:
        persistence.seed(COLLECTION_PROJECTS, **project)
    persistence.seed(
        COLLECTION_WEEKLY_CHALLENGES,
        id=f"challenge-{owner_id}",
        user_id=owner_id,
        title="Interview Master Challenge",
        description="Complete 3 practice interviews this week",
        reward_xp=300,
        progress=0,
        target_progress=3,
        deadline=challenge_deadline or FIXED_NOW + timedelta(days=3),
        status="active",
    )


# Fixtures

@pytest.fixture
def date_service():
    return DateService(clock=lambda: FIXED_NOW)


@pytest.fixture
def push():
    return LocalPushService()


@pytest.fixture
def persistence(push):
    return FakePersistence(push=push)


@pytest.fixture
def session():
    return SessionHandle()


@pytest.fixture
def core(persistence, push, session, date_service):
    return ProgressCore(persistence, push, session, date_service)


@pytest.fixture
def notices(core):
    received = []
    core.add_notice_listener(received.append)
    return received


@pytest.fixture
def db_engine():
    """Fresh in-memory SQLite database per test"""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session_factory(db_engine):
    return create_session_factory(db_engine)
