"""
Tests for SqlPersistenceService against in-memory SQLite.

Tests cover:
1. Reads (newest first, single-row lookups, ranking)
2. Owner-scoped writes and error codes
3. Conditional updates
4. Transactional multi-row updates
5. Change events after commit
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from progress_core.constants import (
    COLLECTION_DAILY_GOALS,
    COLLECTION_GAMIFICATION,
    COLLECTION_PORTFOLIO,
    COLLECTION_PROJECTS,
)
from progress_core.exceptions import RemoteError
from progress_core.infrastructure.sql_persistence import SqlPersistenceService
from progress_core.interfaces import RowUpdate
from progress_core.tests.conftest import FIXED_NOW, OTHER_OWNER, OWNER, goal_row, project_row


class Actor:
    """Mutable acting owner"""

    def __init__(self, owner_id=OWNER):
        self.owner_id = owner_id

    def __call__(self):
        return self.owner_id


@pytest.fixture
def actor():
    return Actor()


@pytest.fixture
def sql(db_session_factory, push, actor):
    return SqlPersistenceService(db_session_factory, push, acting_owner=actor)


def events_for(push, collection, owner_id):
    received = []
    push.subscribe(collection, owner_id, received.append)
    return received


class TestReads:
    """Tests for fetch_all, fetch_one, fetch_top, count_above"""

    @pytest.mark.asyncio
    async def test_fetch_all_newest_first_and_owner_scoped(self, sql, actor):
        await sql.create(COLLECTION_PROJECTS, project_row(id="old", created_at=FIXED_NOW - timedelta(days=1)))
        await sql.create(COLLECTION_PROJECTS, project_row(id="new"))
        actor.owner_id = OTHER_OWNER
        await sql.create(COLLECTION_PROJECTS, project_row(OTHER_OWNER, id="theirs"))

        projects = await sql.fetch_all(COLLECTION_PROJECTS, OWNER)

        assert [p.id for p in projects] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_fetch_one_no_rows(self, sql):
        with pytest.raises(RemoteError) as exc_info:
            await sql.fetch_one(COLLECTION_PORTFOLIO, {"user_id": OWNER})

        assert exc_info.value.code == "PGRST116"

    @pytest.mark.asyncio
    async def test_fetch_one_by_slug(self, sql):
        await sql.create(COLLECTION_PORTFOLIO, {"user_id": OWNER, "share_slug": "jane-1"})

        portfolio = await sql.fetch_one(COLLECTION_PORTFOLIO, {"share_slug": "jane-1"})

        assert portfolio.user_id == OWNER

    @pytest.mark.asyncio
    async def test_unknown_collection(self, sql):
        with pytest.raises(RemoteError) as exc_info:
            await sql.fetch_all("nope", OWNER)

        assert exc_info.value.code == "42P01"

    @pytest.mark.asyncio
    async def test_unknown_filter_column(self, sql):
        with pytest.raises(RemoteError) as exc_info:
            await sql.fetch_one(COLLECTION_PORTFOLIO, {"nickname": "x"})

        assert exc_info.value.code == "42703"

    @pytest.mark.asyncio
    async def test_fetch_top_and_count_above(self, sql, actor):
        for owner_id, xp in [("a", 10), ("b", 300), ("c", 150)]:
            actor.owner_id = owner_id
            await sql.create(COLLECTION_GAMIFICATION, {"id": f"g-{owner_id}", "user_id": owner_id, "total_xp": xp})

        top = await sql.fetch_top(COLLECTION_GAMIFICATION, "total_xp", 2)

        assert [row.user_id for row in top] == ["b", "c"]
        assert await sql.count_above(COLLECTION_GAMIFICATION, "total_xp", 10) == 2


class TestWrites:
    """Tests for create, update and delete"""

    @pytest.mark.asyncio
    async def test_create_keeps_client_id_and_json_fields(self, sql):
        created = await sql.create(COLLECTION_PROJECTS, project_row(
            id="p1", tech_stack=["python", "sql"], links={"github": "https://github.com/x"},
        ))

        assert created.id == "p1"
        assert created.tech_stack == ["python", "sql"]
        assert created.links.github == "https://github.com/x"

    @pytest.mark.asyncio
    async def test_datetimes_come_back_aware(self, sql):
        local = datetime(2026, 3, 10, 16, 0, tzinfo=timezone(timedelta(hours=2)))

        created = await sql.create(COLLECTION_PROJECTS, project_row(id="p1", created_at=local))

        assert created.created_at == FIXED_NOW
        assert created.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_create_requires_actor(self, sql, actor):
        actor.owner_id = None

        with pytest.raises(RemoteError) as exc_info:
            await sql.create(COLLECTION_PROJECTS, project_row())

        assert exc_info.value.code == "PGRST301"

    @pytest.mark.asyncio
    async def test_create_for_another_owner_is_denied(self, sql):
        with pytest.raises(RemoteError) as exc_info:
            await sql.create(COLLECTION_PROJECTS, project_row(OTHER_OWNER))

        assert exc_info.value.code == "42501"

    @pytest.mark.asyncio
    async def test_duplicate_id(self, sql):
        await sql.create(COLLECTION_PROJECTS, project_row(id="p1"))

        with pytest.raises(RemoteError) as exc_info:
            await sql.create(COLLECTION_PROJECTS, project_row(id="p1"))

        assert exc_info.value.code == "23505"

    @pytest.mark.asyncio
    async def test_duplicate_share_slug(self, sql, actor):
        await sql.create(COLLECTION_PORTFOLIO, {"user_id": OWNER, "share_slug": "taken-1"})
        actor.owner_id = OTHER_OWNER
        await sql.create(COLLECTION_PORTFOLIO, {"user_id": OTHER_OWNER})

        with pytest.raises(RemoteError) as exc_info:
            await sql.update(COLLECTION_PORTFOLIO, OTHER_OWNER, {"share_slug": "taken-1"})

        assert exc_info.value.code == "23505"

    @pytest.mark.asyncio
    async def test_create_without_owner_column_is_denied(self, sql):
        row = project_row()
        del row["user_id"]

        with pytest.raises(RemoteError) as exc_info:
            await sql.create(COLLECTION_PROJECTS, row)

        assert exc_info.value.code == "42501"

    @pytest.mark.asyncio
    async def test_update_missing_row(self, sql):
        with pytest.raises(RemoteError) as exc_info:
            await sql.update(COLLECTION_PROJECTS, "missing", {"title": "x"})

        assert exc_info.value.code == "PGRST116"

    @pytest.mark.asyncio
    async def test_update_of_another_owners_row_is_denied(self, sql, actor):
        await sql.create(COLLECTION_PROJECTS, project_row(id="p1"))
        actor.owner_id = OTHER_OWNER

        with pytest.raises(RemoteError) as exc_info:
            await sql.update(COLLECTION_PROJECTS, "p1", {"title": "mine now"})

        assert exc_info.value.code == "42501"

    @pytest.mark.asyncio
    async def test_conditional_update(self, sql):
        await sql.create(COLLECTION_PROJECTS, project_row(id="p1", status="in_progress"))

        updated = await sql.update(
            COLLECTION_PROJECTS, "p1", {"status": "completed"}, expected={"status": "in_progress"}
        )
        assert updated.status == "completed"

        with pytest.raises(RemoteError) as exc_info:
            await sql.update(COLLECTION_PROJECTS, "p1", {"status": "upcoming"}, expected={"status": "in_progress"})
        assert exc_info.value.code == "PGRST116"

    @pytest.mark.asyncio
    async def test_delete_absent_row_succeeds(self, sql):
        await sql.delete(COLLECTION_PROJECTS, "missing")

    @pytest.mark.asyncio
    async def test_delete_of_another_owners_row_is_denied(self, sql, actor):
        await sql.create(COLLECTION_PROJECTS, project_row(id="p1"))
        actor.owner_id = OTHER_OWNER

        with pytest.raises(RemoteError) as exc_info:
            await sql.delete(COLLECTION_PROJECTS, "p1")

        assert exc_info.value.code == "42501"


class TestUpdateMany:
    """Tests for the transactional update_many"""

    @pytest.mark.asyncio
    async def test_all_updates_commit_together(self, sql, push):
        await sql.create(COLLECTION_DAILY_GOALS, goal_row(id="g1"))
        await sql.create(COLLECTION_GAMIFICATION, {"id": "s1", "user_id": OWNER, "total_xp": 50})
        await asyncio.sleep(0)
        goal_events = events_for(push, COLLECTION_DAILY_GOALS, OWNER)
        stats_events = events_for(push, COLLECTION_GAMIFICATION, OWNER)

        goal, stats = await sql.update_many([
            RowUpdate(COLLECTION_DAILY_GOALS, "g1", {"status": "completed"}, {"status": "pending"}),
            RowUpdate(COLLECTION_GAMIFICATION, "s1", {"total_xp": 75}),
        ])
        await asyncio.sleep(0)

        assert goal.status == "completed"
        assert stats.total_xp == 75
        assert [event["eventType"] for event in goal_events + stats_events] == ["UPDATE", "UPDATE"]

    @pytest.mark.asyncio
    async def test_failed_precondition_writes_nothing(self, sql):
        await sql.create(COLLECTION_DAILY_GOALS, goal_row(id="g1", status="completed"))
        await sql.create(COLLECTION_GAMIFICATION, {"id": "s1", "user_id": OWNER, "total_xp": 50})

        with pytest.raises(RemoteError) as exc_info:
            await sql.update_many([
                RowUpdate(COLLECTION_GAMIFICATION, "s1", {"total_xp": 75}),
                RowUpdate(COLLECTION_DAILY_GOALS, "g1", {"status": "completed"}, {"status": "pending"}),
            ])

        assert exc_info.value.code == "PGRST116"
        assert exc_info.value.collection == COLLECTION_DAILY_GOALS
        assert exc_info.value.key == "g1"
        stats = await sql.fetch_one(COLLECTION_GAMIFICATION, {"user_id": OWNER})
        assert stats.total_xp == 50

    @pytest.mark.asyncio
    async def test_missing_second_row_names_its_collection(self, sql):
        await sql.create(COLLECTION_DAILY_GOALS, goal_row(id="g1"))

        with pytest.raises(RemoteError) as exc_info:
            await sql.update_many([
                RowUpdate(COLLECTION_DAILY_GOALS, "g1", {"status": "completed"}, {"status": "pending"}),
                RowUpdate(COLLECTION_GAMIFICATION, "missing", {"total_xp": 75}),
            ])

        assert exc_info.value.collection == COLLECTION_GAMIFICATION
        goals = await sql.fetch_all(COLLECTION_DAILY_GOALS, OWNER)
        assert goals[0].status == "pending"


class TestEvents:
    """Tests for change events"""

    @pytest.mark.asyncio
    async def test_each_write_publishes_after_commit(self, sql, push):
        received = events_for(push, COLLECTION_PROJECTS, OWNER)

        await sql.create(COLLECTION_PROJECTS, project_row(id="p1", title="First"))
        await sql.update(COLLECTION_PROJECTS, "p1", {"title": "Second"})
        await sql.delete(COLLECTION_PROJECTS, "p1")
        await asyncio.sleep(0)

        assert [event["eventType"] for event in received] == ["INSERT", "UPDATE", "DELETE"]
        assert received[1]["old"]["title"] == "First"
        assert received[1]["new"]["title"] == "Second"
        assert received[2]["old"] == {"id": "p1", "user_id": OWNER}

    @pytest.mark.asyncio
    async def test_failed_write_publishes_nothing(self, sql, push):
        await sql.create(COLLECTION_PROJECTS, project_row(id="p1"))
        await asyncio.sleep(0)
        received = events_for(push, COLLECTION_PROJECTS, OWNER)

        with pytest.raises(RemoteError):
            await sql.create(COLLECTION_PROJECTS, project_row(id="p1"))
        await asyncio.sleep(0)

        assert received == []

    def test_works_without_push(self, db_session_factory):
        service = SqlPersistenceService(db_session_factory, acting_owner=lambda: OWNER)

        created = asyncio.run(service.create(COLLECTION_PROJECTS, project_row(id="p1")))

        assert created.id == "p1"
