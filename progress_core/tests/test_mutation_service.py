"""
Tests for MutationCoordinator project and share-slug operations.

Tests cover:
1. Optimistic apply, confirmation and rollback of project writes
2. Rollback never clobbering a newer value
3. Results discarded after an owner change
4. Share slug generation (single flight, already set elsewhere)
5. Profile totals secondary write
"""
import asyncio

import pytest

from progress_core.constants import COLLECTION_PORTFOLIO, COLLECTION_PROJECTS
from progress_core.exceptions import (
    CODE_INSUFFICIENT_PRIVILEGE,
    CODE_UNIQUE_VIOLATION,
    ConflictException,
    NotAuthenticatedException,
    NotFoundException,
    PermissionDeniedException,
    UnknownRemoteException,
    ValidationException,
)
from progress_core.services.mutation_service import MutationState
from progress_core.tests.conftest import OTHER_OWNER, OWNER, project_row, seed_owner


async def sign_in(core, persistence, **seed):
    seed_owner(persistence, **seed)
    await core.sign_in(OWNER, "Jane.Doe@example.com")


def project_ids(core):
    return [project.id for project in core.store.list(COLLECTION_PROJECTS)]


class TestAddProject:
    """Tests for add_project"""

    @pytest.mark.asyncio
    async def test_provisional_entity_shows_first_until_confirmed(self, core, persistence):
        await sign_in(core, persistence, projects=[project_row(id="old")])
        gate = persistence.gate("create", COLLECTION_PROJECTS)

        task = asyncio.create_task(core.add_project({"title": "New project", "xp_value": 40}))
        await asyncio.sleep(0)

        # Optimistic value visible while the remote create is pending
        first = core.store.list(COLLECTION_PROJECTS)[0]
        assert first.title == "New project"
        assert core.mutations.in_flight == 1

        gate.set()
        created = await task

        assert project_ids(core) == [created.id, "old"]
        assert persistence.row(COLLECTION_PROJECTS, created.id)["title"] == "New project"
        assert core.mutations.history[-1].state == MutationState.CONFIRMED

    @pytest.mark.asyncio
    async def test_failed_create_removes_provisional_entity(self, core, persistence):
        await sign_in(core, persistence, projects=[project_row(id="old")])
        persistence.fail("create", COLLECTION_PROJECTS, code=CODE_INSUFFICIENT_PRIVILEGE)

        with pytest.raises(PermissionDeniedException):
            await core.add_project({"title": "Rejected"})

        assert project_ids(core) == ["old"]
        record = core.mutations.history[-1]
        assert record.state == MutationState.ROLLED_BACK
        assert record.error is not None

    @pytest.mark.asyncio
    async def test_conflict_is_decoded(self, core, persistence):
        await sign_in(core, persistence)
        persistence.fail("create", COLLECTION_PROJECTS, code=CODE_UNIQUE_VIOLATION)

        with pytest.raises(ConflictException):
            await core.add_project({"title": "Duplicate"})

    @pytest.mark.asyncio
    async def test_blank_title_is_rejected_locally(self, core, persistence):
        """Validation fails before anything is applied or sent"""
        await sign_in(core, persistence)
        revision = core.store.revision

        with pytest.raises(ValidationException) as exc_info:
            await core.add_project({"title": "   "})

        assert exc_info.value.field == "title"
        assert persistence.count("create", COLLECTION_PROJECTS) == 0
        assert core.store.revision == revision

    @pytest.mark.asyncio
    async def test_requires_signed_in_owner(self, core):
        with pytest.raises(NotAuthenticatedException):
            await core.add_project({"title": "Nobody's"})


class TestUpdateProject:
    """Tests for update_project"""

    @pytest.mark.asyncio
    async def test_partial_update_keeps_other_fields(self, core, persistence):
        await sign_in(core, persistence, projects=[project_row(id="p1", title="Before", xp_value=80)])

        updated = await core.update_project("p1", {"title": "After"})

        assert updated.title == "After"
        assert updated.xp_value == 80
        assert core.store.get(COLLECTION_PROJECTS, "p1").title == "After"

    @pytest.mark.asyncio
    async def test_failure_restores_previous_value(self, core, persistence):
        await sign_in(core, persistence, projects=[project_row(id="p1", title="Before")])
        original = core.store.get(COLLECTION_PROJECTS, "p1")
        persistence.fail("update", COLLECTION_PROJECTS)

        with pytest.raises(UnknownRemoteException):
            await core.update_project("p1", {"title": "After"})

        assert core.store.get(COLLECTION_PROJECTS, "p1") == original

    @pytest.mark.asyncio
    async def test_rollback_keeps_newer_pushed_value(self, core, persistence, push):
        """A value delivered by the feed while the write was pending is not overwritten"""
        await sign_in(core, persistence, projects=[project_row(id="p1", title="Before")])
        gate = persistence.gate("update", COLLECTION_PROJECTS)
        persistence.fail("update", COLLECTION_PROJECTS)

        task = asyncio.create_task(core.update_project("p1", {"title": "Mine"}))
        await asyncio.sleep(0)
        push.publish(COLLECTION_PROJECTS, OWNER, {
            "eventType": "UPDATE",
            "new": project_row(id="p1", title="From another tab"),
            "old": {},
        })
        await asyncio.sleep(0)

        gate.set()
        with pytest.raises(UnknownRemoteException):
            await task

        assert core.store.get(COLLECTION_PROJECTS, "p1").title == "From another tab"

    @pytest.mark.asyncio
    async def test_unknown_project(self, core, persistence):
        await sign_in(core, persistence)

        with pytest.raises(NotFoundException):
            await core.update_project("missing", {"title": "x"})

    @pytest.mark.asyncio
    async def test_title_cannot_be_cleared(self, core, persistence):
        await sign_in(core, persistence, projects=[project_row(id="p1")])

        with pytest.raises(ValidationException):
            await core.update_project("p1", {"title": None})


class TestDeleteProject:
    """Tests for delete_project"""

    @pytest.mark.asyncio
    async def test_failure_restores_entity_at_its_position(self, core, persistence):
        await sign_in(core, persistence, projects=[
            project_row(id="p1"), project_row(id="p2"), project_row(id="p3"),
        ])
        # Fetched newest first
        assert project_ids(core) == ["p3", "p2", "p1"]
        persistence.fail("delete", COLLECTION_PROJECTS)

        with pytest.raises(UnknownRemoteException):
            await core.delete_project("p2")

        assert project_ids(core) == ["p3", "p2", "p1"]

    @pytest.mark.asyncio
    async def test_delete_updates_profile_totals(self, core, persistence):
        """Profile totals are written in the background after the delete"""
        await sign_in(core, persistence, projects=[
            project_row(id="p1", xp_value=100), project_row(id="p2", xp_value=50),
        ])

        await core.delete_project("p1")
        await core.drain()

        assert project_ids(core) == ["p2"]
        row = persistence.row(COLLECTION_PORTFOLIO, OWNER)
        assert row["total_projects"] == 1
        assert row["total_xp"] == 50
        assert core.snapshot.derived.profile.total_xp == 50

    @pytest.mark.asyncio
    async def test_profile_sync_failure_is_not_raised(self, core, persistence):
        await sign_in(core, persistence, projects=[project_row(id="p1")])
        persistence.fail("update", COLLECTION_PORTFOLIO)

        await core.delete_project("p1")
        await core.drain()

        assert project_ids(core) == []
        assert persistence.row(COLLECTION_PROJECTS, "p1") is None


class TestOwnerChangeDuringMutation:
    """Results arriving after the owner changed are discarded"""

    @pytest.mark.asyncio
    async def test_late_create_result_is_discarded(self, core, persistence):
        await sign_in(core, persistence)
        gate = persistence.gate("create", COLLECTION_PROJECTS)

        task = asyncio.create_task(core.add_project({"title": "Late"}))
        await asyncio.sleep(0)
        await core.sign_out()

        gate.set()
        await task

        assert project_ids(core) == []
        record = core.mutations.history[-1]
        assert record.discarded
        assert record.state == MutationState.CONFIRMED

    @pytest.mark.asyncio
    async def test_late_failure_does_not_restore(self, core, persistence):
        await sign_in(core, persistence, projects=[project_row(id="p1")])
        gate = persistence.gate("delete", COLLECTION_PROJECTS)
        persistence.fail("delete", COLLECTION_PROJECTS)

        task = asyncio.create_task(core.delete_project("p1"))
        await asyncio.sleep(0)
        await core.sign_out()

        gate.set()
        with pytest.raises(UnknownRemoteException):
            await task

        assert project_ids(core) == []
        assert core.mutations.history[-1].discarded

    @pytest.mark.asyncio
    async def test_finished_profile_sync_is_dropped_on_owner_change(self, core, persistence):
        await sign_in(core, persistence)
        await core.add_project({"title": "Portfolio"})
        await core.drain()
        assert core.mutations.profile_sync_owners == [OWNER]

        seed_owner(persistence, OTHER_OWNER)
        await core.sign_in(OTHER_OWNER)

        assert core.mutations.profile_sync_owners == []

    @pytest.mark.asyncio
    async def test_running_profile_sync_survives_owner_change(self, core, persistence):
        """The previous owner's totals are still written, then the sync is forgotten"""
        await sign_in(core, persistence)
        gate = persistence.gate("update", COLLECTION_PORTFOLIO)
        await core.add_project({"title": "Portfolio", "xp_value": 40})
        await asyncio.sleep(0)

        seed_owner(persistence, OTHER_OWNER)
        await core.sign_in(OTHER_OWNER)
        assert core.mutations.profile_sync_owners == [OWNER]

        gate.set()
        await core.drain()
        assert persistence.row(COLLECTION_PORTFOLIO, OWNER)["total_xp"] == 40

        await core.sign_out()
        assert core.mutations.profile_sync_owners == []


class TestShareSlug:
    """Tests for generate_share_slug"""

    @pytest.mark.asyncio
    async def test_slug_is_derived_from_username(self, core, persistence):
        await sign_in(core, persistence)

        slug = await core.generate_share_slug()

        assert slug.startswith("jane-doe-")
        assert persistence.row(COLLECTION_PORTFOLIO, OWNER)["share_slug"] == slug
        assert core.store.get(COLLECTION_PORTFOLIO, OWNER).share_slug == slug

    @pytest.mark.asyncio
    async def test_overlapping_calls_share_one_write(self, core, persistence):
        await sign_in(core, persistence)
        gate = persistence.gate("update", COLLECTION_PORTFOLIO)

        first = asyncio.create_task(core.generate_share_slug())
        second = asyncio.create_task(core.generate_share_slug())
        await asyncio.sleep(0)
        gate.set()

        assert await first == await second
        assert persistence.count("update", COLLECTION_PORTFOLIO) == 1

    @pytest.mark.asyncio
    async def test_existing_slug_is_returned_without_a_write(self, core, persistence):
        await sign_in(core, persistence)
        slug = await core.generate_share_slug()
        writes = persistence.count("update", COLLECTION_PORTFOLIO)

        assert await core.generate_share_slug() == slug
        assert persistence.count("update", COLLECTION_PORTFOLIO) == writes

    @pytest.mark.asyncio
    async def test_slug_set_by_another_session_wins(self, core, persistence):
        await sign_in(core, persistence)
        # Written remotely without an event reaching this session
        persistence.row(COLLECTION_PORTFOLIO, OWNER)["share_slug"] = "jane-doe-1"

        slug = await core.generate_share_slug()

        assert slug == "jane-doe-1"
        assert core.store.get(COLLECTION_PORTFOLIO, OWNER).share_slug == "jane-doe-1"

    @pytest.mark.asyncio
    async def test_failure_rolls_back_optimistic_slug(self, core, persistence):
        await sign_in(core, persistence)
        persistence.fail("update", COLLECTION_PORTFOLIO)

        with pytest.raises(UnknownRemoteException):
            await core.generate_share_slug()

        assert core.store.get(COLLECTION_PORTFOLIO, OWNER).share_slug is None
