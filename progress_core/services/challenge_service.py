"""
Weekly challenge service.
Handles challenge status resolution, progress display values and deadline sweeps.
"""
import logging
from datetime import datetime
from typing import Optional, Tuple

from progress_core.constants import (
    CHALLENGE_STATUS_ACTIVE,
    CHALLENGE_STATUS_COMPLETED,
    CHALLENGE_STATUS_EXPIRED,
    COLLECTION_WEEKLY_CHALLENGES,
)
from progress_core.exceptions import NotFoundException, RemoteError, decode_remote_error
from progress_core.interfaces import PersistenceService
from progress_core.models import WeeklyChallenge
from progress_core.repositories.entity_store import EntityStore
from progress_core.services.date_service import DateService
from progress_core.services.session_service import SessionHandle

logger = logging.getLogger("progress_core.challenges")


def resolve_status(challenge: WeeklyChallenge, now: datetime) -> str:
    """
    Work out the status a challenge should have at `now`.

    - completed / expired are terminal and never change
    - progress >= target_progress -> completed
    - deadline passed with progress short of the target -> expired
    - otherwise -> active
    """
    if challenge.status != CHALLENGE_STATUS_ACTIVE:
        return challenge.status
    if challenge.progress >= challenge.target_progress:
        return CHALLENGE_STATUS_COMPLETED
    if DateService.ensure_aware(challenge.deadline) <= DateService.ensure_aware(now):
        return CHALLENGE_STATUS_EXPIRED
    return CHALLENGE_STATUS_ACTIVE


def progress_percent(challenge: WeeklyChallenge) -> float:
    """Progress towards the target, capped at 100"""
    return min(challenge.progress / challenge.target_progress * 100, 100.0)


class ChallengeService:
    """Service for weekly challenge lifecycle"""

    def __init__(
        self,
        store: EntityStore,
        persistence: PersistenceService,
        session: SessionHandle,
        date_service: DateService,
    ):
        self.store = store
        self.persistence = persistence
        self.session = session
        self.date_service = date_service

    def current(self) -> Optional[WeeklyChallenge]:
        return self.store.first(COLLECTION_WEEKLY_CHALLENGES)

    def time_remaining(self) -> Tuple[int, int, int]:
        """(days, hours, minutes) left on the current challenge"""
        challenge = self.current()
        if challenge is None:
            return 0, 0, 0
        return self.date_service.time_remaining(challenge.deadline)

    async def sweep(self) -> Optional[WeeklyChallenge]:
        """
        Persist a terminal transition of the current challenge, if one is due.

        The remote write only applies while the challenge is still active, so
        concurrent sweeps cannot flip it twice.

        Returns:
            The updated challenge, or None if nothing changed
        """
        if self.session.owner_id is None:
            return None
        epoch = self.session.epoch

        challenge = self.current()
        if challenge is None:
            return None

        status = resolve_status(challenge, self.date_service.now())
        if status == challenge.status:
            return None

        try:
            updated = await self.persistence.update(
                COLLECTION_WEEKLY_CHALLENGES,
                challenge.key,
                {"status": status},
                expected={"status": CHALLENGE_STATUS_ACTIVE},
            )
        except RemoteError as e:
            error = decode_remote_error(e, COLLECTION_WEEKLY_CHALLENGES, challenge.key)
            if isinstance(error, NotFoundException):
                logger.info(f"Challenge {challenge.key} already left the active state")
                return None
            raise error from e

        if not self.session.is_current(epoch):
            return None

        self.store.upsert(COLLECTION_WEEKLY_CHALLENGES, updated)
        logger.info(f"Challenge {challenge.key} is now {status}")
        return updated
