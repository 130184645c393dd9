"""
Leaderboard service.
Ranks owners by total XP; read failures degrade to an empty board.
"""
import logging
from typing import List, Optional

from progress_core.constants import COLLECTION_GAMIFICATION, LEADERBOARD_SIZE
from progress_core.exceptions import RemoteError
from progress_core.interfaces import PersistenceService
from progress_core.models import GamificationStats
from progress_core.schemas import Leaderboard, LeaderboardEntry
from progress_core.services.stats_service import compute_level

logger = logging.getLogger("progress_core.leaderboard")


def build_entries(rows: List[GamificationStats]) -> List[LeaderboardEntry]:
    """Rank rows (already sorted by XP, highest first) starting at 1"""
    return [
        LeaderboardEntry(
            user_id=row.user_id,
            username=row.username or f"User {row.user_id[:8]}",
            total_xp=row.total_xp,
            level=row.level or compute_level(row.total_xp),
            rank=index + 1,
        )
        for index, row in enumerate(rows)
    ]


class LeaderboardService:
    """Service for leaderboard reads"""

    def __init__(self, persistence: PersistenceService, size: int = LEADERBOARD_SIZE):
        self.persistence = persistence
        self.size = size

    async def fetch(self, owner_id: Optional[str] = None, owner_xp: Optional[int] = None) -> Leaderboard:
        """
        Fetch the top of the leaderboard and the owner's rank.

        Args:
            owner_id: Owner to rank, if any
            owner_xp: Owner's total XP, used when the owner is outside the top list

        Returns:
            Leaderboard; empty when the read fails
        """
        try:
            rows = await self.persistence.fetch_top(COLLECTION_GAMIFICATION, "total_xp", self.size)
        except RemoteError as e:
            logger.error(f"Error fetching leaderboard: {e}")
            return Leaderboard()

        entries = build_entries(rows)
        if owner_id is None:
            return Leaderboard(entries=entries)

        for entry in entries:
            if entry.user_id == owner_id:
                return Leaderboard(entries=entries, current_user_rank=entry.rank)

        if owner_xp is None:
            return Leaderboard(entries=entries)

        try:
            ahead = await self.persistence.count_above(COLLECTION_GAMIFICATION, "total_xp", owner_xp)
        except RemoteError as e:
            logger.error(f"Error ranking {owner_id}: {e}")
            return Leaderboard(entries=entries)

        return Leaderboard(entries=entries, current_user_rank=ahead + 1)
