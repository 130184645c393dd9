"""
Notice service.
Delivers celebration-worthy events (level up, badge unlocked, goal completed) to the UI.
"""
import logging
from typing import Callable, List

from progress_core.schemas import CoreNotice
from progress_core.services.date_service import DateService

logger = logging.getLogger("progress_core.notices")

NOTICE_LEVEL_UP = "level_up"
NOTICE_BADGE_UNLOCKED = "badge_unlocked"
NOTICE_GOAL_COMPLETED = "goal_completed"

NoticeListener = Callable[[CoreNotice], None]


class NoticeService:
    """Service for publishing UI notices"""

    def __init__(self, date_service: DateService):
        self.date_service = date_service
        self._listeners: List[NoticeListener] = []

    def add_listener(self, listener: NoticeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def dispose() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return dispose

    def publish(self, kind: str, title: str, message: str) -> CoreNotice:
        notice = CoreNotice(
            kind=kind,
            title=title,
            message=message,
            created_at=self.date_service.now(),
        )
        logger.info(f"{title} {message}")
        for listener in list(self._listeners):
            try:
                listener(notice)
            except Exception as e:
                logger.error(f"Notice listener failed: {e}")
        return notice

    def level_up(self, level: int) -> CoreNotice:
        return self.publish(
            NOTICE_LEVEL_UP,
            "Level Up!",
            f"Congratulations! You've reached Level {level}!",
        )

    def badge_unlocked(self, badge_title: str) -> CoreNotice:
        return self.publish(
            NOTICE_BADGE_UNLOCKED,
            "Badge Unlocked!",
            f'You\'ve earned the "{badge_title}" badge!',
        )

    def goal_completed(self, reward_xp: int) -> CoreNotice:
        return self.publish(
            NOTICE_GOAL_COMPLETED,
            "Goal Completed!",
            f"You earned {reward_xp} XP!",
        )
