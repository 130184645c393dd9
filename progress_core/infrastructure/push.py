"""
In-process push service.

Delivers change payloads to subscribers on a later loop iteration, outside the
request/response cycle of the write that caused them, like a real-time
change feed would.
"""
import asyncio
import copy
import logging
from typing import Any, Dict, List, Tuple

from progress_core.interfaces import PushCallback, Unsubscribe

logger = logging.getLogger("progress_core.push")


class LocalPushService:
    """Per-collection, per-owner fan-out of change payloads"""

    def __init__(self):
        self._subscribers: Dict[Tuple[str, str], List[PushCallback]] = {}
        self.published = 0

    def subscriber_count(self, collection: str, owner_id: str) -> int:
        return len(self._subscribers.get((collection, owner_id), []))

    def subscribe(self, collection: str, owner_id: str, callback: PushCallback) -> Unsubscribe:
        channel = (collection, owner_id)
        self._subscribers.setdefault(channel, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(channel, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(channel, None)

        return unsubscribe

    def publish(self, collection: str, owner_id: str, payload: Dict[str, Any]) -> None:
        """Queue `payload` for every subscriber of the owner's collection"""
        self.published += 1
        callbacks = list(self._subscribers.get((collection, owner_id), []))
        if not callbacks:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for callback in callbacks:
            message = copy.deepcopy(payload)
            if loop is None:
                self._deliver(callback, message)
            else:
                loop.call_soon(self._deliver, callback, message)

    @staticmethod
    def _deliver(callback: PushCallback, message: Dict[str, Any]) -> None:
        try:
            callback(message)
        except Exception as e:
            logger.error(f"Push subscriber failed: {e}")
