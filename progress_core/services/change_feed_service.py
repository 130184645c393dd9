"""
Change feed adapter.

Turns raw push payloads into ChangeEvents and merges them into the entity
store with the same upsert/remove primitives the mutation coordinator uses,
so a pushed echo of a local write lands in the slot that write already
occupies.
"""
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from progress_core.constants import (
    CHALLENGE_STATUS_ACTIVE,
    COLLECTION_BADGES,
    COLLECTION_DAILY_GOALS,
    COLLECTION_WEEKLY_CHALLENGES,
    GOAL_STATUS_COMPLETED,
    PREPEND_COLLECTIONS,
)
from progress_core.interfaces import PushService
from progress_core.models import ChangeEvent, Entity, key_field_for, model_for
from progress_core.repositories.entity_store import EntityStore

logger = logging.getLogger("progress_core.change_feed")

EventListener = Callable[[ChangeEvent], None]
MergeListener = Callable[[str, Optional[Entity], Optional[Entity]], None]

_EVENT_KINDS = {
    "INSERT": "insert",
    "UPDATE": "update",
    "DELETE": "delete",
}


def normalize_event(collection: str, payload: Mapping[str, Any]) -> ChangeEvent:
    """
    Convert a raw push payload into a ChangeEvent.

    Args:
        collection: Collection the subscription is for
        payload: {"eventType": ..., "new": {...}, "old": {...}}

    Raises:
        ValueError: If the payload is malformed
    """
    event_type = str(payload.get("eventType", "")).upper()
    kind = _EVENT_KINDS.get(event_type)
    if kind is None:
        raise ValueError(f"Unknown event type: {payload.get('eventType')!r}")

    key_field = key_field_for(collection)

    if kind == "delete":
        old = payload.get("old") or {}
        key = old.get(key_field)
        if not key:
            raise ValueError(f"Delete event for {collection} without {key_field}")
        return ChangeEvent(kind=kind, collection=collection, key=str(key))

    new = payload.get("new") or {}
    try:
        entity = model_for(collection).model_validate(new)
    except ValidationError as e:
        raise ValueError(f"Invalid {collection} row in {event_type} event: {e}") from e
    return ChangeEvent(kind=kind, collection=collection, key=entity.key, entity=entity)


def merge_one_way_fields(collection: str, current: Optional[Entity], incoming: Entity) -> Entity:
    """
    Keep one-way lifecycle transitions from being undone by a stale event.

    Badges never re-lock, completed goals never become pending again and a
    challenge that reached a terminal status stays there. Every other field
    follows last-write-wins.
    """
    if current is None:
        return incoming

    if collection == COLLECTION_BADGES and current.unlocked and not incoming.unlocked:
        return incoming.model_copy(update={"unlocked": True, "unlocked_at": current.unlocked_at})

    if (
        collection == COLLECTION_DAILY_GOALS
        and current.status == GOAL_STATUS_COMPLETED
        and incoming.status != GOAL_STATUS_COMPLETED
    ):
        return incoming.model_copy(update={"status": GOAL_STATUS_COMPLETED})

    if (
        collection == COLLECTION_WEEKLY_CHALLENGES
        and current.status != CHALLENGE_STATUS_ACTIVE
        and incoming.status != current.status
    ):
        return incoming.model_copy(update={"status": current.status})

    return incoming


class Subscription:
    """Handle for one collection subscription; cancel() may be called any number of times"""

    def __init__(self, collection: str, owner_id: str):
        self.collection = collection
        self.owner_id = owner_id
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._cancelled = False
        self.received = 0

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _bind(self, unsubscribe: Callable[[], None]) -> None:
        self._unsubscribe = unsubscribe

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._unsubscribe is not None:
            unsubscribe, self._unsubscribe = self._unsubscribe, None
            unsubscribe()
        logger.debug(f"Unsubscribed from {self.collection} for {self.owner_id}")

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "active"
        return f"<Subscription {self.collection} {self.owner_id} {state}>"


class ChangeFeedAdapter:
    """Service merging push events into the entity store"""

    def __init__(
        self,
        store: EntityStore,
        push: PushService,
        on_merged: Optional[MergeListener] = None,
        in_flight: Optional[Callable[[str, str], bool]] = None,
    ):
        self.store = store
        self.push = push
        self._on_merged = on_merged
        self._in_flight = in_flight
        self._subscriptions: List[Subscription] = []

    @property
    def subscriptions(self) -> List[Subscription]:
        """Active subscriptions"""
        return [sub for sub in self._subscriptions if not sub.cancelled]

    def subscribe(
        self,
        collection: str,
        owner_id: str,
        on_event: Optional[EventListener] = None,
    ) -> Subscription:
        """
        Subscribe to one owner's changes of a collection.

        Every event is merged into the store, then handed to `on_event`.

        Returns:
            Cancellable subscription handle
        """
        model_for(collection)  # Fail fast on unknown collections
        subscription = Subscription(collection, owner_id)

        def deliver(payload: Dict[str, Any]) -> None:
            if subscription.cancelled:
                return
            subscription.received += 1
            try:
                event = normalize_event(collection, payload)
            except ValueError as e:
                logger.warning(f"Dropping malformed {collection} event: {e}")
                return
            if self.apply(event, owner_id) and on_event is not None:
                on_event(event)

        subscription._bind(self.push.subscribe(collection, owner_id, deliver))
        self._subscriptions.append(subscription)
        logger.debug(f"Subscribed to {collection} for {owner_id}")
        return subscription

    def apply(self, event: ChangeEvent, owner_id: str) -> bool:
        """
        Merge one event into the store.

        Events are applied even when a local mutation on the same id is in
        flight: the remote state is authoritative. One-way guards only protect
        values that are not still waiting on a local write.

        Returns:
            False if the event was dropped (foreign owner)
        """
        collection = event.collection
        previous = self.store.get(collection, event.key)

        if event.kind == "delete":
            if previous is not None and previous.owner_id != owner_id:
                return False
            if self.store.remove(collection, event.key):
                self._notify(collection, previous, None)
            return True

        entity = event.entity
        if entity.owner_id != owner_id:
            logger.warning(f"Dropping {collection} event for foreign owner {entity.owner_id}")
            return False

        if self._in_flight is not None and self._in_flight(collection, event.key):
            merged = entity
        else:
            merged = merge_one_way_fields(collection, previous, entity)
        if merged == previous:
            return True

        position = 0 if previous is None and collection in PREPEND_COLLECTIONS else None
        self.store.upsert(collection, merged, position=position)
        self._notify(collection, previous, merged)
        return True

    def _notify(self, collection: str, previous: Optional[Entity], current: Optional[Entity]) -> None:
        if self._on_merged is not None:
            self._on_merged(collection, previous, current)

    def cancel_all(self) -> None:
        """Cancel every subscription"""
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []
