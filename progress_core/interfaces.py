"""
Contracts of the external collaborators the core talks to.

Persistence failures are raised as RemoteError carrying the remote's
machine-readable code; the core decodes them into its own exception taxonomy.
"""
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Protocol, Sequence

from progress_core.models import Entity

PushCallback = Callable[[Dict[str, Any]], None]
Unsubscribe = Callable[[], None]


class RowUpdate(NamedTuple):
    """One conditional update inside update_many"""
    collection: str
    key: str
    fields: Mapping[str, Any]
    expected: Optional[Mapping[str, Any]] = None


class PersistenceService(Protocol):
    """Authoritative request/response data store"""

    async def fetch_all(self, collection: str, owner_id: str) -> List[Entity]:
        """All entities of a collection owned by `owner_id`, newest first"""
        ...

    async def fetch_one(self, collection: str, filters: Mapping[str, Any]) -> Entity:
        """Exactly one entity matching `filters`; RemoteError PGRST116 when none"""
        ...

    async def create(self, collection: str, fields: Mapping[str, Any]) -> Entity:
        ...

    async def update(
        self,
        collection: str,
        key: str,
        fields: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]] = None,
    ) -> Entity:
        """
        Update one entity.

        When `expected` is given the write only happens if every expected
        field still holds the expected value; otherwise RemoteError PGRST116.
        """
        ...

    async def update_many(self, updates: Sequence[RowUpdate]) -> List[Entity]:
        """
        Apply several updates as one transaction.

        Either every update is written or none is. Each update honors its own
        `expected` precondition; the RemoteError of a failing update names its
        collection and key. Results come back in input order.
        """
        ...

    async def delete(self, collection: str, key: str) -> None:
        ...

    async def fetch_top(self, collection: str, order_by: str, limit: int) -> List[Entity]:
        """Entities across all owners, ordered by `order_by` descending"""
        ...

    async def count_above(self, collection: str, field: str, value: Any) -> int:
        """Number of entities across all owners with `field` > `value`"""
        ...


class PushService(Protocol):
    """Real-time change feed"""

    def subscribe(self, collection: str, owner_id: str, callback: PushCallback) -> Unsubscribe:
        """
        Deliver raw change payloads of one owner's collection to `callback`.

        Payload shape: {"eventType": "INSERT" | "UPDATE" | "DELETE",
        "new": {...}, "old": {...}}.
        """
        ...
