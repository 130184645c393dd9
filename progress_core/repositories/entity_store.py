"""
Entity store - in-memory data access layer for the tracked collections.

Holds one owner's slice of every collection as an ordered mapping
key -> entity. All operations are synchronous; an upsert always replaces the
whole entity (last write wins), so partial updates must be merged by the
caller first.
"""
from typing import Dict, Iterable, List, Optional

from progress_core.constants import ALL_COLLECTIONS
from progress_core.models import Entity


class EntityStore:
    """Repository for the local entity snapshot"""

    def __init__(self, collections: Iterable[str] = ALL_COLLECTIONS):
        self._collections: Dict[str, Dict[str, Entity]] = {
            name: {} for name in collections
        }
        self._revision = 0

    @property
    def revision(self) -> int:
        """Counter bumped on every state change"""
        return self._revision

    def _slot(self, collection: str) -> Dict[str, Entity]:
        try:
            return self._collections[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    def get(self, collection: str, key: str) -> Optional[Entity]:
        """Get entity by key, or None when absent"""
        return self._slot(collection).get(key)

    def list(self, collection: str) -> List[Entity]:
        """List entities in insertion/fetch order"""
        return list(self._slot(collection).values())

    def first(self, collection: str) -> Optional[Entity]:
        """Get the first entity of a collection (singleton collections)"""
        for entity in self._slot(collection).values():
            return entity
        return None

    def index_of(self, collection: str, key: str) -> Optional[int]:
        """Get the list position of an entity, or None when absent"""
        for index, existing in enumerate(self._slot(collection)):
            if existing == key:
                return index
        return None

    def upsert(self, collection: str, entity: Entity, position: Optional[int] = None) -> None:
        """
        Insert or overwrite an entity.

        An existing key keeps its list position. A new key is appended, or
        inserted at `position` when given.

        Args:
            collection: Collection name
            entity: Full entity value
            position: List index for new keys
        """
        slot = self._slot(collection)
        key = entity.key

        if key in slot or position is None:
            slot[key] = entity
        else:
            items = list(slot.items())
            items.insert(max(0, position), (key, entity))
            self._collections[collection] = dict(items)

        self._revision += 1

    def replace(self, collection: str, old_key: str, entity: Entity) -> None:
        """
        Replace the entity stored under `old_key` with `entity`, keeping its
        list position. Falls back to a plain upsert when `old_key` is absent.
        """
        slot = self._slot(collection)
        if old_key not in slot or old_key == entity.key:
            self.upsert(collection, entity)
            return

        items = [
            (entity.key, entity) if key == old_key else (key, value)
            for key, value in slot.items()
            if key != entity.key or key == old_key
        ]
        self._collections[collection] = dict(items)
        self._revision += 1

    def remove(self, collection: str, key: str) -> bool:
        """
        Remove an entity.

        Returns:
            True if something was removed, False if the key was absent
        """
        slot = self._slot(collection)
        if key not in slot:
            return False

        del slot[key]
        self._revision += 1
        return True

    def replace_all(self, collection: str, entities: Iterable[Entity]) -> None:
        """Replace a whole collection (full refresh), keeping the given order"""
        self._collections[collection] = {entity.key: entity for entity in entities}
        self._revision += 1

    def clear(self) -> None:
        """Drop every collection's content"""
        for name in self._collections:
            self._collections[name] = {}
        self._revision += 1
