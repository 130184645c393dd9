"""
SQLAlchemy-backed persistence service.

Reference implementation of the PersistenceService contract. It behaves like
the hosted table API the core was written against: owner-scoped write
policies, PostgREST-style error codes and a change event for every committed
write, published to the push service after the commit.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from progress_core.exceptions import (
    RemoteError,
    CODE_UNIQUE_VIOLATION,
    CODE_INSUFFICIENT_PRIVILEGE,
    CODE_UNDEFINED_TABLE,
    CODE_NO_ROWS,
    CODE_JWT_MISSING,
)
from progress_core.infrastructure.orm_models import ROW_MODELS
from progress_core.infrastructure.push import LocalPushService
from progress_core.interfaces import RowUpdate
from progress_core.models import Entity, key_field_for, model_for

logger = logging.getLogger("progress_core.persistence")

CODE_NOT_NULL_VIOLATION = "23502"
CODE_UNDEFINED_COLUMN = "42703"
CODE_INTERNAL = "XX000"


class SqlPersistenceService:
    """
    Persistence over a relational database.

    Reads are open (public portfolios are readable by slug); writes require
    an acting owner and may only touch that owner's rows.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        push: Optional[LocalPushService] = None,
        acting_owner: Optional[Callable[[], Optional[str]]] = None,
    ):
        self.session_factory = session_factory
        self.push = push
        self.acting_owner = acting_owner or (lambda: None)

    # Helpers

    @staticmethod
    def _row_class(collection: str):
        row_class = ROW_MODELS.get(collection)
        if row_class is None:
            raise RemoteError(CODE_UNDEFINED_TABLE, f'relation "{collection}" does not exist')
        return row_class

    @staticmethod
    def _column(row_class, field: str):
        if field not in row_class.__table__.columns:
            raise RemoteError(
                CODE_UNDEFINED_COLUMN,
                f"column {row_class.__tablename__}.{field} does not exist",
            )
        return getattr(row_class, field)

    @staticmethod
    def _row_dict(row) -> Dict[str, Any]:
        """Column values of a row; naive datetimes are read back as UTC"""
        data = {}
        for attr in inspect(row).mapper.column_attrs:
            value = getattr(row, attr.key)
            if isinstance(value, datetime) and value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            data[attr.key] = value
        return data

    @staticmethod
    def _column_values(fields: Mapping[str, Any]) -> Dict[str, Any]:
        """Values as written; aware datetimes are stored in UTC"""
        values = {}
        for field, value in fields.items():
            if isinstance(value, datetime) and value.tzinfo is not None:
                value = value.astimezone(timezone.utc)
            values[field] = value
        return values

    def _to_entity(self, collection: str, row) -> Entity:
        return model_for(collection).model_validate(self._row_dict(row))

    def _require_actor(self) -> str:
        owner_id = self.acting_owner()
        if not owner_id:
            raise RemoteError(CODE_JWT_MISSING, "JWT required")
        return owner_id

    @staticmethod
    def _check_owner(owner_id: str, row_owner: Optional[str], collection: str, key: Optional[str] = None) -> None:
        if row_owner != owner_id:
            raise RemoteError(
                CODE_INSUFFICIENT_PRIVILEGE,
                f'new row violates row-level security policy for table "{collection}"',
                collection,
                key,
            )

    @staticmethod
    def _commit(db: Session) -> None:
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            message = str(e.orig)
            if "UNIQUE" in message.upper() or "duplicate key" in message:
                raise RemoteError(CODE_UNIQUE_VIOLATION, "duplicate key value violates unique constraint")
            raise RemoteError(CODE_NOT_NULL_VIOLATION, message)
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Database commit failed: {e}")
            raise RemoteError(CODE_INTERNAL, str(e))

    def _publish(self, collection: str, owner_id: str, event_type: str, new: dict, old: dict) -> None:
        if self.push is None:
            return
        self.push.publish(collection, owner_id, {"eventType": event_type, "new": new, "old": old})

    # Reads

    async def fetch_all(self, collection: str, owner_id: str) -> List[Entity]:
        row_class = self._row_class(collection)
        with self.session_factory() as db:
            query = db.query(row_class).filter(row_class.user_id == owner_id)
            if "created_at" in row_class.__table__.columns:
                query = query.order_by(row_class.created_at.desc())
            return [self._to_entity(collection, row) for row in query.all()]

    async def fetch_one(self, collection: str, filters: Mapping[str, Any]) -> Entity:
        row_class = self._row_class(collection)
        with self.session_factory() as db:
            query = db.query(row_class)
            for field, value in filters.items():
                query = query.filter(self._column(row_class, field) == value)
            rows = query.limit(2).all()
            if len(rows) != 1:
                raise RemoteError(CODE_NO_ROWS, "JSON object requested, multiple (or no) rows returned")
            return self._to_entity(collection, rows[0])

    async def fetch_top(self, collection: str, order_by: str, limit: int) -> List[Entity]:
        row_class = self._row_class(collection)
        with self.session_factory() as db:
            rows = (
                db.query(row_class)
                .order_by(self._column(row_class, order_by).desc())
                .limit(limit)
                .all()
            )
            return [self._to_entity(collection, row) for row in rows]

    async def count_above(self, collection: str, field: str, value: Any) -> int:
        row_class = self._row_class(collection)
        with self.session_factory() as db:
            return db.query(row_class).filter(self._column(row_class, field) > value).count()

    # Writes

    async def create(self, collection: str, fields: Mapping[str, Any]) -> Entity:
        row_class = self._row_class(collection)
        owner_id = self._require_actor()
        self._check_owner(owner_id, fields.get("user_id"), collection)
        for field in fields:
            self._column(row_class, field)

        with self.session_factory() as db:
            row = row_class(**self._column_values(fields))
            db.add(row)
            self._commit(db)
            db.refresh(row)

            new = self._row_dict(row)
            entity = self._to_entity(collection, row)

        logger.info(f"Created {collection} {entity.key}")
        self._publish(collection, owner_id, "INSERT", new, {})
        return entity

    async def update(
        self,
        collection: str,
        key: str,
        fields: Mapping[str, Any],
        expected: Optional[Mapping[str, Any]] = None,
    ) -> Entity:
        updated = await self.update_many([RowUpdate(collection, key, fields, expected)])
        return updated[0]

    async def update_many(self, updates: Sequence[RowUpdate]) -> List[Entity]:
        """Write every update in one transaction; any failure leaves all rows untouched"""
        owner_id = self._require_actor()
        for update in updates:
            row_class = self._row_class(update.collection)
            for field in list(update.fields) + list(update.expected or {}):
                self._column(row_class, field)

        events = []
        entities = []
        with self.session_factory() as db:
            rows = [self._matching_row(db, update, owner_id) for update in updates]

            olds = [self._row_dict(row) for row in rows]
            for update, row in zip(updates, rows):
                for field, value in self._column_values(update.fields).items():
                    setattr(row, field, value)
            self._commit(db)

            for update, row, old in zip(updates, rows, olds):
                db.refresh(row)
                events.append((update.collection, self._row_dict(row), old))
                entities.append(self._to_entity(update.collection, row))

        for collection, new, old in events:
            logger.debug(f"Updated {collection} {new.get(key_field_for(collection))}")
            self._publish(collection, owner_id, "UPDATE", new, old)
        return entities

    def _matching_row(self, db: Session, update: RowUpdate, owner_id: str):
        """Row targeted by `update`, after the ownership and precondition checks"""
        collection, key = update.collection, update.key
        row = db.get(self._row_class(collection), key)
        if row is None:
            raise RemoteError(CODE_NO_ROWS, f"No {collection} row with key {key}", collection, key)
        self._check_owner(owner_id, row.user_id, collection, key)

        # Conditional update: a precondition miss matches no rows
        for field, value in (update.expected or {}).items():
            if getattr(row, field) != value:
                raise RemoteError(
                    CODE_NO_ROWS, f"No {collection} row matched the update filter", collection, key
                )
        return row

    async def delete(self, collection: str, key: str) -> None:
        row_class = self._row_class(collection)
        owner_id = self._require_actor()

        with self.session_factory() as db:
            row = db.get(row_class, key)
            if row is None:
                # Deleting an absent row matches nothing and succeeds
                return
            self._check_owner(owner_id, row.user_id, collection, key)

            old = {key_field_for(collection): key, "user_id": row.user_id}
            db.delete(row)
            self._commit(db)

        logger.info(f"Deleted {collection} {key}")
        self._publish(collection, owner_id, "DELETE", {}, old)
