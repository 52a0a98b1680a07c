"""
Tenant-scoped repository.

CRITICAL: business routes reach tenant tables only through this class.
Every operation routes its filter or values through the query interceptor
with the caller's TenantContext, so no query can see or touch another
school's rows.

Creates, updates and deletes are written to the audit trail with their row
images. On PostgreSQL the audit_tenant_access trigger already does this
inside the transaction, so the application-side entries are off there by
default.
"""

import json
import logging
from typing import Any, Generic, List, Optional, TypeVar

from fastapi import Request
from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from edutenant.db_base import Base
from edutenant.platform import query_interceptor
from edutenant.platform.audit import AuditAction, audit_data_change
from edutenant.platform.tenant_context import TenantContext

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Base)


class TenantScopedRepository(Generic[T]):
    """
    CRUD over one model, scoped by an explicit TenantContext.

    Global models pass through unfiltered; models in neither allow-list
    fail at construction with UnscopedEntityError.
    """

    def __init__(
        self,
        db_session: Session,
        context: TenantContext,
        model: type[T],
        request: Optional[Request] = None,
        audit_changes: Optional[bool] = None,
    ):
        if context is None:
            raise ValueError("context is required")

        self.db_session = db_session
        self.context = context
        self.model = model
        self.request = request
        self.scoped = query_interceptor.is_tenant_scoped(model)
        if audit_changes is None:
            audit_changes = db_session.get_bind().dialect.name != "postgresql"
        self.audit_changes = audit_changes

    def _query(self, raw_filter: Optional[dict] = None):
        effective = query_interceptor.filtered_read(
            self.context, raw_filter, entity=self.model, request=self.request
        )
        return self.db_session.query(self.model).filter_by(**effective)

    def _row_image(self, entity: T) -> dict[str, Any]:
        values = {
            attr.key: getattr(entity, attr.key)
            for attr in inspect(self.model).column_attrs
        }
        return json.loads(json.dumps(values, default=str))

    def _audit(
        self,
        action: AuditAction,
        record_id: Any,
        old_values: Optional[dict] = None,
        new_values: Optional[dict] = None,
    ) -> None:
        if not self.audit_changes:
            return
        audit_data_change(
            self.context,
            action,
            self.model.__tablename__,
            record_id=str(record_id) if record_id is not None else None,
            old_values=old_values,
            new_values=new_values,
            request=self.request,
        )

    def list(
        self,
        filters: Optional[dict] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[T]:
        return self._query(filters).offset(offset).limit(limit).all()

    def get(self, entity_id: str) -> Optional[T]:
        """Fetch by id; another school's row is indistinguishable from a missing one."""
        return self._query({"id": entity_id}).first()

    def count(self, filters: Optional[dict] = None) -> int:
        return self._query(filters).count()

    def create(self, values: dict) -> T:
        """
        Create an entity stamped with the context's school.

        Raises:
            CrossTenantAccessDeniedError: values name another school
        """
        stamped = query_interceptor.stamped_create(
            self.context, values, entity=self.model, request=self.request
        )
        entity = self.model(**stamped)
        self.db_session.add(entity)

        try:
            self.db_session.commit()
            self.db_session.refresh(entity)
        except SQLAlchemyError as e:
            self.db_session.rollback()
            logger.error(
                "Failed to create entity",
                extra={
                    "school_id": self.context.school_id,
                    "entity_type": self.model.__name__,
                    "error": str(e),
                },
            )
            raise

        logger.info(
            "Entity created",
            extra={
                "school_id": getattr(entity, "school_id", None),
                "entity_id": getattr(entity, "id", None),
                "entity_type": self.model.__name__,
            },
        )
        self._audit(AuditAction.CREATE, entity.id, new_values=self._row_image(entity))
        return entity

    def update(self, entity_id: str, values: dict) -> Optional[T]:
        """
        Update an entity visible to the context.

        Raises:
            TenantReassignmentForbiddenError: before anything is written, when
                a non-super-admin payload changes school_id
        """
        guarded = query_interceptor.guarded_update(
            self.context, values, entity=self.model, request=self.request
        )

        entity = self.get(entity_id)
        if entity is None:
            return None

        old_values = self._row_image(entity) if self.audit_changes else None
        for key, value in guarded.items():
            if hasattr(entity, key):
                setattr(entity, key, value)

        try:
            self.db_session.commit()
            self.db_session.refresh(entity)
        except SQLAlchemyError as e:
            self.db_session.rollback()
            logger.error(
                "Failed to update entity",
                extra={
                    "school_id": self.context.school_id,
                    "entity_id": entity_id,
                    "error": str(e),
                },
            )
            raise

        logger.info(
            "Entity updated",
            extra={
                "school_id": self.context.school_id,
                "entity_id": entity_id,
                "entity_type": self.model.__name__,
            },
        )
        self._audit(
            AuditAction.UPDATE, entity.id, old_values=old_values, new_values=self._row_image(entity)
        )
        return entity

    def delete(self, entity_id: str) -> bool:
        effective = query_interceptor.filtered_delete(
            self.context, {"id": entity_id}, entity=self.model, request=self.request
        )
        doomed = None
        if self.audit_changes:
            doomed = self.db_session.query(self.model).filter_by(**effective).first()
        old_values = self._row_image(doomed) if doomed is not None else None

        try:
            deleted = (
                self.db_session.query(self.model)
                .filter_by(**effective)
                .delete(synchronize_session=False)
            )
            self.db_session.commit()
        except SQLAlchemyError as e:
            self.db_session.rollback()
            logger.error(
                "Failed to delete entity",
                extra={
                    "school_id": self.context.school_id,
                    "entity_id": entity_id,
                    "error": str(e),
                },
            )
            raise

        if deleted:
            logger.info(
                "Entity deleted",
                extra={
                    "school_id": self.context.school_id,
                    "entity_id": entity_id,
                    "entity_type": self.model.__name__,
                },
            )
            if old_values is not None:
                self._audit(AuditAction.DELETE, entity_id, old_values=old_values)
        return bool(deleted)

    def exists(self, entity_id: str) -> bool:
        return self.get(entity_id) is not None

