"""
Feature and permission discovery for the calling user.

GET /api/features             plan features available to the caller's school
GET /api/features/permissions the caller's role matrix
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from edutenant.constants.permissions import get_role_permissions
from edutenant.database.session import get_db_session
from edutenant.platform.feature_gate import get_school_features
from edutenant.platform.tenant_context import get_tenant_context

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/features", tags=["features"])


@router.get("")
async def school_features(request: Request, db: Session = Depends(get_db_session)) -> Dict[str, Any]:
    context = get_tenant_context(request)
    return get_school_features(db, context.school_id)


@router.get("/permissions")
async def role_permissions(request: Request) -> Dict[str, Any]:
    context = get_tenant_context(request)
    return {
        "role": context.role.value,
        "permissions": get_role_permissions(context.role),
    }
