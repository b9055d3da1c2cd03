from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.auth import Principal, management_access, staff_access
from app.config import settings
from app.db import get_db
from app.dependencies import parse_optional_int
from app.errors import ValidationError
from app.services.audit_service import list_audit_for_order, list_recent_audit, serialize_audit_entry
from app.services.order_service import get_order

router = APIRouter(prefix='/api/audit-trail', tags=['audit'])


@router.get('')
def audit_recent(
    request: Request,
    _: Principal = Depends(management_access),
    db: Session = Depends(get_db),
):
    limit = parse_optional_int(request.query_params.get('limit'), field='limit') or settings.audit_recent_limit
    if limit < 1:
        raise ValidationError('limit must be positive', field='limit')
    return [serialize_audit_entry(entry) for entry in list_recent_audit(db, limit=limit)]


@router.get('/order/{order_id}')
def audit_for_order(
    order_id: int,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    get_order(db, order_id=order_id)
    return [serialize_audit_entry(entry) for entry in list_audit_for_order(db, order_id=order_id)]
