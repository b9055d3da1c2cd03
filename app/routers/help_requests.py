from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.auth import Principal, management_access, staff_access
from app.db import get_db
from app.dependencies import parse_int, read_json_body, require_field
from app.services.help_request_service import (
    create_help_request,
    list_active_help_requests,
    resolve_help_request,
    serialize_help_request,
)

router = APIRouter(prefix='/api/help-requests', tags=['help-requests'])


@router.post('', status_code=201)
def help_requests_create(
    principal: Principal = Depends(staff_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    help_request = create_help_request(
        db,
        order_id=parse_int(require_field(payload, 'orderId'), field='orderId'),
        location_id=parse_int(require_field(payload, 'locationId'), field='locationId'),
        user_id=principal.id,
        notes=payload.get('notes'),
    )
    db.commit()
    return serialize_help_request(help_request)


@router.get('/active')
def help_requests_active(
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return [serialize_help_request(help_request) for help_request in list_active_help_requests(db)]


@router.post('/{help_request_id}/resolve')
def help_requests_resolve(
    help_request_id: int,
    _: Principal = Depends(management_access),
    db: Session = Depends(get_db),
):
    help_request = resolve_help_request(db, help_request_id=help_request_id)
    db.commit()
    return serialize_help_request(help_request)
