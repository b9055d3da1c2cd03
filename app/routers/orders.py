from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from app.auth import Principal, admin_access, management_access, staff_access
from app.db import get_db
from app.dependencies import (
    parse_datetime,
    parse_int,
    parse_int_list,
    parse_optional_int,
    read_json_body,
    require_field,
)
from app.services.audit_service import list_audit_for_order, serialize_audit_entry
from app.services.order_location_service import (
    list_order_locations,
    list_order_locations_for_orders,
    serialize_order_location,
)
from app.services.order_service import (
    DEFAULT_PAGE_SIZE,
    clear_rush,
    create_order,
    delete_order,
    get_order,
    list_orders,
    search_orders,
    serialize_order,
    set_rush,
    ship_order,
    update_order,
)

router = APIRouter(prefix='/api/orders', tags=['orders'])

UPDATE_FIELDS = {
    'orderNumber': 'order_number',
    'tbfosNumber': 'tbfos_number',
    'client': 'client',
    'dueDate': 'due_date',
    'totalQuantity': 'total_quantity',
    'description': 'description',
    'notes': 'notes',
}


def _order_detail(db: Session, order_id: int) -> dict:
    order = get_order(db, order_id=order_id)
    return {
        **serialize_order(order),
        'locations': [serialize_order_location(row) for row in list_order_locations(db, order_id=order_id)],
    }


def _order_page(db: Session, page: dict) -> dict:
    orders = page['data']
    stages = list_order_locations_for_orders(db, order_ids=[order.id for order in orders])
    return {
        'data': [
            {**serialize_order(order), 'locations': [serialize_order_location(row) for row in stages[order.id]]}
            for order in orders
        ],
        'pagination': page['pagination'],
    }


def _paging(request: Request) -> dict:
    params = request.query_params
    page = parse_optional_int(params.get('page'), field='page')
    page_size = parse_optional_int(params.get('pageSize'), field='pageSize')
    return {
        'include_shipped': params.get('includeShipped') == 'true',
        'page': 1 if page is None else page,
        'page_size': DEFAULT_PAGE_SIZE if page_size is None else page_size,
    }


@router.get('')
def orders_index(
    request: Request,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return _order_page(db, list_orders(db, **_paging(request)))


@router.get('/search')
def orders_search(
    request: Request,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    return _order_page(db, search_orders(db, query=request.query_params.get('q'), **_paging(request)))


@router.post('', status_code=201)
def orders_create(
    principal: Principal = Depends(management_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    order = create_order(
        db,
        order_number=require_field(payload, 'orderNumber'),
        total_quantity=parse_int(require_field(payload, 'totalQuantity'), field='totalQuantity'),
        due_date=parse_datetime(require_field(payload, 'dueDate'), field='dueDate'),
        selected_location_ids=parse_int_list(payload.get('selectedLocationIds'), field='selectedLocationIds'),
        client=payload.get('client'),
        tbfos_number=payload.get('tbfosNumber'),
        description=payload.get('description'),
        notes=payload.get('notes'),
        global_queue_position=parse_optional_int(payload.get('globalQueuePosition'), field='globalQueuePosition'),
        user_id=principal.id,
    )
    db.commit()
    return _order_detail(db, order.id)


@router.get('/{order_id}')
def orders_detail(
    order_id: int,
    _: Principal = Depends(staff_access),
    db: Session = Depends(get_db),
):
    detail = _order_detail(db, order_id)
    detail['audit_trail'] = [serialize_audit_entry(entry) for entry in list_audit_for_order(db, order_id=order_id)]
    return detail


@router.post('/{order_id}/ship')
def orders_ship(
    order_id: int,
    principal: Principal = Depends(management_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    order = ship_order(
        db,
        order_id=order_id,
        shipped_quantity=parse_int(require_field(payload, 'quantity'), field='quantity'),
        user_id=principal.id,
    )
    db.commit()
    return serialize_order(order)


@router.post('/{order_id}/rush')
def orders_rush(
    order_id: int,
    principal: Principal = Depends(management_access),
    db: Session = Depends(get_db),
):
    order = set_rush(db, order_id=order_id, user_id=principal.id)
    db.commit()
    return serialize_order(order)


@router.post('/{order_id}/unrush')
def orders_unrush(
    order_id: int,
    principal: Principal = Depends(management_access),
    db: Session = Depends(get_db),
):
    order = clear_rush(db, order_id=order_id, user_id=principal.id)
    db.commit()
    return serialize_order(order)


@router.put('/{order_id}')
def orders_update(
    order_id: int,
    principal: Principal = Depends(management_access),
    payload: dict = Depends(read_json_body),
    db: Session = Depends(get_db),
):
    changes = {field: payload[key] for key, field in UPDATE_FIELDS.items() if key in payload}
    if 'due_date' in changes:
        changes['due_date'] = parse_datetime(changes['due_date'], field='dueDate')
    if 'total_quantity' in changes:
        changes['total_quantity'] = parse_int(changes['total_quantity'], field='totalQuantity')
    update_order(db, order_id=order_id, changes=changes, user_id=principal.id)
    db.commit()
    return _order_detail(db, order_id)


@router.delete('/{order_id}', status_code=204)
def orders_delete(
    order_id: int,
    principal: Principal = Depends(admin_access),
    db: Session = Depends(get_db),
):
    delete_order(db, order_id=order_id, user_id=principal.id)
    db.commit()
    return Response(status_code=204)
