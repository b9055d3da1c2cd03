from __future__ import annotations

from fastapi import FastAPI, Request

from app.auth import Principal, Role

USER_ID_HEADER = 'x-user-id'
USER_ROLE_HEADER = 'x-user-role'
USER_NAME_HEADER = 'x-user-name'


def principal_from_headers(headers) -> Principal | None:
    """Build the principal asserted by the fronting authentication proxy.

    Requests without a parsable user id or role carry no principal; the route
    dependencies turn that into 401.
    """
    raw_id = (headers.get(USER_ID_HEADER) or '').strip()
    raw_role = (headers.get(USER_ROLE_HEADER) or '').strip().lower()
    if not raw_id.isdigit() or not raw_role:
        return None
    try:
        role = Role(raw_role)
    except ValueError:
        return None
    user_id = int(raw_id)
    username = (headers.get(USER_NAME_HEADER) or '').strip() or f'user-{user_id}'
    return Principal(id=user_id, username=username, role=role)


def install_principal_middleware(app: FastAPI) -> None:
    @app.middleware('http')
    async def principal_middleware(request: Request, call_next):
        request.state.principal = principal_from_headers(request.headers)
        return await call_next(request)
