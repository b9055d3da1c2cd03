import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.errors import ConcurrencyConflict, WorkflowError
from app.routers import assignments, audit, help_requests, locations, order_locations, orders, queue
from app.security.principal import install_principal_middleware

logging.basicConfig(
    level=settings.log_level.upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)
logger = logging.getLogger(__name__)

app = FastAPI(title='Shop Tracker')

install_principal_middleware(app)

app.include_router(locations.router)
app.include_router(orders.router)
app.include_router(queue.router)
app.include_router(order_locations.router)
app.include_router(assignments.router)
app.include_router(audit.router)
app.include_router(help_requests.router)


@app.exception_handler(WorkflowError)
async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    logger.info('%s %s rejected: %s (%s)', request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


@app.exception_handler(StaleDataError)
async def stale_data_handler(request: Request, exc: StaleDataError) -> JSONResponse:
    # A version check can still fail at commit, outside the service decorators.
    conflict = ConcurrencyConflict()
    logger.info('%s %s lost a concurrent update', request.method, request.url.path)
    return JSONResponse(conflict.to_dict(), status_code=conflict.status_code)


@app.get('/healthz')
def healthz() -> dict:
    return {'status': 'ok'}
