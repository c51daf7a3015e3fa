import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from storage_portal.config import settings
from storage_portal.errors import Forbidden, NotFound, PreconditionFailed, Unauthorized, status_code_for
from storage_portal.routers import admin, auth, borrowing, catalog, clearance, items
from storage_portal.security.sessions import install_auth_session_middleware

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title='Storage Portal')

install_auth_session_middleware(app)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse({'error': message}, status_code=status_code)


@app.exception_handler(Unauthorized)
@app.exception_handler(Forbidden)
@app.exception_handler(NotFound)
@app.exception_handler(PreconditionFailed)
async def domain_error_handler(request: Request, exc: Exception):
    return _error(status_code_for(exc), str(exc))


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = '.'.join(str(part) for part in first.get('loc', ()) if part != 'body')
        message = f'{field}: {first.get("msg")}' if field else str(first.get('msg'))
    else:
        message = 'Invalid request'
    return _error(400, message)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception('Unhandled error on %s %s', request.method, request.url.path)
    return _error(500, 'Internal server error')


app.include_router(auth.router)
app.include_router(items.intake_router)
app.include_router(items.router)
app.include_router(items.movements_router)
app.include_router(borrowing.router)
app.include_router(borrowing.legacy_router)
app.include_router(clearance.router)
app.include_router(catalog.router)
app.include_router(admin.router)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok'}
