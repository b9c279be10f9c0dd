import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .db import Base, engine
from .errors import (
	DiagnosticError,
	InputValidationError,
	InvalidStateError,
	PersistenceError,
	UpstreamQuotaExhausted,
	UpstreamRateLimited,
	UpstreamUnavailable,
)
from .session import SessionRegistry
from .settings import settings
from .routers import health
from .routers import auth
from .routers import diagnostic
from .routers import students

logging.basicConfig(
	level=settings.log_level.upper(),
	format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="NeuroMath Diagnostic API")
app.state.sessions = SessionRegistry()
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(diagnostic.router)
app.include_router(students.router)

# Most specific first; the lookup below walks this in order
_STATUS_BY_ERROR = (
	(InputValidationError, 422),
	(InvalidStateError, 409),
	(UpstreamRateLimited, 429),
	(UpstreamQuotaExhausted, 402),
	(UpstreamUnavailable, 502),
	(PersistenceError, 503),
)


def status_for(exc: DiagnosticError) -> int:
	for error_cls, status in _STATUS_BY_ERROR:
		if isinstance(exc, error_cls):
			return status
	return 500


@app.exception_handler(DiagnosticError)
async def diagnostic_error_handler(request: Request, exc: DiagnosticError):
	status = status_for(exc)
	if status >= 500:
		logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
	headers = {}
	if isinstance(exc, UpstreamRateLimited) and exc.retry_after:
		headers["Retry-After"] = exc.retry_after
	return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)


@app.get("/info")
def root():
	return {"status": "ok", "llm_configured": bool(settings.llm_api_key)}


@app.on_event("startup")
async def startup_event():
	# Initialize DB schema
	Base.metadata.create_all(bind=engine)
