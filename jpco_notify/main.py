from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from jpco_notify.api.routes import notifications
from jpco_notify.config import get_settings
from jpco_notify.core.exceptions import global_exception_handler, http_exception_handler, invalid_request_exception_handler, request_validation_exception_handler
from jpco_notify.core.lifespan import lifespan
from jpco_notify.core.middleware import RequestLoggingMiddleware, SecurityHeadersMiddleware
from jpco_notify.notifications.contracts import InvalidRequest

settings = get_settings()

app = FastAPI(title="JPCO Notify", lifespan=lifespan, docs_url=None if settings.environment == "production" else "/docs", redoc_url=None)

app.add_middleware(CORSMiddleware, allow_origins=settings.allowed_origins, allow_credentials=True, allow_methods=["GET", "POST", "DELETE", "OPTIONS"], allow_headers=["content-type", "authorization"], expose_headers=["content-length", "x-request-id"])

# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(InvalidRequest, invalid_request_exception_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])
