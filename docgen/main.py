from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from docgen.api.routes import generate, health, jobs, worker
from docgen.core.errors import DocgenError
from docgen.core.exceptions import docgen_error_handler, global_exception_handler, http_exception_handler, request_validation_exception_handler
from docgen.core.lifespan import lifespan
from docgen.core.middleware import CorrelationIdMiddleware, SecurityHeadersMiddleware

app = FastAPI(title="docgen-engine", version="0.1.0", lifespan=lifespan, docs_url=None, redoc_url=None)

# Add exception handlers
app.add_exception_handler(Exception, global_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(DocgenError, docgen_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

# Add middleware
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router, tags=["health"])
app.include_router(generate.router, prefix="/generate", tags=["generate"])
app.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
app.include_router(worker.router, prefix="/worker", tags=["worker"])
