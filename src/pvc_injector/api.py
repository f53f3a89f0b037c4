from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any
import uuid

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette import status
import structlog

from .config import AppConfig
from .errors import ConflictError, ProvisioningError
from .maintenance import READ_ONLY_MANY, READ_WRITE_ONCE
from .schemas import CreateRequestBody, SizeRequestBody, SizeResponse, StatusResponse, TargetBody
from .services import Services

UNREADABLE_BODY_MESSAGE = "unable to read post body"


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("services not initialized (app.state.services)")
    return services


def create_app(*, config: AppConfig, services: Services) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.services.runner.shutdown(wait=False)

    app = FastAPI(title=config.service, version=config.version, lifespan=lifespan, debug=config.mode == "debug")
    app.state.config = config
    app.state.services = services

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request.headers.get("x-request-id") or str(uuid.uuid4()),
            path=request.url.path,
        )
        return await call_next(request)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": UNREADABLE_BODY_MESSAGE, "detail": _summarize_validation_errors(exc)},
        )

    @app.exception_handler(ProvisioningError)
    async def provisioning_error_handler(request: Request, exc: ProvisioningError) -> JSONResponse:
        status_code = status.HTTP_409_CONFLICT if isinstance(exc, ConflictError) else status.HTTP_400_BAD_REQUEST
        return JSONResponse(status_code=status_code, content={"error": str(exc), "step": exc.step})

    @app.get("/")
    def root() -> dict[str, str]:
        return {"version": config.version, "mode": config.mode, "service": config.service}

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/size", response_model=SizeResponse)
    def size(body: SizeRequestBody, services: Services = Depends(get_services)) -> SizeResponse:
        summary = services.size_estimator.summarize(body.to_source())
        return SizeResponse(objects=summary.object_count, bytes=summary.total_bytes)

    @app.post("/create")
    def create(body: CreateRequestBody, services: Services = Depends(get_services)) -> dict[str, Any]:
        services.runner.run(body.to_request())
        return {}

    @app.post("/create-async")
    def create_async(body: CreateRequestBody, services: Services = Depends(get_services)) -> dict[str, Any]:
        services.runner.submit(body.to_request())
        return {}

    @app.post("/status", response_model=StatusResponse)
    def get_status(body: TargetBody, services: Services = Depends(get_services)) -> dict[str, Any]:
        return services.status_reporter.status(body.namespace, body.name).to_dict()

    @app.post("/delete")
    def delete(body: TargetBody, services: Services = Depends(get_services)) -> dict[str, Any]:
        services.maintenance.delete_claim(body.namespace, body.name)
        return {}

    @app.post("/cleanup")
    def cleanup(body: TargetBody, services: Services = Depends(get_services)) -> dict[str, Any]:
        services.maintenance.cleanup(body.namespace, body.name)
        return {}

    @app.post("/mode/rox")
    def mode_read_only_many(body: TargetBody, services: Services = Depends(get_services)) -> dict[str, Any]:
        services.maintenance.set_access_modes(body.namespace, body.name, READ_ONLY_MANY)
        return {}

    @app.post("/mode/rwo")
    def mode_read_write_once(body: TargetBody, services: Services = Depends(get_services)) -> dict[str, Any]:
        services.maintenance.set_access_modes(body.namespace, body.name, READ_WRITE_ONCE)
        return {}

    return app


def _summarize_validation_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {"loc": [str(part) for part in error.get("loc", ())], "msg": str(error.get("msg", ""))}
        for error in exc.errors()
    ]
