"""FastAPI application exposing the anonymous token vending endpoints."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..common.observability import (
    configure_logging,
    configure_tracing,
    instrument_fastapi_app,
    sanitize_for_log,
)
from ..common.schemas import DeviceRegistration
from ..common.security import is_valid_identifier, is_valid_key
from ..common.settings import TokenVendingSettings
from .authority import CredentialAuthority, build_credential_authority
from .outcomes import DETAILS, Outcome
from .registry import DeviceRegistry, build_device_registry
from .service import AnonymousTokenService

LOGGER = structlog.get_logger("tokenvend.anonymous.app")

SERVICE_NAME = "tokenvend.anonymous"


class AppState:
    def __init__(
        self,
        *,
        settings: TokenVendingSettings,
        registry: DeviceRegistry,
        authority: CredentialAuthority,
        service: AnonymousTokenService,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.authority = authority
        self.service = service


def _get_state(request: Request) -> AppState:
    state: AppState = request.app.state.container  # type: ignore[attr-defined]
    return state


def get_settings(state: AppState = Depends(_get_state)) -> TokenVendingSettings:
    return state.settings


def get_service(state: AppState = Depends(_get_state)) -> AnonymousTokenService:
    return state.service


def outcome_response(outcome: Outcome) -> JSONResponse:
    return JSONResponse(
        status_code=outcome.http_status,
        content={"code": outcome.value, "detail": DETAILS[outcome]},
    )


def _log_outcome(event: str, outcome: Outcome, uid: Optional[str]) -> None:
    fields = {"outcome": outcome.value, "status": outcome.http_status, "uid": sanitize_for_log(uid)}
    if outcome.is_server_fault:
        LOGGER.error(event, **fields)
    elif outcome.is_success:
        LOGGER.info(event, **fields)
    else:
        LOGGER.warning(event, **fields)


def _build_lifespan(
    settings: TokenVendingSettings,
    registry: Optional[DeviceRegistry],
    authority: Optional[CredentialAuthority],
):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Nothing needs releasing if this raises.
        active_authority = authority or build_credential_authority(settings)
        active_registry = registry or await build_device_registry(settings.device_registry_url)
        try:
            service = AnonymousTokenService(
                active_registry,
                active_authority,
                window=timedelta(seconds=settings.timestamp_window_seconds),
                logger=structlog.get_logger(SERVICE_NAME),
            )
            app.state.container = AppState(
                settings=settings,
                registry=active_registry,
                authority=active_authority,
                service=service,
            )
            LOGGER.info(
                "Token vending machine started",
                window_seconds=settings.timestamp_window_seconds,
                credential_backend=settings.credential_backend,
            )
            yield
        finally:
            await active_registry.close()

    return lifespan


def create_app(
    settings: Optional[TokenVendingSettings] = None,
    *,
    registry: Optional[DeviceRegistry] = None,
    authority: Optional[CredentialAuthority] = None,
) -> FastAPI:
    settings = settings or TokenVendingSettings()
    configure_logging(settings, SERVICE_NAME)
    configure_tracing(settings, SERVICE_NAME)

    app = FastAPI(lifespan=_build_lifespan(settings, registry, authority))
    instrument_fastapi_app(app)

    @app.middleware("http")
    async def record_request(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.perf_counter() - start) * 1000, 2),
            )
            raise

        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        LOGGER.warning("Rejected malformed request", path=request.url.path, errors=len(exc.errors()))
        return outcome_response(Outcome.VALIDATION_ERROR)

    @app.get("/healthz")
    async def healthz() -> dict:
        return {"status": "ok"}

    @app.post("/registerdevice")
    async def register_device(
        body: DeviceRegistration,
        settings: TokenVendingSettings = Depends(get_settings),
        service: AnonymousTokenService = Depends(get_service),
    ):
        if not is_valid_identifier(
            body.uid, min_length=settings.uid_min_length, max_length=settings.uid_max_length
        ) or not is_valid_key(body.key, min_length=settings.key_min_length, max_length=settings.key_max_length):
            _log_outcome("Device registration rejected", Outcome.VALIDATION_ERROR, body.uid)
            return outcome_response(Outcome.VALIDATION_ERROR)

        outcome = await service.register_device(body.uid, body.key)
        _log_outcome("Device registration", outcome, body.uid)
        if outcome is Outcome.REGISTERED:
            return {"status": outcome.value}
        return outcome_response(outcome)

    @app.get("/gettoken")
    async def get_token(
        uid: str = Query(...),
        timestamp: str = Query(...),
        signature: str = Query(...),
        settings: TokenVendingSettings = Depends(get_settings),
        service: AnonymousTokenService = Depends(get_service),
    ):
        if not is_valid_identifier(uid, min_length=settings.uid_min_length, max_length=settings.uid_max_length):
            _log_outcome("Token request rejected", Outcome.VALIDATION_ERROR, uid)
            return outcome_response(Outcome.VALIDATION_ERROR)
        if not timestamp.strip() or not signature.strip():
            _log_outcome("Token request rejected", Outcome.VALIDATION_ERROR, uid)
            return outcome_response(Outcome.VALIDATION_ERROR)

        result = await service.request_token(uid, signature, timestamp)
        _log_outcome("Token request", result.outcome, uid)
        if result.outcome is Outcome.VALID and result.payload is not None:
            return JSONResponse(status_code=status.HTTP_200_OK, content=result.payload.to_wire())
        if result.outcome is Outcome.VALID:
            return outcome_response(Outcome.PACKAGING_ERROR)
        return outcome_response(result.outcome)

    return app
