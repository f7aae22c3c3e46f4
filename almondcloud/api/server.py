"""FastAPI application for the almondcloud front end.

The application factory owns the control-channel client and the session
manager; handlers reach them through ``app.state``.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Body, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from loguru import logger

from almondcloud import __version__
from almondcloud.api.http.apps_methods import (
    create_app_response,
    delete_app_response,
    get_app_response,
    list_apps_response,
    list_devices_response,
)
from almondcloud.api.http.devices_methods import (
    add_device_response,
    delete_device_response,
    oauth2_callback_response,
    start_oauth2_response,
)
from almondcloud.api.ws.conversation import close_quietly, run_conversation_ws
from almondcloud.api.ws.results import run_results_ws
from almondcloud.assistant.sessions import SessionManager
from almondcloud.auth.capabilities import Capability
from almondcloud.auth.users import (
    AlmondUser,
    authenticate_token,
    check_origin,
    extract_bearer_token,
    require_capability,
    require_scope,
)
from almondcloud.backend.client import BackendClient
from almondcloud.config.schema import AlmondConfig
from almondcloud.utils.exceptions import (
    AlmondError,
    PermissionDeniedError,
    classify_exception,
    classify_http_status,
    sanitize_error_message,
)

# Close code for rejected websocket handshakes (policy violation).
WS_POLICY_VIOLATION = 1008


def _backend(request: Request) -> BackendClient:
    return request.app.state.backend


def _authenticate_request(request: Request) -> AlmondUser:
    config: AlmondConfig = request.app.state.config
    token = extract_bearer_token(request.headers.get("Authorization"))
    if not check_origin(config, request.headers.get("Origin"), has_bearer=token is not None):
        raise PermissionDeniedError("Forbidden Cross Origin Request")
    return authenticate_token(config, token)


def scoped_user(scope: str):
    """Dependency: authenticate the bearer token and require ``scope``."""

    def dependency(request: Request) -> AlmondUser:
        user = _authenticate_request(request)
        require_scope(user, scope)
        return user

    return dependency


def device_manager(request: Request) -> AlmondUser:
    """Dependency: device changes need the command scope and the device-management capability."""
    user = _authenticate_request(request)
    require_scope(user, "user-exec-command")
    require_capability(user, Capability.MANAGE_DEVICES)
    return user


async def _authenticate_websocket(websocket: WebSocket, scope: str) -> AlmondUser | None:
    """Authenticate before accepting; rejected sockets are closed and ``None`` is returned."""
    config: AlmondConfig = websocket.app.state.config
    token = extract_bearer_token(websocket.headers.get("Authorization"))
    has_bearer = token is not None
    token = token or websocket.query_params.get("access_token")
    try:
        if not check_origin(config, websocket.headers.get("Origin"), has_bearer=has_bearer):
            raise PermissionDeniedError("Forbidden Cross Origin Request")
        user = authenticate_token(config, token)
        require_scope(user, scope)
    except AlmondError as exc:
        logger.info("Rejected websocket on {}: {}", websocket.url.path, exc.message)
        await websocket.close(code=WS_POLICY_VIOLATION)
        return None
    return user


def _build_api_router() -> APIRouter:
    router = APIRouter(prefix="/api")

    @router.get("/apps/list")
    async def list_apps(request: Request, user: AlmondUser = Depends(scoped_user("user-read"))):
        return await list_apps_response(backend=_backend(request))

    @router.get("/apps/get/{app_id}")
    async def get_app(app_id: str, request: Request, user: AlmondUser = Depends(scoped_user("user-read"))):
        return await get_app_response(backend=_backend(request), app_id=app_id)

    @router.post("/apps/delete/{app_id}")
    async def delete_app(app_id: str, request: Request, user: AlmondUser = Depends(scoped_user("user-exec-command"))):
        return await delete_app_response(backend=_backend(request), app_id=app_id)

    @router.post("/apps/create")
    async def create_app_route(
        request: Request,
        body: dict[str, Any] = Body(...),
        user: AlmondUser = Depends(scoped_user("user-exec-command")),
    ):
        return await create_app_response(backend=_backend(request), body=body)

    @router.get("/devices/list")
    async def list_devices(request: Request, user: AlmondUser = Depends(scoped_user("user-read"))):
        return await list_devices_response(backend=_backend(request))

    @router.post("/devices/create")
    async def create_device(
        request: Request,
        body: dict[str, Any] = Body(...),
        user: AlmondUser = Depends(device_manager),
    ):
        return await add_device_response(backend=_backend(request), body=body)

    @router.post("/devices/delete/{device_id}")
    async def delete_device(device_id: str, request: Request, user: AlmondUser = Depends(device_manager)):
        return await delete_device_response(backend=_backend(request), device_id=device_id)

    @router.get("/devices/oauth2/{kind}")
    async def start_oauth2(kind: str, request: Request, user: AlmondUser = Depends(device_manager)):
        return await start_oauth2_response(backend=_backend(request), kind=kind)

    @router.post("/devices/oauth2/callback/{kind}")
    async def oauth2_callback(
        kind: str,
        request: Request,
        body: dict[str, Any] = Body(...),
        user: AlmondUser = Depends(device_manager),
    ):
        return await oauth2_callback_response(backend=_backend(request), kind=kind, body=body)

    @router.websocket("/results")
    async def results_ws(websocket: WebSocket):
        if await _authenticate_websocket(websocket, "user-read-results") is None:
            return
        await websocket.accept()
        try:
            await run_results_ws(
                websocket=websocket,
                backend=websocket.app.state.backend,
                logger_error=logger.error,
            )
        except WebSocketDisconnect:
            pass

    @router.websocket("/conversation")
    async def conversation_ws(websocket: WebSocket):
        user = await _authenticate_websocket(websocket, "user-exec-command")
        if user is None:
            return
        await websocket.accept()
        try:
            await run_conversation_ws(
                websocket=websocket,
                user=user,
                backend=websocket.app.state.backend,
                sessions=websocket.app.state.sessions,
                logger_error=logger.error,
            )
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.exception("Conversation websocket error: {}", e)
            await close_quietly(websocket, code=1011)

    return router


def create_app(
    config: AlmondConfig | None = None,
    *,
    backend: BackendClient | None = None,
    sessions: SessionManager | None = None,
) -> FastAPI:
    """Build the application. A caller-supplied backend is not started or stopped by the app."""
    config = config or AlmondConfig()
    owns_backend = backend is None
    backend = backend or BackendClient(config.backend)
    sessions = sessions or SessionManager(backend, nl_server_url=config.nl_server_url)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_backend:
            backend.start()
        logger.info("almondcloud front end started (engine at {})", config.backend.address)
        yield
        await sessions.close_all()
        if owns_backend:
            await backend.stop()
        logger.info("almondcloud front end stopped")

    app = FastAPI(
        title="almondcloud",
        description="Front end for the Almond Cloud enterprise engine",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.backend = backend
    app.state.sessions = sessions

    @app.exception_handler(AlmondError)
    async def almond_exception_handler(request: Request, exc: AlmondError):
        status_code = classify_http_status(exc)
        if isinstance(exc, PermissionDeniedError) and exc.message == "invalid scope":
            return JSONResponse(status_code=status_code, content={"error": "invalid scope"})
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        code, _, _ = classify_exception(exc)
        logger.exception("Unhandled exception [{}]: {}", code, sanitize_error_message(str(exc)))
        return JSONResponse(
            status_code=500,
            content={"error": "INTERNAL_ERROR", "message": "An unexpected error occurred", "code": code},
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__, "backend": backend.state.value}

    app.include_router(_build_api_router())
    return app
