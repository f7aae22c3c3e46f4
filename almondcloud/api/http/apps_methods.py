"""Helpers for app and device HTTP endpoint payloads."""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

from almondcloud.backend.client import BackendClient

NO_SUCH_APP = {"error": "No such app"}


async def list_apps_response(*, backend: BackendClient) -> list[dict[str, Any]]:
    """Build response payload for /api/apps/list."""
    return await backend.get_all_apps()


async def get_app_response(*, backend: BackendClient, app_id: str) -> Any:
    """Build response payload for /api/apps/get/{app_id}."""
    app = await backend.get_app(app_id)
    if not app:
        return JSONResponse(status_code=404, content=NO_SUCH_APP)
    return app


async def delete_app_response(*, backend: BackendClient, app_id: str) -> Any:
    """Build response payload for /api/apps/delete/{app_id}."""
    if not await backend.delete_app(app_id):
        return JSONResponse(status_code=404, content=NO_SUCH_APP)
    return {"result": "ok"}


async def create_app_response(*, backend: BackendClient, body: dict[str, Any]) -> Any:
    """Build response payload for /api/apps/create; engine-reported errors are a 400."""
    result = await backend.assistant.create_app(body)
    if isinstance(result, dict) and result.get("error"):
        return JSONResponse(status_code=400, content=result)
    return result


async def list_devices_response(*, backend: BackendClient) -> list[dict[str, Any]]:
    """Build response payload for /api/devices/list."""
    return await backend.get_all_devices()
