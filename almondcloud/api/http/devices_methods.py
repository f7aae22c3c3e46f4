"""Helpers for device management HTTP endpoint payloads."""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

from almondcloud.backend.client import BackendClient


async def add_device_response(*, backend: BackendClient, body: dict[str, Any]) -> Any:
    """Build response payload for /api/devices/create; a device kind is required."""
    kind = body.get("kind")
    if not isinstance(kind, str) or not kind:
        return JSONResponse(status_code=400, content={"error": "You must choose one kind of device"})
    state = {k: v for k, v in body.items() if k != "_csrf"}
    device = await backend.add_device(state)
    return {"result": "ok", "device": device}


async def delete_device_response(*, backend: BackendClient, device_id: str) -> Any:
    """Build response payload for /api/devices/delete/{device_id}."""
    if not await backend.delete_device(device_id):
        return JSONResponse(status_code=404, content={"error": "No such device"})
    return {"result": "ok"}


async def start_oauth2_response(*, backend: BackendClient, kind: str) -> dict[str, Any]:
    """Build response payload for /api/devices/oauth2/{kind}.

    The engine answers ``[ok, redirect, session]``. The session entries must be
    sent back unchanged with the callback, since the front end keeps no
    cookie session of its own.
    """
    result = await backend.start_oauth2(kind)
    ok, redirect, session = (list(result or []) + [False, None, None])[:3]
    if not ok:
        return {"ok": False}
    return {"ok": True, "redirect": redirect, "session": session or {}}


async def oauth2_callback_response(*, backend: BackendClient, kind: str, body: dict[str, Any]) -> Any:
    """Build response payload for /api/devices/oauth2/callback/{kind}."""
    redirect_uri = body.get("url")
    session = body.get("session") or {}
    if not isinstance(redirect_uri, str) or not redirect_uri or not isinstance(session, dict):
        return JSONResponse(status_code=400, content={"error": "Missing callback url or session"})
    await backend.handle_oauth2_callback(kind, redirect_uri, session)
    return {"result": "ok"}
