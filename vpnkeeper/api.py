from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from typing import List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from vpnkeeper.config import Settings
from vpnkeeper.connector import SUPPORTED_PROTOCOLS, ConnectArgs, Credentials
from vpnkeeper.errors import (
    AlreadyConnected,
    AuthenticationFailure,
    ConfigError,
    ConnectionTimeout,
    ConnectorBusy,
    ProcessSpawnFailure,
    VpnError,
)
from vpnkeeper.supervisor import VpnSupervisor

logger = logging.getLogger(__name__)

app = FastAPI(title="vpnkeeper API", version="0.1.0")

_supervisor: Optional[VpnSupervisor] = None


class ConnectRequest(BaseModel):
    server: str
    username: str
    password: str = Field(..., repr=False)
    protocol: str = Field("f5", description=f"One of: {', '.join(SUPPORTED_PROTOCOLS)}")
    no_dtls: bool = False
    extra_args: List[str] = Field(default_factory=list)
    force: bool = False


def configure(supervisor: Optional[VpnSupervisor]) -> None:
    """Install the supervisor served by this app (``None`` to reset)."""
    global _supervisor
    _supervisor = supervisor


def get_supervisor() -> VpnSupervisor:
    global _supervisor
    if _supervisor is None:
        try:
            _supervisor = VpnSupervisor(Settings.from_env().validate())
        except ConfigError as exc:
            raise HTTPException(status_code=500, detail=str(exc))
    return _supervisor


def _http_error(exc: VpnError) -> HTTPException:
    if isinstance(exc, (AlreadyConnected, ConnectorBusy)):
        status = 409
    elif isinstance(exc, AuthenticationFailure):
        status = 401
    elif isinstance(exc, ConfigError):
        status = 400
    elif isinstance(exc, ConnectionTimeout):
        status = 504
    elif isinstance(exc, ProcessSpawnFailure):
        status = 500
    else:
        status = 502
    return HTTPException(status_code=status, detail=str(exc))


@app.get("/health")
async def health():
    return {"status": "ok", "time": time.time()}


@app.post("/vpn/connect")
async def connect(request: ConnectRequest):
    supervisor = get_supervisor()
    try:
        args = ConnectArgs(
            server=request.server,
            username=request.username,
            protocol=request.protocol,
            no_dtls=request.no_dtls,
            extra_args=tuple(request.extra_args),
        )
        event = await supervisor.connect(
            args,
            credentials=Credentials(request.password),
            force=request.force,
        )
    except VpnError as exc:
        logger.warning("connect via API failed: %s", exc)
        raise _http_error(exc)
    return {"status": "connected", "ip": event.ip, "device": event.device}


@app.post("/vpn/disconnect")
async def disconnect():
    report = await get_supervisor().disconnect()
    return {"status": "disconnected", **report.to_dict()}


@app.get("/vpn/status")
async def status():
    return get_supervisor().status().to_dict()


@app.post("/vpn/reset")
async def reset():
    retry = get_supervisor().reset()
    return {"status": "reset", "retry": retry.to_dict()}


@app.websocket("/events")
async def events(ws: WebSocket):
    await ws.accept()
    supervisor = get_supervisor()
    log_path = str(supervisor.metrics.path) if supervisor.metrics else None
    pos = 0
    try:
        while True:
            if log_path and os.path.exists(log_path):
                with open(log_path, "r", encoding="utf-8") as f:
                    f.seek(pos)
                    for line in f:
                        await ws.send_text(json.dumps({"csv": line.strip()}))
                    pos = f.tell()
            await asyncio.sleep(0.5)
    except WebSocketDisconnect:
        return
