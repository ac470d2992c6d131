#!/usr/bin/env python3
"""
REST API over the live AMI view.

Wraps one AsteriskManager and exposes its channels, queues, version
information and call origination to authenticated clients.
"""

import hmac
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Dict, Optional

import jwt
import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from .connection import ManagerConnection
from .errors import ManagerError, ManagerTimeoutError
from .manager import AsteriskManager

load_dotenv()

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
log = logging.getLogger(__name__)

manager: Optional[AsteriskManager] = None


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - connect to AMI and load the initial state."""
    global manager

    log.info("Starting pbxlive server...")
    ami = AsteriskManager(ManagerConnection())
    try:
        await ami.initialize()
        manager = ami
        log.info("🎯 Server ready - tracking realtime AMI events")
    except ManagerError as e:
        log.error("Failed to connect to AMI: %s", e)
        await ami.shutdown()

    yield

    log.info("Shutting down...")
    if manager:
        await manager.shutdown()
        manager = None


app = FastAPI(
    title="pbxlive",
    description="Live channel and queue state of an Asterisk server",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Auth: JWT
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_HOURS = 24


def _get_jwt_secret() -> str:
    secret = os.getenv("JWT_SECRET", "").strip()
    if not secret:
        secret = "pbxlive-dev-secret-change-in-production"
        log.warning("JWT_SECRET not set; using default (set JWT_SECRET in production)")
    return secret


def create_access_token(subject: str, expire_hours: int = JWT_EXPIRE_HOURS) -> str:
    payload = {
        "sub": subject,
        "exp": datetime.utcnow() + timedelta(hours=expire_hours),
        "iat": datetime.utcnow(),
    }
    return jwt.encode(payload, _get_jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, _get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        return None


security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict:
    """Dependency: require valid JWT."""
    if not credentials or not credentials.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    payload = decode_token(credentials.credentials)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return {"subject": payload.get("sub")}


def _require_manager() -> AsteriskManager:
    if not manager:
        raise HTTPException(status_code=503, detail="AMI not connected")
    return manager


class OriginateBody(BaseModel):
    channel: str
    context: Optional[str] = None
    exten: Optional[str] = None
    priority: Optional[int] = None
    application: Optional[str] = None
    data: Optional[str] = None
    timeout: int = 30000
    variables: Dict[str, str] = {}


# ---------------------------------------------------------------------------
# Auth API (public)
# ---------------------------------------------------------------------------
class LoginBody(BaseModel):
    username: str
    password: str


def authenticate_user(username: str, password: str) -> bool:
    """Check credentials against API_USERNAME / API_PASSWORD."""
    expected_user = os.getenv("API_USERNAME", "").strip()
    expected_password = os.getenv("API_PASSWORD", "")
    if not expected_user or not expected_password:
        log.warning("API_USERNAME/API_PASSWORD not set; logins are disabled")
        return False
    return (hmac.compare_digest(username.encode(), expected_user.encode())
            and hmac.compare_digest(password.encode(), expected_password.encode()))


@app.post("/api/auth/login")
async def auth_login(body: LoginBody):
    """
    Body: { "username": "...", "password": "..." }
    Returns: { "access_token": "...", "token_type": "bearer" }
    """
    username = (body.username or "").strip()
    if not username or not body.password:
        raise HTTPException(status_code=400, detail="Username and password required")
    if not authenticate_user(username, body.password):
        log.warning("Failed login for %s", username)
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return {"access_token": create_access_token(username), "token_type": "bearer"}


# ---------------------------------------------------------------------------
# REST API Endpoints (protected)
# ---------------------------------------------------------------------------
@app.get("/api/status")
async def get_status(current_user: dict = Depends(get_current_user)):
    """Get server status."""
    return {
        "connected": bool(manager and manager.connection and manager.connection.is_connected()),
        "active_calls": len(manager.get_channels()) if manager else 0,
        "queues": len(manager.get_queues()) if manager else 0,
    }


@app.get("/api/channels")
async def get_channels(current_user: dict = Depends(get_current_user)):
    """Get all live channels."""
    ami = _require_manager()
    return {"channels": [c.to_dict() for c in ami.get_channels()]}


@app.get("/api/channels/{uniqueid}")
async def get_channel(uniqueid: str, current_user: dict = Depends(get_current_user)):
    ami = _require_manager()
    channel = ami.get_channel_by_id(uniqueid)
    if channel is None:
        raise HTTPException(status_code=404, detail=f"No channel {uniqueid}")
    return {"channel": channel.to_dict()}


@app.get("/api/queues")
async def get_queues(current_user: dict = Depends(get_current_user)):
    """Get queues with their members and waiting callers."""
    ami = _require_manager()
    return {"queues": {q.name: q.to_dict() for q in ami.get_queues()}}


@app.get("/api/version")
async def get_version(current_user: dict = Depends(get_current_user)):
    ami = _require_manager()
    return {"version": await ami.get_version()}


@app.get("/api/version/{file}")
async def get_file_version(file: str, current_user: dict = Depends(get_current_user)):
    ami = _require_manager()
    revision = await ami.get_file_version(file)
    if revision is None:
        raise HTTPException(status_code=404, detail=f"No version for {file}")
    return {"file": file, "revision": list(revision)}


@app.post("/api/originate")
async def originate(body: OriginateBody, current_user: dict = Depends(get_current_user)):
    """
    Originate a call and wait for the server's confirmation.

    Returns ``{"channel": null}`` when the call was not answered.
    """
    ami = _require_manager()

    to_extension = bool(body.context or body.exten)
    to_application = bool(body.application)
    if to_extension == to_application:
        raise HTTPException(status_code=400, detail="Give either context/exten or application")

    try:
        if to_extension:
            channel = await ami.originate_to_extension(
                body.channel, body.context, body.exten,
                1 if body.priority is None else body.priority,
                body.timeout, body.variables)
        else:
            channel = await ami.originate_to_application(
                body.channel, body.application, body.data or '',
                body.timeout, body.variables)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ManagerTimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e))
    except ManagerError as e:
        log.error("❌ Originate on %s failed: %s", body.channel, e)
        raise HTTPException(status_code=502, detail=str(e))

    if channel is None:
        log.info("Originate on %s not answered", body.channel)
    return {"channel": channel.to_dict() if channel else None}


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8765"))
    log.info("Starting pbxlive over HTTP on port %s", port)
    uvicorn.run(
        "pbxlive.server:app",
        host="0.0.0.0",
        port=port,
        log_level="info",
    )
