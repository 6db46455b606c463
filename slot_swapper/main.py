# main.py
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import fastapi
from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel

from slot_swapper.auth import (
    LoginRequest,
    Token,
    UserCreate,
    authenticate_user,
    get_current_user,
    register_user,
    token_for,
    user_from_token,
)
from slot_swapper.config import CORS_ORIGINS, LOG_LEVEL
from slot_swapper.data_models import SlotStatus, User
from slot_swapper.database import database, engine, metadata
from slot_swapper.errors import SwapError
from slot_swapper.notifications import manager
from slot_swapper.services import negotiator, registry

# Configure logging
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: fastapi.FastAPI):
    logger.info("Application starting up...")
    await database.connect()
    # Create tables if they don't exist
    metadata.create_all(bind=engine)

    released = await negotiator.reconcile()
    if released:
        logger.warning(f"Released {released} slot(s) left SWAP_PENDING without a pending request")

    yield
    logger.info("Application shutting down...")
    await database.disconnect()


# FastAPI Setup
app = fastapi.FastAPI(title="SlotSwapper API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SwapError)
async def swap_error_handler(request: Request, exc: SwapError):
    logger.info(f"{request.method} {request.url.path} refused: {exc.code} - {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message, "code": exc.code})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error", "code": "internal_error"},
    )


# Request Models
class SlotCreate(BaseModel):
    title: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: Optional[SlotStatus] = None

class SlotStatusUpdate(BaseModel):
    status: SlotStatus

class SwapProposal(BaseModel):
    my_slot_id: str
    their_slot_id: str

class SwapAnswer(BaseModel):
    accept: bool


@app.get("/api/health")
async def health():
    return {"status": "OK"}


# Auth Endpoints
@app.post("/api/auth/signup", status_code=status.HTTP_201_CREATED)
async def signup(user: UserCreate):
    created, token = await register_user(user)
    logger.info(f"User {created.id} signed up")
    return {"user": created, "token": token}

@app.post("/api/auth/login")
async def login(credentials: LoginRequest):
    user = await authenticate_user(credentials.email, credentials.password)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    return {"user": user, "token": token_for(user)}

@app.post("/token", response_model=Token)
async def login_for_access_token(form_data: OAuth2PasswordRequestForm = Depends()):
    user = await authenticate_user(form_data.username, form_data.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return {"access_token": token_for(user), "token_type": "bearer"}

@app.get("/api/users/me")
async def read_users_me(current_user: User = Depends(get_current_user)):
    """
    Get the current authenticated user's profile data.
    """
    return current_user


# Slot Endpoints
@app.get("/api/events")
async def list_events(current_user: User = Depends(get_current_user)):
    return await registry.list_owned(current_user.id)

@app.post("/api/events", status_code=status.HTTP_201_CREATED)
async def create_event(slot: SlotCreate, current_user: User = Depends(get_current_user)):
    return await registry.create_slot(current_user.id, slot.title, slot.start_time, slot.end_time, slot.status)

@app.put("/api/events/{slot_id}")
async def update_event(slot_id: str, update: SlotStatusUpdate, current_user: User = Depends(get_current_user)):
    """Change a slot's status. Leaving SWAP_PENDING cancels the pending swap."""
    return await registry.set_status(slot_id, current_user.id, update.status)

@app.delete("/api/events/{slot_id}")
async def delete_event(slot_id: str, current_user: User = Depends(get_current_user)):
    await registry.delete_slot(slot_id, current_user.id)
    return {"message": "Event deleted successfully"}

@app.get("/api/swappable-slots")
async def swappable_slots(current_user: User = Depends(get_current_user)):
    return await registry.list_swappable(current_user.id)


# Swap Endpoints
@app.post("/api/swap-request", status_code=status.HTTP_201_CREATED)
async def create_swap_request(proposal: SwapProposal, current_user: User = Depends(get_current_user)):
    return await negotiator.propose(current_user.id, proposal.my_slot_id, proposal.their_slot_id)

@app.get("/api/swap-requests")
async def my_swap_requests(current_user: User = Depends(get_current_user)):
    return await negotiator.list_for(current_user.id)

@app.post("/api/swap-response/{request_id}")
async def respond_to_swap(request_id: str, answer: SwapAnswer, current_user: User = Depends(get_current_user)):
    return await negotiator.respond(current_user.id, request_id, answer.accept)

@app.delete("/api/swap-requests/{request_id}")
async def delete_swap_request(request_id: str, current_user: User = Depends(get_current_user)):
    await negotiator.discard(current_user.id, request_id)
    return {"message": "Swap request deleted"}


@app.websocket("/ws")
async def websocket_endpoint(websocket: fastapi.WebSocket, token: str = Query(None)):
    """
    Live notification channel. Authenticates with ?token=<jwt> and keeps the
    session registered under the caller's user id until it disconnects.
    """
    if token is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    try:
        current_user = await user_from_token(token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await manager.connect(current_user.id, websocket)
    await websocket.send_text(json.dumps({
        "type": "auth_success",
        "data": {"user_id": current_user.id, "name": current_user.name}
    }))

    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text(json.dumps({"type": "pong"}))
    except fastapi.WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(current_user.id, websocket)
