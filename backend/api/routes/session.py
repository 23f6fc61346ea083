# backend/api/routes/session.py
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request

from backend.api.schemas import ModelOut, SelectModelRequest, SendMessageRequest, SessionOut
from backend.session.controller import SessionController
from backend.session.errors import SessionNotReadyError

log = logging.getLogger("hearth.routes.session")
router = APIRouter(tags=["session"])


def get_session(request: Request) -> SessionController:
    return request.app.state.session


@router.get("/session", response_model=SessionOut)
async def get_session_state(session: SessionController = Depends(get_session)) -> SessionOut:
    return SessionOut.from_snapshot(session.snapshot())


@router.post("/session/initialize", response_model=SessionOut)
async def initialize(session: SessionController = Depends(get_session)) -> SessionOut:
    """Load the selected model, or fall back to demo mode. Failures surface in the returned state."""
    await session.initialize()
    return SessionOut.from_snapshot(session.snapshot())


@router.post("/session/model", response_model=SessionOut)
async def select_model(
    payload: SelectModelRequest, session: SessionController = Depends(get_session)
) -> SessionOut:
    try:
        session.select_model(payload.model_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"unknown model: {payload.model_id}")
    return SessionOut.from_snapshot(session.snapshot())


@router.post("/session/retry-suggested", response_model=SessionOut)
async def retry_suggested(session: SessionController = Depends(get_session)) -> SessionOut:
    if session.suggested_fallback_model_id is None:
        raise HTTPException(status_code=409, detail="no fallback model suggested")
    await session.retry_with_suggested_model()
    return SessionOut.from_snapshot(session.snapshot())


@router.post("/session/messages", response_model=SessionOut)
async def send_message(
    payload: SendMessageRequest, session: SessionController = Depends(get_session)
) -> SessionOut:
    """
    Runs the whole generation; a concurrent POST /session/stop ends it early.
    """
    try:
        accepted = await session.send_message(payload.content)
    except SessionNotReadyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not accepted:
        raise HTTPException(status_code=409, detail="generation in flight")
    return SessionOut.from_snapshot(session.snapshot())


@router.post("/session/stop", response_model=SessionOut)
async def stop_generation(session: SessionController = Depends(get_session)) -> SessionOut:
    session.stop_generation()
    return SessionOut.from_snapshot(session.snapshot())


@router.post("/session/clear", response_model=SessionOut)
async def clear_messages(session: SessionController = Depends(get_session)) -> SessionOut:
    await session.clear_messages()
    return SessionOut.from_snapshot(session.snapshot())


@router.post("/session/reset", response_model=SessionOut)
async def reset(session: SessionController = Depends(get_session)) -> SessionOut:
    await session.reset()
    return SessionOut.from_snapshot(session.snapshot())


@router.get("/models", response_model=List[ModelOut])
async def list_models(session: SessionController = Depends(get_session)) -> List[ModelOut]:
    return [ModelOut.from_descriptor(m) for m in session.available_models()]
