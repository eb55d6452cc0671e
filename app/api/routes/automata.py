# app/api/routes/automata.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from app.automata.service import AutomataService

router = APIRouter(prefix="/api/automata", tags=["automata"])


# ─────────────────────────────────────────────────────────────────────────────
# DTO
# ─────────────────────────────────────────────────────────────────────────────

class AutomatonOut(BaseModel):
    id: str
    state: str
    since: datetime


class RulesOut(BaseModel):
    generation: int
    automata_count: int
    expressions_count: int
    loaded_at: Optional[datetime] = None
    last_reload_error: Optional[str] = None


class StatusOut(BaseModel):
    text: str
    automata: List[AutomatonOut]
    rules: RulesOut
    reconciling: bool


class StateIn(BaseModel):
    automaton: str
    state: str


class ScriptIn(BaseModel):
    command: str


class SwitchIn(BaseModel):
    # ["kitchen", "off", "level=50"]; пусто → список устройств
    args: List[str] = Field(default_factory=list)


class MessageOut(BaseModel):
    ok: bool = True
    message: str


def _service(request: Request) -> AutomataService:
    svc = getattr(request.app.state, "automata", None)
    if svc is None:
        raise HTTPException(503, "automata service is not running")
    return svc


# ─────────────────────────────────────────────────────────────────────────────
# API
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/status", response_model=StatusOut)
def get_status(request: Request):
    svc = _service(request)
    text, states = svc.call(lambda: (svc.status_text(), svc.states()))
    st = svc.status
    return StatusOut(
        text=text,
        automata=[AutomatonOut(**s) for s in states],
        rules=RulesOut(
            generation=st.generation,
            automata_count=st.automata_count,
            expressions_count=st.expressions_count,
            loaded_at=st.loaded_at,
            last_reload_error=st.last_reload_error,
        ),
        reconciling=svc.reconciling,
    )


@router.post("/state", response_model=MessageOut)
def post_state(request: Request, body: StateIn):
    svc = _service(request)
    try:
        msg = svc.call(svc.force_state, body.automaton, body.state)
    except KeyError as e:
        raise HTTPException(404, str(e.args[0]) if e.args else "not found")
    return MessageOut(message=msg)


@router.get("/logs")
def get_logs(request: Request, limit: int = 25):
    svc = _service(request)
    return {"lines": svc.logs(max(1, min(limit, 500)))}


@router.post("/script", response_class=PlainTextResponse)
def post_script(request: Request, body: ScriptIn):
    # скрипт выполняется в потоке запроса, цикл автоматов не ждёт
    return _service(request).run_script(body.command)


@router.post("/switch", response_model=MessageOut)
def post_switch(request: Request, body: SwitchIn):
    svc = _service(request)
    return MessageOut(message=svc.switch(body.args))


@router.post("/reload", response_model=MessageOut)
def post_reload(request: Request):
    svc = _service(request)
    ok = svc.call(svc.reload)
    if not ok:
        return MessageOut(ok=False, message=svc.status.last_reload_error or "reload failed")
    return MessageOut(message=f"Reloaded: generation {svc.status.generation}")


@router.get("/help", response_class=PlainTextResponse)
def get_help(request: Request):
    return _service(request).help()
