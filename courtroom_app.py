#!/usr/bin/env python3
"""
CourtRoom Service
==================
FastAPI service for the CourtRoom simulator: a CRUD API for stored
message records, the simulator's user actions (countdown, stages,
resolve, code challenges), and HTML/PDF session reports.

The escalation scheduler and the countdown run as two background tasks
started in the app lifespan (disable with COURTROOM_AUTOSTART=false and
drive it through POST /v1/courtroom/tick instead).

Usage:
    uvicorn courtroom_app:app --host 0.0.0.0 --port 8081

Requires:
    pip install fastapi uvicorn pydantic httpx reportlab

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import json
import logging
import os
import random
import sqlite3
import uuid
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from courtroom_docs import RemoteRenderer, render_report_html, render_report_pdf
from courtroom_engine import SimulationConfig, Simulator, TickLoop
from courtroom_types import (
    ApplicationLocked,
    ConsequenceOutcome,
    CourtroomError,
    NotFound,
    OutOfRange,
    Severity,
    UpstreamError,
    ValidationError,
    list_stages,
)

# ── Logging ──
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("courtroom-app")


# ============================================================================
# CONFIGURATION
# ============================================================================

def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


class Config:
    """Environment-driven configuration. Reads from env vars in production."""
    DB_PATH: str = os.environ.get(
        "COURTROOM_DB_PATH", str(Path(__file__).parent / "courtroom.db"),
    )
    TICK_SECONDS: float = float(os.environ.get("COURTROOM_TICK_SECONDS", "1.0"))
    ESCALATE_WAIT_SECONDS: float = float(os.environ.get("COURTROOM_ESCALATE_WAIT_SECONDS", "120"))
    CHALLENGE_INTERVAL_SECONDS: float = float(os.environ.get("COURTROOM_CHALLENGE_INTERVAL_SECONDS", "20"))
    AMBIENT_PROBABILITY: float = float(os.environ.get("COURTROOM_AMBIENT_PROBABILITY", "0.03"))
    MAX_MESSAGES: int = int(os.environ.get("COURTROOM_MAX_MESSAGES", "200"))
    AUTOSTART: bool = _env_bool("COURTROOM_AUTOSTART", "true")
    SYNC_TO_STORE: bool = _env_bool("COURTROOM_SYNC_TO_STORE", "false")
    RENDERER_URL: str = os.environ.get(
        "RENDERER_URL", "https://renderer.invalid/prod/generate",
    )
    RENDERER_TIMEOUT_SECONDS: float = float(os.environ.get("RENDERER_TIMEOUT_SECONDS", "10"))

    @classmethod
    def simulation(cls) -> SimulationConfig:
        return SimulationConfig(
            tick_seconds=cls.TICK_SECONDS,
            escalate_wait_seconds=cls.ESCALATE_WAIT_SECONDS,
            challenge_interval_seconds=cls.CHALLENGE_INTERVAL_SECONDS,
            ambient_probability=cls.AMBIENT_PROBABILITY,
            max_messages=cls.MAX_MESSAGES,
        )


config = Config()


# ============================================================================
# SQLITE PERSISTENT STORE
# ============================================================================

LEVELS = {s.value for s in Severity}


def _get_db(path: str) -> sqlite3.Connection:
    """Open a SQLite connection with WAL mode for concurrency."""
    conn = sqlite3.connect(path, check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def _parse_timestamp(raw: Any) -> str:
    """Normalize a client timestamp to a UTC ISO string."""
    if isinstance(raw, datetime):
        ts = raw
    elif isinstance(raw, (int, float)) and not isinstance(raw, bool):
        # Widget records carry epoch milliseconds.
        try:
            ts = datetime.fromtimestamp(raw / 1000, timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ValidationError(f"Invalid timestamp: {raw!r}")
    else:
        try:
            ts = datetime.fromisoformat(str(raw).strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {raw!r}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def _row_to_record(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "text": row["text"],
        "from": row["sender"],
        "level": row["level"],
        "timestamp": row["timestamp"],
        "resolved": bool(row["resolved"]),
    }


class Store:
    """SQLite-backed message store and audit log. Survives restarts."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = str(db_path or config.DB_PATH)
        self.start_time = datetime.now(timezone.utc)
        self._init_db()

    @contextmanager
    def _db(self):
        """Safe database context manager. Auto-closes and handles errors."""
        conn = None
        try:
            conn = _get_db(self.db_path)
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Database error: {e}")
            if conn:
                conn.rollback()
            raise HTTPException(
                status_code=500,
                detail={"code": "DB_ERROR", "message": "Database operation failed"},
            )
        finally:
            if conn:
                conn.close()

    def _init_db(self):
        """Create tables if they don't exist. Safe to call multiple times."""
        with self._db() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS messages (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    text        TEXT NOT NULL,
                    sender      TEXT,
                    level       TEXT NOT NULL,
                    timestamp   TEXT NOT NULL,
                    resolved    INTEGER NOT NULL DEFAULT 0
                );

                CREATE TABLE IF NOT EXISTS audit_log (
                    audit_id    TEXT PRIMARY KEY,
                    action      TEXT NOT NULL,
                    actor       TEXT NOT NULL DEFAULT 'system',
                    detail      TEXT NOT NULL DEFAULT '{}',
                    timestamp   TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_messages_ts ON messages(timestamp);
                CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action);
            """)

    # ── Messages ──

    @property
    def message_count(self) -> int:
        with self._db() as conn:
            return conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record. ``text``, ``level`` and ``timestamp`` are required."""
        text = data.get("text")
        level = data.get("level")
        timestamp = data.get("timestamp")
        if not text or not level or timestamp is None or timestamp == "":
            raise ValidationError("Missing required fields: text, level, timestamp")
        if level not in LEVELS:
            raise ValidationError(f"Invalid level: {level!r}")
        ts = _parse_timestamp(timestamp)

        with self._db() as conn:
            cur = conn.execute(
                "INSERT INTO messages (text, sender, level, timestamp, resolved) VALUES (?, ?, ?, ?, 0)",
                (text, data.get("from") or None, level, ts),
            )
            message_id = cur.lastrowid
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        return _row_to_record(row)

    def get(self, message_id: int) -> Dict[str, Any]:
        with self._db() as conn:
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        if not row:
            raise NotFound("Message not found")
        return _row_to_record(row)

    def list_all(self) -> List[Dict[str, Any]]:
        """All records, newest first."""
        with self._db() as conn:
            rows = conn.execute(
                "SELECT * FROM messages ORDER BY timestamp DESC, id DESC"
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def update(self, message_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Partial update of text, from, level and resolved."""
        sets: List[str] = []
        params: List[Any] = []
        if fields.get("text") is not None:
            if not str(fields["text"]).strip():
                raise ValidationError("text must not be empty")
            sets.append("text = ?")
            params.append(fields["text"])
        if "from" in fields:
            sets.append("sender = ?")
            params.append(fields["from"])
        if fields.get("level") is not None:
            if fields["level"] not in LEVELS:
                raise ValidationError(f"Invalid level: {fields['level']!r}")
            sets.append("level = ?")
            params.append(fields["level"])
        if fields.get("resolved") is not None:
            sets.append("resolved = ?")
            params.append(1 if fields["resolved"] else 0)

        with self._db() as conn:
            if sets:
                cur = conn.execute(
                    f"UPDATE messages SET {', '.join(sets)} WHERE id = ?",
                    (*params, message_id),
                )
                if cur.rowcount == 0:
                    raise NotFound("Message not found")
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        if not row:
            raise NotFound("Message not found")
        return _row_to_record(row)

    def delete(self, message_id: int):
        with self._db() as conn:
            cur = conn.execute("DELETE FROM messages WHERE id = ?", (message_id,))
            deleted = cur.rowcount
        if not deleted:
            raise NotFound("Message not found")

    # ── Audit Log ──

    def audit(self, action: str, detail: Dict[str, Any] = None, actor: str = "system"):
        """Write an immutable audit log entry."""
        aid = f"aud_{uuid.uuid4().hex[:12]}"
        now = datetime.now(timezone.utc).isoformat()
        with self._db() as conn:
            conn.execute(
                "INSERT INTO audit_log (audit_id, action, actor, detail, timestamp) VALUES (?, ?, ?, ?, ?)",
                (aid, action, actor, json.dumps(detail or {}), now),
            )
        logger.info(f"Audit: {action} by {actor} -> {aid}")

    def get_audit_log(self, action: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Retrieve audit log entries, newest first."""
        with self._db() as conn:
            if action:
                rows = conn.execute(
                    "SELECT rowid, * FROM audit_log WHERE action = ? ORDER BY rowid DESC LIMIT ?",
                    (action, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT rowid, * FROM audit_log ORDER BY rowid DESC LIMIT ?", (limit,),
                ).fetchall()
        return [
            {
                "seq": r["rowid"],
                "audit_id": r["audit_id"],
                "action": r["action"],
                "actor": r["actor"],
                "detail": json.loads(r["detail"]),
                "timestamp": r["timestamp"],
            }
            for r in rows
        ]


# ============================================================================
# REQUEST / RESPONSE MODELS
# ============================================================================

class MessageCreate(BaseModel):
    """POST /api/messages body. Presence is checked by the store, not here."""
    model_config = ConfigDict(populate_by_name=True)

    text: Optional[str] = None
    sender: Optional[str] = Field(None, alias="from")
    level: Optional[str] = None
    timestamp: Optional[Union[str, int, float]] = None


class MessageUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: Optional[str] = None
    sender: Optional[str] = Field(None, alias="from")
    level: Optional[str] = None
    resolved: Optional[bool] = None


class StageSelect(BaseModel):
    index: int


class CountdownStart(BaseModel):
    minutes: int = 0
    seconds: int = 30
    duration_seconds: Optional[int] = None

    @property
    def total_seconds(self) -> int:
        if self.duration_seconds is not None:
            return max(0, self.duration_seconds)
        return max(0, self.minutes) * 60 + max(0, self.seconds)


class CodeSubmission(BaseModel):
    code: str = ""


class ReportRequest(BaseModel):
    messages: Optional[List[Dict[str, Any]]] = None
    theme: str = "light"
    title: str = "CourtRoom Messages"
    heading: str = "CourtRoom Session Report"


class HealthResponse(BaseModel):
    service: str = "courtroom"
    status: str = "healthy"
    uptime_seconds: float = 0.0
    messages_stored: int = 0
    scheduler_running: bool = False


# ============================================================================
# SERVICE STATE
# ============================================================================

store = Store()


def _audit_consequence(outcome: ConsequenceOutcome):
    store.audit("consequence.fired", outcome.to_dict(), actor="system")


simulator = Simulator(
    config=Config.simulation(),
    rng=random.Random(),
    repository=store if config.SYNC_TO_STORE else None,
    on_consequence=_audit_consequence,
)
tick_loop = TickLoop(simulator)
renderer = RemoteRenderer(config.RENDERER_URL, timeout=config.RENDERER_TIMEOUT_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.AUTOSTART:
        tick_loop.start()
    logger.info(f"CourtRoom service started (scheduler={'on' if config.AUTOSTART else 'off'})")
    yield
    await tick_loop.stop()
    logger.info("CourtRoom service shutting down")


# ============================================================================
# FASTAPI APP
# ============================================================================

app = FastAPI(
    title="CourtRoom Service",
    description="Message escalation simulator with message CRUD and session reports",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS: allow browser requests from localhost and deployed origins
_allowed_origins = os.environ.get(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000,http://localhost:8081",
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins if _allowed_origins != ["*"] else ["*"],
    allow_credentials=True if _allowed_origins != ["*"] else False,
    allow_methods=["*"],
    allow_headers=["*"],
)


_ERROR_STATUS = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    OutOfRange: status.HTTP_400_BAD_REQUEST,
    NotFound: status.HTTP_404_NOT_FOUND,
    ApplicationLocked: status.HTTP_423_LOCKED,
    UpstreamError: status.HTTP_502_BAD_GATEWAY,
}


@app.exception_handler(CourtroomError)
async def courtroom_error_handler(request: Request, exc: CourtroomError):
    code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for cls, mapped in _ERROR_STATUS.items():
        if isinstance(exc, cls):
            code = mapped
            break
    return JSONResponse(
        status_code=code,
        content={"detail": {"code": exc.code, "message": str(exc)}},
    )


def _parse_id(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "INVALID_ID", "message": "Invalid ID"},
        )


@app.get("/health", response_model=HealthResponse)
async def health():
    """Service health check."""
    uptime = (datetime.now(timezone.utc) - store.start_time).total_seconds()
    return HealthResponse(
        uptime_seconds=round(uptime, 1),
        messages_stored=store.message_count,
        scheduler_running=tick_loop.scheduler.running,
    )


@app.get("/ready")
async def ready():
    """Readiness probe. Returns 200 when the service can accept traffic."""
    return {"ready": True}


# ============================================================================
# MESSAGE CRUD
# ============================================================================

@app.get("/api/messages")
async def list_messages():
    """All stored messages, newest first."""
    return store.list_all()


@app.post("/api/messages", status_code=status.HTTP_201_CREATED)
async def create_message(body: MessageCreate):
    """Create a stored message. text, level and timestamp are required."""
    record = store.create({
        "text": body.text,
        "from": body.sender,
        "level": body.level,
        "timestamp": body.timestamp,
    })
    logger.info(f"Message stored: #{record['id']} ({record['level']})")
    return record


@app.get("/api/messages/{message_id}")
async def get_message(message_id: str):
    return store.get(_parse_id(message_id))


@app.put("/api/messages/{message_id}")
async def update_message(message_id: str, body: MessageUpdate):
    fields = body.model_dump(exclude_unset=True)
    if "sender" in fields:
        fields["from"] = fields.pop("sender")
    return store.update(_parse_id(message_id), fields)


@app.delete("/api/messages/{message_id}")
async def delete_message(message_id: str):
    store.delete(_parse_id(message_id))
    return {"message": "Deleted successfully"}


# ============================================================================
# SIMULATOR
# ============================================================================

@app.get("/v1/courtroom/state")
async def courtroom_state():
    """Full simulator snapshot: stage, countdown, notices, messages newest first."""
    return simulator.snapshot()


@app.get("/v1/courtroom/stages")
async def courtroom_stages():
    return {"stages": [s.to_dict(i) for i, s in enumerate(list_stages())]}


@app.post("/v1/courtroom/stage")
async def select_stage(body: StageSelect):
    stage = simulator.select_stage(body.index)
    store.audit("stage.selected", {"index": body.index, "name": stage.name}, actor="user")
    return stage.to_dict(body.index)


@app.post("/v1/courtroom/countdown/start")
async def start_countdown(body: CountdownStart):
    simulator.start_countdown(body.total_seconds)
    store.audit("countdown.started", {"seconds": body.total_seconds}, actor="user")
    return simulator.snapshot()["countdown"]


@app.post("/v1/courtroom/countdown/stop")
async def stop_countdown():
    simulator.stop_countdown()
    store.audit("countdown.stopped", {}, actor="user")
    return simulator.snapshot()["countdown"]


@app.post("/v1/courtroom/reset")
async def reset_simulation():
    simulator.reset_all()
    store.audit("simulation.reset", {}, actor="user")
    return simulator.snapshot()


@app.post("/v1/courtroom/tick")
async def run_tick():
    """Run one scheduler tick now."""
    return simulator.tick().to_dict()


@app.post("/v1/courtroom/messages/{message_id}/resolve")
async def resolve_message(message_id: str):
    message = simulator.resolve_message(message_id)
    store.audit("message.resolved", {"message_id": message.id, "text": message.text}, actor="user")
    return message.to_dict()


@app.post("/v1/courtroom/messages/{message_id}/challenge")
async def begin_challenge(message_id: str):
    challenge = simulator.begin_code_challenge(message_id)
    if challenge is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NO_CHALLENGE", "message": "No code challenge available for this message."},
        )
    return {"message_id": message_id, "challenge": challenge.to_dict()}


@app.post("/v1/courtroom/messages/{message_id}/challenge/submit")
async def submit_challenge(message_id: str, body: CodeSubmission):
    result = simulator.submit_code_challenge(message_id, body.code)
    store.audit("challenge.submitted", {
        "message_id": message_id,
        "accepted": result.accepted,
    }, actor="user")
    return result.to_dict()


@app.post("/v1/courtroom/messages/{message_id}/challenge/answer")
async def reveal_answer(message_id: str):
    challenge = simulator.reveal_solution(message_id)
    store.audit("challenge.answer_shown", {"message_id": message_id}, actor="user")
    return {"message_id": message_id, "challenge": challenge.to_dict(include_solution=True)}


@app.post("/v1/courtroom/debug/cancel")
async def cancel_debugging():
    simulator.cancel_debugging()
    return {"debug_message_id": None}


@app.post("/v1/courtroom/overlay/dismiss")
async def dismiss_overlay():
    simulator.dismiss_overlay()
    return {"overlay": None, "locked": simulator.locked}


@app.post("/v1/courtroom/overlay/acknowledge")
async def acknowledge_overlay():
    resolved = simulator.acknowledge_consequence()
    store.audit("consequence.acknowledged", {"resolved": [m.id for m in resolved]}, actor="user")
    return {"resolved": [m.to_dict() for m in resolved]}


# ============================================================================
# REPORTS
# ============================================================================

@app.post("/api/generate-html", response_class=HTMLResponse)
async def generate_html(body: Dict[str, Any]):
    """Render messages through the hosted renderer function."""
    messages = body.get("messages")
    if not isinstance(messages, list):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "VALIDATION_ERROR", "message": "Invalid input: messages array required"},
        )
    document = await renderer.render(messages, theme=body.get("theme") or "light")
    return HTMLResponse(content=document, status_code=200)


@app.post("/v1/reports/html", response_class=HTMLResponse)
async def report_html(body: ReportRequest):
    """Render locally. Without messages in the body, the stored messages are used."""
    messages = body.messages or store.list_all()
    document = render_report_html(messages, theme=body.theme, title=body.title, heading=body.heading)
    return HTMLResponse(content=document, status_code=200)


@app.get("/v1/reports/pdf")
async def report_pdf(source: str = "simulation"):
    """PDF session report of the live simulation or of the stored messages."""
    if source == "store":
        messages = store.list_all()
    elif source == "simulation":
        messages = simulator.messages
    else:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "VALIDATION_ERROR", "message": "source must be 'store' or 'simulation'"},
        )
    pdf_bytes = render_report_pdf(messages)
    return Response(
        content=pdf_bytes,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="courtroom_{source}_report.pdf"'},
    )


@app.get("/v1/audit-log")
async def audit_log(action: Optional[str] = None, limit: int = 100):
    return {"entries": store.get_audit_log(action=action, limit=max(1, min(limit, 500)))}
