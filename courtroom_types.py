#!/usr/bin/env python3
"""
CourtRoom — Type Definitions
=============================
Data objects, enums, static catalogs (stages, code challenges),
consequence keyword table and the error taxonomy for the CourtRoom
escalation simulator.

Usage:
    from courtroom_types import Message, Stage, CodeChallenge, STAGES, ...

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ============================================================================
# ENUMS
# ============================================================================

class Severity(str, Enum):
    """Escalation level of a message. Ordered info < warning < urgent."""
    INFO = "info"
    WARNING = "warning"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: Dict[Severity, int] = {
    Severity.INFO: 0,
    Severity.WARNING: 1,
    Severity.URGENT: 2,
}

# escalation_count → severity. Count 2 also schedules the terminal action.
SEVERITY_BY_ESCALATION: Dict[int, Severity] = {
    0: Severity.INFO,
    1: Severity.WARNING,
    2: Severity.URGENT,
}


class ConsequenceKind(str, Enum):
    """Outcome triggered when a message survives the full escalation ladder."""
    NONE = "none"
    ACCESSIBILITY = "accessibility"
    LEGAL_LIABILITY = "legal_liability"
    INSOLVENCY = "insolvency"


class Theme(str, Enum):
    LIGHT = "light"
    DARK = "dark"


# ============================================================================
# ERRORS
# ============================================================================

class CourtroomError(Exception):
    """Base class for every error raised by the simulator and its store."""
    code = "COURTROOM_ERROR"


class ValidationError(CourtroomError, ValueError):
    """Malformed or incomplete input to a create/update call."""
    code = "VALIDATION_ERROR"


class NotFound(CourtroomError, LookupError):
    """Lookup by id failed."""
    code = "NOT_FOUND"


class OutOfRange(CourtroomError, IndexError):
    """Stage index outside the catalog."""
    code = "OUT_OF_RANGE"


class ApplicationLocked(CourtroomError):
    """A mutating action was attempted while the insolvency lockout is active."""
    code = "APPLICATION_LOCKED"


class UpstreamError(CourtroomError):
    """Persistence or remote rendering call failed."""
    code = "UPSTREAM_ERROR"


# ============================================================================
# HELPERS
# ============================================================================

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def gen_id(prefix: str = "msg") -> str:
    """Opaque message id, e.g. ``coding_3f9a1c0b7d2e``."""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


_WHITESPACE_RUN = re.compile(r"\s+")


def normalize_code(code: str) -> str:
    """
    Canonical form of a code snippet for submission comparison.

    Lines are trimmed, blank lines dropped, the remainder rejoined and
    every whitespace run collapsed to one space. Token content, order
    and case are preserved.
    """
    lines = [line.strip() for line in code.split("\n")]
    joined = "\n".join(line for line in lines if line)
    return _WHITESPACE_RUN.sub(" ", joined)


# ============================================================================
# DATA OBJECTS
# ============================================================================

@dataclass
class Message:
    """
    A simulated incoming message and its escalation lifecycle.

    At most one of ``next_reminder_at`` / ``terminal_at`` is set at a time,
    and both are cleared once ``resolved`` is true.
    """
    text: str
    origin: str = "system"
    id: str = field(default_factory=gen_id)
    severity: Severity = Severity.INFO
    created_at: datetime = field(default_factory=utcnow)
    resolved: bool = False
    escalation_count: int = 0
    next_reminder_at: Optional[datetime] = None
    terminal_at: Optional[datetime] = None
    consequence: ConsequenceKind = ConsequenceKind.NONE

    @property
    def pending_timer(self) -> Optional[str]:
        if self.terminal_at is not None:
            return "terminal"
        if self.next_reminder_at is not None:
            return "reminder"
        return None

    def clear_timers(self):
        self.next_reminder_at = None
        self.terminal_at = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "from": self.origin,
            "level": self.severity.value,
            "timestamp": self.created_at.isoformat(),
            "resolved": self.resolved,
            "escalations": self.escalation_count,
            "next_reminder_at": self.next_reminder_at.isoformat() if self.next_reminder_at else None,
            "terminal_at": self.terminal_at.isoformat() if self.terminal_at else None,
            "consequence": self.consequence.value,
        }


@dataclass(frozen=True)
class MessageTemplate:
    """One entry of a stage's message pool."""
    text: str
    origin: str
    consequence: ConsequenceKind = ConsequenceKind.NONE


@dataclass(frozen=True)
class Stage:
    """A named phase: a template pool plus the initial reminder interval range."""
    name: str
    templates: Tuple[MessageTemplate, ...]
    reminder_min_ms: int = 20_000
    reminder_max_ms: int = 30_000

    def to_dict(self, index: int) -> Dict[str, Any]:
        return {
            "index": index,
            "name": self.name,
            "reminder_min_ms": self.reminder_min_ms,
            "reminder_max_ms": self.reminder_max_ms,
            "messages": [
                {"text": t.text, "from": t.origin, "consequence": t.consequence.value}
                for t in self.templates
            ],
        }


@dataclass(frozen=True)
class CodeChallenge:
    """Remediation exercise matched to a message by keyword."""
    keyword: str
    description: str
    broken_code: str
    solution: str
    hint: str

    def matches(self, message_text: str) -> bool:
        return self.keyword.lower() in message_text.lower()

    def accepts(self, submitted_code: str) -> bool:
        return normalize_code(submitted_code) == normalize_code(self.solution)

    def to_dict(self, include_solution: bool = False) -> Dict[str, Any]:
        data = {
            "keyword": self.keyword,
            "description": self.description,
            "broken_code": self.broken_code,
            "hint": self.hint,
        }
        if include_solution:
            data["solution"] = self.solution
        return data


@dataclass(frozen=True)
class ConsequenceOutcome:
    """User-facing content for a terminated message."""
    title: str
    body: str
    kind: ConsequenceKind = ConsequenceKind.NONE
    disables_application: bool = False
    message_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "kind": self.kind.value,
            "disables_application": self.disables_application,
            "message_id": self.message_id,
        }


# ============================================================================
# STAGE CATALOG
# ============================================================================

DEMO_REMIND_MIN_MS = 20_000
DEMO_REMIND_MAX_MS = 30_000

STAGES: Tuple[Stage, ...] = (
    Stage(
        name="Debugging",
        templates=(
            MessageTemplate("Are you done with sprint 1?", "boss"),
            MessageTemplate("Can you pick up the kids after work?", "family"),
            MessageTemplate("Fix change Title colour to Red", "agile"),
            MessageTemplate("Fix alt in img1", "agile", ConsequenceKind.ACCESSIBILITY),
            MessageTemplate("Fix input validation", "security", ConsequenceKind.LEGAL_LIABILITY),
            MessageTemplate("Fix User login", "payment", ConsequenceKind.INSOLVENCY),
            MessageTemplate("Fix Secure Database", "ops", ConsequenceKind.LEGAL_LIABILITY),
        ),
        reminder_min_ms=DEMO_REMIND_MIN_MS,
        reminder_max_ms=DEMO_REMIND_MAX_MS,
    ),
    Stage(
        name="Release",
        templates=(
            MessageTemplate("Regression found in checkout", "qa", ConsequenceKind.LEGAL_LIABILITY),
            MessageTemplate("Update release notes", "docs"),
            MessageTemplate("Fix User login", "payment", ConsequenceKind.INSOLVENCY),
        ),
        reminder_min_ms=30_000,
        reminder_max_ms=60_000,
    ),
    Stage(
        name="Audit",
        templates=(
            MessageTemplate("Accessibility audit: missing alt tags", "audit", ConsequenceKind.ACCESSIBILITY),
            MessageTemplate("Pen test found SQLi", "security", ConsequenceKind.LEGAL_LIABILITY),
            MessageTemplate("Fix input validation", "security", ConsequenceKind.LEGAL_LIABILITY),
        ),
        reminder_min_ms=60_000,
        reminder_max_ms=120_000,
    ),
)


def list_stages() -> Tuple[Stage, ...]:
    return STAGES


def get_stage(index: int) -> Stage:
    """Return the stage at ``index``. Negative indexes are not accepted."""
    if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(STAGES):
        raise OutOfRange(f"Stage index {index!r} outside 0..{len(STAGES) - 1}")
    return STAGES[index]


# ============================================================================
# CODE-CHALLENGE REGISTRY
# ============================================================================

# Order is significant: the first keyword contained in a message text wins.
CODE_CHALLENGES: Tuple[CodeChallenge, ...] = (
    CodeChallenge(
        keyword="alt in img",
        description="Fix missing alt attribute in image tag (accessibility issue)",
        broken_code='<img src="logo.png" />',
        solution='<img src="logo.png" alt="Company logo" />',
        hint="Add an alt attribute describing the image content",
    ),
    CodeChallenge(
        keyword="input validation",
        description="Fix input validation to prevent injection attacks",
        broken_code=(
            "function validateInput(input) {\n"
            "  return input;\n"
            "}"
        ),
        solution=(
            "function validateInput(input) {\n"
            "  return input.replace(/[<>]/g, '');\n"
            "}"
        ),
        hint="Sanitize input by removing or escaping dangerous characters like < and >",
    ),
    CodeChallenge(
        keyword="User login",
        description="Fix authentication logic (missing password check)",
        broken_code=(
            "function login(username) {\n"
            "  if (username) {\n"
            "    return true;\n"
            "  }\n"
            "  return false;\n"
            "}"
        ),
        solution=(
            "function login(username, password) {\n"
            "  if (username && password) {\n"
            "    return true;\n"
            "  }\n"
            "  return false;\n"
            "}"
        ),
        hint="Login should require both username AND password",
    ),
    CodeChallenge(
        keyword="Secure Database",
        description="Fix SQL injection vulnerability in database query",
        broken_code='const query = "SELECT * FROM users WHERE id = " + userId;',
        solution=(
            'const query = "SELECT * FROM users WHERE id = ?";\n'
            "// Use parameterized queries"
        ),
        hint="Use parameterized queries instead of string concatenation",
    ),
    CodeChallenge(
        keyword="Title colour",
        description="Fix CSS to change title color to red",
        broken_code=(
            ".title {\n"
            "  color: blue;\n"
            "}"
        ),
        solution=(
            ".title {\n"
            "  color: red;\n"
            "}"
        ),
        hint="Change the color property value to 'red'",
    ),
)


def find_challenge(message_text: str) -> Optional[CodeChallenge]:
    """Case-insensitive substring lookup; registry order decides ties."""
    for challenge in CODE_CHALLENGES:
        if challenge.matches(message_text):
            return challenge
    return None


def validate_submission(challenge: CodeChallenge, submitted_code: str) -> bool:
    return challenge.accepts(submitted_code)


# ============================================================================
# CONSEQUENCE KEYWORDS
# ============================================================================

# Checked in order; first row with a keyword contained in the text wins.
CONSEQUENCE_KEYWORDS: List[Tuple[ConsequenceKind, Tuple[str, ...]]] = [
    (ConsequenceKind.INSOLVENCY, ("user login", "payment", "checkout outage")),
    (ConsequenceKind.ACCESSIBILITY, ("alt in img", "alt tag", "accessibility", "screen reader")),
    (ConsequenceKind.LEGAL_LIABILITY, (
        "input validation", "secure database", "sqli", "sql injection",
        "regression", "security",
    )),
]


def classify_consequence(text: Optional[str]) -> ConsequenceKind:
    """Infer a consequence kind from free text. Total: defaults to NONE."""
    if not text:
        return ConsequenceKind.NONE
    lowered = text.lower()
    for kind, keywords in CONSEQUENCE_KEYWORDS:
        if any(kw in lowered for kw in keywords):
            return kind
    return ConsequenceKind.NONE


def coerce_consequence(raw: Any, text: Optional[str] = None) -> ConsequenceKind:
    """Accept an enum, its value, or nothing (falls back to the keyword table)."""
    if isinstance(raw, ConsequenceKind):
        return raw
    if raw:
        try:
            return ConsequenceKind(str(raw).strip().lower())
        except ValueError:
            return ConsequenceKind.NONE
    return classify_consequence(text)
