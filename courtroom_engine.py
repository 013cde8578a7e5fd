#!/usr/bin/env python3
"""
CourtRoom Escalation Engine
============================
The simulator behind the CourtRoom widget: injects messages from the
active stage, escalates unresolved ones on a periodic tick
(info → warning → urgent → consequence), and exposes the user actions
that resolve them, manually or by fixing a code challenge.

All state lives in one Simulator object. Two periodic processes drive it
(the escalation/injection tick and the visible countdown); both run as
independent asyncio tasks on the same event loop via TickLoop, and every
public Simulator method takes the state lock, so their effects are
serialized.

Usage:
    sim = Simulator(SimulationConfig(), clock=utcnow, rng=random.Random(7))
    sim.start_countdown(90)
    report = sim.tick()

Version: 1.0  —  October 2026
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from courtroom_types import (
    SEVERITY_BY_ESCALATION,
    ApplicationLocked,
    CodeChallenge,
    ConsequenceKind,
    ConsequenceOutcome,
    Message,
    MessageTemplate,
    NotFound,
    Severity,
    Stage,
    coerce_consequence,
    find_challenge,
    gen_id,
    get_stage,
    utcnow,
)

logger = logging.getLogger("courtroom-engine")


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class SimulationConfig:
    """Timing and retention knobs. Defaults match the demo timescale."""
    tick_seconds: float = 1.0
    escalate_wait_seconds: float = 120.0
    challenge_interval_seconds: float = 20.0
    ambient_probability: float = 0.03
    max_messages: int = 200

    @property
    def escalate_wait(self) -> timedelta:
        return timedelta(seconds=self.escalate_wait_seconds)

    @property
    def challenge_interval(self) -> timedelta:
        return timedelta(seconds=self.challenge_interval_seconds)


# ============================================================================
# CONSEQUENCE PRESENTER
# ============================================================================

def present_consequence(message: Message) -> ConsequenceOutcome:
    """Map a terminated message to the notice shown to the user."""
    kind = message.consequence
    if kind == ConsequenceKind.ACCESSIBILITY:
        return ConsequenceOutcome(
            title="Accessibility Hearing",
            body=(
                f'You ignored accessibility issues ("{message.text}"), which can violate '
                f"disability laws. Court action initiated."
            ),
            kind=kind,
            message_id=message.id,
        )
    if kind == ConsequenceKind.LEGAL_LIABILITY:
        return ConsequenceOutcome(
            title="Court of Law - Laws of Tort",
            body=(
                f'A critical security or validation issue ("{message.text}") was not fixed '
                f"and led to failure/harm. Legal action: Laws of Tort."
            ),
            kind=kind,
            message_id=message.id,
        )
    if kind == ConsequenceKind.INSOLVENCY:
        return ConsequenceOutcome(
            title="Insolvency Notice",
            body=(
                f'Failure to fix "{message.text}" caused loss of revenue and trust. '
                f"The business is insolvent and the app is disabled."
            ),
            kind=kind,
            disables_application=True,
            message_id=message.id,
        )
    return ConsequenceOutcome(
        title="Court Action",
        body=f'An urgent issue escalated: "{message.text}".',
        kind=ConsequenceKind.NONE,
        message_id=message.id,
    )


def _raise_severity(current: Severity, escalation_count: int) -> Severity:
    """Severity for an escalation step. Never lowers an already higher level."""
    target = SEVERITY_BY_ESCALATION[escalation_count]
    return target if target.rank > current.rank else current


# ============================================================================
# RESULT OBJECTS
# ============================================================================

@dataclass
class TickReport:
    """What a single tick changed."""
    at: datetime
    injected: List[Message] = field(default_factory=list)
    escalated: List[Message] = field(default_factory=list)
    terminated: List[Message] = field(default_factory=list)
    outcomes: List[ConsequenceOutcome] = field(default_factory=list)
    sync_failures: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.injected or self.escalated or self.terminated)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "injected": [m.id for m in self.injected],
            "escalated": [m.id for m in self.escalated],
            "terminated": [m.id for m in self.terminated],
            "outcomes": [o.to_dict() for o in self.outcomes],
            "sync_failures": self.sync_failures,
        }


@dataclass
class SubmissionResult:
    accepted: bool
    feedback: str
    hint: Optional[str] = None
    message: Optional[Message] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accepted": self.accepted,
            "feedback": self.feedback,
            "hint": self.hint,
            "message": self.message.to_dict() if self.message else None,
        }


# ============================================================================
# COUNTDOWN
# ============================================================================

def format_time(total_seconds: int) -> str:
    """Render seconds as mm:ss."""
    total_seconds = max(0, int(total_seconds))
    return f"{total_seconds // 60:02d}:{total_seconds % 60:02d}"


class Countdown:
    """The visible countdown. Its running flag gates message injection."""

    def __init__(self):
        self.remaining_seconds = 0
        self.running = False

    def start(self, seconds: int):
        self.remaining_seconds = max(0, int(seconds))
        self.running = True

    def stop(self):
        self.running = False

    def reset(self):
        self.running = False
        self.remaining_seconds = 0

    def tick(self) -> bool:
        """Advance one second. Returns True on the tick that finishes the countdown."""
        if not self.running:
            return False
        if self.remaining_seconds <= 1:
            self.remaining_seconds = 0
            self.running = False
            return True
        self.remaining_seconds -= 1
        return False


# ============================================================================
# SIMULATOR
# ============================================================================

class Simulator:
    """
    Owns the message collection and every rule that mutates it.

    ``repository`` is optional; when given, injected messages are written
    to it through ``repository.create(dict)``. A failing write is logged
    and counted but never undoes the in-memory injection.

    ``on_consequence`` is called with each ConsequenceOutcome once the
    tick's mutation phase is complete.
    """

    def __init__(
        self,
        config: Optional[SimulationConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        repository: Any = None,
        on_consequence: Optional[Callable[[ConsequenceOutcome], None]] = None,
    ):
        self.config = config or SimulationConfig()
        self.clock = clock or utcnow
        self.rng = rng or random.Random()
        self.repository = repository
        self.on_consequence = on_consequence
        self.countdown = Countdown()
        self._lock = threading.RLock()

        self._messages: List[Message] = []
        self.stage_index = 0
        self.resolved_history: Set[str] = set()
        self.overlay: Optional[ConsequenceOutcome] = None
        self.consequence_log: List[ConsequenceOutcome] = []
        self.locked = False
        self.last_challenge_at: Optional[datetime] = None
        self.debug_message_id: Optional[str] = None

    # ── Read side ──

    @property
    def stage(self) -> Stage:
        return get_stage(self.stage_index)

    @property
    def active(self) -> bool:
        return self.countdown.running

    @property
    def messages(self) -> List[Message]:
        """Retained messages, newest first."""
        with self._lock:
            return list(self._messages)

    def get_message(self, message_id: str) -> Message:
        with self._lock:
            for m in self._messages:
                if m.id == message_id:
                    return m
        raise NotFound(f"Message {message_id} not found")

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "stage": self.stage.to_dict(self.stage_index),
                "active": self.active,
                "countdown": {
                    "running": self.countdown.running,
                    "remaining_seconds": self.countdown.remaining_seconds,
                    "display": format_time(self.countdown.remaining_seconds),
                },
                "locked": self.locked,
                "overlay": self.overlay.to_dict() if self.overlay else None,
                "consequences": [o.to_dict() for o in self.consequence_log],
                "resolved_history": sorted(self.resolved_history),
                "debug_message_id": self.debug_message_id,
                "messages": [m.to_dict() for m in self._messages],
            }

    # ── Message creation ──

    def add_message(
        self,
        text: str,
        origin: str = "system",
        consequence: Any = None,
        message_id: Optional[str] = None,
        prefix: str = "msg",
        now: Optional[datetime] = None,
    ) -> Message:
        """
        Create a message from the current stage's timing and insert it.

        The first reminder lands a random ``reminder_min_ms..reminder_max_ms``
        after now. An existing message with the same id is replaced.
        """
        with self._lock:
            now = now or self.clock()
            stage = self.stage
            delay_ms = self.rng.randint(stage.reminder_min_ms, stage.reminder_max_ms)
            message = Message(
                id=message_id or gen_id(prefix),
                text=text,
                origin=origin or "system",
                created_at=now,
                next_reminder_at=now + timedelta(milliseconds=delay_ms),
                consequence=coerce_consequence(consequence, text),
            )
            self._insert(message)
            logger.info(
                f"Message injected: {message.id} '{message.text}' from {message.origin} "
                f"(consequence={message.consequence.value}, reminder in {delay_ms}ms)"
            )
            return message

    def _insert(self, message: Message):
        kept = [m for m in self._messages if m.id != message.id]
        kept.insert(0, message)
        if len(kept) > self.config.max_messages:
            evicted = len(kept) - self.config.max_messages
            logger.info(f"Evicting {evicted} oldest message(s) over cap {self.config.max_messages}")
        self._messages = kept[: self.config.max_messages]

    def _from_template(self, template: MessageTemplate, prefix: str, now: datetime) -> Message:
        return self.add_message(
            text=template.text,
            origin=template.origin,
            consequence=template.consequence,
            prefix=prefix,
            now=now,
        )

    def _sync(self, message: Message) -> bool:
        if self.repository is None:
            return True
        try:
            self.repository.create({
                "text": message.text,
                "from": message.origin,
                "level": message.severity.value,
                "timestamp": message.created_at.isoformat(),
            })
        except Exception as e:
            logger.warning(f"Store sync failed for {message.id}: {e}")
            return False
        return True

    # ── Tick ──

    def tick(self, now: Optional[datetime] = None) -> TickReport:
        """
        One scheduler step: injection first, then escalation.

        Consequences are collected during the escalation pass and only
        presented after every message has been updated.
        """
        with self._lock:
            now = now or self.clock()
            report = TickReport(at=now)
            self._inject(now, report)
            self._escalate(now, report)

            for message in report.terminated:
                outcome = present_consequence(message)
                report.outcomes.append(outcome)
                self._record_outcome(outcome)

        for message in report.injected:
            if not self._sync(message):
                report.sync_failures += 1
        for outcome in report.outcomes:
            if self.on_consequence is None:
                break
            try:
                self.on_consequence(outcome)
            except Exception as e:
                logger.warning(f"Consequence handler failed for {outcome.message_id}: {e}")
        return report

    def _inject(self, now: datetime, report: TickReport):
        if not self.active or self.locked:
            return
        pool = self.stage.templates

        # Scheduled challenge: fixed interval from the last scheduled injection.
        if self.last_challenge_at is None:
            self.last_challenge_at = now
        if now - self.last_challenge_at >= self.config.challenge_interval:
            candidates = [
                t for t in pool
                if find_challenge(t.text) is not None and t.text not in self.resolved_history
            ]
            if candidates:
                message = self._from_template(self.rng.choice(candidates), "coding", now)
                self.last_challenge_at = now
                report.injected.append(message)

        # Ambient: independent per-tick draw.
        if self.rng.random() < self.config.ambient_probability:
            candidates = [
                t for t in pool
                if find_challenge(t.text) is None and t.text not in self.resolved_history
            ]
            if candidates:
                report.injected.append(self._from_template(self.rng.choice(candidates), "auto", now))

    def _escalate(self, now: datetime, report: TickReport):
        wait = self.config.escalate_wait
        for m in self._messages:
            if m.resolved:
                continue

            if m.terminal_at is not None:
                if now >= m.terminal_at:
                    m.resolved = True
                    m.clear_timers()
                    report.terminated.append(m)
                continue

            if m.next_reminder_at is None or now < m.next_reminder_at:
                continue

            count = m.escalation_count + 1
            if count == 1:
                m.escalation_count = count
                m.severity = _raise_severity(m.severity, count)
                m.next_reminder_at = now + wait
            elif count == 2:
                m.escalation_count = count
                m.severity = _raise_severity(m.severity, count)
                m.next_reminder_at = None
                m.terminal_at = now + wait
            else:
                continue
            report.escalated.append(m)
            logger.info(
                f"Message escalated: {m.id} -> {m.severity.value} "
                f"(escalations={m.escalation_count})"
            )

    def _record_outcome(self, outcome: ConsequenceOutcome):
        self.consequence_log.append(outcome)
        # A lockout notice stays on screen over later, milder notices.
        if not (self.overlay and self.overlay.disables_application and self.locked):
            self.overlay = outcome
        logger.info(f"Consequence fired: {outcome.kind.value} for {outcome.message_id} ({outcome.title})")
        if outcome.disables_application and not self.locked:
            self.locked = True
            self.countdown.stop()
            logger.warning("Application locked by insolvency; reset required")

    # ── Countdown ──

    def countdown_tick(self) -> bool:
        """Advance the countdown one second; on finish, post a system notice."""
        with self._lock:
            finished = self.countdown.tick()
            if finished:
                logger.info("Countdown finished")
                self.add_message("Timer finished", origin="system",
                                 consequence=ConsequenceKind.NONE, prefix="sys")
            return finished

    # ── User actions ──

    def _ensure_unlocked(self, action: str):
        if self.locked:
            logger.warning(f"Rejected '{action}': application locked")
            raise ApplicationLocked(f"Cannot {action} while the application is locked; reset first")

    def start_countdown(self, duration_seconds: int):
        with self._lock:
            self._ensure_unlocked("start the countdown")
            self.countdown.start(duration_seconds)
            if self.last_challenge_at is None:
                self.last_challenge_at = self.clock()
            logger.info(f"Countdown started: {format_time(self.countdown.remaining_seconds)}")

    def stop_countdown(self):
        with self._lock:
            self._ensure_unlocked("stop the countdown")
            self.countdown.stop()
            logger.info(f"Countdown stopped at {format_time(self.countdown.remaining_seconds)}")

    def reset_all(self):
        """Clear every message, timer, notice and the resolved-history at once."""
        with self._lock:
            self.countdown.reset()
            self._messages = []
            self.overlay = None
            self.consequence_log = []
            self.locked = False
            self.resolved_history = set()
            self.last_challenge_at = None
            self.debug_message_id = None
            logger.info("Simulation reset")

    def select_stage(self, index: int) -> Stage:
        with self._lock:
            self._ensure_unlocked("change stage")
            stage = get_stage(index)
            self.stage_index = index
            logger.info(f"Stage selected: {index} ({stage.name})")
            return stage

    def _resolve(self, message: Message):
        if message.resolved:
            return
        message.resolved = True
        message.clear_timers()
        logger.info(f"Message resolved: {message.id} '{message.text}'")
        self.resolved_history.add(message.text)
        if self.debug_message_id == message.id:
            self.debug_message_id = None

    def resolve_message(self, message_id: str) -> Message:
        with self._lock:
            self._ensure_unlocked("resolve messages")
            message = self.get_message(message_id)
            self._resolve(message)
            return message

    def begin_code_challenge(self, message_id: str) -> Optional[CodeChallenge]:
        """Open the debug session for a message. None if no challenge matches."""
        with self._lock:
            self._ensure_unlocked("start debugging")
            message = self.get_message(message_id)
            challenge = find_challenge(message.text)
            if challenge is None:
                return None
            self.debug_message_id = message.id
            return challenge

    def submit_code_challenge(self, message_id: str, code: str) -> SubmissionResult:
        with self._lock:
            self._ensure_unlocked("submit code")
            message = self.get_message(message_id)
            challenge = find_challenge(message.text)
            if challenge is None:
                raise NotFound("No code challenge available for this message.")
            if challenge.accepts(code or ""):
                self._resolve(message)
                return SubmissionResult(
                    accepted=True,
                    feedback="Correct! Issue resolved. The message has been marked as fixed.",
                    message=message,
                )
            return SubmissionResult(
                accepted=False,
                feedback=f"Incorrect. Try again. Hint: {challenge.hint}",
                hint=challenge.hint,
                message=message,
            )

    def reveal_solution(self, message_id: str) -> CodeChallenge:
        with self._lock:
            self._ensure_unlocked("show the answer")
            message = self.get_message(message_id)
            challenge = find_challenge(message.text)
            if challenge is None:
                raise NotFound("No code challenge available for this message.")
            self.debug_message_id = message.id
            return challenge

    def cancel_debugging(self):
        with self._lock:
            self.debug_message_id = None

    def dismiss_overlay(self):
        """Hide the current notice. The insolvency lockout stays in force."""
        with self._lock:
            self.overlay = None

    def acknowledge_consequence(self) -> List[Message]:
        """Resolve every urgent message and every one sharing the notice's kind."""
        with self._lock:
            self._ensure_unlocked("resolve urgent issues")
            kind = self.overlay.kind if self.overlay else None
            resolved = []
            for m in self._messages:
                if m.resolved:
                    continue
                if m.severity == Severity.URGENT or (kind is not None and m.consequence == kind):
                    self._resolve(m)
                    resolved.append(m)
            self.overlay = None
            return resolved


# ============================================================================
# PERIODIC DRIVERS
# ============================================================================

class PeriodicTask:
    """Runs ``callback`` every ``interval`` seconds on the running event loop."""

    def __init__(self, name: str, interval: float, callback: Callable[[], Any]):
        self.name = name
        self.interval = interval
        self.callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)
        logger.info(f"Periodic task started: {self.name} every {self.interval}s")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Periodic task stopped: {self.name}")

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.callback()
            except Exception:
                logger.exception(f"Periodic task {self.name} failed; continuing")


class TickLoop:
    """The two independent periodic processes that drive a Simulator."""

    def __init__(self, simulator: Simulator, countdown_interval: float = 1.0):
        self.simulator = simulator
        self.scheduler = PeriodicTask(
            "courtroom-scheduler", simulator.config.tick_seconds, simulator.tick,
        )
        self.countdown = PeriodicTask(
            "courtroom-countdown", countdown_interval, simulator.countdown_tick,
        )

    def start(self):
        self.scheduler.start()
        self.countdown.start()

    async def stop(self):
        await self.scheduler.stop()
        await self.countdown.stop()
