"""Tests for the simulator: injection, escalation, consequences and user actions."""

import asyncio

import pytest

from conftest import T0, FixedRandom, at
from courtroom_engine import (
    PeriodicTask,
    SimulationConfig,
    Simulator,
    TickLoop,
    format_time,
    present_consequence,
)
from courtroom_types import (
    ApplicationLocked,
    ConsequenceKind,
    NotFound,
    OutOfRange,
    Severity,
    find_challenge,
)


def make_simulator(draw=1.0, **config):
    return Simulator(config=SimulationConfig(**config), clock=lambda: T0, rng=FixedRandom(draw))


class RecordingRepository:
    def __init__(self, fail=False):
        self.fail = fail
        self.records = []

    def create(self, data):
        if self.fail:
            raise RuntimeError("disk full")
        self.records.append(data)
        return data


class TestEscalation:
    def test_first_reminder_uses_stage_range(self, simulator):
        m = simulator.add_message("Fix alt in img1", origin="agile")
        assert m.next_reminder_at == at(20)
        assert m.terminal_at is None
        assert m.consequence == ConsequenceKind.ACCESSIBILITY

    def test_release_stage_delay(self, simulator):
        simulator.select_stage(1)
        m = simulator.add_message("Update release notes")
        assert m.next_reminder_at == at(30)

    def test_full_lifecycle(self, simulator):
        m = simulator.add_message("Fix alt in img1", origin="agile")

        assert not simulator.tick(at(19)).changed
        assert m.severity == Severity.INFO

        report = simulator.tick(at(20))
        assert report.escalated == [m]
        assert m.severity == Severity.WARNING
        assert m.escalation_count == 1
        assert m.next_reminder_at == at(140)

        simulator.tick(at(140))
        assert m.severity == Severity.URGENT
        assert m.escalation_count == 2
        assert m.next_reminder_at is None
        assert m.terminal_at == at(260)

        report = simulator.tick(at(260))
        assert report.terminated == [m]
        assert m.resolved is True
        assert m.pending_timer is None
        assert len(report.outcomes) == 1
        assert report.outcomes[0].title == "Accessibility Hearing"
        assert simulator.overlay == report.outcomes[0]
        # Termination is not a user fix.
        assert "Fix alt in img1" not in simulator.resolved_history

    def test_resolved_message_never_escalates(self, simulator):
        m = simulator.add_message("Fix Secure Database")
        simulator.resolve_message(m.id)
        for seconds in (20, 140, 260, 500):
            assert not simulator.tick(at(seconds)).changed
        assert m.severity == Severity.INFO
        assert m.escalation_count == 0

    def test_resolve_during_terminal_window(self, simulator):
        m = simulator.add_message("Fix Secure Database")
        simulator.tick(at(20))
        simulator.tick(at(140))
        simulator.resolve_message(m.id)
        report = simulator.tick(at(260))
        assert report.outcomes == []
        assert simulator.overlay is None

    def test_stop_countdown_does_not_stop_escalation(self, simulator):
        simulator.start_countdown(60)
        simulator.stop_countdown()
        m = simulator.add_message("Are you done with sprint 1?")
        simulator.tick(at(20))
        assert m.severity == Severity.WARNING

    def test_escalation_never_lowers_severity(self, simulator):
        m = simulator.add_message("Are you done with sprint 1?")
        m.severity = Severity.URGENT
        report = simulator.tick(at(20))
        assert report.escalated == [m]
        assert m.escalation_count == 1
        assert m.severity == Severity.URGENT


class TestInjection:
    def test_nothing_injected_while_countdown_idle(self):
        sim = make_simulator(draw=0.0)
        report = sim.tick(at(60))
        assert report.injected == []
        assert sim.messages == []

    def test_challenge_injected_on_interval(self):
        sim = make_simulator()
        sim.start_countdown(300)

        assert sim.tick(at(10)).injected == []

        report = sim.tick(at(20))
        assert len(report.injected) == 1
        m = report.injected[0]
        assert m.id.startswith("coding_")
        assert m.text == "Fix change Title colour to Red"
        assert m.created_at == at(20)
        assert find_challenge(m.text) is not None

    def test_resolved_challenge_not_reinjected(self):
        sim = make_simulator()
        sim.start_countdown(300)
        first = sim.tick(at(20)).injected[0]
        sim.resolve_message(first.id)

        second = sim.tick(at(40)).injected[0]
        assert second.text == "Fix alt in img1"

    def test_ambient_injection(self):
        sim = make_simulator(draw=0.0)
        sim.start_countdown(300)
        report = sim.tick(at(1))
        assert len(report.injected) == 1
        m = report.injected[0]
        assert m.id.startswith("auto_")
        assert m.text == "Are you done with sprint 1?"
        assert find_challenge(m.text) is None

    def test_ambient_skips_resolved_history(self):
        sim = make_simulator(draw=0.0)
        sim.start_countdown(300)
        first = sim.tick(at(1)).injected[0]
        sim.resolve_message(first.id)
        second = sim.tick(at(2)).injected[0]
        assert second.text == "Can you pick up the kids after work?"

    def test_ambient_draw_above_probability(self):
        sim = make_simulator(draw=0.5)
        sim.start_countdown(300)
        assert sim.tick(at(1)).injected == []

    def test_no_injection_while_locked(self):
        sim = make_simulator(draw=0.0)
        sim.start_countdown(300)
        sim.locked = True
        assert sim.tick(at(20)).injected == []


class TestCollection:
    def test_newest_first_and_cap(self):
        sim = make_simulator(max_messages=3)
        for i in range(5):
            sim.add_message(f"message {i}")
        assert [m.text for m in sim.messages] == ["message 4", "message 3", "message 2"]

    def test_same_id_replaces(self, simulator):
        simulator.add_message("first", message_id="dup")
        simulator.add_message("second", message_id="dup")
        messages = simulator.messages
        assert len(messages) == 1
        assert messages[0].text == "second"

    def test_get_unknown_message(self, simulator):
        with pytest.raises(NotFound):
            simulator.resolve_message("msg_missing")

    def test_select_stage_out_of_range(self, simulator):
        with pytest.raises(OutOfRange):
            simulator.select_stage(7)
        assert simulator.stage_index == 0

    def test_snapshot(self, simulator):
        simulator.add_message("hello", origin="boss")
        snap = simulator.snapshot()
        assert snap["stage"]["name"] == "Debugging"
        assert snap["active"] is False
        assert snap["countdown"]["display"] == "00:00"
        assert snap["locked"] is False
        assert snap["messages"][0]["from"] == "boss"


class TestCountdown:
    def test_format_time(self):
        assert format_time(65) == "01:05"
        assert format_time(0) == "00:00"
        assert format_time(-3) == "00:00"

    def test_countdown_finish_posts_notice(self, simulator):
        simulator.start_countdown(2)
        assert simulator.active is True
        assert simulator.countdown_tick() is False
        assert simulator.countdown.remaining_seconds == 1
        assert simulator.countdown_tick() is True
        assert simulator.active is False
        notice = simulator.messages[0]
        assert notice.text == "Timer finished"
        assert notice.origin == "system"
        assert notice.id.startswith("sys_")

    def test_idle_countdown_does_nothing(self, simulator):
        assert simulator.countdown_tick() is False
        assert simulator.messages == []

    def test_reset_all(self, simulator):
        simulator.start_countdown(30)
        m = simulator.add_message("Fix User login")
        simulator.resolve_message(m.id)
        simulator.reset_all()
        snap = simulator.snapshot()
        assert snap["messages"] == []
        assert snap["resolved_history"] == []
        assert snap["countdown"] == {"running": False, "remaining_seconds": 0, "display": "00:00"}


class TestConsequences:
    def run_to_termination(self, sim, start=0):
        for offset in (20, 140, 260):
            sim.tick(at(start + offset))

    def test_presenter_titles(self, simulator):
        cases = {
            "Fix alt in img1": ("Accessibility Hearing", False),
            "Fix Secure Database": ("Court of Law - Laws of Tort", False),
            "Fix User login": ("Insolvency Notice", True),
            "Are you done with sprint 1?": ("Court Action", False),
        }
        for text, (title, disables) in cases.items():
            outcome = present_consequence(simulator.add_message(text))
            assert outcome.title == title
            assert outcome.disables_application is disables
            assert text in outcome.body

    def test_insolvency_locks_application(self):
        sim = make_simulator(challenge_interval_seconds=10_000)
        m = sim.add_message("Fix User login", origin="payment")
        sim.start_countdown(600)
        self.run_to_termination(sim)

        assert sim.locked is True
        assert sim.active is False
        assert sim.overlay.message_id == m.id
        with pytest.raises(ApplicationLocked):
            sim.start_countdown(30)
        with pytest.raises(ApplicationLocked):
            sim.select_stage(1)
        with pytest.raises(ApplicationLocked):
            sim.acknowledge_consequence()

        sim.dismiss_overlay()
        sim.cancel_debugging()
        assert sim.overlay is None
        assert sim.locked is True

        sim.reset_all()
        assert sim.locked is False
        sim.start_countdown(30)

    def test_lockout_notice_stays_over_later_notices(self, simulator):
        simulator.add_message("Fix User login")
        simulator.add_message("Are you done with sprint 1?", now=at(10))
        for seconds in (20, 30, 140, 150, 260, 270):
            simulator.tick(at(seconds))

        assert [o.title for o in simulator.consequence_log] == ["Insolvency Notice", "Court Action"]
        assert simulator.overlay.title == "Insolvency Notice"

    def test_callback_runs_after_mutation(self, simulator):
        seen = []

        def on_consequence(outcome):
            message = simulator.get_message(outcome.message_id)
            seen.append((message.resolved, simulator.overlay))

        simulator.on_consequence = on_consequence
        simulator.add_message("Fix alt in img1")
        self.run_to_termination(simulator)

        assert len(seen) == 1
        resolved, overlay = seen[0]
        assert resolved is True
        assert overlay.kind == ConsequenceKind.ACCESSIBILITY

    def test_failing_callback_does_not_break_tick(self, simulator):
        def boom(outcome):
            raise RuntimeError("handler down")

        simulator.on_consequence = boom
        simulator.add_message("Fix alt in img1")
        simulator.tick(at(20))
        simulator.tick(at(140))
        report = simulator.tick(at(260))
        assert len(report.outcomes) == 1

    def test_acknowledge_resolves_urgent_and_same_kind(self, simulator):
        urgent = simulator.add_message("Are you done with sprint 1?")
        urgent.severity = Severity.URGENT
        same_kind = simulator.add_message("Pen test found SQLi", consequence="legal_liability")
        other = simulator.add_message("Fix alt in img1")
        trigger = simulator.add_message("Fix Secure Database")
        simulator.overlay = present_consequence(trigger)

        resolved = simulator.acknowledge_consequence()

        assert urgent in resolved
        assert same_kind in resolved
        assert trigger in resolved
        assert other not in resolved
        assert other.resolved is False
        assert simulator.overlay is None


LOCKED_ACTIONS = [
    ("start_countdown", lambda sim, mid: sim.start_countdown(30)),
    ("stop_countdown", lambda sim, mid: sim.stop_countdown()),
    ("select_stage", lambda sim, mid: sim.select_stage(1)),
    ("resolve_message", lambda sim, mid: sim.resolve_message(mid)),
    ("begin_code_challenge", lambda sim, mid: sim.begin_code_challenge(mid)),
    ("submit_code_challenge", lambda sim, mid: sim.submit_code_challenge(mid, "<img />")),
    ("reveal_solution", lambda sim, mid: sim.reveal_solution(mid)),
    ("acknowledge_consequence", lambda sim, mid: sim.acknowledge_consequence()),
]


class TestLockout:
    @pytest.mark.parametrize("name,action", LOCKED_ACTIONS, ids=[n for n, _ in LOCKED_ACTIONS])
    def test_mutating_action_rejected(self, simulator, name, action):
        m = simulator.add_message("Fix alt in img1")
        simulator.locked = True

        with pytest.raises(ApplicationLocked):
            action(simulator, m.id)

        assert m.resolved is False
        assert simulator.debug_message_id is None
        assert simulator.stage_index == 0
        assert simulator.countdown.running is False


class TestCodeChallenges:
    def test_submit_wrong_then_right(self, simulator):
        m = simulator.add_message("Fix input validation", origin="security")
        challenge = simulator.begin_code_challenge(m.id)
        assert challenge.keyword == "input validation"
        assert simulator.debug_message_id == m.id

        result = simulator.submit_code_challenge(m.id, challenge.broken_code)
        assert result.accepted is False
        assert result.hint == challenge.hint
        assert result.feedback.startswith("Incorrect. Try again.")
        assert m.resolved is False

        result = simulator.submit_code_challenge(
            m.id, "function validateInput(input) {\n\n    return input.replace(/[<>]/g, '');\n}",
        )
        assert result.accepted is True
        assert m.resolved is True
        assert "Fix input validation" in simulator.resolved_history
        assert simulator.debug_message_id is None

    def test_message_without_challenge(self, simulator):
        m = simulator.add_message("Can you pick up the kids after work?")
        assert simulator.begin_code_challenge(m.id) is None
        with pytest.raises(NotFound):
            simulator.submit_code_challenge(m.id, "anything")
        with pytest.raises(NotFound):
            simulator.reveal_solution(m.id)

    def test_reveal_and_cancel(self, simulator):
        m = simulator.add_message("Fix User login")
        challenge = simulator.reveal_solution(m.id)
        assert "password" in challenge.solution
        assert m.resolved is False
        simulator.cancel_debugging()
        assert simulator.debug_message_id is None


class TestStoreSync:
    def test_injected_messages_written(self):
        repo = RecordingRepository()
        sim = make_simulator(draw=0.0)
        sim.repository = repo
        sim.start_countdown(300)
        report = sim.tick(at(1))
        assert report.sync_failures == 0
        assert repo.records == [{
            "text": "Are you done with sprint 1?",
            "from": "boss",
            "level": "info",
            "timestamp": at(1).isoformat(),
        }]

    def test_sync_failure_keeps_message(self):
        sim = make_simulator(draw=0.0)
        sim.repository = RecordingRepository(fail=True)
        sim.start_countdown(300)
        report = sim.tick(at(1))
        assert report.sync_failures == 1
        assert len(sim.messages) == 1


class TestPeriodicDrivers:
    def test_periodic_task_runs_and_stops(self):
        calls = []

        async def scenario():
            task = PeriodicTask("test", 0.01, lambda: calls.append(1))
            task.start()
            await asyncio.sleep(0.05)
            await task.stop()
            return task.running

        assert asyncio.run(scenario()) is False
        assert calls

    def test_failing_callback_keeps_running(self):
        calls = []

        def flaky():
            calls.append(1)
            raise RuntimeError("tick failed")

        async def scenario():
            task = PeriodicTask("flaky", 0.01, flaky)
            task.start()
            await asyncio.sleep(0.06)
            await task.stop()

        asyncio.run(scenario())
        assert len(calls) >= 2

    def test_tick_loop_drives_countdown(self):
        sim = make_simulator(tick_seconds=0.01)
        sim.start_countdown(600)

        async def scenario():
            loop = TickLoop(sim, countdown_interval=0.01)
            loop.start()
            await asyncio.sleep(0.05)
            await loop.stop()

        asyncio.run(scenario())
        assert sim.countdown.remaining_seconds < 600
