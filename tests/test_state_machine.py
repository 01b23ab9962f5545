from __future__ import annotations

import itertools

import pytest

from counsel_bot.models import ConversationState, HistoryMessage, Origin, RiskLevel, Role, TurnMetadata
from counsel_bot.state_machine import (
    LEGAL_SUCCESSORS,
    RISK_FORCED_STATES,
    StateMachine,
    damp,
    is_legal,
)

from conftest import T0, add_user, enter_state, new_context

S = ConversationState

ILLEGAL_PAIRS = [
    (src, dst)
    for src, dst in itertools.product(S, S)
    if dst is not S.ERROR_RECOVERY and dst not in LEGAL_SUCCESSORS[src]
]
FORCING_LEVELS = [level for level, target in RISK_FORCED_STATES.items() if target is not None]


def _ctx(state: S, risk: RiskLevel = RiskLevel.LOW):
    ctx = new_context(risk_level=risk)
    ctx.state = state
    return ctx


def _assistant(text: str, factors=()) -> HistoryMessage:
    return HistoryMessage(
        text=text,
        origin=Origin.ASSISTANT,
        role=Role.ASSISTANT,
        timestamp=T0,
        metadata=TurnMetadata(risk_factors=tuple(factors)),
    )


# -------------------------
# attempt_transition
# -------------------------
@pytest.mark.parametrize("src,dst", ILLEGAL_PAIRS)
@pytest.mark.parametrize("risk", [RiskLevel.LOW, RiskLevel.MEDIUM])
def test_illegal_transition_is_rejected_and_state_unchanged(src, dst, risk):
    sm = StateMachine()
    ctx = _ctx(src, RiskLevel.MEDIUM)

    assert sm.attempt_transition(ctx, dst, "nope", risk) is None
    assert ctx.state is src
    assert ctx.risk_level is RiskLevel.MEDIUM


def test_legal_transition_updates_state_and_risk():
    sm = StateMachine()
    ctx = _ctx(S.GATHERING_INFO)

    t = sm.attempt_transition(ctx, S.ANALYSIS_NEEDED, "needs a look", RiskLevel.MEDIUM)

    assert t is not None
    assert (t.from_state, t.to_state) == (S.GATHERING_INFO, S.ANALYSIS_NEEDED)
    assert t.forced_by_risk is False
    assert t.reason == "needs a look"
    assert ctx.state is S.ANALYSIS_NEEDED
    assert ctx.risk_level is RiskLevel.MEDIUM


@pytest.mark.parametrize("risk", FORCING_LEVELS)
@pytest.mark.parametrize("src", list(S))
@pytest.mark.parametrize("suggested", list(S))
def test_risk_forced_transition_ignores_suggestion(risk, src, suggested):
    sm = StateMachine()
    ctx = _ctx(src)

    t = sm.attempt_transition(ctx, suggested, "whatever", risk)

    assert t is not None
    assert t.forced_by_risk is True
    assert ctx.state is RISK_FORCED_STATES[risk]
    assert ctx.risk_level is risk


def test_honor_risk_false_uses_the_table():
    sm = StateMachine()
    ctx = _ctx(S.PENDING_ANALYSIS)

    t = sm.attempt_transition(ctx, S.GUIDANCE_DELIVERY, "stall", RiskLevel.HIGH, honor_risk=False)

    assert t is not None and not t.forced_by_risk
    assert ctx.state is S.GUIDANCE_DELIVERY


@pytest.mark.parametrize("src", list(S))
def test_error_recovery_is_reachable_from_everywhere(src):
    ctx = _ctx(src)
    assert StateMachine().attempt_transition(ctx, S.ERROR_RECOVERY, "oops", RiskLevel.LOW) is not None
    assert ctx.state is S.ERROR_RECOVERY


@pytest.mark.parametrize("dst", list(S))
def test_error_recovery_can_reach_everything(dst):
    assert is_legal(S.ERROR_RECOVERY, dst)


def test_session_closing_is_terminal():
    assert all(not is_legal(S.SESSION_CLOSING, dst) for dst in S if dst is not S.ERROR_RECOVERY)


def test_force_sets_state_and_keeps_risk():
    ctx = _ctx(S.SESSION_CLOSING, RiskLevel.HIGH)
    t = StateMachine().force(ctx, S.ERROR_RECOVERY, "crash")
    assert ctx.state is S.ERROR_RECOVERY
    assert t.from_state is S.SESSION_CLOSING
    assert ctx.risk_level is RiskLevel.HIGH


# -------------------------
# Risk assessment
# -------------------------
@pytest.mark.parametrize("current", list(RiskLevel))
@pytest.mark.parametrize("suggested", list(RiskLevel))
def test_damping_never_drops_more_than_one_level(current, suggested):
    ctx = new_context()
    add_user(ctx, "it was an okay day", T0)

    assessed = StateMachine().assess_risk(current, ctx.history, suggested)

    assert assessed.rank >= current.rank - 1
    if suggested.rank >= current.rank:
        assert assessed is suggested


def test_damp_strength_is_configurable():
    assert damp(RiskLevel.CRITICAL, RiskLevel.LOW) is RiskLevel.HIGH
    assert damp(RiskLevel.CRITICAL, RiskLevel.LOW, max_drop=3) is RiskLevel.LOW
    sm = StateMachine(risk_max_drop=2)
    assert sm.assess_risk(RiskLevel.CRITICAL, [], RiskLevel.LOW) is RiskLevel.MEDIUM


def test_critical_keyword_forces_critical_case_insensitive():
    ctx = new_context()
    add_user(ctx, "Sometimes I think about SUICIDE", T0)
    assert StateMachine().assess_risk(RiskLevel.LOW, ctx.history, RiskLevel.LOW) is RiskLevel.CRITICAL


def test_keyword_in_assistant_turn_does_not_count():
    history = [_assistant("If this is an emergency, call your local number.")]
    assert StateMachine().assess_risk(RiskLevel.LOW, history, RiskLevel.LOW) is RiskLevel.LOW


def test_keyword_outside_window_is_ignored():
    ctx = new_context()
    add_user(ctx, "I want to die", T0)
    for i in range(5):
        add_user(ctx, f"message {i}", T0 + i)

    assert StateMachine(risk_window=5).assess_risk(RiskLevel.MEDIUM, ctx.history, RiskLevel.MEDIUM) is RiskLevel.MEDIUM


def test_internal_turns_do_not_take_window_slots():
    ctx = new_context()
    add_user(ctx, "I want to die", T0)
    for i in range(6):
        enter_state(ctx, S.GATHERING_INFO if i % 2 else S.ANALYSIS_NEEDED, T0 + i)

    assert StateMachine(risk_window=5).assess_risk(RiskLevel.LOW, ctx.history, RiskLevel.LOW) is RiskLevel.CRITICAL


def test_inbound_turn_is_scanned_outside_window():
    ctx = new_context()
    inbound = add_user(ctx, "I want to die", T0)
    for i in range(5):
        ctx.append(_assistant(f"follow-up {i}"))

    sm = StateMachine(risk_window=5)
    assert sm.assess_risk(RiskLevel.LOW, ctx.history, RiskLevel.LOW) is RiskLevel.LOW
    assert sm.assess_risk(RiskLevel.LOW, ctx.history, RiskLevel.LOW, inbound=inbound) is RiskLevel.CRITICAL


def test_accumulated_risk_factors_force_high():
    history = [_assistant("a", ["isolation"]), _assistant("b", ["insomnia", "hopelessness"])]
    assert StateMachine().assess_risk(RiskLevel.LOW, history, RiskLevel.LOW) is RiskLevel.HIGH
    assert StateMachine(risk_factor_threshold=4).assess_risk(RiskLevel.LOW, history, RiskLevel.LOW) is RiskLevel.LOW


def test_no_suggestion_keeps_current_level():
    assert StateMachine().assess_risk(RiskLevel.HIGH, [], None) is RiskLevel.HIGH


def test_custom_keywords():
    sm = StateMachine(critical_keywords=["Overdose"])
    assert sm.has_critical_keyword("thinking about an overdose")
    assert not sm.has_critical_keyword("I want to die")


# -------------------------
# Metrics
# -------------------------
def test_metrics_count_transition_notes():
    ctx = new_context(S.GATHERING_INFO)
    enter_state(ctx, S.ANALYSIS_NEEDED, T0 + 60)

    m = StateMachine().metrics(ctx, now=T0 + 90)

    assert m.state_changes == 2
    assert m.current_state_duration_s == 30
    assert m.average_state_duration_s == 30
    assert StateMachine.visits(ctx) == {S.GATHERING_INFO: 1, S.ANALYSIS_NEEDED: 1}
