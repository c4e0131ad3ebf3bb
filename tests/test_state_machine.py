"""Enrollment status transition table"""
import pytest

from enrollpay.core.state_machine import (
    TRANSITIONS,
    IllegalTransition,
    allowed_sources,
    can_transition,
    is_terminal,
)
from enrollpay.models.enrollment import EnrollmentStatus as S


def test_every_status_has_a_row():
    assert set(TRANSITIONS) == set(S)


def test_paid_and_canceled_are_final():
    assert TRANSITIONS[S.PAID] == frozenset()
    assert TRANSITIONS[S.CANCELED] == frozenset()


def test_paid_reachable_only_from_settlement_states():
    assert allowed_sources(S.PAID) == {S.OPENED, S.PROCESSING, S.FAILED, S.EXPIRED}
    assert not can_transition(S.CREATED, S.PAID)
    assert not can_transition(S.SENT, S.PAID)


def test_processing_cannot_be_canceled():
    assert not can_transition(S.PROCESSING, S.CANCELED)
    assert can_transition(S.PROCESSING, S.EXPIRED)


def test_opened_reachable_from_created_and_sent():
    assert allowed_sources(S.OPENED) == {S.CREATED, S.SENT}


def test_narrowed_sources():
    assert allowed_sources(S.PAID, within={S.PROCESSING}) == {S.PROCESSING}


def test_narrowing_cannot_widen_the_table():
    with pytest.raises(IllegalTransition):
        allowed_sources(S.OPENED, within={S.PAID})


def test_terminal_statuses():
    assert is_terminal(S.PAID)
    assert is_terminal("expired")
    assert not is_terminal(S.PROCESSING)
    assert not is_terminal(S.OPENED)
