"""
Enrollment status transition table.

Every status must appear as a key of TRANSITIONS; this is checked when the
module is imported so a status added to the enum without a row here fails
fast instead of silently allowing nothing (or everything).

Store-level transition functions derive their compare-and-swap source sets
from this table via allowed_sources(), so the guarded UPDATE and the table
cannot drift apart.
"""
from typing import Dict, FrozenSet, Iterable

from enrollpay.models.enrollment import EnrollmentStatus

S = EnrollmentStatus

TERMINAL_STATUSES: FrozenSet[EnrollmentStatus] = frozenset({S.PAID, S.FAILED, S.EXPIRED, S.CANCELED})
LIVE_STATUSES: FrozenSet[EnrollmentStatus] = frozenset(set(S) - TERMINAL_STATUSES)

# Statuses a link is still usable in by the patient
ACTIVE_LINK_STATUSES: FrozenSet[EnrollmentStatus] = frozenset({S.CREATED, S.SENT, S.OPENED})

# Admin regeneration: terminal, but never paid
REGENERABLE_STATUSES: FrozenSet[EnrollmentStatus] = frozenset({S.EXPIRED, S.FAILED, S.CANCELED})

TRANSITIONS: Dict[EnrollmentStatus, FrozenSet[EnrollmentStatus]] = {
    S.CREATED: frozenset({S.SENT, S.OPENED, S.EXPIRED, S.CANCELED, S.FAILED}),
    S.SENT: frozenset({S.OPENED, S.EXPIRED, S.CANCELED, S.FAILED}),
    S.OPENED: frozenset({S.PROCESSING, S.PAID, S.EXPIRED, S.CANCELED, S.FAILED}),
    S.PROCESSING: frozenset({S.PAID, S.EXPIRED, S.FAILED}),
    S.PAID: frozenset(),
    # A verified completion of the enrollment's own checkout session still
    # lands after a decline inside that session, or after lazy expiry raced it
    S.FAILED: frozenset({S.PAID, S.PROCESSING}),
    S.EXPIRED: frozenset({S.PAID, S.PROCESSING}),
    S.CANCELED: frozenset(),
}

_missing = set(EnrollmentStatus) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"Transition table missing statuses: {sorted(s.value for s in _missing)}")


class IllegalTransition(ValueError):
    pass


def can_transition(source: EnrollmentStatus, target: EnrollmentStatus) -> bool:
    return target in TRANSITIONS[EnrollmentStatus(source)]


def allowed_sources(target: EnrollmentStatus, within: Iterable[EnrollmentStatus] = None) -> FrozenSet[EnrollmentStatus]:
    """
    Statuses from which `target` is reachable, optionally narrowed to `within`.

    Raises IllegalTransition if `within` names a status the table does not
    allow, so a caller cannot widen a guard past the table.
    """
    sources = frozenset(s for s, targets in TRANSITIONS.items() if target in targets)
    if within is None:
        return sources
    within = frozenset(EnrollmentStatus(s) for s in within)
    illegal = within - sources
    if illegal:
        raise IllegalTransition(
            f"{sorted(s.value for s in illegal)} -> {EnrollmentStatus(target).value} is not an allowed transition"
        )
    return within


def is_terminal(status: EnrollmentStatus) -> bool:
    return EnrollmentStatus(status) in TERMINAL_STATUSES
