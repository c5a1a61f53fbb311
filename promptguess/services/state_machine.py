"""Lifecycle state machines for rounds, 1:1 challenges and group challenges.

Challenge:   pending → active → guessed → completed
             active → completed (challenger already scored)
             active → declined, pending|active → expired
Participant: pending → joined → guessed, pending|joined → declined
Round:       pending → active → completed

Group challenge status is not a stored field; it is reduced from the
participant sub-states by :func:`compute_group_status`.
"""

from collections.abc import Iterable


class StateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, entity: str, current: str, target: str, allowed: list[str]):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot transition {entity} from '{current}' to '{target}'. "
            f"Allowed from '{current}': {allowed}"
        )


CHALLENGE_TRANSITIONS: dict[str, list[str]] = {
    "pending": ["active", "expired"],
    "active": ["guessed", "completed", "declined", "expired"],
    "guessed": ["completed"],
    "completed": [],    # terminal
    "declined": [],     # terminal
    "expired": [],      # terminal
}

PARTICIPANT_TRANSITIONS: dict[str, list[str]] = {
    "pending": ["joined", "declined"],
    "joined": ["guessed", "declined"],
    "guessed": [],
    "declined": [],
}

ROUND_TRANSITIONS: dict[str, list[str]] = {
    "pending": ["active"],
    "active": ["completed"],
    "completed": [],
}

_TABLES = {
    "challenge": CHALLENGE_TRANSITIONS,
    "participant": PARTICIPANT_TRANSITIONS,
    "round": ROUND_TRANSITIONS,
}

CHALLENGE_TERMINAL = frozenset({"completed", "declined", "expired"})
# States in which the 1:1 challenge has not been acted on and may still lapse
CHALLENGE_EXPIRABLE = frozenset({"pending", "active"})

PARTICIPANT_TERMINAL = frozenset({"guessed", "declined"})
GROUP_TERMINAL = frozenset({"completed", "expired"})


def can_transition(entity: str, current: str, target: str) -> bool:
    """Check whether ``entity`` may move from ``current`` to ``target``."""
    return target in _TABLES[entity].get(current, [])


def validate_transition(entity: str, current: str, target: str) -> None:
    """Raise StateTransitionError unless the transition is allowed."""
    if not can_transition(entity, current, target):
        raise StateTransitionError(entity, current, target, _TABLES[entity].get(current, []))


def challenge_status_after_guess(current: str, challenger_scored: bool, challenged_scored: bool) -> str:
    """Status a 1:1 challenge lands in once a side's score has been recorded.

    Both sides scored means completed; the challenged side alone means
    guessed; the challenger alone leaves the challenge where it was.
    """
    if challenger_scored and challenged_scored:
        target = "completed"
    elif challenged_scored:
        target = "guessed"
    else:
        return current
    if target != current:
        validate_transition("challenge", current, target)
    return target


def compute_group_status(
    image_ready: bool,
    expired: bool,
    participant_statuses: Iterable[str],
) -> str:
    """Reduce a group challenge's participant sub-states to its top-level status.

    Returns one of ``pending``, ``active``, ``completed`` or ``expired``.
    ``scoring`` is never produced: nothing closes a group after the last
    participant acts, so it would be indistinguishable from ``completed``.
    """
    if expired:
        return "expired"
    if not image_ready:
        return "pending"
    statuses = list(participant_statuses)
    if statuses and all(s in PARTICIPANT_TERMINAL for s in statuses):
        return "completed"
    return "active"
