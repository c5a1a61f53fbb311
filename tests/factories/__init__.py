"""Test data factories and collaborator doubles."""

from tests.factories.game_factory import (
    ADMIN_HEADERS,
    FakeClock,
    StubScorer,
    auth_headers,
    create_active_challenge,
    create_active_group,
    create_active_round,
)

__all__ = [
    "ADMIN_HEADERS",
    "FakeClock",
    "StubScorer",
    "auth_headers",
    "create_active_challenge",
    "create_active_group",
    "create_active_round",
]
