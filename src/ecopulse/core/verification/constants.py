# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Transition tables for observations and disputes.

Every state change goes through one of these tables; anything not listed
is an ``InvalidTransition``. Resolved observation states have no exits.
"""

from __future__ import annotations

from ..models import ObservationState
from .enums import DisputeStatus

OBSERVATION_TRANSITIONS: dict[ObservationState, frozenset[ObservationState]] = {
    ObservationState.PENDING: frozenset({ObservationState.VERIFIED, ObservationState.DISPUTED}),
    ObservationState.VERIFIED: frozenset({ObservationState.DISPUTED}),
    ObservationState.DISPUTED: frozenset({ObservationState.UNDER_REVIEW}),
    ObservationState.UNDER_REVIEW: frozenset(
        {ObservationState.RESOLVED_UPHELD, ObservationState.RESOLVED_OVERTURNED}
    ),
    ObservationState.RESOLVED_UPHELD: frozenset(),
    ObservationState.RESOLVED_OVERTURNED: frozenset(),
}

DISPUTE_TRANSITIONS: dict[DisputeStatus, frozenset[DisputeStatus]] = {
    DisputeStatus.OPEN: frozenset({DisputeStatus.VOTING}),
    DisputeStatus.VOTING: frozenset({DisputeStatus.RESOLVED}),
    DisputeStatus.RESOLVED: frozenset(),
}

# States in which a new verification record may be filed
VERIFIABLE_STATES = frozenset({ObservationState.PENDING, ObservationState.VERIFIED})

# States in which a dispute may be raised
DISPUTABLE_STATES = frozenset({ObservationState.PENDING, ObservationState.VERIFIED})

MAX_NOTES_LENGTH = 2000
MAX_REASON_LENGTH = 2000
