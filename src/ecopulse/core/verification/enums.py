# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Enums for verification, disputes and voting."""

from enum import Enum, IntEnum

from ..models import ObservationState


class VerificationTier(IntEnum):
    """Standing at which a verification is made."""
    PEER = 1      # Peer-level confirmation
    EXPERT = 2    # Expert / dispute-resolution level


class DisputeStatus(str, Enum):
    """Status of a dispute."""
    OPEN = "open"            # Raised, not yet handed to voting
    VOTING = "voting"        # Accepting votes
    RESOLVED = "resolved"    # Tallied; outcome recorded


class DisputeOutcome(str, Enum):
    """Outcome of a resolved dispute."""
    UPHELD = "upheld"          # Contested verification stands
    OVERTURNED = "overturned"  # Contested verification reversed

    @property
    def observation_state(self) -> ObservationState:
        if self is DisputeOutcome.OVERTURNED:
            return ObservationState.RESOLVED_OVERTURNED
        return ObservationState.RESOLVED_UPHELD


class VoteChoice(str, Enum):
    """A voter's position on a dispute."""
    UPHOLD = "uphold"
    OVERTURN = "overturn"
