# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Verification state machine for EcoPulse observations.

This package implements expert verification of observations:
- Verifiers need credibility at or above their tier's threshold
- The first verification of a pending observation marks it verified
- Tier-2 verifiers may dispute a verification, handing it to community voting
- Every state change follows an explicit transition table

Submodules:
- enums: Tiers, dispute statuses, outcomes and vote choices
- constants: Observation and dispute transition tables
- models: Verification records, disputes, votes and tallies
- validators: Input, standing and transition checks
- service: VerificationService, the state machine itself
"""

from .constants import (
    DISPUTABLE_STATES,
    DISPUTE_TRANSITIONS,
    OBSERVATION_TRANSITIONS,
    VERIFIABLE_STATES,
)
from .enums import (
    DisputeOutcome,
    DisputeStatus,
    VerificationTier,
    VoteChoice,
)
from .models import (
    Dispute,
    DisputeTally,
    VerificationRecord,
    Vote,
    active_records,
)
from .service import VerificationService
from .validators import (
    check_credibility,
    check_dispute_transition,
    check_disputer_eligibility,
    check_transition,
    check_verifier_eligibility,
    check_voter_eligibility,
    standing_tier,
    validate_dispute_input,
    validate_verification_input,
)

__all__ = [
    # Constants
    "OBSERVATION_TRANSITIONS",
    "DISPUTE_TRANSITIONS",
    "VERIFIABLE_STATES",
    "DISPUTABLE_STATES",
    # Enums
    "VerificationTier",
    "DisputeStatus",
    "DisputeOutcome",
    "VoteChoice",
    # Models
    "VerificationRecord",
    "Dispute",
    "Vote",
    "DisputeTally",
    "active_records",
    # Validators
    "validate_verification_input",
    "validate_dispute_input",
    "check_transition",
    "check_dispute_transition",
    "check_credibility",
    "check_verifier_eligibility",
    "check_disputer_eligibility",
    "check_voter_eligibility",
    "standing_tier",
    # Service
    "VerificationService",
]
