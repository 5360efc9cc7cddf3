# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Pydantic request models for the EcoPulse REST API.

Observation submissions are parsed by ``ecopulse.core.ingest`` so the
offline sync path and the HTTP path share one parser; the models here
cover the remaining request bodies.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from ..core.verification import VoteChoice


class VerificationCreate(BaseModel):
    """Request model for submitting a verification."""

    tier: int = Field(..., description="Verification tier: 1 (peer) or 2 (expert)")
    confidence: float = Field(..., description="Verifier confidence in [0, 1]")
    notes: str = Field("", description="Free-text reasoning")


class DisputeCreate(BaseModel):
    """Request model for raising a dispute."""

    reason: str = Field(..., description="Why the verification is contested")
    evidence_ref: str | None = Field(None, description="Reference to supporting evidence")
    verification_id: str | None = Field(None, description="Contested record; defaults to the latest active one")


class VoteCreate(BaseModel):
    """Request model for casting a dispute vote."""

    choice: VoteChoice = Field(..., description="'uphold' or 'overturn'")


class ConflictChoice(BaseModel):
    """Request model for resolving a flagged conflict."""

    choice: str = Field(..., description="'keep_existing', 'keep_new' or 'merge'")


class DisclosureConfirm(BaseModel):
    """Request model for acknowledging a buffer-zone disclosure."""

    precision_m: float | None = Field(None, description="Chosen disclosure precision in metres")


class RefreshRequest(BaseModel):
    """Request model for refreshing an expired observation."""

    evidence_refs: list[str] = Field(..., min_length=1, description="New evidence references")


class BatchRequest(BaseModel):
    """Request model for offline sync and CSV-row import."""

    items: list[dict[str, Any]] = Field(..., description="Submissions or rows, in order")
    dry_run: bool = Field(False, description="Validate rows without ingesting (CSV import only)")
