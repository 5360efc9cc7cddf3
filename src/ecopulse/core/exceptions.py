# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Custom exception hierarchy for EcoPulse.

Every error the trust engine raises is recoverable by the caller and
carries enough detail to retry or pick a resolution. Infrastructure
failures (the persistent store being unavailable) are kept apart from
domain errors as ``DatabaseException``.
"""

from __future__ import annotations

from typing import Any


class EcoPulseException(Exception):  # noqa: N818
    """Base exception for all EcoPulse errors."""

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class DatabaseException(EcoPulseException):
    """Exception for persistent-store failures.

    Raised when:
    - Database connection fails
    - Query execution fails
    - Transaction errors occur
    """

    pass


class ValidationException(EcoPulseException):
    """Exception for malformed or out-of-range input.

    Raised when:
    - A timestamp lies in the future
    - A retrospective observation lacks a justification
    - A coordinate is out of range
    - Field values are missing or malformed
    """

    def __init__(self, message: str, field: str | None = None, value: Any = None):
        details = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        super().__init__(message, details)
        self.field = field
        self.value = value


class ConfigException(EcoPulseException):
    """Exception for configuration errors."""

    def __init__(self, message: str, missing_vars: list[str] | None = None):
        details = {}
        if missing_vars:
            details["missing_vars"] = missing_vars
        super().__init__(message, details)
        self.missing_vars = missing_vars or []


class NotFoundError(EcoPulseException):
    """Exception for unknown observations, disputes or users."""

    def __init__(self, resource_type: str, resource_id: str):
        message = f"{resource_type} not found: {resource_id}"
        details = {
            "resource_type": resource_type,
            "resource_id": resource_id,
        }
        super().__init__(message, details)
        self.resource_type = resource_type
        self.resource_id = resource_id


class InsufficientCredibility(EcoPulseException):
    """The actor's credibility score is below the threshold for the action."""

    def __init__(self, required: int, actual: int, tier: int | None = None):
        label = f"tier {tier} " if tier is not None else ""
        message = f"Credibility {actual} is below the {label}minimum of {required}"
        details: dict[str, Any] = {"required": required, "actual": actual}
        if tier is not None:
            details["tier"] = tier
        super().__init__(message, details)
        self.required = required
        self.actual = actual
        self.tier = tier


class NotEligible(EcoPulseException):
    """The actor is excluded from the action by role or relationship."""

    def __init__(self, reason: str, user_id: str | None = None):
        details = {"reason": reason}
        if user_id:
            details["user_id"] = user_id
        super().__init__(reason, details)
        self.reason = reason
        self.user_id = user_id


class AlreadyVoted(EcoPulseException):
    """The voter already cast a vote on this dispute."""

    def __init__(self, dispute_id: str, voter_id: str):
        super().__init__(
            f"User {voter_id} already voted on dispute {dispute_id}",
            {"dispute_id": dispute_id, "voter_id": voter_id},
        )
        self.dispute_id = dispute_id
        self.voter_id = voter_id


class NotOwner(EcoPulseException):
    """Only the owner of the resource may perform the action."""

    def __init__(self, resource_id: str, user_id: str):
        super().__init__(
            f"User {user_id} does not own {resource_id}",
            {"resource_id": resource_id, "user_id": user_id},
        )
        self.resource_id = resource_id
        self.user_id = user_id


class ConflictDetected(EcoPulseException):
    """A submission collides with existing records and needs a resolution choice.

    Not fatal: ingestion reports conflicts as data. This exception is used
    where a caller asks for an operation that cannot proceed until the
    conflict is resolved.
    """

    def __init__(self, observation_id: str, conflicting_ids: list[str], options: list[str]):
        super().__init__(
            f"Observation {observation_id} conflicts with {len(conflicting_ids)} existing record(s)",
            {
                "observation_id": observation_id,
                "conflicting_ids": conflicting_ids,
                "options": options,
            },
        )
        self.observation_id = observation_id
        self.conflicting_ids = conflicting_ids
        self.options = options


class ConcurrentModification(EcoPulseException):
    """Lost the serialization race on a versioned record. Safe to retry."""

    def __init__(self, resource: str, resource_id: str, expected_version: int | None = None):
        details: dict[str, Any] = {"resource": resource, "resource_id": resource_id}
        if expected_version is not None:
            details["expected_version"] = expected_version
        super().__init__(f"{resource} {resource_id} was modified concurrently", details)
        self.resource = resource
        self.resource_id = resource_id
        self.expected_version = expected_version


class InvalidTransition(EcoPulseException):
    """A state change outside the enumerated transition table."""

    def __init__(self, from_state: str, to_state: str, resource_id: str | None = None):
        details = {"from_state": from_state, "to_state": to_state}
        if resource_id:
            details["resource_id"] = resource_id
        super().__init__(f"Invalid transition {from_state} -> {to_state}", details)
        self.from_state = from_state
        self.to_state = to_state
        self.resource_id = resource_id
