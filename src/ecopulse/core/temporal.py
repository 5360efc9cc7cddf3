# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Temporal validation for contributor-asserted observation timestamps.

Rules, applied in order:
1. A timestamp after the server clock is rejected. There is no tolerance.
2. A timestamp more than ``retention_days`` in the past needs a justification.
3. If the asserted wall-clock date differs from the date of the same instant
   in the contributor's timezone, a corrected timestamp is proposed.
4. Otherwise the timestamp is accepted as is.

``validate_timestamp`` only classifies; ``resolve_timestamp`` applies the
contributor's choices and raises ``ValidationException`` on failure.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .exceptions import ValidationException

logger = logging.getLogger(__name__)

_OFFSET_RE = re.compile(r"^([+-])(\d{2}):?(\d{2})$")


class TimestampStatus(str, Enum):
    OK = "ok"
    CORRECTED = "corrected"
    REJECTED = "rejected"


class TimezoneChoice(str, Enum):
    """What the contributor decided about a proposed timezone correction."""

    ACCEPT = "accept"
    OVERRIDE = "override"


@dataclass
class TemporalResult:
    """Classification of one asserted timestamp."""

    status: TimestampStatus
    timestamp: datetime  # asserted instant, UTC
    message: str
    requires_justification: bool = False
    timezone_mismatch: bool = False
    corrected_timestamp: datetime | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.status != TimestampStatus.REJECTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "is_valid": self.is_valid,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "requires_justification": self.requires_justification,
            "timezone_mismatch": self.timezone_mismatch,
            "corrected_timestamp": self.corrected_timestamp.isoformat() if self.corrected_timestamp else None,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class ResolvedTimestamp:
    """The accepted timestamp after the contributor's choices are applied."""

    observed_at: datetime  # UTC
    is_retrospective: bool
    justification: str | None
    warnings: tuple[str, ...] = ()


def resolve_timezone(value: Any) -> tzinfo:
    """Turn a contributor timezone into a tzinfo.

    Accepts minutes east of UTC (``330``), an offset string (``"+05:30"``),
    an IANA name (``"Europe/Oslo"``) or None for UTC.
    """
    if value is None or value == "":
        return timezone.utc
    if isinstance(value, bool):
        raise ValidationException("timezone must be an offset or zone name", "timezone", value)
    if isinstance(value, int):
        if abs(value) >= 24 * 60:
            raise ValidationException("timezone offset out of range", "timezone", value)
        return timezone(timedelta(minutes=value))
    if isinstance(value, str):
        match = _OFFSET_RE.match(value.strip())
        if match:
            sign = -1 if match.group(1) == "-" else 1
            minutes = int(match.group(2)) * 60 + int(match.group(3))
            if minutes >= 24 * 60:
                raise ValidationException("timezone offset out of range", "timezone", value)
            return timezone(sign * timedelta(minutes=minutes))
        try:
            return ZoneInfo(value.strip())
        except (ZoneInfoNotFoundError, ValueError):
            pass
    raise ValidationException(f"Unknown timezone: {value}", "timezone", value)


def validate_timestamp(
    asserted: datetime,
    contributor_tz: tzinfo,
    now: datetime,
    retention_days: int,
) -> TemporalResult:
    """Classify an asserted timestamp against the server clock.

    A naive ``asserted`` is read as wall-clock time in the contributor's
    timezone and can never mismatch it.
    """
    if asserted.tzinfo is None:
        local = asserted.replace(tzinfo=contributor_tz)
        proposed = None
    else:
        local = asserted
        wall_date = asserted.date()
        contributor_date = asserted.astimezone(contributor_tz).date()
        proposed = asserted.replace(tzinfo=contributor_tz) if wall_date != contributor_date else None

    instant = local.astimezone(timezone.utc)

    if instant > now:
        return TemporalResult(
            status=TimestampStatus.REJECTED,
            timestamp=instant,
            message="Observation timestamp is in the future",
        )

    age = now - instant
    requires_justification = age > timedelta(days=retention_days)

    if proposed is not None:
        corrected = proposed.astimezone(timezone.utc)
        return TemporalResult(
            status=TimestampStatus.CORRECTED,
            timestamp=instant,
            message=(
                f"Date {asserted.date().isoformat()} does not match your timezone; "
                f"suggested {corrected.isoformat()}"
            ),
            requires_justification=requires_justification,
            timezone_mismatch=True,
            corrected_timestamp=corrected,
        )

    message = "Timestamp accepted"
    if requires_justification:
        message = f"Observation is older than {retention_days} days; a justification is required"
    return TemporalResult(
        status=TimestampStatus.OK,
        timestamp=instant,
        message=message,
        requires_justification=requires_justification,
    )


def check_justification(justification: str | None, max_length: int) -> str:
    """Validate retrospective justification text, returning it stripped."""
    text = (justification or "").strip()
    if not text:
        raise ValidationException(
            "A justification is required for retrospective observations", "justification"
        )
    if len(text) > max_length:
        raise ValidationException(
            f"Justification must be at most {max_length} characters", "justification", len(text)
        )
    return text


def resolve_timestamp(
    result: TemporalResult,
    now: datetime,
    retention_days: int,
    justification: str | None = None,
    timezone_choice: TimezoneChoice | None = None,
    max_justification_length: int = 500,
) -> ResolvedTimestamp:
    """Apply the contributor's choices to a classified timestamp.

    Without an explicit choice a proposed timezone correction is applied and
    reported as a warning. ``TimezoneChoice.OVERRIDE`` keeps the asserted
    instant.

    Raises:
        ValidationException: future timestamp, or a retrospective timestamp
            without a valid justification
    """
    if result.status == TimestampStatus.REJECTED:
        raise ValidationException(result.message, "observed_at", result.timestamp.isoformat())

    chosen = result.timestamp
    warnings: list[str] = list(result.warnings)
    if result.timezone_mismatch and result.corrected_timestamp is not None:
        if timezone_choice == TimezoneChoice.OVERRIDE:
            warnings.append("Timezone correction declined; asserted timestamp kept")
        else:
            chosen = result.corrected_timestamp
            warnings.append(f"Timestamp corrected to {chosen.isoformat()} for your timezone")

    if chosen > now:
        raise ValidationException("Observation timestamp is in the future", "observed_at", chosen.isoformat())

    is_retrospective = now - chosen > timedelta(days=retention_days)
    text = None
    if is_retrospective:
        text = check_justification(justification, max_justification_length)
    elif justification and justification.strip():
        # Optional justification on a recent observation
        text = check_justification(justification, max_justification_length)

    return ResolvedTimestamp(
        observed_at=chosen,
        is_retrospective=is_retrospective,
        justification=text,
        warnings=tuple(warnings),
    )


def validation_window(now: datetime, retention_days: int, contributor_tz: tzinfo | None = None) -> tuple[date, date]:
    """Inclusive (earliest, latest) dates a date picker should offer without a justification."""
    today = now.astimezone(contributor_tz or timezone.utc).date()
    return today - timedelta(days=retention_days), today


def is_expired(anchor: datetime, now: datetime, retention_days: int) -> bool:
    """True when ``anchor`` is older than the retention window."""
    return now - anchor > timedelta(days=retention_days)
