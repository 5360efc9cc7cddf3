# SPDX-License-Identifier: MIT
# Copyright (c) 2026 EcoPulse Contributors

"""Observation intake: single submissions, offline sync and expert CSV import.

Pipeline stages, in order:
    1. Temporal validation: reject future timestamps, require a justification
       for retrospective ones, apply or decline timezone corrections
    2. Location privacy: blur core-zone coordinates, hold buffer-zone ones
       until the contributor acknowledges
    3. Conflict detection: flag nearby same-day records of the same contributor

Usage::
    result = ingest.validate_and_ingest(payload, actor)
    # result.to_dict() = {"accepted": True, "observation_id": ..., "warnings": [...]}

Offline sync runs the same pipeline per item and reports
``accepted | conflict | rejected`` for each one; a failing item never
aborts the batch. A resubmitted idempotency key returns the stored record.
"""

from __future__ import annotations

import hashlib
import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from enum import Enum
from typing import TYPE_CHECKING, Any

from .config import CoreSettings, get_config
from .conflicts import ConflictReport, detect_conflicts, utc_day
from .exceptions import EcoPulseException, NotEligible, NotFoundError, NotOwner, ValidationException
from .location import apply_decision, confirm_buffer_disclosure, decide_disclosure
from .logging import event_extra
from .models import (
    Actor,
    Coordinate,
    ExpertiseLevel,
    Observation,
    ZoneStatus,
    new_id,
    parse_datetime,
    utcnow,
)
from .store import retry_on_conflict
from .temporal import (
    TemporalResult,
    TimezoneChoice,
    resolve_timestamp,
    resolve_timezone,
    validate_timestamp,
)

if TYPE_CHECKING:
    from .store import ObservationStore

logger = logging.getLogger(__name__)

MAX_MEDIA_REFS = 20
MAX_NOTES_LENGTH = 2000

# Fallback formats accepted from CSV files, normalized to ISO-8601
CSV_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M",
    "%d/%m/%Y %H:%M",
    "%Y-%m-%d",
)

CSV_REQUIRED_FIELDS = ("species", "observation_timestamp", "latitude", "longitude")


# ============================================================================
# Submission payload
# ============================================================================


def _optional_str(data: dict[str, Any], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationException(f"{key} must be a string", key, value)
    return value.strip() or None


@dataclass
class ObservationDraft:
    """A parsed, not yet validated submission."""

    species_id: str
    coordinate: Coordinate
    observed_at: datetime
    contributor_tz: tzinfo = timezone.utc
    justification: str | None = None
    timezone_choice: TimezoneChoice | None = None
    is_private: bool = False
    media_refs: list[str] = field(default_factory=list)
    notes: str = ""
    count: int = 1
    idempotency_key: str | None = None
    confirm_disclosure: bool = False
    precision_m: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ObservationDraft:
        """Parse a submission payload, raising a field-attributed error on the first problem."""
        if not isinstance(data, dict):
            raise ValidationException("Submission must be a JSON object", "body")

        species = data.get("species_id") or data.get("species")
        if not isinstance(species, str) or not species.strip():
            raise ValidationException("species_id is required", "species_id")

        coordinate = Coordinate.from_dict(data)

        if data.get("observed_at") is None:
            raise ValidationException("observed_at is required", "observed_at")
        observed_at = parse_datetime(data["observed_at"], "observed_at")

        choice = data.get("timezone_choice")
        try:
            timezone_choice = TimezoneChoice(choice) if choice else None
        except ValueError:
            raise ValidationException("timezone_choice must be 'accept' or 'override'", "timezone_choice", choice)

        media = data.get("media_refs") or []
        if not isinstance(media, list) or not all(isinstance(m, str) for m in media):
            raise ValidationException("media_refs must be a list of strings", "media_refs")
        if len(media) > MAX_MEDIA_REFS:
            raise ValidationException(f"At most {MAX_MEDIA_REFS} media references are allowed", "media_refs")

        notes = _optional_str(data, "notes") or ""
        if len(notes) > MAX_NOTES_LENGTH:
            raise ValidationException(f"notes must be at most {MAX_NOTES_LENGTH} characters", "notes")

        count = data.get("count", 1)
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise ValidationException("count must be a positive integer", "count", count)

        precision = data.get("precision_m")
        if precision is not None and (isinstance(precision, bool) or not isinstance(precision, (int, float))):
            raise ValidationException("precision_m must be a number", "precision_m", precision)

        return cls(
            species_id=species.strip(),
            coordinate=coordinate,
            observed_at=observed_at,
            contributor_tz=resolve_timezone(data.get("timezone")),
            justification=_optional_str(data, "justification"),
            timezone_choice=timezone_choice,
            is_private=bool(data.get("is_private", False)),
            media_refs=list(media),
            notes=notes,
            count=count,
            idempotency_key=_optional_str(data, "idempotency_key"),
            confirm_disclosure=bool(data.get("confirm_disclosure", False)),
            precision_m=float(precision) if precision is not None else None,
        )


# ============================================================================
# Results
# ============================================================================


class IngestStatus(str, Enum):
    ACCEPTED = "accepted"
    CONFLICT = "conflict"
    REJECTED = "rejected"


@dataclass
class IngestResult:
    """Outcome of one submission."""

    status: IngestStatus
    observation_id: str | None = None
    warnings: list[str] = field(default_factory=list)
    conflict: ConflictReport | None = None
    requires_disclosure_confirmation: bool = False
    replayed: bool = False
    error: dict[str, Any] | None = None
    index: int | None = None

    @property
    def accepted(self) -> bool:
        return self.status != IngestStatus.REJECTED

    @classmethod
    def rejected(cls, error: EcoPulseException, index: int | None = None) -> IngestResult:
        return cls(status=IngestStatus.REJECTED, error=error.to_dict(), index=index)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "accepted": self.accepted,
            "status": self.status.value,
            "observation_id": self.observation_id,
            "warnings": list(self.warnings),
            "requires_disclosure_confirmation": self.requires_disclosure_confirmation,
            "replayed": self.replayed,
        }
        if self.conflict is not None:
            result["conflict"] = self.conflict.to_dict()
        if self.error is not None:
            result["error"] = self.error
        if self.index is not None:
            result["index"] = self.index
        return result


@dataclass
class ValidationIssue:
    """A problem found in one CSV row."""

    row_index: int
    field: str
    message: str
    severity: str  # "error" | "warning"
    suggested_correction: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_index": self.row_index,
            "field": self.field,
            "message": self.message,
            "severity": self.severity,
            "suggested_correction": self.suggested_correction,
        }


@dataclass
class BatchValidationResult:
    """Row-level validation of an expert CSV upload. Row indices are 0-based."""

    valid_rows: list[dict[str, Any]] = field(default_factory=list)
    validation_errors: list[ValidationIssue] = field(default_factory=list)
    duplicate_observations: list[dict[str, int]] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(i.severity == "error" for i in self.validation_errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid_rows": [r["row_index"] for r in self.valid_rows],
            "validation_errors": [i.to_dict() for i in self.validation_errors],
            "duplicate_observations": list(self.duplicate_observations),
        }


@dataclass
class BatchImportResult:
    validation: BatchValidationResult
    results: list[IngestResult]

    def to_dict(self) -> dict[str, Any]:
        return {
            "validation": self.validation.to_dict(),
            "results": [r.to_dict() for r in self.results],
            "imported": sum(1 for r in self.results if r.accepted),
        }


# ============================================================================
# Service
# ============================================================================


class IngestService:
    """Runs submissions through temporal, privacy and conflict checks."""

    def __init__(
        self,
        store: ObservationStore,
        config: CoreSettings | None = None,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.config = config or get_config()
        self.clock = clock
        self.rng = rng or random.SystemRandom()

    def check_timestamp(self, data: dict[str, Any]) -> TemporalResult:
        """Dry-run the temporal checks for a client form. Writes nothing."""
        if data.get("observed_at") is None:
            raise ValidationException("observed_at is required", "observed_at")
        asserted = parse_datetime(data["observed_at"], "observed_at")
        return validate_timestamp(
            asserted, resolve_timezone(data.get("timezone")), self.clock(), self.config.retention_days
        )

    def validate_and_ingest(self, data: dict[str, Any], actor: Actor) -> IngestResult:
        """Validate a submission and store it as a pending observation.

        Raises:
            ValidationException: malformed payload, future timestamp, missing or
                overlong justification, bad buffer precision
        """
        draft = ObservationDraft.from_dict(data)
        now = self.clock()

        with self.store.transaction():
            if draft.idempotency_key:
                existing = self.store.find_by_idempotency_key(actor.user_id, draft.idempotency_key)
                if existing is not None:
                    logger.info(
                        f"Idempotent replay of {draft.idempotency_key} -> {existing.id}",
                        extra=event_extra("ingest_replayed", observation_id=existing.id),
                    )
                    return self._replay(existing)

            temporal = validate_timestamp(
                draft.observed_at, draft.contributor_tz, now, self.config.retention_days
            )
            resolved = resolve_timestamp(
                temporal,
                now,
                self.config.retention_days,
                justification=draft.justification,
                timezone_choice=draft.timezone_choice,
                max_justification_length=self.config.max_justification_length,
            )

            decision = decide_disclosure(draft.coordinate, self.store.list_zones(), self.rng, self.config)
            if decision.zone_status == ZoneStatus.BUFFER and draft.confirm_disclosure:
                decision = confirm_buffer_disclosure(
                    draft.coordinate, draft.precision_m, self.rng, self.config, zone_id=decision.zone_id
                )

            observation = Observation(
                id=new_id(),
                owner_id=actor.user_id,
                species_id=draft.species_id,
                raw_coordinate=draft.coordinate,
                observed_at=resolved.observed_at,
                submitted_at=now,
                is_private=draft.is_private,
                is_retrospective=resolved.is_retrospective,
                justification=resolved.justification,
                media_refs=draft.media_refs,
                notes=draft.notes,
                count=draft.count,
                idempotency_key=draft.idempotency_key,
            )
            apply_decision(observation, decision)

            start, end = utc_day(observation.observed_at)
            report = detect_conflicts(
                observation,
                self.store.observations_between(actor.user_id, start, end),
                self.config.conflict_distance_m,
            )
            if report.conflict_detected:
                observation.conflict_detected = True
                observation.conflicting_ids = list(report.conflicting_ids)

            self.store.add_observation(observation)

        warnings = list(resolved.warnings)
        if observation.zone_status == ZoneStatus.CORE:
            warnings.append("Location is inside a protected area; published coordinates are blurred")
        if observation.requires_disclosure_confirmation:
            warnings.append("Location is near a protected area; confirm a disclosure precision to publish it")
        if report.conflict_detected:
            warnings.append(f"Possible {report.kind.value} of {len(report.conflicting_ids)} earlier observation(s)")

        status = IngestStatus.CONFLICT if report.conflict_detected else IngestStatus.ACCEPTED
        logger.info(
            f"Observation {observation.id} ingested ({status.value}, zone {observation.zone_status.value})",
            extra=event_extra(
                "observation_ingested",
                observation_id=observation.id,
                owner_id=actor.user_id,
                status=status.value,
                zone_status=observation.zone_status.value,
                retrospective=observation.is_retrospective,
            ),
        )
        return IngestResult(
            status=status,
            observation_id=observation.id,
            warnings=warnings,
            conflict=report if report.conflict_detected else None,
            requires_disclosure_confirmation=observation.requires_disclosure_confirmation,
        )

    def _replay(self, existing: Observation) -> IngestResult:
        report = None
        if existing.conflict_detected:
            report = ConflictReport(
                conflict_detected=True,
                conflicting_ids=list(existing.conflicting_ids),
                options=["keep_existing", "keep_new", "merge"],
            )
        return IngestResult(
            status=IngestStatus.CONFLICT if report else IngestStatus.ACCEPTED,
            observation_id=existing.id,
            warnings=["Already received; returning the stored observation"],
            conflict=report,
            requires_disclosure_confirmation=existing.requires_disclosure_confirmation,
            replayed=True,
        )

    def sync_batch(self, items: list[dict[str, Any]], actor: Actor) -> list[IngestResult]:
        """Replay an offline queue. Each item succeeds or fails on its own."""
        results = []
        for index, item in enumerate(items):
            try:
                result = retry_on_conflict(
                    lambda item=item: self.validate_and_ingest(item, actor),
                    self.config.max_transition_retries,
                )
                result.index = index
            except EcoPulseException as e:
                logger.warning(
                    f"Sync item {index} from {actor.user_id} rejected: {e.message}",
                    extra=event_extra("sync_item_rejected", index=index, error=e.__class__.__name__),
                )
                result = IngestResult.rejected(e, index)
            results.append(result)

        logger.info(
            f"Synced {len(items)} item(s) for {actor.user_id}",
            extra=event_extra(
                "sync_completed",
                user_id=actor.user_id,
                accepted=sum(1 for r in results if r.status == IngestStatus.ACCEPTED),
                conflicts=sum(1 for r in results if r.status == IngestStatus.CONFLICT),
                rejected=sum(1 for r in results if r.status == IngestStatus.REJECTED),
            ),
        )
        return results

    def confirm_disclosure(self, observation_id: str, actor_id: str, precision_m: float | None) -> Observation:
        """Publish a buffer-zone observation at the owner's chosen precision.

        Raises:
            NotOwner: ``actor_id`` does not own the observation
            ValidationException: nothing awaits confirmation, or precision out of range
        """
        with self.store.transaction():
            observation = self.store.get_observation_for_update(observation_id)
            if observation is None:
                raise NotFoundError("Observation", observation_id)
            if observation.owner_id != actor_id:
                raise NotOwner(observation_id, actor_id)
            if not observation.requires_disclosure_confirmation:
                raise ValidationException("Observation does not await disclosure confirmation", "observation_id")
            decision = confirm_buffer_disclosure(
                observation.raw_coordinate, precision_m, self.rng, self.config, zone_id=observation.zone_id
            )
            expected = observation.version
            apply_decision(observation, decision)
            self.store.update_observation(observation, expected)

        logger.info(
            f"Disclosure of {observation_id} confirmed at {decision.disclosure_precision_m:g} m",
            extra=event_extra("disclosure_confirmed", observation_id=observation_id),
        )
        return observation

    # ------------------------------------------------------------------
    # Expert CSV import
    # ------------------------------------------------------------------

    def _require_expert(self, actor: Actor) -> None:
        if actor.expertise_level != ExpertiseLevel.EXPERT:
            raise NotEligible("Batch import is available to expert contributors only", actor.user_id)

    def validate_rows(self, rows: list[dict[str, Any]], actor: Actor) -> BatchValidationResult:
        """Check mapped CSV rows without storing anything."""
        self._require_expert(actor)
        now = self.clock()
        result = BatchValidationResult()
        seen: dict[tuple, int] = {}

        for index, row in enumerate(rows):
            issues, normalized = self._check_row(index, row, now)
            result.validation_errors.extend(issues)
            if normalized is None:
                continue
            key = (
                normalized["species_id"].lower(),
                round(normalized["latitude"], 6),
                round(normalized["longitude"], 6),
                normalized["observed_at"],
            )
            if key in seen:
                result.duplicate_observations.append({"row_index": index, "duplicate_of": seen[key]})
                continue
            seen[key] = index
            result.valid_rows.append(normalized)
        return result

    def _check_row(self, index: int, row: dict[str, Any], now: datetime) -> tuple[list[ValidationIssue], dict | None]:
        issues: list[ValidationIssue] = []

        def error(field_name: str, message: str, suggestion: str | None = None) -> None:
            issues.append(ValidationIssue(index, field_name, message, "error", suggestion))

        def warning(field_name: str, message: str, suggestion: str | None = None) -> None:
            issues.append(ValidationIssue(index, field_name, message, "warning", suggestion))

        values = {k: (str(v).strip() if v is not None else "") for k, v in row.items()}
        for name in CSV_REQUIRED_FIELDS:
            if not values.get(name):
                error(name, f"{name} is required")
        if issues:
            return issues, None

        species = values["species"]
        if species != str(row["species"]):
            warning("species", "Species has surrounding whitespace", species)

        try:
            lat = float(values["latitude"])
            lng = float(values["longitude"])
        except ValueError:
            error("latitude", "Latitude and longitude must be numbers")
            return issues, None
        if abs(lat) > 90 or abs(lng) > 180:
            swap = f"{lng}, {lat}" if abs(lng) <= 90 and abs(lat) <= 180 else None
            error("latitude" if abs(lat) > 90 else "longitude", "Coordinate out of range", swap)
            return issues, None

        try:
            tz = resolve_timezone(values.get("timezone") or None)
        except ValidationException as e:
            error("timezone", e.message)
            return issues, None

        observed = self._parse_row_timestamp(values["observation_timestamp"])
        if observed is None:
            error("observation_timestamp", "Unrecognized timestamp; use ISO-8601")
            return issues, None
        parsed, was_iso = observed
        if not was_iso:
            warning("observation_timestamp", "Timestamp normalized to ISO-8601", parsed.isoformat())

        temporal = validate_timestamp(parsed, tz, now, self.config.retention_days)
        if not temporal.is_valid:
            error("observation_timestamp", temporal.message, now.astimezone(tz).replace(microsecond=0).isoformat())
            return issues, None
        if temporal.timezone_mismatch and temporal.corrected_timestamp is not None:
            warning("observation_timestamp", temporal.message, temporal.corrected_timestamp.isoformat())

        justification = values.get("justification") or None
        if temporal.requires_justification:
            if not justification:
                error(
                    "justification",
                    f"Observations older than {self.config.retention_days} days need a justification",
                )
                return issues, None
            if len(justification) > self.config.max_justification_length:
                limit = self.config.max_justification_length
                error("justification", f"Justification must be at most {limit} characters")
                return issues, None

        count = 1
        if values.get("count"):
            try:
                count = int(values["count"])
            except ValueError:
                count = 0
            if count < 1:
                error("count", "count must be a positive integer")
                return issues, None

        normalized = {
            "row_index": index,
            "species_id": species,
            "latitude": lat,
            "longitude": lng,
            "observed_at": parsed.isoformat(),
            "timezone": values.get("timezone") or None,
            "justification": justification,
            "count": count,
            "notes": values.get("notes") or "",
        }
        return issues, normalized

    @staticmethod
    def _parse_row_timestamp(text: str) -> tuple[datetime, bool] | None:
        try:
            return parse_datetime(text, "observation_timestamp"), True
        except ValidationException:
            pass
        for fmt in CSV_TIMESTAMP_FORMATS:
            try:
                return datetime.strptime(text, fmt), False
            except ValueError:
                continue
        return None

    def import_rows(self, rows: list[dict[str, Any]], actor: Actor) -> BatchImportResult:
        """Validate rows, then ingest the valid ones through the sync path.

        Each row gets an idempotency key derived from its content, so
        re-uploading the same file does not duplicate observations.
        """
        validation = self.validate_rows(rows, actor)
        items = []
        for row in validation.valid_rows:
            item = {k: v for k, v in row.items() if k != "row_index"}
            parts = (actor.user_id, item["species_id"], item["latitude"], item["longitude"], item["observed_at"])
            fingerprint = "|".join(str(p) for p in parts)
            digest = hashlib.sha256(fingerprint.encode()).hexdigest()[:32]
            item["idempotency_key"] = f"csv-{digest}"
            items.append(item)

        results = self.sync_batch(items, actor)
        for row, result in zip(validation.valid_rows, results):
            result.index = row["row_index"]
        return BatchImportResult(validation=validation, results=results)
