"""
Risk scoring and feed normalization for near-Earth objects.
Raw NeoWs telemetry in, flat scored summaries out.
"""

import logging
import math
from datetime import date
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger("orbitwatch.core")

# === RISK MODEL CONSTANTS ===
# Each observable saturates at its own reference value.

EARTH = "Earth"

REFERENCE_DIAMETER_M = 300.0
REFERENCE_MISS_DISTANCE_KM = 50_000_000.0
REFERENCE_VELOCITY_KMS = 25.0

DIAMETER_WEIGHT = 30.0
DISTANCE_WEIGHT = 40.0
VELOCITY_WEIGHT = 20.0
HAZARD_BONUS = 10.0

MAX_RISK_SCORE = 100

RECENT_APPROACH_LIMIT = 6


class InvalidRecordError(ValueError):
    """Raw record does not satisfy the ingestion contract."""


# === INGESTION CONTRACTS ===
# The feed is untrusted. Required fields fail fast, one record at a time.

class DiameterRange(BaseModel):
    estimated_diameter_min: Optional[float] = None
    estimated_diameter_max: float = Field(..., allow_inf_nan=False)


class EstimatedDiameter(BaseModel):
    meters: DiameterRange
    # display-only units, passed through as sent
    kilometers: Optional[Dict[str, Any]] = None
    miles: Optional[Dict[str, Any]] = None
    feet: Optional[Dict[str, Any]] = None


class RelativeVelocity(BaseModel):
    # NeoWs sends these as strings; parsed here, other units ignored
    kilometers_per_second: float = Field(..., allow_inf_nan=False)


class MissDistance(BaseModel):
    kilometers: float = Field(..., allow_inf_nan=False)


class CloseApproachEvent(BaseModel):
    close_approach_date: date
    close_approach_date_full: Optional[str] = None
    epoch_date_close_approach: Optional[int] = None
    relative_velocity: RelativeVelocity
    miss_distance: MissDistance
    orbiting_body: str


class RawNeoRecord(BaseModel):
    """Header of one feed entry.

    Approach events stay loosely typed here; only the selected Earth
    approach is validated, so a garbled approach to another body does not
    cost us the record.
    """

    id: str
    name: str
    absolute_magnitude_h: Optional[float] = None
    estimated_diameter: EstimatedDiameter
    is_potentially_hazardous_asteroid: bool
    is_sentry_object: bool = False
    orbital_data: Optional[Dict[str, Any]] = None
    close_approach_data: List[Dict[str, Any]] = Field(default_factory=list)


# === DERIVED MODEL ===

class RiskLevel(str, Enum):
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RiskAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    risk_score: int = Field(..., ge=0, le=MAX_RISK_SCORE)
    risk_level: RiskLevel


class NormalizedAsteroid(BaseModel):
    """One scored object, as served to the UI and stored in bookmarks."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    name: str
    close_approach_date: date
    diameter_m: float
    velocity_km_s: float
    miss_distance_km: int
    hazardous: bool
    risk_score: int = Field(..., ge=0, le=MAX_RISK_SCORE, alias="riskScore")
    risk_level: RiskLevel = Field(..., alias="riskLevel")


# === RISK SCORER ===

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _round_cents_half_up(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100


def diameter_term(diameter_m: float) -> float:
    return min(diameter_m / REFERENCE_DIAMETER_M, 1.0) * DIAMETER_WEIGHT


def distance_term(miss_distance_km: float) -> float:
    return (1.0 - min(miss_distance_km / REFERENCE_MISS_DISTANCE_KM, 1.0)) * DISTANCE_WEIGHT


def velocity_term(velocity_km_s: float) -> float:
    return min(velocity_km_s / REFERENCE_VELOCITY_KMS, 1.0) * VELOCITY_WEIGHT


def hazard_term(hazardous: bool) -> float:
    return HAZARD_BONUS if hazardous else 0.0


def classify_risk(risk_score: int) -> RiskLevel:
    """Map a rounded score to its tier. Thresholds are strict: 75 is HIGH."""
    if risk_score > 75:
        return RiskLevel.CRITICAL
    if risk_score > 50:
        return RiskLevel.HIGH
    if risk_score > 25:
        return RiskLevel.MODERATE
    return RiskLevel.LOW


def assess_risk(
    diameter_m: float,
    miss_distance_km: float,
    velocity_km_s: float,
    hazardous: bool,
) -> RiskAssessment:
    """Score an approach from 0 (negligible) to 100 (severe).

    Weighted composite of diameter (30), proximity (40) and velocity (20),
    each capped at its reference value, plus a flat 10 for objects the
    feed flags as potentially hazardous. Inputs are trusted to be
    non-negative finite quantities.
    """
    composite = (
        diameter_term(diameter_m)
        + distance_term(miss_distance_km)
        + velocity_term(velocity_km_s)
        + hazard_term(hazardous)
    )
    risk_score = _round_half_up(min(composite, MAX_RISK_SCORE))
    return RiskAssessment(risk_score=risk_score, risk_level=classify_risk(risk_score))


# === FEED NORMALIZER ===

def select_earth_approach(events: Sequence[Any]) -> Optional[Mapping[str, Any]]:
    """First approach event whose body is exactly "Earth", in feed order."""
    for event in events:
        if isinstance(event, Mapping) and event.get("orbiting_body") == EARTH:
            return event
    return None


def normalize_record(raw: Mapping[str, Any]) -> Optional[NormalizedAsteroid]:
    """Normalize one raw feed entry.

    Returns None when the object has no Earth approach. Raises
    InvalidRecordError when the record or its Earth approach is malformed.
    """
    try:
        record = RawNeoRecord.model_validate(raw)
    except ValidationError as e:
        raise InvalidRecordError(f"record {_record_label(raw)}: {_first_error(e)}") from e

    approach_data = select_earth_approach(record.close_approach_data)
    if approach_data is None:
        return None

    try:
        approach = CloseApproachEvent.model_validate(approach_data)
    except ValidationError as e:
        raise InvalidRecordError(
            f"record {record.id}: Earth approach {_first_error(e)}"
        ) from e

    diameter_m = record.estimated_diameter.meters.estimated_diameter_max
    velocity_km_s = approach.relative_velocity.kilometers_per_second
    miss_distance_km = approach.miss_distance.kilometers
    hazardous = record.is_potentially_hazardous_asteroid

    risk = assess_risk(diameter_m, miss_distance_km, velocity_km_s, hazardous)

    return NormalizedAsteroid(
        id=record.id,
        name=record.name,
        close_approach_date=approach.close_approach_date,
        diameter_m=_round_cents_half_up(diameter_m),
        velocity_km_s=_round_cents_half_up(velocity_km_s),
        miss_distance_km=_round_half_up(miss_distance_km),
        hazardous=hazardous,
        risk_score=risk.risk_score,
        risk_level=risk.risk_level,
    )


def iter_feed_records(near_earth_objects: Mapping[str, Sequence[Any]]) -> Iterator[Any]:
    """Flatten the per-date grouping. Dates are discarded."""
    for records in near_earth_objects.values():
        yield from records


def normalize_feed(near_earth_objects: Mapping[str, Sequence[Any]]) -> List[NormalizedAsteroid]:
    """Normalize a date-grouped feed into a flat list of scored asteroids.

    Order follows the grouping, then each date's sequence. Objects without
    an Earth approach are filtered out; malformed records are logged and
    skipped without failing the batch.
    """
    asteroids: List[NormalizedAsteroid] = []
    skipped = 0

    for raw in iter_feed_records(near_earth_objects):
        if not isinstance(raw, Mapping):
            logger.warning(f"Skipping non-object feed entry: {type(raw).__name__}")
            skipped += 1
            continue
        try:
            asteroid = normalize_record(raw)
        except InvalidRecordError as e:
            logger.warning(f"Skipping malformed record: {e}")
            skipped += 1
            continue

        if asteroid is None:
            logger.debug(f"No Earth approach for {_record_label(raw)}, filtered")
            continue
        asteroids.append(asteroid)

    if skipped:
        logger.info(f"Normalized {len(asteroids)} objects, {skipped} malformed skipped")
    return asteroids


# === DETAIL VIEW ===

def cap_recent_approaches(raw: Mapping[str, Any], limit: int = RECENT_APPROACH_LIMIT) -> Dict[str, Any]:
    """Copy of a lookup payload keeping only the last `limit` approaches.

    Approaches to every body are kept. Everything else passes through
    untouched.
    """
    detail = dict(raw)
    approaches = list(raw.get("close_approach_data") or [])
    detail["close_approach_data"] = approaches[-limit:] if limit > 0 else []
    return detail


def _record_label(raw: Any) -> str:
    if isinstance(raw, Mapping):
        return str(raw.get("id") or raw.get("name") or "<unidentified>")
    return "<unidentified>"


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ())) or "<root>"
    return f"{location}: {first.get('msg')}"
