"""
Evidence Validator — scores seller-uploaded proof for a weight dispute.

Marker detection (scale, ruler, AWB) is done upstream by the upload client
or an image service; this module turns those signals plus capture metadata
into a quality score and remediation hints. Validation never blocks a
submission, it only informs routing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from core.config import get_settings

# Quality points (sum to 100)
RESOLUTION_POINTS = (
    (1920 * 1080, 40),
    (1280 * 720, 30),
    (640 * 480, 15),
)
MIN_RESOLUTION_POINTS = 5
SIZE_POINTS = (
    (500_000, 20),
    (100_000, 10),
)
MARKER_POINTS = {"scale": 15, "ruler": 10, "awb": 10, "fresh": 5}


@dataclass
class EvidenceArtifact:
    url: str
    kind: str = "photo"
    captured_at: datetime | None = None
    has_scale: bool = False
    has_ruler: bool = False
    has_awb: bool = False
    width_px: int | None = None
    height_px: int | None = None
    size_bytes: int | None = None


@dataclass
class EvidenceValidation:
    has_scale: bool
    has_ruler: bool
    has_awb: bool
    timestamp_fresh: bool
    quality_score: float
    is_valid: bool
    suggestions: list[str] = field(default_factory=list)


def _resolution_points(artifact: EvidenceArtifact) -> int:
    if artifact.kind == "document":
        # Scans and PDFs are judged on markers, not pixels
        return RESOLUTION_POINTS[1][1]
    if not artifact.width_px or not artifact.height_px:
        return MIN_RESOLUTION_POINTS
    pixels = artifact.width_px * artifact.height_px
    for floor, points in RESOLUTION_POINTS:
        if pixels >= floor:
            return points
    return MIN_RESOLUTION_POINTS


def _size_points(artifact: EvidenceArtifact) -> int:
    if not artifact.size_bytes:
        return 0
    for floor, points in SIZE_POINTS:
        if artifact.size_bytes >= floor:
            return points
    return 0


def is_timestamp_fresh(captured_at: datetime | None, packed_at: datetime, window_days: int) -> bool:
    if captured_at is None:
        return False
    if captured_at.tzinfo is not None:
        captured_at = captured_at.replace(tzinfo=None)
    return abs(captured_at - packed_at) <= timedelta(days=window_days)


def validate_evidence(artifact: EvidenceArtifact, packed_at: datetime) -> EvidenceValidation:
    settings = get_settings()
    fresh = is_timestamp_fresh(artifact.captured_at, packed_at, settings.evidence_freshness_days)

    score = _resolution_points(artifact) + _size_points(artifact)
    if artifact.has_scale:
        score += MARKER_POINTS["scale"]
    if artifact.has_ruler:
        score += MARKER_POINTS["ruler"]
    if artifact.has_awb:
        score += MARKER_POINTS["awb"]
    if fresh:
        score += MARKER_POINTS["fresh"]
    score = float(min(100, score))

    suggestions: list[str] = []
    if not artifact.has_scale:
        suggestions.append("Photograph the package on a weighing scale with the reading clearly visible.")
    if not artifact.has_ruler:
        suggestions.append("Include a ruler or measuring tape alongside each side of the package.")
    if not artifact.has_awb:
        suggestions.append("Make sure the AWB / tracking label is legible in the frame.")
    if not fresh:
        suggestions.append(
            f"Use a photo taken within {settings.evidence_freshness_days} days of packing; "
            "the capture timestamp is missing or too far from the packing date."
        )
    if artifact.kind != "document" and _resolution_points(artifact) < RESOLUTION_POINTS[1][1]:
        suggestions.append("Upload a higher resolution image (at least 1280x720).")

    is_valid = (artifact.has_scale or artifact.has_ruler) and score > settings.evidence_min_quality

    return EvidenceValidation(
        has_scale=artifact.has_scale,
        has_ruler=artifact.has_ruler,
        has_awb=artifact.has_awb,
        timestamp_fresh=fresh,
        quality_score=score,
        is_valid=is_valid,
        suggestions=suggestions,
    )


def is_weak(validations) -> bool:
    """Evidence set is weak when no single artifact passes validation.

    Accepts fresh ``EvidenceValidation`` results or stored ``DisputeEvidence`` rows.
    """
    return not any(v.is_valid for v in validations)
