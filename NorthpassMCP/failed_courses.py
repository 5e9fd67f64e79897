"""
Registry of course ids that are known to fail validation.

Consulted before any course lookup so a deleted or forbidden course costs one
network round-trip per process, not one per transcript. It is only an
optimisation: an empty tracker gives the same results, just slower.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable

from .course_registry import DELETED_COURSES

logger = logging.getLogger(__name__)


class FailureReason(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    ACCESS_DENIED = "ACCESS_DENIED"
    PROPERTIES_ACCESS_DENIED = "PROPERTIES_ACCESS_DENIED"
    OTHER = "OTHER"


@dataclass
class FailedCourseRecord:
    course_id: str
    course_name: str
    reason: FailureReason
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "courseId": self.course_id,
            "courseName": self.course_name,
            "reason": self.reason.value,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }


class FailedCourseTracker:
    """Process-wide, thread-safe failure registry keyed by (course_id, reason)."""

    def __init__(self, seed_not_found: Iterable[tuple[str, str]] | None = None) -> None:
        self._records: dict[FailureReason, dict[str, FailedCourseRecord]] = {
            reason: {} for reason in FailureReason
        }
        self._lock = threading.Lock()
        for course_id, name in seed_not_found or ():
            self._records[FailureReason.NOT_FOUND][course_id] = FailedCourseRecord(
                course_id, name, FailureReason.NOT_FOUND, {"source": "registry"}
            )

    @classmethod
    def with_known_failures(cls) -> "FailedCourseTracker":
        """Tracker pre-loaded with the courses confirmed deleted upstream."""
        return cls(seed_not_found=DELETED_COURSES.items())

    def record_failure(
        self,
        course_id: str,
        course_name: str,
        reason: FailureReason,
        metadata: dict[str, Any] | None = None,
    ) -> FailedCourseRecord:
        """Add or refresh the record for (course_id, reason); never duplicates."""
        with self._lock:
            record = FailedCourseRecord(course_id, course_name, reason, dict(metadata or {}))
            self._records[reason][course_id] = record
            total = sum(len(r) for r in self._records.values())
        logger.info(
            "Tracking failed course %s (%s): %s [%d tracked]",
            course_name, course_id, reason.value, total,
        )
        return record

    def is_known_failed(self, course_id: str, reason: FailureReason | None = None) -> bool:
        with self._lock:
            if reason is not None:
                return course_id in self._records[reason]
            return any(course_id in records for records in self._records.values())

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            by_reason = {reason.value: len(records) for reason, records in self._records.items()}
        return {"byReason": by_reason, "total": sum(by_reason.values())}

    def export(self) -> dict[str, list[dict]]:
        """All records grouped by reason, for diagnostics."""
        with self._lock:
            return {
                reason.value: [r.to_dict() for r in records.values()]
                for reason, records in self._records.items()
            }

    def clear(self) -> None:
        with self._lock:
            for records in self._records.values():
                records.clear()
        logger.info("Cleared all tracked failed course ids")

    def analyze_properties_failures(self, valid_course_ids: Iterable[str]) -> dict[str, Any]:
        """
        Check whether properties-API 403s hit courses that are actually valid.

        A healthy run only sees those 403s on deleted courses; anything else
        points at a permission problem with the API key.
        """
        valid = set(valid_course_ids)
        with self._lock:
            properties_failed = set(self._records[FailureReason.PROPERTIES_ACCESS_DENIED])
            not_found = set(self._records[FailureReason.NOT_FOUND])
        on_valid = sorted(properties_failed & valid)
        analysis = {
            "totalPropertiesFailures": len(properties_failed),
            "totalNotFound": len(not_found),
            "failuresOnValidCourses": len(on_valid),
            "failuresOnInvalidCourses": len(properties_failed - valid),
            "validCourseIds": len(valid),
            "failuresOnValidCoursesPercent": round(len(on_valid) / len(valid) * 100) if valid else 0,
        }
        if on_valid:
            logger.warning("Properties API is failing for valid courses: %s", on_valid)
        return analysis
