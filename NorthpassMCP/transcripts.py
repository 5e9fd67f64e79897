"""
Transcript reconciliation: a user's completions -> credited certifications.

Stages, in order and never skipped:
  1. fetch     all transcript pages (404 = no transcript)
  2. filter    completed items with a completion timestamp
  3. drop      learning-path containers (credit sits on their courses)
  4. validate  against the catalog; deleted courses drop out
  5. resolve   NPCU for the surviving courses
  6. dedupe    one record per course, the latest completion wins
  7. derive    expiry, expired flag, product category, totals

A network failure in a stage is recorded on the report and the remaining
stages run on whatever data is available.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Iterable

from . import endpoints
from .catalog import PRODUCT_CATEGORIES, CourseCatalog, calculate_expiry_date, categorize_product
from .models import (
    CategoryStats,
    Certification,
    CourseInfo,
    NpcuSource,
    ProgressEvent,
    TranscriptItem,
    UserCertificationReport,
)
from .request import NorthpassAPIError, NorthpassClient, NorthpassNotFoundError

logger = logging.getLogger(__name__)

LEARNING_PATH_TYPE = "learning_path"
COMPLETED = "completed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def filter_completed(items: Iterable[TranscriptItem]) -> list[TranscriptItem]:
    return [i for i in items if i.progress_status == COMPLETED and i.completed_at is not None]


def exclude_learning_paths(items: Iterable[TranscriptItem]) -> list[TranscriptItem]:
    return [i for i in items if i.resource_type != LEARNING_PATH_TYPE]


def deduplicate(
    items: Iterable[tuple[TranscriptItem, CourseInfo]],
) -> list[tuple[TranscriptItem, CourseInfo]]:
    """Keep the latest completion per course id."""
    latest: dict[str, tuple[TranscriptItem, CourseInfo]] = {}
    for item, info in items:
        current = latest.get(item.resource_id)
        if current is None:
            latest[item.resource_id] = (item, info)
            continue
        keep, drop = (item, current[0]) if item.completed_at > current[0].completed_at else (current[0], item)
        logger.info(
            "Duplicate completion of %s: keeping %s, discarding %s",
            item.name, keep.completed_at.isoformat(), drop.completed_at.isoformat(),
        )
        latest[item.resource_id] = (keep, info)
    return list(latest.values())


def summarize(report: UserCertificationReport) -> UserCertificationReport:
    """Fill totals and the category breakdown from non-expired, credited certifications."""
    breakdown = {category: CategoryStats() for category in PRODUCT_CATEGORIES}
    active = [c for c in report.certifications if not c.is_expired and c.npcu > 0]
    for cert in active:
        stats = breakdown[cert.category]
        stats.count += 1
        stats.npcu += cert.npcu
        stats.courses.append(cert.name)
    report.total_npcu = sum(c.npcu for c in active)
    report.certification_count = len(active)
    report.category_breakdown = breakdown
    return report


class TranscriptPipeline:
    """Runs the reconciliation stages for one user or a batch of users."""

    def __init__(
        self,
        client: NorthpassClient,
        catalog: CourseCatalog,
        user_concurrency: int = 3,
        user_batch_delay: float = 0.5,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._client = client
        self._catalog = catalog
        self.user_concurrency = max(1, user_concurrency)
        self.user_batch_delay = user_batch_delay
        self._now = now

    async def fetch_transcript(self, user_id: str, sink: list[TranscriptItem] | None = None) -> list[TranscriptItem]:
        """
        Every transcript item for a user. A 404 means no transcript.

        Items land in ``sink`` as they arrive, so a caller still holds the
        pages fetched before a mid-pagination failure.
        """
        items = sink if sink is not None else []
        pages = (
            self._client.request("getTranscript")
            .get(endpoints.TRANSCRIPT.format(person_id=user_id))
            .params({"limit": 100})
            .cleaner("transcript-item")
            .pages(max_pages=20)
        )
        try:
            async for raw in pages:
                items.append(TranscriptItem.from_cleaned(raw))
        except NorthpassNotFoundError:
            logger.debug("No transcript for user %s", user_id)
        return items

    async def _validate(self, items: list[TranscriptItem]) -> tuple[list[tuple[TranscriptItem, CourseInfo]], int]:
        # one lookup per course, however often it was retaken
        names: dict[str, str] = {}
        for item in items:
            names.setdefault(item.resource_id, item.name)
        outcomes = await asyncio.gather(
            *(self._catalog.validate_course(course_id, name) for course_id, name in names.items()),
            return_exceptions=True,
        )
        resolved = dict(zip(names, outcomes))
        valid: list[tuple[TranscriptItem, CourseInfo]] = []
        excluded = 0
        for item in items:
            info = resolved[item.resource_id]
            if isinstance(info, Exception):
                logger.warning("Validation failed for %s (%s): %s", item.name, item.resource_id, info)
                info = None
            if info is None:
                excluded += 1
                logger.info("Excluding %s (%s): not a valid course", item.name, item.resource_id)
                continue
            valid.append((item, info))
        return valid, excluded

    def _certification(self, item: TranscriptItem, info: CourseInfo, npcu: int, source: NpcuSource) -> Certification:
        expiry = calculate_expiry_date(item.completed_at)
        return Certification(
            resource_id=item.resource_id,
            name=item.name,
            npcu=npcu,
            npcu_source=source,
            completed_at=item.completed_at,
            expiry_date=expiry,
            is_expired=expiry < self._now(),
            is_valid_course=True,
            course_status=info.status,
            category=categorize_product(item.name),
            certificate_url=item.certificate_url,
        )

    async def get_user_certifications(self, user_id: str) -> UserCertificationReport:
        report = UserCertificationReport(user_id=user_id)

        items: list[TranscriptItem] = []
        try:
            await self.fetch_transcript(user_id, sink=items)
        except NorthpassAPIError as e:
            logger.warning("Transcript fetch failed for %s after %d items: %s", user_id, len(items), e)
            report.error = str(e)
        report.total_items = len(items)

        candidates = exclude_learning_paths(filter_completed(items))
        validated, report.excluded_count = await self._validate(candidates)

        npcu = await self._catalog.batch_resolve_npcu(
            (item.resource_id, item.name) for item, _ in validated
        )

        certifications = [
            self._certification(item, info, *npcu.get(item.resource_id, (0, NpcuSource.DEFAULT)))
            for item, info in deduplicate(validated)
        ]
        certifications.sort(key=lambda c: c.completed_at, reverse=True)
        report.certifications = certifications

        summarize(report)
        logger.info(
            "User %s: %d certifications, %d total NPCU (%d transcript items, %d excluded)",
            user_id, report.certification_count, report.total_npcu,
            report.total_items, report.excluded_count,
        )
        return report

    # --- Batches ---

    async def _process_user(self, user: Any) -> UserCertificationReport:
        user_id = user if isinstance(user, str) else user.get("id")
        if not user_id:
            return UserCertificationReport(user_id="unknown", error="User ID not found in user object")
        try:
            report = await self.get_user_certifications(user_id)
        except Exception as e:
            logger.warning("Error processing user %s: %s", user_id, e)
            report = UserCertificationReport(user_id=user_id, error=str(e))
        if isinstance(user, dict):
            report.name = user.get("name")
            report.email = user.get("email")
        return report

    async def iter_users(self, users: Iterable[Any]) -> AsyncIterator[ProgressEvent]:
        """
        Reconcile many users, ``user_concurrency`` at a time.

        Each window is awaited in full before the next starts, with
        ``user_batch_delay`` seconds in between. Yields one ProgressEvent per
        user; a failing user yields a report carrying ``error``.
        """
        users = list(users)
        total = len(users)
        for start in range(0, total, self.user_concurrency):
            window = users[start:start + self.user_concurrency]
            reports = await asyncio.gather(*(self._process_user(u) for u in window))
            for offset, report in enumerate(reports):
                yield ProgressEvent(
                    index=start + offset + 1, total=total, user_id=report.user_id, report=report
                )
            if start + self.user_concurrency < total and self.user_batch_delay > 0:
                await asyncio.sleep(self.user_batch_delay)

    async def process_users(self, users: Iterable[Any]) -> list[UserCertificationReport]:
        reports = [event.report async for event in self.iter_users(users)]
        errors = sum(1 for r in reports if r.error)
        logger.info("Processed %d users with %d errors", len(reports), errors)
        return reports


def analyze_course_validation(
    reports: Iterable[UserCertificationReport], catalog: CourseCatalog
) -> dict[str, Any]:
    """Company-wide view of how many completions survived validation."""
    reports = list(reports)
    valid = sum(len(r.certifications) for r in reports)
    excluded = sum(r.excluded_count for r in reports)
    considered = valid + excluded
    stats = catalog.tracker.get_stats()
    valid_ids = {c.resource_id for r in reports for c in r.certifications}
    return {
        "totalUsers": len(reports),
        "usersWithErrors": sum(1 for r in reports if r.error),
        "totalCertifications": considered,
        "validCertifications": valid,
        "invalidCertifications": excluded,
        "courseValidityRate": round(valid / considered * 100) if considered else 0,
        "trackedFailedCourses": stats["total"],
        "failedCourseBreakdown": stats["byReason"],
        "propertiesAnalysis": catalog.tracker.analyze_properties_failures(valid_ids),
    }
