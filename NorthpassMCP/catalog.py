"""
Course catalog and NPCU resolution.

Answers two questions with as few requests as possible: does course X still
exist (live or archived), and how many certification units (NPCU, 0-2) does
it carry. The catalog and per-course NPCU values live in the CacheService;
courses known to fail are short-circuited through the FailedCourseTracker.
"""

import asyncio
import calendar
import logging
from datetime import datetime
from typing import Any, Iterable

from . import endpoints
from .cache import CacheService
from .course_registry import (
    EXCLUDED_LEARNING_PATH_COMPONENTS,
    known_npcu_override,
    learning_path_component,
    should_exclude_course_by_name,
    should_skip_course,
)
from .failed_courses import FailedCourseTracker, FailureReason
from .models import CourseInfo, CourseStatus, NpcuSource
from .request import (
    NorthpassAccessDeniedError,
    NorthpassAPIError,
    NorthpassClient,
    NorthpassNotFoundError,
)

logger = logging.getLogger(__name__)

CATALOG_CACHE_TTL = 5 * 60
NPCU_CACHE_TTL = 30 * 60
CERTIFICATION_VALIDITY_MONTHS = 24

_CERTIFICATION_KEYWORDS = ("certification", "certified", "certificate")
_LEVEL_TWO_KEYWORDS = ("advanced", "expert", "master", "professional")

PRODUCT_CATEGORIES = ("Nintex CE", "Nintex K2", "Nintex for Salesforce", "Other")


# ==================== Pure helpers ====================


def normalize_npcu(value: Any) -> int:
    """Coerce an upstream NPCU value into {0, 1, 2}; anything else becomes 0."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        logger.warning("Invalid NPCU value: %r, defaulting to 0", value)
        return 0
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        logger.warning("Invalid NPCU value: %r, defaulting to 0", value)
        return 0
    if number in (0, 1, 2):
        return int(number)
    logger.warning("Out-of-range NPCU value: %r, defaulting to 0", value)
    return 0


def estimate_npcu_from_name(course_name: str) -> int:
    """Name heuristic, only for when the properties API cannot be used."""
    name = (course_name or "").lower()
    if not any(keyword in name for keyword in _CERTIFICATION_KEYWORDS):
        return 0
    if any(keyword in name for keyword in _LEVEL_TWO_KEYWORDS):
        return 2
    return 1


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping to the last day of short months."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def calculate_expiry_date(completed_at: datetime) -> datetime:
    # Flat 24 months for every certification type
    return add_months(completed_at, CERTIFICATION_VALIDITY_MONTHS)


def categorize_product(course_name: str) -> str:
    """Bucket a course into one of PRODUCT_CATEGORIES by name."""
    name = (course_name or "").lower()
    if (
        "workflow" in name
        or "rpa" in name
        or "process manager" in name
        or "automation cloud" in name
        or ("nintex apps" in name and "salesforce" not in name)
    ):
        return "Nintex CE"
    if "k2" in name:
        return "Nintex K2"
    if "salesforce" in name or "docgen" in name:
        return "Nintex for Salesforce"
    return "Other"


def _chunks(items: list, size: int) -> Iterable[list]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# ==================== Catalog ====================


class CourseCatalog:
    """
    Catalog lookups and NPCU resolution over a shared client, cache and tracker.

    ``use_properties=False`` switches NPCU resolution to the name heuristic,
    for keys that have no access to the properties sub-API at all.
    """

    def __init__(
        self,
        client: NorthpassClient,
        cache: CacheService,
        tracker: FailedCourseTracker | None = None,
        use_properties: bool = True,
        npcu_concurrency: int = 3,
        npcu_batch_delay: float = 0.5,
    ) -> None:
        self._client = client
        self._cache = cache
        self._tracker = tracker if tracker is not None else FailedCourseTracker()
        self.use_properties = use_properties
        self.npcu_concurrency = max(1, npcu_concurrency)
        self.npcu_batch_delay = npcu_batch_delay
        self._catalog_lock = asyncio.Lock()
        self._table_lock = asyncio.Lock()
        self._fetch_course = cache.wrap(self._fetch_course_uncached, "course_lookup", CATALOG_CACHE_TTL)

    @property
    def tracker(self) -> FailedCourseTracker:
        return self._tracker

    # --- Catalog ---

    def _catalog_key(self) -> str:
        return self._cache.generate_key("course_catalog", {"statuses": ["live", "archived"]})

    async def get_catalog(self) -> dict[str, CourseInfo]:
        """
        Live and archived courses by id. Cached for five minutes.

        Returns an empty dict (uncached) if the listing fails or comes back
        empty; callers then fall back to individual course lookups.
        """
        key = self._catalog_key()
        cached = self._cache.get(key)
        if cached is not None:
            logger.debug("Using cached course catalog")
            return {cid: CourseInfo.from_dict(d) for cid, d in cached.items()}

        # One fetch at a time; concurrent callers wait and then read the cache
        async with self._catalog_lock:
            cached = self._cache.get(key)
            if cached is not None:
                return {cid: CourseInfo.from_dict(d) for cid, d in cached.items()}

            catalog: dict[str, CourseInfo] = {}
            excluded = 0
            try:
                for status in (CourseStatus.LIVE, CourseStatus.ARCHIVED):
                    pages = (
                        self._client.request("listCourses")
                        .get(endpoints.COURSES)
                        .params({"limit": 100, "filter[status][eq]": status.value})
                        .cleaner("course")
                        .pages()
                    )
                    async for course in pages:
                        if should_skip_course(course["course_id"], course["name"]):
                            excluded += 1
                            continue
                        catalog.setdefault(
                            course["course_id"],
                            CourseInfo(course["course_id"], course["name"], status),
                        )
            except NorthpassAPIError as e:
                logger.error("Error fetching course catalog: %s", e)
                return {}

            if not catalog:
                logger.warning("Course catalog came back empty")
                return {}

            logger.info("Loaded %d courses into catalog (%d excluded)", len(catalog), excluded)
            self._cache.set(key, {cid: info.to_dict() for cid, info in catalog.items()}, CATALOG_CACHE_TTL)
            return catalog

    async def _fetch_course_uncached(self, course_id: str) -> dict | None:
        """GET one course. 404/403 resolve to None; other failures propagate (uncached)."""
        try:
            return await (
                self._client.request("getCourse")
                .get(endpoints.COURSE.format(course_id=course_id))
                .cleaner("course")
                .execute()
            )
        except NorthpassNotFoundError:
            return {"missing": FailureReason.NOT_FOUND.value}
        except NorthpassAccessDeniedError:
            return {"missing": FailureReason.ACCESS_DENIED.value}

    async def validate_course(self, course_id: str, course_name: str = "") -> CourseInfo | None:
        """
        Resolve a course to its catalog entry, or None if it must not count.

        None means deleted, denylisted, an excluded learning-path
        sub-component, or absent from the catalog without an individual
        lookup confirming it.
        """
        if not course_id:
            return None
        if should_skip_course(course_id, course_name):
            logger.debug("Skipping excluded course: %s (%s)", course_name, course_id)
            return None
        if course_id in EXCLUDED_LEARNING_PATH_COMPONENTS:
            return None

        component = learning_path_component(course_id)
        if component:
            return CourseInfo(course_id, component["name"], CourseStatus.LIVE, learning_path_component=True)

        for reason in (FailureReason.NOT_FOUND, FailureReason.ACCESS_DENIED):
            if self._tracker.is_known_failed(course_id, reason):
                logger.debug("Skipping known invalid course: %s (%s)", course_name, course_id)
                return None

        catalog = await self.get_catalog()
        info = catalog.get(course_id)
        if info is not None:
            return info

        try:
            course = await self._fetch_course(course_id)
        except NorthpassAPIError as e:
            self._tracker.record_failure(
                course_id, course_name, FailureReason.OTHER, {"status": e.status, "error": str(e)}
            )
            return None

        if course and "missing" in course:
            self._tracker.record_failure(
                course_id, course_name, FailureReason(course["missing"]), {"catalogSize": len(catalog)}
            )
            return None

        status = (course or {}).get("status")
        if status in (CourseStatus.LIVE.value, CourseStatus.ARCHIVED.value):
            name = course.get("name") or course_name
            if should_exclude_course_by_name(name):
                return None
            return CourseInfo(course_id, name, CourseStatus(status))

        self._tracker.record_failure(course_id, course_name, FailureReason.OTHER, {"status": status})
        return None

    # --- NPCU ---

    def _npcu_key(self, course_id: str) -> str:
        return self._cache.generate_key("course_npcu", {"course_id": course_id})

    def _cached_npcu(self, course_id: str) -> tuple[int, NpcuSource] | None:
        cached = self._cache.get(self._npcu_key(course_id))
        if cached is None:
            return None
        return normalize_npcu(cached.get("npcu")), NpcuSource(cached.get("source", "default"))

    def _store_npcu(self, course_id: str, npcu: int, source: NpcuSource) -> None:
        self._cache.set(self._npcu_key(course_id), {"npcu": npcu, "source": source.value}, NPCU_CACHE_TTL)

    def _forbidden_fallback(self, course_id: str) -> tuple[int, NpcuSource]:
        override = known_npcu_override(course_id)
        if override:
            return normalize_npcu(override.get("npcu")), NpcuSource.OVERRIDE
        component = learning_path_component(course_id)
        if component:
            return normalize_npcu(component.get("npcu")), NpcuSource.LEARNING_PATH
        return 0, NpcuSource.DEFAULT

    async def _fetch_npcu(self, course_id: str, course_name: str) -> tuple[int, NpcuSource]:
        if self._tracker.is_known_failed(course_id, FailureReason.PROPERTIES_ACCESS_DENIED):
            return self._forbidden_fallback(course_id)
        try:
            properties = await (
                self._client.request("getCourseProperties")
                .get(endpoints.COURSE_PROPERTIES.format(course_id=course_id))
                .properties_api()
                .cleaner("course-properties")
                .execute()
            )
        except NorthpassAccessDeniedError:
            self._tracker.record_failure(
                course_id, course_name, FailureReason.PROPERTIES_ACCESS_DENIED, {"status": 403}
            )
            return self._forbidden_fallback(course_id)
        except NorthpassAPIError as e:
            logger.warning("NPCU lookup failed for %s (%s): %s", course_name, course_id, e)
            return 0, NpcuSource.DEFAULT
        return normalize_npcu(properties.get("npcu")), NpcuSource.PROPERTIES

    async def resolve_npcu(self, course_id: str, course_name: str = "") -> tuple[int, NpcuSource]:
        """NPCU for one course plus where the value came from. Cached 30 minutes."""
        if not self.use_properties:
            npcu = estimate_npcu_from_name(course_name)
            logger.info("Estimated NPCU=%d from name for %s (properties disabled)", npcu, course_name)
            return npcu, NpcuSource.ESTIMATED

        component = learning_path_component(course_id)
        if component:
            return normalize_npcu(component.get("npcu")), NpcuSource.LEARNING_PATH

        cached = self._cached_npcu(course_id)
        if cached is not None:
            return cached

        npcu, source = await self._fetch_npcu(course_id, course_name)
        self._store_npcu(course_id, npcu, source)
        logger.debug("NPCU for %s: %d (%s)", course_id, npcu, source.value)
        return npcu, source

    async def get_course_npcu(self, course_id: str, course_name: str = "") -> int:
        npcu, _ = await self.resolve_npcu(course_id, course_name)
        return npcu

    async def load_npcu_table(self) -> dict[str, int]:
        """Seed the NPCU cache from the bulk properties listing. Partial on failure."""
        table: dict[str, int] = {}
        pages = (
            self._client.request("listCourseProperties")
            .get(endpoints.ALL_COURSE_PROPERTIES)
            .params({"limit": 100})
            .properties_api()
            .cleaner("course-properties")
            .pages(max_pages=30)
        )
        try:
            async for entry in pages:
                if not entry.get("course_id"):
                    continue
                npcu = normalize_npcu(entry.get("npcu"))
                table[entry["course_id"]] = npcu
                self._store_npcu(entry["course_id"], npcu, NpcuSource.BULK_PROPERTIES)
        except NorthpassAPIError as e:
            logger.warning("Bulk properties fetch stopped after %d courses: %s", len(table), e)
        logger.info(
            "Loaded NPCU for %d courses (%d with NPCU > 0)",
            len(table), sum(1 for v in table.values() if v > 0),
        )
        return table

    async def _ensure_npcu_table(self) -> None:
        """Load the bulk table once per NPCU TTL, ahead of the first cold batch."""
        key = self._cache.generate_key("course_npcu", {"table": "all"})
        if self._cache.get(key) is not None:
            return
        async with self._table_lock:
            if self._cache.get(key) is not None:
                return
            table = await self.load_npcu_table()
            # marked even when empty: one bulk attempt per TTL
            self._cache.set(key, {"courses": len(table)}, NPCU_CACHE_TTL)

    async def batch_resolve_npcu(
        self, courses: Iterable[tuple[str, str]]
    ) -> dict[str, tuple[int, NpcuSource]]:
        """
        Resolve many (course_id, name) pairs. Cached values are answered
        directly. On a cold cache the bulk properties table is loaded first;
        whatever it does not cover goes out ``npcu_concurrency`` at a time with
        ``npcu_batch_delay`` seconds between batches.
        """
        results: dict[str, tuple[int, NpcuSource]] = {}
        pending: list[tuple[str, str]] = []
        seen: set[str] = set()
        for course_id, name in courses:
            if course_id in seen:
                continue
            seen.add(course_id)
            cached = self._cached_npcu(course_id) if self.use_properties else None
            if cached is not None:
                results[course_id] = cached
            else:
                pending.append((course_id, name))

        if self.use_properties and any(not learning_path_component(cid) for cid, _ in pending):
            await self._ensure_npcu_table()
            cold, pending = pending, []
            for course_id, name in cold:
                cached = self._cached_npcu(course_id)
                if cached is not None:
                    results[course_id] = cached
                else:
                    pending.append((course_id, name))

        batches = list(_chunks(pending, self.npcu_concurrency))
        for i, batch in enumerate(batches):
            outcomes = await asyncio.gather(
                *(self.resolve_npcu(cid, name) for cid, name in batch),
                return_exceptions=True,
            )
            for (course_id, name), outcome in zip(batch, outcomes):
                if isinstance(outcome, Exception):
                    logger.warning("NPCU lookup crashed for %s (%s): %s", name, course_id, outcome)
                    outcome = (0, NpcuSource.DEFAULT)
                results[course_id] = outcome
            if i < len(batches) - 1 and self.npcu_batch_delay > 0:
                await asyncio.sleep(self.npcu_batch_delay)
        return results

    async def batch_get_course_npcu(self, courses: Iterable[tuple[str, str]]) -> dict[str, int]:
        resolved = await self.batch_resolve_npcu(courses)
        return {course_id: npcu for course_id, (npcu, _) in resolved.items()}
