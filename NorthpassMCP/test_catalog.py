import asyncio
from datetime import datetime, timezone

import pytest

from . import course_registry
from .catalog import (
    CourseCatalog,
    add_months,
    calculate_expiry_date,
    categorize_product,
    estimate_npcu_from_name,
    normalize_npcu,
)
from .conftest import BASE_URL, course, jsonapi, properties
from .failed_courses import FailureReason
from .models import CourseStatus, NpcuSource

LIVE = [course("c-live", "Nintex Automation Cloud Fundamentals"), course("c-test", "Test Course 1")]
ARCHIVED = [course("c-old", "Nintex K2 Five Certification", "archived")]


def _catalog_route(request):
    status = request.url.params.get("filter[status][eq]")
    return 200, jsonapi(LIVE if status == "live" else ARCHIVED)


# ==================== Pure helpers ====================


@pytest.mark.parametrize(
    "raw, expected",
    [(0, 0), (1, 1), (2, 2), ("2", 2), ("1.0", 1), (None, 0), ("", 0), (3, 0), (-1, 0), ("abc", 0), (True, 0)],
)
def test_normalize_npcu(raw, expected):
    assert normalize_npcu(raw) == expected


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Advanced Workflow Certification", 2),
        ("Advanced Workflow Design", 0),
        ("Nintex Expert Certification", 2),
        ("Certified Practitioner", 1),
        ("Certificate of Mastery", 2),
        ("Master Class", 0),
        ("Intro to Forms", 0),
    ],
)
def test_estimate_npcu_from_name(name, expected):
    assert estimate_npcu_from_name(name) == expected


def test_add_months_clamps_short_months():
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2023, 11, 30), 3) == datetime(2024, 2, 29)
    assert add_months(datetime(2024, 2, 29), 24) == datetime(2026, 2, 28)


def test_expiry_is_24_months():
    completed = datetime(2024, 6, 1, 10, 0, tzinfo=timezone.utc)
    assert calculate_expiry_date(completed) == datetime(2026, 6, 1, 10, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "name, category",
    [
        ("Nintex Workflow Cloud Practitioner", "Nintex CE"),
        ("RPA Essentials", "Nintex CE"),
        ("Nintex K2 Five Certification", "Nintex K2"),
        ("Nintex DocGen for Salesforce", "Nintex for Salesforce"),
        ("Nintex Apps for Salesforce", "Nintex for Salesforce"),
        ("Sales Professional", "Other"),
    ],
)
def test_categorize_product(name, category):
    assert categorize_product(name) == category


# ==================== Catalog ====================


def test_catalog_excludes_skip_list_and_is_cached(fake, catalog):
    fake.add("GET", "/v2/courses", _catalog_route)

    async def run():
        first = await catalog.get_catalog()
        second = await catalog.get_catalog()
        return first, second

    first, second = asyncio.run(run())
    assert set(first) == {"c-live", "c-old"}
    assert first["c-old"].status is CourseStatus.ARCHIVED
    assert second == first
    assert fake.count("GET", "/v2/courses") == 2


def test_catalog_failure_returns_empty_and_is_not_cached(fake, catalog):
    fake.add("GET", "/v2/courses", (500, {"errors": [{"detail": "down"}]}), _catalog_route)

    async def run():
        return await catalog.get_catalog(), await catalog.get_catalog()

    failed, recovered = asyncio.run(run())
    assert failed == {}
    assert "c-live" in recovered


def test_validate_course_prefers_catalog(fake, catalog):
    fake.add("GET", "/v2/courses", _catalog_route)
    info = asyncio.run(catalog.validate_course("c-live", "Nintex Automation Cloud Fundamentals"))
    assert info.course_id == "c-live"
    assert info.status is CourseStatus.LIVE
    assert fake.count("GET", "/v2/courses/c-live") == 0


def test_validate_course_missing_everywhere_is_tracked(fake, catalog, tracker):
    fake.add("GET", "/v2/courses", _catalog_route)
    # /v2/courses/c-gone is unrouted, so the fake answers 404

    async def run():
        return (
            await catalog.validate_course("c-gone", "Deleted Course"),
            await catalog.validate_course("c-gone", "Deleted Course"),
        )

    first, second = asyncio.run(run())
    assert first is None and second is None
    assert tracker.is_known_failed("c-gone", FailureReason.NOT_FOUND)
    assert fake.count("GET", "/v2/courses/c-gone") == 1


def test_validate_course_individual_lookup_confirms(fake, catalog):
    fake.add("GET", "/v2/courses", _catalog_route)
    fake.add("GET", "/v2/courses/c-new", (200, {"data": course("c-new", "Brand New Course")}))
    info = asyncio.run(catalog.validate_course("c-new", "Brand New Course"))
    assert info.name == "Brand New Course"


def test_validate_course_forbidden_lookup(fake, catalog, tracker):
    fake.add("GET", "/v2/courses", _catalog_route)
    fake.add("GET", "/v2/courses/c-403", (403, {"errors": [{"detail": "forbidden"}]}))
    assert asyncio.run(catalog.validate_course("c-403", "Secret")) is None
    assert tracker.is_known_failed("c-403", FailureReason.ACCESS_DENIED)


def test_validate_course_skips_excluded_without_requests(fake, catalog):
    deleted_id = next(iter(course_registry.DELETED_COURSES))
    test_id = next(iter(course_registry.TEST_COURSE_IDS))

    async def run():
        return [
            await catalog.validate_course(deleted_id, "Anything"),
            await catalog.validate_course(test_id, "Anything"),
            await catalog.validate_course("c-x", "Workflow Basics - COPY"),
            await catalog.validate_course("", "No id"),
        ]

    assert asyncio.run(run()) == [None, None, None, None]
    assert fake.calls == []


def test_learning_path_component_is_valid_without_lookup(fake, catalog):
    component_id = next(iter(course_registry.LEARNING_PATH_COMPONENTS))
    info = asyncio.run(catalog.validate_course(component_id, "Sales"))
    assert info.learning_path_component
    assert fake.calls == []


# ==================== NPCU ====================


def test_resolve_npcu_from_properties_is_cached(fake, catalog):
    fake.add("GET", "/v2/properties/courses/c1", (200, {"data": properties("c1", "2")}))

    async def run():
        return await catalog.resolve_npcu("c1", "Course"), await catalog.resolve_npcu("c1", "Course")

    first, second = asyncio.run(run())
    assert first == (2, NpcuSource.PROPERTIES)
    assert second == first
    assert fake.count("GET", "/v2/properties/courses/c1") == 1


def test_resolve_npcu_out_of_range_is_zero(fake, catalog):
    fake.add("GET", "/v2/properties/courses/c1", (200, {"data": properties("c1", 7)}))
    assert asyncio.run(catalog.get_course_npcu("c1")) == 0


def test_resolve_npcu_forbidden_defaults_to_zero(fake, catalog, tracker):
    fake.add("GET", "/v2/properties/courses/c1", (403, {"errors": [{"detail": "forbidden"}]}))
    assert asyncio.run(catalog.resolve_npcu("c1", "Course")) == (0, NpcuSource.DEFAULT)
    assert tracker.is_known_failed("c1", FailureReason.PROPERTIES_ACCESS_DENIED)


def test_resolve_npcu_forbidden_uses_override(fake, catalog, monkeypatch):
    monkeypatch.setitem(course_registry.KNOWN_NPCU_OVERRIDES, "c1", {"name": "Course", "npcu": 2})
    fake.add("GET", "/v2/properties/courses/c1", (403, {"errors": [{"detail": "forbidden"}]}))
    assert asyncio.run(catalog.resolve_npcu("c1", "Course")) == (2, NpcuSource.OVERRIDE)


def test_learning_path_component_npcu(fake, catalog):
    component_id = next(iter(course_registry.LEARNING_PATH_COMPONENTS))
    assert asyncio.run(catalog.resolve_npcu(component_id)) == (1, NpcuSource.LEARNING_PATH)
    assert fake.calls == []


def test_estimated_npcu_when_properties_disabled(fake, client, cache, tracker):
    catalog = CourseCatalog(client, cache, tracker, use_properties=False)
    assert asyncio.run(catalog.resolve_npcu("c1", "Advanced Workflow Certification")) == (2, NpcuSource.ESTIMATED)
    assert fake.calls == []


def test_batch_resolve_dedupes_and_isolates_failures(fake, catalog):
    fake.add("GET", "/v2/properties/courses/c1", (200, {"data": properties("c1", 1)}))
    fake.add("GET", "/v2/properties/courses/c2", (500, {"errors": [{"detail": "boom"}]}))

    result = asyncio.run(catalog.batch_get_course_npcu([("c1", "A"), ("c2", "B"), ("c1", "A")]))
    assert result == {"c1": 1, "c2": 0}
    assert fake.count("GET", "/v2/properties/courses/c1") == 1


def test_load_npcu_table_seeds_cache(fake, catalog):
    fake.add(
        "GET",
        "/v2/properties/courses",
        (200, jsonapi([properties("c1", 1)], next_url=f"{BASE_URL}/v2/properties/courses?page=2")),
        (200, jsonapi([properties("c2", "2"), properties("c3", None)])),
    )

    async def run():
        table = await catalog.load_npcu_table()
        return table, await catalog.resolve_npcu("c2")

    table, c2 = asyncio.run(run())
    assert table == {"c1": 1, "c2": 2, "c3": 0}
    assert c2 == (2, NpcuSource.BULK_PROPERTIES)
    assert fake.count("GET", "/v2/properties/courses/c2") == 0


def test_cold_batch_seeds_from_bulk_table_once(fake, catalog):
    fake.add("GET", "/v2/properties/courses", (200, jsonapi([properties("c1", 2)])))
    fake.add("GET", "/v2/properties/courses/c2", (200, {"data": properties("c2", 1)}))

    async def run():
        first = await catalog.batch_resolve_npcu([("c1", "A"), ("c2", "B")])
        second = await catalog.batch_resolve_npcu([("c3", "C")])
        return first, second

    first, second = asyncio.run(run())
    assert first == {"c1": (2, NpcuSource.BULK_PROPERTIES), "c2": (1, NpcuSource.PROPERTIES)}
    assert second == {"c3": (0, NpcuSource.DEFAULT)}
    assert fake.count("GET", "/v2/properties/courses") == 1
    assert fake.count("GET", "/v2/properties/courses/c1") == 0


def test_batch_without_properties_api_makes_no_requests(fake, client, cache, tracker):
    catalog = CourseCatalog(client, cache, tracker, use_properties=False)
    result = asyncio.run(catalog.batch_get_course_npcu([("c1", "Nintex Expert Certification"), ("c2", "Intro")]))
    assert result == {"c1": 2, "c2": 0}
    assert fake.calls == []


def test_batch_never_exceeds_npcu_concurrency(fake, catalog, monkeypatch):
    courses = [(f"c{i}", f"Course {i}") for i in range(7)]
    for course_id, _ in courses:
        fake.add("GET", f"/v2/properties/courses/{course_id}", (200, {"data": properties(course_id, 1)}))
    in_flight = []
    peak = []
    resolve = catalog.resolve_npcu

    async def counted(course_id, course_name=""):
        in_flight.append(course_id)
        peak.append(len(in_flight))
        try:
            await asyncio.sleep(0)
            return await resolve(course_id, course_name)
        finally:
            in_flight.remove(course_id)

    monkeypatch.setattr(catalog, "resolve_npcu", counted)
    catalog.npcu_concurrency = 2

    result = asyncio.run(catalog.batch_get_course_npcu(courses))

    assert result == {course_id: 1 for course_id, _ in courses}
    assert max(peak) == 2
