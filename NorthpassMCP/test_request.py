import asyncio
from datetime import datetime, timezone

import httpx
import pytest

from . import config as config_module
from .cache import CacheService, MemoryStore
from .cleaners import clean_response, parse_timestamp, person_display_name
from .config import NorthpassConfig, get_config, reload_config
from .conftest import BASE_URL, NO_BACKOFF, UNTHROTTLED, course, jsonapi, person
from .failed_courses import FailedCourseTracker
from .ratelimit import RateLimiter
from .request import (
    NorthpassAccessDeniedError,
    NorthpassAPIError,
    NorthpassAuthError,
    NorthpassClient,
    NorthpassNotFoundError,
    NorthpassUnavailableError,
)
from .server import NorthpassServices


def test_api_key_header_is_sent(fake, client):
    fake.add("GET", "/v2/people", (200, jsonapi([])))
    asyncio.run(client.request("listPeople").get("/v2/people").execute())
    request = fake.calls[0]
    assert request.headers["X-Api-Key"] == "test-key"
    assert str(request.url).startswith(BASE_URL)


@pytest.mark.parametrize(
    "status, error_cls",
    [
        (401, NorthpassAuthError),
        (403, NorthpassAccessDeniedError),
        (404, NorthpassNotFoundError),
        (503, NorthpassUnavailableError),
        (418, NorthpassAPIError),
    ],
)
def test_status_maps_to_error(fake, client, status, error_cls):
    fake.add("GET", "/v2/courses/c1", (status, {"errors": [{"detail": "upstream says no"}]}))
    with pytest.raises(error_cls) as excinfo:
        asyncio.run(client.request("getCourse").get("/v2/courses/c1").execute())
    assert excinfo.value.status == status
    assert excinfo.value.operation == "getCourse"
    assert "upstream says no" in excinfo.value.messages


def test_retries_429_through_client(fake, client):
    fake.add(
        "GET",
        "/v2/courses/c1",
        (429, {"errors": [{"detail": "slow down"}]}),
        (200, {"data": course("c1", "Workflow 101")}),
    )
    result = asyncio.run(client.request("getCourse").get("/v2/courses/c1").cleaner("course").execute())
    assert result == {"course_id": "c1", "name": "Workflow 101", "status": "live"}
    assert client.limiter.retries == 1


def test_transport_error_is_unavailable(config):
    def boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    limiter = RateLimiter(UNTHROTTLED, UNTHROTTLED, NO_BACKOFF)
    client = NorthpassClient(config, limiter=limiter, transport=httpx.MockTransport(boom))
    with pytest.raises(NorthpassUnavailableError) as excinfo:
        asyncio.run(client.request("listPeople").get("/v2/people").execute())
    assert excinfo.value.status == 0


def test_pages_follow_absolute_next_links(fake, client):
    fake.add(
        "GET",
        "/v2/people",
        (200, jsonapi([person("p1", "a@x.com")], next_url=f"{BASE_URL}/v2/people?page=2")),
        (200, jsonapi([person("p2", "b@x.com")], next_url=f"{BASE_URL}/v2/people?page=3")),
        (200, jsonapi([])),
    )

    async def run():
        return [p["id"] async for p in client.request("listPeople").get("/v2/people").cleaner("person").pages()]

    assert asyncio.run(run()) == ["p1", "p2"]
    assert [r.url.params.get("page") for r in fake.calls] == [None, "2", "3"]


def test_pages_stop_at_max_pages(fake, client):
    fake.add("GET", "/v2/people", (200, jsonapi([person("p1", "a@x.com")], next_url="/v2/people?page=n")))

    async def run():
        return [p async for p in client.request("listPeople").get("/v2/people").pages(max_pages=3)]

    assert len(asyncio.run(run())) == 3
    assert len(fake.calls) == 3


def test_test_connection_reports_reachability(fake, client):
    assert asyncio.run(client.test_connection()) is False
    fake.add("GET", "/v2/people", (200, jsonapi([])))
    assert asyncio.run(client.test_connection()) is True
    assert fake.calls[-1].url.params["limit"] == "1"


def test_proxy_url_wins():
    cfg = NorthpassConfig(api_key="k", proxy_url="http://localhost:3000/api/northpass/")
    assert cfg.api_base_url == "http://localhost:3000/api/northpass"
    assert NorthpassConfig(api_key="k").api_base_url == "https://api.northpass.com"


def test_config_from_env(monkeypatch, tmp_path):
    monkeypatch.setattr(config_module, "_CONFIG_FILE", tmp_path / "missing.json")
    monkeypatch.setenv("NORTHPASS_API_KEY", "env-key")
    monkeypatch.setenv("NORTHPASS_CACHE_MAX_ENTRIES", "50")
    monkeypatch.setenv("NORTHPASS_LOG_LEVEL", "debug")
    cfg = reload_config()
    assert cfg.api_key == "env-key"
    assert cfg.cache_max_entries == 50
    assert cfg.log_level == "DEBUG"
    assert get_config() is cfg

    monkeypatch.delenv("NORTHPASS_API_KEY")
    with pytest.raises(ValueError):
        reload_config()


# ==================== Cleaners ====================


def test_parse_timestamp():
    assert parse_timestamp("2024-06-01T10:00:00Z") == datetime(2024, 6, 1, 10, tzinfo=timezone.utc)
    assert parse_timestamp("2024-06-01T10:00:00").tzinfo is timezone.utc
    assert parse_timestamp("") is None
    assert parse_timestamp("yesterday") is None


@pytest.mark.parametrize(
    "first, last, email, expected",
    [
        ("Ada", "Lovelace", "ada@x.com", "Ada Lovelace"),
        ("Ada", "", "ada@x.com", "Ada"),
        (" ", "", "ada@x.com", "ada@x.com"),
        ("", "", "", "User 12345678..."),
    ],
)
def test_person_display_name(first, last, email, expected):
    assert person_display_name(first, last, email, "1234567890") == expected


def test_clean_response_list_and_single():
    assert clean_response("group", {"data": [{"id": "g1", "attributes": {"name": "A"}}]}) == [
        {"id": "g1", "name": "A"}
    ]
    assert clean_response("group", {"data": {"id": "g1", "attributes": {}}}) == {"id": "g1", "name": ""}
    assert clean_response("unknown", {"data": []}) == {"data": []}


@pytest.mark.parametrize("raw, expected", [(None, True), ("false", False), ("0", False), ("yes", True)])
def test_use_properties_flag(monkeypatch, tmp_path, raw, expected):
    monkeypatch.setattr(config_module, "_CONFIG_FILE", tmp_path / "missing.json")
    monkeypatch.setenv("NORTHPASS_API_KEY", "env-key")
    if raw is None:
        monkeypatch.delenv("NORTHPASS_USE_PROPERTIES", raising=False)
    else:
        monkeypatch.setenv("NORTHPASS_USE_PROPERTIES", raw)
    cfg = reload_config()
    assert cfg.use_properties is expected

    services = NorthpassServices(cfg, CacheService(MemoryStore()), FailedCourseTracker())
    assert services.catalog.use_properties is expected
    asyncio.run(services.aclose())
