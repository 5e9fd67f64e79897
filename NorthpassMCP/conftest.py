"""Shared fixtures: a scripted Northpass API behind httpx.MockTransport."""

import json

import httpx
import pytest

from .cache import CacheService, MemoryStore
from .catalog import CourseCatalog
from .config import NorthpassConfig
from .failed_courses import FailedCourseTracker
from .ratelimit import RateLimiter, RateProfile, RetryPolicy
from .request import NorthpassClient

BASE_URL = "https://api.test.northpass"

UNTHROTTLED = RateProfile(rate=10_000, window=1.0, min_delay=0.0)
NO_BACKOFF = RetryPolicy(base_delay=0.0, jitter=0.0)


def jsonapi(items, next_url=None):
    body = {"data": items, "links": {}}
    if next_url:
        body["links"]["next"] = next_url
    return body


def person(person_id, email, first="", last=""):
    return {
        "id": person_id,
        "type": "people",
        "attributes": {"email": email, "first_name": first, "last_name": last},
    }


def group(group_id, name):
    return {"id": group_id, "type": "groups", "attributes": {"name": name}}


def membership(membership_id, person_id):
    return {
        "id": membership_id,
        "type": "memberships",
        "relationships": {"person": {"data": {"id": person_id, "type": "people"}}},
    }


def course(course_id, name, status="live"):
    return {"id": course_id, "type": "courses", "attributes": {"name": name, "status": status}}


def properties(course_id, npcu):
    return {"id": course_id, "type": "course_properties", "attributes": {"properties": {"npcu": npcu}}}


def transcript_item(item_id, resource_id, name, completed_at, status="completed", resource_type="course"):
    return {
        "id": item_id,
        "type": "transcript_items",
        "attributes": {
            "resource_id": resource_id,
            "resource_type": resource_type,
            "name": name,
            "progress_status": status,
            "completed_at": completed_at,
        },
    }


class FakeNorthpass:
    """
    Route table for MockTransport keyed by (method, path).

    A route holds a list of responses served in order; the last one repeats.
    A response is ``(status, body)`` or a callable taking the httpx.Request.
    Unrouted requests get a JSON:API 404.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def add(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        responses = self.routes.get((request.method, request.url.path))
        if not responses:
            return httpx.Response(404, json={"errors": [{"detail": "Not found"}]})
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if callable(response):
            response = response(request)
        if isinstance(response, httpx.Response):
            return response
        status, body = response
        if body is None:
            return httpx.Response(status)
        return httpx.Response(status, json=body)

    def count(self, method, path):
        return sum(1 for r in self.calls if r.method == method and r.url.path == path)

    def bodies(self, method, path):
        return [json.loads(r.content) for r in self.calls if r.method == method and r.url.path == path]


@pytest.fixture
def fake():
    return FakeNorthpass()


@pytest.fixture
def config(tmp_path):
    return NorthpassConfig(api_key="test-key", base_url=BASE_URL, cache_dir=tmp_path / "cache")


@pytest.fixture
def client(fake, config):
    limiter = RateLimiter(UNTHROTTLED, UNTHROTTLED, NO_BACKOFF)
    return NorthpassClient(config, limiter=limiter, transport=httpx.MockTransport(fake.handler))


@pytest.fixture
def cache():
    return CacheService(MemoryStore())


@pytest.fixture
def tracker():
    return FailedCourseTracker()


@pytest.fixture
def catalog(client, cache, tracker):
    return CourseCatalog(client, cache, tracker, npcu_batch_delay=0)
