"""
Northpass LMS MCP Server -- Exposes Northpass certification and group tools.

Run with:
    fastmcp run NorthpassMCP/server.py:mcp
    python -m NorthpassMCP.server
    MCP_TRANSPORT=streamable-http northpass-mcp
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastmcp import Context, FastMCP
from fastmcp.exceptions import ToolError

from NorthpassMCP.cache import CacheService, FileStore
from NorthpassMCP.catalog import CourseCatalog
from NorthpassMCP.config import NorthpassConfig, get_config, reload_config as _reload_config
from NorthpassMCP.failed_courses import FailedCourseTracker
from NorthpassMCP.groups import GroupService
from NorthpassMCP.logging_config import configure_logging
from NorthpassMCP.request import NorthpassAPIError, NorthpassAuthError, NorthpassClient
from NorthpassMCP.transcripts import TranscriptPipeline, analyze_course_validation

logger = logging.getLogger(__name__)


class NorthpassServices:
    """Everything a tool call needs, built once per server run."""

    def __init__(self, config: NorthpassConfig, cache: CacheService, tracker: FailedCourseTracker):
        self.config = config
        self.cache = cache
        self.tracker = tracker
        self.client = NorthpassClient(config)
        self.catalog = CourseCatalog(self.client, cache, tracker, use_properties=config.use_properties)
        self.pipeline = TranscriptPipeline(self.client, self.catalog)
        self.groups = GroupService(self.client, cache)

    @classmethod
    def from_config(cls, config: NorthpassConfig) -> "NorthpassServices":
        cache = CacheService(FileStore(config.cache_dir, config.cache_max_entries))
        return cls(config, cache, FailedCourseTracker.with_known_failures())

    async def reconnect(self, config: NorthpassConfig) -> "NorthpassServices":
        """Swap in a new client for a new config; cache and tracker carry over."""
        await self.aclose()
        return NorthpassServices(config, self.cache, self.tracker)

    async def aclose(self) -> None:
        await self.client.aclose()


@asynccontextmanager
async def lifespan(server):
    """Build the client, cache and services once; close the HTTP client on shutdown."""
    config = get_config()
    configure_logging(config.log_level)
    state = {"services": NorthpassServices.from_config(config)}
    removed = state["services"].cache.clear_expired()
    logger.info("Northpass MCP ready (%s, %d expired cache entries removed)", config.api_base_url, removed)
    try:
        yield state
    finally:
        await state["services"].aclose()


mcp = FastMCP(
    name="Northpass LMS",
    lifespan=lifespan,
    instructions=(
        "Northpass LMS API server for partner certification tracking. "
        "Reconciles user transcripts into valid certifications with NPCU "
        "(certification unit) totals, and manages partner groups: lookup, "
        "creation, membership and merges."
    ),
)


def _services(ctx: Context) -> NorthpassServices:
    return ctx.request_context.lifespan_context["services"]


def _handle_error(e: Exception) -> None:
    """Convert API/HTTP errors into MCP ToolErrors."""
    if isinstance(e, NorthpassAuthError):
        raise ToolError(f"AUTH FAILED - {'; '.join(e.messages)}\n\n{e.help_text}")
    if isinstance(e, NorthpassAPIError):
        raise ToolError(f"Northpass API error: {'; '.join(e.messages)}")
    raise ToolError(f"Request failed: {e}")


# ==================== Certification Tools ====================


@mcp.tool(
    description=(
        "Reconcile one user's transcript into certifications. "
        "Returns each valid certification (NPCU, expiry, product category) plus "
        "total NPCU and per-category breakdown. Expired certifications are listed "
        "but do not count towards totals."
    ),
    tags={"certifications"},
)
async def user_certifications(user_id: str, ctx: Context) -> dict:
    try:
        report = await _services(ctx).pipeline.get_user_certifications(user_id)
        return report.to_dict()
    except Exception as e:
        _handle_error(e)


@mcp.tool(
    description=(
        "Certification report for every member of a partner group. "
        "Pass the group name or id. Returns per-user reports, company totals "
        "and a course-validation summary. Slow for large groups."
    ),
    tags={"certifications", "groups"},
)
async def partner_group_report(group: str, ctx: Context) -> dict:
    services = _services(ctx)
    try:
        found = await services.groups.find_group_by_id(group) or await services.groups.find_group_by_name(group)
        if found is None:
            raise ToolError(f"Group not found: '{group}'")
        users = await services.groups.get_group_users(found["id"])
        reports = []
        async for event in services.pipeline.iter_users(users):
            reports.append(event.report)
            await ctx.report_progress(progress=event.index, total=event.total)
        return {
            "group": found,
            "totalNPCU": sum(r.total_npcu for r in reports),
            "certifiedUsers": sum(1 for r in reports if r.certification_count > 0),
            "validation": analyze_course_validation(reports, services.catalog),
            "users": [r.to_dict() for r in reports],
        }
    except ToolError:
        raise
    except Exception as e:
        _handle_error(e)


@mcp.tool(
    description="NPCU (0, 1 or 2) for one course, with the source the value came from.",
    tags={"certifications"},
)
async def course_npcu(course_id: str, ctx: Context, course_name: str = "") -> dict:
    try:
        npcu, source = await _services(ctx).catalog.resolve_npcu(course_id, course_name)
        return {"courseId": course_id, "npcu": npcu, "source": source.value}
    except Exception as e:
        _handle_error(e)


# ==================== Group Tools ====================


@mcp.tool(
    description="Find a group by id or by exact (case-insensitive) name.",
    tags={"groups"},
)
async def find_group(group: str, ctx: Context) -> dict:
    groups = _services(ctx).groups
    try:
        found = await groups.find_group_by_id(group) or await groups.find_group_by_name(group)
    except Exception as e:
        _handle_error(e)
    if found is None:
        raise ToolError(f"Group not found: '{group}'")
    return found


@mcp.tool(
    description="Create a group. If a group with that name exists, it is returned instead.",
    tags={"groups"},
)
async def create_group(name: str, ctx: Context) -> dict:
    try:
        return await _services(ctx).groups.create_group(name)
    except Exception as e:
        _handle_error(e)


@mcp.tool(
    description=(
        "Add people (by person id) to a group. People already in the group are "
        "skipped, so repeating the call is safe."
    ),
    tags={"groups"},
)
async def add_people_to_group(group_id: str, person_ids: list[str], ctx: Context) -> dict:
    try:
        added = await _services(ctx).groups.add_people_to_group(group_id, person_ids)
        return {"groupId": group_id, "added": added, "skipped": len(set(person_ids)) - len(added)}
    except Exception as e:
        _handle_error(e)


@mcp.tool(
    description=(
        "Merge source groups into a target group: members are copied to the target, "
        "then the source groups are deleted. Reports fetch/move/delete failures separately."
    ),
    tags={"groups"},
)
async def merge_groups(target_id: str, source_ids: list[str], ctx: Context) -> dict:
    try:
        result = await _services(ctx).groups.merge_groups(target_id, source_ids)
        return result.to_dict()
    except Exception as e:
        _handle_error(e)


@mcp.tool(
    description=(
        "People whose email is on one of the given domains (e.g. 'acme.com') "
        "but who are not members of the group."
    ),
    tags={"groups"},
)
async def missing_domain_users(group_id: str, domains: list[str], ctx: Context) -> dict:
    try:
        people = await _services(ctx).groups.find_missing_domain_users(group_id, domains)
        return {"groupId": group_id, "count": len(people), "people": people}
    except Exception as e:
        _handle_error(e)


# ==================== Maintenance Tools ====================


@mcp.tool(
    description="Check that the configured API key can reach the Northpass API.",
    tags={"maintenance"},
)
async def check_connection(ctx: Context) -> dict:
    services = _services(ctx)
    ok = await services.client.test_connection()
    return {"connected": ok, "baseUrl": services.config.api_base_url}


@mcp.tool(
    description="Cache hit/miss counters and entry counts.",
    tags={"maintenance"},
)
async def cache_stats(ctx: Context) -> dict:
    return _services(ctx).cache.get_stats()


@mcp.tool(
    description=(
        "Clear cached API data. Pass a cache type (e.g. 'course_catalog', "
        "'course_npcu', 'group_by_name') to clear only that type, or 'expired'."
    ),
    tags={"maintenance"},
)
async def clear_cache(ctx: Context, cache_type: str | None = None) -> dict[str, Any]:
    cache = _services(ctx).cache
    if cache_type is None:
        return {"cleared": cache.clear_all()}
    if cache_type == "expired":
        return {"cleared": cache.clear_expired()}
    return {"cleared": cache.clear_by_type(cache_type), "type": cache_type}


@mcp.tool(
    description="Courses known to fail validation, counted by failure reason.",
    tags={"maintenance"},
)
async def failed_course_stats(ctx: Context, include_records: bool = False) -> dict:
    tracker = _services(ctx).tracker
    stats = tracker.get_stats()
    if include_records:
        stats["records"] = tracker.export()
    return stats


@mcp.tool(
    description="Reload config.json / environment variables, e.g. after rotating the API key.",
    tags={"maintenance"},
)
async def reload_config(ctx: Context) -> dict:
    state = ctx.request_context.lifespan_context
    try:
        config = _reload_config()
    except ValueError as e:
        raise ToolError(str(e))
    state["services"] = await state["services"].reconnect(config)
    return {"status": "reloaded", "baseUrl": config.api_base_url}


# ==================== Entry Point ====================


def main():
    """Run the MCP server. Set MCP_TRANSPORT=streamable-http for HTTP mode."""
    transport = os.environ.get("MCP_TRANSPORT", "stdio")
    host = os.environ.get("MCP_HOST", "127.0.0.1")
    if transport == "stdio":
        mcp.run(transport=transport)
    else:
        mcp.run(transport=transport, host=host)


if __name__ == "__main__":
    main()
