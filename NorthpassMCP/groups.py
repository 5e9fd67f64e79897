"""
Group membership operations.

Lookups go through the CacheService; every mutation invalidates the group
cache types so a later lookup sees the change.
"""

import logging
from typing import Any, Iterable

from . import endpoints
from .cache import CacheService
from .models import MergeResult
from .request import NorthpassAPIError, NorthpassClient, NorthpassConflictError, NorthpassNotFoundError

logger = logging.getLogger(__name__)

GROUP_CACHE_TTL = 10 * 60
GROUP_CACHE_TYPES = ("group_by_name", "group_by_id", "group_members")
REMOVE_CHUNK_SIZE = 50


def _people_payload(person_ids: Iterable[str]) -> dict:
    return {"data": [{"type": "people", "id": str(pid)} for pid in person_ids]}


class GroupService:
    """Find, create, fill and merge Northpass groups."""

    def __init__(self, client: NorthpassClient, cache: CacheService) -> None:
        self._client = client
        self._cache = cache
        self.find_group_by_name = cache.wrap(self._find_group_by_name, "group_by_name", GROUP_CACHE_TTL)
        self.find_group_by_id = cache.wrap(self._find_group_by_id, "group_by_id", GROUP_CACHE_TTL)
        self.get_group_member_ids = cache.wrap(self._get_group_member_ids, "group_members", GROUP_CACHE_TTL)

    def invalidate(self) -> None:
        for cache_type in GROUP_CACHE_TYPES:
            self._cache.clear_by_type(cache_type)

    # ==================== Lookups ====================

    async def list_groups(self) -> list[dict]:
        return [
            group
            async for group in (
                self._client.request("listGroups")
                .get(endpoints.GROUPS)
                .params({"limit": 100})
                .cleaner("group")
                .pages()
            )
        ]

    async def _find_group_by_name(self, name: str) -> dict | None:
        """Case-insensitive exact match over every page of groups."""
        wanted = name.strip().lower()
        checked = 0
        pages = (
            self._client.request("listGroups")
            .get(endpoints.GROUPS)
            .params({"limit": 100})
            .cleaner("group")
            .pages()
        )
        async for group in pages:
            checked += 1
            if group["name"].strip().lower() == wanted:
                logger.info("Found group %s (%s)", group["name"], group["id"])
                return group
        logger.info("Group %r not found after checking %d groups", name, checked)
        return None

    async def _find_group_by_id(self, group_id: str) -> dict | None:
        try:
            return await (
                self._client.request("getGroup")
                .get(endpoints.GROUP.format(group_id=group_id))
                .cleaner("group")
                .execute()
            )
        except NorthpassNotFoundError:
            return None

    async def _get_group_member_ids(self, group_id: str) -> list[str]:
        pages = (
            self._client.request("listGroupMemberships")
            .get(endpoints.GROUP_MEMBERSHIPS.format(group_id=group_id))
            .params({"limit": 100})
            .cleaner("membership")
            .pages()
        )
        member_ids: list[str] = []
        async for membership in pages:
            person_id = membership.get("person_id")
            if person_id and person_id not in member_ids:
                member_ids.append(person_id)
        return member_ids

    async def get_group_users(self, group_id: str) -> list[dict]:
        """Full person records for every member; people that fail to load are skipped."""
        users = []
        for person_id in await self.get_group_member_ids(group_id):
            try:
                users.append(await self.get_person(person_id))
            except NorthpassAPIError as e:
                logger.warning("Could not get details for person %s: %s", person_id, e)
        logger.info("Group %s has %d users", group_id, len(users))
        return users

    async def get_person(self, person_id: str) -> dict:
        return await (
            self._client.request("getPerson")
            .get(endpoints.PERSON.format(person_id=person_id))
            .cleaner("person")
            .execute()
        )

    async def find_person_by_email(self, email: str) -> dict | None:
        people = await (
            self._client.request("findPersonByEmail")
            .get(endpoints.PEOPLE)
            .params({"filter[email][eq]": email.strip()})
            .cleaner("person")
            .execute()
        )
        wanted = email.strip().lower()
        for person in people or []:
            if person["email"].lower() == wanted:
                return person
        return None

    async def search_people_by_domain(self, domain: str) -> list[dict]:
        """People whose email ends with ``@domain``."""
        domain = domain.strip().lower().lstrip("@")
        suffix = f"@{domain}"
        pages = (
            self._client.request("searchPeopleByDomain")
            .get(endpoints.PEOPLE)
            .params({"filter[email][cont]": suffix, "limit": 100})
            .cleaner("person")
            .pages()
        )
        return [p async for p in pages if p["email"].lower().endswith(suffix)]

    async def find_missing_domain_users(self, group_id: str, domains: Iterable[str]) -> list[dict]:
        """People on the given email domains who are not in the group."""
        members = set(await self.get_group_member_ids(group_id))
        missing: dict[str, dict] = {}
        for domain in domains:
            for person in await self.search_people_by_domain(domain):
                if person["id"] not in members:
                    missing.setdefault(person["id"], person)
        logger.info("Found %d people missing from group %s", len(missing), group_id)
        return list(missing.values())

    # ==================== Mutations ====================

    async def create_group(self, name: str) -> dict:
        """Create a group; if it already exists, return the existing one."""
        try:
            group = await (
                self._client.request("createGroup")
                .post(endpoints.GROUPS)
                .json_body({"data": {"type": "groups", "attributes": {"name": name}}})
                .cleaner("group")
                .execute()
            )
        except NorthpassConflictError:
            logger.info("Group %r already exists, looking it up", name)
            self._cache.clear_by_type("group_by_name")
            existing = await self.find_group_by_name(name)
            if existing is None:
                raise
            return existing
        self.invalidate()
        logger.info("Created group %s (%s)", group["name"], group["id"])
        return group

    async def update_group_name(self, group_id: str, name: str) -> dict:
        group = await (
            self._client.request("updateGroup")
            .patch(endpoints.GROUP.format(group_id=group_id))
            .json_body({"data": {"type": "groups", "id": group_id, "attributes": {"name": name}}})
            .cleaner("group")
            .execute()
        )
        self.invalidate()
        return group

    async def delete_group(self, group_id: str) -> None:
        await self._client.request("deleteGroup").delete(endpoints.GROUP.format(group_id=group_id)).execute()
        self.invalidate()
        logger.info("Deleted group %s", group_id)

    async def delete_groups(self, group_ids: Iterable[str]) -> dict[str, str | None]:
        """Delete each group; maps id -> None on success or the error message."""
        results: dict[str, str | None] = {}
        for group_id in group_ids:
            try:
                await self.delete_group(group_id)
                results[group_id] = None
            except NorthpassAPIError as e:
                logger.warning("Failed to delete group %s: %s", group_id, e)
                results[group_id] = str(e)
        return results

    async def add_people_to_group(self, group_id: str, person_ids: Iterable[str]) -> list[str]:
        """
        Add people in one bulk call, skipping anyone already in the group.

        Safe to repeat: a second call with the same ids sends nothing. Returns
        the ids that were actually added.
        """
        existing = set(await self.get_group_member_ids(group_id))
        to_add = []
        for pid in person_ids:
            if pid not in existing and pid not in to_add:
                to_add.append(pid)
        if not to_add:
            logger.info("All people already in group %s", group_id)
            return []

        await (
            self._client.request("addPeopleToGroup")
            .post(endpoints.GROUP_PEOPLE.format(group_id=group_id))
            .json_body(_people_payload(to_add))
            .execute()
        )
        self.invalidate()
        logger.info("Added %d people to group %s (%d already present)", len(to_add), group_id, len(existing))
        return to_add

    async def remove_people_from_group(self, group_id: str, person_ids: Iterable[str]) -> dict[str, Any]:
        """Bulk remove in chunks; a failed chunk is retried one person at a time."""
        person_ids = list(dict.fromkeys(person_ids))
        removed: list[str] = []
        failed: list[dict] = []
        for start in range(0, len(person_ids), REMOVE_CHUNK_SIZE):
            chunk = person_ids[start:start + REMOVE_CHUNK_SIZE]
            try:
                await self._remove(group_id, chunk)
                removed.extend(chunk)
                continue
            except NorthpassAPIError as e:
                logger.warning("Bulk remove of %d people failed, trying one by one: %s", len(chunk), e)
            for pid in chunk:
                try:
                    await self._remove(group_id, [pid])
                    removed.append(pid)
                except NorthpassAPIError as e:
                    failed.append({"personId": pid, "error": str(e)})
        self.invalidate()
        return {"removed": removed, "failed": failed}

    async def _remove(self, group_id: str, person_ids: list[str]) -> None:
        await (
            self._client.request("removePeopleFromGroup")
            .delete(endpoints.GROUP_PEOPLE.format(group_id=group_id))
            .json_body(_people_payload(person_ids))
            .execute()
        )

    async def add_users_to_groups(self, group_ids: Iterable[str], person_ids: Iterable[str]) -> dict[str, Any]:
        """Add the same people to several groups; per-group results."""
        person_ids = list(person_ids)
        results: dict[str, Any] = {}
        for group_id in group_ids:
            try:
                added = await self.add_people_to_group(group_id, person_ids)
                results[group_id] = {"added": added, "error": None}
            except NorthpassAPIError as e:
                logger.warning("Failed to add people to group %s: %s", group_id, e)
                results[group_id] = {"added": [], "error": str(e)}
        return results

    async def merge_groups(self, target_id: str, source_ids: Iterable[str]) -> MergeResult:
        """
        Union every source group's members into the target, then delete the sources.

        Failures are recorded per stage and never undo completed work. A
        source is only deleted when its members were read and moved.
        """
        result = MergeResult(target_id=target_id)
        source_ids = [sid for sid in dict.fromkeys(source_ids) if sid != target_id]

        members_by_source: dict[str, list[str]] = {}
        for source_id in source_ids:
            try:
                members_by_source[source_id] = await self._get_group_member_ids(source_id)
            except NorthpassAPIError as e:
                logger.warning("Merge: could not read members of %s: %s", source_id, e)
                result.fetch_errors.append({"groupId": source_id, "error": str(e)})

        to_move = list(dict.fromkeys(pid for ids in members_by_source.values() for pid in ids))
        movable = list(members_by_source)
        if to_move:
            try:
                self._cache.clear_by_type("group_members")
                result.moved_person_ids = await self.add_people_to_group(target_id, to_move)
            except NorthpassAPIError as e:
                logger.warning("Merge: could not move members into %s: %s", target_id, e)
                result.move_errors.append({"groupId": target_id, "error": str(e)})
                movable = [sid for sid in movable if not members_by_source[sid]]

        for source_id, error in (await self.delete_groups(movable)).items():
            if error is None:
                result.deleted_group_ids.append(source_id)
            else:
                result.delete_errors.append({"groupId": source_id, "error": error})

        logger.info(
            "Merged %d groups into %s: %d people moved, %d groups deleted, ok=%s",
            len(source_ids), target_id, len(result.moved_person_ids),
            len(result.deleted_group_ids), result.ok,
        )
        return result
