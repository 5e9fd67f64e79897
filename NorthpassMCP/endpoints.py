"""Northpass REST endpoint paths (JSON:API, paginated via links.next)."""

PEOPLE = "/v2/people"
PERSON = "/v2/people/{person_id}"

GROUPS = "/v2/groups"
GROUP = "/v2/groups/{group_id}"
GROUP_MEMBERSHIPS = "/v2/groups/{group_id}/memberships"
GROUP_PEOPLE = "/v2/groups/{group_id}/relationships/people"

COURSES = "/v2/courses"
COURSE = "/v2/courses/{course_id}"

ALL_COURSE_PROPERTIES = "/v2/properties/courses"
COURSE_PROPERTIES = "/v2/properties/courses/{course_id}"

TRANSCRIPT = "/v2/transcripts/{person_id}"
