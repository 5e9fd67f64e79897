"""
Reference data for invalid, archived, test and special-case courses.

Pattern-based exclusion is preferred (it also catches future copies and
test courses); the id sets cover courses whose names do not give them away.
"""

# Case-insensitive substrings of course names that are never credited
EXCLUDED_NAME_PATTERNS = (
    "archived",
    "archive ",
    "- copy",
    "-copy",
    "samtest",
    "sam-test",
    "test course",
    "test end",
    "tester version",
    "testers version",
)

# Courses renamed "Archived - ..." (badges, demos, internal tests)
ARCHIVED_COURSE_IDS = frozenset({
    "99236fe4-2771-418c-a2a1-5ba54f495e2b",
    "b9bf48fa-4d50-43ca-b903-2a328bd2a7b7",
    "3fdec8f5-5436-4431-8eaa-130816b40380",
    "a5083a77-5afd-4a42-91a7-c787069ff632",
    "2514a844-cfbc-4cf4-a9b0-f2a3bd51cd7a",
    "b689a715-0c17-4b1d-bf17-e21ed88661d1",
    "70929ccb-07e5-4f54-a363-c1c30d97f4b0",
    "91937527-6d64-4864-8c5b-b16371a597a3",
    "2b2cfcd6-99eb-456c-8725-4271a20a25af",
    "65e15f10-9739-4bd0-bf33-7672be7ac4f0",
    "3272c1d4-f016-41cb-ab74-c0ee6c5d7564",
    "f53e9f18-dd78-46cb-b9d4-60b2ffe35ac3",
    "c1e71a55-f351-45b3-95d6-4945a3623be3",
    "bf44ed23-05c5-495a-9f70-af790ccde537",
    "d23e5b4d-2c88-412d-8265-bc5d6fa5da45",
    "c2d02e28-6f35-488a-bb2b-5f7ca57de67f",
    "4a58263a-256d-41aa-aba6-b1eba2a1eb4f",
    "9fb82cee-c405-4f5c-8ba1-0d4557a2cd50",
    "6bf95917-46b2-4e45-90eb-37bea19e7906",
    "d7cadbe4-5d69-49ba-8a5e-aa29e4fe4d8b",
    "11c0590c-8580-4809-bfc6-6e58a2c2993b",
    "41fcac02-1a59-4014-96ce-cb1073061370",
    "864f5b0d-0f41-411e-a21d-fbcbb12c51bb",
    "2ea9b403-30d2-472a-a214-653b88087352",
    "058d3061-1abe-4da6-9b97-08c144aa0b4a",
    "78115a07-8980-421e-95da-e02bb85c7f2b",
    "89751310-fd6f-4eaa-9eb6-66a0da57810f",
    "6b8dc316-7834-4236-a639-889bc4afc429",
    "6f12de10-9842-43fe-a9d1-c7ef74c34033",
    "3ca06ad2-7a9d-4b32-8591-4978d945a02b",
})

TEST_COURSE_IDS = frozenset({
    "96ad1471-66f3-4198-82a6-0414bee29741",  # Test course
    "2a1534f4-e21d-4228-8816-fd02c277a6c4",  # Test course for social redirections
    "22b4a88c-5164-4536-bacd-7416c3b0b1f2",  # Test End Screen
    "e80303f5-65d8-4dbe-9be8-0b99261bebd8",  # SamTest
    "9ede7685-57d6-4638-958b-17054d7c0042",  # Sam-Test
    "fdedc13b-ec0f-445c-93f3-c196139bfa6b",  # Sam-Test
})

# Confirmed 404 from both /v2/courses/{id} and /v2/properties/courses/{id}.
# Most were replaced by a "- COPY" version that does resolve.
DELETED_COURSES = {
    "87823010-6818-4e96-bf81-6034e1432a07": "Process Editor Certification for Process Manager",
    "61e143f6-7de3-4df1-94a2-0b2cf5369bec": "Certification: Nintex Document Generation Expert - Nintex DocGen for Salesforce",
    "a280c323-bb62-4d31-b874-0b2b7268058b": "Nintex DocGen for Salesforce Basics Certification",
    "1fce19b1-574d-465e-91d3-c5c39b07dcf0": "Certification: Nintex Process Automation Expert - Nintex for Office 365",
    "25b7fbde-d95b-4059-bcd3-d403e393c3fc": "Certification: Nintex Process Automation Practitioner - Nintex for Office 365",
    "f25b666f-1688-4607-9a91-e6585da7d7c7": "Nintex Automation for IT Developers",
    "f1c86637-b3fc-4868-b7ff-58e1131d4af1": "Certification: Nintex K2 Five for SharePoint Practitioner",
    "2f8d8387-8584-47ba-af03-725011d1fc45": "Certification: Nintex Automation K2 Power User",
    "e6298aca-b081-4187-9f69-3e06bede96c3": "Certification: Nintex Automation K2 Citizen Developer",
    "72f430e6-2cc1-4fad-abc9-f3e442714a8a": "Certification: K2 Cloud for SharePoint - Practitioner",
    "64441f15-9c11-4dee-a8dc-e234eb5345d9": "Automation Specialist II Certification for Nintex Automation Cloud",
    "bcc421e8-915e-4b92-b9ab-fab22a536055": "Automation Specialist I Certification for Nintex Automation Cloud",
    "04fb41ca-9ddb-4d58-8097-e3af83380a19": "Certification: Nintex Automation K2 Server Administrator",
    "83aeb601-18aa-4b72-8d44-79ba19b42956": "Certification: Nintex Automation K2 IT Developer",
    "dee0c7f6-0fd1-42e3-8416-458a1c206983": "Certification: Nintex Automation K2 Business Analyst",
    "dbfb9150-03b6-4a8f-a069-006f91e1c64b": "Certification: K2 Connect Five - Expert",
}

# Valid certifications that only exist as learning-path components: the
# catalog 404s them, but completing the path credits them.
LEARNING_PATH_COMPONENTS = {
    "4b39e4d2-2987-455e-9a61-a28979ffef83": {
        "name": "Nintex Certified Sales Professional for Partners",
        "npcu": 1,
        "parent_learning_path": "f08bdffa-f6f0-4f66-ab75-c755440c7673",
    },
}

# Learning-path sub-components that show up in transcripts but never earn credit
EXCLUDED_LEARNING_PATH_COMPONENTS: frozenset[str] = frozenset()

# Courses whose properties lookup returns 403 although their NPCU is known.
# Format: {"course-uuid": {"name": "...", "npcu": 1}}
KNOWN_NPCU_OVERRIDES: dict[str, dict] = {}


def should_exclude_course_by_name(course_name: str | None) -> bool:
    if not course_name:
        return False
    name = course_name.lower()
    return any(pattern in name for pattern in EXCLUDED_NAME_PATTERNS)


def is_excluded_course_id(course_id: str) -> bool:
    """Archived, test or known-deleted course ids."""
    return (
        course_id in ARCHIVED_COURSE_IDS
        or course_id in TEST_COURSE_IDS
        or course_id in DELETED_COURSES
    )


def should_skip_course(course_id: str, course_name: str | None) -> bool:
    """Should this course be ignored entirely for certification credit?"""
    return is_excluded_course_id(course_id) or should_exclude_course_by_name(course_name)


def learning_path_component(course_id: str) -> dict | None:
    return LEARNING_PATH_COMPONENTS.get(course_id)


def known_npcu_override(course_id: str) -> dict | None:
    return KNOWN_NPCU_OVERRIDES.get(course_id)
