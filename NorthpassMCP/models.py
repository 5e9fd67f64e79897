"""Domain records built from cleaned Northpass responses."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .cleaners import parse_timestamp


class CourseStatus(str, Enum):
    LIVE = "live"
    ARCHIVED = "archived"


class NpcuSource(str, Enum):
    """Where an NPCU value came from. ESTIMATED marks the name-heuristic fallback."""
    PROPERTIES = "properties"
    BULK_PROPERTIES = "bulk_properties"
    OVERRIDE = "override"
    LEARNING_PATH = "learning_path"
    ESTIMATED = "estimated"
    DEFAULT = "default"


@dataclass(frozen=True)
class CourseInfo:
    course_id: str
    name: str
    status: CourseStatus
    learning_path_component: bool = False

    def to_dict(self) -> dict:
        return {
            "course_id": self.course_id,
            "name": self.name,
            "status": self.status.value,
            "learning_path_component": self.learning_path_component,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CourseInfo":
        return cls(
            course_id=data["course_id"],
            name=data.get("name") or "",
            status=CourseStatus(data["status"]),
            learning_path_component=bool(data.get("learning_path_component", False)),
        )


@dataclass(frozen=True)
class TranscriptItem:
    id: str
    resource_id: str | None
    resource_type: str | None
    name: str
    progress_status: str | None
    completed_at: datetime | None
    enrolled_at: datetime | None = None
    started_at: datetime | None = None
    attempt_number: int | None = None
    certificate_url: str | None = None

    @classmethod
    def from_cleaned(cls, data: dict) -> "TranscriptItem":
        return cls(
            id=data["id"],
            resource_id=data.get("resource_id"),
            resource_type=data.get("resource_type"),
            name=data.get("name") or "Unknown Course",
            progress_status=data.get("progress_status"),
            completed_at=parse_timestamp(data.get("completed_at")),
            enrolled_at=parse_timestamp(data.get("enrolled_at")),
            started_at=parse_timestamp(data.get("started_at")),
            attempt_number=data.get("attempt_number"),
            certificate_url=data.get("certificate_url"),
        )


@dataclass
class Certification:
    resource_id: str
    name: str
    npcu: int
    npcu_source: NpcuSource
    completed_at: datetime
    expiry_date: datetime
    is_expired: bool
    is_valid_course: bool
    course_status: CourseStatus
    category: str
    certificate_url: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["npcu_source"] = self.npcu_source.value
        data["course_status"] = self.course_status.value
        data["completed_at"] = self.completed_at.isoformat()
        data["expiry_date"] = self.expiry_date.isoformat()
        return data


@dataclass
class CategoryStats:
    count: int = 0
    npcu: int = 0
    courses: list[str] = field(default_factory=list)


@dataclass
class UserCertificationReport:
    user_id: str
    certifications: list[Certification] = field(default_factory=list)
    total_npcu: int = 0
    certification_count: int = 0
    category_breakdown: dict[str, CategoryStats] = field(default_factory=dict)
    total_items: int = 0
    excluded_count: int = 0
    name: str | None = None
    email: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "name": self.name,
            "email": self.email,
            "totalNPCU": self.total_npcu,
            "certificationCount": self.certification_count,
            "totalItems": self.total_items,
            "excludedCount": self.excluded_count,
            "categoryBreakdown": {k: asdict(v) for k, v in self.category_breakdown.items()},
            "certifications": [c.to_dict() for c in self.certifications],
            "error": self.error,
        }


@dataclass(frozen=True)
class ProgressEvent:
    """One user finished processing in a batch run."""
    index: int
    total: int
    user_id: str
    report: UserCertificationReport


@dataclass
class MergeResult:
    target_id: str
    moved_person_ids: list[str] = field(default_factory=list)
    deleted_group_ids: list[str] = field(default_factory=list)
    fetch_errors: list[dict] = field(default_factory=list)
    move_errors: list[dict] = field(default_factory=list)
    delete_errors: list[dict] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.fetch_errors or self.move_errors or self.delete_errors)

    def to_dict(self) -> dict:
        return {**asdict(self), "ok": self.ok}
