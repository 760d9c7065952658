from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    ADMIN = "admin"
    DEPARTMENT_HEAD = "department_head"
    SAFETY_OFFICER = "safety_officer"
    MAINTENANCE = "maintenance"
    SUPERVISOR = "supervisor"
    EMPLOYEE = "employee"


class Capability(str, Enum):
    CREATOR = "creator"
    APPROVER = "approver"
    SUPERVISOR = "supervisor"
    PERFORMER = "performer"
    ADMIN = "admin"


class PermitStatus(str, Enum):
    DRAFT = "draft"
    PENDING = "pending"
    APPROVED = "approved"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    REJECTED = "rejected"
    EXPIRED = "expired"


class PermitType(str, Enum):
    HOT_WORK = "hot_work"
    CONFINED_SPACE = "confined_space"
    ELECTRICAL = "electrical"
    CHEMICAL = "chemical"
    HEIGHT = "height"
    GENERAL = "general"

    @property
    def code_prefix(self) -> str:
        return _TYPE_PREFIX[self]


_TYPE_PREFIX: dict[PermitType, str] = {
    PermitType.HOT_WORK: "HW",
    PermitType.CONFINED_SPACE: "CS",
    PermitType.ELECTRICAL: "EL",
    PermitType.CHEMICAL: "CH",
    PermitType.HEIGHT: "HT",
    PermitType.GENERAL: "GN",
}


class ApproverSlot(str, Enum):
    """Named approver fields on a permit.

    Each slot maps to three permit attributes: who is assigned, whether they
    approved, and when.
    """

    DEPARTMENT_HEAD = "department_head"
    MAINTENANCE = "maintenance"
    SAFETY_OFFICER = "safety_officer"

    @property
    def assignee_field(self) -> str:
        return {
            ApproverSlot.DEPARTMENT_HEAD: "department_head",
            ApproverSlot.MAINTENANCE: "maintenance_approver",
            ApproverSlot.SAFETY_OFFICER: "safety_officer",
        }[self]

    @property
    def flag_field(self) -> str:
        return {
            ApproverSlot.DEPARTMENT_HEAD: "department_head_approval",
            ApproverSlot.MAINTENANCE: "maintenance_approval",
            ApproverSlot.SAFETY_OFFICER: "safety_officer_approval",
        }[self]

    @property
    def date_field(self) -> str:
        return self.flag_field + "_date"


# Fields that may not change once a permit has left draft.
IDENTITY_FIELDS = ("permit_code", "permit_type", "requestor_name")

EDITABLE_FIELDS = (
    "permit_type",
    "location",
    "description",
    "department",
    "requestor_name",
    "performer_name",
    "department_head",
    "safety_officer",
    "maintenance_approver",
    "identified_hazards",
    "additional_comments",
    "start_date",
    "end_date",
)


@dataclass
class User:
    username: str
    role: Role
    id: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "User":
        return cls(id=int(row["id"]), username=str(row["username"]), role=Role(row["role"]))


@dataclass
class StatusHistoryEntry:
    status: PermitStatus
    timestamp: str
    user_id: int | None = None
    username: str = ""
    comment: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "StatusHistoryEntry":
        return cls(
            status=PermitStatus(row["status"]),
            timestamp=str(row["at"]),
            user_id=int(row["user_id"]) if row["user_id"] is not None else None,
            username=str(row["username"] or ""),
            comment=row["comment"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "userId": self.user_id,
            "userName": self.username,
            "comment": self.comment,
        }


@dataclass
class Permit:
    status: PermitStatus = PermitStatus.DRAFT
    permit_type: PermitType = PermitType.GENERAL
    requestor_name: str = ""
    performer_name: str | None = None

    department_head: str | None = None
    safety_officer: str | None = None
    maintenance_approver: str | None = None

    department_head_approval: bool = False
    department_head_approval_date: str | None = None
    safety_officer_approval: bool = False
    safety_officer_approval_date: str | None = None
    maintenance_approval: bool = False
    maintenance_approval_date: str | None = None

    id: int | None = None
    permit_code: str = ""
    location: str = ""
    description: str = ""
    department: str = ""
    identified_hazards: str | None = None
    additional_comments: str | None = None
    start_date: str | None = None
    end_date: str | None = None

    created_at: str | None = None
    updated_at: str | None = None
    submitted_at: str | None = None
    submitted_by: int | None = None
    approved_at: str | None = None
    activated_at: str | None = None
    completed_at: str | None = None

    status_history: list[StatusHistoryEntry] = field(default_factory=list)

    def assignee(self, slot: ApproverSlot) -> str | None:
        return getattr(self, slot.assignee_field)

    def approved_by(self, slot: ApproverSlot) -> bool:
        return bool(getattr(self, slot.flag_field))

    @classmethod
    def from_row(cls, row: sqlite3.Row, history: list[StatusHistoryEntry] | None = None) -> "Permit":
        d = dict(row)
        return cls(
            id=int(d["id"]),
            permit_code=str(d["permit_code"]),
            permit_type=PermitType(d["permit_type"]),
            status=PermitStatus(d["status"]),
            location=d["location"] or "",
            description=d["description"] or "",
            department=d["department"] or "",
            requestor_name=d["requestor_name"] or "",
            performer_name=d["performer_name"],
            department_head=d["department_head"],
            safety_officer=d["safety_officer"],
            maintenance_approver=d["maintenance_approver"],
            department_head_approval=bool(d["department_head_approval"]),
            department_head_approval_date=d["department_head_approval_date"],
            safety_officer_approval=bool(d["safety_officer_approval"]),
            safety_officer_approval_date=d["safety_officer_approval_date"],
            maintenance_approval=bool(d["maintenance_approval"]),
            maintenance_approval_date=d["maintenance_approval_date"],
            identified_hazards=d["identified_hazards"],
            additional_comments=d["additional_comments"],
            start_date=d["start_date"],
            end_date=d["end_date"],
            created_at=d["created_at"],
            updated_at=d["updated_at"],
            submitted_at=d["submitted_at"],
            submitted_by=d["submitted_by"],
            approved_at=d["approved_at"],
            activated_at=d["activated_at"],
            completed_at=d["completed_at"],
            status_history=list(history or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "permitCode": self.permit_code,
            "type": self.permit_type.value,
            "status": self.status.value,
            "location": self.location,
            "description": self.description,
            "department": self.department,
            "requestorName": self.requestor_name,
            "performerName": self.performer_name,
            "departmentHead": self.department_head,
            "safetyOfficer": self.safety_officer,
            "maintenanceApprover": self.maintenance_approver,
            "departmentHeadApproval": self.department_head_approval,
            "departmentHeadApprovalDate": self.department_head_approval_date,
            "safetyOfficerApproval": self.safety_officer_approval,
            "safetyOfficerApprovalDate": self.safety_officer_approval_date,
            "maintenanceApproval": self.maintenance_approval,
            "maintenanceApprovalDate": self.maintenance_approval_date,
            "identifiedHazards": self.identified_hazards,
            "additionalComments": self.additional_comments,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "submittedAt": self.submitted_at,
            "submittedBy": self.submitted_by,
            "approvedAt": self.approved_at,
            "activatedAt": self.activated_at,
            "completedAt": self.completed_at,
            "statusHistory": [h.to_dict() for h in self.status_history],
        }
