from __future__ import annotations

from typing import Iterable

from .models import ApproverSlot, Capability, Permit, PermitStatus, Role, User

ALL_CAPABILITIES: frozenset[Capability] = frozenset(Capability)

# Roles that approve any permit, independent of the names on it.
APPROVER_ROLES: frozenset[Role] = frozenset({Role.DEPARTMENT_HEAD, Role.SAFETY_OFFICER, Role.MAINTENANCE})

# Department heads, safety officers and maintenance may act as supervisors.
SUPERVISOR_ROLES: frozenset[Role] = APPROVER_ROLES | {Role.SUPERVISOR}

# Marker for actions anyone may invoke.
ANY = "any"


def _same_user(name: str | None, user: User) -> bool:
    return bool(name) and name == user.username


def resolve_capabilities(user: User, permit: Permit) -> frozenset[Capability]:
    """Derive what `user` may do with `permit`.

    Rules are additive; the result is the union of every rule that matches:
      - admin gets everything (and nothing else is evaluated)
      - requestor -> creator
      - department head / safety officer / maintenance role -> approver
      - supervisor role, plus the approver roles -> supervisor
      - named performer -> performer
      - named in any approver slot -> approver, whatever the role
    """
    if user.role == Role.ADMIN:
        return ALL_CAPABILITIES

    caps: set[Capability] = set()

    if _same_user(permit.requestor_name, user):
        caps.add(Capability.CREATOR)

    if user.role in APPROVER_ROLES:
        caps.add(Capability.APPROVER)

    if user.role in SUPERVISOR_ROLES:
        caps.add(Capability.SUPERVISOR)

    if _same_user(permit.performer_name, user):
        caps.add(Capability.PERFORMER)

    if slots_for(user, permit):
        caps.add(Capability.APPROVER)

    return frozenset(caps)


def has_permission(user: User, permit: Permit, required: Iterable[Capability | str]) -> bool:
    required = list(required)
    if ANY in required:
        return True
    caps = resolve_capabilities(user, permit)
    return any(Capability(r) in caps for r in required)


def can_edit(user: User, permit: Permit) -> bool:
    if user.role == Role.ADMIN:
        return True
    if permit.status != PermitStatus.DRAFT:
        return False
    return _same_user(permit.requestor_name, user)


def can_approve(user: User, permit: Permit) -> bool:
    if permit.status != PermitStatus.PENDING:
        return False
    caps = resolve_capabilities(user, permit)
    return Capability.APPROVER in caps or Capability.ADMIN in caps


def slots_for(user: User, permit: Permit) -> list[ApproverSlot]:
    """Approver slots on `permit` that name `user`."""
    return [s for s in ApproverSlot if _same_user(permit.assignee(s), user)]


def required_slots(permit: Permit) -> list[ApproverSlot]:
    # Any populated slot is required, the safety officer included.
    return [s for s in ApproverSlot if permit.assignee(s)]


def pending_slots(permit: Permit) -> list[ApproverSlot]:
    return [s for s in required_slots(permit) if not permit.approved_by(s)]


def all_approvals_received(permit: Permit) -> bool:
    required = required_slots(permit)
    return bool(required) and all(permit.approved_by(s) for s in required)
