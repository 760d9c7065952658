from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Protocol

from .errors import (
    CommentRequired,
    InvalidTransition,
    PermitError,
    TransitionFailed,
    UnauthorizedTransition,
)
from .models import ApproverSlot, Capability, Permit, PermitStatus, Role, User
from .permissions import ANY, all_approvals_received, can_approve, has_permission, slots_for

logger = logging.getLogger(__name__)

CREATOR_OR_ADMIN = (Capability.CREATOR, Capability.ADMIN)
APPROVER_OR_ADMIN = (Capability.APPROVER, Capability.ADMIN)
ON_SITE = (Capability.SUPERVISOR, Capability.PERFORMER, Capability.ADMIN)


@dataclass(frozen=True)
class WorkflowAction:
    action_id: str
    label: str
    next_status: PermitStatus
    required: tuple[Capability | str, ...]
    requires_confirmation: bool = True
    confirmation_message: str = ""
    requires_comment: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.action_id,
            "label": self.label,
            "nextStatus": self.next_status.value,
            "permissions": [getattr(r, "value", r) for r in self.required],
            "requiresConfirmation": self.requires_confirmation,
            "confirmationMessage": self.confirmation_message,
            "requiresComment": self.requires_comment,
        }


@dataclass(frozen=True)
class WorkflowState:
    status: PermitStatus
    label: str
    description: str
    is_editable: bool
    actions: tuple[WorkflowAction, ...] = ()


@dataclass(frozen=True)
class TransitionRequest:
    permit_id: int | None
    action: WorkflowAction

    @property
    def action_id(self) -> str:
        return self.action.action_id

    @property
    def next_status(self) -> PermitStatus:
        return self.action.next_status


class TransitionApplier(Protocol):
    """Persists a status change plus its history entry, all-or-nothing."""

    def apply_transition(
        self, permit_id: int, next_status: PermitStatus, actor: User, comment: str | None = None
    ) -> Permit: ...


class SlotRecorder(TransitionApplier, Protocol):
    def record_approval(self, permit_id: int, slot: ApproverSlot, actor: User) -> Permit: ...


def _withdraw(message: str, required=CREATOR_OR_ADMIN) -> WorkflowAction:
    return WorkflowAction(
        "withdraw",
        "Withdraw",
        PermitStatus.DRAFT,
        required,
        confirmation_message=message,
    )


WORKFLOW: dict[PermitStatus, WorkflowState] = {
    PermitStatus.DRAFT: WorkflowState(
        PermitStatus.DRAFT,
        "Draft",
        "Permit is being prepared and can still be changed",
        True,
        (
            WorkflowAction(
                "submit",
                "Submit for approval",
                PermitStatus.PENDING,
                CREATOR_OR_ADMIN,
                confirmation_message="Submit this permit for review? It cannot be changed after submission.",
            ),
        ),
    ),
    PermitStatus.PENDING: WorkflowState(
        PermitStatus.PENDING,
        "Pending",
        "Permit is waiting for sign-off by the responsible approvers",
        False,
        (
            _withdraw("Withdraw this permit? It returns to draft and can be edited again."),
            WorkflowAction(
                "approve",
                "Approve",
                PermitStatus.APPROVED,
                APPROVER_OR_ADMIN,
                confirmation_message="Approve this permit?",
            ),
            WorkflowAction(
                "reject",
                "Reject",
                PermitStatus.REJECTED,
                APPROVER_OR_ADMIN,
                confirmation_message="Reject this permit? The requestor will have to revise it.",
                requires_comment=True,
            ),
        ),
    ),
    PermitStatus.APPROVED: WorkflowState(
        PermitStatus.APPROVED,
        "Approved",
        "Permit has been approved and can be activated",
        False,
        (
            _withdraw("Withdraw this permit? It returns to draft.", required=(ANY,)),
            WorkflowAction(
                "activate",
                "Activate",
                PermitStatus.ACTIVE,
                (ANY,),
                confirmation_message="Activate this permit? Work may start once it is active.",
            ),
        ),
    ),
    PermitStatus.ACTIVE: WorkflowState(
        PermitStatus.ACTIVE,
        "Active",
        "Permit is active and work may be carried out",
        False,
        (
            WorkflowAction(
                "complete",
                "Complete permit",
                PermitStatus.COMPLETED,
                ON_SITE,
                confirmation_message="Mark this permit as completed?",
            ),
            WorkflowAction(
                "suspend",
                "Suspend",
                PermitStatus.SUSPENDED,
                ON_SITE,
                confirmation_message="Suspend this permit? Work must stop until it is reactivated.",
            ),
        ),
    ),
    PermitStatus.SUSPENDED: WorkflowState(
        PermitStatus.SUSPENDED,
        "Suspended",
        "Work is on hold",
        False,
        (
            WorkflowAction(
                "activate",
                "Resume",
                PermitStatus.ACTIVE,
                (Capability.SUPERVISOR, Capability.ADMIN),
                confirmation_message="Resume work under this permit?",
            ),
            _withdraw("Withdraw this permit? It returns to draft."),
        ),
    ),
    PermitStatus.COMPLETED: WorkflowState(
        PermitStatus.COMPLETED,
        "Completed",
        "Permit was completed",
        False,
    ),
    PermitStatus.EXPIRED: WorkflowState(
        PermitStatus.EXPIRED,
        "Expired",
        "Permit validity has ended",
        False,
    ),
    PermitStatus.REJECTED: WorkflowState(
        PermitStatus.REJECTED,
        "Rejected",
        "Permit was rejected",
        False,
        (
            WorkflowAction(
                "withdraw",
                "Revise",
                PermitStatus.DRAFT,
                CREATOR_OR_ADMIN,
                requires_confirmation=False,
            ),
        ),
    ),
}

WORKFLOW_STEPS: tuple[PermitStatus, ...] = (
    PermitStatus.DRAFT,
    PermitStatus.PENDING,
    PermitStatus.APPROVED,
    PermitStatus.ACTIVE,
    PermitStatus.COMPLETED,
)


def workflow_state(status: PermitStatus) -> WorkflowState:
    return WORKFLOW[PermitStatus(status)]


def status_label(status: PermitStatus) -> str:
    return workflow_state(status).label


def defined_actions(status: PermitStatus) -> tuple[WorkflowAction, ...]:
    return workflow_state(status).actions


def available_actions(user: User, permit: Permit) -> list[WorkflowAction]:
    """Actions the table defines for the permit's status that `user` may invoke."""
    return [a for a in defined_actions(permit.status) if has_permission(user, permit, a.required)]


def find_action(status: PermitStatus, action_id: str) -> WorkflowAction:
    for a in defined_actions(status):
        if a.action_id == action_id:
            return a
    raise InvalidTransition(f"Action '{action_id}' is not available for {PermitStatus(status).value} permits")


def authorize(user: User, permit: Permit, action_id: str) -> TransitionRequest:
    action = find_action(permit.status, action_id)
    if not has_permission(user, permit, action.required):
        raise UnauthorizedTransition(f"Forbidden: '{action_id}' requires one of {', '.join(getattr(r, 'value', r) for r in action.required)}")
    return TransitionRequest(permit_id=permit.id, action=action)


def execute_transition(
    user: User,
    permit: Permit,
    action_id: str,
    applier: TransitionApplier,
    *,
    comment: str | None = None,
    confirm: Callable[[WorkflowAction], bool] | None = None,
) -> Permit | None:
    """Validate and apply one workflow action.

    Returns the updated permit, or None when the action needs confirmation and
    `confirm` is missing or declines. `permit` itself is never modified; on
    collaborator failure a TransitionFailed is raised and nothing is committed.
    """
    try:
        req = authorize(user, permit, action_id)
    except PermitError as e:
        logger.warning("transition %s on permit %s refused for %s: %s", action_id, permit.id, user.username, e.detail)
        raise

    action = req.action
    comment = (comment or "").strip() or None
    if action.requires_comment and not comment:
        raise CommentRequired(f"A comment is required to {action.label.lower()} a permit")

    if action.requires_confirmation and (confirm is None or not confirm(action)):
        logger.info("transition %s on permit %s not confirmed by %s", action_id, permit.id, user.username)
        return None

    try:
        updated = applier.apply_transition(req.permit_id, req.next_status, user, comment)
    except PermitError:
        raise
    except Exception as e:
        logger.exception("apply_transition failed for permit %s (%s -> %s)", permit.id, permit.status.value, req.next_status.value)
        raise TransitionFailed(f"Could not apply '{action_id}': {e}") from e

    logger.info(
        "permit %s: %s -> %s by %s", permit.id, permit.status.value, updated.status.value, user.username
    )
    return updated


def sign_off(user: User, permit: Permit, slot: ApproverSlot, store: SlotRecorder) -> Permit:
    """Record one approver slot's sign-off.

    Once every required slot has signed, the permit moves to approved through the
    regular `approve` transition.
    """
    if not can_approve(user, permit):
        if permit.status != PermitStatus.PENDING:
            raise InvalidTransition("Only pending permits can be signed off")
        raise UnauthorizedTransition("Forbidden: approver capability required")

    slot = ApproverSlot(slot)
    if not permit.assignee(slot):
        raise InvalidTransition(f"No {slot.value} approver is assigned to this permit")
    if user.role != Role.ADMIN and slot not in slots_for(user, permit):
        raise UnauthorizedTransition(f"Forbidden: you are not the assigned {slot.value} approver")

    try:
        updated = store.record_approval(permit.id, slot, user)
    except PermitError:
        raise
    except Exception as e:
        logger.exception("record_approval failed for permit %s slot %s", permit.id, slot.value)
        raise TransitionFailed(f"Could not record {slot.value} approval: {e}") from e

    logger.info("permit %s: %s sign-off by %s", permit.id, slot.value, user.username)

    if all_approvals_received(updated):
        return execute_transition(
            user,
            updated,
            "approve",
            store,
            comment="All required approvals received",
            confirm=lambda _a: True,
        )
    return updated
