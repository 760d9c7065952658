from __future__ import annotations

import logging
from typing import Any

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from . import analysis, config, store
from .errors import PermitError
from .models import ApproverSlot, PermitStatus, Role, User
from .permissions import all_approvals_received, can_approve, can_edit, pending_slots, resolve_capabilities
from .workflow import WORKFLOW_STEPS, available_actions, execute_transition, find_action, sign_off, status_label

logger = logging.getLogger(__name__)

app = FastAPI(title="Permit-to-Work MVP")
app.state.db_path = config.DB_PATH


@app.exception_handler(PermitError)
async def _permit_error_handler(request: Request, exc: PermitError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all so API clients get *some* error text instead of a blank 500."""
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": f"Unhandled error: {type(exc).__name__}: {exc}"},
    )


# --- Auth ---

# Users live in the SQLite DB; login issues a server-side session token (cookie).
# Roles are never client-controlled.


def _is_public_path(path: str) -> bool:
    return path in ("/login", "/logout", "/_health")


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        store.DB_PATH_CTX.set(request.app.state.db_path)
        request.state.user = None

        if not _is_public_path(str(request.url.path)):
            token = (request.cookies.get(config.SESSION_COOKIE) or "").strip()
            request.state.user = store.user_for_session(token)
            if request.state.user is None:
                # Don't raise inside middleware (can produce noisy exception groups).
                return JSONResponse(status_code=401, content={"detail": "Unauthorized"})

        return await call_next(request)


app.add_middleware(AuthMiddleware)


@app.on_event("startup")
def _startup() -> None:
    config.configure_logging()
    store.DB_PATH_CTX.set(app.state.db_path)
    store.init_db()


def current_user(request: Request) -> User:
    return request.state.user


def require_admin(user: User) -> None:
    if user.role != Role.ADMIN:
        raise HTTPException(status_code=403, detail="Forbidden: admin only")


def _user_dict(u: User) -> dict[str, Any]:
    return {"id": u.id, "username": u.username, "role": u.role.value}


def permit_form(
    permit_type: str | None = Form(None),
    location: str | None = Form(None),
    description: str | None = Form(None),
    department: str | None = Form(None),
    requestor_name: str | None = Form(None),
    performer_name: str | None = Form(None),
    department_head: str | None = Form(None),
    safety_officer: str | None = Form(None),
    maintenance_approver: str | None = Form(None),
    identified_hazards: str | None = Form(None),
    additional_comments: str | None = Form(None),
    start_date: str | None = Form(None),
    end_date: str | None = Form(None),
) -> dict[str, Any]:
    data = dict(locals())
    return {k: v for k, v in data.items() if v is not None}


def _permit_view(user: User, permit) -> dict[str, Any]:
    out = permit.to_dict()
    out.update(
        statusLabel=status_label(permit.status),
        capabilities=sorted(c.value for c in resolve_capabilities(user, permit)),
        availableActions=[a.to_dict() for a in available_actions(user, permit)],
        canEdit=can_edit(user, permit),
        canApprove=can_approve(user, permit),
        allApprovalsReceived=all_approvals_received(permit),
        pendingApprovals=[s.value for s in pending_slots(permit)],
    )
    return out


# --- Routes ---


@app.get("/_health")
def health():
    return {"ok": True}


@app.post("/login")
def login_run(username: str = Form(""), password: str = Form("")):
    username = (username or "").strip()
    if not username:
        raise HTTPException(status_code=400, detail="username is required")

    user = store.verify_login(username, password)
    if user is None:
        raise HTTPException(status_code=403, detail="Invalid credentials")

    token = store.create_session(user)
    resp = JSONResponse(content=_user_dict(user))
    resp.set_cookie(config.SESSION_COOKIE, token, httponly=True, samesite="lax")
    return resp


@app.post("/logout")
def logout(request: Request):
    token = (request.cookies.get(config.SESSION_COOKIE) or "").strip()
    if token:
        store.revoke_session(token)
    resp = JSONResponse(content={"ok": True})
    resp.delete_cookie(config.SESSION_COOKIE)
    return resp


@app.get("/me")
def me(user: User = Depends(current_user)):
    return _user_dict(user)


@app.get("/api/workflow")
def workflow_steps():
    return {"steps": [{"status": s.value, "label": status_label(s)} for s in WORKFLOW_STEPS]}


@app.get("/api/permits/stats")
def permits_stats():
    return store.permit_stats()


@app.get("/api/permits")
def permits_list(status: PermitStatus | None = None, q: str | None = None, user: User = Depends(current_user)):
    return [_permit_view(user, p) for p in store.list_permits(status=status, q=q)]


@app.post("/api/permits", status_code=201)
def permit_create(data: dict[str, Any] = Depends(permit_form), user: User = Depends(current_user)):
    # Non-admins always file permits under their own name.
    if user.role != Role.ADMIN or not data.get("requestor_name"):
        data["requestor_name"] = user.username
    permit = store.create_permit(data, user)
    return _permit_view(user, permit)


@app.get("/api/permits/{permit_id}")
def permit_view(permit_id: int, user: User = Depends(current_user)):
    return _permit_view(user, store.get_permit(permit_id))


@app.patch("/api/permits/{permit_id}")
def permit_update(permit_id: int, data: dict[str, Any] = Depends(permit_form), user: User = Depends(current_user)):
    permit = store.get_permit(permit_id)
    if not can_edit(user, permit):
        raise HTTPException(status_code=403, detail="Forbidden: only the requestor may edit a draft permit")
    if user.role != Role.ADMIN:
        # Ownership is fixed at creation; only admins may reassign it.
        data.pop("requestor_name", None)
    return _permit_view(user, store.update_permit(permit_id, data, user))


@app.delete("/api/permits/{permit_id}")
def permit_delete(permit_id: int, user: User = Depends(current_user)):
    require_admin(user)
    store.delete_permit(permit_id, user)
    return {"ok": True}


@app.get("/api/permits/{permit_id}/capabilities")
def permit_capabilities(permit_id: int, user: User = Depends(current_user)):
    permit = store.get_permit(permit_id)
    return {
        "capabilities": sorted(c.value for c in resolve_capabilities(user, permit)),
        "canEdit": can_edit(user, permit),
        "canApprove": can_approve(user, permit),
    }


@app.get("/api/permits/{permit_id}/actions")
def permit_actions(permit_id: int, user: User = Depends(current_user)):
    permit = store.get_permit(permit_id)
    return [a.to_dict() for a in available_actions(user, permit)]


@app.get("/api/permits/{permit_id}/history")
def permit_history(permit_id: int):
    return [h.to_dict() for h in store.get_permit(permit_id).status_history]


@app.post("/api/permits/{permit_id}/transitions/{action_id}")
def permit_transition(
    permit_id: int,
    action_id: str,
    comment: str = Form(""),
    confirmed: bool = Form(False),
    user: User = Depends(current_user),
):
    permit = store.get_permit(permit_id)
    updated = execute_transition(
        user,
        permit,
        action_id,
        store,
        comment=comment,
        confirm=lambda _action: confirmed,
    )
    if updated is None:
        action = find_action(permit.status, action_id)
        return JSONResponse(
            status_code=428,
            content={
                "detail": "Confirmation required",
                "action": action.action_id,
                "confirmationMessage": action.confirmation_message,
            },
        )
    return _permit_view(user, updated)


@app.post("/api/permits/{permit_id}/approvals/{slot}")
def permit_sign_off(permit_id: int, slot: ApproverSlot, user: User = Depends(current_user)):
    permit = store.get_permit(permit_id)
    return _permit_view(user, sign_off(user, permit, slot, store))


@app.post("/api/permits/{permit_id}/analyze")
def permit_analyze(permit_id: int):
    return analysis.send_for_analysis(store.get_permit(permit_id))


@app.get("/_analysis/status")
def analysis_status(url: str | None = None):
    return analysis.probe_webhook(url)


@app.get("/api/users")
def users_list(role: Role | None = None):
    return [_user_dict(u) for u in store.list_users(role)]


@app.post("/api/users", status_code=201)
def users_create(
    username: str = Form(""),
    role: Role = Form(Role.EMPLOYEE),
    password: str = Form(""),
    user: User = Depends(current_user),
):
    require_admin(user)
    return _user_dict(store.create_user(username, role, password, user.username))


@app.patch("/api/users/{username}/role")
def users_change_role(username: str, role: Role = Form(...), user: User = Depends(current_user)):
    require_admin(user)
    return _user_dict(store.update_user_role(username, role, user.username))


@app.patch("/api/users/{username}/password")
def users_set_password(username: str, password: str = Form(""), user: User = Depends(current_user)):
    require_admin(user)
    store.set_password(username, password, user.username)
    return {"ok": True}


@app.get("/audit")
def audit_list(record_id: str | None = None, limit: int = 200, user: User = Depends(current_user)):
    require_admin(user)
    return store.audit_entries(record_id=record_id, limit=limit)
