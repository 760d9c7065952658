"""Seed the local SQLite DB with example permits.

Each permit is driven through the real workflow so its status history looks the
way it would after normal use.

Run:
  python3 -m ptw_mvp.seed.seed_demo

Then start the app:
  uvicorn ptw_mvp.app.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import logging

from ptw_mvp.app import config, store
from ptw_mvp.app.models import ApproverSlot, PermitStatus
from ptw_mvp.app.workflow import execute_transition, sign_off

logger = logging.getLogger(__name__)


def _yes(_action) -> bool:
    return True


def main() -> None:
    config.configure_logging()
    store.init_db()

    admin = store.get_user_by_username("admin")
    worker = store.get_user_by_username("worker")
    dhead = store.get_user_by_username("dhead")
    maint = store.get_user_by_username("maint")
    supervisor = store.get_user_by_username("super")

    base = {
        "department": "Production",
        "department_head": dhead.username,
        "maintenance_approver": maint.username,
        "performer_name": worker.username,
    }

    samples = [
        (
            {
                "permit_type": "hot_work",
                "location": "Hall 3, welding bay",
                "description": "Weld repair on conveyor frame",
                "identified_hazards": "Sparks, flammable dust",
                "start_date": "2026-03-02T07:00:00",
                "end_date": "2026-03-02T16:00:00",
            },
            PermitStatus.COMPLETED,
        ),
        (
            {
                "permit_type": "confined_space",
                "location": "Tank T-104",
                "description": "Internal inspection of storage tank",
                "identified_hazards": "Oxygen deficiency, residual solvent",
                "safety_officer": "safety",
            },
            PermitStatus.PENDING,
        ),
        (
            {
                "permit_type": "electrical",
                "location": "Substation B",
                "description": "Replace breaker in panel 4",
            },
            PermitStatus.ACTIVE,
        ),
        (
            {
                "permit_type": "height",
                "location": "Warehouse roof",
                "description": "Gutter cleaning",
            },
            PermitStatus.DRAFT,
        ),
    ]

    for fields, target in samples:
        permit = store.create_permit({**base, **fields, "requestor_name": worker.username}, worker)
        if target == PermitStatus.DRAFT:
            continue

        permit = execute_transition(worker, permit, "submit", store, confirm=_yes)
        if target == PermitStatus.PENDING:
            continue

        permit = sign_off(dhead, permit, ApproverSlot.DEPARTMENT_HEAD, store)
        permit = sign_off(maint, permit, ApproverSlot.MAINTENANCE, store)
        permit = execute_transition(admin, permit, "activate", store, confirm=_yes)
        if target == PermitStatus.ACTIVE:
            continue

        execute_transition(supervisor, permit, "complete", store, comment="Work finished, area cleared", confirm=_yes)

    logger.info("seeded %d permits into %s", len(samples), store.DB_PATH_CTX.get())


if __name__ == "__main__":
    main()
