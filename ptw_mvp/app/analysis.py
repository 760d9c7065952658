from __future__ import annotations

import logging
from typing import Any

import httpx

from . import config
from .errors import AnalysisFailed, AnalysisUnavailable
from .models import Permit
from .store import utc_now_iso

logger = logging.getLogger(__name__)


def build_analysis_payload(permit: Permit) -> dict[str, Any]:
    """Permit snapshot handed to the external analysis webhook."""
    data = permit.to_dict()
    data.pop("statusHistory", None)
    data["internalId"] = data.pop("id")
    data["permitId"] = data.pop("permitCode")
    data.update(
        analysisType="permit_improvement",
        timestamp=utc_now_iso(),
        systemVersion="1.0",
    )
    return {"action": "analyze_permit", "permitData": data}


def _webhook_url(url: str | None) -> str:
    u = (url or config.ANALYSIS_WEBHOOK_URL or "").strip()
    if not u:
        raise AnalysisUnavailable("No analysis webhook is configured")
    return u


def send_for_analysis(
    permit: Permit,
    webhook_url: str | None = None,
    *,
    transport: httpx.BaseTransport | None = None,
) -> dict[str, Any]:
    """POST the permit to the analysis webhook.

    Suggestions come back asynchronously from the external service; this only
    reports whether the hand-off was accepted.
    """
    url = _webhook_url(webhook_url)
    payload = build_analysis_payload(permit)

    try:
        with httpx.Client(timeout=httpx.Timeout(config.ANALYSIS_TIMEOUT, connect=10.0), transport=transport) as client:
            r = client.post(url, json=payload)
    except httpx.TimeoutException as e:
        raise AnalysisFailed(f"Analysis webhook timed out: {e}", status_code=504)
    except httpx.ConnectError as e:
        raise AnalysisFailed(f"Analysis webhook connection error: {e}")
    except httpx.HTTPError as e:
        raise AnalysisFailed(f"Analysis webhook HTTP error: {e}")

    if r.status_code >= 400:
        logger.warning("analysis webhook rejected permit %s: HTTP %s", permit.permit_code, r.status_code)
        raise AnalysisFailed(f"Analysis webhook error {r.status_code}: {r.text[:500]}")

    logger.info("permit %s sent for analysis to %s", permit.permit_code, url)
    return {"message": "Permit sent for analysis", "status": "processing"}


def probe_webhook(url: str | None = None, *, transport: httpx.BaseTransport | None = None) -> dict[str, Any]:
    """Fast reachability probe. Returns {ok, detail, url}."""
    try:
        u = _webhook_url(url)
    except AnalysisUnavailable as e:
        return {"ok": False, "detail": e.detail, "url": ""}
    try:
        with httpx.Client(timeout=httpx.Timeout(2.0, connect=1.0), transport=transport) as client:
            r = client.get(u)
    except httpx.HTTPError as e:
        return {"ok": False, "detail": str(e), "url": u}
    # Webhooks usually only accept POST; any answer below 500 means it is reachable.
    if r.status_code < 500:
        return {"ok": True, "detail": "ok", "url": u}
    return {"ok": False, "detail": f"HTTP {r.status_code}", "url": u}
