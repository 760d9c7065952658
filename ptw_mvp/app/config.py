from __future__ import annotations

import logging
import os

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.environ.get("PTW_DATA_DIR", os.path.join(BASE_DIR, "data"))
DB_PATH = os.environ.get("PTW_DB_PATH", os.path.join(DATA_DIR, "ptw.db"))

# External AI analysis (n8n-style webhook). Empty disables dispatch.
ANALYSIS_WEBHOOK_URL = os.environ.get("PTW_ANALYSIS_WEBHOOK_URL", "").strip()
ANALYSIS_TIMEOUT = float(os.environ.get("PTW_ANALYSIS_TIMEOUT", "120"))

SESSION_COOKIE = os.environ.get("PTW_SESSION_COOKIE", "ptw_session")
LOG_LEVEL = os.environ.get("PTW_LOG_LEVEL", "INFO").upper()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
