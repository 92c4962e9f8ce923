"""Best-effort telemetry: one Runs row per background pass."""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

from tradie_sms.datastore import REPOSITORY, Repository
from tradie_sms.runtime import get_logger, iso_now
from tradie_sms.schema import RUNS_TABLE

logger = get_logger("run_logger")

F = RUNS_TABLE.field_names()


def _processed(result: Dict[str, Any]) -> float:
    value = result.get("processed") or result.get("sent") or 0
    return float(value) if isinstance(value, (int, float)) else 0.0


def log_run(step: str, result: Dict[str, Any], repo: Repository = REPOSITORY) -> Optional[Dict[str, Any]]:
    """Write a Runs row. Telemetry failures are logged and never propagate."""
    payload = {
        F["TYPE"]: step,
        F["PROCESSED"]: _processed(result),
        F["BREAKDOWN"]: json.dumps(result, ensure_ascii=False, default=str),
        F["STATUS"]: "OK" if result.get("ok", True) else "ERROR",
        F["TIMESTAMP"]: iso_now(),
    }
    try:
        return repo.create_run(payload)
    except Exception as exc:
        logger.error("❌ Log Run %s: %s", step, exc)
        return None
