"""
Project Pipeline CRM
Scheduled Jobs.

Jobs:
    - delay_alert_scan: raise stage-delay alerts for stalled projects (hourly)
"""

from __future__ import annotations

import logging
from typing import Any

from crm.services import alert_service
from crm.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("delay_alert_scan", interval_seconds=3600,
              config_key="ALERT_SCAN_INTERVAL_SECONDS")
def run_delay_alert_scan(app) -> dict[str, Any]:
    """Scan projects for stage residency past threshold and raise delay alerts."""
    results = alert_service.scan()
    created = sum(v for k, v in results.items() if k != "errors")
    if results["errors"]:
        logger.warning("Delay alert scan: %d created, %d project(s) failed",
                       created, results["errors"])
    else:
        logger.info("Delay alert scan: %d alert(s) created", created)
    return results
