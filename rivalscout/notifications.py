from __future__ import annotations

import logging
from typing import Protocol

log = logging.getLogger(__name__)


class Notifier(Protocol):
    async def send_report_completion(
        self, email: str, name: str, project_name: str, run_id: int, findings: list[str],
    ) -> bool: ...


class LogNotifier:
    """Default notifier: records the notification in the application log."""

    async def send_report_completion(
        self, email: str, name: str, project_name: str, run_id: int, findings: list[str],
    ) -> bool:
        log.info(
            "Report ready for %s <%s>: project %r run %s (%d findings)",
            name, email, project_name, run_id, len(findings),
        )
        return True
