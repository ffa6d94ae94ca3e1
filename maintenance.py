"""
Scheduled maintenance: refresh-token cleanup, summary retention and the
monthly credit reset.

Run from cron, e.g. daily ``python maintenance.py tokens`` and
``python maintenance.py summaries``, monthly ``python maintenance.py credits``.
"""

import argparse
import logging
from datetime import datetime
from typing import Dict, Optional

from auth_service import AuthService
from config import Settings, get_settings
from credits import CreditLedger
from database import Database
from identity import SupabaseIdentityProvider
from logging_config import setup_logging
from summaries import SummaryService
from users import UserService

logger = logging.getLogger(__name__)

TASKS = ("tokens", "summaries", "credits", "all")


def run_maintenance(task: str, settings: Optional[Settings] = None, database: Optional[Database] = None) -> Dict:
    """Run one task (or ``all``) and return the affected row counts."""
    if task not in TASKS:
        raise ValueError(f"Unknown maintenance task: {task}")

    settings = settings or get_settings()
    owns_database = database is None
    database = database or Database(settings.database_url, settings.database_echo)
    session_factory = database.connect()
    ledger = CreditLedger(session_factory)

    results: Dict = {"timestamp": datetime.utcnow().isoformat()}
    logger.info("Starting maintenance", extra={"task": task})
    try:
        if task in ("tokens", "all"):
            auth_service = AuthService(session_factory, settings, SupabaseIdentityProvider(settings))
            results["tokens_deleted"] = auth_service.cleanup_expired_tokens()
        if task in ("summaries", "all"):
            summary_service = SummaryService(session_factory, ledger, None, settings)
            results["summaries_deleted"] = summary_service.cleanup_old_summaries()
        if task in ("credits", "all"):
            user_service = UserService(session_factory, ledger, settings)
            results["users_reset"] = user_service.reset_monthly_credits()
    finally:
        if owns_database:
            database.disconnect()

    logger.info("Maintenance completed", extra={"task": task, "results": results})
    return results


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="YouTube Summarizer maintenance tasks")
    parser.add_argument("task", choices=TASKS, help="Task to run")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings)
    run_maintenance(args.task, settings)


if __name__ == "__main__":
    main()
