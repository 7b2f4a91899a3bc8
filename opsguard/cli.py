"""One-shot SLA breach check for external schedulers.

Usage:
    opsguard-check-sla [--no-slack] [--email] [--alert-email ADDRESS]

Exit codes:
    0 - Success
    1 - Error during execution
"""

import argparse
import asyncio
import sys
import time

from opsguard.config import settings
from opsguard.database import close_database
from opsguard.logging_config import get_logger, setup_logging
from opsguard.services.sla_monitor import MS_PER_MINUTE, SLACheckOptions, SLACheckResult, check_sla_breaches

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="opsguard-check-sla",
        description="Check active incidents against their SLA thresholds and notify.",
    )
    parser.add_argument(
        "--no-slack",
        action="store_true",
        help="Do not post warnings to the configured Slack webhook.",
    )
    parser.add_argument(
        "--email",
        action="store_true",
        help="Email warnings to the alert address.",
    )
    parser.add_argument(
        "--alert-email",
        default=settings.sla_alert_email,
        help="Recipient for --email (defaults to SLA_ALERT_EMAIL).",
    )
    return parser


async def _run(options: SLACheckOptions) -> SLACheckResult:
    try:
        return await check_sla_breaches(options)
    finally:
        await close_database()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(
        log_format=settings.log_format,
        log_level=settings.log_level,
        service_name=settings.service_name,
    )

    options = SLACheckOptions(
        notify_slack=not args.no_slack,
        notify_email=args.email,
        alert_email=args.alert_email or None,
    )

    logger.info("Starting SLA breach check")
    start_time = time.perf_counter()

    try:
        result = asyncio.run(_run(options))
    except Exception as e:
        logger.exception("SLA breach check failed", error=str(e))
        return 1

    logger.info(
        "SLA breach check complete",
        active_incidents=result.active_incident_count,
        warnings=result.warning_count,
        duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
        checked_at=result.checked_at.isoformat(),
    )
    for warning in result.warnings:
        logger.info(
            "SLA warning",
            breach_type=warning.breach_type,
            title=warning.title,
            remaining_minutes=round(warning.time_remaining_ms / MS_PER_MINUTE),
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
