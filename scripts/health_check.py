#!/usr/bin/env python3
"""
Operational self-check for the webhook pipeline, run from a deployment shell.

Usage (from the project root):
    python scripts/health_check.py

Or a subset:
    python scripts/health_check.py --only config,signature

Available checks:
    config, signature, backoff, logging, exceptions, database, webhooks
"""
import sys
import asyncio
import argparse
from datetime import datetime
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


class Colors:
    GREEN = "\033[92m"
    RED = "\033[91m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    RESET = "\033[0m"
    BOLD = "\033[1m"


def print_header(title: str) -> None:
    print(f"\n{Colors.BOLD}{Colors.BLUE}{'='*60}")
    print(f" {title}")
    print(f"{'='*60}{Colors.RESET}\n")


def print_result(check_name: str, passed: bool, details: str = "") -> None:
    status = f"{Colors.GREEN}✓ PASS{Colors.RESET}" if passed else f"{Colors.RED}✗ FAIL{Colors.RESET}"
    print(f"  {status} {check_name}")
    if details:
        print(f"         {Colors.YELLOW}{details}{Colors.RESET}")


def print_section(title: str) -> None:
    print(f"\n{Colors.BOLD}▶ {title}{Colors.RESET}")


def _run(coro):
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class HealthChecker:
    """Runs the self-checks and keeps a tally"""

    def __init__(self):
        self.results: list[tuple[str, bool, str]] = []
        self.total_passed = 0
        self.total_failed = 0

    def record(self, check_name: str, passed: bool, details: str = "") -> None:
        self.results.append((check_name, passed, details))
        if passed:
            self.total_passed += 1
        else:
            self.total_failed += 1
        print_result(check_name, passed, details)

    def check_config(self) -> None:
        print_section("Configuration")

        try:
            from fintrack.core.config import settings, WEBHOOK_SECRET_PREFIX

            self.record("Settings loaded", settings is not None, f"App: {settings.APP_NAME}")
            self.record(
                "DATABASE_URL configured",
                bool(settings.DATABASE_URL),
                "***" if settings.DATABASE_URL else "MISSING!"
            )
            secret = settings.CLERK_WEBHOOK_SECRET
            self.record(
                "CLERK_WEBHOOK_SECRET configured",
                secret.startswith(WEBHOOK_SECRET_PREFIX),
                "whsec_***" if secret else "MISSING!"
            )
            self.record("ADMIN_API_KEY configured", bool(settings.ADMIN_API_KEY))
        except Exception as e:
            self.record("Configuration checks", False, str(e))

    def check_signature(self) -> None:
        print_section("Signature Verification")

        try:
            import json
            import time
            from fintrack.core.exceptions import VerificationFailedError
            from fintrack.domain.services.signature_verifier import SignatureVerifier
            from fintrack.domain.services.webhook_config import WebhookConfig

            config = WebhookConfig.from_settings()
            verifier = SignatureVerifier(config.signing_secret, config.signature_tolerance_seconds)
            body = json.dumps({"type": "user.created", "data": {"id": "user_health"}}).encode()
            timestamp = int(time.time())
            headers = {
                "svix-id": "msg_health",
                "svix-timestamp": str(timestamp),
                "svix-signature": verifier.sign("msg_health", timestamp, body),
            }
            event = verifier.verify(body, headers)
            self.record("Round trip with configured secret", event.type == "user.created")

            tampered = body.replace(b"user_health", b"user_other")
            try:
                verifier.verify(tampered, headers)
                self.record("Tampered body rejected", False)
            except VerificationFailedError:
                self.record("Tampered body rejected", True)
        except Exception as e:
            self.record("Signature checks", False, str(e))

    def check_backoff(self) -> None:
        print_section("Retry Backoff")

        try:
            from fintrack.domain.services.webhook_config import WebhookConfig
            from fintrack.domain.services.webhook_processing import calculate_backoff_seconds

            config = WebhookConfig.from_settings()
            delays = [
                calculate_backoff_seconds(
                    attempt,
                    base_seconds=config.retry_base_seconds,
                    max_backoff_seconds=config.retry_max_backoff_seconds,
                )
                for attempt in range(1, 12)
            ]
            self.record(
                "Non-decreasing",
                all(a <= b for a, b in zip(delays, delays[1:])),
                ", ".join(f"{d:g}" for d in delays[:6]) + " ..."
            )
            self.record("Capped", max(delays) <= config.retry_max_backoff_seconds)
        except Exception as e:
            self.record("Backoff checks", False, str(e))

    def check_logging(self) -> None:
        print_section("Structured Logging")

        try:
            from fintrack.core.logging import get_logger, set_correlation_id, get_correlation_id

            logger = get_logger("health_check")
            logger.info("Health check log line", extra_data={"check": "logging"})
            self.record("Structured logger", True)

            cid = set_correlation_id()
            self.record("Correlation ID generation", cid == get_correlation_id(), f"ID: {cid}")
        except Exception as e:
            self.record("Logging checks", False, str(e))

    def check_exceptions(self) -> None:
        print_section("Error Taxonomy")

        try:
            from fintrack.core.exceptions import (
                ErrorCode,
                MalformedEventError,
                MissingEmailError,
                ProcessingError,
                is_permanent_failure,
            )

            exc = MissingEmailError("user_health")
            self.record(
                "MissingEmailError is permanent",
                is_permanent_failure(exc) and exc.error_code == ErrorCode.MISSING_EMAIL
            )
            self.record(
                "MalformedEventError is permanent",
                is_permanent_failure(MalformedEventError("user.created", "data.id: missing"))
            )
            self.record(
                "Generic processing error is transient",
                not is_permanent_failure(ProcessingError("database unavailable"))
            )
        except Exception as e:
            self.record("Exception checks", False, str(e))

    def check_database(self) -> None:
        print_section("Database Connectivity")

        try:
            from fintrack.db.database import engine
            from sqlalchemy import text

            async def check_db():
                async with engine.connect() as conn:
                    result = await conn.execute(text("SELECT 1"))
                    return result.scalar() == 1

            self.record("Database connection", _run(check_db()))
        except Exception as e:
            self.record("Database connection", False, str(e))

    def check_webhooks(self) -> None:
        print_section("Webhook Pipeline")

        try:
            from fintrack.db.database import get_task_session
            from fintrack.domain.services.health_service import is_webhook_pipeline_healthy
            from fintrack.domain.services.webhook_config import WebhookConfig
            from fintrack.domain.services.webhook_log_service import WebhookLogService

            config = WebhookConfig.from_settings()

            async def summary():
                async with get_task_session() as db:
                    return await WebhookLogService(db).get_health_summary(config.health_recent_limit)

            result = _run(summary())
            stats = result["stats"]
            self.record(
                "Terminal failures below threshold",
                is_webhook_pipeline_healthy(stats, config.health_failure_threshold),
                ", ".join(f"{k}={v}" for k, v in stats.items())
            )
            for event in result["recent_failures"]:
                print(f"         {event.event_id} {event.event_type} {event.status}: {event.error}")
        except Exception as e:
            self.record("Webhook pipeline summary", False, str(e))

    def run_all(self, only: list[str] | None = None) -> bool:
        print_header(f"FinTrack health check - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

        checks = {
            "config": self.check_config,
            "signature": self.check_signature,
            "backoff": self.check_backoff,
            "logging": self.check_logging,
            "exceptions": self.check_exceptions,
            "database": self.check_database,
            "webhooks": self.check_webhooks,
        }

        if only:
            checks = {k: v for k, v in checks.items() if k in only}

        for check_func in checks.values():
            try:
                check_func()
            except Exception as e:
                print(f"{Colors.RED}Error running check: {e}{Colors.RESET}")

        print_header("Summary")
        total = self.total_passed + self.total_failed

        if self.total_failed == 0:
            print(f"{Colors.GREEN}{Colors.BOLD}✓ All checks passed ({total}/{total}){Colors.RESET}")
        else:
            print(f"{Colors.RED}{Colors.BOLD}✗ {self.total_failed} of {total} checks failed{Colors.RESET}")
            print(f"\n{Colors.YELLOW}Failed checks:{Colors.RESET}")
            for name, passed, details in self.results:
                if not passed:
                    print(f"  - {name}: {details}")

        print()
        return self.total_failed == 0


def main():
    parser = argparse.ArgumentParser(description="FinTrack health check")
    parser.add_argument(
        "--only",
        type=str,
        help="Comma-separated subset: config,signature,backoff,logging,exceptions,database,webhooks"
    )
    args = parser.parse_args()

    only = args.only.split(",") if args.only else None

    checker = HealthChecker()
    success = checker.run_all(only)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
