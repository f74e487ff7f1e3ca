"""
Run one webhook retry scan by hand, outside the worker schedule.

Usage:
    python scripts/retry_webhooks.py
    python scripts/retry_webhooks.py --batch-size 50
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from fintrack.core.logging import get_logger, set_correlation_id, setup_logging  # noqa: E402
from fintrack.db.database import task_session_factory  # noqa: E402
from fintrack.domain.services.webhook_config import WebhookConfig  # noqa: E402
from fintrack.domain.services.webhook_retry_service import WebhookRetryService  # noqa: E402


logger = get_logger(__name__)


async def _scan(batch_size: int | None) -> dict:
    config = WebhookConfig.from_settings()
    if batch_size:
        config = dataclasses.replace(config, retry_batch_size=batch_size)

    async with task_session_factory() as session_factory:
        result = await WebhookRetryService(session_factory, config).run_once()
    return result.to_dict()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one webhook retry scan")
    parser.add_argument("--batch-size", type=int, default=None, help="Events to pick up in this scan")
    args = parser.parse_args()

    setup_logging(level="INFO", json_format=False, app_name="fintrack-retry")
    set_correlation_id()

    result = asyncio.run(_scan(args.batch_size))
    print(json.dumps(result, indent=2))
    sys.exit(1 if result["errors"] else 0)


if __name__ == "__main__":
    main()
