from __future__ import annotations

import argparse
import asyncio
from datetime import datetime
import sys

from keygate.core.logging import configure_logging
from keygate.persistence.db import SessionLocal
from keygate.services.key_backend import get_key_backend
from keygate.services.key_policy.sweeper import ensure_daily_key_reactivation


def _build_parser() -> argparse.ArgumentParser:
    # Meant for cron; the sweep is a no-op when the current window is already done.
    parser = argparse.ArgumentParser(description="Run the daily key reactivation sweep")
    parser.add_argument(
        "--now",
        default=None,
        help="ISO-8601 instant to evaluate the window against (defaults to the current time)",
    )
    return parser


async def _run(args: argparse.Namespace) -> int:
    now = datetime.fromisoformat(args.now) if args.now else None
    async with SessionLocal() as session:
        result = await ensure_daily_key_reactivation(session, backend=get_key_backend(), now=now)
    print(
        f"ran={str(result.ran).lower()} boundary={result.boundary.isoformat()} "
        f"attempted={result.attempted} reactivated={result.reactivated} failed={result.failed}"
    )
    return 1 if result.failed else 0


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
