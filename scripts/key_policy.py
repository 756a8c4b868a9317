from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timezone
import sys

from keygate.core.logging import configure_logging
from keygate.persistence.db import SessionLocal
from keygate.services.audit import record_event
from keygate.services.key_policy.config_store import (
    KeyPolicyConfig,
    KeyPolicyUpdate,
    get_policy_config,
    update_policy_config,
)
from keygate.services.key_policy.schedule import next_reactivation_at


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Show or update the key lifecycle policy")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("show", help="Print the current policy")
    set_parser = subparsers.add_parser("set", help="Update the policy; unspecified fields keep their value")
    set_parser.add_argument("--inactivity-hours", type=int, default=None, help="Hours without usage before a key is disabled (1-168)")
    set_parser.add_argument("--hour", type=int, default=None, help="Daily reactivation hour in UTC+08:00 (0-23)")
    set_parser.add_argument("--minute", type=int, default=None, help="Daily reactivation minute (0-59)")
    return parser


def _print_config(config: KeyPolicyConfig) -> None:
    upcoming = next_reactivation_at(
        datetime.now(timezone.utc), config.daily_reactivate_hour, config.daily_reactivate_minute
    )
    print(f"inactivity_hours={config.inactivity_hours}")
    print(f"daily_reactivate={config.daily_reactivate_label}")
    print(f"next_reactivation_at={upcoming.isoformat()}")


async def _run(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        current = await get_policy_config(session)
        if args.command == "show":
            _print_config(current)
            return 0
        # Out-of-range operator input is clamped like any stored value.
        updated = await update_policy_config(
            session,
            KeyPolicyUpdate(
                inactivity_hours=args.inactivity_hours if args.inactivity_hours is not None else current.inactivity_hours,
                daily_reactivate_hour=args.hour if args.hour is not None else current.daily_reactivate_hour,
                daily_reactivate_minute=args.minute if args.minute is not None else current.daily_reactivate_minute,
            ),
        )
        await record_event(
            session=session,
            actor_type="cli",
            actor_id=None,
            event_type="key_policy.config.updated",
            outcome="success",
            resource_type="policy_state",
            resource_id="1",
            metadata={
                "inactivity_hours": updated.inactivity_hours,
                "daily_reactivate_hour": updated.daily_reactivate_hour,
                "daily_reactivate_minute": updated.daily_reactivate_minute,
            },
        )
        _print_config(updated)
    return 0


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    args = _build_parser().parse_args(argv)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
