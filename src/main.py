"""Command-line tail of the reconciled call state for one user session."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os

from config.settings import get_settings
from domain.models import Call
from session.context import CallControlClient

LOGGER = logging.getLogger(__name__)


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Follow live calls, transfers and relocations")
    parser.add_argument("--token", default=os.getenv("CALLCONTROL_TOKEN"), help="Capability token")
    parser.add_argument("--user-uuid", default=os.getenv("CALLCONTROL_USER_UUID"))
    parser.add_argument("--interval", type=float, default=5.0, help="Seconds between state reports")
    parser.add_argument("--switchboard", action="append", default=[], help="Switchboard uuid to watch")
    return parser.parse_args()


def _report(client: CallControlClient) -> None:
    session = client.correlator.resolve_call_session()
    calls = client.registry.query(Call)
    LOGGER.info(
        "calls=%d current=%s transfer=%s relocation=%s pending_events=%d",
        len(calls),
        session.call.id if session.call else None,
        session.transfer.id if session.transfer else None,
        session.relocation.id if session.relocation else None,
        client.reconciler.pending,
    )


async def _amain(args: argparse.Namespace) -> None:
    if not args.token:
        raise SystemExit("A token is required (--token or CALLCONTROL_TOKEN).")

    async with CallControlClient(args.token, user_uuid=args.user_uuid) as client:
        await client.resync()
        for switchboard_id in args.switchboard:
            await client.gateway.fetch_switchboard_held_calls(switchboard_id)
            await client.gateway.fetch_switchboard_queued_calls(switchboard_id)
        while True:
            _report(client)
            await asyncio.sleep(args.interval)


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        asyncio.run(_amain(_parse_args()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
