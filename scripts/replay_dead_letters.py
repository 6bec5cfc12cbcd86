#!/usr/bin/env python3
"""Move dead-lettered messages back onto their live queue channel.

Usage:
    python scripts/replay_dead_letters.py --channel outgoing [--limit 100]

Replayed messages start over with a fresh retry budget and are picked up
by the running gateway's relay processor.
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from wabridge.infra.queue import DurableQueue, dead_letter_channel
from wabridge.models.queue import Direction


async def replay(direction: Direction, limit: int, dry_run: bool) -> int:
    queue = DurableQueue()
    await queue.connect()
    try:
        if dry_run:
            return await queue.length(dead_letter_channel(direction))
        return await queue.replay_dead_letters(direction, limit)
    finally:
        await queue.disconnect()


def main():
    parser = argparse.ArgumentParser(description="Replay dead-lettered relay messages")
    parser.add_argument(
        "--channel",
        choices=[d.value for d in Direction],
        required=True,
        help="Relay direction to replay",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Maximum number of messages to move (default: 100)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report how many messages are dead-lettered",
    )

    args = parser.parse_args()
    direction = Direction(args.channel)

    count = asyncio.run(replay(direction, args.limit, args.dry_run))
    if args.dry_run:
        print(f"{count} message(s) in {dead_letter_channel(direction)}")
    else:
        print(f"Replayed {count} message(s) from {dead_letter_channel(direction)}")


if __name__ == "__main__":
    main()
