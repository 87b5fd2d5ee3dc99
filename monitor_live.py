#!/usr/bin/env python3
"""
Live Event Monitor - Tails the Shelter Master event stream
Prints polling log events and command status changes as they arrive
"""

import asyncio
import json
import sys
from typing import Dict

import websockets
from websockets.exceptions import WebSocketException

SHELTER_WS_URL = "ws://localhost:9000/ws/events"

LEVEL_ICONS = {
    "debug": "·",
    "info": "ℹ️",
    "warn": "⚠️",
    "error": "❌",
}

STATUS_ICONS = {
    "waiting": "🔄",
    "success": "✅",
    "fail": "❌",
}


def format_event(event: Dict) -> str:
    """Render one broadcast envelope as a single line."""
    timestamp = (event.get('timestamp') or '')[11:19]
    event_type = event.get('type')

    if event_type == "log":
        icon = LEVEL_ICONS.get(event.get('level'), "•")
        return f"{timestamp} {icon} [{event.get('service', '?')}] {event.get('message', '')}"

    if event_type == "command_status":
        icon = STATUS_ICONS.get(event.get('status'), "•")
        line = (f"{timestamp} {icon} {event.get('deviceId')}/{event.get('unitId')} "
                f"{event.get('action')} -> {event.get('status')}")
        if event.get('value') is not None:
            line += f" value={event['value']}"
        if event.get('error'):
            line += f" error={event['error']}"
        return line

    return f"{timestamp} • {event.get('message', json.dumps(event))}"


async def tail_events(url: str, reconnect_delay: float = 5.0):
    """Follow the event stream, reconnecting when the server goes away."""
    while True:
        try:
            async with websockets.connect(url, ping_interval=20, ping_timeout=10) as websocket:
                print(f"🔴 Connected to {url}\n")
                async for raw in websocket:
                    try:
                        event = json.loads(raw)
                    except json.JSONDecodeError:
                        print(f"? {raw}")
                        continue
                    print(format_event(event), flush=True)
        except (OSError, WebSocketException) as e:
            print(f"❌ Connection lost ({e}); retrying in {reconnect_delay:.0f}s")
            await asyncio.sleep(reconnect_delay)


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Shelter Master live event monitor")
    parser.add_argument("--url", default=SHELTER_WS_URL, help="Event stream WebSocket URL")
    parser.add_argument("--reconnect-delay", type=float, default=5.0, help="Seconds between reconnect attempts")
    args = parser.parse_args()

    print("=" * 80)
    print("🔴 LIVE SHELTER EVENTS")
    print("=" * 80)

    try:
        asyncio.run(tail_events(args.url, args.reconnect_delay))
    except KeyboardInterrupt:
        print("\n\n✅ Monitor stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
