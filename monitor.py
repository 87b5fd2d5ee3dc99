#!/usr/bin/env python3
"""
Shelter Master Monitor - Status snapshot of the polling and control engine
Shows engine health, polling metrics, command queue backlog and unit health
"""

import sys
import time
from datetime import datetime
from typing import Dict, List, Optional

import requests

SHELTER_MASTER_URL = "http://localhost:9000"

HEALTH_ICONS = {
    "normal": "✅ NORMAL",
    "warning": "⚠️ WARNING",
    "error": "❌ ERROR",
}


def format_health(health: str) -> str:
    return HEALTH_ICONS.get(health, f"❓ {health.upper()}")


def format_unit_row(unit: Dict) -> str:
    data = unit.get('data', {})
    power = data.get('power')
    power_text = "-" if power is None else ("ON" if power else "OFF")
    updated = (unit.get('updatedAt') or "never")[:19]
    return (f"{unit.get('deviceId', '?'):<6} {unit.get('unitId', '?'):<6} {unit.get('type', '?'):<18} "
            f"{power_text:<5} {format_health(unit.get('health', 'normal')):<12} {updated}")


class ShelterMonitor:
    def __init__(self, base_url: str = SHELTER_MASTER_URL, timeout: float = 5):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = requests.Session()

    def _get(self, path: str) -> Optional[Dict]:
        try:
            response = self.session.get(f"{self.base_url}{path}", timeout=self.timeout)
            if response.status_code == 200:
                return response.json()
            print(f"❌ {path} returned HTTP {response.status_code}")
            return None
        except requests.RequestException as e:
            print(f"❌ {path} error: {e}")
            return None

    def get_health(self) -> Optional[Dict]:
        return self._get("/health")

    def get_polling_status(self) -> Optional[Dict]:
        return self._get("/polling/status")

    def get_queue_status(self) -> Optional[Dict]:
        return self._get("/queue/status")

    def get_units(self) -> Optional[List[Dict]]:
        data = self._get("/units")
        return data.get('units', []) if data else None

    def print_health(self, health: Dict):
        print("\n" + "=" * 80)
        print("🏠 SHELTER MASTER".center(80))
        print("=" * 80)

        status = health.get('status', 'unknown')
        icon = "✅" if status == "healthy" else "⚠️"
        transport = health.get('transport', {})
        print(f"  Status              : {icon} {status}")
        print(f"  Site                : {health.get('site', '?')}")
        print(f"  Transport           : {transport.get('type', '?')} "
              f"({'connected' if transport.get('connected') else 'disconnected'})")
        print(f"  WebSocket Clients   : {health.get('websocket_clients', 0)}")

    def print_polling(self, polling: Dict):
        print("\n📊 POLLING")
        print("-" * 80)
        metrics = polling.get('metrics', {})
        print(f"  Mode                : {polling.get('mode', '?')}")
        print(f"  Interval            : {polling.get('intervalMs', 0)} ms"
              + (f" (pending {polling['pendingIntervalMs']} ms)" if polling.get('pendingIntervalMs') else ""))
        print(f"  Cycle Running       : {'yes' if polling.get('cycleRunning') else 'no'}")
        print(f"  Completed Cycles    : {metrics.get('completedCycles', 0)}")
        print(f"  Skipped Ticks       : {metrics.get('skippedTicks', 0)}")
        print(f"  Success Rate        : {metrics.get('successRate', 0):.1f}% "
              f"({metrics.get('successfulPolls', 0)}/{metrics.get('totalPollingCalls', 0)})")
        print(f"  Avg Response Time   : {metrics.get('averageResponseTimeMs', 0):.2f} ms")

        last_cycle = metrics.get('lastCycle')
        if last_cycle:
            print(f"  Last Cycle          : {last_cycle.get('unitsPolled', 0)} units, "
                  f"{last_cycle.get('durationMs', 0):.0f} ms"
                  + (" (abandoned)" if last_cycle.get('abandoned') else ""))

    def print_queue(self, queue: Dict):
        print("\n📨 COMMAND QUEUE")
        print("-" * 80)
        print(f"  Pending             : high={queue.get('high', 0)} normal={queue.get('normal', 0)} "
              f"low={queue.get('low', 0)}")
        print(f"  Processed / Failed  : {queue.get('processed', 0)} / {queue.get('failed', 0)}")
        print(f"  Timeouts            : {queue.get('timeouts', 0)}")

    def print_units(self, units: List[Dict]):
        print("\n" + "=" * 80)
        print("🔌 UNIT STATUS".center(80))
        print("=" * 80)

        if not units:
            print("❌ No units registered")
            return

        print(f"\n{'Device':<6} {'Unit':<6} {'Type':<18} {'Power':<5} {'Health':<12} Updated")
        print("-" * 80)
        for unit in sorted(units, key=lambda u: (u.get('deviceId', ''), u.get('unitId', ''))):
            print(format_unit_row(unit))

        errors = sum(1 for u in units if u.get('health') == 'error')
        print("-" * 80)
        print(f"  {len(units) - errors}/{len(units)} units communicating")

    def run_once(self) -> bool:
        print(f"📍 Status Check - {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")

        health = self.get_health()
        if not health:
            print(f"✓ Ensure Shelter Master is running at {self.base_url}")
            return False
        self.print_health(health)

        polling = self.get_polling_status()
        if polling:
            self.print_polling(polling)

        queue = self.get_queue_status()
        if queue:
            self.print_queue(queue)

        units = self.get_units()
        if units is not None:
            self.print_units(units)
        return True

    def run_continuous_monitor(self, interval: int = 5):
        try:
            while True:
                print("\033[H\033[J", end='', flush=True)
                self.run_once()
                print(f"\n⏱️  Refreshing every {interval}s (Ctrl+C to stop)")
                time.sleep(interval)
        except KeyboardInterrupt:
            print("\n\n✅ Monitor stopped")


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Shelter Master Monitor")
    parser.add_argument("-c", "--continuous", action="store_true", help="Continuous monitoring mode")
    parser.add_argument("-i", "--interval", type=int, default=5, help="Refresh interval in seconds (default: 5)")
    parser.add_argument("--url", default=SHELTER_MASTER_URL, help="Shelter Master URL")

    args = parser.parse_args()
    monitor = ShelterMonitor(args.url)

    if args.continuous:
        monitor.run_continuous_monitor(args.interval)
    elif not monitor.run_once():
        sys.exit(1)


if __name__ == "__main__":
    main()
