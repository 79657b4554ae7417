#!/usr/bin/env python3
"""Print context usage for the most recently modified sessions.

Usage:
  python -m cccontext.scripts.sessions_report
  python -m cccontext.scripts.sessions_report --limit 5 --json
  python -m cccontext.scripts.sessions_report --clear-cache --debug
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path

from cccontext.config import MonitorSettings
from cccontext.date_utils import parse_timestamp
from cccontext.models import SessionSnapshot
from cccontext.monitor.discovery import MonitorConfigError
from cccontext.monitor.service import LiveSessionMonitor
from cccontext.prediction import format_cost, format_duration, format_tokens


def _format_row(snapshot: SessionSnapshot) -> str:
    prompt = snapshot.latestPrompt.replace("\n", " ")
    if len(prompt) > 40:
        prompt = prompt[:37] + "..."
    return (
        f"{snapshot.sessionId[:8]:<9}"
        f"{snapshot.modelName[:20]:<21}"
        f"{snapshot.usagePercentage:>6.1f}% "
        f"{format_tokens(snapshot.totalTokens):>8} "
        f"{format_cost(snapshot.totalCost):>8} "
        f"{snapshot.turns:>5} "
        f"{format_duration(parse_timestamp(snapshot.startTime)):>8} "
        f"{snapshot.warningLevel:<9}"
        f"{prompt}"
    )


async def _run(limit: int, as_json: bool, clear_cache: bool, projects_dir: str | None) -> int:
    settings = MonitorSettings.from_env()
    if projects_dir:
        settings = replace(settings, projects_dir=Path(projects_dir).expanduser())
    monitor = LiveSessionMonitor(settings)
    if clear_cache:
        monitor.clear_cache()

    try:
        if not monitor.discovery.validate_root():
            print(f"No sessions: {settings.projects_dir} does not exist.")
            return 0
    except MonitorConfigError as exc:
        print(str(exc))
        return 1

    sessions = await monitor.get_all_sessions(limit=limit)
    if as_json:
        print(json.dumps([session.model_dump() for session in sessions], indent=2))
        return 0

    if not sessions:
        print("No sessions found.")
        return 0

    print(f"{'Session':<9}{'Model':<21}{'Usage':>7} {'Tokens':>8} {'Cost':>8} {'Turns':>5} {'Age':>8} {'Level':<9}Prompt")
    for snapshot in sessions:
        print(_format_row(snapshot))
    for error in monitor.errors():
        print(f"{error.sessionId}: {error.error}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--limit", type=int, default=20, help="Number of sessions to show (default: 20)")
    parser.add_argument("--json", action="store_true", help="Print snapshots as JSON")
    parser.add_argument("--clear-cache", action="store_true", help="Drop cached parses before reading")
    parser.add_argument("--projects-dir", default="", help="Override CLAUDE_PROJECTS_DIR")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING)
    return asyncio.run(_run(max(1, args.limit), args.json, args.clear_cache, args.projects_dir or None))


if __name__ == "__main__":
    raise SystemExit(main())
