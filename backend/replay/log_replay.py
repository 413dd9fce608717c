"""
Replay captured upstream responses through the event detection engine.

Captured responses live under::

    <log_dir>/<endpoint-slug>/<YYYY-MM-DD>/HH-MM-SS-mmm_response.json

Each file holds ``{"timestamp": <capture time>, "data": <snapshot>}``. Files
are replayed in capture order against a fresh engine, and every file's events
are pinned to its capture time and put in causal order.

Usage:
  python -m replay.log_replay --endpoint live-matches --start 14:00 --end 16:30
"""
from __future__ import annotations

import argparse
import asyncio
import json
import re
import sys
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from shared.config import Settings, get_settings
from shared.models.domain import DomainEvent
from shared.utils.logging import get_logger, setup_logging

from delivery.webhook import WebhookClient
from detection.engine import EventDetectionEngine
from detection.ordering import order_events
from replay.capture import endpoint_for_slug

logger = get_logger(__name__)

DATE_DIR = re.compile(r"^\d{4}-\d{2}-\d{2}$")
RESPONSE_FILE = re.compile(r"^(\d{2})-(\d{2})-(\d{2})-(\d{3})_response\.json$")


class LogDirectoryNotFound(FileNotFoundError):
    pass


def capture_time(filename: str) -> Optional[str]:
    """``HH:MM:SS`` from a response file name, or None when the name does not match."""
    match = RESPONSE_FILE.match(Path(filename).name)
    if not match:
        return None
    hours, minutes, seconds, _ = match.groups()
    return f"{hours}:{minutes}:{seconds}"


def _minutes(hhmm: str) -> int:
    hours, minutes = hhmm.split(":")[:2]
    return int(hours) * 60 + int(minutes)


def within_window(hhmmss: str, start: str | None = None, end: str | None = None) -> bool:
    """Inclusive HH:MM window check; seconds are ignored."""
    value = _minutes(hhmmss)
    if start and value < _minutes(start):
        return False
    if end and value > _minutes(end):
        return False
    return True


@dataclass
class ReplayedEvent:
    event: DomainEvent
    log_file: str
    log_timestamp: Optional[str]

    def as_dict(self) -> dict[str, Any]:
        return {**self.event.to_wire(), "log_file": self.log_file, "log_timestamp": self.log_timestamp}


@dataclass
class ReplayResult:
    endpoint: str
    files_processed: int = 0
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    events: list[ReplayedEvent] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def info(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "files_processed": self.files_processed,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "events_generated": len(self.events),
        }

    def event_stats(self) -> dict[str, int]:
        return dict(Counter(item.event.event_type.value for item in self.events))

    def as_dict(self) -> dict[str, Any]:
        return {
            "replay_info": self.info,
            "events": [item.as_dict() for item in self.events],
            "errors": self.errors,
            "event_stats": self.event_stats(),
        }


class LogReplay:
    """
    Discovers captured response files for one endpoint and replays them.

    The engine is created per replay with detection forced on for the
    replayed endpoint, so live settings never hide events.
    """

    def __init__(
        self,
        log_dir: str | Path | None = None,
        endpoint_slug: str = "live-matches",
        settings: Settings | None = None,
        engine: EventDetectionEngine | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.log_dir = Path(log_dir or self._settings.replay_log_dir)
        self.endpoint_slug = endpoint_slug.strip("/")
        known = [*self._settings.events_endpoints, *self._settings.cache_endpoint_ttls]
        self.endpoint = endpoint_for_slug(self.endpoint_slug, known)
        self.engine = engine or EventDetectionEngine(self._settings, monitored_endpoints=[self.endpoint])
        self.engine.set_enabled(True)

    # ── Discovery ───────────────────────────────────────────────────────

    @property
    def endpoint_dir(self) -> Path:
        return self.log_dir / self.endpoint_slug

    def latest_date(self) -> str:
        if not self.endpoint_dir.is_dir():
            raise LogDirectoryNotFound(f"endpoint directory not found: {self.endpoint_dir}")
        dates = sorted(
            (p.name for p in self.endpoint_dir.iterdir() if p.is_dir() and DATE_DIR.match(p.name)),
            reverse=True,
        )
        if not dates:
            raise LogDirectoryNotFound(f"no date directories in {self.endpoint_dir}")
        return dates[0]

    def discover(
        self,
        date: str | None = None,
        start: str | None = None,
        end: str | None = None,
    ) -> list[Path]:
        """Response files for ``date`` (latest when omitted) inside the HH:MM window, in capture order."""
        target = date or self.latest_date()
        date_dir = self.endpoint_dir / target
        if not date_dir.is_dir():
            raise LogDirectoryNotFound(f"date directory not found: {date_dir}")

        found: list[tuple[str, Path]] = []
        for path in date_dir.glob("*_response.json"):
            stamp = capture_time(path.name)
            if stamp is None or not within_window(stamp, start, end):
                continue
            found.append((path.name, path))
        found.sort()
        logger.info("replay_files_discovered", endpoint=self.endpoint, date=target,
                    count=len(found), start=start, end=end)
        return [path for _, path in found]

    # ── Replay ──────────────────────────────────────────────────────────

    def replay(self, files: list[Path]) -> ReplayResult:
        result = ReplayResult(endpoint=self.endpoint, files_processed=len(files))
        self.engine.clear_states()

        for index, path in enumerate(files):
            try:
                record = json.loads(path.read_text(encoding="utf-8"))
                captured_at = record.get("timestamp")
                snapshot = record["data"]
            except (OSError, ValueError, KeyError, AttributeError) as exc:
                logger.warning("replay_file_failed", file=path.name, error=str(exc))
                result.errors.append({"file": path.name, "error": str(exc) or type(exc).__name__, "index": index})
                continue

            if result.start_time is None:
                result.start_time = captured_at
            result.end_time = captured_at

            events = self.engine.process_data(self.endpoint, snapshot, timestamp=captured_at)
            for event in order_events(events):
                result.events.append(ReplayedEvent(event, path.name, captured_at))

        logger.info("replay_complete", endpoint=self.endpoint, files=len(files),
                    events=len(result.events), errors=len(result.errors))
        return result

    def run(self, date: str | None = None, start: str | None = None, end: str | None = None) -> ReplayResult:
        return self.replay(self.discover(date, start, end))


# ── CLI ─────────────────────────────────────────────────────────────────

def format_summary(result: ReplayResult) -> str:
    info = result.info
    lines = [
        f"Endpoint:   {info['endpoint']}",
        f"Window:     {info['start_time'] or '-'} .. {info['end_time'] or '-'}",
        f"Files:      {info['files_processed']} ({len(result.errors)} failed)",
        f"Events:     {info['events_generated']}",
    ]
    for event_type, count in sorted(result.event_stats().items(), key=lambda kv: (-kv[1], kv[0])):
        lines.append(f"  {event_type:<28} {count}")
    return "\n".join(lines)


def format_table(result: ReplayResult) -> str:
    rows = [f"{'TIMESTAMP':<26} {'TYPE':<28} {'MATCH':<24} DESCRIPTION"]
    for item in result.events:
        e = item.event
        rows.append(f"{e.timestamp:<26} {e.event_type.value:<28} {e.match_id:<24} {e.description}")
    return "\n".join(rows)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replay captured ATP responses through event detection")
    parser.add_argument("-d", "--log-dir", help="Directory holding captured responses")
    parser.add_argument("-e", "--endpoint", default="live-matches", help="Endpoint slug, e.g. live-matches")
    parser.add_argument("--date", help="YYYY-MM-DD (default: latest)")
    parser.add_argument("--start", help="HH:MM lower bound")
    parser.add_argument("--end", help="HH:MM upper bound")
    parser.add_argument("-f", "--format", choices=["table", "json", "summary"], default="table")
    parser.add_argument("-o", "--output", help="Write the formatted result to this file")
    parser.add_argument("--deliver", action="store_true", help="Send replayed events to the configured webhook")
    return parser


async def deliver(result: ReplayResult, settings: Settings) -> bool:
    client = WebhookClient(settings)
    if not client.enabled:
        logger.error("replay_delivery_unavailable", reason="webhook url or secret missing")
        return False
    try:
        return await client.send_events([item.event.to_wire() for item in result.events])
    finally:
        await client.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging("replay", settings)

    replayer = LogReplay(args.log_dir, args.endpoint, settings=settings)
    try:
        result = replayer.run(args.date, args.start, args.end)
    except LogDirectoryNotFound as exc:
        logger.error("replay_logs_missing", error=str(exc))
        return 1

    if args.format == "json":
        text = json.dumps(result.as_dict(), indent=2, default=str)
    elif args.format == "summary":
        text = format_summary(result)
    else:
        text = format_table(result)

    if args.output:
        Path(args.output).write_text(text + "\n", encoding="utf-8")
        logger.info("replay_written", path=args.output)
    else:
        print(text)

    if args.deliver and result.events:
        if not asyncio.run(deliver(result, settings)):
            return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
