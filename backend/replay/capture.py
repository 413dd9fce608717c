"""
Capture of upstream responses to disk for later replay.

Files are written in the layout ``LogReplay`` reads::

    <log_dir>/<endpoint-slug>/<YYYY-MM-DD>/HH-MM-SS-mmm_response.json

A snapshot identical to the last one written for its endpoint is skipped.
Writes for one endpoint are spaced at least ``response_log_min_interval_s``
apart; a changed snapshot arriving sooner is held and replaces any earlier
held one, and is written by the next eligible ``record`` or by ``flush``.
"""
from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from shared.config import Settings, get_settings
from shared.models.domain import format_iso
from shared.utils.logging import get_logger

logger = get_logger(__name__)

_UNSAFE = re.compile(r"[^a-z0-9-]")


def slug_for_endpoint(endpoint: str) -> str:
    """``/api/draws/live`` -> ``draws-live``."""
    path = endpoint.split("?", 1)[0].strip("/")
    if path.startswith("api/"):
        path = path[len("api/"):]
    return _UNSAFE.sub("", path.replace("/", "-").lower())


def endpoint_for_slug(slug: str, known: Iterable[str] = ()) -> str:
    """
    Map a capture directory name back to its endpoint path.

    A slug is matched against ``known`` endpoint paths first, so nested
    paths such as ``/api/draws/live`` are recovered from ``draws-live``.
    Unknown slugs fall back to ``/api/<slug>``.
    """
    slug = slug.strip("/")
    for endpoint in known:
        if slug_for_endpoint(endpoint) == slug:
            return endpoint
    return "/api/" + slug


@dataclass
class _Pending:
    endpoint: str
    data: Any
    captured_at: datetime


class ResponseLogger:
    def __init__(
        self,
        settings: Settings | None = None,
        log_dir: str | Path | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._settings = settings or get_settings()
        self.log_dir = Path(log_dir or self._settings.replay_log_dir)
        self._enabled = self._settings.response_log_enabled
        self._min_interval = self._settings.response_log_min_interval_s
        self._skip_unchanged = self._settings.response_log_skip_unchanged
        self._clock = clock
        self._now = now
        self._last_write: dict[str, float] = {}
        self._last_data: dict[str, str] = {}
        self._pending: dict[str, _Pending] = {}
        self._written = 0
        self._skipped = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        logger.info("response_log_toggled", enabled=enabled)

    async def record(self, endpoint: str, data: Any) -> Optional[Path]:
        """Capture one snapshot. Returns the written file, or None when skipped or held."""
        if not self._enabled:
            return None

        encoded = json.dumps(data, sort_keys=True, default=str)
        if self._skip_unchanged and self._last_data.get(endpoint) == encoded:
            self._skipped += 1
            self._pending.pop(endpoint, None)
            logger.debug("response_log_unchanged", endpoint=endpoint)
            return None

        pending = _Pending(endpoint, data, self._now())
        last = self._last_write.get(endpoint)
        if last is not None and self._clock() - last < self._min_interval:
            self._pending[endpoint] = pending
            logger.debug("response_log_held", endpoint=endpoint,
                         next_in_s=round(self._min_interval - (self._clock() - last), 1))
            return None

        self._pending.pop(endpoint, None)
        return await self._write(pending, encoded)

    async def flush(self) -> list[Path]:
        """Write every held snapshot regardless of the interval."""
        written: list[Path] = []
        for endpoint in list(self._pending):
            pending = self._pending.pop(endpoint)
            path = await self._write(pending, json.dumps(pending.data, sort_keys=True, default=str))
            if path is not None:
                written.append(path)
        if written:
            logger.info("response_log_flushed", files=len(written))
        return written

    def path_for(self, endpoint: str, captured_at: datetime) -> Path:
        moment = captured_at.astimezone(timezone.utc)
        name = moment.strftime("%H-%M-%S-") + f"{moment.microsecond // 1000:03d}_response.json"
        return self.log_dir / slug_for_endpoint(endpoint) / moment.strftime("%Y-%m-%d") / name

    async def _write(self, pending: _Pending, encoded: str) -> Optional[Path]:
        path = self.path_for(pending.endpoint, pending.captured_at)
        record = {
            "timestamp": format_iso(pending.captured_at),
            "endpoint": pending.endpoint,
            "data": pending.data,
        }
        try:
            await asyncio.to_thread(_write_json, path, record)
        except OSError as exc:
            logger.error("response_log_write_failed", endpoint=pending.endpoint,
                         path=str(path), error=str(exc))
            return None

        self._last_write[pending.endpoint] = self._clock()
        self._last_data[pending.endpoint] = encoded
        self._written += 1
        logger.debug("response_logged", endpoint=pending.endpoint, path=str(path))
        return path

    def stats(self) -> dict[str, Any]:
        return {
            "enabled": self._enabled,
            "log_dir": str(self.log_dir),
            "min_interval_s": self._min_interval,
            "skip_unchanged": self._skip_unchanged,
            "written": self._written,
            "skipped_unchanged": self._skipped,
            "held_endpoints": sorted(self._pending),
        }


def _write_json(path: Path, record: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(record, indent=2, default=str), encoding="utf-8")
