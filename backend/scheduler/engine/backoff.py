"""
Per-endpoint poll interval with multiplicative backoff.

The base interval is the endpoint's cache TTL. Each "no data" response
multiplies the interval by the configured factor up to a cap; a successful
fetch resets it when reset-on-success is enabled.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from shared.config import Settings, get_settings


@dataclass
class BackoffState:
    base_interval_s: float
    multiplier: float = 1.0
    consecutive_errors: int = 0
    backed_off: bool = False

    @property
    def interval_s(self) -> float:
        return self.base_interval_s * self.multiplier

    def as_dict(self) -> dict[str, Any]:
        return {
            "base_interval_s": self.base_interval_s,
            "multiplier": round(self.multiplier, 3),
            "interval_s": round(self.interval_s, 3),
            "consecutive_errors": self.consecutive_errors,
            "backed_off": self.backed_off,
        }


class BackoffPolicy:
    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def initial(self, endpoint: str) -> BackoffState:
        return BackoffState(base_interval_s=float(self._settings.endpoint_ttl(endpoint)))

    def on_empty(self, state: BackoffState) -> BackoffState:
        """Record a "no data" response and grow the multiplier when backoff is enabled."""
        state.consecutive_errors += 1
        if self._settings.polling_backoff_enabled:
            state.multiplier = min(
                state.multiplier * self._settings.polling_backoff_multiplier,
                self._settings.polling_backoff_max_multiplier,
            )
            state.backed_off = state.multiplier > 1.0
        return state

    def on_success(self, state: BackoffState) -> BackoffState:
        if self._settings.polling_backoff_reset_on_success:
            state.multiplier = 1.0
            state.consecutive_errors = 0
            state.backed_off = False
        return state
