"""
Frequency Limiter (src/alerts/limiter.py)

Decides whether a triggered rule may fire again. A firing is admitted only
if ALL of the following hold for that rule:

  - firings in the trailing hour < max_per_hour
  - firings in the trailing day  < max_per_day
  - now - last_fired            >= cooldown_minutes

Windows are true trailing windows (timestamp lists pruned on read), not
wall-clock buckets. State is kept per rule behind its own lock, so
admitting rule A never blocks or corrupts rule B.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from src.alerts.alert_config import FrequencyLimit

logger = logging.getLogger(__name__)

_HOUR = timedelta(hours=1)
_DAY = timedelta(days=1)


@dataclass
class _RuleWindow:
    lock: threading.Lock = field(default_factory=threading.Lock)
    fired: deque = field(default_factory=deque)   # firing timestamps, oldest first
    last_fired: datetime | None = None

    def prune(self, now: datetime) -> None:
        while self.fired and now - self.fired[0] >= _DAY:
            self.fired.popleft()

    def count_since(self, since: datetime) -> int:
        return sum(1 for ts in self.fired if ts > since)


@dataclass
class LimiterUsage:
    fired_last_hour: int
    fired_last_day: int
    last_fired: datetime | None


class FrequencyLimiter:
    """Keyed, lock-protected map of per-rule firing windows."""

    def __init__(self):
        self._windows: dict[str, _RuleWindow] = {}
        self._map_lock = threading.Lock()

    def _window(self, rule_id: str) -> _RuleWindow:
        with self._map_lock:
            window = self._windows.get(rule_id)
            if window is None:
                window = _RuleWindow()
                self._windows[rule_id] = window
            return window

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def admit(self, rule_id: str, limit: FrequencyLimit, now: datetime) -> bool:
        """Admit or deny a firing of ``rule_id`` at ``now``.

        On admission both windows and ``last_fired`` are updated together;
        on denial nothing changes.
        """
        window = self._window(rule_id)
        with window.lock:
            window.prune(now)

            if window.last_fired is not None:
                if now - window.last_fired < timedelta(minutes=limit.cooldown_minutes):
                    logger.debug("Rule '%s' denied: in cooldown.", rule_id)
                    return False

            if window.count_since(now - _HOUR) >= limit.max_per_hour:
                logger.debug("Rule '%s' denied: hourly limit %d reached.", rule_id, limit.max_per_hour)
                return False

            if len(window.fired) >= limit.max_per_day:
                logger.debug("Rule '%s' denied: daily limit %d reached.", rule_id, limit.max_per_day)
                return False

            window.fired.append(now)
            window.last_fired = now
            return True

    def seed(self, rule_id: str, last_fired: datetime | None) -> None:
        """Restore a rule's cooldown after a restart (e.g. from ``rule.last_triggered``).

        Only the cooldown is restored; trailing counts start empty.
        """
        if last_fired is None:
            return
        window = self._window(rule_id)
        with window.lock:
            if window.last_fired is None or last_fired > window.last_fired:
                window.last_fired = last_fired

    def usage(self, rule_id: str, now: datetime) -> LimiterUsage:
        window = self._window(rule_id)
        with window.lock:
            window.prune(now)
            return LimiterUsage(
                fired_last_hour=window.count_since(now - _HOUR),
                fired_last_day=len(window.fired),
                last_fired=window.last_fired,
            )

    def reset(self, rule_id: str | None = None) -> None:
        with self._map_lock:
            if rule_id is None:
                self._windows.clear()
            else:
                self._windows.pop(rule_id, None)
