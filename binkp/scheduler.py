"""
Poll scheduler: calls uplinks on their cron schedules and keeps the queues
moving between calls.

    scheduler = Scheduler(config, Client(config), inbound=inbound, crash=crash)
    scheduler.run(interval=60)          # until stop() or Ctrl-C

Every uplink carries a ``poll_schedule`` cron expression (default every four
hours). An uplink is due when a scheduled time has passed since it was last
polled, or since the scheduler started, so a slow tick never loses a poll.
With a session log, the last poll survives restarts and a poll missed while
the scheduler was down runs on the first pass. Times are local.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from croniter import croniter

from .client import Client
from .config import BinkpConfig, Uplink
from .crashmail import CrashDelivery
from .errors import ConfigError, ErrorKind
from .inbound import InboundQueue
from .session import Role, SessionResult
from .session_log import SqliteSessionLog

log = logging.getLogger("binkp.scheduler")

Clock = Callable[[], float]


@dataclass
class ScheduleStatus:
    address: str
    schedule: str
    enabled: bool
    last_poll: float | None
    next_poll: float | None
    due: bool


@dataclass
class TickResult:
    scheduled: dict[str, SessionResult]
    outbound: dict[str, SessionResult]
    inbound_processed: int = 0
    crashmail: dict[str, int] | None = None


def _local(ts: float) -> datetime:
    return datetime.fromtimestamp(ts).astimezone()


def previous_fire(expression: str, now: float) -> float:
    """Latest time at or before *now* matched by *expression*."""
    return croniter(expression, _local(now + 1)).get_prev(float)


def next_fire(expression: str, after: float) -> float:
    """First time strictly after *after* matched by *expression*."""
    return croniter(expression, _local(after)).get_next(float)


class Scheduler:
    def __init__(
        self,
        config: BinkpConfig,
        client: Client,
        *,
        inbound: InboundQueue | None = None,
        crash: CrashDelivery | None = None,
        session_log: SqliteSessionLog | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._config = config
        self._client = client
        self._inbound = inbound
        self._crash = crash
        self._clock = clock
        self._started = clock()
        self._last_poll: dict[str, float] = {}
        self._stop_event = threading.Event()
        if session_log is not None:
            for uplink in config.uplinks:
                last = session_log.last_poll(uplink.address)
                if last is not None:
                    self._last_poll[uplink.address] = last

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def is_due(self, uplink: Uplink) -> bool:
        since = self._last_poll.get(uplink.address, self._started)
        return previous_fire(uplink.poll_schedule, self._clock()) > since

    def due_uplinks(self) -> list[Uplink]:
        due = [u for u in self._config.get_enabled_uplinks() if self.is_due(u)]
        log.debug("%d of %d uplink(s) due", len(due), len(self._config.get_enabled_uplinks()))
        return due

    def next_poll(self, address: str) -> float | None:
        uplink = self._config.get_uplink_by_address(address)
        if uplink is None:
            return None
        since = self._last_poll.get(uplink.address, self._started)
        return next_fire(uplink.poll_schedule, max(since, self._clock()))

    def last_poll(self, address: str) -> float | None:
        uplink = self._config.get_uplink_by_address(address)
        return self._last_poll.get(uplink.address) if uplink else None

    def status(self) -> list[ScheduleStatus]:
        return [
            ScheduleStatus(
                address=u.address,
                schedule=u.poll_schedule,
                enabled=u.enabled,
                last_poll=self._last_poll.get(u.address),
                next_poll=self.next_poll(u.address) if u.enabled else None,
                due=u.enabled and self.is_due(u),
            )
            for u in self._config.uplinks
        ]

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    def run_scheduled_polls(self) -> dict[str, SessionResult]:
        """Poll every uplink whose schedule has come round."""
        results: dict[str, SessionResult] = {}
        for uplink in self.due_uplinks():
            log.info("Scheduled poll of %s (%s)", uplink.address, uplink.poll_schedule)
            results[uplink.address] = self._poll(uplink)
        return results

    def poll_if_outbound(self) -> dict[str, SessionResult]:
        """Poll the uplinks that have packets waiting in outbound."""
        results = self._client.poll_all_uplinks(queued_only=True)
        now = self._clock()
        for address in results:
            self._last_poll[address] = now
        return results

    def process_inbound(self) -> int:
        if self._inbound is None or not self._inbound.pending_files():
            return 0
        results = self._inbound.process()
        failed = sum(1 for r in results if not r.success)
        if failed:
            log.error("Inbound processing: %d of %d file(s) failed", failed, len(results))
        return len(results)

    def process_crashmail(self) -> dict[str, int] | None:
        if self._crash is None or not self._config.crashmail.enabled:
            return None
        stats = self._crash.queue_stats()
        if stats["pending"] + stats["attempting"] == 0:
            log.debug("No crashmail queued")
            return None
        return self._crash.process_queue()

    def tick(self) -> TickResult:
        """One pass: scheduled polls, queued outbound, inbound, crashmail."""
        result = TickResult(scheduled=self.run_scheduled_polls(),
                            outbound=self.poll_if_outbound())
        result.inbound_processed = self.process_inbound()
        result.crashmail = self.process_crashmail()
        return result

    def run(self, interval: float = 60) -> None:
        log.info("Scheduler started (interval %gs, %d uplink(s))",
                 interval, len(self._config.get_enabled_uplinks()))
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                log.exception("Scheduler pass failed")
            self._stop_event.wait(interval)
        log.info("Scheduler stopped")

    def stop(self) -> None:
        self._stop_event.set()

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _poll(self, uplink: Uplink) -> SessionResult:
        self._last_poll[uplink.address] = self._clock()
        try:
            result = self._client.poll_uplink(uplink.address)
        except ConfigError as exc:
            log.error("Cannot poll %s: %s", uplink.address, exc)
            return SessionResult(success=False, role=Role.ORIGINATOR,
                                 remote_address=uplink.address,
                                 error=str(exc), error_kind=ErrorKind.CONFIG)
        if not result.success:
            log.warning("Scheduled poll of %s failed: %s", uplink.address, result.error)
        return result
