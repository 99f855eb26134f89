"""Caller-side scheduling for the live countdown and the daily refresh."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, time as time_module
from typing import Callable, Optional

import pytz
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from prayer_times import NextPrayerResult, PrayerTimes, next_prayer

LOGGER = logging.getLogger(__name__)

REFRESH_AFTER_MIDNIGHT = time_module(hour=0, minute=5)


class CountdownTicker:
    """Re-evaluates the next prayer on a fixed interval with APScheduler."""

    def __init__(self, timezone: str, interval_seconds: float = 1.0, scheduler: Optional[BackgroundScheduler] = None) -> None:
        self._scheduler = scheduler or BackgroundScheduler(timezone=timezone)
        self._interval = interval_seconds
        self._times: Optional[PrayerTimes] = None
        self._callback: Optional[Callable[[NextPrayerResult], None]] = None
        self._tick_job_id: Optional[str] = None
        self._refresh_job_id: Optional[str] = None

    def start(self) -> None:
        if not self._scheduler.running:
            LOGGER.info("Starting countdown scheduler")
            self._scheduler.start()

    def shutdown(self) -> None:
        if self._scheduler.running:
            LOGGER.info("Stopping countdown scheduler")
            self._scheduler.shutdown(wait=False)

    @property
    def timezone(self) -> str:
        tzinfo = self._scheduler.timezone
        zone = getattr(tzinfo, "zone", None) or getattr(tzinfo, "key", None)
        return str(zone or tzinfo)

    def watch(self, times: PrayerTimes, callback: Callable[[NextPrayerResult], None]) -> None:
        """Report the next prayer for *times* to *callback* every interval."""
        self._times = times
        self._callback = callback
        if self._tick_job_id is None:
            job = self._scheduler.add_job(self.tick, trigger=IntervalTrigger(seconds=self._interval))
            LOGGER.debug("Scheduled countdown job %s every %ss", job.id, self._interval)
            self._tick_job_id = job.id

    def tick(self, now: Optional[datetime] = None) -> Optional[NextPrayerResult]:
        if self._times is None or self._callback is None:
            return None
        result = next_prayer(self._times, now)
        self._callback(result)
        return result

    def schedule_refresh(self, next_run: datetime, refresh_callback: Callable[[], None]) -> None:
        """Schedule a single refresh job, replacing any existing one."""
        if self._refresh_job_id:
            LOGGER.debug("Removing existing refresh job %s", self._refresh_job_id)
            try:
                self._scheduler.remove_job(self._refresh_job_id)
            except JobLookupError:
                LOGGER.debug("Refresh job %s already ran", self._refresh_job_id)
            self._refresh_job_id = None

        job = self._scheduler.add_job(refresh_callback, trigger=DateTrigger(run_date=next_run))
        LOGGER.debug("Scheduled refresh job %s at %s", job.id, next_run)
        self._refresh_job_id = job.id


def next_refresh_time(reference: datetime) -> datetime:
    """Shortly after the local midnight following *reference*, when a new day's times apply."""
    tzinfo = reference.tzinfo or pytz.UTC
    next_day = reference.date() + timedelta(days=1)
    refresh_naive = datetime.combine(next_day, REFRESH_AFTER_MIDNIGHT)
    if hasattr(tzinfo, "localize"):
        return tzinfo.localize(refresh_naive)
    return refresh_naive.replace(tzinfo=tzinfo)
