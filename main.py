"""Command-line entry point for the prayer engine."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional

import pytz

from config import DEFAULT_CONFIG_PATH, EngineConfig, load_config
from engine import PrayerEngine
from hijri import classify_special_day
from location_service import LocationError, LocationInfo, format_location
from prayer_times import CalculationSchool, NextPrayerResult, PrayerTimes, format_prayer_time, prayer_schedule
from scheduler import CountdownTicker, next_refresh_time

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOGGER = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Prayer times, Qibla direction and Hijri date for your location.")
    parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="Path to the JSON config file")
    parser.add_argument("--gps", action="store_true", help="Resolve the location from the device position")
    parser.add_argument("--latitude", type=float, help="Manual latitude, used as the device position")
    parser.add_argument("--longitude", type=float, help="Manual longitude, used as the device position")
    parser.add_argument("--date", type=date.fromisoformat, help="Date as YYYY-MM-DD (default: today)")
    parser.add_argument("--hanafi", action="store_true", help="Use the Hanafi school for Asr")
    parser.add_argument("--24h", dest="use_24_hour", action="store_true", help="Show times in 24-hour format")
    parser.add_argument("--watch", action="store_true", help="Keep running and show a live countdown")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


async def _resolve(engine: PrayerEngine, use_gps: bool) -> LocationInfo:
    if use_gps:
        return await engine.resolve_location_via_gps()
    return await engine.resolve_location()


async def _report(engine: PrayerEngine, args: argparse.Namespace) -> PrayerTimes:
    location = await _resolve(engine, args.gps)
    today = datetime.now().date()
    target_date = args.date or today
    is_today = target_date == today
    school = CalculationSchool.HANAFI if args.hanafi else None
    times, bearing, hijri = await asyncio.gather(
        engine.get_prayer_times(location, target_date, school),
        engine.get_qibla_bearing(location),
        engine.get_hijri_date(target_date),
    )
    special = classify_special_day(hijri) if hijri else None

    print(f"Location: {format_location(location)} ({location.source.value})")
    print(f"Date: {target_date.isoformat()} / {hijri.formatted if hijri else times.hijri_date}")
    if special:
        print(f"{'Today' if is_today else 'Special day'}: {special.name} - {special.description}")
    if times.is_approximate:
        print("Prayer times are approximate (provider unavailable).")
    for status in prayer_schedule(times):
        marker = "*" if is_today and not status.passed else " "
        print(f" {marker} {status.name:<8} {status.arabic_name:<8} {format_prayer_time(status.time, args.use_24_hour)}")
    if is_today:
        result = engine.get_next_prayer(times)
        print(f"Next prayer: {result.name} at {format_prayer_time(result.time, args.use_24_hour)} ({result.time_until})")
    print(f"Qibla: {round(bearing)}° from true north")
    return times


def _watch(engine: PrayerEngine, args: argparse.Namespace, times: PrayerTimes) -> None:
    ticker = CountdownTicker(times.timezone or "UTC")

    def show(result: NextPrayerResult) -> None:
        sys.stdout.write(f"\r{result.name} {result.time} - {result.time_until}    ")
        sys.stdout.flush()

    def refresh() -> None:
        LOGGER.info("Day changed; refreshing prayer times")
        location = asyncio.run(_resolve(engine, args.gps))
        fresh = asyncio.run(engine.get_prayer_times(location))
        ticker.watch(fresh, show)
        ticker.schedule_refresh(next_refresh_time(_now_in(fresh.timezone)), refresh)

    ticker.watch(times, show)
    ticker.schedule_refresh(next_refresh_time(_now_in(times.timezone)), refresh)
    ticker.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print()
    finally:
        ticker.shutdown()


def _now_in(timezone_name: Optional[str]) -> datetime:
    return datetime.now(pytz.timezone(timezone_name or "UTC"))


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config: EngineConfig = load_config(args.config)
    logging.basicConfig(level=logging.DEBUG if args.verbose else config.log_level, format=LOG_FORMAT)

    if args.latitude is not None and args.longitude is not None:
        config.manual_latitude = args.latitude
        config.manual_longitude = args.longitude
        args.gps = True
    engine = PrayerEngine.from_config(config)

    try:
        times = asyncio.run(_report(engine, args))
    except LocationError as exc:
        LOGGER.error("Location could not be resolved: %s", exc)
        print(f"{exc} Try --gps or --latitude/--longitude.", file=sys.stderr)
        return 1

    if args.watch:
        _watch(engine, args, times)
    return 0


if __name__ == "__main__":
    sys.exit(main())
