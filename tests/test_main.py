import json
import re
from datetime import date

import responses

from main import main
from prayer_times import ALADHAN_BASE_URL

NOMINATIM_PATTERN = re.compile(r"https://nominatim\.openstreetmap\.org/reverse.*")


def timings_payload() -> dict:
    return {
        "code": 200,
        "data": {
            "timings": {
                "Fajr": "04:13",
                "Sunrise": "05:39",
                "Dhuhr": "12:18",
                "Asr": "15:38",
                "Maghrib": "18:58",
                "Isha": "20:28",
            },
            "meta": {"timezone": "Asia/Riyadh"},
        },
    }


def gtoh_payload(day: int, month: int, year: int, month_name: str) -> dict:
    return {
        "code": 200,
        "data": {"hijri": {"day": str(day), "month": {"number": month, "en": month_name}, "year": str(year)}},
    }


def write_config(tmp_path) -> str:
    path = tmp_path / "config.json"
    path.write_text(
        json.dumps({"cache": {"path": str(tmp_path / "cache.json")}, "qibla": {"remote": False}}),
        encoding="utf-8",
    )
    return str(path)


def run_report(tmp_path, monkeypatch, target: date, hijri: dict):
    monkeypatch.setattr("location_service.get_localzone_name", lambda: "Asia/Riyadh")
    stamp = target.strftime("%d-%m-%Y")
    argv = [
        "--config",
        write_config(tmp_path),
        "--latitude",
        "21.4225",
        "--longitude",
        "39.8262",
        "--date",
        target.isoformat(),
        "--24h",
    ]

    with responses.RequestsMock() as mock:
        mock.add(responses.GET, NOMINATIM_PATTERN, json={"address": {"city": "Mecca", "country": "Saudi Arabia"}})
        mock.add(responses.GET, f"{ALADHAN_BASE_URL}/timings/{stamp}", json=timings_payload())
        mock.add(responses.GET, f"{ALADHAN_BASE_URL}/gToH/{stamp}", json=hijri)
        exit_code = main(argv)
        hijri_calls = [call for call in mock.calls if "/gToH/" in call.request.url]

    return exit_code, hijri_calls


def test_report_for_another_day_skips_countdown(tmp_path, monkeypatch, capsys):
    exit_code, hijri_calls = run_report(
        tmp_path, monkeypatch, date(2025, 6, 6), gtoh_payload(10, 12, 1446, "Dhu al-Hijjah")
    )
    out = capsys.readouterr().out

    assert exit_code == 0
    assert len(hijri_calls) == 1
    assert "Location: Mecca, Saudi Arabia (gps)" in out
    assert "Date: 2025-06-06 / 10 Dhu al-Hijjah 1446 AH" in out
    assert "Special day: Eid al-Adha - Festival of Sacrifice" in out
    assert "Maghrib" in out and "18:58" in out
    assert "Next prayer" not in out
    assert "*" not in out
    assert "Qibla: 0°" in out


def test_report_for_today_shows_countdown(tmp_path, monkeypatch, capsys):
    exit_code, hijri_calls = run_report(
        tmp_path, monkeypatch, date.today(), gtoh_payload(18, 5, 1447, "Jumada al-Awwal")
    )
    out = capsys.readouterr().out

    assert exit_code == 0
    assert len(hijri_calls) == 1
    assert "Next prayer: " in out
    assert "Today:" not in out
