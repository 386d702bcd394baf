"""Google Calendar adapter (refresh-token exchange, freeBusy, events.insert)."""

import os
from datetime import datetime
from typing import List
from urllib.parse import quote

import httpx

from atendente.logging_config import get_logger
from atendente.schemas.tenant import CalendarConfig
from atendente.services.result import Result

logger = get_logger("calendar_service")

GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_CLIENT_SECRET")
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_URL = "https://www.googleapis.com/calendar/v3"
CALENDAR_TIMEOUT_SECONDS = float(os.environ.get("CALENDAR_TIMEOUT_SECONDS", "15"))

EVENT_REMINDERS = {
    "useDefault": False,
    "overrides": [
        {"method": "email", "minutes": 24 * 60},
        {"method": "popup", "minutes": 30},
    ],
}


def get_access_token(calendar: CalendarConfig) -> Result[str]:
    if not calendar.refresh_token:
        return Result.failure("Google Calendar not connected for this company", "calendar_not_connected")
    if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
        return Result.failure("Google Calendar integration not configured", "calendar_not_configured")

    try:
        with httpx.Client(timeout=CALENDAR_TIMEOUT_SECONDS) as client:
            response = client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": GOOGLE_CLIENT_ID,
                    "client_secret": GOOGLE_CLIENT_SECRET,
                    "refresh_token": calendar.refresh_token,
                    "grant_type": "refresh_token",
                },
            )
    except httpx.HTTPError as e:
        logger.error(f"Google token refresh failed: {e}")
        return Result.failure(str(e), "calendar_error")

    if response.status_code != 200:
        logger.error(f"Google token refresh error: {response.status_code} {response.text[:200]}")
        return Result.failure(f"token refresh status {response.status_code}", "calendar_error")

    token = response.json().get("access_token")
    if not token:
        return Result.failure("token response without access_token", "calendar_error")
    return Result.success(token)


def query_busy(
    calendar: CalendarConfig,
    calendar_id: str,
    time_min: datetime,
    time_max: datetime,
    timezone_name: str,
) -> Result[List[dict]]:
    """Busy intervals of one calendar between ``time_min`` and ``time_max``."""
    token = get_access_token(calendar)
    if not token.ok:
        return Result.failure(token.error, token.error_code)

    body = {
        "timeMin": time_min.isoformat(),
        "timeMax": time_max.isoformat(),
        "timeZone": timezone_name,
        "items": [{"id": calendar_id}],
    }
    try:
        with httpx.Client(timeout=CALENDAR_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"{GOOGLE_CALENDAR_URL}/freeBusy",
                headers={"Authorization": f"Bearer {token.value}"},
                json=body,
            )
    except httpx.HTTPError as e:
        logger.error(f"freeBusy request failed: {e}")
        return Result.failure(str(e), "calendar_error")

    if response.status_code != 200:
        logger.error(f"freeBusy error: {response.status_code} {response.text[:200]}")
        return Result.failure(f"freeBusy status {response.status_code}", "calendar_error")

    calendars = response.json().get("calendars") or {}
    busy = (calendars.get(calendar_id) or {}).get("busy") or []
    return Result.success([{"start": item.get("start"), "end": item.get("end")} for item in busy])


def create_event(
    calendar: CalendarConfig,
    calendar_id: str,
    *,
    summary: str,
    description: str,
    start: datetime,
    end: datetime,
    timezone_name: str,
) -> Result[dict]:
    token = get_access_token(calendar)
    if not token.ok:
        return Result.failure(token.error, token.error_code)

    event = {
        "summary": summary,
        "description": description,
        "start": {"dateTime": start.isoformat(), "timeZone": timezone_name},
        "end": {"dateTime": end.isoformat(), "timeZone": timezone_name},
        "reminders": EVENT_REMINDERS,
    }
    try:
        with httpx.Client(timeout=CALENDAR_TIMEOUT_SECONDS) as client:
            response = client.post(
                f"{GOOGLE_CALENDAR_URL}/calendars/{quote(calendar_id, safe='')}/events",
                headers={"Authorization": f"Bearer {token.value}"},
                json=event,
            )
    except httpx.HTTPError as e:
        logger.error(f"events.insert request failed: {e}")
        return Result.failure(str(e), "calendar_error")

    if response.status_code not in (200, 201):
        logger.error(f"events.insert error: {response.status_code} {response.text[:200]}")
        return Result.failure(f"events.insert status {response.status_code}", "calendar_error")

    data = response.json()
    return Result.success({"id": data.get("id"), "link": data.get("htmlLink")})
