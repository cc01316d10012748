from __future__ import annotations
from datetime import datetime
import logging
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo
import os

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from .models import Event

SCOPES = ["https://www.googleapis.com/auth/calendar.readonly"]

logger = logging.getLogger(__name__)


def _load_creds(token_path: str) -> Optional[Credentials]:
    # Interactive consent is done once by `alarmcal google-login`; a sync pass never prompts.
    if not token_path or not os.path.exists(token_path):
        return None
    creds = Credentials.from_authorized_user_file(token_path, SCOPES)
    if creds.expired and creds.refresh_token:
        creds.refresh(Request())
        with open(token_path, "w", encoding="utf-8") as f:
            f.write(creds.to_json())
    return creds


def login(credentials_path: str, token_path: str) -> None:
    from google_auth_oauthlib.flow import InstalledAppFlow

    flow = InstalledAppFlow.from_client_secrets_file(credentials_path, SCOPES)
    creds = flow.run_local_server(port=0)
    os.makedirs(os.path.dirname(token_path) or ".", exist_ok=True)
    with open(token_path, "w", encoding="utf-8") as f:
        f.write(creds.to_json())


def _parse_item(item: Dict[str, Any], cal_id: str, tz: ZoneInfo) -> Event:
    start_obj = item.get("start", {})
    end_obj = item.get("end", {})

    # All-day events have "date" not "dateTime"
    if "date" in start_obj:
        start = datetime.fromisoformat(start_obj["date"]).replace(tzinfo=tz)
        end = datetime.fromisoformat(end_obj.get("date", start_obj["date"])).replace(tzinfo=tz)
        all_day = True
    else:
        start = datetime.fromisoformat(start_obj["dateTime"]).astimezone(tz)
        end = datetime.fromisoformat(end_obj.get("dateTime", start_obj["dateTime"])).astimezone(tz)
        all_day = False

    return Event(
        id=str(item.get("id", "")),
        title=item.get("summary", "(No title)"),
        start=start,
        end=end,
        all_day=all_day,
        calendar_id=cal_id,
        location=item.get("location"),
        source="google",
    )


class GoogleCalendarSource:
    def __init__(self, calendar_ids: List[str], credentials_path: str, token_path: str, tz: ZoneInfo) -> None:
        self.calendar_ids = calendar_ids
        self.credentials_path = credentials_path
        self.token_path = token_path
        self.tz = tz

    def read_events(self, start: datetime, end: datetime) -> List[Event]:
        try:
            creds = _load_creds(self.token_path)
        except RefreshError as exc:
            logger.warning("Google token refresh failed; treating as no events: %s", exc)
            return []
        if creds is None:
            logger.warning("No Google token at %r; run `alarmcal google-login` first", self.token_path)
            return []

        service = build("calendar", "v3", credentials=creds, cache_discovery=False)

        events: List[Event] = []
        for cal_id in self.calendar_ids:
            page_token = None
            while True:
                resp = service.events().list(
                    calendarId=cal_id,
                    timeMin=start.isoformat(),
                    timeMax=end.isoformat(),
                    singleEvents=True,
                    orderBy="startTime",
                    pageToken=page_token,
                ).execute()

                for item in resp.get("items", []):
                    if item.get("status") == "cancelled":
                        continue
                    event = _parse_item(item, cal_id, self.tz)
                    # timeMin filters on end time, the window here is on start
                    if start <= event.start < end:
                        events.append(event)

                page_token = resp.get("nextPageToken")
                if not page_token:
                    break

        events.sort(key=lambda e: e.start)
        return events
