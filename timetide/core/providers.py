"""
Calendar providers for the TimeTide scheduling core
Read-only event readers for Google Calendar and Microsoft Graph (Outlook)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, date
from typing import Dict, Any, List, Optional
from urllib.parse import quote

import httpx

from timetide.core.errors import TransientError, ValidationError, error_from_response
from timetide.core.models import CalendarDB, to_naive_utc


@dataclass
class ProviderEvent:
    """Event normalized to naive UTC timestamps"""
    external_id: str
    title: Optional[str]
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    is_busy: bool = True


@dataclass
class EventPage:
    """Result of one list_events call, all pages merged"""
    events: List[ProviderEvent] = field(default_factory=list)
    deleted_ids: List[str] = field(default_factory=list)
    next_sync_token: Optional[str] = None


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 / ISO 8601 timestamp into naive UTC"""
    text = value.strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    # Graph returns seven fractional digits
    if '.' in text:
        head, _, tail = text.partition('.')
        digits = ''.join(ch for ch in tail if ch.isdigit())
        offset = tail[len(digits):]
        text = f"{head}.{digits[:6]}{offset}"
    return to_naive_utc(datetime.fromisoformat(text))


def rfc3339(value: datetime) -> str:
    return to_naive_utc(value).strftime('%Y-%m-%dT%H:%M:%SZ')


class CalendarProvider(ABC):
    """
    Abstract provider-event reader

    Implementations return every event between `since` and `until` when no
    sync token is given (a full pull), or only changes since the token
    otherwise (an incremental pull).
    """

    name = "provider"

    def __init__(self, config: Dict[str, Any], timeout: float = 30.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.api_base = config.get('api_base', '').rstrip('/')
        self.timeout = timeout
        self._client = client
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @abstractmethod
    async def list_events(
        self,
        calendar: CalendarDB,
        access_token: str,
        since: datetime,
        until: datetime,
        sync_token: Optional[str] = None
    ) -> EventPage:
        """
        List events from a calendar

        Raises:
            SyncTokenExpiredError: the incremental token was rejected
            AuthError: the access token was rejected
            TransientError: timeout, rate limit or provider outage
        """
        pass

    async def _get_json(self, client: httpx.AsyncClient, url: str, access_token: str,
                        params: Optional[Dict[str, Any]] = None,
                        headers: Optional[Dict[str, str]] = None,
                        incremental: bool = False) -> Dict[str, Any]:
        request_headers = {'Authorization': f'Bearer {access_token}', 'Accept': 'application/json'}
        request_headers.update(headers or {})
        try:
            response = await client.get(url, params=params, headers=request_headers)
        except httpx.HTTPError as e:
            raise TransientError(f"{self.name} request failed: {e}")

        if not response.is_success:
            raise error_from_response(response, incremental=incremental)

        try:
            payload = response.json()
        except ValueError:
            raise TransientError(f"{self.name} returned invalid JSON")
        if not isinstance(payload, dict):
            raise ValidationError(f"{self.name} returned an unexpected payload shape")
        return payload

    def _open_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout)

    async def _run(self, fetch) -> EventPage:
        if self._client is not None:
            return await fetch(self._client)
        async with self._open_client() as client:
            return await fetch(client)


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar v3 events.list with syncToken support"""

    name = "Google Calendar"

    async def list_events(self, calendar, access_token, since, until, sync_token=None) -> EventPage:
        url = f"{self.api_base}/calendars/{quote(calendar.external_id, safe='')}/events"
        params: Dict[str, Any] = {'singleEvents': 'true', 'maxResults': 250}
        if sync_token:
            # Google rejects timeMin/timeMax together with syncToken
            params['syncToken'] = sync_token
            params['showDeleted'] = 'true'
        else:
            params['timeMin'] = rfc3339(since)
            params['timeMax'] = rfc3339(until)

        async def fetch(client: httpx.AsyncClient) -> EventPage:
            page = EventPage()
            while True:
                payload = await self._get_json(client, url, access_token, params=params,
                                               incremental=bool(sync_token))
                for item in payload.get('items') or []:
                    event_id = item.get('id')
                    if not event_id:
                        continue
                    if item.get('status') == 'cancelled':
                        page.deleted_ids.append(event_id)
                        continue
                    event = self._normalize(item)
                    if event is not None:
                        page.events.append(event)

                if payload.get('nextSyncToken'):
                    page.next_sync_token = payload['nextSyncToken']
                next_page = payload.get('nextPageToken')
                if not next_page:
                    return page
                params['pageToken'] = next_page

        return await self._run(fetch)

    def _normalize(self, item: Dict[str, Any]) -> Optional[ProviderEvent]:
        start, start_all_day = self._boundary(item.get('start') or {})
        end, _ = self._boundary(item.get('end') or {})
        if start is None or end is None:
            self.logger.debug(f"Skipping event {item.get('id')} without start/end")
            return None

        return ProviderEvent(
            external_id=item['id'],
            title=item.get('summary'),
            start_time=start,
            end_time=end,
            is_all_day=start_all_day,
            is_busy=item.get('transparency') != 'transparent'
        )

    @staticmethod
    def _boundary(value: Dict[str, Any]):
        if value.get('dateTime'):
            return parse_timestamp(value['dateTime']), False
        if value.get('date'):
            day = date.fromisoformat(value['date'])
            return datetime(day.year, day.month, day.day), True
        return None, False


class OutlookCalendarProvider(CalendarProvider):
    """Microsoft Graph calendarView delta queries; the deltaLink is the sync token"""

    name = "Outlook Calendar"

    async def list_events(self, calendar, access_token, since, until, sync_token=None) -> EventPage:
        headers = {'Prefer': 'outlook.timezone="UTC", odata.maxpagesize=100'}
        if sync_token:
            url, params = sync_token, None
        else:
            url = f"{self.api_base}/me/calendars/{quote(calendar.external_id, safe='')}/calendarView/delta"
            params = {'startDateTime': rfc3339(since), 'endDateTime': rfc3339(until)}

        async def fetch(client: httpx.AsyncClient) -> EventPage:
            page = EventPage()
            next_url, next_params = url, params
            while next_url:
                payload = await self._get_json(client, next_url, access_token, params=next_params,
                                               headers=headers, incremental=bool(sync_token))
                for item in payload.get('value') or []:
                    event_id = item.get('id')
                    if not event_id:
                        continue
                    if '@removed' in item or item.get('isCancelled'):
                        page.deleted_ids.append(event_id)
                        continue
                    event = self._normalize(item)
                    if event is not None:
                        page.events.append(event)

                if payload.get('@odata.deltaLink'):
                    page.next_sync_token = payload['@odata.deltaLink']
                # nextLink already carries the query string
                next_url, next_params = payload.get('@odata.nextLink'), None
            return page

        return await self._run(fetch)

    def _normalize(self, item: Dict[str, Any]) -> Optional[ProviderEvent]:
        start = (item.get('start') or {}).get('dateTime')
        end = (item.get('end') or {}).get('dateTime')
        if not start or not end:
            self.logger.debug(f"Skipping event {item.get('id')} without start/end")
            return None

        return ProviderEvent(
            external_id=item['id'],
            title=item.get('subject'),
            start_time=parse_timestamp(start),
            end_time=parse_timestamp(end),
            is_all_day=bool(item.get('isAllDay')),
            is_busy=item.get('showAs', 'busy') != 'free'
        )


def build_providers(config: Dict[str, Any], timeout: float = 30.0,
                    client: Optional[httpx.AsyncClient] = None) -> Dict[str, CalendarProvider]:
    """Provider readers keyed by ProviderKind value"""
    return {
        'google': GoogleCalendarProvider(config.get('google', {}), timeout=timeout, client=client),
        'outlook': OutlookCalendarProvider(config.get('outlook', {}), timeout=timeout, client=client),
    }
