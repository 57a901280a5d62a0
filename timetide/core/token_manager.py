"""
OAuth Token Manager for the TimeTide scheduling core
Keeps provider credentials valid and owns the calendar connect/disconnect lifecycle
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Any, Optional

import httpx
from sqlalchemy import select, delete, func

from timetide.core.database import DatabaseService
from timetide.core.errors import (
    AuthError, NotFoundError, TransientError, ValidationError, error_from_response
)
from timetide.core.jobs import JobResult, RefreshTokensPayload
from timetide.core.models import (
    CalendarCredentialDB, CalendarDB, ProviderKind, SyncedEventDB, SyncStatus, utc_now
)


@dataclass
class TokenSet:
    """Tokens returned by a provider's token endpoint"""
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[Any] = None


class TokenExchange(ABC):
    """External collaborator that talks to a provider's OAuth token endpoint"""

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> TokenSet:
        """Exchange an authorization code for access and refresh tokens"""
        pass

    @abstractmethod
    async def refresh(self, refresh_token: str) -> TokenSet:
        """
        Refresh an expired credential.

        Raises:
            AuthError: the grant is revoked or expired
            TransientError: the endpoint is unreachable or overloaded
        """
        pass


class HttpTokenExchange(TokenExchange):
    """Standard OAuth2 form-post token exchange over httpx"""

    def __init__(self, provider: str, config: Dict[str, Any],
                 timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.provider = provider
        self.client_id = config.get('client_id', '')
        self.client_secret = config.get('client_secret', '')
        self.token_url = config.get('token_url', '')
        self.timeout = timeout
        self._client = client
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> TokenSet:
        data = {
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'code': code,
            'grant_type': 'authorization_code',
        }
        if redirect_uri:
            data['redirect_uri'] = redirect_uri
        return await self._post(data)

    async def refresh(self, refresh_token: str) -> TokenSet:
        tokens = await self._post({
            'client_id': self.client_id,
            'client_secret': self.client_secret,
            'refresh_token': refresh_token,
            'grant_type': 'refresh_token',
        })
        # Providers may omit the refresh token when it is unchanged
        if not tokens.refresh_token:
            tokens.refresh_token = refresh_token
        return tokens

    async def _post(self, data: Dict[str, str]) -> TokenSet:
        try:
            if self._client is not None:
                response = await self._client.post(self.token_url, data=data, timeout=self.timeout,
                                                   headers={'Accept': 'application/json'})
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.token_url, data=data,
                                                 headers={'Accept': 'application/json'})
        except httpx.HTTPError as e:
            raise TransientError(f"{self.provider} token endpoint unreachable: {e}")

        if not response.is_success:
            raise error_from_response(response)

        try:
            payload = response.json()
        except ValueError:
            raise TransientError(f"{self.provider} token endpoint returned invalid JSON")

        access_token = payload.get('access_token')
        if not access_token:
            raise ValidationError(f"{self.provider} token response is missing access_token")

        expires_in = payload.get('expires_in')
        try:
            expires_at = utc_now() + timedelta(seconds=int(expires_in)) if expires_in else None
        except (TypeError, ValueError):
            expires_at = None

        return TokenSet(
            access_token=access_token,
            refresh_token=payload.get('refresh_token'),
            expires_at=expires_at
        )


class OAuthTokenManager:
    """Refreshes credentials on demand and tracks their validity"""

    def __init__(self, db: DatabaseService, exchanges: Dict[str, TokenExchange],
                 config: Optional[Dict[str, Any]] = None):
        self.db = db
        self.exchanges = exchanges
        self.config = config or {}
        self.refresh_margin = timedelta(seconds=float(self.config.get('token_refresh_margin_seconds', 300)))
        self.logger = logging.getLogger(__name__)
        self._refresh_locks: Dict[str, asyncio.Lock] = {}

    def _exchange_for(self, provider: str) -> TokenExchange:
        exchange = self.exchanges.get(provider)
        if exchange is None:
            raise ValidationError(f"No token exchange configured for provider '{provider}'")
        return exchange

    def _lock_for(self, credential_id: str) -> asyncio.Lock:
        return self._refresh_locks.setdefault(credential_id, asyncio.Lock())

    async def ensure_valid_token(self, calendar: CalendarDB) -> str:
        """
        Return an access token for the calendar, refreshing it when it expires
        within the safety margin.

        Raises:
            AuthError: no usable credential, or the provider revoked the grant
            TransientError: refresh failed for a retryable reason
        """
        if not calendar.credential_id:
            raise AuthError(f"Calendar {calendar.id} has no credential")

        # Calendars sharing a credential refresh it once
        async with self._lock_for(calendar.credential_id):
            async with self.db.get_session() as session:
                credential = await session.get(CalendarCredentialDB, calendar.credential_id)
                if credential is None:
                    raise AuthError(f"Credential for calendar {calendar.id} no longer exists")
                if not credential.is_valid:
                    raise AuthError(f"Credential for calendar {calendar.id} was revoked")

                if credential.expires_at is None or credential.expires_at > utc_now() + self.refresh_margin:
                    return credential.access_token

                await self._refresh_credential(session, credential)
                return credential.access_token

    async def _refresh_credential(self, session, credential: CalendarCredentialDB):
        if not credential.refresh_token:
            credential.is_valid = False
            await session.commit()
            raise AuthError(f"Credential {credential.id} expired and has no refresh token")

        exchange = self._exchange_for(credential.provider)
        try:
            tokens = await exchange.refresh(credential.refresh_token)
        except AuthError:
            credential.is_valid = False
            await session.commit()
            self.logger.warning(f"Refresh rejected for credential {credential.id}; marked invalid")
            raise

        credential.access_token = tokens.access_token
        if tokens.refresh_token:
            credential.refresh_token = tokens.refresh_token
        credential.expires_at = tokens.expires_at
        credential.updated_at = utc_now()
        self.logger.info(f"Refreshed {credential.provider} credential {credential.id}")

    async def refresh_expiring_tokens(self, horizon_minutes: int = 60) -> Dict[str, int]:
        """Refresh every enabled calendar's credential that expires within the horizon"""
        cutoff = utc_now() + timedelta(minutes=horizon_minutes)
        async with self.db.get_session() as session:
            result = await session.execute(
                select(CalendarCredentialDB.id)
                .join(CalendarDB, CalendarDB.credential_id == CalendarCredentialDB.id)
                .where(
                    CalendarDB.is_enabled.is_(True),
                    CalendarDB.sync_status != SyncStatus.DISCONNECTED.value,
                    CalendarCredentialDB.is_valid.is_(True),
                    CalendarCredentialDB.expires_at <= cutoff
                )
                .distinct()
            )
            credential_ids = [row[0] for row in result.all()]

        stats = {'checked': len(credential_ids), 'refreshed': 0, 'failed': 0, 'disconnected': 0}

        for credential_id in credential_ids:
            async with self._lock_for(credential_id):
                try:
                    async with self.db.get_session() as session:
                        credential = await session.get(CalendarCredentialDB, credential_id)
                        if credential is None or not credential.is_valid:
                            continue
                        await self._refresh_credential(session, credential)
                    stats['refreshed'] += 1
                except AuthError as e:
                    stats['disconnected'] += await self.disconnect_calendars(credential_id, str(e))
                except TransientError as e:
                    stats['failed'] += 1
                    self.logger.warning(f"Token refresh for credential {credential_id} will be retried: {e}")

        self.logger.info(f"Token refresh pass: {stats}")
        return stats

    async def disconnect_calendars(self, credential_id: str, reason: str) -> int:
        """Mark every calendar using the credential as disconnected"""
        async with self.db.get_session() as session:
            result = await session.execute(
                select(CalendarDB).where(CalendarDB.credential_id == credential_id)
            )
            calendars = result.scalars().all()
            for calendar in calendars:
                calendar.sync_status = SyncStatus.DISCONNECTED.value
                calendar.last_sync_error = reason
        for calendar in calendars:
            self.logger.warning(f"Calendar {calendar.id} disconnected: {reason}")
        return len(calendars)

    async def connect_calendar(self, user_id: str, provider: Any, code: str, external_id: str,
                               name: str = '', redirect_uri: Optional[str] = None) -> str:
        """
        Connect (or reconnect) an external calendar from an authorization code.

        A reconnect keeps the calendar row and resets it to Pending with a
        fresh credential; the first calendar a user connects becomes primary.
        """
        try:
            provider = ProviderKind(provider).value
        except ValueError:
            raise ValidationError(f"Unknown calendar provider: {provider!r}")

        tokens = await self._exchange_for(provider).exchange_code(code, redirect_uri)

        async with self.db.get_session() as session:
            result = await session.execute(
                select(CalendarDB).where(
                    CalendarDB.user_id == user_id,
                    CalendarDB.provider == provider,
                    CalendarDB.external_id == external_id
                )
            )
            calendar = result.scalars().first()

            credential = None
            if calendar is not None and calendar.credential_id:
                credential = await session.get(CalendarCredentialDB, calendar.credential_id)

            if credential is None:
                credential = CalendarCredentialDB(provider=provider, access_token=tokens.access_token)
                session.add(credential)
                await session.flush()

            credential.access_token = tokens.access_token
            credential.refresh_token = tokens.refresh_token or credential.refresh_token
            credential.expires_at = tokens.expires_at
            credential.is_valid = True
            credential.updated_at = utc_now()

            if calendar is None:
                existing_count = await session.scalar(
                    select(func.count(CalendarDB.id)).where(CalendarDB.user_id == user_id)
                )
                calendar = CalendarDB(
                    user_id=user_id,
                    provider=provider,
                    external_id=external_id,
                    name=name or external_id,
                    credential_id=credential.id,
                    is_primary=existing_count == 0,
                    sync_status=SyncStatus.PENDING.value
                )
                session.add(calendar)
                await session.flush()
                self.logger.info(f"Connected {provider} calendar {calendar.id} for user {user_id}")
            else:
                calendar.credential_id = credential.id
                calendar.is_enabled = True
                calendar.sync_status = SyncStatus.PENDING.value
                calendar.sync_token = None
                calendar.last_sync_error = None
                if name:
                    calendar.name = name
                self.logger.info(f"Reconnected {provider} calendar {calendar.id} for user {user_id}")

            return calendar.id

    async def remove_calendar(self, calendar_id: str) -> bool:
        """Delete a calendar and its events; the credential goes only with its last calendar"""
        async with self.db.get_session() as session:
            calendar = await session.get(CalendarDB, calendar_id)
            if calendar is None:
                raise NotFoundError('Calendar', calendar_id)

            credential_id = calendar.credential_id
            await session.execute(delete(SyncedEventDB).where(SyncedEventDB.calendar_id == calendar_id))
            await session.delete(calendar)
            await session.flush()

            credential_removed = False
            if credential_id:
                remaining = await session.scalar(
                    select(func.count(CalendarDB.id)).where(CalendarDB.credential_id == credential_id)
                )
                if remaining == 0:
                    await session.execute(
                        delete(CalendarCredentialDB).where(CalendarCredentialDB.id == credential_id)
                    )
                    credential_removed = True

        self.logger.info(f"Removed calendar {calendar_id}"
                         + (" and its credential" if credential_removed else ""))
        return credential_removed

    async def handle_refresh_tokens(self, payload: RefreshTokensPayload) -> JobResult:
        """RefreshTokens job handler"""
        stats = await self.refresh_expiring_tokens(payload.horizon_minutes)
        return JobResult.success(data=stats)
