from datetime import datetime

import pytest

from timetide.core.errors import ErrorKind, ValidationError
from timetide.core.jobs import (
    CheckConflictsPayload, DeliverWebhookPayload, JobResult, RefreshTokensPayload, RetryDeliveryPayload,
    SyncCalendarPayload, SyncUserCalendarsPayload, WebhookTestPayload, parse_job_type, parse_payload
)
from timetide.core.models import JobType


class TestPayloads:

    def test_default_dedup_keys(self):
        assert SyncCalendarPayload(calendar_id='cal-1').dedup_key() == 'sync:cal-1'
        assert SyncUserCalendarsPayload(user_id='u1').dedup_key() == 'sync-user:u1'
        assert SyncUserCalendarsPayload().dedup_key() == 'sync-user:*'
        assert DeliverWebhookPayload(delivery_id='d1').dedup_key() == 'delivery:d1'
        assert RetryDeliveryPayload(delivery_id='d1').dedup_key() == 'delivery:d1'
        assert RefreshTokensPayload().dedup_key() == 'refresh-tokens'
        assert WebhookTestPayload(webhook_id='w1').dedup_key() is None

    def test_conflict_check_dedups_only_per_booking(self):
        start, end = datetime(2025, 1, 1, 9), datetime(2025, 1, 1, 10)
        assert CheckConflictsPayload(user_id='u1', start=start, end=end).dedup_key() is None
        assert CheckConflictsPayload(user_id='u1', start=start, end=end,
                                     booking_id='b1').dedup_key() == 'conflicts:b1'

    def test_parse_payload_from_dict(self):
        payload = parse_payload('sync_calendar', {'calendar_id': 'cal-1', 'force_full_sync': True})
        assert payload == SyncCalendarPayload(calendar_id='cal-1', force_full_sync=True)

    def test_unknown_job_type(self):
        with pytest.raises(ValidationError):
            parse_job_type('send_email')

    def test_unknown_fields_are_rejected(self):
        with pytest.raises(ValidationError):
            parse_payload(JobType.SYNC_CALENDAR, {'calendar_id': 'cal-1', 'priority': 'high'})

    def test_missing_fields_are_rejected(self):
        with pytest.raises(ValidationError):
            parse_payload(JobType.DELIVER_WEBHOOK, {})

    def test_payload_of_wrong_type_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_payload(JobType.SYNC_CALENDAR, DeliverWebhookPayload(delivery_id='d1'))

    def test_inverted_conflict_window_is_rejected(self):
        with pytest.raises(ValidationError):
            parse_payload(JobType.CHECK_CONFLICTS, {
                'user_id': 'u1', 'start': '2025-01-01T10:00:00', 'end': '2025-01-01T09:00:00'
            })

    def test_json_round_trip_keeps_datetimes(self):
        payload = CheckConflictsPayload(user_id='u1', start=datetime(2025, 1, 1, 9),
                                        end=datetime(2025, 1, 1, 10), booking_id='b1')
        restored = parse_payload(JobType.CHECK_CONFLICTS, payload.model_dump(mode='json'))
        assert restored.start == datetime(2025, 1, 1, 9)

    def test_aware_conflict_window_is_stored_as_naive_utc(self):
        payload = parse_payload(JobType.CHECK_CONFLICTS, {
            'user_id': 'u1', 'start': '2025-01-01T10:00:00+01:00', 'end': '2025-01-01T09:30:00Z'
        })
        assert payload.start == datetime(2025, 1, 1, 9)
        assert payload.end == datetime(2025, 1, 1, 9, 30)
        assert payload.start.tzinfo is None


class TestJobResult:

    def test_success(self):
        result = JobResult.success(data={'events': 3})
        assert result.ok
        assert not result.retryable
        assert result.follow_ups == []

    def test_only_transient_failures_are_retryable(self):
        assert JobResult.failure(ErrorKind.TRANSIENT, 'timeout').retryable
        assert not JobResult.failure(ErrorKind.AUTH, 'revoked').retryable
        assert not JobResult.failure(ErrorKind.VALIDATION, 'bad').retryable
