"""
Webhook Delivery Engine for the TimeTide scheduling core
Signed booking-event notifications with bounded retry, backoff and auto-disable
"""

import hmac
import hashlib
import json
import logging
import time
from datetime import timedelta
from typing import Dict, Any, List, Optional, Union

import httpx
from sqlalchemy import and_, or_, select

from timetide.core.database import DatabaseService
from timetide.core.errors import DeliveryRejectedError, NotFoundError, ValidationError
from timetide.core.job_queue import JobQueue
from timetide.core.jobs import (
    DeliverWebhookPayload, JobRequest, JobResult, RetryDeliveryPayload, WebhookTestPayload,
    parse_payload
)
from timetide.core.models import (
    TERMINAL_DELIVERY_STATUSES, BookingDB, DeliveryStatus, Job, JobType, WebhookDB,
    WebhookDeliveryDB, WebhookEventType, new_id, utc_now
)

RESPONSE_BODY_LIMIT = 5000


def sign_payload(body: Union[str, bytes], secret: str) -> str:
    """HMAC-SHA256 over the raw request body, formatted as sha256=<hex>"""
    if isinstance(body, str):
        body = body.encode('utf-8')
    digest = hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: Union[str, bytes], secret: str, signature: Optional[str]) -> bool:
    """Check an X-Webhook-Signature header the way a receiver would"""
    if not signature or not secret:
        return False
    return hmac.compare_digest(sign_payload(body, secret), signature)


def build_booking_payload(booking: BookingDB) -> Dict[str, Any]:
    """The `data` object sent for booking lifecycle events"""
    booking_data = {
        'id': booking.id,
        'userId': booking.user_id,
        'status': booking.status,
        'startTime': booking.start_time.isoformat() if booking.start_time else None,
        'endTime': booking.end_time.isoformat() if booking.end_time else None,
        'hasCalendarConflict': bool(booking.has_calendar_conflict),
    }
    if booking.recurring_group_id:
        booking_data['recurring'] = {
            'groupId': booking.recurring_group_id,
            'index': booking.recurring_index,
            'count': booking.recurring_count,
            'frequency': booking.recurring_frequency,
            'interval': booking.recurring_interval,
        }
    return {'booking': booking_data}


class WebhookDeliveryEngine:
    """Creates, sends and retries webhook deliveries"""

    def __init__(self, db: DatabaseService, job_queue: JobQueue,
                 config: Optional[Dict[str, Any]] = None,
                 client: Optional[httpx.AsyncClient] = None):
        self.db = db
        self.job_queue = job_queue
        self.config = config or {}
        self.max_attempts = int(self.config.get('max_attempts', 5))
        self.timeout = float(self.config.get('timeout_seconds', 10))
        self.backoff_base = float(self.config.get('backoff_base_seconds', 10))
        self.backoff_max = float(self.config.get('backoff_max_seconds', 3600))
        self.auto_disable_threshold = int(self.config.get('auto_disable_threshold', 10))
        self.user_agent = self.config.get('user_agent', 'TimeTide-Webhook/1.0')
        self.stall_grace = float(self.config.get('stall_grace_seconds', 300))
        self._client = client
        self.logger = logging.getLogger(__name__)

    def compute_backoff(self, attempts: int) -> float:
        return min(self.backoff_base * (2 ** max(0, attempts - 1)), self.backoff_max)

    async def trigger_webhooks(self, user_id: str, event_type: Any, data: Dict[str, Any]) -> List[str]:
        """Create one delivery per active webhook subscribed to the event and queue it"""
        try:
            event_type = WebhookEventType(event_type).value
        except ValueError:
            raise ValidationError(f"Unknown webhook event type: {event_type!r}")

        async with self.db.get_session() as session:
            result = await session.execute(
                select(WebhookDB).where(WebhookDB.user_id == user_id, WebhookDB.is_active.is_(True))
            )
            webhooks = [hook for hook in result.scalars().all() if event_type in (hook.event_triggers or [])]

            delivery_ids = []
            for webhook in webhooks:
                delivery_id = new_id()
                session.add(WebhookDeliveryDB(
                    id=delivery_id,
                    webhook_id=webhook.id,
                    event_type=event_type,
                    payload={
                        'eventType': event_type,
                        'deliveryId': delivery_id,
                        'timestamp': utc_now().isoformat() + 'Z',
                        'data': data,
                    },
                    status=DeliveryStatus.PENDING.value,
                    max_attempts=self.max_attempts
                ))
                delivery_ids.append(delivery_id)

        for delivery_id in delivery_ids:
            await self.job_queue.enqueue(JobType.DELIVER_WEBHOOK, DeliverWebhookPayload(delivery_id=delivery_id))

        if delivery_ids:
            self.logger.info(f"Queued {len(delivery_ids)} deliveries of {event_type} for user {user_id}")
        return delivery_ids

    def _build_request(self, webhook: WebhookDB, body: Dict[str, Any], test: bool = False):
        raw = json.dumps(body, separators=(',', ':'), default=str)
        headers = {
            'Content-Type': 'application/json',
            'User-Agent': self.user_agent,
            'X-Webhook-Event': body.get('eventType', ''),
            'X-Webhook-Delivery': body.get('deliveryId', ''),
            'X-Webhook-Timestamp': body.get('timestamp', ''),
        }
        if webhook.secret:
            headers['X-Webhook-Signature'] = sign_payload(raw, webhook.secret)
        if test:
            headers['X-Webhook-Test'] = 'true'
        return raw, headers

    async def _send(self, url: str, raw: str, headers: Dict[str, str]) -> Dict[str, Any]:
        """POST once; never raises for network failures"""
        started = time.monotonic()
        outcome = {'status_code': None, 'body': None, 'error': None}
        try:
            if self._client is not None:
                response = await self._client.post(url, content=raw, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, content=raw, headers=headers)
            outcome['status_code'] = response.status_code
            outcome['body'] = response.text[:RESPONSE_BODY_LIMIT]
            if not response.is_success:
                outcome['error'] = f"HTTP {response.status_code}"
        except httpx.TimeoutException:
            outcome['error'] = f"Request timed out after {self.timeout:.0f}s"
        except httpx.HTTPError as e:
            outcome['error'] = f"Request failed: {e}"
        except httpx.InvalidURL as e:
            outcome['error'] = f"Invalid webhook URL: {e}"
        outcome['response_time_ms'] = int((time.monotonic() - started) * 1000)
        return outcome

    async def handle_deliver(self, payload: DeliverWebhookPayload) -> JobResult:
        """DeliverWebhook job handler"""
        return await self.attempt_delivery(payload.delivery_id)

    async def handle_retry(self, payload: RetryDeliveryPayload) -> JobResult:
        """RetryDelivery job handler"""
        return await self.attempt_delivery(payload.delivery_id)

    async def attempt_delivery(self, delivery_id: str) -> JobResult:
        """
        Make one delivery attempt and record it.

        The job succeeds once the attempt is recorded, whatever the receiver
        answered; a further attempt is requested as a delayed RetryDelivery
        follow-up while the delivery has attempts left.
        """
        async with self.db.get_session() as session:
            delivery = await session.get(WebhookDeliveryDB, delivery_id)
            if delivery is None:
                raise NotFoundError('Webhook delivery', delivery_id)
            if delivery.status in TERMINAL_DELIVERY_STATUSES:
                return JobResult.success(data={'skipped': delivery.status})

            webhook = await session.get(WebhookDB, delivery.webhook_id)
            if webhook is None or not webhook.is_active:
                reason = "Webhook no longer exists" if webhook is None else "Webhook is inactive"
                delivery.status = DeliveryStatus.FAILED.value
                delivery.error_message = reason
                delivery.next_retry_at = None
                self.logger.info(f"Delivery {delivery_id} closed without an attempt: {reason}")
                return JobResult.success(data={'skipped': reason})

            if delivery.attempts >= delivery.max_attempts:
                delivery.status = DeliveryStatus.FAILED.value
                delivery.next_retry_at = None
                return JobResult.success(data={'skipped': 'attempts exhausted'})

            url = webhook.url
            raw, headers = self._build_request(webhook, delivery.payload or {})

        outcome = await self._send(url, raw, headers)
        return await self._record_attempt(delivery_id, outcome)

    async def _record_attempt(self, delivery_id: str, outcome: Dict[str, Any]) -> JobResult:
        now = utc_now()
        follow_ups = []

        async with self.db.get_session() as session:
            delivery = await session.get(WebhookDeliveryDB, delivery_id)
            if delivery is None:
                raise NotFoundError('Webhook delivery', delivery_id)
            webhook = await session.get(WebhookDB, delivery.webhook_id)

            delivery.attempts += 1
            delivery.response_status = outcome['status_code']
            delivery.response_body = outcome['body']
            delivery.response_time_ms = outcome['response_time_ms']
            if webhook is not None:
                webhook.last_triggered_at = now

            if outcome['error'] is None:
                delivery.status = DeliveryStatus.SUCCESS.value
                delivery.delivered_at = now
                delivery.error_message = None
                delivery.next_retry_at = None
                if webhook is not None:
                    webhook.failure_count = 0
                    webhook.last_success_at = now
                self.logger.info(f"Delivery {delivery_id} succeeded (HTTP {outcome['status_code']}, "
                                 f"{outcome['response_time_ms']}ms)")
            else:
                delivery.error_message = outcome['error']
                # A receiver rejecting our credentials will not change its mind on retry
                rejected = outcome['status_code'] in (401, 403)

                if delivery.attempts < delivery.max_attempts and not rejected:
                    delay = self.compute_backoff(delivery.attempts)
                    delivery.status = DeliveryStatus.RETRYING.value
                    delivery.next_retry_at = now + timedelta(seconds=delay)
                    follow_ups.append(JobRequest(
                        JobType.RETRY_DELIVERY,
                        RetryDeliveryPayload(delivery_id=delivery_id),
                        delay_seconds=delay
                    ))
                    self.logger.warning(f"Delivery {delivery_id} attempt {delivery.attempts}/"
                                        f"{delivery.max_attempts} failed ({outcome['error']}); "
                                        f"retry in {delay:.0f}s")
                else:
                    self._close_failed(delivery, webhook, outcome['error'], now)

            data = {
                'status': delivery.status,
                'attempts': delivery.attempts,
                'response_status': delivery.response_status,
            }

        return JobResult.success(data=data, follow_ups=follow_ups)

    def _close_failed(self, delivery: WebhookDeliveryDB, webhook: Optional[WebhookDB], error: str, now):
        delivery.status = DeliveryStatus.FAILED.value
        delivery.next_retry_at = None
        self.logger.error(f"Delivery {delivery.id} failed after {delivery.attempts} attempts: {error}")

        if webhook is None:
            return
        webhook.last_failure_at = now
        webhook.last_error_message = error
        if delivery.failure_counted:
            return
        delivery.failure_counted = True
        webhook.failure_count = (webhook.failure_count or 0) + 1

        if webhook.is_active and webhook.failure_count >= self.auto_disable_threshold:
            webhook.is_active = False
            self.logger.warning(f"Webhook {webhook.id} auto-disabled after "
                                f"{webhook.failure_count} consecutive failed deliveries")

    async def retry_delivery(self, delivery_id: str) -> str:
        """
        Manually re-attempt a delivery now, skipping any scheduled backoff.

        Raises:
            NotFoundError: unknown delivery
            DeliveryRejectedError: already delivered, webhook inactive, or no attempts left
        """
        async with self.db.get_session() as session:
            delivery = await session.get(WebhookDeliveryDB, delivery_id)
            if delivery is None:
                raise NotFoundError('Webhook delivery', delivery_id)
            if delivery.status == DeliveryStatus.SUCCESS.value:
                raise DeliveryRejectedError(f"Delivery {delivery_id} already succeeded")

            webhook = await session.get(WebhookDB, delivery.webhook_id)
            if webhook is None or not webhook.is_active:
                raise DeliveryRejectedError(f"Webhook for delivery {delivery_id} is inactive")
            if delivery.attempts >= delivery.max_attempts:
                raise DeliveryRejectedError(
                    f"Delivery {delivery_id} has used all {delivery.max_attempts} attempts"
                )

            delivery.status = DeliveryStatus.RETRYING.value
            delivery.next_retry_at = utc_now()

        job_id = await self.job_queue.enqueue(
            JobType.RETRY_DELIVERY,
            RetryDeliveryPayload(delivery_id=delivery_id, manual=True),
            expedite=True
        )
        self.logger.info(f"Manual retry of delivery {delivery_id} queued as job {job_id}")
        return job_id

    async def requeue_stalled_deliveries(self) -> List[str]:
        """
        Queue a job for every open delivery that is overdue and has none.

        A delivery is left without a job when its rows were committed but the
        enqueue that follows failed, either the initial DeliverWebhook job or
        the RetryDelivery follow-up of a recorded attempt. Pending deliveries
        are overdue once `stall_grace_seconds` old; retrying ones once that long
        past `next_retry_at`.
        """
        cutoff = utc_now() - timedelta(seconds=self.stall_grace)
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WebhookDeliveryDB.id, WebhookDeliveryDB.status).where(or_(
                    and_(WebhookDeliveryDB.status == DeliveryStatus.PENDING.value,
                         WebhookDeliveryDB.created_at <= cutoff),
                    and_(WebhookDeliveryDB.status == DeliveryStatus.RETRYING.value,
                         WebhookDeliveryDB.next_retry_at <= cutoff),
                ))
            )
            overdue = result.all()

        requeued = []
        for delivery_id, status in overdue:
            if await self.job_queue.active_job_for(f"delivery:{delivery_id}") is not None:
                continue
            if status == DeliveryStatus.PENDING.value:
                await self.job_queue.enqueue(JobType.DELIVER_WEBHOOK, DeliverWebhookPayload(delivery_id=delivery_id))
            else:
                await self.job_queue.enqueue(JobType.RETRY_DELIVERY, RetryDeliveryPayload(delivery_id=delivery_id))
            requeued.append(delivery_id)

        if requeued:
            self.logger.warning(f"🔄 Re-queued {len(requeued)} stalled webhook deliveries")
        return requeued

    async def test_webhook(self, webhook_id: str) -> Dict[str, Any]:
        """Send a synthetic booking.created event; nothing is persisted"""
        async with self.db.get_session() as session:
            webhook = await session.get(WebhookDB, webhook_id)
            if webhook is None:
                raise NotFoundError('Webhook', webhook_id)
            url = webhook.url

            now = utc_now()
            body = {
                'eventType': WebhookEventType.BOOKING_CREATED.value,
                'deliveryId': f"test-{new_id()}",
                'timestamp': now.isoformat() + 'Z',
                'data': {
                    'booking': {
                        'id': 'test-booking',
                        'userId': webhook.user_id,
                        'status': 'confirmed',
                        'startTime': (now + timedelta(days=1)).isoformat(),
                        'endTime': (now + timedelta(days=1, hours=1)).isoformat(),
                    },
                    'test': True,
                },
            }
            raw, headers = self._build_request(webhook, body, test=True)

        outcome = await self._send(url, raw, headers)
        result = {
            'success': outcome['error'] is None,
            'status_code': outcome['status_code'],
            'response_time': outcome['response_time_ms'],
        }
        if outcome['error']:
            result['error'] = outcome['error']
        self.logger.info(f"Test delivery to webhook {webhook_id}: {result}")
        return result

    async def handle_test_webhook(self, payload: WebhookTestPayload) -> JobResult:
        """TestWebhook job handler; the outcome is kept as the job result"""
        return JobResult.success(data=await self.test_webhook(payload.webhook_id))

    async def set_webhook_active(self, webhook_id: str, active: bool) -> bool:
        """Enable or disable a webhook; re-enabling clears its failure count"""
        async with self.db.get_session() as session:
            webhook = await session.get(WebhookDB, webhook_id)
            if webhook is None:
                raise NotFoundError('Webhook', webhook_id)
            if active and not webhook.is_active:
                webhook.failure_count = 0
            webhook.is_active = active
        self.logger.info(f"Webhook {webhook_id} {'enabled' if active else 'disabled'}")
        return active

    async def on_delivery_dead_letter(self, job: Job, error: str):
        """A delivery job that could not run to completion closes its delivery as failed"""
        payload = parse_payload(job.job_type, job.payload)
        async with self.db.get_session() as session:
            delivery = await session.get(WebhookDeliveryDB, payload.delivery_id)
            if delivery is None or delivery.status in TERMINAL_DELIVERY_STATUSES:
                return
            webhook = await session.get(WebhookDB, delivery.webhook_id)
            delivery.error_message = error
            self._close_failed(delivery, webhook, error, utc_now())
