from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any
from uuid import uuid4

from notifyhub.core.clock import Clock
from notifyhub.core.errors import NotFoundError, ValidationError
from notifyhub.domain.events import EventEnvelope
from notifyhub.domain.notifications import (
    CHANNEL_EMAIL,
    CHANNEL_PENDING,
    CHANNEL_SMS,
    CHANNEL_TIMEOUT,
    CHANNELS,
    PRIORITIES,
    STATUS_FAILED,
    STATUS_IN_FLIGHT,
    STATUS_QUEUED,
    AdmissionResult,
    ChannelOutcome,
    NotificationRequest,
    QueuedItem,
    overall_status,
)
from notifyhub.persistence.repos.base import NotificationStore
from notifyhub.services.contacts import ContactCipher, validate_contact
from notifyhub.services.dispatcher import Dispatcher
from notifyhub.services.due_queue import DueQueue
from notifyhub.services.governor import GovernorDecision, RateBudgetGovernor
from notifyhub.services.idempotency import IdempotencyStore, canonical_json, normalize_key
from notifyhub.services.routing import Router
from notifyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_REQUIRED_CONTACT_CHANNELS = frozenset({CHANNEL_SMS, CHANNEL_EMAIL})


def _canonical(outcome: dict[str, Any]) -> dict[str, Any]:
    # First responses and replays share one key order.
    return json.loads(canonical_json(outcome))


class AdmissionGateway:
    """Entry point for every notification: validate, deduplicate, gate, then route to a delivery path."""

    def __init__(
        self,
        *,
        store: NotificationStore,
        idempotency: IdempotencyStore,
        governor: RateBudgetGovernor,
        router: Router,
        dispatcher: Dispatcher,
        due_queue: DueQueue,
        cipher: ContactCipher,
        clock: Clock | None = None,
        sync_deadline_ms: int = 2000,
        sync_recovery_s: int = 120,
    ) -> None:
        self._store = store
        self._idempotency = idempotency
        self._governor = governor
        self._router = router
        self._dispatcher = dispatcher
        self._due_queue = due_queue
        self._cipher = cipher
        self._clock = clock or Clock()
        self._sync_deadline_ms = sync_deadline_ms
        self._sync_recovery_s = sync_recovery_s
        self._background: set[asyncio.Task[Any]] = set()

    def validate(self, request: NotificationRequest) -> NotificationRequest:
        for name in ("tenant_id", "service_origin", "template_key", "correlation_id"):
            if not str(getattr(request, name) or "").strip():
                raise ValidationError(f"{name} is required", details={"field": name})
        idempotency_key = normalize_key(request.idempotency_key)

        channels = tuple(request.channels)
        if not channels:
            raise ValidationError("At least one channel is required", details={"field": "channels"})
        unknown = [channel for channel in channels if channel not in CHANNELS]
        if unknown:
            raise ValidationError(f"Unknown channels: {', '.join(unknown)}", details={"field": "channels"})
        if len(set(channels)) != len(channels):
            raise ValidationError("Channels must be unique", details={"field": "channels"})
        if request.priority not in PRIORITIES:
            raise ValidationError(f"Unknown priority {request.priority}", details={"field": "priority"})

        scheduled_at = request.scheduled_at
        if scheduled_at is not None:
            if scheduled_at.tzinfo is None:
                scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
            if request.synchronous:
                raise ValidationError("Scheduled notifications cannot be synchronous", details={"field": "scheduled_at"})
            if scheduled_at <= self._clock.now():
                raise ValidationError("scheduled_at must be in the future", details={"field": "scheduled_at"})

        stray = [channel for channel in request.contacts if channel not in channels]
        if stray:
            raise ValidationError(f"Contacts given for unrequested channels: {', '.join(stray)}", details={"field": "contacts"})
        for channel in channels:
            contact = request.contacts.get(channel)
            if not contact:
                if channel in _REQUIRED_CONTACT_CHANNELS:
                    raise ValidationError(
                        f"Channel {channel} requires a contact", code="MISSING_CONTACT", details={"channel": channel}
                    )
                continue
            validate_contact(channel, self._cipher.decrypt(contact))

        normalized = replace(request, idempotency_key=idempotency_key, channels=channels, scheduled_at=scheduled_at)
        self._router.check_sync(normalized)
        return normalized

    async def admit(self, request: NotificationRequest) -> AdmissionResult:
        request = self.validate(request)
        notification_id = uuid4().hex
        reservation = await self._idempotency.reserve(request.tenant_id, request.idempotency_key, notification_id)
        if not reservation.created:
            increment_counter("idempotency_replays_total")
            outcome = reservation.outcome
            return AdmissionResult(
                notification_id=reservation.notification_id,
                status=str(outcome.get("status")),
                outcome=outcome,
                replayed=True,
                warnings=tuple(outcome.get("warnings") or ()),
                processing_ms=outcome.get("processing_ms"),
            )

        try:
            decision = await self._governor.check(request)
            item = self._new_item(notification_id, request)
            await self._store.create(request, item)
        except Exception:
            # Nothing was persisted, so the caller may retry with the same key.
            await self._idempotency.release(request.tenant_id, request.idempotency_key, notification_id)
            raise

        increment_counter("admissions_total.sync" if request.synchronous else "admissions_total.queued")
        if request.synchronous:
            return await self._admit_sync(item, request, decision)
        return await self._admit_async(item, request, decision)

    def _new_item(self, notification_id: str, request: NotificationRequest) -> QueuedItem:
        now = self._clock.now()
        policy = self._dispatcher.policy_for(request)
        return QueuedItem(
            id=notification_id,
            tenant_id=request.tenant_id,
            status=STATUS_IN_FLIGHT if request.synchronous else STATUS_QUEUED,
            attempts=0,
            max_attempts=policy.max_attempts,
            next_attempt_at=None if request.synchronous else (request.scheduled_at or now),
            created_at=now,
            updated_at=now,
            channel_state={channel: {"status": CHANNEL_PENDING} for channel in request.channels},
        )

    async def _admit_async(
        self,
        item: QueuedItem,
        request: NotificationRequest,
        decision: GovernorDecision,
    ) -> AdmissionResult:
        due_at = item.next_attempt_at or item.created_at
        await self._due_queue.schedule(item.id, due_at)
        outcome: dict[str, Any] = {"notification_id": item.id, "status": STATUS_QUEUED}
        if decision.warnings:
            outcome["warnings"] = list(decision.warnings)
        outcome = _canonical(outcome)
        await self._idempotency.record(request.tenant_id, request.idempotency_key, outcome)
        logger.info(
            "notification_queued notification_id=%s tenant_id=%s service_origin=%s due_at=%s correlation_id=%s",
            item.id,
            request.tenant_id,
            request.service_origin,
            due_at.isoformat(),
            request.correlation_id,
        )
        return AdmissionResult(
            notification_id=item.id,
            status=STATUS_QUEUED,
            outcome=outcome,
            warnings=decision.warnings,
        )

    async def _admit_sync(
        self,
        item: QueuedItem,
        request: NotificationRequest,
        decision: GovernorDecision,
    ) -> AdmissionResult:
        loop = asyncio.get_running_loop()
        started = loop.time()
        # Workers pick the item up if this process dies before the attempt is finalized.
        await self._due_queue.schedule(item.id, item.created_at + timedelta(seconds=self._sync_recovery_s))
        gate = asyncio.Event()
        try:
            handle = await self._dispatcher.launch(item, request, path="sync", gate=gate)
            self._track(handle.completion)
            channels: dict[str, dict[str, Any]] = {}
            error_code: str | None = None
            if handle.channel_tasks:
                remaining = self._sync_deadline_ms / 1000.0 - (loop.time() - started)
                # asyncio.wait never cancels the tasks it waits on.
                await asyncio.wait(set(handle.channel_tasks.values()), timeout=max(remaining, 0.0))
                for channel, task in handle.channel_tasks.items():
                    if task.done() and not task.cancelled():
                        channels[channel] = task.result().to_payload()
                    else:
                        channels[channel] = ChannelOutcome(channel=channel, status=CHANNEL_TIMEOUT).to_payload()
                status = overall_status({channel: value["status"] for channel, value in channels.items()})
            else:
                error_code = handle.error.code if handle.error is not None else None
                for channel in request.channels:
                    channels[channel] = ChannelOutcome(channel=channel, status="failed", error_code=error_code).to_payload()
                status = STATUS_FAILED

            processing_ms = int((loop.time() - started) * 1000)
            outcome: dict[str, Any] = {
                "notification_id": item.id,
                "status": status,
                "channels": channels,
                "processing_ms": processing_ms,
            }
            if error_code:
                outcome["error_code"] = error_code
            if decision.warnings:
                outcome["warnings"] = list(decision.warnings)
            outcome = _canonical(outcome)
            await self._idempotency.record(request.tenant_id, request.idempotency_key, outcome)
        finally:
            # Let the background finalizer write the terminal outcome after the response is recorded.
            gate.set()

        timed_out = [channel for channel, value in channels.items() if value["status"] == CHANNEL_TIMEOUT]
        if timed_out:
            increment_counter("sync_deadline_exceeded_total")
        logger.info(
            "notification_sync_result notification_id=%s status=%s processing_ms=%s timed_out=%s correlation_id=%s",
            item.id,
            status,
            processing_ms,
            ",".join(timed_out) or "-",
            request.correlation_id,
        )
        return AdmissionResult(
            notification_id=item.id,
            status=status,
            outcome=outcome,
            warnings=decision.warnings,
            processing_ms=processing_ms,
        )

    def _track(self, task: asyncio.Task[Any]) -> None:
        # Keep a strong reference so in-flight completions are not garbage collected.
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background_completion_failed", exc_info=exc)

    async def drain(self, timeout_s: float | None = None) -> None:
        # Wait for outstanding background completions (shutdown and tests).
        if not self._background:
            return
        await asyncio.wait(set(self._background), timeout=timeout_s)

    async def ingest_event(self, envelope: EventEnvelope, tenant_id: str) -> AdmissionResult:
        template_key = envelope.template_key or self._router.template_for_message_type(envelope.message_type)
        request = NotificationRequest(
            tenant_id=tenant_id,
            service_origin=envelope.service_origin,
            channels=tuple(envelope.channels),
            template_key=template_key,
            idempotency_key=envelope.idempotency_key or envelope.event_id,
            correlation_id=envelope.correlation_id or envelope.event_id,
            user_id=envelope.user_id,
            priority=envelope.priority,
            # Bus events are always delivered through the queue.
            synchronous=False,
            payload=dict(envelope.data),
            locale=envelope.locale,
            contacts=dict(envelope.contacts),
        )
        logger.info(
            "event_ingested event_id=%s message_type=%s tenant_id=%s template_key=%s",
            envelope.event_id,
            envelope.message_type,
            tenant_id,
            template_key,
        )
        return await self.admit(request)

    async def status(self, notification_id: str, *, tenant_id: str) -> QueuedItem:
        item = await self._store.get_item(notification_id)
        # Other tenants' notifications are indistinguishable from missing ones.
        if item is None or item.tenant_id != tenant_id:
            raise NotFoundError(f"Notification {notification_id} not found")
        return item
