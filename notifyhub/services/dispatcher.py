from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import timedelta
import logging
import random
import time
from typing import Any

from notifyhub.core.clock import Clock
from notifyhub.core.errors import (
    NotifyError,
    ProviderError,
    ProviderTimeout,
    ProviderUnavailable,
    RenderError,
    RetryExhausted,
    TemplateNotFound,
    ValidationError,
)
from notifyhub.domain.notifications import (
    CHANNEL_DELIVERED,
    CHANNEL_FAILED,
    STATUS_DELIVERED,
    STATUS_FAILED,
    STATUS_IN_FLIGHT,
    STATUS_RETRYING,
    AttemptOutcome,
    ChannelOutcome,
    NotificationRequest,
    ProviderMessage,
    QueuedItem,
    RenderedMessage,
    overall_status,
)
from notifyhub.domain.policies import PolicyCatalog, RetryPolicy
from notifyhub.persistence.repos.base import NotificationStore
from notifyhub.providers.base import ProviderSendResult
from notifyhub.services.contacts import ContactCipher, resolve_destination
from notifyhub.services.costs.ledger import CostLedger, billable_units
from notifyhub.services.due_queue import DueQueue
from notifyhub.services.idempotency import IdempotencyStore
from notifyhub.services.resilience import FailoverManager
from notifyhub.services.retry_scheduler import compute_retry_delay, is_retryable
from notifyhub.services.routing import Router
from notifyhub.services.telemetry import increment_counter, record_delivery, record_external_call


logger = logging.getLogger(__name__)


@dataclass
class AttemptHandle:
    # Channel tasks finish independently; completion resolves after the item is finalized.
    notification_id: str
    channel_tasks: dict[str, asyncio.Task[ChannelOutcome]]
    completion: asyncio.Task[AttemptOutcome]
    error: NotifyError | None = None


class Dispatcher:
    """Runs one delivery attempt across the pending channels of an item and finalizes its state."""

    def __init__(
        self,
        *,
        store: NotificationStore,
        catalog: PolicyCatalog,
        router: Router,
        failover: FailoverManager,
        ledger: CostLedger,
        due_queue: DueQueue,
        idempotency: IdempotencyStore,
        cipher: ContactCipher,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._store = store
        self._catalog = catalog
        self._router = router
        self._failover = failover
        self._ledger = ledger
        self._due_queue = due_queue
        self._idempotency = idempotency
        self._cipher = cipher
        self._clock = clock or Clock()
        self._rng = rng

    def policy_for(self, request: NotificationRequest) -> RetryPolicy:
        # Item-level attempt limits and backoff follow the first requested channel.
        return self._catalog.retry_policy(request.service_origin, request.channels[0])

    async def attempt(self, item: QueuedItem, request: NotificationRequest) -> AttemptOutcome:
        handle = await self.launch(item, request)
        return await handle.completion

    async def launch(
        self,
        item: QueuedItem,
        request: NotificationRequest,
        *,
        path: str = "queued",
        gate: asyncio.Event | None = None,
    ) -> AttemptHandle:
        now = self._clock.now()
        item = replace(item, status=STATUS_IN_FLIGHT, next_attempt_at=None, updated_at=now)
        await self._store.save_item(item)
        pending = item.pending_channels(request.channels)
        try:
            rendered = await self._router.render_all(request, pending)
        except (TemplateNotFound, RenderError) as exc:
            completion = asyncio.create_task(self._fail_without_attempt(item, request, pending, exc, gate))
            return AttemptHandle(notification_id=item.id, channel_tasks={}, completion=completion, error=exc)

        channel_tasks = {
            channel: asyncio.create_task(self._send_channel(item, request, channel, rendered[channel], path))
            for channel in pending
        }
        completion = asyncio.create_task(self._complete(item, request, channel_tasks, gate))
        return AttemptHandle(notification_id=item.id, channel_tasks=channel_tasks, completion=completion)

    async def _send_channel(
        self,
        item: QueuedItem,
        request: NotificationRequest,
        channel: str,
        rendered: RenderedMessage,
        path: str,
    ) -> ChannelOutcome:
        policy = self._catalog.retry_policy(request.service_origin, channel)
        # Resolve the destination first so a bad contact never takes a half-open trial.
        try:
            destination = resolve_destination(request, channel, self._cipher)
        except ValidationError as exc:
            return ChannelOutcome(
                channel=channel,
                status=CHANNEL_FAILED,
                error_code=exc.code,
                error_detail=exc.message,
                retryable=False,
            )
        try:
            selection = await self._failover.select(channel)
        except ProviderUnavailable as exc:
            logger.warning("channel_unavailable notification_id=%s channel=%s", item.id, channel)
            return ChannelOutcome(
                channel=channel,
                status=CHANNEL_FAILED,
                error_code=exc.code,
                error_detail=exc.message,
                retryable=True,
            )
        provider_name = selection.config.name

        message = ProviderMessage(
            notification_id=item.id,
            tenant_id=request.tenant_id,
            channel=channel,
            body=rendered.body,
            subject=rendered.subject,
            correlation_id=request.correlation_id,
            idempotency_key=request.idempotency_key,
            priority=request.priority,
            data=dict(request.payload),
        )
        deadline = asyncio.get_running_loop().time() + policy.timeout_s
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                selection.adapter.send(message, destination, deadline),
                timeout=policy.timeout_s,
            )
        except asyncio.CancelledError:
            # The call never reached an outcome, so the half-open trial goes back.
            await selection.breaker.release_trial()
            raise
        except asyncio.TimeoutError:
            result = ProviderSendResult(
                delivered=False,
                error_code=ProviderTimeout.code,
                error_detail=f"{provider_name} exceeded {policy.timeout_s}s",
            )
        except NotifyError as exc:
            result = ProviderSendResult(
                delivered=False, error_code=exc.code, error_detail=exc.message, retryable=exc.retryable
            )
        except Exception as exc:  # noqa: BLE001 - adapter faults count as transient provider errors.
            logger.warning("provider_send_failed provider=%s notification_id=%s", provider_name, item.id, exc_info=exc)
            result = ProviderSendResult(delivered=False, error_code=ProviderError.code, error_detail=str(exc))
        latency_ms = (time.monotonic() - start) * 1000.0
        record_external_call(integration=provider_name, latency_ms=latency_ms, success=result.delivered)

        if result.delivered:
            await selection.breaker.record_success()
            await self._record_cost(item, request, channel, provider_name, selection.config.unit_cost_micros, rendered)
            record_delivery(channel=channel, path=path, latency_ms=latency_ms, status=CHANNEL_DELIVERED)
            increment_counter(f"deliveries_total.{channel}")
            return ChannelOutcome(
                channel=channel,
                status=CHANNEL_DELIVERED,
                provider=provider_name,
                provider_message_id=result.provider_message_id,
            )

        retryable = result.retryable and is_retryable(result.error_code)
        # A permanent rejection is still an answer from a healthy provider.
        if retryable:
            await selection.breaker.record_failure()
        else:
            await selection.breaker.record_success()
        record_delivery(channel=channel, path=path, latency_ms=latency_ms, status=CHANNEL_FAILED)
        increment_counter(f"delivery_failures_total.{channel}.{result.error_code}")
        logger.info(
            "channel_failed notification_id=%s channel=%s provider=%s error_code=%s retryable=%s",
            item.id,
            channel,
            provider_name,
            result.error_code,
            retryable,
        )
        return ChannelOutcome(
            channel=channel,
            status=CHANNEL_FAILED,
            provider=provider_name,
            error_code=result.error_code,
            error_detail=result.error_detail,
            retryable=retryable,
        )

    async def _record_cost(
        self,
        item: QueuedItem,
        request: NotificationRequest,
        channel: str,
        provider_name: str,
        unit_cost_micros: int,
        rendered: RenderedMessage,
    ) -> None:
        try:
            await self._ledger.record(
                tenant_id=request.tenant_id,
                service_origin=request.service_origin,
                channel=channel,
                provider=provider_name,
                unit_cost_micros=unit_cost_micros,
                units=billable_units(channel, rendered.body),
                notification_id=item.id,
                correlation_id=request.correlation_id,
            )
        except Exception as exc:  # noqa: BLE001 - a delivered message must not be re-sent over a ledger fault.
            logger.error(
                "ledger_append_failed notification_id=%s channel=%s provider=%s",
                item.id,
                channel,
                provider_name,
                exc_info=exc,
            )
            increment_counter("ledger_append_failed_total")

    async def _complete(
        self,
        item: QueuedItem,
        request: NotificationRequest,
        channel_tasks: dict[str, asyncio.Task[ChannelOutcome]],
        gate: asyncio.Event | None,
    ) -> AttemptOutcome:
        results = await asyncio.gather(*channel_tasks.values())
        outcomes = dict(zip(channel_tasks.keys(), results))
        return await self._finalize(item, request, outcomes, gate)

    def _merge_state(self, item: QueuedItem, outcomes: dict[str, ChannelOutcome]) -> dict[str, dict[str, Any]]:
        state = {channel: dict(value) for channel, value in item.channel_state.items()}
        for channel, outcome in outcomes.items():
            # A delivered channel never regresses.
            if state.get(channel, {}).get("status") == CHANNEL_DELIVERED:
                continue
            state[channel] = outcome.to_payload()
        return state

    async def _finalize(
        self,
        item: QueuedItem,
        request: NotificationRequest,
        outcomes: dict[str, ChannelOutcome],
        gate: asyncio.Event | None,
    ) -> AttemptOutcome:
        now = self._clock.now()
        attempts = item.attempts + 1
        state = self._merge_state(item, outcomes)
        statuses = {channel: str(state.get(channel, {}).get("status", CHANNEL_FAILED)) for channel in request.channels}
        failures = [outcome for outcome in outcomes.values() if outcome.status != CHANNEL_DELIVERED]
        retryable = [outcome for outcome in failures if outcome.retryable]
        last_error = failures[0] if failures else None

        if overall_status(statuses) == STATUS_DELIVERED:
            updated = replace(
                item,
                status=STATUS_DELIVERED,
                attempts=attempts,
                next_attempt_at=None,
                channel_state=state,
                updated_at=now,
                terminal_at=now,
                last_error_kind=None,
                last_error_detail=None,
            )
        elif retryable and attempts < item.max_attempts:
            delay_s = compute_retry_delay(self.policy_for(request), attempts - 1, rng=self._rng)
            updated = replace(
                item,
                status=STATUS_RETRYING,
                attempts=attempts,
                next_attempt_at=now + timedelta(seconds=delay_s),
                channel_state=state,
                updated_at=now,
                last_error_kind=retryable[0].error_code,
                last_error_detail=retryable[0].error_detail,
            )
        else:
            if retryable:
                error_kind = RetryExhausted.code
            elif last_error is not None:
                error_kind = last_error.error_code
            else:
                # A permanent rejection from an earlier attempt still explains a partial outcome.
                error_kind = next(
                    (
                        state[channel].get("error_code")
                        for channel in request.channels
                        if state.get(channel, {}).get("status") == CHANNEL_FAILED
                    ),
                    None,
                )
            updated = replace(
                item,
                status=overall_status(statuses),
                attempts=attempts,
                next_attempt_at=None,
                channel_state=state,
                updated_at=now,
                terminal_at=now,
                last_error_kind=error_kind,
                last_error_detail=last_error.error_detail if last_error else None,
            )
        return await self._persist(updated, request, gate)

    async def _persist(
        self,
        updated: QueuedItem,
        request: NotificationRequest,
        gate: asyncio.Event | None,
        *,
        attempt_consumed: bool = True,
    ) -> AttemptOutcome:
        await self._store.save_item(updated)
        if updated.is_terminal:
            await self._due_queue.remove(updated.id)
            if gate is not None:
                await gate.wait()
            await self._record_terminal(updated, request)
            increment_counter(f"notifications_terminal_total.{updated.status}")
            logger.info(
                "notification_terminal notification_id=%s status=%s attempts=%s error_kind=%s correlation_id=%s",
                updated.id,
                updated.status,
                updated.attempts,
                updated.last_error_kind,
                request.correlation_id,
            )
        else:
            due_at = updated.next_attempt_at or updated.updated_at
            await self._due_queue.schedule(updated.id, due_at)
            increment_counter("retries_scheduled_total")
            logger.info(
                "notification_retry_scheduled notification_id=%s attempts=%s next_attempt_at=%s error_kind=%s",
                updated.id,
                updated.attempts,
                due_at.isoformat(),
                updated.last_error_kind,
            )
        channels = {
            channel: ChannelOutcome(
                channel=channel,
                status=str(value.get("status")),
                provider=value.get("provider"),
                provider_message_id=value.get("provider_message_id"),
                error_code=value.get("error_code"),
            )
            for channel, value in updated.channel_state.items()
        }
        return AttemptOutcome(
            notification_id=updated.id,
            status=updated.status,
            channels=channels,
            attempt_consumed=attempt_consumed,
            error_code=updated.last_error_kind,
        )

    async def _record_terminal(self, item: QueuedItem, request: NotificationRequest) -> None:
        # Merge into the recorded outcome so fields written at admission survive.
        current = await self._idempotency.get(request.tenant_id, request.idempotency_key) or {}
        if current and current.get("notification_id") != item.id:
            return
        outcome = {
            **current,
            "notification_id": item.id,
            "status": item.status,
            "channels": {channel: dict(value) for channel, value in item.channel_state.items()},
        }
        if item.last_error_kind:
            outcome["error_code"] = item.last_error_kind
        await self._idempotency.record(request.tenant_id, request.idempotency_key, outcome)

    async def _fail_without_attempt(
        self,
        item: QueuedItem,
        request: NotificationRequest,
        pending: tuple[str, ...],
        exc: NotifyError,
        gate: asyncio.Event | None,
    ) -> AttemptOutcome:
        # Template errors are terminal for the item and do not consume an attempt.
        now = self._clock.now()
        state = {channel: dict(value) for channel, value in item.channel_state.items()}
        for channel in pending:
            state[channel] = ChannelOutcome(channel=channel, status=CHANNEL_FAILED, error_code=exc.code).to_payload()
        statuses = {channel: str(state[channel].get("status")) for channel in request.channels if channel in state}
        updated = replace(
            item,
            status=overall_status(statuses) if statuses else STATUS_FAILED,
            next_attempt_at=None,
            channel_state=state,
            updated_at=now,
            terminal_at=now,
            last_error_kind=exc.code,
            last_error_detail=exc.message,
        )
        return await self._persist(updated, request, gate, attempt_consumed=False)

    async def exhaust(self, item: QueuedItem, request: NotificationRequest) -> AttemptOutcome:
        # Close an item that already used every attempt without sending again.
        now = self._clock.now()
        statuses = {channel: item.channel_status(channel) for channel in request.channels}
        status = overall_status(statuses)
        updated = replace(
            item,
            status=status,
            next_attempt_at=None,
            updated_at=now,
            terminal_at=now,
            last_error_kind=RetryExhausted.code if status != STATUS_DELIVERED else None,
        )
        return await self._persist(updated, request, None, attempt_consumed=False)
