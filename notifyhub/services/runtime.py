from __future__ import annotations

from dataclasses import dataclass
import logging
import random
from typing import Callable, Mapping

import httpx
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine

from notifyhub.core.clock import Clock
from notifyhub.core.config import Settings, get_settings
from notifyhub.core.secrets import SecretResolver, SettingsSecretResolver
from notifyhub.domain.policies import PolicyCatalog
from notifyhub.persistence.db import build_engine, build_session_factory, create_schema
from notifyhub.persistence.repos.base import NotificationStore
from notifyhub.persistence.repos.memory import InMemoryNotificationStore
from notifyhub.persistence.repos.notifications import SqlNotificationStore
from notifyhub.providers.base import ProviderAdapter
from notifyhub.providers.factory import build_providers
from notifyhub.services.admission import AdmissionGateway
from notifyhub.services.batches import BatchAdmissions
from notifyhub.services.contacts import ContactCipher
from notifyhub.services.costs import BudgetGuardrail, CostLedger
from notifyhub.services.dispatcher import Dispatcher
from notifyhub.services.due_queue import DueQueue
from notifyhub.services.governor import RateBudgetGovernor
from notifyhub.services.idempotency import IdempotencyStore
from notifyhub.services.overrides import OverrideService
from notifyhub.services.rate_limit import TokenBucketLimiter
from notifyhub.services.resilience import Bulkhead, CircuitBreakerConfig, FailoverManager
from notifyhub.services.retry_scheduler import RetryScheduler
from notifyhub.services.routing import Router
from notifyhub.services.shared_state import SharedState, get_shared_redis
from notifyhub.services.templates import JinjaTemplateResolver, TemplateResolver, load_template_catalog


logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Every collaborator of one process, wired from a single Settings object."""

    settings: Settings
    clock: Clock
    secrets: SecretResolver
    catalog: PolicyCatalog
    store: NotificationStore
    state: SharedState
    idempotency: IdempotencyStore
    overrides: OverrideService
    ledger: CostLedger
    governor: RateBudgetGovernor
    router: Router
    failover: FailoverManager
    due_queue: DueQueue
    dispatcher: Dispatcher
    gateway: AdmissionGateway
    batches: BatchAdmissions
    scheduler: RetryScheduler
    providers: Mapping[str, ProviderAdapter]
    http_client: httpx.AsyncClient | None = None
    engine: AsyncEngine | None = None

    async def init_schema(self) -> None:
        if self.engine is not None:
            await create_schema(self.engine)

    async def close(self) -> None:
        # Let in-flight completions record their outcomes before tearing down clients.
        await self.gateway.drain(timeout_s=self.settings.sync_deadline_ms / 1000.0)
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("runtime_closed")


def build_runtime(
    settings: Settings | None = None,
    *,
    redis: Redis | None = None,
    store: NotificationStore | None = None,
    providers: Mapping[str, ProviderAdapter] | None = None,
    templates: TemplateResolver | None = None,
    secrets: SecretResolver | None = None,
    time_source: Callable[[], float] | None = None,
    rng: random.Random | None = None,
) -> Runtime:
    settings = settings or get_settings()
    clock = Clock(time_source)
    secrets = secrets or SettingsSecretResolver(settings)
    catalog = PolicyCatalog.from_settings(settings)
    redis = redis if redis is not None else get_shared_redis(settings)
    prefix = settings.redis_prefix

    engine: AsyncEngine | None = None
    if store is None:
        if settings.persistence_backend == "memory":
            store = InMemoryNotificationStore()
        else:
            engine = build_engine(settings)
            store = SqlNotificationStore(build_session_factory(engine))

    http_client: httpx.AsyncClient | None = None
    if providers is None:
        http_client = httpx.AsyncClient(timeout=settings.ext_call_timeout_ms / 1000.0)
        providers = build_providers(
            catalog,
            secrets=secrets,
            client=http_client,
            default_timeout_s=settings.ext_call_timeout_ms / 1000.0,
        )

    state = SharedState(redis, prefix=prefix, clock=clock)
    idempotency = IdempotencyStore(state, ttl_s=settings.idempotency_ttl_hours * 3600)
    ledger = CostLedger(store, clock=clock)
    budgets = BudgetGuardrail(
        catalog=catalog,
        ledger=ledger,
        store=store,
        state=state,
        default_warn_ratio=settings.budget_warn_ratio,
        clock=clock,
    )
    overrides = OverrideService(
        state=state,
        store=store,
        secrets=secrets,
        max_ttl_s=settings.override_max_ttl_s,
        clock=clock,
    )
    governor = RateBudgetGovernor(
        catalog=catalog,
        limiter=TokenBucketLimiter(state),
        budgets=budgets,
        overrides=overrides,
    )
    router = Router(
        catalog=catalog,
        resolver=templates or JinjaTemplateResolver(load_template_catalog(settings.template_catalog_path)),
        default_locale=settings.default_locale,
    )
    failover = FailoverManager(
        catalog=catalog,
        providers=providers,
        redis=redis,
        config=CircuitBreakerConfig.from_settings(settings),
        clock=clock,
        prefix=prefix,
    )
    due_queue = DueQueue(redis, prefix=prefix, clock=clock)
    cipher = ContactCipher(secrets)
    dispatcher = Dispatcher(
        store=store,
        catalog=catalog,
        router=router,
        failover=failover,
        ledger=ledger,
        due_queue=due_queue,
        idempotency=idempotency,
        cipher=cipher,
        clock=clock,
        rng=rng,
    )
    gateway = AdmissionGateway(
        store=store,
        idempotency=idempotency,
        governor=governor,
        router=router,
        dispatcher=dispatcher,
        due_queue=due_queue,
        cipher=cipher,
        clock=clock,
        sync_deadline_ms=settings.sync_deadline_ms,
        sync_recovery_s=settings.sync_recovery_s,
    )
    batches = BatchAdmissions(
        gateway=gateway,
        store=store,
        state=state,
        max_size=settings.batch_max_size,
        ttl_s=settings.idempotency_ttl_hours * 3600,
        clock=clock,
    )
    scheduler = RetryScheduler(
        store=store,
        due_queue=due_queue,
        dispatcher=dispatcher,
        bulkhead=Bulkhead("retry_worker", settings.retry_worker_concurrency),
        batch_size=settings.retry_batch_size,
        lease_s=settings.retry_lease_s,
    )
    logger.info(
        "runtime_built persistence=%s shared_state=%s providers=%s",
        type(store).__name__,
        "redis" if redis is not None else "local",
        ",".join(sorted(providers)),
    )
    return Runtime(
        settings=settings,
        clock=clock,
        secrets=secrets,
        catalog=catalog,
        store=store,
        state=state,
        idempotency=idempotency,
        overrides=overrides,
        ledger=ledger,
        governor=governor,
        router=router,
        failover=failover,
        due_queue=due_queue,
        dispatcher=dispatcher,
        gateway=gateway,
        batches=batches,
        scheduler=scheduler,
        providers=providers,
        http_client=http_client,
        engine=engine,
    )
