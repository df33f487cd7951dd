"""
Service container.

Every component is constructed once per process here and receives its
collaborators explicitly; routes reach them through `app.state.services`.
Provider clients (Stripe, Clerk) are owned by their adapters, so tests swap
in fakes by passing them to `build_services`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from promember.core.config import Settings
from promember.core.database import build_engine, build_session_factory, create_all_tables, get_database_url
from promember.core.errors import AppError
from promember.features.billing.events import ProcessedEventStore
from promember.features.billing.provider import BillingProvider, BillingProviderError
from promember.features.billing.service import BillingService, PriceCatalog
from promember.features.billing.stripe_provider import StripeProvider
from promember.features.billing.webhooks import WebhookProcessor
from promember.features.claims.identity import ClerkIdentityProvider, IdentityProvider, IdentityProviderError
from promember.features.claims.service import ClaimsSynchronizer
from promember.features.errorlog.service import ErrorLogger
from promember.features.membership.store import MembershipStore
from promember.features.quota.diagnostics import RateLimitDiagnostics
from promember.features.quota.limiter import QuotaRegistry, build_quota_configs

logger = logging.getLogger("promember")


@dataclass
class Services:
    settings: Settings
    session_factory: object
    store: MembershipStore
    error_log: ErrorLogger
    quotas: QuotaRegistry
    rate_limit_log: RateLimitDiagnostics
    events: ProcessedEventStore
    billing_provider: Optional[BillingProvider] = None
    identity: Optional[IdentityProvider] = None
    claims: Optional[ClaimsSynchronizer] = None
    billing: Optional[BillingService] = None
    webhooks: Optional[WebhookProcessor] = None


def _default_billing_provider(cfg: Settings) -> Optional[BillingProvider]:
    if not cfg.STRIPE_SECRET_KEY:
        return None
    try:
        return StripeProvider(
            cfg.STRIPE_SECRET_KEY,
            cfg.STRIPE_WEBHOOK_SECRET,
            timeout_seconds=cfg.PROVIDER_TIMEOUT_SECONDS,
            webhook_tolerance_seconds=cfg.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
    except BillingProviderError as e:
        logger.warning("billing.provider.unavailable", extra={"error_message": str(e)})
        return None


def _default_identity(cfg: Settings) -> Optional[IdentityProvider]:
    if not cfg.CLERK_SECRET_KEY:
        return None
    try:
        return ClerkIdentityProvider(
            cfg.CLERK_SECRET_KEY,
            api_base=cfg.CLERK_API_BASE,
            timeout_seconds=cfg.PROVIDER_TIMEOUT_SECONDS,
        )
    except IdentityProviderError as e:
        logger.warning("identity.provider.unavailable", extra={"error_message": str(e)})
        return None


def build_services(
    cfg: Settings,
    session_factory,
    *,
    billing_provider: Optional[BillingProvider] = None,
    identity: Optional[IdentityProvider] = None,
) -> Services:
    billing_provider = billing_provider or _default_billing_provider(cfg)
    identity = identity or _default_identity(cfg)

    store = MembershipStore(session_factory)
    error_log = ErrorLogger(session_factory, dedupe_window_seconds=cfg.ERROR_LOG_DEDUPE_WINDOW_SECONDS)
    services = Services(
        settings=cfg,
        session_factory=session_factory,
        store=store,
        error_log=error_log,
        quotas=QuotaRegistry.from_configs(build_quota_configs(cfg), session_factory),
        rate_limit_log=RateLimitDiagnostics(session_factory),
        events=ProcessedEventStore(session_factory),
        billing_provider=billing_provider,
        identity=identity,
    )

    if identity is not None:
        services.claims = ClaimsSynchronizer(identity, store, error_log)
        store.add_listener(services.claims.handle_record_change)
    else:
        logger.warning("claims.sync.disabled", extra={"reason": "CLERK_SECRET_KEY not configured"})

    if billing_provider is not None:
        services.billing = BillingService(billing_provider, store, error_log, PriceCatalog.from_settings(cfg))
        if services.claims is not None:
            services.webhooks = WebhookProcessor(
                billing_provider, store, services.claims, error_log, services.events
            )
    else:
        logger.warning("billing.disabled", extra={"reason": "STRIPE_SECRET_KEY not configured"})

    return services


def build_services_from_env(cfg: Settings) -> Services:
    """Services bound to the configured database; creates missing tables."""
    url = get_database_url() or cfg.DATABASE_URL
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")
    engine = build_engine(url)
    create_all_tables(engine)
    return build_services(cfg, build_session_factory(engine))


def get_services(request: Request) -> Services:
    """FastAPI dependency: the process container."""
    return request.app.state.services


class ServiceUnavailableError(AppError):
    code = "service_unavailable"
    status_code = 503


def require_billing(request: Request) -> Services:
    services = get_services(request)
    if services.billing is None:
        raise ServiceUnavailableError("Billing is not configured. Set STRIPE_SECRET_KEY.", code="billing_disabled")
    return services


def require_webhooks(request: Request) -> Services:
    services = get_services(request)
    if services.webhooks is None:
        raise ServiceUnavailableError(
            "Webhook processing needs STRIPE_SECRET_KEY and CLERK_SECRET_KEY.",
            code="billing_disabled",
        )
    return services
