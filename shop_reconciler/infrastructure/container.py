from typing import Callable

import redis.asyncio as aioredis
from dependency_injector import containers, providers
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from shop_reconciler.infrastructure.kafka_producer import OrderEventPublisher
from shop_reconciler.infrastructure.monobank_gateway import MonobankGateway
from shop_reconciler.infrastructure.rate_limiter import WebhookRateLimiter
from shop_reconciler.infrastructure.redis_client import create_redis_client
from shop_reconciler.infrastructure.stripe_gateway import StripeGateway
from shop_reconciler.infrastructure.unit_of_work import UnitOfWork


class InfrastructureContainer(containers.DeclarativeContainer):
    config = providers.Configuration()
    async_engine = providers.Singleton[AsyncEngine](
        create_async_engine,
        config.db.dsn,
        pool_size=config.db.pool_size,
        pool_recycle=config.db.pool_recycle,
        future=True,
    )
    session_factory: Callable[..., AsyncSession] = providers.Factory(
        sessionmaker, async_engine, expire_on_commit=False, class_=AsyncSession
    )
    unit_of_work = providers.Singleton[UnitOfWork](
        UnitOfWork, session_factory=session_factory
    )
    order_event_publisher = providers.Singleton[OrderEventPublisher](
        OrderEventPublisher,
        bootstrap_servers=config.kafka.bootstrap_servers,
        topic=config.kafka.topic,
    )
    redis_client = providers.Singleton[aioredis.Redis | None](
        create_redis_client, config.redis.url
    )
    webhook_rate_limiter = providers.Singleton[WebhookRateLimiter](
        WebhookRateLimiter,
        redis=redis_client,
        max_requests=config.webhook_rate_limit.max_requests,
        window_seconds=config.webhook_rate_limit.window_seconds,
    )
    stripe_gateway = providers.Singleton[StripeGateway](
        StripeGateway,
        secret_key=config.stripe.secret_key,
        webhook_secret=config.stripe.webhook_secret,
    )
    monobank_gateway = providers.Singleton[MonobankGateway](
        MonobankGateway,
        token=config.monobank.token,
        public_key=config.monobank.public_key,
        api_base_url=config.monobank.api_base_url,
        timeout_seconds=config.monobank.timeout_seconds,
    )
