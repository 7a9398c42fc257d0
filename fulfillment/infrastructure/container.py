from typing import Callable

import redis.asyncio as aioredis
from dependency_injector import containers, providers
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from fulfillment.infrastructure.cache import RedisAvailabilityCache
from fulfillment.infrastructure.kafka_producer import KafkaProducer
from fulfillment.infrastructure.lock_coordinator import RedisLockCoordinator
from fulfillment.infrastructure.payment_gateway import HttpPaymentGateway
from fulfillment.infrastructure.unit_of_work import UnitOfWork


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
    redis = providers.Singleton[aioredis.Redis](
        aioredis.from_url, config.redis.url, decode_responses=True
    )
    lock_coordinator = providers.Singleton[RedisLockCoordinator](
        RedisLockCoordinator, redis=redis
    )
    availability_cache = providers.Singleton[RedisAvailabilityCache](
        RedisAvailabilityCache, redis=redis
    )
    payment_gateway = providers.Singleton[HttpPaymentGateway](
        HttpPaymentGateway,
        base_url=config.payment_gateway.base_url,
        api_key=config.payment_gateway.api_key,
        timeout=config.payment_gateway.timeout,
    )
    kafka_producer = providers.Singleton[KafkaProducer](
        KafkaProducer,
        bootstrap_servers=config.kafka.bootstrap_servers,
        topic=config.kafka.topic,
    )
