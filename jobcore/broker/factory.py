from typing import Optional

from redis import asyncio as aioredis

from jobcore.broker.abstract import AbstractBroker
from jobcore.broker.memory import InMemoryBroker
from jobcore.broker.redis import RedisBroker
from jobcore.config import BrokerConfig, config


def get_broker(broker_config: Optional[BrokerConfig] = None) -> AbstractBroker:
    """Get the broker implementation based on configuration."""
    broker_config = broker_config or config.broker
    if broker_config.backend == "redis":
        return _get_redis_broker(broker_config)
    elif broker_config.backend == "memory":
        return InMemoryBroker()
    else:
        raise ValueError(f"Unsupported broker backend: {broker_config.backend}")


def _get_redis_broker(broker_config: BrokerConfig) -> RedisBroker:
    """Get a Redis broker. The connection is opened lazily on first command."""
    options = dict(
        decode_responses=True,
        socket_connect_timeout=broker_config.connect_timeout_seconds,
        socket_timeout=broker_config.command_timeout_seconds,
        health_check_interval=30,
    )
    if broker_config.url:
        client = aioredis.Redis.from_url(broker_config.url, **options)
    else:
        client = aioredis.Redis(
            host=broker_config.host,
            port=broker_config.port,
            password=broker_config.password or None,
            db=broker_config.db,
            **options,
        )
    return RedisBroker(client=client, key_prefix=broker_config.key_prefix)
