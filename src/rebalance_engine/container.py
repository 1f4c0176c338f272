"""
Service container using dependency-injector for the rebalance engine
"""
from dependency_injector import containers, providers

from rebalance_engine.clients.broker_http import HttpBrokerClient
from rebalance_engine.clients.generation_http import HttpTextGenerationClient
from rebalance_engine.config.models import (
    AppConfig,
    EngineConfig,
    ExtractionConfig,
    SizingConfig,
    WatchdogConfig,
)
from rebalance_engine.engine import RebalanceEngine
from rebalance_engine.notifier import CoordinatorNotifier
from rebalance_engine.queue_service import RedisTaskQueue
from rebalance_engine.store.memory import InMemoryRecordStore
from rebalance_engine.store.redis_store import RedisRecordStore
from rebalance_engine.worker import RebalanceWorker


def _redis_url(host: str, port: int, db: int) -> str:
    return f"redis://{host}:{port}/{db}"


class ServiceContainer(containers.DeclarativeContainer):
    """DI Container for the rebalance engine service"""

    # Configuration, populated from AppConfig by build_container()
    config = providers.Configuration()

    redis_url = providers.Callable(
        _redis_url,
        host=config.redis.host,
        port=config.redis.port,
        db=config.redis.db,
    )

    # Record store selected by config.store.backend
    record_store = providers.Selector(
        config.store.backend,
        memory=providers.Singleton(InMemoryRecordStore),
        redis=providers.Singleton(
            RedisRecordStore,
            redis_url=redis_url,
            key_prefix=config.redis.key_prefix,
            max_retries=config.redis.max_retries,
        ),
    )

    task_queue = providers.Singleton(
        RedisTaskQueue,
        redis_url=redis_url,
        queue_name=config.redis.queue_name,
        delayed_set_name=config.redis.delayed_set_name,
        active_set_name=config.redis.active_set_name,
        max_retries=config.redis.max_retries,
    )

    # Collaborator clients
    broker_client = providers.Singleton(
        HttpBrokerClient,
        base_url=config.broker.base_url,
        timeout_seconds=config.broker.timeout_seconds,
    )

    generation_client = providers.Singleton(
        HttpTextGenerationClient,
        base_url=config.generation.base_url,
        model=config.generation.model,
        timeout_seconds=config.generation.timeout_seconds,
        temperature=config.generation.temperature,
    )

    notifier = providers.Singleton(
        CoordinatorNotifier,
        coordinator_url=config.notifier.coordinator_url,
        store=record_store,
        max_retries=config.notifier.max_retries,
        retry_delay_seconds=config.notifier.retry_delay_seconds,
        timeout_seconds=config.notifier.timeout_seconds,
        service_token=config.notifier.service_token,
    )

    # Engine settings rebuilt as typed models from the config sections
    engine_config = providers.Singleton(EngineConfig.model_validate, config.engine)
    extraction_config = providers.Singleton(ExtractionConfig.model_validate, config.extraction)
    sizing_config = providers.Singleton(SizingConfig.model_validate, config.sizing)
    watchdog_config = providers.Singleton(WatchdogConfig.model_validate, config.watchdog)

    engine = providers.Singleton(
        RebalanceEngine,
        store=record_store,
        broker=broker_client,
        generation_client=generation_client,
        notifier=notifier,
        engine_config=engine_config,
        extraction_config=extraction_config,
        sizing_defaults=sizing_config,
    )

    worker = providers.Singleton(
        RebalanceWorker,
        queue=task_queue,
        engine=engine,
        watchdog=watchdog_config,
    )


def build_container(app_config: AppConfig) -> ServiceContainer:
    """Create a container whose configuration provider mirrors the validated AppConfig"""
    container = ServiceContainer()
    container.config.from_dict(app_config.model_dump())
    return container
