"""
Service Factory
Centralizes construction of the store, remote gateway and sync engine.
"""

import logging
from dataclasses import dataclass

from cardify.application.config import AppConfig
from cardify.application.study_service import StudyService
from cardify.application.sync.connectivity import ConnectivityMonitor
from cardify.application.sync.credentials import StoredCredentialProvider
from cardify.application.sync.reconciler import SyncReconciler
from cardify.application.sync.runner import SyncRunner
from cardify.domain.interfaces import CredentialProvider, LocalStore, RemoteGateway
from cardify.infrastructure.adapters.remote_api import HttpRemoteGateway
from cardify.infrastructure.persistence.sqlite_store import SqliteLocalStore

logger = logging.getLogger(__name__)


def get_local_store(config: AppConfig) -> LocalStore:
    return SqliteLocalStore(config.db_path)


def get_remote_gateway(config: AppConfig, credentials: CredentialProvider) -> RemoteGateway:
    return HttpRemoteGateway(
        base_url=config.api_base_url,
        credentials=credentials,
        timeout=config.request_timeout,
    )


def get_reconciler(
    config: AppConfig,
    store: LocalStore,
    gateway: RemoteGateway,
    credentials: CredentialProvider,
    connectivity: ConnectivityMonitor | None = None,
) -> SyncReconciler:
    return SyncReconciler(
        store=store,
        gateway=gateway,
        credentials=credentials,
        connectivity=connectivity,
        max_retries=config.max_sync_retries,
        retry_base_delay=config.retry_base_delay,
        retry_max_delay=config.retry_max_delay,
        concurrency=config.sync_concurrency,
        owner_scope=config.owner_scope,
    )


@dataclass
class AppContext:
    """Everything one process needs, wired once and closed once."""

    config: AppConfig
    store: LocalStore
    gateway: RemoteGateway
    connectivity: ConnectivityMonitor
    reconciler: SyncReconciler
    runner: SyncRunner
    service: StudyService

    async def close(self) -> None:
        await self.runner.stop()
        await self.gateway.close()
        await self.store.close()


async def open_context(
    config: AppConfig,
    gateway: RemoteGateway | None = None,
    connectivity: ConnectivityMonitor | None = None,
) -> AppContext:
    """
    Build and initialize the full object graph for a config.

    The runner is created but not started; long-lived hosts call
    `ctx.runner.start()`, one-shot commands call `ctx.runner.run_once()`.
    """
    store = get_local_store(config)
    await store.init()

    credentials = StoredCredentialProvider(store)
    connectivity = connectivity or ConnectivityMonitor(online=True)
    gateway = gateway or get_remote_gateway(config, credentials)
    reconciler = get_reconciler(config, store, gateway, credentials, connectivity)
    runner = SyncRunner(
        reconciler,
        interval_seconds=config.sync_interval_seconds,
        connectivity=connectivity,
    )
    service = StudyService(store, runner=runner, review_limit=config.review_limit)
    logger.debug(f"[factory] context opened for {config.db_path} -> {config.api_base_url}")
    return AppContext(
        config=config,
        store=store,
        gateway=gateway,
        connectivity=connectivity,
        reconciler=reconciler,
        runner=runner,
        service=service,
    )
