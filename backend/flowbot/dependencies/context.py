# /flowbot/dependencies/context.py

import logging
from dataclasses import dataclass
from typing import Any, Optional

import redis.asyncio as aioredis
from fastapi import Request

from flowbot.config.settings import Settings
from flowbot.services.ai_service import AIService
from flowbot.services.audit_service import AuditLogWriter
from flowbot.services.db_service import MongoStore
from flowbot.services.http_service import HttpService
from flowbot.services.memory_store import InMemoryStore
from flowbot.services.sheets_service import SheetsService
from flowbot.services.store import FlowStore
from flowbot.services.whatsapp_service import WhatsAppService
from flowbot.utils.locks import AddressLockManager, RedisAddressLockManager
from flowbot.workflows.definitions import Collaborators
from flowbot.workflows.executor import FlowExecutor

# The application context replaces module-level service singletons: it is
# built once in the lifespan (or by the scheduler process), stored on
# app.state.context and handed to routes through get_app_context.

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    store: FlowStore
    collaborators: Collaborators
    locks: Any
    audit: AuditLogWriter
    executor: FlowExecutor
    redis: Optional[aioredis.Redis] = None

    async def close(self):
        for service in (self.collaborators.messaging, self.collaborators.ai, self.collaborators.http, self.collaborators.sheets):
            close = getattr(service, "close", None)
            if close is not None:
                await close()
        await self.store.close()
        if self.redis is not None:
            await self.redis.aclose()


def build_store(settings: Settings) -> FlowStore:
    if settings.store_backend == "memory":
        logger.info("Using in-memory store.")
        return InMemoryStore()
    return MongoStore(settings)


def build_context(settings: Settings, store: Optional[FlowStore] = None,
                  collaborators: Optional[Collaborators] = None) -> AppContext:
    """Wires every service from settings. Tests pass their own store or collaborators."""
    store = store or build_store(settings)
    collaborators = collaborators or Collaborators(
        messaging=WhatsAppService.from_settings(settings),
        ai=AIService.from_settings(settings),
        http=HttpService(),
        sheets=SheetsService(settings.google_sheets_api_key),
        http_timeout_ms=settings.http_node_timeout_ms,
    )

    redis_client = None
    if settings.redis_url:
        redis_client = aioredis.Redis.from_url(settings.redis_url)
        locks = RedisAddressLockManager(redis_client, acquire_timeout=settings.address_lock_timeout_seconds)
        logger.info("Using Redis address locks.")
    else:
        locks = AddressLockManager(acquire_timeout=settings.address_lock_timeout_seconds)

    return AppContext(
        settings=settings,
        store=store,
        collaborators=collaborators,
        locks=locks,
        audit=AuditLogWriter(store),
        executor=FlowExecutor.from_settings(settings, store, collaborators, locks),
        redis=redis_client,
    )


def get_app_context(request: Request) -> AppContext:
    return request.app.state.context
