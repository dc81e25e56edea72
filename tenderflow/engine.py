from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from tenderflow.award import AwardCoordinator
from tenderflow.bid_service import BidService
from tenderflow.config import Settings
from tenderflow.db.connection import ConnectionManager
from tenderflow.db.dialects import PostgresDialect, SqliteDialect
from tenderflow.db.schema import initialize_schema
from tenderflow.notifications import DatabaseNotifier, Notifier
from tenderflow.repositories import (
    BidHistoryRepository,
    BidsRepository,
    CategoriesRepository,
    NotificationsRepository,
    TendersRepository,
)
from tenderflow.tender_service import TenderService

logger = logging.getLogger(__name__)


def create_dialect(settings: Settings) -> Any:
    if settings.db_backend == "postgres":
        return PostgresDialect(settings.postgres_dsn, connect_timeout_s=settings.connect_timeout_s)
    return SqliteDialect(settings.sqlite_path, timeout_s=float(settings.connect_timeout_s))


@dataclass
class Engine:
    """Every lifecycle collaborator wired around one ConnectionManager."""

    settings: Settings
    manager: ConnectionManager
    tenders: TendersRepository
    bids: BidsRepository
    history: BidHistoryRepository
    categories: CategoriesRepository
    notifications: NotificationsRepository
    coordinator: AwardCoordinator
    tender_service: TenderService
    bid_service: BidService

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        dialect: Any = None,
        notifier: Notifier | None = None,
        on_down: Callable[[], None] | None = None,
    ) -> "Engine":
        manager = ConnectionManager(
            dialect if dialect is not None else create_dialect(settings),
            reconnect_attempts=settings.reconnect_attempts,
            reconnect_delay_s=settings.reconnect_delay_ms / 1000.0,
            tx_timeout_s=settings.tx_timeout_ms / 1000.0,
            lock_wait_s=settings.lock_wait_ms / 1000.0,
            on_down=on_down,
        )
        tenders = TendersRepository(manager=manager)
        bids = BidsRepository(manager=manager)
        history = BidHistoryRepository(manager=manager)
        categories = CategoriesRepository(manager=manager)
        notifications = NotificationsRepository(manager=manager)
        if notifier is None:
            notifier = DatabaseNotifier(notifications)
        coordinator = AwardCoordinator(
            manager=manager,
            tenders=tenders,
            bids=bids,
            history=history,
            notifier=notifier,
        )
        return cls(
            settings=settings,
            manager=manager,
            tenders=tenders,
            bids=bids,
            history=history,
            categories=categories,
            notifications=notifications,
            coordinator=coordinator,
            tender_service=TenderService(manager=manager, tenders=tenders, bids=bids, categories=categories),
            bid_service=BidService(
                manager=manager,
                tenders=tenders,
                bids=bids,
                history=history,
                coordinator=coordinator,
                notifier=notifier,
            ),
        )

    def start(self) -> "Engine":
        self.manager.open()
        if self.settings.auto_init_schema:
            initialize_schema(self.manager)
        return self

    def shutdown(self) -> None:
        self.manager.close()


def create_engine_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    on_down: Callable[[], None] | None = None,
) -> Engine:
    settings = Settings.from_env(environ)
    engine = Engine.build(settings, on_down=on_down).start()
    logger.info("engine started backend=%s", settings.db_backend)
    return engine
