"""Summary: Application factory wiring core services.

Importance: Centralizes dependency creation for CLI and API layers.
Alternatives: Instantiate services manually in each entrypoint.
"""

from __future__ import annotations

from dataclasses import dataclass

from carebridge.config import AppConfig
from carebridge.events import EventSink, LoggingEventSink
from carebridge.services import (
    AccountService,
    ApiKeyService,
    ConnectionService,
    MembershipService,
)
from carebridge.storage.sqlite_store import SqliteStore


@dataclass(frozen=True)
class AppContext:
    """Summary: Shared application context for building account-scoped services.

    Importance: Reuses storage and the event sink across requests.
    Alternatives: Rebuild dependencies for every request.
    """

    store: SqliteStore
    events: EventSink
    config: AppConfig

    @property
    def accounts(self) -> AccountService:
        return AccountService(store=self.store)

    @property
    def api_keys(self) -> ApiKeyService:
        return ApiKeyService(store=self.store, token_secret=self.config.token_secret)

    @property
    def memberships(self) -> MembershipService:
        return MembershipService(
            store=self.store, free_response_limit=self.config.free_response_limit
        )

    def connections_for(self, account_id: int) -> ConnectionService:
        """Summary: Build the connection service for one authenticated account.

        Importance: Every lifecycle operation is evaluated from a single actor's point of view.
        Alternatives: Pass the actor into every method call.
        """

        return ConnectionService(
            store=self.store,
            account_id=account_id,
            events=self.events,
            free_response_limit=self.config.free_response_limit,
            allow_duplicate_requests=self.config.allow_duplicate_requests,
            append_retries=self.config.append_retries,
        )


def build_context(config: AppConfig, events: EventSink | None = None) -> AppContext:
    """Summary: Build shared context from configuration.

    Importance: Provides a single construction path for the application.
    Alternatives: Construct dependencies separately per request.
    """

    store = SqliteStore(config.db_path)
    store.initialize()
    return AppContext(store=store, events=events or LoggingEventSink(), config=config)
