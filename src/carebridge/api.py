"""Summary: FastAPI application for CareBridge.

Importance: Exposes the connection lifecycle and membership endpoints to web and mobile clients.
Alternatives: Use a CLI-only workflow or a different web framework.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Literal

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from carebridge.app import build_context
from carebridge.billing import verify_signature
from carebridge.config import AppConfig
from carebridge.errors import CareBridgeError, InvalidArgument, Unauthenticated
from carebridge.events import EventSink
from carebridge.models import ConnectionType, Decision, NextStepType


logger = logging.getLogger(__name__)


class ConnectionCreateRequest(BaseModel):
    """Summary: Request payload for creating a connection.

    Importance: Starts an inquiry, application, invitation, or dismissal.
    Alternatives: Use separate endpoints per connection type.
    """

    to_profile_id: str
    type: ConnectionType
    message: str | None = None
    from_profile_id: str | None = None


class ConnectionRespondRequest(BaseModel):
    connection_id: str
    decision: Decision


class ConnectionRequest(BaseModel):
    """Summary: Request payload naming a single connection.

    Importance: Shared by withdraw, end, hide, and get.
    Alternatives: Put the connection id in the URL path.
    """

    connection_id: str


class ConnectionMessageRequest(BaseModel):
    connection_id: str
    text: str = Field(max_length=5000)


class NextStepPayload(BaseModel):
    """Summary: Request payload for opening or cancelling a next step.

    Importance: Lets participants ask for a call, consultation, or visit.
    Alternatives: Send next steps as plain thread messages.
    """

    connection_id: str
    action: Literal["request", "cancel"]
    type: NextStepType | None = None
    note: str | None = None


class SavedProfileRequest(BaseModel):
    profile_id: str


def create_app(config: AppConfig, events: EventSink | None = None) -> FastAPI:
    """Summary: Create a FastAPI app wired to CareBridge services.

    Importance: Ensures the API layer shares the same configuration and storage.
    Alternatives: Instantiate services globally outside the factory.
    """

    if not logging.getLogger().handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    app = FastAPI(title="CareBridge API", version="0.1.0")
    context = build_context(config, events=events)

    @app.exception_handler(CareBridgeError)
    async def handle_operation_error(_: Request, exc: CareBridgeError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("Operation failed: %s", exc.detail)
        return JSONResponse(
            status_code=exc.status_code, content={"error": exc.code, "detail": exc.detail}
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(_: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=InvalidArgument.status_code,
            content={"error": InvalidArgument.code, "detail": str(exc.errors())},
        )

    def require_account(x_api_key: str | None = Header(default=None)) -> int:
        """Summary: Resolve the authenticated account from the API key header.

        Importance: Every lifecycle operation needs an authenticated actor.
        Alternatives: Use session cookies from an identity provider.
        """

        account_id = context.api_keys.resolve_account_id(x_api_key)
        if account_id is None:
            raise Unauthenticated("Not authenticated")
        return account_id

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/connections/create")
    def create_connection(
        payload: ConnectionCreateRequest, account_id: int = Depends(require_account)
    ) -> dict[str, Any]:
        connection = context.connections_for(account_id).create(
            payload.to_profile_id,
            payload.type,
            message=payload.message,
            from_profile_id=payload.from_profile_id,
        )
        return {"connection": connection.to_dict()}

    @app.post("/connections/respond")
    def respond(
        payload: ConnectionRespondRequest, account_id: int = Depends(require_account)
    ) -> dict[str, str]:
        connection = context.connections_for(account_id).respond(
            payload.connection_id, payload.decision
        )
        return {"status": connection.status.value}

    @app.post("/connections/withdraw")
    def withdraw(
        payload: ConnectionRequest, account_id: int = Depends(require_account)
    ) -> dict[str, str]:
        connection = context.connections_for(account_id).withdraw(payload.connection_id)
        return {"status": connection.status.value}

    @app.post("/connections/end")
    def end(
        payload: ConnectionRequest, account_id: int = Depends(require_account)
    ) -> dict[str, str]:
        connection = context.connections_for(account_id).end(payload.connection_id)
        return {"status": connection.status.value}

    @app.post("/connections/message")
    def message(
        payload: ConnectionMessageRequest, account_id: int = Depends(require_account)
    ) -> dict[str, Any]:
        thread = context.connections_for(account_id).message(payload.connection_id, payload.text)
        return {"thread": [entry.to_dict() for entry in thread]}

    @app.post("/connections/hide")
    def hide(
        payload: ConnectionRequest, account_id: int = Depends(require_account)
    ) -> dict[str, Any]:
        connection = context.connections_for(account_id).hide(payload.connection_id)
        return {"status": connection.status.value, "hidden": True}

    @app.post("/connections/get")
    def get_connection(
        payload: ConnectionRequest, account_id: int = Depends(require_account)
    ) -> dict[str, Any]:
        """Summary: Fetch a connection with both participant profiles.

        Importance: POST keeps intermediaries from caching participant-only data.
        Alternatives: Use GET with cache-control headers.
        """

        return context.connections_for(account_id).get(payload.connection_id).to_dict()

    @app.post("/connections/next-step")
    def next_step(
        payload: NextStepPayload, account_id: int = Depends(require_account)
    ) -> dict[str, Any]:
        service = context.connections_for(account_id)
        if payload.action == "request":
            if payload.type is None:
                raise InvalidArgument("Invalid type. Must be call, consultation, or visit")
            connection = service.request_next_step(payload.connection_id, payload.type, payload.note)
        else:
            connection = service.cancel_next_step(payload.connection_id)
        request = connection.metadata.next_step_request
        return {
            "thread": [entry.to_dict() for entry in connection.metadata.thread],
            "next_step_request": request.to_dict() if request else None,
        }

    @app.get("/connections")
    def list_connections(
        include_hidden: bool = False, account_id: int = Depends(require_account)
    ) -> list[dict[str, Any]]:
        views = context.connections_for(account_id).list_connections(include_hidden=include_hidden)
        return [view.to_dict() for view in views]

    @app.post("/saved")
    def save_profile(
        payload: SavedProfileRequest, account_id: int = Depends(require_account)
    ) -> dict[str, str]:
        inserted = context.connections_for(account_id).save(payload.profile_id)
        return {"status": "saved" if inserted else "already_saved"}

    @app.post("/saved/remove")
    def unsave_profile(
        payload: SavedProfileRequest, account_id: int = Depends(require_account)
    ) -> dict[str, Any]:
        removed = context.connections_for(account_id).unsave(payload.profile_id)
        return {"status": "ok", "removed": removed}

    @app.get("/saved")
    def list_saved(account_id: int = Depends(require_account)) -> list[dict[str, Any]]:
        return [profile.summary() for profile in context.connections_for(account_id).list_saved()]

    @app.get("/membership")
    def membership(account_id: int = Depends(require_account)) -> dict[str, Any]:
        return context.memberships.summary(account_id)

    @app.post("/webhooks/billing")
    async def billing_webhook(
        request: Request, stripe_signature: str | None = Header(default=None)
    ) -> dict[str, Any]:
        """Summary: Receive subscription events from the payment provider.

        Importance: The only path that changes a membership's paid status.
        Alternatives: Poll the provider for subscription changes.
        """

        if not config.billing_webhook_secret:
            raise HTTPException(status_code=503, detail="Billing webhooks not configured")
        body = await request.body()
        if not verify_signature(body, stripe_signature, config.billing_webhook_secret):
            logger.warning("Rejected billing webhook with invalid signature.")
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            event = json.loads(body)
        except ValueError as exc:
            raise InvalidArgument("Invalid JSON payload") from exc
        if not isinstance(event, dict):
            raise InvalidArgument("Billing event must be a JSON object")
        updated = context.memberships.apply_billing_event(event)
        return {"received": True, "updated": updated}

    return app
