"""FastAPI application exposing the settlement triggers."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .errors import (
    AlreadyProcessedError,
    ConversionUnavailableError,
    InvalidAmountError,
    MissingRecipientError,
    RequestNotFoundError,
    ReserveInsufficientError,
    SettlementError,
    TransferAmbiguousError,
    TransferFailedError,
    UnsupportedRouteError,
)
from .manager import SettlementManager
from .models import IntentState, RequestKind, RequestStatus, SettlementIntent, SettlementRequest

ERROR_STATUS = {
    RequestNotFoundError: status.HTTP_404_NOT_FOUND,
    AlreadyProcessedError: status.HTTP_409_CONFLICT,
    MissingRecipientError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    UnsupportedRouteError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidAmountError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ConversionUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ReserveInsufficientError: status.HTTP_503_SERVICE_UNAVAILABLE,
    TransferFailedError: status.HTTP_502_BAD_GATEWAY,
    TransferAmbiguousError: status.HTTP_409_CONFLICT,
}


class RequestCollection(str, Enum):
    WITHDRAWALS = "withdrawals"
    PAYOUTS = "payouts"

    @property
    def kind(self) -> RequestKind:
        return RequestKind.WITHDRAWAL if self is RequestCollection.WITHDRAWALS else RequestKind.PAYOUT


class SettlementResponse(BaseModel):
    id: int
    kind: str
    user_id: Optional[int]
    to: Optional[str]
    blockchain: str
    currency: str
    amount: str
    status: str
    created_at: str
    updated_at: str
    tx_hash: Optional[str]
    settled_amount: Optional[str]
    settled_currency: Optional[str]
    failure_reason: Optional[str]

    @classmethod
    def from_request(cls, request: SettlementRequest) -> "SettlementResponse":
        return cls(**request.to_api_dict())


class SettlementListResponse(BaseModel):
    data: List[SettlementResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class IntentResponse(BaseModel):
    kind: str
    request_id: int
    reference: str
    route: str
    attempts: int
    state: str
    amount: Optional[str]
    unit: Optional[str]
    tx_hash: Optional[str]
    detail: Optional[str]
    created_at: str
    updated_at: str

    @classmethod
    def from_intent(cls, intent: SettlementIntent) -> "IntentResponse":
        return cls(**intent.to_api_dict())


class RejectPayload(BaseModel):
    reason: str = Field(..., min_length=1, description="Why the request will not be settled")


def create_app(manager: SettlementManager) -> FastAPI:
    app = FastAPI(title="Settlement Engine", version="0.1.0")

    def get_manager() -> SettlementManager:
        return manager

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(_: Request, exc: SettlementError) -> JSONResponse:
        code = next(
            (value for error_type, value in ERROR_STATUS.items() if isinstance(exc, error_type)),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        return JSONResponse(
            status_code=code,
            content={"error": exc.code, "detail": str(exc), "retryable": exc.retryable},
        )

    @app.get("/health", status_code=status.HTTP_200_OK)
    async def healthcheck(mgr: SettlementManager = Depends(get_manager)) -> Dict[str, Any]:
        return {"status": "ok", "routes": mgr.registry.routes()}

    @app.get("/intents", response_model=List[IntentResponse])
    async def list_intents(
        state: Optional[str] = Query(None),
        limit: int = Query(50, ge=1, le=200),
        mgr: SettlementManager = Depends(get_manager),
    ) -> List[IntentResponse]:
        state_value: Optional[IntentState]
        if state is None:
            state_value = None
        else:
            try:
                state_value = IntentState(state.lower())
            except ValueError as exc:
                raise HTTPException(status_code=400, detail="Invalid state filter") from exc
        intents = await mgr.list_intents(state=state_value, limit=limit)
        return [IntentResponse.from_intent(intent) for intent in intents]

    @app.get("/balances/{user_id}/{currency}")
    async def get_balance(
        user_id: int, currency: str, mgr: SettlementManager = Depends(get_manager)
    ) -> Dict[str, Any]:
        balance = await mgr.ledger.get_balance(user_id, currency)
        return {"user_id": user_id, "currency": currency, "balance": str(balance)}

    @app.post(
        "/withdrawals/{request_id}/process",
        response_model=SettlementResponse,
        summary="Settle a pending withdrawal on-chain",
    )
    async def process_withdrawal(
        request_id: int, mgr: SettlementManager = Depends(get_manager)
    ) -> SettlementResponse:
        return SettlementResponse.from_request(await mgr.process_withdraw(request_id))

    @app.post(
        "/payouts/{request_id}/process",
        response_model=SettlementResponse,
        summary="Settle a pending payout to the ledger or on-chain",
    )
    async def process_payout(
        request_id: int, mgr: SettlementManager = Depends(get_manager)
    ) -> SettlementResponse:
        return SettlementResponse.from_request(await mgr.process_payout(request_id))

    @app.post("/{collection}/{request_id}/reconcile", response_model=SettlementResponse)
    async def reconcile(
        collection: RequestCollection,
        request_id: int,
        mgr: SettlementManager = Depends(get_manager),
    ) -> SettlementResponse:
        return SettlementResponse.from_request(await mgr.reconcile(collection.kind, request_id))

    @app.post("/{collection}/{request_id}/reject", response_model=SettlementResponse)
    async def reject(
        collection: RequestCollection,
        request_id: int,
        payload: RejectPayload,
        mgr: SettlementManager = Depends(get_manager),
    ) -> SettlementResponse:
        rejected = await mgr.reject_request(collection.kind, request_id, reason=payload.reason)
        return SettlementResponse.from_request(rejected)

    @app.get("/{collection}/{request_id}", response_model=SettlementResponse)
    async def get_request(
        collection: RequestCollection,
        request_id: int,
        mgr: SettlementManager = Depends(get_manager),
    ) -> SettlementResponse:
        return SettlementResponse.from_request(await mgr.get_request(collection.kind, request_id))

    @app.get("/{collection}", response_model=SettlementListResponse)
    async def list_requests(
        collection: RequestCollection,
        status_filter: Optional[str] = Query(None, alias="status"),
        currency: Optional[str] = Query(None),
        search: Optional[str] = Query(None),
        page: int = Query(1, ge=1),
        page_size: int = Query(10, ge=1, le=200),
        mgr: SettlementManager = Depends(get_manager),
    ) -> SettlementListResponse:
        status_value: Optional[RequestStatus]
        if status_filter is None:
            status_value = None
        else:
            try:
                status_value = RequestStatus(status_filter.lower())
            except ValueError as exc:
                raise HTTPException(status_code=400, detail="Invalid status filter") from exc
        result = await mgr.list_requests(
            collection.kind,
            status=status_value,
            currency=currency,
            search=search,
            page=page,
            page_size=page_size,
        )
        return SettlementListResponse(
            data=[SettlementResponse.from_request(item) for item in result.items],
            total=result.total,
            page=result.page,
            page_size=result.page_size,
            total_pages=result.total_pages,
        )

    return app


class SettlementServer:
    """Helper that runs the FastAPI application using Uvicorn."""

    def __init__(self, app: FastAPI, *, host: str, port: int) -> None:
        self._config = uvicorn.Config(app, host=host, port=port, loop="asyncio", lifespan="on")
        self._server = uvicorn.Server(self._config)

    async def serve(self) -> None:
        await self._server.serve()

    async def shutdown(self) -> None:
        self._server.should_exit = True


__all__ = ["SettlementServer", "create_app"]
