import asyncio
import hmac
import logging
from typing import List
from uuid import UUID

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession
import uvicorn

from shopsphere import aggregates, crud, schemas, workers
from shopsphere.config import settings
from shopsphere.db import get_session, init_models
from shopsphere.errors import OrderError, PersistenceError
from shopsphere.gateway import RazorpayClient
from shopsphere.messaging import init_rabbit, close_rabbit
from shopsphere.workflow import OrderWorkflow

logger = logging.getLogger(__name__)
app = FastAPI(title="ShopSphere Orders Service")
bearer = HTTPBearer(auto_error=False)

@app.on_event("startup")
async def startup_event():
    await init_models()

    app.state.gateway = RazorpayClient(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET.get_secret_value(),
        base_url=settings.RAZORPAY_BASE_URL,
        timeout=settings.GATEWAY_TIMEOUT,
    )

    app.state.outbox_task = None
    if settings.OUTBOX_PUBLISHER_ENABLED:
        await init_rabbit()
        app.state.outbox_task = asyncio.create_task(workers.outbox_publisher())

@app.on_event("shutdown")
async def shutdown_event():
    if app.state.outbox_task:
        app.state.outbox_task.cancel()
        await asyncio.gather(app.state.outbox_task, return_exceptions=True)
        await close_rabbit()
    await app.state.gateway.aclose()

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


def get_gateway(request: Request) -> RazorpayClient:
    return request.app.state.gateway

def get_workflow(
    session: AsyncSession = Depends(get_session),
    gateway: RazorpayClient = Depends(get_gateway),
) -> OrderWorkflow:
    return OrderWorkflow(
        session,
        gateway,
        settings.RAZORPAY_KEY_SECRET.get_secret_value(),
        max_conflict_retries=settings.MAX_CONFLICT_RETRIES,
        default_currency=settings.DEFAULT_CURRENCY,
    )

async def require_admin(credentials: HTTPAuthorizationCredentials | None = Depends(bearer)) -> None:
    if credentials is None:
        raise HTTPException(status_code=401, detail="No token provided")
    expected = settings.ADMIN_API_TOKEN.get_secret_value()
    if not expected or not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise HTTPException(status_code=403, detail="Admin access required")

def to_http(e: OrderError) -> HTTPException:
    if isinstance(e, PersistenceError):
        return HTTPException(status_code=e.status_code, detail={"message": e.message, "intentId": e.intent_id})
    return HTTPException(status_code=e.status_code, detail=e.message)


@app.get("/health")
async def health():
    return {"ok": True}

@app.post("/payment/create-order", response_model=schemas.CreatePaymentOrderResponse)
async def create_payment_order(
    req: schemas.CreatePaymentOrderRequest,
    workflow: OrderWorkflow = Depends(get_workflow)
):
    try:
        intent, order = await workflow.create_gateway_order(req.amount, req.currency, req.receipt, req.order_data)
    except OrderError as e:
        raise to_http(e)
    return schemas.CreatePaymentOrderResponse(
        intent_id=intent.intent_id,
        amount=intent.amount,
        currency=intent.currency,
        local_order_id=order.id,
    )

@app.post("/payment/verify", response_model=schemas.VerifyPaymentResponse)
async def verify_payment(
    req: schemas.VerifyPaymentRequest,
    workflow: OrderWorkflow = Depends(get_workflow)
):
    try:
        result = await workflow.verify_payment(req.intent_id, req.payment_ref, req.signature, req.local_order_id)
    except OrderError as e:
        raise to_http(e)
    if not result.verified:
        return JSONResponse(status_code=400, content={"verified": False})
    return schemas.VerifyPaymentResponse(verified=True, order=schemas.OrderRead.model_validate(result.order))

@app.get("/payment/order-status/{id}", response_model=schemas.OrderRead)
async def get_order_status(
    id: UUID,
    session: AsyncSession = Depends(get_session)
):
    order = await crud.get_order(id, session)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order

@app.post("/orders/cod", response_model=schemas.OrderSummary)
async def create_cod_order(
    req: schemas.CodOrderRequest,
    workflow: OrderWorkflow = Depends(get_workflow)
):
    try:
        return await workflow.create_cod_order(req.order_data)
    except OrderError as e:
        raise to_http(e)

@app.get("/orders", response_model=List[schemas.OrderRead])
async def list_orders(
    user_id: str,
    session: AsyncSession = Depends(get_session)
):
    return await crud.get_orders_by_user(user_id, session)

@app.get("/orders/by-reference/{order_id}", response_model=schemas.OrderRead)
async def get_order_by_reference(
    order_id: str,
    session: AsyncSession = Depends(get_session)
):
    order = await crud.get_order_by_reference(order_id, session)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order

@app.post("/users/{user_id}", response_model=schemas.UserRead)
async def create_user(
    user_id: str,
    session: AsyncSession = Depends(get_session)
):
    try:
        return await aggregates.create_user(user_id, session)
    except OrderError as e:
        raise to_http(e)

@app.get("/users/{user_id}", response_model=schemas.UserRead)
async def get_user(
    user_id: str,
    session: AsyncSession = Depends(get_session)
):
    user = await aggregates.get_user(user_id, session)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@app.patch("/admin/orders/{id}/status", response_model=schemas.OrderRead, dependencies=[Depends(require_admin)])
async def update_order_status(
    id: UUID,
    req: schemas.StatusUpdateRequest,
    workflow: OrderWorkflow = Depends(get_workflow)
):
    try:
        return await workflow.update_status(id, req.status)
    except OrderError as e:
        raise to_http(e)

@app.delete("/admin/orders/{id}", response_model=schemas.OrderRead, dependencies=[Depends(require_admin)])
async def delete_order(
    id: UUID,
    workflow: OrderWorkflow = Depends(get_workflow)
):
    try:
        return await workflow.delete_order(id)
    except OrderError as e:
        raise to_http(e)

@app.get("/admin/users/{user_id}/audit", response_model=schemas.UserAudit, dependencies=[Depends(require_admin)])
async def audit_user(
    user_id: str,
    session: AsyncSession = Depends(get_session)
):
    try:
        return await aggregates.audit_user(user_id, session)
    except OrderError as e:
        raise to_http(e)

@app.post("/admin/users/{user_id}/reconcile", response_model=schemas.ReconcileResult, dependencies=[Depends(require_admin)])
async def reconcile_user(
    user_id: str,
    session: AsyncSession = Depends(get_session)
):
    try:
        return await aggregates.reconcile_user(user_id, session)
    except OrderError as e:
        raise to_http(e)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    uvicorn.run("shopsphere.main:app", host="0.0.0.0", port=8000)
