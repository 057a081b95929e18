"""API routes."""

from fastapi import APIRouter

from tableside.api.routes import split_payments, table_sessions, tables, waiter_calls

api_router = APIRouter()

api_router.include_router(tables.router, prefix="/tables", tags=["tables"])
api_router.include_router(table_sessions.router, prefix="/table-sessions", tags=["table-sessions"])
api_router.include_router(waiter_calls.router, prefix="/waiter-calls", tags=["waiter-calls"])
api_router.include_router(split_payments.router, prefix="/split-payments", tags=["split-payments"])
