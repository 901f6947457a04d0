#!/usr/bin/env python3
"""
Appservice HTTP API - endpoints the homeserver pushes events to
"""
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Header, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from src.core.config import BridgeConfig, setup_logging

logger = logging.getLogger("wechaty_bridge.api")

# Remember this many transaction ids for retry detection
SEEN_TRANSACTIONS = 1000


class Transaction(BaseModel):
    events: List[Dict[str, Any]] = []
    ephemeral: Optional[List[Dict[str, Any]]] = None


class HealthResponse(BaseModel):
    status: str
    accounts: int


def _error(status_code: int, errcode: str, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"errcode": errcode, "error": error})


def create_app(bridge, hs_token: str) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await bridge.close()

    app = FastAPI(
        lifespan=lifespan,
        title="Wechaty Matrix Appservice",
        description="Application service endpoints for the WeChat bridge",
        version="1.0.0"
    )
    seen: "OrderedDict[str, bool]" = OrderedDict()

    def check_token(authorization: Optional[str], access_token: Optional[str]) -> Optional[JSONResponse]:
        token = access_token
        if authorization and authorization.startswith("Bearer "):
            token = authorization[len("Bearer "):]
        if not token:
            return _error(401, "M_UNAUTHORIZED", "Missing homeserver token")
        if token != hs_token:
            return _error(403, "M_FORBIDDEN", "Bad homeserver token")
        return None

    @app.put("/_matrix/app/v1/transactions/{txn_id}")
    async def put_transaction(
        txn_id: str,
        transaction: Transaction,
        authorization: Optional[str] = Header(None),
        access_token: Optional[str] = Query(None),
    ):
        denied = check_token(authorization, access_token)
        if denied:
            return denied

        if txn_id in seen:
            logger.debug(f"Transaction {txn_id} already processed")
            return {}

        logger.debug(f"Transaction {txn_id} with {len(transaction.events)} events")
        for event in transaction.events:
            try:
                bridge.on_matrix_event(event)
            except Exception as e:
                logger.error(f"Failed to dispatch event {event.get('event_id')}: {e}", exc_info=True)

        seen[txn_id] = True
        while len(seen) > SEEN_TRANSACTIONS:
            seen.popitem(last=False)
        return {}

    @app.get("/_matrix/app/v1/users/{user_id}")
    async def query_user(
        user_id: str,
        authorization: Optional[str] = Header(None),
        access_token: Optional[str] = Query(None),
    ):
        denied = check_token(authorization, access_token)
        if denied:
            return denied
        if bridge.user_exists(user_id):
            return {}
        return _error(404, "M_NOT_FOUND", "No such user")

    @app.get("/_matrix/app/v1/rooms/{room_alias}")
    async def query_room(
        room_alias: str,
        authorization: Optional[str] = Header(None),
        access_token: Optional[str] = Query(None),
    ):
        denied = check_token(authorization, access_token)
        if denied:
            return denied
        # Room aliases are never provisioned on demand
        return _error(404, "M_NOT_FOUND", "No such room")

    @app.get("/health", response_model=HealthResponse)
    async def health():
        accounts = len(bridge.router.accounts) if bridge.router else 0
        return HealthResponse(status="ok", accounts=accounts)

    return app


def main():
    from src.bridges.wechaty_matrix_bridge import build_bridge

    config = BridgeConfig.from_env()
    setup_logging(config)
    bridge = build_bridge(config)
    app = create_app(bridge, config.hs_token)
    uvicorn.run(app, host=config.api_host, port=config.api_port)


if __name__ == "__main__":
    main()
