# giftflow/http_problem_handlers.py
from __future__ import annotations

import logging
from typing import Any, Dict, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from giftflow.api.problem import make_problem
from giftflow.core.audit import new_trace
from giftflow.core.errors import DownstreamUnavailableError, GiftflowError, StorageError

logger = logging.getLogger("giftflow")


def _ctx(req: Request) -> Dict[str, Any]:
    return {"path": getattr(req.url, "path", ""), "method": req.method}


def problem_from_error(req: Request, exc: GiftflowError, trace_id: str) -> Dict[str, Any]:
    ctx = _ctx(req)
    ctx.update({k: v for k, v in exc.context.items() if v is not None})
    retryable = None
    if isinstance(exc, DownstreamUnavailableError):
        retryable = exc.retryable
    elif isinstance(exc, StorageError):
        retryable = True
    return make_problem(
        status_code=exc.http_status,
        error_code=exc.error_code,
        message=exc.message,
        context=ctx,
        retryable=retryable,
        trace_id=trace_id,
    )


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(GiftflowError)
    async def _domain_exc(req: Request, exc: GiftflowError):
        trace_id = new_trace(f"http:{req.url.path}").trace_id
        if exc.http_status >= 500:
            logger.error("%s[%s]: %s", exc.error_code, trace_id, exc.message)
        content = problem_from_error(req, exc, trace_id)
        headers = {"WWW-Authenticate": "Bearer"} if exc.http_status == 401 else None
        return JSONResponse(status_code=exc.http_status, content=content, headers=headers)

    @app.exception_handler(SQLAlchemyError)
    async def _storage_exc(req: Request, exc: SQLAlchemyError):
        trace_id = new_trace(f"http:{req.url.path}").trace_id
        logger.exception("STORAGE_EXC[%s]: %s", trace_id, exc)
        err = StorageError("Storage temporarily unavailable, please retry")
        return JSONResponse(status_code=err.http_status, content=problem_from_error(req, err, trace_id))

    @app.exception_handler(RequestValidationError)
    async def _validation_exc(req: Request, exc: RequestValidationError):
        details: List[Dict[str, Any]] = []
        for e in exc.errors():
            if not isinstance(e, dict):
                continue
            loc = ".".join(str(p) for p in e.get("loc", ()) if p != "body")
            details.append(
                {
                    "type": "validation",
                    "path": loc,
                    "reason": str(e.get("msg") or e.get("type") or "invalid"),
                }
            )
        content = make_problem(
            status_code=400,
            error_code="validation_error",
            message="Request body is invalid",
            context=_ctx(req),
            details=details,
            trace_id=new_trace(f"http:{req.url.path}").trace_id,
        )
        return JSONResponse(status_code=400, content=content)

    @app.exception_handler(HTTPException)
    async def _http_exc(req: Request, exc: HTTPException):
        content = make_problem(
            status_code=exc.status_code,
            error_code="http_error",
            message=str(exc.detail) if exc.detail is not None else "Request rejected",
            context=_ctx(req),
            trace_id=new_trace(f"http:{req.url.path}").trace_id,
        )
        return JSONResponse(status_code=int(exc.status_code), content=content)

    @app.exception_handler(Exception)
    async def _unhandled_exc(req: Request, exc: Exception):
        trace_id = new_trace(f"http:{req.url.path}").trace_id
        logger.exception("UNHANDLED_EXC[%s]: %s", trace_id, exc)
        content = make_problem(
            status_code=500,
            error_code="internal_error",
            message="Internal error, please retry later",
            context=_ctx(req),
            trace_id=trace_id,
        )
        return JSONResponse(status_code=500, content=content)
