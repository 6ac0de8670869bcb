"""JSON envelopes shared by every endpoint: `{code, data}` and `{code, error_code, error_message}`."""

from __future__ import annotations

import math
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel

from twitchspeak.auth.errors import GENERIC_ERROR_MESSAGE, RateLimited

CODE_INTERNAL_ERROR = "internal_error"


class SuccessBody(BaseModel):
    code: int
    data: Any = None


class ErrorBody(BaseModel):
    code: int
    error_code: str
    error_message: str
    retry_after: Optional[float] = None


def success(data: Any, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=SuccessBody(code=status_code, data=data).model_dump(mode="json"))


def error(
    status_code: int,
    error_code: str,
    message: str,
    *,
    retry_after: Optional[float] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body = ErrorBody(code=status_code, error_code=error_code, error_message=message, retry_after=retry_after)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True), headers=headers)


def internal_error() -> JSONResponse:
    return error(500, CODE_INTERNAL_ERROR, GENERIC_ERROR_MESSAGE)


def too_many_requests(exc: RateLimited) -> JSONResponse:
    return error(
        exc.status_code,
        exc.error_code,
        exc.message,
        retry_after=round(exc.retry_after, 3),
        headers={"Retry-After": str(max(1, math.ceil(exc.retry_after)))},
    )
