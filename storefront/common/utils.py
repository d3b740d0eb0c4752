from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from storefront.common.constants import request_id_ctx


def now() -> datetime:
    return datetime.now(timezone.utc)


def build_success(data: Optional[Any] = None, message: str = "ok",
                  request_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "success": True,
        "message": message,
        "data": data,
        "error": None,
        "request_id": request_id or request_id_ctx.get(None),
    }


def build_error(code: Union[str, int] = "UNKNOWN_ERROR",
                message: str = "Request failed",
                details: Optional[Any] = None,
                request_id: Optional[str] = None) -> Dict[str, Any]:

    return {
        "success": False,
        "message": message,
        "data": None,
        "error": {"code": code, "details": details},
        "request_id": request_id or request_id_ctx.get(None),
    }


def json_ok(content: Dict[str, Any], status_code: int = 200, headers=None) -> JSONResponse:
    return JSONResponse(jsonable_encoder(content), status_code=status_code, headers=headers)


def json_error(content: Dict[str, Any], status_code: int = 500, headers=None) -> JSONResponse:
    return JSONResponse(jsonable_encoder(content), status_code=status_code, headers=headers)


def success_response(data: Optional[Any] = None, message: str = "ok", status_code: int = 200,
                     headers: Optional[Dict[str, Any]] = None) -> JSONResponse:
    content = build_success(data, message=message)
    return json_ok(content, status_code=status_code, headers=headers)
