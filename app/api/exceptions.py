"""
全局异常处理器
"""

import logging

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import BusinessException

logger = logging.getLogger(__name__)


def _error_response(status_code: int, error_code: str, message: str, details=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": False,
            "error_code": error_code,
            "message": message,
            "details": details or {}
        }
    )


async def business_exception_handler(request: Request, exc: BusinessException) -> JSONResponse:
    """业务异常处理"""
    logger.warning(f"业务异常 {exc.error_code}: {exc.message}")
    return _error_response(exc.status_code, exc.error_code, exc.message, exc.details)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求参数验证异常处理"""
    return _error_response(
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "request_validation_error",
        "请求参数验证失败",
        {"errors": [
            {"loc": list(error.get("loc", [])), "msg": error.get("msg")}
            for error in exc.errors()
        ]}
    )


async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """数据库异常处理"""
    logger.error(f"数据库操作失败: {exc}")
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "database_error",
        "数据库操作失败"
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """未处理异常兜底"""
    logger.exception(f"未处理的异常: {exc}")
    return _error_response(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "internal_error",
        "服务器内部错误"
    )
