"""
同源中转路由
GET /api/alphavantage?function=...&symbol=...

浏览器端不能直接跨域访问上游，客户端可把 ALPHAVANTAGE_BASE_URL 指向本接口。
查询参数原样转发（apikey 由服务端注入），上游响应体原样返回；
响应体内的错误信号映射为 HTTP 状态码：Error Message → 400，Note / Information → 429。
"""

import logging

import httpx
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from index_service.config import IndexServiceSettings
from index_service.dependencies import get_app_settings, get_http_client
from index_service.errors import ApiError, RateLimitedError
from index_service.layers.acquisition import classify_payload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["中转"])


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.get("/alphavantage")
async def relay(
    request: Request,
    cfg: IndexServiceSettings = Depends(get_app_settings),
    http: httpx.AsyncClient = Depends(get_http_client),
):
    """转发到 Alpha Vantage 并返回原始响应体"""
    if not cfg.ALPHAVANTAGE_API_KEY:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Alpha Vantage API key not configured")

    params = {k: v for k, v in request.query_params.items() if k.lower() != "apikey"}
    if not params.get("function"):
        return _error(status.HTTP_400_BAD_REQUEST, "Missing required parameter: function")
    params["apikey"] = cfg.ALPHAVANTAGE_API_KEY

    logger.info(f"📡 中转请求: {params['function']} - {params.get('symbol', '-')}")
    try:
        resp = await http.get(
            cfg.ALPHAVANTAGE_UPSTREAM_URL,
            params=params,
            headers={"User-Agent": cfg.HTTP_USER_AGENT},
        )
    except httpx.HTTPError as exc:
        logger.error(f"中转请求失败: {exc}")
        return _error(status.HTTP_502_BAD_GATEWAY, f"Upstream request failed: {exc}")

    if not resp.is_success:
        return _error(resp.status_code, f"Alpha Vantage API error: {resp.status_code} {resp.reason_phrase}")

    try:
        data = resp.json()
    except ValueError:
        return _error(status.HTTP_502_BAD_GATEWAY, "Upstream returned a non-JSON body")

    if isinstance(data, dict):
        try:
            classify_payload(data, symbol=params.get("symbol"), function=params["function"])
        except ApiError:
            return _error(status.HTTP_400_BAD_REQUEST, data["Error Message"])
        except RateLimitedError:
            return _error(
                status.HTTP_429_TOO_MANY_REQUESTS,
                "API call frequency limit reached. Please try again later.",
            )
    return JSONResponse(content=data)
