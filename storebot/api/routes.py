import logging
import uuid

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from storebot.api.schemas import AdminStatusResponse, VipUpdateResponse
from storebot.core import actions
from storebot.core.errors import StoreUnavailable
from storebot.core.metrics import metrics

router = APIRouter()
logger = logging.getLogger(__name__)

_STATUS_CODES = {
    actions.STATUS_OK: 200,
    actions.STATUS_NO_DATA: 404,
    actions.STATUS_UNAVAILABLE: 503,
    actions.STATUS_QUOTA_EXCEEDED: 429,
}


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint():
    return metrics.snapshot()


@router.get("/v1/charts/{region}")
async def chart(request: Request, region: str, kind: str = "free"):
    return await _dispatch(request, actions.chart, _user_id(request), region, kind)


@router.get("/v1/apps/price")
async def price(request: Request, term: str = "", region: str = actions.DEFAULT_DETAIL_REGION):
    return await _dispatch(request, actions.price, _user_id(request), term, region)


@router.get("/v1/apps/detail")
async def detail(request: Request, term: str = "", region: str = actions.DEFAULT_DETAIL_REGION):
    return await _dispatch(request, actions.detail, _user_id(request), term, region)


@router.get("/v1/apps/icon")
async def icon(request: Request, term: str = "", region: str = actions.DEFAULT_DETAIL_REGION):
    return await _dispatch(request, actions.icon, _user_id(request), term, region)


@router.get("/v1/apps/availability")
async def availability(request: Request, term: str = ""):
    return await _dispatch(request, actions.availability, _user_id(request), term)


@router.get("/v1/os")
async def os_summary(request: Request):
    return await _dispatch(request, actions.os_summary, _user_id(request))


@router.get("/v1/os/{platform}")
async def os_detail(request: Request, platform: str):
    return await _dispatch(request, actions.os_detail, _user_id(request), platform)


@router.get("/internal/status", response_model=AdminStatusResponse)
def admin_status(request: Request):
    trace_id, request_id = _extract_ids(request)
    status = actions.admin_status(_user_id(request))
    if status is None:
        return _error_response("forbidden", "Administrator access required.", trace_id, request_id, status_code=403)
    body = AdminStatusResponse(**status)
    return JSONResponse(content=body.model_dump(), headers=_response_headers(trace_id, request_id))


@router.put("/internal/vip/{user_id}", response_model=VipUpdateResponse)
def grant_vip(request: Request, user_id: str):
    return _update_vip(request, user_id, True)


@router.delete("/internal/vip/{user_id}", response_model=VipUpdateResponse)
def revoke_vip(request: Request, user_id: str):
    return _update_vip(request, user_id, False)


def _update_vip(request: Request, user_id: str, enabled: bool) -> JSONResponse:
    trace_id, request_id = _extract_ids(request)
    try:
        updated = actions.manage_vip(_user_id(request), user_id, enabled)
    except StoreUnavailable as exc:
        logger.warning("vip_update_failed trace_id=%s user_id=%s error=%s", trace_id, user_id, exc)
        return _error_response("store_unavailable", "VIP store is unavailable.", trace_id, request_id, status_code=503)
    if not updated:
        return _error_response("forbidden", "Administrator access required.", trace_id, request_id, status_code=403)
    return JSONResponse(
        content=VipUpdateResponse(user_id=user_id, vip=enabled).model_dump(),
        headers=_response_headers(trace_id, request_id),
    )


async def _dispatch(request: Request, handler, *args) -> JSONResponse:
    trace_id, request_id = _extract_ids(request)
    try:
        result = await handler(*args)
    except ValueError as exc:
        return _error_response("invalid_request", str(exc), trace_id, request_id)
    logger.info(
        "sb_action trace_id=%s request_id=%s action=%s status=%s cached=%s",
        trace_id,
        request_id,
        result.action,
        result.status,
        result.cached,
    )
    payload = {**result.to_dict(), "trace_id": trace_id, "request_id": request_id}
    return JSONResponse(
        status_code=_STATUS_CODES.get(result.status, 500),
        content=payload,
        headers=_response_headers(trace_id, request_id),
    )


def _user_id(request: Request) -> str | None:
    user_id = request.headers.get("x-user-id")
    if isinstance(user_id, str) and user_id.strip():
        return user_id.strip()
    return None


def _extract_ids(request: Request) -> tuple[str, str]:
    trace_id = request.headers.get("x-trace-id") or f"trace_{uuid.uuid4().hex}"
    request_id = request.headers.get("x-request-id") or f"req_{uuid.uuid4().hex}"
    return trace_id, request_id


def _error_response(code: str, message: str, trace_id: str, request_id: str, status_code: int = 400) -> JSONResponse:
    payload = {
        "error": {"code": code, "message": message},
        "trace_id": trace_id,
        "request_id": request_id,
    }
    return JSONResponse(status_code=status_code, content=payload, headers=_response_headers(trace_id, request_id))


def _response_headers(trace_id: str, request_id: str) -> dict[str, str]:
    return {"x-trace-id": trace_id, "x-request-id": request_id}
