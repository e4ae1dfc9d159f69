"""
Chat-completion proxy routes.

Mounted on the root application, outside the ``/api/v1`` sub-app and its
CORS middleware: the proxy answers its own preflight requests.
"""

from __future__ import annotations

from typing import AsyncIterator

import httpx
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger

from brainlane.config import settings
from brainlane.services.stream_proxy import (
    StreamingProxy,
    build_upstream_body,
    get_upstream_client,
    open_upstream,
)
from brainlane.utils.exceptions import ProxyError

router = APIRouter()

PROXY_PATH = "/api/openai"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}
ALLOW_ORIGIN = {"Access-Control-Allow-Origin": "*"}


def get_upstream() -> httpx.AsyncClient:
    return get_upstream_client()


def get_streaming_proxy() -> StreamingProxy:
    return StreamingProxy()


@router.options(PROXY_PATH, tags=["proxy"])
async def preflight() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=CORS_HEADERS)


@router.api_route(PROXY_PATH, methods=["GET", "PUT", "PATCH", "DELETE"], tags=["proxy"], include_in_schema=False)
async def method_not_allowed() -> JSONResponse:
    return JSONResponse(
        {"error": "Method not allowed"},
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        headers={"Allow": "POST, OPTIONS"},
    )


@router.post(PROXY_PATH, tags=["proxy"])
async def proxy_chat_completion(
    request: Request,
    client: httpx.AsyncClient = Depends(get_upstream),
    proxy: StreamingProxy = Depends(get_streaming_proxy),
) -> Response:
    """
    Forward a chat completion upstream as a stream, answer with one document.

    The response body is heartbeat spaces followed by a single JSON object:
    the assembled completion, or ``{error, code}``.
    """
    api_key = settings.openai_api_key
    if not api_key:
        return JSONResponse(
            {"error": "OpenAI API key not configured"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            headers=ALLOW_ORIGIN,
        )

    try:
        body = await request.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return JSONResponse(
            {"error": "Request body must be a JSON object", "code": "BAD_REQUEST"},
            status_code=status.HTTP_400_BAD_REQUEST,
            headers=ALLOW_ORIGIN,
        )

    upstream_body = build_upstream_body(body)
    try:
        upstream = await open_upstream(client, upstream_body, api_key)
    except ProxyError as exc:
        return JSONResponse(
            {"error": str(exc), "code": exc.code},
            status_code=exc.status_code,
            headers=ALLOW_ORIGIN,
        )

    logger.debug("Proxying chat completion: model={}", upstream_body.get("model"))

    async def relay() -> AsyncIterator[bytes]:
        try:
            async for chunk in proxy.relay(upstream.aiter_lines(), upstream_body):
                yield chunk
        finally:
            await upstream.aclose()

    return StreamingResponse(
        relay(),
        media_type="application/json",
        headers={**ALLOW_ORIGIN, "Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
