"""Webhook intake routes for the social messaging channels."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse

from ..agents.schemas import Channel
from ..channels import get_adapter, parse_channel
from ..channels.twitter import crc_response
from ..config import PipelineSettings
from ..conversations.service import IngestionCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


def _resolve_channel(channel: str) -> Channel:
    try:
        return parse_channel(channel)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def _settings(request: Request) -> PipelineSettings:
    return request.app.state.settings


def _coordinator(request: Request) -> IngestionCoordinator:
    coordinator = getattr(request.app.state, "coordinator", None)
    if coordinator is None:
        raise HTTPException(status_code=503, detail="Ingestion not configured")
    return coordinator


@router.get("/api/webhooks/{channel}")
async def verify_subscription(channel: str, request: Request) -> Response:
    """Answer the platform's subscription handshake.

    Meta channels echo ``hub.challenge`` for a matching verify token; Twitter
    answers its CRC with the ``crc_token`` signed by the API secret.
    """

    resolved = _resolve_channel(channel)
    params = request.query_params
    if resolved == Channel.TWITTER:
        crc_token = params.get("crc_token")
        secret = _settings(request).webhook_secrets.get(resolved.value)
        if not crc_token or not secret:
            logger.warning("Rejected Twitter CRC check (token or secret missing)")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid CRC request")
        return JSONResponse(crc_response(crc_token, secret))
    expected = _settings(request).verify_tokens.get(resolved.value)
    if (
        params.get("hub.mode") != "subscribe"
        or not expected
        or params.get("hub.verify_token") != expected
    ):
        logger.warning("Invalid verify token for %s", resolved.value)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid verify token")
    return PlainTextResponse(params.get("hub.challenge", ""))


@router.post("/api/webhooks/{channel}")
async def ingest_webhook(channel: str, request: Request) -> Response:
    resolved = _resolve_channel(channel)
    body_bytes = await request.body()
    try:
        payload = json.loads(body_bytes.decode("utf-8")) if body_bytes else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload: expected an object")

    adapter = get_adapter(resolved)
    secret = _settings(request).webhook_secrets.get(resolved.value)
    if not adapter.verify_signature(body_bytes, request.headers, secret):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid signature")

    coordinator = _coordinator(request)
    queued = await coordinator.enqueue_inbound(adapter.parse_incoming(payload))
    return Response(
        content=json.dumps({"status": "EVENT_RECEIVED", "queued": queued}),
        media_type="application/json",
        status_code=status.HTTP_200_OK,
    )
