"""HTTP based actions: generic requests, webhooks and Discord messages."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, ClassVar, Dict, Optional

import httpx

from ..contracts import DiscordMessageConfig, HttpRequestConfig, WebhookConfig
from .base import ActionContext, ActionResult

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _client(
    context: ActionContext, timeout_s: Optional[float]
) -> AsyncIterator[httpx.AsyncClient]:
    if context.http_client is not None:
        yield context.http_client
        return
    timeout = timeout_s or context.engine.http.timeout_s
    async with httpx.AsyncClient(timeout=timeout) as client:
        yield client


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


async def _send(
    context: ActionContext,
    method: str,
    url: str,
    timeout_s: Optional[float] = None,
    **kwargs: Any,
) -> httpx.Response | ActionResult:
    try:
        async with _client(context, timeout_s) as client:
            request_kwargs = dict(kwargs)
            if timeout_s is not None:
                request_kwargs["timeout"] = timeout_s
            return await client.request(method, url, **request_kwargs)
    except httpx.TimeoutException as e:
        return ActionResult.failure(
            "timeout", f"{method} {url} timed out: {e}", detail={"url": url}
        )
    except httpx.HTTPError as e:
        logger.warning(f"{method} {url} failed for execution {context.execution_id}: {e}")
        return ActionResult.failure(
            "transport", f"{method} {url} failed: {e}", detail={"url": url}
        )


class HttpRequestAction:
    config_model: ClassVar = HttpRequestConfig

    async def execute(self, config: HttpRequestConfig, context: ActionContext) -> ActionResult:
        kwargs: Dict[str, Any] = {"headers": config.headers}
        if config.body is not None:
            if isinstance(config.body, (dict, list)):
                kwargs["json"] = config.body
            else:
                kwargs["content"] = str(config.body)

        response = await _send(context, config.method, config.url, config.timeout_s, **kwargs)
        if isinstance(response, ActionResult):
            return response

        output = {
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": _body(response),
        }
        if config.fail_on_error and not response.is_success:
            return ActionResult.failure(
                "semantic",
                f"HTTP request returned status {response.status_code}",
                detail={"status_code": response.status_code},
                output=output,
            )
        return ActionResult.success(output)


class WebhookAction:
    """POST the execution context plus a custom payload to a URL."""

    config_model: ClassVar = WebhookConfig

    async def execute(self, config: WebhookConfig, context: ActionContext) -> ActionResult:
        payload: Dict[str, Any] = {
            "workflow_id": context.workflow_id,
            "execution_id": context.execution_id,
            "server_id": context.server_id,
            "trigger_event": context.trigger_event,
            "variables": context.variables.snapshot(),
            "metadata": context.metadata,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        payload.update(config.payload)
        headers = {"Content-Type": "application/json", **config.headers}

        response = await _send(
            context,
            "POST",
            config.url,
            config.timeout_s,
            headers=headers,
            content=json.dumps(payload, default=str),
        )
        if isinstance(response, ActionResult):
            return response
        if not response.is_success:
            return ActionResult.failure(
                "semantic",
                f"Webhook returned status {response.status_code}",
                detail={"status_code": response.status_code, "body": response.text},
            )
        return ActionResult.success(
            {"status_code": response.status_code, "body": _body(response)}
        )


class DiscordMessageAction:
    config_model: ClassVar = DiscordMessageConfig

    async def execute(
        self, config: DiscordMessageConfig, context: ActionContext
    ) -> ActionResult:
        payload: Dict[str, Any] = {"content": config.message}
        if config.username:
            payload["username"] = config.username
        if config.avatar_url:
            payload["avatar_url"] = config.avatar_url

        response = await _send(context, "POST", config.webhook_url, json=payload)
        if isinstance(response, ActionResult):
            return response
        if response.status_code not in (200, 204):
            return ActionResult.failure(
                "semantic",
                f"Discord webhook returned status {response.status_code}",
                detail={"status_code": response.status_code, "body": response.text},
            )
        return ActionResult.success({"status_code": response.status_code})
