"""
Notification Fan-out

Dispatches a finalized intent to the desktop channel and every configured
webhook concurrently. A failing channel is recorded in the result's error
list and never delays or prevents the others.
"""

import asyncio
import logging
import shutil
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..common.config import ConfigStore, NotificationConfig, WebhookConfig
from ..common.errors import DeliveryError
from ..common.schemas import IntentResult, NotifyResult

logger = logging.getLogger("livepipe.pipeline.notifier")

NOTIFICATION_TITLE = "Maybe Need Action"
URGENT_TITLE = "Urgent: Action Needed"
WEBHOOK_TIMEOUT_S = 10.0
DESKTOP_TIMEOUT_S = 10.0


def build_message(intent: IntentResult) -> Tuple[str, str]:
    title = URGENT_TITLE if intent.urgent else NOTIFICATION_TITLE
    body = intent.content
    if intent.due_time:
        body += f" (due {intent.due_time.replace('T', ' ')})"
    return title, body


def escape_applescript(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


def build_webhook_payload(webhook: WebhookConfig, intent: IntentResult, title: str, body: str) -> Dict[str, Any]:
    if webhook.provider == "feishu":
        return {"msg_type": "text", "content": {"text": f"{title}\n{body}"}}

    if webhook.provider == "telegram":
        return {"chat_id": webhook.chat_id, "text": f"{title}\n{body}"}

    return {
        "source": "livepipe",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "title": title,
        "body": body,
        "content": intent.content,
        "due_time": intent.due_time,
        "urgent": intent.urgent,
        "actionable": intent.actionable,
        "noteworthy": intent.noteworthy,
    }


def webhook_label(webhook: WebhookConfig) -> str:
    return f"webhook({webhook.provider})"


async def _run_command(cmd: List[str], timeout: float) -> None:
    proc = await asyncio.create_subprocess_exec(
        *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
    )
    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise DeliveryError("desktop", f"timed out after {timeout:.0f}s")
    if proc.returncode != 0:
        raise DeliveryError("desktop", stderr.decode("utf-8", "replace").strip()[:300] or f"exit {proc.returncode}")


async def send_desktop(title: str, body: str) -> None:
    """macOS osascript notification, notify-send on Linux.

    Raises:
        DeliveryError: no notifier available or the command failed
    """
    if sys.platform == "darwin":
        script = (
            f'display notification "{escape_applescript(body)}" '
            f'with title "{escape_applescript(title)}" sound name "Glass"'
        )
        await _run_command(["osascript", "-e", script], DESKTOP_TIMEOUT_S)
        return

    if shutil.which("notify-send"):
        await _run_command(["notify-send", title, body], DESKTOP_TIMEOUT_S)
        return

    raise DeliveryError("desktop", "no desktop notifier available on this platform")


class Notifier:
    """
    Parallel desktop/webhook dispatcher.

    Channel settings come from the live config on every call.
    """

    def __init__(
        self,
        config_store: Optional[ConfigStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        desktop_sender=send_desktop,
    ):
        self._config_store = config_store
        self._http_client = http_client
        self._desktop_sender = desktop_sender

    def _settings(self) -> NotificationConfig:
        if self._config_store is None:
            return NotificationConfig()
        return self._config_store.get().notification

    async def notify(self, intent: IntentResult, settings: Optional[NotificationConfig] = None) -> NotifyResult:
        settings = settings or self._settings()
        title, body = build_message(intent)
        result = NotifyResult()

        jobs = []
        labels = []
        if settings.desktop:
            jobs.append(self._desktop_sender(title, body))
            labels.append(("desktop", None))

        enabled = [w for w in settings.webhooks if w.enabled]
        client = self._http_client or httpx.AsyncClient(timeout=httpx.Timeout(WEBHOOK_TIMEOUT_S))
        try:
            for webhook in enabled:
                jobs.append(self._send_webhook(client, webhook, intent, title, body))
                labels.append(("webhook", webhook))

            outcomes = await asyncio.gather(*jobs, return_exceptions=True)
        finally:
            if self._http_client is None:
                await client.aclose()

        for (kind, webhook), outcome in zip(labels, outcomes):
            if isinstance(outcome, BaseException):
                message = str(outcome) or type(outcome).__name__
                result.errors.append(message)
                logger.warning("Notification failed: %s", message)
                continue
            if kind == "desktop":
                result.desktop = True
            else:
                result.webhooks.append(webhook.provider)

        logger.debug(
            "Notify done: desktop=%s webhooks=%s errors=%d",
            result.desktop, result.webhooks, len(result.errors),
        )
        return result

    async def _send_webhook(
        self,
        client: httpx.AsyncClient,
        webhook: WebhookConfig,
        intent: IntentResult,
        title: str,
        body: str,
    ) -> None:
        label = webhook_label(webhook)
        if webhook.provider == "telegram" and not webhook.chat_id:
            raise DeliveryError(label, "missing chat_id")

        payload = build_webhook_payload(webhook, intent, title, body)
        headers = {"Content-Type": "application/json", **webhook.headers}

        try:
            response = await client.post(webhook.url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise DeliveryError(label, f"request failed: {e}") from e

        if response.status_code >= 400:
            raise DeliveryError(label, f"HTTP {response.status_code}: {response.text[:300]}")

        logger.debug("Sent %s notification to %s", label, webhook.url)
