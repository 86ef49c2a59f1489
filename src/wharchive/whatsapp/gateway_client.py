"""History fetch and text sending over the Evolution API.

Security: NEVER log JIDs or message text. Only log counts and instance.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Protocol

import requests

from wharchive.domain.errors import ArchiveError, TransientGatewayError
from wharchive.domain.models import AckState
from wharchive.infra.time import to_epoch_seconds, utc_now
from wharchive.observability.logging import get_logger
from wharchive.observability.redaction import id_prefix, safe_log_context

from .evolution_adapter import InvalidPayloadError, parse_message
from .models import InboundMessage

logger = get_logger(__name__)

DEFAULT_HTTP_TIMEOUT = 30
DEFAULT_PAGE_SIZE = 50
# Typing indicator shown before a sent message lands
SEND_DELAY_MS = 1200


class GatewayRequestError(ArchiveError):
    """Gateway rejected the request (4xx). Not retried."""

    pass


@dataclass(frozen=True)
class HistoryPage:
    records: list[InboundMessage] = field(default_factory=list)
    next_cursor: int | None = None


class HistoryGateway(Protocol):
    def fetch_page(
        self,
        instance_name: str,
        window_from: datetime | None,
        window_to: datetime,
        cursor: int | None = None,
    ) -> HistoryPage:
        """Fetch one page of history. cursor=None starts at the first page."""
        ...


class MessageGateway(Protocol):
    def send_text(self, instance_name: str, number: str, text: str) -> InboundMessage:
        """Send a text message and return the gateway's record of it."""
        ...


class WhatsAppGateway(HistoryGateway, MessageGateway, Protocol):
    pass


def _get_config() -> dict[str, Any]:
    """Get Evolution API config from environment.

    Required env vars:
    - EVOLUTION_API_URL: Base URL (e.g., http://localhost:8080)
    - EVOLUTION_API_KEY: API token

    Optional:
    - EVOLUTION_HTTP_TIMEOUT: Request timeout in seconds (default: 30)
    - EVOLUTION_PAGE_SIZE: Records per history page (default: 50)
    """
    base_url = os.environ.get("EVOLUTION_API_URL", "")
    api_key = os.environ.get("EVOLUTION_API_KEY", "")

    if not base_url or not api_key:
        raise RuntimeError("Missing Evolution config: EVOLUTION_API_URL, EVOLUTION_API_KEY")

    return {
        "base_url": base_url.rstrip("/"),
        "api_key": api_key,
        "timeout": float(os.environ.get("EVOLUTION_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)),
        "page_size": int(os.environ.get("EVOLUTION_PAGE_SIZE", DEFAULT_PAGE_SIZE)),
    }


class EvolutionGateway:
    """WhatsAppGateway over Evolution's /chat/findMessages and /message/sendText."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        page_size: int = DEFAULT_PAGE_SIZE,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.page_size = page_size
        self._http = session or requests.Session()
        self._http.headers.update({"apikey": api_key, "Content-Type": "application/json"})

    @classmethod
    def from_env(cls) -> "EvolutionGateway":
        config = _get_config()
        return cls(
            config["base_url"],
            config["api_key"],
            timeout=config["timeout"],
            page_size=config["page_size"],
        )

    def fetch_page(
        self,
        instance_name: str,
        window_from: datetime | None,
        window_to: datetime,
        cursor: int | None = None,
    ) -> HistoryPage:
        """Fetch one page of messages with window_from < timestamp <= window_to.

        Raises:
            TransientGatewayError: On network errors, timeouts, 429 and 5xx.
            GatewayRequestError: On other non-2xx answers.
        """
        page = cursor or 1
        timestamp_filter: dict[str, int] = {"lte": to_epoch_seconds(window_to)}
        if window_from is not None:
            timestamp_filter["gt"] = to_epoch_seconds(window_from)

        body = {
            "where": {"messageTimestamp": timestamp_filter},
            "page": page,
            "offset": self.page_size,
        }
        payload = self._post(f"chat/findMessages/{instance_name}", body)

        raw_records, next_cursor = _unwrap(payload, page)
        records = _parse_records(raw_records, window_from, window_to)

        logger.info(
            "history page fetched",
            extra={
                "extra_fields": safe_log_context(
                    instance=instance_name,
                    page=page,
                    received=len(raw_records),
                    kept=len(records),
                    has_more=next_cursor is not None,
                )
            },
        )
        return HistoryPage(records=records, next_cursor=next_cursor)

    def send_text(self, instance_name: str, number: str, text: str) -> InboundMessage:
        """Send a text message to number (a full JID).

        Sends are never retried here: a timeout may still have delivered.

        Raises:
            TransientGatewayError: On network errors, timeouts, 429 and 5xx.
            GatewayRequestError: On other non-2xx answers, or an answer
                without a message key.
        """
        body = {
            "number": number,
            "options": {"delay": SEND_DELAY_MS, "presence": "composing"},
            "textMessage": {"text": text},
        }
        payload = self._post(f"message/sendText/{instance_name}", body)
        sent = _sent_record(payload, number, text)

        logger.info(
            "text message sent",
            extra={
                "extra_fields": safe_log_context(
                    instance=instance_name,
                    message_ref=id_prefix(sent.external_id),
                )
            },
        )
        return sent

    def _post(self, path: str, body: dict[str, Any]) -> Any:
        url = f"{self.base_url}/{path}"
        try:
            response = self._http.post(url, json=body, timeout=self.timeout)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise TransientGatewayError(f"gateway unreachable: {type(e).__name__}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientGatewayError(f"gateway answered {response.status_code}")
        if response.status_code >= 400:
            raise GatewayRequestError(f"gateway answered {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise TransientGatewayError("gateway returned invalid JSON") from e


def _sent_record(payload: Any, number: str, text: str) -> InboundMessage:
    """Normalize a sendText answer into an outbound record.

    Older builds omit the content and timestamp; the sent text and the
    local clock fill in.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("key"), dict):
        raise GatewayRequestError("gateway answered without a message key")

    record = dict(payload)
    record["key"] = {"remoteJid": number, **payload["key"], "fromMe": True}
    if not isinstance(record.get("message"), dict):
        record["message"] = {"conversation": text}
    if record.get("messageTimestamp") is None:
        record["messageTimestamp"] = to_epoch_seconds(utc_now())

    try:
        sent = parse_message(record, default_ack=AckState.SERVER)
    except InvalidPayloadError as e:
        raise GatewayRequestError("gateway answered with an invalid message") from e
    if not sent.body:
        sent = replace(sent, body=text)
    return sent


def _unwrap(payload: Any, page: int) -> tuple[list[Any], int | None]:
    """Extract (records, next page) from the shapes Evolution versions return."""
    if isinstance(payload, list):
        return payload, None
    if not isinstance(payload, dict):
        return [], None

    messages = payload.get("messages", payload)
    if isinstance(messages, list):
        return messages, None
    if not isinstance(messages, dict):
        return [], None

    records = messages.get("records") or []
    pages = messages.get("pages") or 0
    current = messages.get("currentPage") or page
    next_cursor = current + 1 if isinstance(pages, int) and current < pages else None
    return records, next_cursor


def _parse_records(
    raw_records: list[Any],
    window_from: datetime | None,
    window_to: datetime,
) -> list[InboundMessage]:
    # Older gateway builds ignore the where-clause, so the window is re-applied
    records = []
    skipped = 0
    for raw in raw_records:
        try:
            message = parse_message(raw, default_ack=AckState.READ)
        except InvalidPayloadError:
            skipped += 1
            continue
        if message.timestamp > window_to:
            continue
        if window_from is not None and message.timestamp <= window_from:
            continue
        records.append(message)

    if skipped:
        logger.warning(
            "history records skipped",
            extra={"extra_fields": safe_log_context(skipped=skipped)},
        )
    return records
