"""
Precision Search - Rate-Limited Mail Client

Wraps the remote mailbox REST API (Gmail v1):
- search(query, max_results) -> message ids + next page token
- get_message(id) -> full message (headers, multipart body tree)
- get_attachment(message_id, attachment_id) -> raw bytes

Rate limiting:
- Every outbound call waits until a fixed delay plus random jitter has
  passed since the previous call
- One RequestSpacer is shared by all mailbox clients of an invocation

Security:
- Access tokens and message contents are never logged
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from .audit import AuditEventType, log_precision_search_event
from .email_parsing import decode_base64url
from .errors import MailApiError, MailboxAuthError
from .models import Collection, Mailbox
from .repository import Repository, Update

logger = logging.getLogger(__name__)

TOKEN_EXPIRED_ERROR = "Access token expired"


@dataclass
class SearchResult:
    message_ids: List[str] = field(default_factory=list)
    next_page_token: Optional[str] = None
    estimated_total: int = 0


class RequestSpacer:
    """
    Enforces a minimum spacing between outbound calls.

    The lock serializes callers so concurrent tasks cannot burst past the
    remote API's rate limit.
    """

    def __init__(
        self,
        delay: float = 0.2,
        jitter: float = 0.05,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.delay = delay
        self.jitter = jitter
        self._clock = clock
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._last_call: Optional[float] = None
        self.calls = 0

    async def wait(self):
        async with self._lock:
            if self._last_call is not None:
                spacing = self.delay + random.uniform(0, self.jitter)
                remaining = self._last_call + spacing - self._clock()
                if remaining > 0:
                    await self._sleep(remaining)
            self._last_call = self._clock()
            self.calls += 1


class MailClient:
    """Interface shared by the REST client and test doubles."""

    def __init__(self, mailbox: Mailbox):
        self.mailbox = mailbox

    async def search(self, query: str, max_results: int = 20, page_token: Optional[str] = None) -> SearchResult:
        raise NotImplementedError

    async def get_message(self, message_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        raise NotImplementedError


class GmailClient(MailClient):
    """Mailbox client over the Gmail REST API."""

    def __init__(
        self,
        mailbox: Mailbox,
        spacer: RequestSpacer,
        base_url: str = "https://gmail.googleapis.com/gmail/v1/users/me",
        timeout: int = 30,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(mailbox)
        self.spacer = spacer
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http_client = http_client

    async def search(self, query: str, max_results: int = 20, page_token: Optional[str] = None) -> SearchResult:
        params: Dict[str, Any] = {"q": query, "maxResults": max_results}
        if page_token:
            params["pageToken"] = page_token
        data = await self._get("/messages", params)
        return SearchResult(
            message_ids=[m["id"] for m in data.get("messages") or [] if m.get("id")],
            next_page_token=data.get("nextPageToken"),
            estimated_total=int(data.get("resultSizeEstimate") or 0),
        )

    async def get_message(self, message_id: str) -> Dict[str, Any]:
        return await self._get(f"/messages/{message_id}", {"format": "full"})

    async def get_attachment(self, message_id: str, attachment_id: str) -> bytes:
        data = await self._get(f"/messages/{message_id}/attachments/{attachment_id}", None)
        encoded = data.get("data")
        if not encoded:
            raise MailApiError(f"Attachment {attachment_id} of message {message_id} has no data")
        return decode_base64url(encoded)

    async def _get(self, path: str, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        await self.spacer.wait()
        headers = {"Authorization": f"Bearer {self.mailbox.access_token or ''}"}
        url = f"{self.base_url}{path}"

        try:
            if self._http_client is not None:
                response = await self._http_client.get(url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, params=params, headers=headers)
        except httpx.TimeoutException as e:
            raise MailApiError(f"Mailbox API timed out on {path}") from e
        except httpx.ConnectError as e:
            raise MailApiError(f"Mailbox API unreachable: {e}") from e
        except httpx.RequestError as e:
            raise MailApiError(f"Mailbox API request failed on {path}: {e}") from e

        if response.status_code in (401, 403):
            raise MailboxAuthError(
                f"Mailbox {self.mailbox.id} rejected credentials (HTTP {response.status_code})",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise MailApiError(
                f"HTTP {response.status_code} from mailbox API on {path}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise MailApiError(f"Invalid JSON from mailbox API on {path}", status_code=response.status_code) from e


class MailboxClientFactory:
    """
    Opens clients for an owner's usable mailboxes.

    Mailboxes whose token has expired, or that reject credentials during a
    run, are flagged `needs_reauth` and skipped for the rest of the run.
    """

    def __init__(
        self,
        repository: Repository,
        spacer: RequestSpacer,
        base_url: str = "https://gmail.googleapis.com/gmail/v1/users/me",
        timeout: int = 30,
        max_mailboxes: int = 5,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.repository = repository
        self.spacer = spacer
        self.base_url = base_url
        self.timeout = timeout
        self.max_mailboxes = max_mailboxes
        self.http_client = http_client
        self._disabled: set = set()

    def create_client(self, mailbox: Mailbox) -> MailClient:
        return GmailClient(
            mailbox,
            self.spacer,
            base_url=self.base_url,
            timeout=self.timeout,
            http_client=self.http_client,
        )

    async def open_mailboxes(self, owner_id: str) -> List[MailClient]:
        mailboxes = await self.repository.query(
            Collection.MAILBOXES,
            [("owner_id", "==", owner_id), ("is_active", "==", True), ("needs_reauth", "==", False)],
            limit=self.max_mailboxes,
        )

        now = datetime.now(timezone.utc)
        clients = []
        for mailbox in mailboxes:
            if mailbox.id in self._disabled:
                continue
            if mailbox.expires_at is not None and mailbox.expires_at < now:
                await self.mark_needs_reauth(mailbox, TOKEN_EXPIRED_ERROR)
                continue
            clients.append(self.create_client(mailbox))
        return clients

    def is_disabled(self, mailbox_id: str) -> bool:
        return mailbox_id in self._disabled

    async def mark_needs_reauth(self, mailbox: Mailbox, error: str):
        self._disabled.add(mailbox.id)
        await self.repository.atomic_write([
            Update(Collection.MAILBOXES, mailbox.id, {"needs_reauth": True, "last_error": error}),
        ])
        log_precision_search_event(
            AuditEventType.MAILBOX_NEEDS_REAUTH,
            user_id=mailbox.owner_id,
            details={"mailbox_id": mailbox.id, "error": error},
            success=False,
        )
