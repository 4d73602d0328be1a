"""
Unit Tests for the Rate-Limited Mail Client

Tests:
- Request spacing between outbound calls
- Gmail REST calls (search, message, attachment) over a mock transport
- Credential failures surfaced as MailboxAuthError
- Mailbox selection and needs_reauth marking

Run with: pytest tests/test_precision_search_mail_client.py -v
"""

import pytest
from datetime import datetime, timedelta, timezone

import httpx

from precision_search.errors import MailApiError, MailboxAuthError
from precision_search.mail_client import (
    TOKEN_EXPIRED_ERROR,
    GmailClient,
    MailboxClientFactory,
    RequestSpacer,
)
from precision_search.models import Collection
from precision_search.repository import InMemoryRepository

from fakes import OWNER, b64url, make_mailbox, make_message, seed


def make_spacer(delay=0.2):
    """Spacer on a frozen clock; sleeps are recorded instead of awaited."""
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    spacer = RequestSpacer(delay=delay, jitter=0, clock=lambda: 100.0, sleep=fake_sleep)
    return spacer, slept


def make_client(handler, mailbox=None, spacer=None):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GmailClient(
        mailbox or make_mailbox(id="mb-1", access_token="secret-token"),
        spacer or RequestSpacer(delay=0, jitter=0),
        base_url="https://mail.test/v1",
        http_client=http_client,
    )


class TestRequestSpacer:
    """Test outbound call spacing."""

    @pytest.mark.asyncio
    async def test_first_call_does_not_wait(self):
        spacer, slept = make_spacer()
        await spacer.wait()
        assert slept == []
        assert spacer.calls == 1

    @pytest.mark.asyncio
    async def test_subsequent_calls_wait_for_delay(self):
        spacer, slept = make_spacer(delay=0.2)
        await spacer.wait()
        await spacer.wait()
        await spacer.wait()
        assert slept == [pytest.approx(0.2), pytest.approx(0.2)]
        assert spacer.calls == 3


class TestGmailClient:
    """Test the REST client against a mock transport."""

    @pytest.mark.asyncio
    async def test_search_returns_ids_and_sends_bearer_token(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["q"] = request.url.params.get("q")
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json={
                "messages": [{"id": "m1"}, {"id": "m2"}],
                "nextPageToken": "page-2",
                "resultSizeEstimate": 7,
            })

        client = make_client(handler)
        result = await client.search("amazon has:attachment", max_results=5)

        assert result.message_ids == ["m1", "m2"]
        assert result.next_page_token == "page-2"
        assert result.estimated_total == 7
        assert seen["path"] == "/v1/messages"
        assert seen["q"] == "amazon has:attachment"
        assert seen["auth"] == "Bearer secret-token"

    @pytest.mark.asyncio
    async def test_empty_search(self):
        client = make_client(lambda request: httpx.Response(200, json={"resultSizeEstimate": 0}))
        result = await client.search("nothing")
        assert result.message_ids == []
        assert result.next_page_token is None

    @pytest.mark.asyncio
    async def test_get_message_requests_full_format(self):
        message = make_message("m1")

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/messages/m1"
            assert request.url.params.get("format") == "full"
            return httpx.Response(200, json=message)

        client = make_client(handler)
        assert await client.get_message("m1") == message

    @pytest.mark.asyncio
    async def test_get_attachment_decodes_base64url(self):
        payload = b"%PDF-1.4 fake invoice"

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/messages/m1/attachments/att-1"
            return httpx.Response(200, json={"data": b64url(payload), "size": len(payload)})

        client = make_client(handler)
        assert await client.get_attachment("m1", "att-1") == payload

    @pytest.mark.asyncio
    async def test_attachment_without_data_raises(self):
        client = make_client(lambda request: httpx.Response(200, json={"size": 0}))
        with pytest.raises(MailApiError):
            await client.get_attachment("m1", "att-1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [401, 403])
    async def test_credential_failure_raises_auth_error(self, status_code):
        client = make_client(lambda request: httpx.Response(status_code, json={"error": "denied"}))
        with pytest.raises(MailboxAuthError) as exc_info:
            await client.search("amazon")
        assert exc_info.value.status_code == status_code

    @pytest.mark.asyncio
    async def test_server_error_raises_api_error(self):
        client = make_client(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(MailApiError) as exc_info:
            await client.get_message("m1")
        assert not isinstance(exc_info.value, MailboxAuthError)
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_connect_error_raises_api_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler)
        with pytest.raises(MailApiError):
            await client.search("amazon")

    @pytest.mark.asyncio
    async def test_read_error_raises_api_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadError("connection reset", request=request)

        client = make_client(handler)
        with pytest.raises(MailApiError) as exc_info:
            await client.search("amazon")
        assert "connection reset" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_json_body_raises_api_error(self):
        client = make_client(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        with pytest.raises(MailApiError) as exc_info:
            await client.get_message("m1")
        assert exc_info.value.status_code == 200

    @pytest.mark.asyncio
    async def test_every_call_goes_through_the_spacer(self):
        spacer = RequestSpacer(delay=0, jitter=0)
        client = make_client(lambda request: httpx.Response(200, json={}), spacer=spacer)

        await client.search("a")
        await client.search("b")

        assert spacer.calls == 2


class TestMailboxClientFactory:
    """Test mailbox selection and reauth handling."""

    @pytest.mark.asyncio
    async def test_opens_only_usable_mailboxes(self):
        repository = InMemoryRepository()
        now = datetime.now(timezone.utc)
        await seed(
            repository,
            Collection.MAILBOXES,
            make_mailbox(id="active"),
            make_mailbox(id="inactive", is_active=False),
            make_mailbox(id="reauth", needs_reauth=True),
            make_mailbox(id="other-owner", owner_id="user-2"),
            make_mailbox(id="fresh", expires_at=now + timedelta(hours=1)),
        )
        factory = MailboxClientFactory(repository, RequestSpacer(delay=0, jitter=0))

        clients = await factory.open_mailboxes(OWNER)

        assert sorted(c.mailbox.id for c in clients) == ["active", "fresh"]

    @pytest.mark.asyncio
    async def test_expired_token_marks_needs_reauth(self):
        repository = InMemoryRepository()
        expired = make_mailbox(id="expired", expires_at=datetime.now(timezone.utc) - timedelta(minutes=5))
        await seed(repository, Collection.MAILBOXES, expired)
        factory = MailboxClientFactory(repository, RequestSpacer(delay=0, jitter=0))

        clients = await factory.open_mailboxes(OWNER)

        assert clients == []
        stored = await repository.get(Collection.MAILBOXES, "expired")
        assert stored.needs_reauth is True
        assert stored.last_error == TOKEN_EXPIRED_ERROR
        assert factory.is_disabled("expired") is True

    @pytest.mark.asyncio
    async def test_mark_needs_reauth_skips_mailbox_for_rest_of_run(self):
        repository = InMemoryRepository()
        mailbox = make_mailbox(id="mb-1")
        await seed(repository, Collection.MAILBOXES, mailbox)
        factory = MailboxClientFactory(repository, RequestSpacer(delay=0, jitter=0))

        await factory.mark_needs_reauth(mailbox, "HTTP 401")

        assert factory.is_disabled("mb-1") is True
        assert await factory.open_mailboxes(OWNER) == []
        stored = await repository.get(Collection.MAILBOXES, "mb-1")
        assert stored.last_error == "HTTP 401"

    @pytest.mark.asyncio
    async def test_limits_number_of_mailboxes(self):
        repository = InMemoryRepository()
        await seed(repository, Collection.MAILBOXES, *[make_mailbox(id=f"mb-{i}") for i in range(4)])
        factory = MailboxClientFactory(repository, RequestSpacer(delay=0, jitter=0), max_mailboxes=2)

        clients = await factory.open_mailboxes(OWNER)

        assert len(clients) == 2
