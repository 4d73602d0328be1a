"""
Unit Tests for the External Service Clients

Tests the HTTP clients for query suggestion and email classification over a
mock transport:
- Successful responses parsed into suggestions, analysis and usage
- Transport failures, non-200 answers and non-JSON bodies surfaced as
  ExternalServiceError

Run with: pytest tests/test_precision_search_external.py -v
"""

import json

import httpx
import pytest

from precision_search.errors import ExternalServiceError
from precision_search.external import EmailClassifierClient, QuerySuggestionClient

from fakes import make_partner, make_transaction


def mock_http(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def raising(error_class, message):
    def handler(request: httpx.Request) -> httpx.Response:
        raise error_class(message, request=request)
    return handler


class TestQuerySuggestionClient:
    """Test the query suggestion client."""

    @pytest.mark.asyncio
    async def test_parses_queries_and_usage(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={"queries": ["amazon", 7, "from:amazon.de"], "usage": {"inputTokens": 12, "outputTokens": 3}},
            )

        client = QuerySuggestionClient("https://suggest.test/", token="svc-token", http_client=mock_http(handler))
        result = await client.suggest(make_transaction(), make_partner(name="Amazon", email_domains=["amazon.de"]))

        assert seen["url"] == "https://suggest.test/suggest"
        assert seen["auth"] == "Bearer svc-token"
        assert seen["body"]["transaction"]["name"] == "AMAZON EU SARL"
        assert seen["body"]["partner"]["emailDomains"] == ["amazon.de"]
        assert result.queries == ["amazon", "from:amazon.de"]
        assert (result.usage.calls, result.usage.total_tokens) == (1, 15)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error_class", [httpx.ReadError, httpx.RemoteProtocolError, httpx.ConnectError])
    async def test_transport_failure_raises_service_error(self, error_class):
        client = QuerySuggestionClient(
            "https://suggest.test", http_client=mock_http(raising(error_class, "connection reset"))
        )
        with pytest.raises(ExternalServiceError):
            await client.suggest(make_transaction())

    @pytest.mark.asyncio
    async def test_non_json_body_raises_service_error(self):
        client = QuerySuggestionClient(
            "https://suggest.test", http_client=mock_http(lambda request: httpx.Response(200, text="not json"))
        )
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.suggest(make_transaction())
        assert "Invalid JSON" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_error_status_raises_service_error(self):
        client = QuerySuggestionClient(
            "https://suggest.test", http_client=mock_http(lambda request: httpx.Response(503, text="overloaded"))
        )
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.suggest(make_transaction())
        assert "HTTP 503" in str(exc_info.value)


class TestEmailClassifierClient:
    """Test the email classification client."""

    @pytest.mark.asyncio
    async def test_parses_analysis(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/analyze-email"
            return httpx.Response(200, json={
                "hasInvoiceLink": True,
                "invoiceLinks": [{"url": "https://shop.example/inv/1", "anchorText": "Invoice"}, {"anchorText": "x"}],
                "isMailInvoice": True,
                "mailInvoiceConfidence": 0.82,
            })

        client = EmailClassifierClient("https://classify.test", http_client=mock_http(handler))
        analysis = await client.analyze("Order", "shop@shop.example", "<p>hi</p>", None, make_transaction())

        assert [link.url for link in analysis.invoice_links] == ["https://shop.example/inv/1"]
        assert analysis.has_invoice_link is True
        assert analysis.is_mail_invoice is True
        assert analysis.mail_invoice_confidence == pytest.approx(0.82)
        assert analysis.usage.calls == 1

    @pytest.mark.asyncio
    async def test_read_error_raises_service_error(self):
        client = EmailClassifierClient(
            "https://classify.test", http_client=mock_http(raising(httpx.ReadError, "connection reset"))
        )
        with pytest.raises(ExternalServiceError):
            await client.analyze("Order", "shop@shop.example", "<p>hi</p>", None, make_transaction())

    @pytest.mark.asyncio
    async def test_non_json_body_raises_service_error(self):
        client = EmailClassifierClient(
            "https://classify.test", http_client=mock_http(lambda request: httpx.Response(200, text="<html>"))
        )
        with pytest.raises(ExternalServiceError):
            await client.analyze("Order", "shop@shop.example", None, "hi", make_transaction())
