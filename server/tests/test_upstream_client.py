"""
Tests for the chart service HTTP client.

Uses httpx.MockTransport, so no request leaves the process.
"""

import json
import httpx
import pytest
from datetime import date

from natal_engine.config import UpstreamConfig
from natal_engine.errors import DecodingFailure, InvalidBirthInput, UnknownTimezone, UpstreamFailure
from natal_engine.models import HouseSystem
from natal_engine.upstream.client import ChartServiceClient, build_chart_request

SVG = '<svg xmlns="http://www.w3.org/2000/svg"></svg>'


def make_client(handler, **overrides):
    config = UpstreamConfig(
        base_url="https://charts.test/api/v3",
        api_key="secret",
        backoff_ms=10,
        **overrides,
    )
    delays = []

    async def sleep(seconds):
        delays.append(seconds)

    client = ChartServiceClient(config, transport=httpx.MockTransport(handler), sleep=sleep)
    return client, delays


class TestBuildChartRequest:
    """Tests for the request body."""

    def test_fields(self, birth_input):
        request = build_chart_request(birth_input, HouseSystem.KOCH)
        data = request.subject.birth_data

        assert request.subject.name == "Ada"
        assert (data.year, data.month, data.day) == (1990, 3, 15)
        assert (data.hour, data.minute, data.second) == (14, 30, 0)
        assert data.latitude == 51.5074
        assert data.city == "London"
        assert data.timezone == 0.0
        assert request.options.house_system == "K"

    def test_offset_follows_dst(self, other_birth_input):
        summer = build_chart_request(other_birth_input, HouseSystem.PLACIDUS)
        winter = build_chart_request(
            other_birth_input.model_copy(update={"birth_date": date(1985, 1, 4)}), HouseSystem.PLACIDUS
        )

        assert summer.subject.birth_data.timezone == -4.0
        assert winter.subject.birth_data.timezone == -5.0

    def test_fractional_offset(self, birth_input):
        request = build_chart_request(birth_input.model_copy(update={"timezone": "Asia/Kolkata"}),
                                      HouseSystem.PLACIDUS)
        assert request.subject.birth_data.timezone == 5.5

    def test_location_only(self, birth_input):
        request = build_chart_request(birth_input.model_copy(update={"coordinates": None}),
                                      HouseSystem.PLACIDUS)
        assert request.subject.birth_data.latitude is None
        assert request.subject.birth_data.city == "London"

    def test_neither_coordinates_nor_location(self, birth_input):
        with pytest.raises(InvalidBirthInput):
            build_chart_request(birth_input.model_copy(update={"coordinates": None, "location": " "}),
                                HouseSystem.PLACIDUS)

    def test_unknown_timezone(self, birth_input):
        with pytest.raises(UnknownTimezone):
            build_chart_request(birth_input.model_copy(update={"timezone": "Mars/Base"}),
                                HouseSystem.PLACIDUS)


class TestFetchChart:
    """Tests for chart requests and retries."""

    @pytest.mark.asyncio
    async def test_success(self, birth_input, upstream_payload):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=upstream_payload)

        client, delays = make_client(handler)
        body = await client.fetch_chart(birth_input)
        await client.aclose()

        assert body == upstream_payload
        assert delays == []
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/api/v3/charts/natal"
        assert request.headers["Authorization"] == "Bearer secret"
        assert json.loads(request.content)["subject"]["birth_data"]["timezone"] == 0.0

    @pytest.mark.asyncio
    async def test_no_api_key_no_auth_header(self, birth_input, upstream_payload):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=upstream_payload)

        config = UpstreamConfig(base_url="https://charts.test/api/v3")
        client = ChartServiceClient(config, transport=httpx.MockTransport(handler))
        await client.fetch_chart(birth_input)
        await client.aclose()

        assert "Authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_retries_server_errors_with_backoff(self, birth_input, upstream_payload):
        responses = [httpx.Response(503), httpx.Response(502), httpx.Response(200, json=upstream_payload)]

        client, delays = make_client(lambda request: responses.pop(0))
        body = await client.fetch_chart(birth_input)

        assert body == upstream_payload
        assert delays == [pytest.approx(0.01), pytest.approx(0.02)]

    @pytest.mark.asyncio
    async def test_retry_after_honoured(self, birth_input, upstream_payload):
        responses = [httpx.Response(503, headers={"Retry-After": "2"}), httpx.Response(200, json=upstream_payload)]

        client, delays = make_client(lambda request: responses.pop(0))
        await client.fetch_chart(birth_input)

        assert delays == [pytest.approx(2.0)]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self, birth_input):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": "bad subject"})

        client, delays = make_client(handler)
        with pytest.raises(UpstreamFailure, match="HTTP 400"):
            await client.fetch_chart(birth_input)

        assert len(calls) == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_quota_response_not_retried(self, birth_input):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, headers={"Retry-After": "30"})

        client, delays = make_client(handler)
        with pytest.raises(UpstreamFailure, match="HTTP 429"):
            await client.fetch_chart(birth_input)

        assert len(calls) == 1
        assert delays == []

    @pytest.mark.asyncio
    async def test_retries_pass_the_gate(self, birth_input):
        calls = []
        gate_calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        def gate(count):
            gate_calls.append(count)
            return len(gate_calls) < 2, 30.0

        client, _ = make_client(handler, max_attempts=5)
        client.retry_gate = gate
        with pytest.raises(UpstreamFailure):
            await client.fetch_chart(birth_input)

        # first retry allowed, second refused
        assert gate_calls == [1, 1]
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_attempts_exhausted(self, birth_input):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="maintenance")

        client, delays = make_client(handler, max_attempts=3)
        with pytest.raises(UpstreamFailure) as exc_info:
            await client.fetch_chart(birth_input)

        assert len(calls) == 3
        assert len(delays) == 2
        assert isinstance(exc_info.value.cause, httpx.HTTPStatusError)

    @pytest.mark.asyncio
    async def test_connection_errors_retried(self, birth_input, upstream_payload):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200, json=upstream_payload)

        client, delays = make_client(handler)
        assert await client.fetch_chart(birth_input) == upstream_payload
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_connection_errors_exhausted(self, birth_input):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client, _ = make_client(handler, max_attempts=2)
        with pytest.raises(UpstreamFailure) as exc_info:
            await client.fetch_chart(birth_input)

        assert isinstance(exc_info.value.cause, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_non_json_body(self, birth_input):
        client, _ = make_client(lambda request: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(DecodingFailure):
            await client.fetch_chart(birth_input)

    @pytest.mark.asyncio
    async def test_json_array_body(self, birth_input):
        client, _ = make_client(lambda request: httpx.Response(200, json=[1, 2, 3]))

        with pytest.raises(DecodingFailure):
            await client.fetch_chart(birth_input)


class TestFetchSvg:
    """Tests for the wheel image request."""

    @pytest.mark.asyncio
    async def test_svg_in_json(self, birth_input):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"svg": SVG})

        client, _ = make_client(handler)
        assert await client.fetch_svg(birth_input, theme="dark") == SVG

        assert seen[0].url.path == "/api/v3/charts/natal/svg"
        assert json.loads(seen[0].content)["svg_options"]["theme"] == "dark"

    @pytest.mark.asyncio
    async def test_bare_svg(self, birth_input):
        client, _ = make_client(
            lambda request: httpx.Response(200, text=SVG, headers={"Content-Type": "image/svg+xml"})
        )
        assert await client.fetch_svg(birth_input) == SVG

    @pytest.mark.asyncio
    async def test_not_an_image(self, birth_input):
        client, _ = make_client(lambda request: httpx.Response(200, json={"status": "ok"}))

        with pytest.raises(DecodingFailure):
            await client.fetch_svg(birth_input)
