"""Unit tests for the HTTP transport and endpoint registry."""

import httpx
import pytest

from crmsync.fetcher.transport import (
    ApiResponse,
    Endpoint,
    EndpointRegistry,
    HttpTransport,
    TransportError,
)


def make_transport(handler, **kwargs) -> HttpTransport:
    return HttpTransport(
        "https://api.example.com/v1",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestEndpointRegistry:

    def test_default_entity_types_registered(self):
        registry = EndpointRegistry()

        assert registry.supports("deals")
        assert registry.supports("person")
        assert registry.supports("/v1/organizations/4")
        assert not registry.supports("invoices")

    def test_goals_use_find_endpoint(self):
        assert EndpointRegistry().get("goals").path == "goals/find"

    def test_get_unknown_raises_key_error(self):
        with pytest.raises(KeyError):
            EndpointRegistry().get("invoices")

    def test_register_custom_endpoint(self):
        registry = EndpointRegistry([])
        registry.register(Endpoint("leads", "leads"))

        assert registry.entity_types() == ["leads"]

    def test_build_params_drops_unsupported(self):
        endpoint = Endpoint("users", "users", supports_sort=False, supports_pagination=False)
        params = endpoint.build_params({"start": 10, "limit": 50, "sort": "add_time ASC", "x": None})

        assert params == {"limit": 50}


class TestHttpTransport:

    @pytest.mark.asyncio
    async def test_call_outside_context_raises(self):
        transport = make_transport(lambda request: httpx.Response(200))

        with pytest.raises(RuntimeError):
            await transport.call("deals", {"limit": 1})

    @pytest.mark.asyncio
    async def test_success_decodes_envelope(self):
        seen = []

        def handler(request):
            seen.append(request.url)
            return httpx.Response(200, json={
                "success": True,
                "data": [{"id": 1}, {"id": 2}],
                "additional_data": {"pagination": {"more_items_in_collection": True}},
            })

        async with make_transport(handler, api_token="secret") as transport:
            response = await transport.call("deals", {"start": 0, "limit": 2, "sort": "add_time ASC"})

        assert response.success is True
        assert response.data == [{"id": 1}, {"id": 2}]
        assert response.more_items is True
        assert seen[0].path == "/v1/deals"
        assert seen[0].params["api_token"] == "secret"
        assert seen[0].params["limit"] == "2"

    @pytest.mark.asyncio
    async def test_unpaginated_endpoint_marks_response(self):
        seen = []

        def handler(request):
            seen.append(request.url)
            return httpx.Response(200, json={
                "success": True,
                "data": [{"id": 1}],
                "additional_data": {"pagination": {"more_items_in_collection": True}},
            })

        async with make_transport(handler) as transport:
            users = await transport.call("users", {"start": 10, "limit": 10, "sort": "add_time ASC"})
            deals = await transport.call("deals", {"start": 10, "limit": 10})

        assert users.paginated is False
        assert "start" not in seen[0].params
        assert deals.paginated is True

    @pytest.mark.asyncio
    async def test_single_object_data_becomes_list(self):
        def handler(request):
            return httpx.Response(200, json={"success": True, "data": {"id": 9, "title": "x"}})

        async with make_transport(handler) as transport:
            response = await transport.call("deals", {"limit": 1})

        assert response.data == [{"id": 9, "title": "x"}]
        assert response.more_items is None

    @pytest.mark.asyncio
    async def test_null_data_is_empty(self):
        def handler(request):
            return httpx.Response(200, json={"success": True, "data": None})

        async with make_transport(handler) as transport:
            response = await transport.call("deals", {"limit": 1})

        assert response.data == []

    @pytest.mark.asyncio
    async def test_error_status_returns_unsuccessful_response(self):
        def handler(request):
            return httpx.Response(429, json={"success": False, "error": "Too many"}, headers={"Retry-After": "5"})

        async with make_transport(handler) as transport:
            response = await transport.call("deals", {"limit": 1})

        assert response.success is False
        assert response.status_code == 429
        assert response.error == "Too many"
        assert response.headers["retry-after"] == "5"

    @pytest.mark.asyncio
    async def test_success_false_in_body_is_failure(self):
        def handler(request):
            return httpx.Response(200, json={"success": False, "error": "Item not found"})

        async with make_transport(handler) as transport:
            response = await transport.call("deals", {"limit": 1})

        assert response.success is False
        assert response.error == "Item not found"

    @pytest.mark.asyncio
    async def test_non_json_error_uses_reason_phrase(self):
        def handler(request):
            return httpx.Response(502, text="<html>bad gateway</html>")

        async with make_transport(handler) as transport:
            response = await transport.call("deals", {"limit": 1})

        assert response.success is False
        assert response.error == "Bad Gateway"

    @pytest.mark.asyncio
    async def test_network_errors_propagate(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with make_transport(handler) as transport:
            with pytest.raises(httpx.ConnectError):
                await transport.call("deals", {"limit": 1})

    @pytest.mark.asyncio
    async def test_client_closed_on_exit(self):
        transport = make_transport(lambda request: httpx.Response(200, json={"data": []}))
        async with transport:
            assert transport._client is not None
        assert transport._client is None


class TestTransportError:

    def test_from_response_keeps_status_and_headers(self):
        response = ApiResponse(status_code=503, success=False, headers={"x": "1"}, error="down")
        error = TransportError.from_response(response, "deals")

        assert str(error) == "down"
        assert error.status_code == 503
        assert error.headers == {"x": "1"}

    def test_from_response_without_error_message(self):
        error = TransportError.from_response(ApiResponse(status_code=500, success=False), "deals")
        assert "deals" in str(error)
