"""Unit tests for the default integration collaborators."""

import asyncio

import pytest

from pulse.exceptions import NotFound
from pulse.integrations import AllowAllAuthorizer, StaticResourceProvider, TcpConnectResourceTester
from pulse.scheduling.models import ResourceDescriptor


def tcp_resource(host="127.0.0.1", port=None) -> ResourceDescriptor:
    settings = {"host": host}
    if port is not None:
        settings["port"] = port
    return ResourceDescriptor(resource_id="local", settings=settings)


class TestStaticResourceProvider:

    @pytest.mark.asyncio
    async def test_register_and_lookup(self):
        provider = StaticResourceProvider()
        provider.register(tcp_resource(port=5432))

        assert (await provider.get_resource("local")).settings["port"] == 5432

        provider.unregister("local")
        with pytest.raises(NotFound):
            await provider.get_resource("local")


class TestTcpConnectResourceTester:

    @pytest.mark.asyncio
    async def test_open_port(self):
        server = await asyncio.start_server(lambda reader, writer: writer.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        try:
            result = await TcpConnectResourceTester().test_resource(tcp_resource(port=port))
        finally:
            server.close()
            await server.wait_closed()

        assert result.success
        assert result.server_info["port"] == port
        assert result.server_info["latency_ms"] >= 0

    @pytest.mark.asyncio
    async def test_closed_port(self):
        server = await asyncio.start_server(lambda reader, writer: writer.close(), "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()

        result = await TcpConnectResourceTester().test_resource(tcp_resource(port=port))

        assert not result.success
        assert result.error_code == "connection_refused"

    @pytest.mark.asyncio
    async def test_missing_settings(self):
        result = await TcpConnectResourceTester().test_resource(tcp_resource())

        assert not result.success
        assert result.error_code == "invalid_settings"


class TestAllowAllAuthorizer:

    @pytest.mark.asyncio
    async def test_grants_everything(self):
        assert await AllowAllAuthorizer().authorize("anyone", "schedule:write", None)
