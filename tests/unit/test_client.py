# ABOUTME: Unit tests for the source host and target runtime HTTP clients
# ABOUTME: Tests request layout, authentication, status-code mapping, secret masking, and watch streams

import json

import httpx
import pytest
import respx
from pydantic import SecretStr

from gitops_reconciler.config import Endpoint
from gitops_reconciler.errors import (
    FileNotFound,
    RefNotFound,
    ResourceConflict,
    ResourceForbidden,
    ResourceNotFound,
    RuntimeUnavailable,
    SourceUnavailable,
)
from gitops_reconciler.interfaces import ChangeType
from gitops_reconciler.models import ResourceKey
from gitops_reconciler.utils.client import RuntimeClient, SourceClient, mask_secrets

SOURCE_URL = "https://git.example.com/api/v1"
RUNTIME_URL = "https://runtime.example.com/api/v1"


@pytest.fixture
def source_endpoint() -> Endpoint:
    return Endpoint(url="https://git.example.com", token=SecretStr("test-token"))


@pytest.fixture
def runtime_endpoint() -> Endpoint:
    return Endpoint(url="https://runtime.example.com", token=SecretStr("rt-token"), insecure=True)


@pytest.mark.unit
class TestMaskSecrets:
    """Tests for secret masking of error text."""

    def test_masks_token_and_bearer(self):
        """Test that token values and bearer credentials are scrubbed."""
        text = 'token="abc123" failed; Authorization: Bearer xyz789'

        masked = mask_secrets(text)

        assert "abc123" not in masked
        assert "xyz789" not in masked
        assert masked.count("***MASKED***") == 2

    def test_plain_text_unchanged(self):
        """Test that text without secrets is returned unchanged."""
        assert mask_secrets("deployment not found") == "deployment not found"


@pytest.mark.unit
class TestClientLifecycle:
    """Tests for context manager handling."""

    async def test_client_requires_context_manager(self, source_endpoint: Endpoint):
        """Test that using a client outside 'async with' raises RuntimeError."""
        client = SourceClient(source_endpoint)

        with pytest.raises(RuntimeError, match="Client not initialized"):
            await client.get_tree("team-web", "main")

    async def test_context_manager_closes_client(self, runtime_endpoint: Endpoint):
        """Test that the httpx client is closed on exit."""
        client = RuntimeClient(runtime_endpoint)

        async with client as entered:
            assert entered is client
            assert client._client is not None

        assert client._client is None


@pytest.mark.unit
class TestSourceClient:
    """Tests for SourceClient."""

    @respx.mock
    async def test_get_tree_resolves_revision(self, source_endpoint: Endpoint):
        """Test that a ref resolves to the revision id with a bearer token."""
        route = respx.get(f"{SOURCE_URL}/repos/team-web/refs/main").mock(
            return_value=httpx.Response(200, json={"revision": "9f1c2e3a4b5c"})
        )

        async with SourceClient(source_endpoint) as client:
            revision = await client.get_tree("team-web", "main")

        assert revision == "9f1c2e3a4b5c"
        assert route.calls[0].request.headers["Authorization"] == "Bearer test-token"

    @respx.mock
    async def test_get_tree_missing_ref(self, source_endpoint: Endpoint):
        """Test that a 404 on a ref lookup is RefNotFound."""
        respx.get(f"{SOURCE_URL}/repos/team-web/refs/nope").mock(
            return_value=httpx.Response(404, json={"message": "ref not found"})
        )

        async with SourceClient(source_endpoint) as client:
            with pytest.raises(RefNotFound, match="ref not found"):
                await client.get_tree("team-web", "nope")

    @respx.mock
    async def test_get_tree_empty_revision(self, source_endpoint: Endpoint):
        """Test that a response without a revision is RefNotFound."""
        respx.get(f"{SOURCE_URL}/repos/team-web/refs/main").mock(
            return_value=httpx.Response(200, json={})
        )

        async with SourceClient(source_endpoint) as client:
            with pytest.raises(RefNotFound):
                await client.get_tree("team-web", "main")

    @respx.mock
    async def test_get_file_returns_bytes(self, source_endpoint: Endpoint):
        """Test that a file is read at a revision as raw bytes."""
        respx.get(f"{SOURCE_URL}/repos/team-web/revisions/abc/files/base/app.yaml").mock(
            return_value=httpx.Response(200, content=b"kind: Service\n")
        )

        async with SourceClient(source_endpoint) as client:
            content = await client.get_file("team-web", "abc", "base/app.yaml")

        assert content == b"kind: Service\n"

    @respx.mock
    async def test_get_file_missing(self, source_endpoint: Endpoint):
        """Test that a 404 on a file read is FileNotFound."""
        respx.get(f"{SOURCE_URL}/repos/team-web/revisions/abc/files/missing.yaml").mock(
            return_value=httpx.Response(404, text="no such file")
        )

        async with SourceClient(source_endpoint) as client:
            with pytest.raises(FileNotFound):
                await client.get_file("team-web", "abc", "missing.yaml")

    @respx.mock
    async def test_server_error_is_unavailable(self, source_endpoint: Endpoint):
        """Test that a 5xx from the source host is SourceUnavailable with its status."""
        respx.get(f"{SOURCE_URL}/repos/team-web/refs/main").mock(
            return_value=httpx.Response(503, json={"error": "maintenance"})
        )

        async with SourceClient(source_endpoint) as client:
            with pytest.raises(SourceUnavailable) as exc_info:
                await client.get_tree("team-web", "main")

        assert exc_info.value.details["status_code"] == 503


@pytest.mark.unit
class TestRuntimeClient:
    """Tests for RuntimeClient."""

    @respx.mock
    async def test_list_resources(self, runtime_endpoint: Endpoint):
        """Test that resources are listed per scope and kind."""
        route = respx.get(f"{RUNTIME_URL}/resources").mock(
            return_value=httpx.Response(
                200, json={"items": [{"kind": "Service", "metadata": {"name": "web"}}]}
            )
        )

        async with RuntimeClient(runtime_endpoint) as client:
            items = await client.list_resources("default", "Service")

        assert items[0]["metadata"]["name"] == "web"
        assert route.calls[0].request.url.params["scope"] == "default"
        assert route.calls[0].request.url.params["kind"] == "Service"

    @respx.mock
    async def test_apply_puts_manifest(self, runtime_endpoint: Endpoint):
        """Test that apply PUTs the manifest to the resource path."""
        manifest = {"kind": "Service", "metadata": {"name": "web", "namespace": "default"}}
        route = respx.put(f"{RUNTIME_URL}/resources/Service/default/web").mock(
            return_value=httpx.Response(200, json=manifest)
        )

        async with RuntimeClient(runtime_endpoint) as client:
            await client.apply("default", manifest)

        assert json.loads(route.calls[0].request.content) == manifest

    @respx.mock
    async def test_cluster_scoped_path(self, runtime_endpoint: Endpoint):
        """Test that cluster-scoped resources use the _cluster segment."""
        route = respx.put(f"{RUNTIME_URL}/resources/Namespace/_cluster/prod").mock(
            return_value=httpx.Response(204)
        )

        async with RuntimeClient(runtime_endpoint) as client:
            await client.apply("prod", {"kind": "Namespace", "metadata": {"name": "prod"}})

        assert route.called

    @respx.mock
    async def test_delete(self, runtime_endpoint: Endpoint):
        """Test that delete sends DELETE to the resource path."""
        route = respx.delete(f"{RUNTIME_URL}/resources/Service/default/web").mock(
            return_value=httpx.Response(200)
        )

        async with RuntimeClient(runtime_endpoint) as client:
            await client.delete("default", ResourceKey("Service", "default", "web"))

        assert route.called

    @pytest.mark.parametrize(
        ("status_code", "error"),
        [
            (403, ResourceForbidden),
            (404, ResourceNotFound),
            (409, ResourceConflict),
            (500, RuntimeUnavailable),
        ],
    )
    @respx.mock
    async def test_status_mapping(self, runtime_endpoint: Endpoint, status_code, error):
        """Test that runtime status codes map to the reconciler's exceptions."""
        respx.delete(f"{RUNTIME_URL}/resources/Service/default/web").mock(
            return_value=httpx.Response(status_code, json={"message": "rejected"})
        )

        async with RuntimeClient(runtime_endpoint) as client:
            with pytest.raises(error, match="rejected"):
                await client.delete("default", ResourceKey("Service", "default", "web"))

    @respx.mock
    async def test_error_message_masked(self, runtime_endpoint: Endpoint):
        """Test that secrets echoed in an error body are masked."""
        respx.get(f"{RUNTIME_URL}/resources").mock(
            return_value=httpx.Response(401, text="invalid token=rt-token")
        )

        async with RuntimeClient(runtime_endpoint) as client:
            with pytest.raises(RuntimeUnavailable) as exc_info:
                await client.list_resources("default", "Service")

        assert "rt-token" not in exc_info.value.message

    @respx.mock
    async def test_watch_streams_events(self, runtime_endpoint: Endpoint):
        """Test that NDJSON watch lines become change events and bad lines are skipped."""
        added = {"kind": "Service", "metadata": {"name": "a"}}
        deleted = {"kind": "Service", "metadata": {"name": "b"}}
        lines = [
            json.dumps({"type": "ADDED", "object": added}),
            "",
            "not json",
            json.dumps({"type": "DELETED", "object": deleted}),
        ]
        respx.get(f"{RUNTIME_URL}/watch").mock(
            return_value=httpx.Response(200, content="\n".join(lines).encode())
        )

        async with RuntimeClient(runtime_endpoint) as client:
            events = [event async for event in client.watch("default")]

        assert [(e.type, e.object["metadata"]["name"]) for e in events] == [
            (ChangeType.ADDED, "a"),
            (ChangeType.DELETED, "b"),
        ]
        assert all(e.scope == "default" for e in events)

    @respx.mock
    async def test_watch_error_status(self, runtime_endpoint: Endpoint):
        """Test that a refused watch raises the mapped error."""
        respx.get(f"{RUNTIME_URL}/watch").mock(return_value=httpx.Response(403))

        async with RuntimeClient(runtime_endpoint) as client:
            with pytest.raises(ResourceForbidden):
                async for _ in client.watch("default"):
                    pass
