"""
Tests for the connector and image routers.

Both routers are mounted on a bare FastAPI app with the shared error
handlers; the controller and the registry manager are mocks on app.state.
Every response must use the envelope, and every failure the HTTP status of
its error category.
"""

import os

import pytest
from unittest.mock import AsyncMock, Mock, patch
from fastapi import FastAPI
from fastapi.testclient import TestClient

pytest.importorskip("kubernetes")

from ocf.errors import (
    PermanentItemError,
    PodFailedError,
    PodNotFoundError,
    RegistryError,
    TagNotFoundError,
)
from ocf.routers import connectors, images
from ocf.routers.common import register_error_handlers
from ocf.routers.images import save_upload
from ocf.schemas import (
    ConnectorAddress,
    DeployedConnector,
    ImageRecord,
    KeepAliveTicket,
)


@pytest.fixture
def controller():
    controller = Mock()
    controller.request_install = Mock(side_effect=lambda name, image, ttl: DeployedConnector(
        connector=name, pod_name="foo-2c26b46b", image=image, ttl_seconds=ttl or 1800
    ))
    controller.request_uninstall = Mock(side_effect=lambda pod_name, connector=None: pod_name)
    controller.wait_ready = AsyncMock(
        return_value=ConnectorAddress(pod_name="foo-2c26b46b", address="10-0-0-5.ocf.pod:8080")
    )
    controller.refresh = AsyncMock(
        return_value=KeepAliveTicket(ticket="foo-2c26b46b", execution_date=1700001800)
    )
    return controller


@pytest.fixture
def registry():
    registry = Mock()
    record = ImageRecord(tag="v1", digest="sha256:76a5", reference="registry.test/ocf:v1")
    registry.install = AsyncMock(return_value=record)
    registry.install_archive = AsyncMock(return_value=record)
    registry.uninstall = AsyncMock(return_value=True)
    registry.list_images = AsyncMock(return_value=[record])
    registry.get_image = AsyncMock(return_value=record)
    return registry


@pytest.fixture
def client(controller, registry):
    app = FastAPI()
    app.include_router(connectors.router)
    app.include_router(images.router)
    register_error_handlers(app)
    app.state.controller = controller
    app.state.registry = registry
    return TestClient(app)


@pytest.mark.unit
class TestConnectorRoutes:
    """Test the Connector Manager endpoints."""

    def test_deploy_with_tag(self, client, controller):
        response = client.post("/deploy", params={"name": "foo", "tag": "v1"})

        assert response.status_code == 200
        body = response.json()
        assert body["error"] is None
        assert body["payload"]["kind"] == "DeployedConnector"
        assert body["payload"]["object"]["pod_name"] == "foo-2c26b46b"
        controller.request_install.assert_called_once_with("foo", "registry.kurl/ocf:v1", None)

    def test_deploy_with_image_and_ttl(self, client, controller):
        response = client.post("/deploy", params={"name": "foo", "image": "docker.io/a/b:v2", "ttl": 60})

        assert response.status_code == 200
        controller.request_install.assert_called_once_with("foo", "docker.io/a/b:v2", 60)

    def test_deploy_without_image(self, client):
        response = client.post("/deploy", params={"name": "foo"})

        assert response.status_code == 400
        assert response.json() == {
            "payload": None,
            "error": {"category": "invalid_request", "message": "either tag or image is required"},
        }

    def test_missing_parameter(self, client):
        response = client.post("/deploy")

        assert response.status_code == 400
        assert response.json()["error"]["category"] == "invalid_request"

    def test_wait(self, client, controller):
        response = client.get("/wait", params={"id": "foo-2c26b46b"})

        assert response.status_code == 200
        assert response.json()["payload"] == {
            "kind": "ConnectorAddress",
            "object": {
                "pod_name": "foo-2c26b46b",
                "address": "10-0-0-5.ocf.pod:8080",
                "keep_alive": {"ticket": "foo-2c26b46b", "execution_date": 1700001800},
            },
        }
        controller.wait_ready.assert_awaited_once_with("foo-2c26b46b")
        controller.refresh.assert_awaited_once_with("foo-2c26b46b")

    def test_wait_for_crashed_connector(self, client, controller):
        controller.wait_ready.side_effect = PodFailedError("foo-2c26b46b", "crashed", "CrashLoopBackOff")

        response = client.get("/wait", params={"id": "foo-2c26b46b"})

        assert response.status_code == 400
        assert "crashed" in response.json()["error"]["message"]
        controller.refresh.assert_not_awaited()

    def test_wait_for_unknown_connector(self, client, controller):
        controller.wait_ready.side_effect = PodNotFoundError("connector pod foo-2c26b46b not found")

        response = client.get("/wait", params={"id": "foo-2c26b46b"})

        assert response.status_code == 404
        assert response.json()["error"]["category"] == "not_found"

    def test_refresh(self, client, controller):
        response = client.post("/refresh", params={"ticket": "foo-2c26b46b"})

        assert response.status_code == 200
        assert response.json()["payload"]["object"] == {"ticket": "foo-2c26b46b", "execution_date": 1700001800}

    def test_delete_by_name(self, client, controller):
        response = client.delete("/delete", params={"name": "foo"})

        assert response.status_code == 200
        assert response.json()["payload"]["object"] == {"pod_name": "foo-2c26b46b"}
        controller.request_uninstall.assert_called_once_with("foo-2c26b46b", connector="foo")

    def test_delete_by_pod_name(self, client, controller):
        response = client.delete("/delete", params={"id": "foo-2c26b46b"})

        assert response.status_code == 200
        controller.request_uninstall.assert_called_once_with("foo-2c26b46b", connector=None)

    def test_delete_needs_identifier(self, client):
        response = client.delete("/delete")
        assert response.status_code == 400


@pytest.mark.unit
class TestImageRoutes:
    """Test the Image Manager endpoints."""

    def test_install_reference(self, client, registry):
        response = client.post("/install", params={"reference": "docker.io/test/tennis:v1"})

        assert response.status_code == 200
        assert response.json()["payload"]["kind"] == "ImageRecord"
        registry.install.assert_awaited_once_with("docker.io/test/tennis:v1")

    def test_install_upload(self, client, registry):
        response = client.post(
            "/install",
            files={"file": ("image.tar", b"not really a tarball", "application/x-tar")},
        )

        assert response.status_code == 200
        path = registry.install_archive.await_args.args[0]
        assert os.path.basename(path).startswith("ocf-upload-")
        # The upload is removed once installed
        assert not os.path.exists(path)

    def test_install_needs_input(self, client):
        response = client.post("/install")

        assert response.status_code == 400
        assert response.json()["error"]["category"] == "invalid_request"

    def test_uninstall(self, client, registry):
        response = client.delete("/uninstall", params={"tag": "v1"})

        assert response.status_code == 200
        assert response.json()["payload"] == {
            "kind": "UninstalledImage",
            "object": {"tag": "v1", "deleted": True},
        }

    def test_list(self, client):
        response = client.get("/list")

        payload = response.json()["payload"]
        assert payload["kind"] == "ImageList"
        assert payload["object"][0]["tag"] == "v1"

    def test_get_missing_tag(self, client, registry):
        registry.get_image.side_effect = TagNotFoundError("v9")

        response = client.get("/get", params={"tag": "v9"})

        assert response.status_code == 404
        assert response.json()["error"] == {"category": "not_found", "message": "tag v9 not found"}

    def test_registry_unavailable(self, client, registry):
        registry.install.side_effect = RegistryError("push failed: registry or runtime unavailable")

        response = client.post("/install", params={"reference": "docker.io/test/tennis:v1"})

        assert response.status_code == 503
        assert response.json()["error"]["category"] == "backend_unavailable"


@pytest.mark.unit
class TestSaveUpload:
    """Test streaming uploads to disk."""

    @pytest.mark.asyncio
    async def test_open_failure_is_not_masked(self, tmp_path):
        """If the file cannot be created, the original error surfaces."""
        upload = Mock()
        upload.read = AsyncMock(return_value=b"")

        with patch("ocf.routers.images.aiofiles.open", side_effect=PermissionError("read-only upload dir")):
            with pytest.raises(PermissionError):
                await save_upload(upload, max_bytes=1024, directory=str(tmp_path))

    @pytest.mark.asyncio
    async def test_oversized_upload_is_removed(self, tmp_path):
        upload = Mock()
        upload.read = AsyncMock(side_effect=[b"x" * 600, b"x" * 600, b""])

        with pytest.raises(PermanentItemError):
            await save_upload(upload, max_bytes=1024, directory=str(tmp_path))

        assert list(tmp_path.iterdir()) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
