"""
Unit tests for the registry backends.

The local backend talks to an httpx.MockTransport standing in for a
Docker Registry v2; the ECR backend gets a mocked boto3 client.
"""

import base64
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from unittest.mock import Mock
from botocore.exceptions import ClientError, EndpointConnectionError

from ocf.config import Settings
from ocf.errors import (
    RegistryAuthError,
    RegistryError,
    RegistryUnavailableError,
)
from ocf.services.registry.ecr import EcrRegistryBackend
from ocf.services.registry.local import LocalRegistryBackend

DIGEST = "sha256:76a5627069e32d0543dd6bec4c352af358974dd4572dfc05dbf7147b5546df4f"


class FakeRegistry:
    """Minimal Docker Registry v2 serving one repository."""

    def __init__(self, tags=None):
        self.manifests = {tag: DIGEST for tag in (tags or [])}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        path = request.url.path

        if path == "/v2/ocf/tags/list":
            if not self.manifests:
                return httpx.Response(404, json={"errors": [{"code": "NAME_UNKNOWN"}]})
            return httpx.Response(200, json={"name": "ocf", "tags": sorted(self.manifests)})

        if path.startswith("/v2/ocf/manifests/"):
            ref = path.rsplit("/", 1)[1]
            if request.method == "GET":
                if ref not in self.manifests:
                    return httpx.Response(404)
                return httpx.Response(200, headers={"Docker-Content-Digest": self.manifests[ref]}, content=b"{}")
            if request.method == "DELETE":
                tags = [t for t, d in self.manifests.items() if d == ref]
                if not tags:
                    return httpx.Response(404)
                for tag in tags:
                    del self.manifests[tag]
                return httpx.Response(202)

        return httpx.Response(400)


def local_backend(handler):
    settings = Settings(implementation="minikube", registry="registry.test", repository="ocf")
    return LocalRegistryBackend(settings, transport=httpx.MockTransport(handler))


@pytest.mark.unit
class TestLocalRegistryBackend:
    """Test LocalRegistryBackend against a mock registry."""

    @pytest.mark.asyncio
    async def test_get_image(self):
        backend = local_backend(FakeRegistry(tags=["v1"]))

        image = await backend.get_image("v1")

        assert image.tag == "v1"
        assert image.digest == DIGEST
        assert image.reference == "registry.test/ocf:v1"

    @pytest.mark.asyncio
    async def test_get_missing_image(self):
        backend = local_backend(FakeRegistry(tags=["v1"]))
        assert await backend.get_image("v2") is None

    @pytest.mark.asyncio
    async def test_digest_computed_without_header(self):
        body = json.dumps({"schemaVersion": 2}).encode()
        backend = local_backend(lambda request: httpx.Response(200, content=body))

        image = await backend.get_image("v1")

        assert image.digest.startswith("sha256:")
        assert len(image.digest) == len("sha256:") + 64

    @pytest.mark.asyncio
    async def test_list_images(self):
        backend = local_backend(FakeRegistry(tags=["v2", "v1"]))

        images = await backend.list_images()

        assert [i.tag for i in images] == ["v1", "v2"]

    @pytest.mark.asyncio
    async def test_list_empty_repository(self):
        backend = local_backend(FakeRegistry())
        assert await backend.list_images() == []

    @pytest.mark.asyncio
    async def test_delete_resolves_digest(self):
        registry = FakeRegistry(tags=["v1"])
        backend = local_backend(registry)

        assert await backend.delete_image("v1") is True
        assert ("DELETE", f"/v2/ocf/manifests/{DIGEST}") in registry.requests
        assert registry.manifests == {}

    @pytest.mark.asyncio
    async def test_delete_missing_image(self):
        backend = local_backend(FakeRegistry())
        assert await backend.delete_image("v1") is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (401, RegistryAuthError),
        (429, RegistryUnavailableError),
        (503, RegistryUnavailableError),
        (400, RegistryError),
    ])
    async def test_status_mapping(self, status, error):
        backend = local_backend(lambda request: httpx.Response(status))

        with pytest.raises(error):
            await backend.get_image("v1")

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend = local_backend(refuse)

        with pytest.raises(RegistryUnavailableError):
            await backend.get_image("v1")

    @pytest.mark.asyncio
    async def test_no_authentication(self):
        backend = local_backend(FakeRegistry())

        assert await backend.authenticate() is None
        assert backend.push_arguments(None) == ["--plain-http"]


def client_error(code, operation="DescribeImages"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def ecr_client():
    return Mock()


@pytest.fixture
def ecr(ecr_client):
    settings = Settings(
        implementation="ecr",
        registry="123456789012.dkr.ecr.eu-west-1.amazonaws.com",
        repository="ocf",
        aws_region="eu-west-1",
        aws_access_key_id="AKIAEXAMPLE",
        aws_secret_access_key="secret",
        aws_username="AWS",
    )
    return EcrRegistryBackend(settings, ecr_client=ecr_client)


@pytest.mark.unit
class TestEcrRegistryBackend:
    """Test EcrRegistryBackend with a mocked boto3 client."""

    @pytest.mark.asyncio
    async def test_authenticate(self, ecr, ecr_client):
        expires = datetime.now(timezone.utc) + timedelta(hours=12)
        ecr_client.get_authorization_token.return_value = {
            "authorizationData": [{
                "authorizationToken": base64.b64encode(b"AWS:ecr-password").decode(),
                "expiresAt": expires,
            }]
        }

        token = await ecr.authenticate()

        assert token.username == "AWS"
        assert token.password.get_secret_value() == "ecr-password"
        assert token.expires_at == expires
        assert ecr.push_arguments(token) == ["--user", "AWS:ecr-password"]

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, ecr, ecr_client):
        ecr_client.get_authorization_token.side_effect = client_error(
            "UnrecognizedClientException", "GetAuthorizationToken"
        )

        with pytest.raises(RegistryAuthError):
            await ecr.authenticate()

    @pytest.mark.asyncio
    async def test_get_image(self, ecr, ecr_client):
        ecr_client.describe_images.return_value = {"imageDetails": [{"imageDigest": DIGEST, "imageTags": ["v1"]}]}

        image = await ecr.get_image("v1")

        assert image.digest == DIGEST
        assert image.reference == "123456789012.dkr.ecr.eu-west-1.amazonaws.com/ocf:v1"
        ecr_client.describe_images.assert_called_once_with(repositoryName="ocf", imageIds=[{"imageTag": "v1"}])

    @pytest.mark.asyncio
    async def test_get_missing_image(self, ecr, ecr_client):
        ecr_client.describe_images.side_effect = client_error("ImageNotFoundException")
        assert await ecr.get_image("v1") is None

    @pytest.mark.asyncio
    async def test_list_images_paginates(self, ecr, ecr_client):
        ecr_client.list_images.side_effect = [
            {"imageIds": [{"imageTag": "v1", "imageDigest": DIGEST}], "nextToken": "page-2"},
            {"imageIds": [{"imageTag": "v2", "imageDigest": DIGEST}, {"imageDigest": DIGEST}]},
        ]

        images = await ecr.list_images()

        assert [i.tag for i in images] == ["v1", "v2"]
        assert ecr_client.list_images.call_args_list[1].kwargs["nextToken"] == "page-2"

    @pytest.mark.asyncio
    async def test_list_missing_repository(self, ecr, ecr_client):
        ecr_client.list_images.side_effect = client_error("RepositoryNotFoundException", "ListImages")
        assert await ecr.list_images() == []

    @pytest.mark.asyncio
    async def test_delete_image(self, ecr, ecr_client):
        ecr_client.batch_delete_image.return_value = {"imageIds": [{"imageTag": "v1"}], "failures": []}
        assert await ecr.delete_image("v1") is True

    @pytest.mark.asyncio
    async def test_delete_missing_image(self, ecr, ecr_client):
        ecr_client.batch_delete_image.return_value = {
            "imageIds": [],
            "failures": [{"imageId": {"imageTag": "v1"}, "failureCode": "ImageNotFound"}],
        }
        assert await ecr.delete_image("v1") is False

    @pytest.mark.asyncio
    async def test_throttling_is_transient(self, ecr, ecr_client):
        ecr_client.describe_images.side_effect = client_error("ThrottlingException")

        with pytest.raises(RegistryUnavailableError):
            await ecr.get_image("v1")

    @pytest.mark.asyncio
    async def test_endpoint_unreachable(self, ecr, ecr_client):
        ecr_client.describe_images.side_effect = EndpointConnectionError(endpoint_url="https://api.ecr.eu-west-1.amazonaws.com")

        with pytest.raises(RegistryUnavailableError):
            await ecr.get_image("v1")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
