"""
Amazon ECR registry backend.

Authentication exchanges the configured IAM credentials for a registry
password (get_authorization_token), valid for 12 hours. Listing and
deletion use the ECR API directly; pushes go through containerd with the
exchanged password.
"""

import asyncio
import base64
import logging
from typing import Any, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ...errors import (
    ConfigurationError,
    RegistryAuthError,
    RegistryError,
    RegistryUnavailableError,
)
from ...schemas import ImageRecord, RegistryToken
from .base import BaseRegistryBackend

logger = logging.getLogger(__name__)

# Retries are owned by the Registry Manager
ECR_CLIENT_CONFIG = Config(
    retries={
        'max_attempts': 1,
        'mode': 'standard'
    },
    connect_timeout=10,
    read_timeout=60,
)

_AUTH_ERROR_CODES = {
    "UnrecognizedClientException",
    "InvalidSignatureException",
    "ExpiredTokenException",
    "AccessDeniedException",
    "AccessDeniedFault",
}

_TRANSIENT_ERROR_CODES = {
    "ThrottlingException",
    "TooManyRequestsException",
    "ServerException",
    "ServiceUnavailable",
    "RequestTimeout",
    "RequestTimeoutException",
}


def _translate(e: Exception, operation: str) -> Exception:
    """Map a boto3 failure onto the error taxonomy."""
    if isinstance(e, ClientError):
        code = e.response.get("Error", {}).get("Code", "")
        message = f"ECR {operation} failed: {code}"
        if code in _AUTH_ERROR_CODES:
            error = RegistryAuthError(message)
        elif code in _TRANSIENT_ERROR_CODES:
            error = RegistryUnavailableError(message)
        else:
            error = RegistryError(message)
        error.code = code
        return error
    return RegistryUnavailableError(f"ECR {operation} failed: {e}")


class EcrRegistryBackend(BaseRegistryBackend):
    """Registry backend for Amazon ECR."""

    def __init__(self, settings, ecr_client: Optional[Any] = None):
        self.settings = settings
        super().__init__(settings.registry, settings.repository)

        if ecr_client is None:
            ecr_client = boto3.client(
                'ecr',
                region_name=settings.aws_region,
                aws_access_key_id=settings.aws_access_key_id,
                aws_secret_access_key=settings.aws_secret_access_key.get_secret_value(),
                config=ECR_CLIENT_CONFIG,
            )
        self.ecr_client = ecr_client

        logger.info(f"[ECR] Using {self.repository_reference} in {settings.aws_region}")

    def validate_settings(self) -> None:
        required = {
            "AWS_REGION": self.settings.aws_region,
            "AWS_ACCESS_KEY_ID": self.settings.aws_access_key_id,
            "AWS_SECRET_ACCESS_KEY": self.settings.aws_secret_access_key.get_secret_value(),
            "AWS_USERNAME": self.settings.aws_username,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(
                f"Registry implementation 'ecr' requires: {', '.join(missing)}"
            )

    async def _call(self, operation: str, **kwargs) -> dict:
        try:
            return await asyncio.to_thread(getattr(self.ecr_client, operation), **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, operation) from e

    async def authenticate(self) -> RegistryToken:
        response = await self._call("get_authorization_token")

        data = response["authorizationData"][0]
        decoded = base64.b64decode(data["authorizationToken"]).decode("utf-8")
        _, _, password = decoded.partition(":")
        if not password:
            raise RegistryAuthError("ECR returned a malformed authorization token")

        logger.info(f"[ECR] Obtained authorization token, expires {data.get('expiresAt')}")
        return RegistryToken(
            username=self.settings.aws_username,
            password=password,
            expires_at=data.get("expiresAt"),
        )

    def push_arguments(self, token: Optional[RegistryToken]) -> List[str]:
        if token is None:
            raise RegistryAuthError("ECR push requires a token")
        return ["--user", f"{token.username}:{token.password.get_secret_value()}"]

    async def list_images(self) -> List[ImageRecord]:
        images = []
        kwargs = {"repositoryName": self.repository, "filter": {"tagStatus": "TAGGED"}}
        while True:
            try:
                response = await self._call("list_images", **kwargs)
            except RegistryError as e:
                if getattr(e, "code", None) == "RepositoryNotFoundException":
                    return []
                raise

            for image_id in response.get("imageIds", []):
                tag = image_id.get("imageTag")
                if tag:
                    images.append(ImageRecord(
                        tag=tag,
                        digest=image_id.get("imageDigest"),
                        reference=self.reference_for(tag),
                    ))

            next_token = response.get("nextToken")
            if not next_token:
                return images
            kwargs["nextToken"] = next_token

    async def get_image(self, tag: str) -> Optional[ImageRecord]:
        try:
            response = await self._call(
                "describe_images",
                repositoryName=self.repository,
                imageIds=[{"imageTag": tag}],
            )
        except RegistryError as e:
            if getattr(e, "code", None) in ("ImageNotFoundException", "RepositoryNotFoundException"):
                return None
            raise

        details = response.get("imageDetails", [])
        if not details:
            return None
        return ImageRecord(tag=tag, digest=details[0].get("imageDigest"), reference=self.reference_for(tag))

    async def delete_image(self, tag: str) -> bool:
        response = await self._call(
            "batch_delete_image",
            repositoryName=self.repository,
            imageIds=[{"imageTag": tag}],
        )

        for failure in response.get("failures", []):
            if failure.get("failureCode") == "ImageNotFound":
                logger.debug(f"[ECR] {tag} already absent")
                return False
            raise RegistryError(
                f"ECR refused to delete {tag}: {failure.get('failureCode')} {failure.get('failureReason', '')}"
            )

        logger.info(f"[ECR] Deleted {self.reference_for(tag)}")
        return True
