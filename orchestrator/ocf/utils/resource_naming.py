"""
Resource naming utilities for connectors and images.

Centralized functions for generating identifiers that Kubernetes and the
registry accept:
- Connector pod names (RFC 1123 labels, deterministic per connector)
- Image tags (RFC 1035 labels, or derived from a full image reference)
- Pod DNS names

Pod names are derived from the connector identifier alone, so every
controller instance computes the same name for the same connector and the
API server's name-uniqueness constraint arbitrates duplicate creates.
"""

import hashlib
import re
import uuid

# DNS label length limit
MAX_LABEL_LENGTH = 63
HASH_SUFFIX_LENGTH = 8
FALLBACK_PREFIX = "connector"
IMAGE_FALLBACK_PREFIX = "image"
# Registry tag length limit
MAX_TAG_LENGTH = 128

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]+")


def normalize_rfc1123(value: str) -> str:
    """
    Lower-case a value and collapse every run of non-alphanumerics into a
    single dash, trimming leading/trailing dashes.

    Examples:
        >>> normalize_rfc1123("My Connector_v2")
        "my-connector-v2"
        >>> normalize_rfc1123("!!!")
        ""
    """
    return _NON_ALPHANUMERIC.sub("-", value.lower()).strip("-")


def connector_pod_name(identifier: str) -> str:
    """
    Get the pod name for a connector.

    The name is the normalized identifier followed by a short hash of the raw
    identifier, so "Foo Bar" and "foo-bar" never share a pod.

    Args:
        identifier: Connector identifier as given by the dashboard

    Returns:
        RFC 1123 label of at most 63 characters

    Raises:
        ValueError: If identifier is empty

    Examples:
        >>> connector_pod_name("foo")
        "foo-2c26b46b"
    """
    if not identifier:
        raise ValueError("Connector identifier must not be empty")

    digest = hashlib.sha256(identifier.encode("utf-8")).hexdigest()[:HASH_SUFFIX_LENGTH]
    prefix = normalize_rfc1123(identifier) or FALLBACK_PREFIX
    prefix = prefix[:MAX_LABEL_LENGTH - HASH_SUFFIX_LENGTH - 1].rstrip("-")
    return f"{prefix}-{digest}"


def rfc1035_label() -> str:
    """
    Get a random RFC 1035 label (starts with a letter) for image tags.

    A uuid4 hex string only ever contains 0-9a-f, so forcing the first
    character into a-f is enough.
    """
    label = uuid.uuid4().hex
    if label[0].isdigit():
        label = "abcdef"[int(label[0]) % 6] + label[1:]
    return label


def pod_dns_name(pod_ip: str, namespace: str) -> str:
    """
    Get the cluster DNS name of a pod from its IP.

    Examples:
        >>> pod_dns_name("10.1.0.7", "ocf")
        "10-1-0-7.ocf.pod"
    """
    return f"{pod_ip.replace('.', '-')}.{namespace}.pod"


def image_reference(registry: str, repository: str, tag: str) -> str:
    """Get a repository-qualified image reference."""
    return f"{registry}/{repository}:{tag}"


def split_reference(reference: str) -> tuple:
    """
    Split an image reference into (name, tag).

    A colon only separates the tag when it comes after the last slash, so
    registry ports are not mistaken for tags. References without a tag get
    "latest".

    Examples:
        >>> split_reference("registry:5000/ocf/foo:v1")
        ("registry:5000/ocf/foo", "v1")
        >>> split_reference("repo/foo")
        ("repo/foo", "latest")
    """
    name, sep, tag = reference.rpartition(":")
    if not sep or "/" in tag:
        return reference, "latest"
    return name, tag


def image_tag(reference: str) -> str:
    """
    Get the registry tag under which an external image reference is installed.

    The tag is the normalized reference followed by a short hash of the raw
    reference, so two different images sharing a tag (repo/foo:v1 and
    repo/bar:v1) never land on the same registry tag.

    Examples:
        >>> image_tag("docker.io/test/tennis:v1")
        "docker-io-test-tennis-v1-<hash>"
    """
    digest = hashlib.sha256(reference.encode("utf-8")).hexdigest()[:HASH_SUFFIX_LENGTH]
    prefix = normalize_rfc1123(reference) or IMAGE_FALLBACK_PREFIX
    prefix = prefix[:MAX_TAG_LENGTH - HASH_SUFFIX_LENGTH - 1].rstrip("-")
    return f"{prefix}-{digest}"
