"""Utility modules for the connector and image managers."""

from .resource_naming import (
    connector_pod_name,
    rfc1035_label,
    pod_dns_name,
    image_reference,
    split_reference,
)
from .retry import retrying, is_retryable_error
