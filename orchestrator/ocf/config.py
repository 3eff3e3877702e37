from pydantic import SecretStr
from pydantic_settings import BaseSettings
from functools import lru_cache
import socket


class Settings(BaseSettings):
    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # =========================================================================
    # Kubernetes / Connector Manager
    # =========================================================================

    # Connector pods live in their own namespace, distinct from the controllers
    connector_namespace: str = "ocf"
    system_namespace: str = "ocf-system"

    # Label selector value (app=<value>) identifying controller peer pods
    controller_app_label: str = "acm"

    # Identity of this controller instance. Inside a pod the hostname is the pod name.
    pod_name: str = socket.gethostname()

    # Port every connector serves its gRPC interface on
    connector_port: int = 8080

    # Connector registry used to build image references from a bare tag
    connector_registry: str = "registry.kurl"
    connector_repository: str = "ocf"

    # Keep-alive: connectors are garbage collected this many seconds after
    # their last refresh unless the install request overrides it
    default_ttl_seconds: int = 1800
    delete_grace_period_seconds: int = 60

    # Peer pod must be missing/terminal this long before its connectors are adopted
    adoption_grace_seconds: float = 30.0
    # Level-triggered reconciliation also runs on this tick without any events
    resync_interval_seconds: float = 30.0

    # Server-side watch timeout; the store resumes from its resource version afterwards
    watch_timeout_seconds: int = 300
    watch_backoff_max_seconds: float = 30.0

    # Bounded retries for create/patch/delete against the cluster API
    api_retry_attempts: int = 5
    api_retry_min_wait: float = 0.5
    api_retry_max_wait: float = 10.0

    # /wait gives up after this long of failed gRPC health polling
    readiness_timeout_seconds: float = 30.0
    # /wait gives up when the pod has not started running within this long
    start_timeout_seconds: float = 300.0

    # =========================================================================
    # Image Manager
    # =========================================================================

    # Registry backend: "minikube" (local, no auth) or "ecr"
    implementation: str = "minikube"
    registry: str = "registry.kube-system"
    repository: str = "ocf"

    # ECR credentials (required when implementation=ecr)
    aws_region: str = ""
    aws_access_key_id: str = ""
    aws_secret_access_key: SecretStr = SecretStr("")
    aws_username: str = ""

    # containerd control socket, shared with the sidecar daemon
    containerd_address: str = "/run/containerd/containerd.sock"
    ctr_binary: str = "ctr"
    runtime_timeout_seconds: float = 300.0

    registry_retry_attempts: int = 4
    registry_retry_min_wait: float = 1.0
    registry_retry_max_wait: float = 15.0
    registry_request_timeout: float = 30.0

    # Tokens are refreshed this many seconds before they expire
    token_refresh_skew_seconds: int = 300

    # Upload limit for image archives (10 GiB)
    max_upload_bytes: int = 10 * 1024 * 1024 * 1024
    upload_dir: str = "/tmp"

    # =========================================================================
    # Local development toggles
    # =========================================================================

    # Façade is exposed through a NodePort service
    externally_available: bool = False
    # Include tracemalloc top allocations in /health
    memory_profiling: bool = False

    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False  # Allow lowercase env vars to match uppercase field names


@lru_cache()
def get_settings():
    return Settings()
