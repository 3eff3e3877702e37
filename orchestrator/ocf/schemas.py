from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, SecretStr


class DesiredState(str, Enum):
    PRESENT = "present"
    ABSENT = "absent"


class Connector(BaseModel):
    """A customer-installed integration instance, realized as one pod."""
    name: str = Field(..., description="Stable connector identifier")
    image: Optional[str] = Field(None, description="Desired image reference")
    desired_state: DesiredState = Field(DesiredState.PRESENT, description="Present or Absent")
    namespace: str = Field(..., description="Namespace the connector pod lives in")
    ttl_seconds: int = Field(..., description="Seconds until garbage collection without refresh")


class KeepAliveTicket(BaseModel):
    """Garbage collection deadline of a connector pod."""
    ticket: str = Field(..., description="Connector pod name")
    execution_date: int = Field(..., description="Unix time after which the pod is deleted")


class DeployedConnector(BaseModel):
    connector: str
    pod_name: str
    image: str
    ttl_seconds: int


class ConnectorAddress(BaseModel):
    pod_name: str
    address: str = Field(..., description="host:port of the connector gRPC endpoint")
    keep_alive: Optional[KeepAliveTicket] = Field(None, description="Ticket refreshed when the connector became ready")


class ImageRecord(BaseModel):
    """One connector image inside the configured registry."""
    tag: str
    digest: Optional[str] = None
    reference: Optional[str] = Field(None, description="Repository-qualified reference")


class RegistryToken(BaseModel):
    username: str
    password: SecretStr
    expires_at: Optional[datetime] = None

    def is_fresh(self, skew_seconds: float = 0) -> bool:
        if self.expires_at is None:
            return True
        remaining = (self.expires_at - datetime.now(timezone.utc)).total_seconds()
        return remaining > skew_seconds


class Payload(BaseModel):
    kind: str
    object: Any


class ErrorBody(BaseModel):
    category: str
    message: str


class Envelope(BaseModel):
    """Response body shared by every façade endpoint."""
    payload: Optional[Payload] = None
    error: Optional[ErrorBody] = None

    @classmethod
    def of(cls, obj: Any, kind: Optional[str] = None) -> "Envelope":
        if kind is None:
            kind = type(obj).__name__
        if isinstance(obj, BaseModel):
            obj = obj.model_dump(mode="json")
        elif isinstance(obj, list):
            obj = [o.model_dump(mode="json") if isinstance(o, BaseModel) else o for o in obj]
        return cls(payload=Payload(kind=kind, object=obj))
