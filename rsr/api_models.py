from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from .runtime import ServiceStatus


class ServiceStatusOut(BaseModel):
    service: str
    primary_found: bool
    primary_name: Optional[str] = None
    primary_healthy: bool
    primary_version: Optional[str] = Field(None, description="null when the version is unknown")
    replica_found: bool
    replica_name: Optional[str] = None
    replica_healthy: bool
    replica_version: Optional[str] = None
    in_sync: bool
    comparison: Optional[str] = Field(None, description="version|image-digest")
    stale: bool = Field(False, description="True when live inspection failed and last-known values are shown")
    error: Optional[str] = None
    checked_at: str

    @classmethod
    def from_status(cls, st: ServiceStatus) -> "ServiceStatusOut":
        return cls(**st.__dict__)


class ServiceOut(BaseModel):
    name: str
    enabled: bool
    valid: bool
    primary_pattern: Optional[str] = None
    health_endpoint: Optional[str] = None
    health_port: Optional[int] = None
    version_path: Optional[str] = None
    replica_name: str
    error: Optional[str] = None


class SyncResponse(BaseModel):
    service: str
    removed: bool
    message: str


class EventOut(BaseModel):
    ts: str
    level: str
    service_name: Optional[str] = None
    version: Optional[str] = None
    message: str
