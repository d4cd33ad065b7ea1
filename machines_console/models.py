from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Apps ---


class Organization(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = "unknown"
    slug: str = "unknown"


class App(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    organization: Organization
    status: str = "unknown"


class CreateAppRequest(BaseModel):
    app_name: str = ""
    org_slug: str = ""
    network: str | None = None
    enable_subdomains: bool | None = None


# --- Machines ---


class GuestConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    cpu_kind: str = "shared"
    cpus: int = 1
    memory_mb: int = 256


class MachineConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    image: str = ""
    env: dict[str, Any] = Field(default_factory=dict)
    init: dict[str, Any] = Field(default_factory=dict)
    services: list[dict[str, Any]] = Field(default_factory=list)
    guest: GuestConfig | None = None
    metadata: dict[str, Any] | None = None
    restart: dict[str, Any] | None = None


class Machine(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    state: str = "unknown"
    region: str | None = None
    instance_id: str | None = None
    private_ip: str | None = None
    config: MachineConfig | None = None
    image_ref: dict[str, Any] | None = None
    created_at: str | None = None
    updated_at: str | None = None
    deleted_at: str | None = None
    app_id: str | None = None
    # Set when a machine is listed across apps.
    app_name: str | None = None


class MachineEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = ""
    type: str = ""
    status: str = ""
    source: str = ""
    timestamp: Any = None
    request: dict[str, Any] | None = None
    data: dict[str, Any] | None = None


class CreateMachineRequest(BaseModel):
    name: str | None = None
    region: str | None = None
    config: MachineConfig | None = None


class ExecResult(BaseModel):
    model_config = ConfigDict(extra="ignore")

    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None


# --- Volumes ---


class Volume(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    state: str = "unknown"
    size_gb: int | None = None
    region: str | None = None
    zone: str | None = None
    encrypted: bool | None = None
    attached_machine_id: str | None = None
    attached_app_id: str | None = None
    created_at: str | None = None
    snapshot_retention: int | None = None
    app_name: str | None = None


# --- Secrets ---

SECRET_TYPES = (
    "SECRET_TYPE_KMS_HS256",
    "SECRET_TYPE_KMS_HS384",
    "SECRET_TYPE_KMS_HS512",
    "SECRET_TYPE_KMS_XAES256GCM",
    "SECRET_TYPE_KMS_NACL_AUTH",
    "SECRET_TYPE_KMS_NACL_BOX",
    "SECRET_TYPE_KMS_NACL_SECRETBOX",
    "SECRET_TYPE_KMS_NACL_SIGN",
)


class Secret(BaseModel):
    model_config = ConfigDict(extra="allow")

    label: str
    type: str = "unknown"
    publickey: Any = None


# --- Status feed ---


class Incident(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str = ""
    updated: str = ""
    content: str = ""
    link: str = ""
    is_incident: bool = Field(default=False, alias="isIncident")
