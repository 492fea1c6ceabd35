"""
Configuration for zvol-agent.

``Settings`` holds process-wide defaults read from environment variables.
``StorageConfig`` is the validated, read-only description of one configured
TrueNAS storage, built by the host from its own storage configuration.
"""

import logging
import re
from enum import Enum
from typing import Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings

from zvol_agent.utils import parse_blocksize

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # API server
    api_host: str = "0.0.0.0"
    api_port: int = 8100

    # Storage definitions (JSON list of StorageConfig objects)
    storage_config_path: str = "/etc/zvol-agent/storages.json"

    # Appliance jobs
    job_poll_interval: float = 1.0
    job_timeout: float = 120.0

    # Event log
    event_log_size: int = 500

    # Local session commands
    session_command_timeout: int = 30
    iscsiadm_binary: str = "iscsiadm"
    nvme_binary: str = "nvme"

    # Logging
    log_level: str = "INFO"

    class Config:
        env_prefix = "ZVOL_AGENT_"


settings = Settings()


class ApiTransport(str, Enum):
    WS = "ws"
    REST = "rest"


class TransportMode(str, Enum):
    ISCSI = "iscsi"
    NVME_TCP = "nvme-tcp"


_DATASET_RE = re.compile(r"^[A-Za-z0-9_.\-/]+$")
_SUBNQN_RE = re.compile(r"^nqn\.\d{4}-\d{2}\.")
_WS_SCHEMES = ("wss", "ws")
_REST_SCHEMES = ("https", "http")


class StorageConfig(BaseModel):
    """One configured TrueNAS storage. Validated once, then read-only."""
    model_config = ConfigDict(frozen=True)

    storage_id: str
    api_host: str
    api_key: str = Field(repr=False)
    api_transport: ApiTransport = ApiTransport.WS
    api_scheme: Optional[str] = None
    api_port: Optional[int] = Field(default=None, gt=0, lt=65536)
    api_insecure: bool = False

    transport_mode: TransportMode = TransportMode.ISCSI
    dataset: str
    target_iqn: Optional[str] = None
    subsystem_nqn: Optional[str] = None
    discovery_portal: str
    portals: Tuple[str, ...] = ()

    chap_user: Optional[str] = None
    chap_password: Optional[str] = Field(default=None, repr=False)
    hostnqn: Optional[str] = None
    nvme_dhchap_secret: Optional[str] = Field(default=None, repr=False)
    nvme_dhchap_ctrl_secret: Optional[str] = Field(default=None, repr=False)

    use_multipath: bool = True
    thin_provisioning: bool = True
    zvol_blocksize: Optional[str] = None
    enable_live_snapshots: bool = True

    api_retry_max: int = Field(default=3, ge=0, le=10)
    api_retry_delay: float = Field(default=1.0, ge=0.1, le=60)
    api_retry_max_delay: float = Field(default=30.0, gt=0)
    rate_limit_calls: int = Field(default=20, ge=0)
    rate_limit_window: float = Field(default=60.0, gt=0)
    call_timeout: float = Field(default=120.0, gt=0)

    @field_validator("dataset")
    @classmethod
    def _check_dataset(cls, value: str) -> str:
        if not _DATASET_RE.match(value):
            raise ValueError(f"dataset '{value}' contains invalid characters")
        if value.startswith("/") or value.endswith("/"):
            raise ValueError("dataset must not start or end with '/'")
        if "//" in value:
            raise ValueError("dataset must not contain '//'")
        return value

    @field_validator("portals", mode="before")
    @classmethod
    def _split_portals(cls, value):
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(p.strip() for p in value.split(",") if p.strip())
        return tuple(value)

    @field_validator("zvol_blocksize")
    @classmethod
    def _check_blocksize(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        value = value.strip().upper()
        size = parse_blocksize(value)
        if size < 512 or size & (size - 1):
            raise ValueError(f"zvol_blocksize '{value}' must be a power of two of at least 512 bytes")
        return value

    @field_validator("api_scheme")
    @classmethod
    def _lower_scheme(cls, value: Optional[str]) -> Optional[str]:
        return value.lower() if value else None

    @model_validator(mode="after")
    def _check_transport(self) -> "StorageConfig":
        allowed = _WS_SCHEMES if self.api_transport == ApiTransport.WS else _REST_SCHEMES
        if self.api_scheme and self.api_scheme not in allowed:
            raise ValueError(
                f"api_scheme '{self.api_scheme}' is not valid for the {self.api_transport.value} transport"
            )

        if self.transport_mode == TransportMode.ISCSI:
            if not self.target_iqn:
                raise ValueError("target_iqn is required for iscsi transport mode")
            if self.subsystem_nqn:
                logger.warning(f"[{self.storage_id}] subsystem_nqn is ignored in iscsi mode")
        else:
            if not self.subsystem_nqn:
                raise ValueError("subsystem_nqn is required for nvme-tcp transport mode")
            if not _SUBNQN_RE.match(self.subsystem_nqn):
                raise ValueError(f"subsystem_nqn '{self.subsystem_nqn}' must look like nqn.YYYY-MM.<domain>")
            if self.api_transport != ApiTransport.WS:
                raise ValueError("nvme-tcp transport mode requires the ws api_transport")
            if self.target_iqn or self.chap_user:
                logger.warning(f"[{self.storage_id}] target_iqn/chap settings are ignored in nvme-tcp mode")

        if self.hostnqn and not self.hostnqn.startswith("nqn."):
            raise ValueError(f"hostnqn '{self.hostnqn}' must start with 'nqn.'")
        if bool(self.chap_user) != bool(self.chap_password):
            raise ValueError("chap_user and chap_password must be set together")

        if self.api_insecure:
            logger.warning(f"[{self.storage_id}] TLS verification disabled for {self.api_host}")
        if self.scheme in ("ws", "http"):
            logger.warning(f"[{self.storage_id}] API key will be sent over unencrypted {self.scheme}")
        return self

    @property
    def scheme(self) -> str:
        if self.api_scheme:
            return self.api_scheme
        return "wss" if self.api_transport == ApiTransport.WS else "https"

    @property
    def port(self) -> int:
        if self.api_port:
            return self.api_port
        return 443 if self.scheme in ("wss", "https") else 80

    @property
    def api_url(self) -> str:
        host = f"[{self.api_host}]" if ":" in self.api_host else self.api_host
        path = "/api/current" if self.api_transport == ApiTransport.WS else "/api/v2.0"
        return f"{self.scheme}://{host}:{self.port}{path}"

    @property
    def verify_ssl(self) -> bool:
        return not self.api_insecure

    @property
    def blocksize_bytes(self) -> int:
        return parse_blocksize(self.zvol_blocksize)

    @property
    def all_portals(self) -> Tuple[str, ...]:
        seen = []
        for portal in (self.discovery_portal,) + self.portals:
            if portal not in seen:
                seen.append(portal)
        return tuple(seen)
