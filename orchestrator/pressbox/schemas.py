from pydantic import BaseModel, field_validator
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
import re


class SiteStatus(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


class DatabaseEngine(str, Enum):
    SQLITE = "sqlite"
    MYSQL = "mysql"
    MARIADB = "mariadb"

    @property
    def is_shared_server(self) -> bool:
        """MySQL-compatible engines run as a shared server on the native backend."""
        return self != DatabaseEngine.SQLITE


class WebServer(str, Enum):
    BUILTIN = "builtin"  # PHP built-in server (native backend)
    NGINX = "nginx"
    APACHE = "apache"


_DOMAIN_RE = re.compile(r'^(?=.{1,253}$)([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)+$')
_PHP_VERSION_RE = re.compile(r'^\d+\.\d+$')


class SiteCreate(BaseModel):
    name: str
    domain: Optional[str] = None
    port: Optional[int] = None  # Explicit port request; reassigned if taken
    php_version: str = "8.2"
    wordpress_version: Optional[str] = None  # None = latest
    environment: Optional[str] = None  # native | container, None = default/auto-detect
    database_engine: Optional[DatabaseEngine] = None  # None = sqlite (native) / mysql (container)
    web_server: Optional[WebServer] = None
    ssl: bool = False
    multisite: bool = False
    admin_user: Optional[str] = None
    admin_password: Optional[str] = None
    admin_email: Optional[str] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError('Site name cannot be empty')
        if len(v) > 100:
            raise ValueError('Site name cannot exceed 100 characters')
        return v

    @field_validator('domain')
    @classmethod
    def validate_domain(cls, v):
        if v is None:
            return v
        v = v.strip().lower()
        if not v:
            return None
        if v == 'localhost' or not _DOMAIN_RE.match(v):
            raise ValueError(f"Invalid local domain: '{v}'")
        return v

    @field_validator('port')
    @classmethod
    def validate_port(cls, v):
        if v is not None and not (1024 <= v <= 65535):
            raise ValueError('Port must be between 1024 and 65535')
        return v

    @field_validator('php_version')
    @classmethod
    def validate_php_version(cls, v):
        if not _PHP_VERSION_RE.match(v):
            raise ValueError("PHP version must look like '8.2'")
        return v


class SiteMigrate(BaseModel):
    from_environment: str
    to_environment: str


class HostsEntryToggle(BaseModel):
    enabled: bool


class SiteRead(BaseModel):
    id: str
    name: str
    slug: str
    domain: Optional[str] = None
    port: Optional[int] = None
    url: Optional[str] = None
    hosts_mapped: bool = False
    php_version: str
    wordpress_version: str
    web_server: str
    database_engine: str
    ssl: bool
    multisite: bool
    environment: str
    status: str
    status_message: Optional[str] = None
    path: str
    admin_user: str
    admin_email: str
    created: Optional[datetime] = None
    last_accessed: Optional[datetime] = None

    class Config:
        from_attributes = True


class DatabaseServerStatusRead(BaseModel):
    engine: str
    port: int
    is_running: bool
    data_directory: str
    version: Optional[str] = None
    pid: Optional[int] = None
    installed: bool = False


class EnvironmentCapability(BaseModel):
    environment: str
    available: bool
    preferred: bool
    description: str


class OperationResponse(BaseModel):
    success: bool
    site: Optional[SiteRead] = None
    error_kind: Optional[str] = None
    message: Optional[str] = None
    data: Dict[str, Any] = {}


class SiteListResponse(BaseModel):
    sites: List[SiteRead]
    drifted: List[str] = []


class SiteLogsResponse(BaseModel):
    site_id: str
    logs: str


class EnvironmentCapabilitiesResponse(BaseModel):
    environments: List[EnvironmentCapability]
    preferred: str


class DatabaseServerStatusResponse(BaseModel):
    servers: List[DatabaseServerStatusRead]
    warnings: List[str] = []
    installed: List[str] = []


class HostsEntryRead(BaseModel):
    ip: str
    hostname: str
    site_id: Optional[str] = None
    enabled: bool = True


class HostsEntryListResponse(BaseModel):
    entries: List[HostsEntryRead]


class HostsStatsResponse(BaseModel):
    total_entries: int
    managed_entries: int
    enabled_entries: int
    has_backup: bool
    has_privileges: bool
    non_admin_mode: bool = False
    last_modified: Optional[str] = None


class ErrorResponse(BaseModel):
    error_kind: str
    message: str
    remediation: Optional[str] = None
