from pydantic_settings import BaseSettings
from functools import lru_cache
from pathlib import Path
from typing import List


class Settings(BaseSettings):
    # Root directory for everything PressBox persists (registry, sites, backups)
    data_dir: str = str(Path.home() / ".pressbox")

    # Registry database - defaults to a SQLite file under data_dir
    database_url: str = ""

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # HTTP API consumed by the desktop shell / CLI
    api_host: str = "127.0.0.1"
    api_port: int = 7777

    # Default environment for new sites: "native", "container" or "" (auto-detect)
    default_environment: str = ""

    # ==========================================================================
    # Port Allocation
    # ==========================================================================
    port_range_start: int = 8000
    port_range_end: int = 8999
    extra_ports: List[int] = []  # Well-known fallbacks tried after the range
    reserved_ports: List[int] = [8080, 8443, 8888]  # Never handed out
    loopback_ip: str = "127.0.0.1"

    # ==========================================================================
    # Hosts File
    # ==========================================================================
    hosts_file_path: str = "/etc/hosts"
    hosts_backup_path: str = ""  # Defaults to {data_dir}/hosts-backup

    # Run without touching the hosts file: sites are reachable on localhost:<port>
    non_admin_mode: bool = False

    # ==========================================================================
    # Lifecycle Timing
    # ==========================================================================
    liveness_timeout_seconds: float = 10.0
    liveness_poll_interval_seconds: float = 0.5
    liveness_request_timeout_seconds: float = 2.0
    stop_grace_seconds: float = 8.0
    delete_settle_timeout_seconds: float = 15.0
    process_spawn_timeout_seconds: float = 15.0
    compose_timeout_seconds: float = 180.0
    logs_tail_lines: int = 200

    # ==========================================================================
    # Native Backend
    # ==========================================================================
    php_binary: str = "php"
    php_memory_limit: str = "256M"
    php_upload_max_filesize: str = "64M"

    # WordPress core download (cached per version under {data_dir}/cache/wordpress)
    download_wordpress: bool = True
    wordpress_download_url: str = "https://wordpress.org"
    wordpress_download_timeout_seconds: float = 120.0
    sqlite_plugin_download_url: str = "https://downloads.wordpress.org/plugin/sqlite-database-integration.zip"

    # ==========================================================================
    # Container Backend
    # ==========================================================================
    docker_binary: str = "docker"
    mysql_image: str = "mysql:8.0"
    mariadb_image: str = "mariadb:11"
    nginx_image: str = "nginx:alpine"

    # ==========================================================================
    # Shared Database Servers
    # ==========================================================================
    mysql_binary: str = "mysqld"
    mysql_port: int = 3306
    mariadb_binary: str = "mariadbd"
    mariadb_install_binary: str = "mariadb-install-db"
    mariadb_port: int = 3307
    mysql_client_binary: str = "mysql"  # Creates per-site databases on the shared server
    db_server_start_timeout_seconds: float = 30.0
    db_server_probe_timeout_seconds: float = 2.0

    # Stop shared database servers when the application shuts down cleanly
    stop_shared_infra_on_exit: bool = True

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def sites_path(self) -> Path:
        return self.data_path / "sites"

    @property
    def db_servers_path(self) -> Path:
        return self.data_path / "db-servers"

    @property
    def wordpress_cache_path(self) -> Path:
        return self.data_path / "cache" / "wordpress"

    @property
    def hosts_backup_file(self) -> Path:
        if self.hosts_backup_path:
            return Path(self.hosts_backup_path).expanduser()
        return self.data_path / "hosts-backup"

    @property
    def registry_url(self) -> str:
        """Get the registry database URL, defaulting to a SQLite file in data_dir."""
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.data_path / 'registry.db'}"

    class Config:
        env_prefix = "PRESSBOX_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra fields from .env file
        case_sensitive = False


@lru_cache()
def get_settings():
    return Settings()
