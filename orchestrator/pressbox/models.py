from sqlalchemy import Column, String, DateTime, Boolean, Integer, Text
from datetime import datetime, timezone
import uuid

from .database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class Site(Base):
    __tablename__ = "sites"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    name = Column(String, unique=True, nullable=False)
    slug = Column(String, unique=True, index=True, nullable=False)  # Directory/compose name (e.g., "my-shop-k3x8n2")

    # Routing
    domain = Column(String, nullable=True)  # Custom local hostname, e.g. "my-shop.local"
    port = Column(Integer, nullable=True)
    url = Column(String, nullable=True)
    hosts_mapped = Column(Boolean, default=False)  # False = no-custom-domain mode (localhost:<port>)

    # Runtime config
    php_version = Column(String(10), nullable=False, default="8.2")
    wordpress_version = Column(String(20), nullable=False, default="latest")
    web_server = Column(String(20), nullable=False, default="builtin")  # builtin, nginx, apache
    database_engine = Column(String(20), nullable=False, default="sqlite")  # sqlite, mysql, mariadb
    ssl = Column(Boolean, default=False)
    multisite = Column(Boolean, default=False)

    # Database credentials written into wp-config.php
    db_name = Column(String, nullable=True)
    db_user = Column(String, nullable=True)
    db_password = Column(String, nullable=True)

    # WordPress admin account
    admin_user = Column(String, nullable=False, default="admin")
    admin_password = Column(String, nullable=False, default="password")
    admin_email = Column(String, nullable=False, default="admin@localhost.local")

    # Placement and lifecycle
    environment = Column(String(20), nullable=False)  # native, container
    status = Column(String(20), nullable=False, default="stopped")  # stopped, starting, running, stopping, error
    status_message = Column(Text, nullable=True)  # Last error or drift description
    path = Column(String, nullable=False)

    created = Column(DateTime(timezone=True), default=_utcnow)
    last_accessed = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Site {self.name} ({self.id}) {self.environment}/{self.status}>"
