"""
Site-local configuration rendering.

Produces the files a site needs on disk: wp-config.php, php.ini,
docker-compose.yml, the nginx vhost used by container sites and the
self-signed certificate for SSL sites. Pure functions; callers decide where
the output goes.
"""

import datetime
import secrets
import string
from typing import Any, Dict, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ..config import Settings

SALT_KEYS = (
    "AUTH_KEY", "SECURE_AUTH_KEY", "LOGGED_IN_KEY", "NONCE_KEY",
    "AUTH_SALT", "SECURE_AUTH_SALT", "LOGGED_IN_SALT", "NONCE_SALT",
)

_SALT_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*()-_[]{}<>~+=,.;:/?|"


def generate_salt(length: int = 64) -> str:
    return "".join(secrets.choice(_SALT_ALPHABET) for _ in range(length))


def generate_password(length: int = 24) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def _php_string(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def render_wp_config(
    *,
    db_name: str,
    db_user: str,
    db_password: str,
    db_host: str,
    ssl: bool = False,
    use_sqlite: bool = False,
    sqlite_dir: Optional[str] = None,
    multisite: bool = False,
    table_prefix: str = "wp_",
) -> str:
    """
    Render wp-config.php.

    For SQLite sites the SQLite Database Integration drop-in reads DB_DIR /
    DB_FILE; DB_* constants are still defined because core expects them.
    """
    lines = [
        "<?php",
        "/**",
        " * Generated by PressBox.",
        " */",
        "",
        f"define( 'DB_NAME', {_php_string(db_name)} );",
        f"define( 'DB_USER', {_php_string(db_user)} );",
        f"define( 'DB_PASSWORD', {_php_string(db_password)} );",
        f"define( 'DB_HOST', {_php_string(db_host)} );",
        "define( 'DB_CHARSET', 'utf8mb4' );",
        "define( 'DB_COLLATE', '' );",
    ]

    if use_sqlite:
        lines += [
            "define( 'DB_ENGINE', 'sqlite' );",
            f"define( 'DB_DIR', {_php_string(sqlite_dir or '')} );",
            "define( 'DB_FILE', '.ht.sqlite' );",
        ]

    lines.append("")
    for key in SALT_KEYS:
        lines.append(f"define( {_php_string(key)}, {_php_string(generate_salt())} );")

    lines += [
        "",
        f"$table_prefix = {_php_string(table_prefix)};",
        "",
        "define( 'WP_DEBUG', true );",
        "define( 'WP_DEBUG_LOG', true );",
        "define( 'WP_DEBUG_DISPLAY', false );",
        "define( 'WP_ENVIRONMENT_TYPE', 'local' );",
    ]

    # Follow whatever host:port the request came in on, so a reassigned port
    # or a switch to localhost mode never needs a config rewrite.
    scheme = "https" if ssl else "http"
    lines += [
        "if ( isset( $_SERVER['HTTP_HOST'] ) ) {",
        f"\tdefine( 'WP_HOME', '{scheme}://' . $_SERVER['HTTP_HOST'] );",
        f"\tdefine( 'WP_SITEURL', '{scheme}://' . $_SERVER['HTTP_HOST'] );",
        "}",
    ]

    if multisite:
        lines.append("define( 'WP_ALLOW_MULTISITE', true );")

    lines += [
        "",
        "if ( ! defined( 'ABSPATH' ) ) {",
        "\tdefine( 'ABSPATH', __DIR__ . '/' );",
        "}",
        "",
        "require_once ABSPATH . 'wp-settings.php';",
        "",
    ]
    return "\n".join(lines)


def render_php_ini(settings: Settings) -> str:
    return (
        "; Generated by PressBox\n"
        f"memory_limit = {settings.php_memory_limit}\n"
        f"upload_max_filesize = {settings.php_upload_max_filesize}\n"
        f"post_max_size = {settings.php_upload_max_filesize}\n"
        "max_execution_time = 300\n"
        "display_errors = Off\n"
        "log_errors = On\n"
    )


def render_placeholder_index(site_name: str) -> str:
    """Served when WordPress core download is disabled (offline/testing)."""
    return (
        "<?php\n"
        "header( 'Content-Type: text/html; charset=utf-8' );\n"
        f"echo '<h1>' . htmlspecialchars( {_php_string(site_name)} ) . '</h1>';\n"
        "echo '<p>WordPress core has not been installed for this site yet.</p>';\n"
    )


def render_nginx_conf(upstream: str, ssl: bool = False, server_name: str = "_") -> str:
    """nginx vhost for container sites; upstream is the php-fpm service."""
    listen = "listen 443 ssl;\n    ssl_certificate /etc/nginx/certs/site.crt;\n    ssl_certificate_key /etc/nginx/certs/site.key;" if ssl else "listen 80;"
    return f"""server {{
    {listen}
    server_name {server_name};
    root /var/www/html;
    index index.php index.html;
    client_max_body_size 64M;

    location / {{
        try_files $uri $uri/ /index.php?$args;
    }}

    location ~ \\.php$ {{
        include fastcgi_params;
        fastcgi_pass {upstream};
        fastcgi_index index.php;
        fastcgi_param SCRIPT_FILENAME $document_root$fastcgi_script_name;
        fastcgi_param HTTPS {'on' if ssl else 'off'};
    }}
}}
"""


def render_proxy_conf(upstream: str, server_name: str = "_") -> str:
    """TLS-terminating reverse proxy in front of the wordpress service."""
    return f"""server {{
    listen 443 ssl;
    server_name {server_name};
    ssl_certificate /etc/nginx/certs/site.crt;
    ssl_certificate_key /etc/nginx/certs/site.key;
    client_max_body_size 64M;

    location / {{
        proxy_pass http://{upstream};
        proxy_set_header Host $http_host;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto https;
    }}
}}
"""


def generate_self_signed_cert(hostnames, days: int = 825) -> Tuple[bytes, bytes]:
    """
    Self-signed certificate for local SSL sites.

    Returns:
        (certificate PEM, private key PEM)
    """
    hostnames = [h for h in hostnames if h] or ["localhost"]
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "PressBox Local"),
        x509.NameAttribute(NameOID.COMMON_NAME, hostnames[0]),
    ])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(h) for h in hostnames]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def build_compose_config(
    *,
    slug: str,
    host_port: int,
    php_version: str,
    wordpress_version: str,
    web_server: str,
    database_engine: str,
    ssl: bool,
    db_name: str,
    db_user: str,
    db_password: str,
    settings: Settings,
) -> Dict[str, Any]:
    """
    docker-compose.yml for one site: db + wordpress (+ nginx) (+ TLS proxy).

    The host port is published on the loopback interface only.
    """
    network_name = f"pressbox-{slug}"
    db_image = settings.mariadb_image if database_engine == "mariadb" else settings.mysql_image
    use_fpm = web_server == "nginx"
    wp_tag_prefix = "" if wordpress_version in ("", "latest") else f"{wordpress_version}-"
    wp_image = f"wordpress:{wp_tag_prefix}php{php_version}-{'fpm' if use_fpm else 'apache'}"
    labels = {"com.pressbox.managed": "true", "com.pressbox.site": slug}

    services: Dict[str, Any] = {
        "db": {
            "image": db_image,
            "restart": "unless-stopped",
            "environment": {
                "MYSQL_DATABASE": db_name,
                "MYSQL_USER": db_user,
                "MYSQL_PASSWORD": db_password,
                "MYSQL_ROOT_PASSWORD": db_password,
                "MARIADB_DATABASE": db_name,
                "MARIADB_USER": db_user,
                "MARIADB_PASSWORD": db_password,
                "MARIADB_ROOT_PASSWORD": db_password,
            },
            "volumes": ["db_data:/var/lib/mysql"],
            "healthcheck": {
                "test": ["CMD-SHELL", "mysqladmin ping -h 127.0.0.1 --silent || healthcheck.sh --connect"],
                "interval": "5s",
                "timeout": "5s",
                "retries": 20,
            },
            "networks": [network_name],
            "labels": labels,
        },
        "wordpress": {
            "image": wp_image,
            "restart": "unless-stopped",
            "depends_on": {"db": {"condition": "service_healthy"}},
            "environment": {
                "WORDPRESS_DB_HOST": "db:3306",
                "WORDPRESS_DB_NAME": db_name,
                "WORDPRESS_DB_USER": db_user,
                "WORDPRESS_DB_PASSWORD": db_password,
                # "$$" escapes compose interpolation
                "WORDPRESS_CONFIG_EXTRA": (
                    f"define('WP_HOME', '{'https' if ssl else 'http'}://' . $$_SERVER['HTTP_HOST']);\n"
                    f"define('WP_SITEURL', '{'https' if ssl else 'http'}://' . $$_SERVER['HTTP_HOST']);\n"
                ),
            },
            "volumes": ["./wordpress:/var/www/html"],
            "networks": [network_name],
            "labels": labels,
        },
    }

    published = f"{settings.loopback_ip}:{host_port}"

    if use_fpm:
        services["nginx"] = {
            "image": settings.nginx_image,
            "restart": "unless-stopped",
            "depends_on": ["wordpress"],
            "volumes": [
                "./wordpress:/var/www/html:ro",
                "./nginx/default.conf:/etc/nginx/conf.d/default.conf:ro",
            ] + (["./certs:/etc/nginx/certs:ro"] if ssl else []),
            "ports": [f"{published}:{443 if ssl else 80}"],
            "networks": [network_name],
            "labels": labels,
        }
    elif ssl:
        services["proxy"] = {
            "image": settings.nginx_image,
            "restart": "unless-stopped",
            "depends_on": ["wordpress"],
            "volumes": [
                "./nginx/proxy.conf:/etc/nginx/conf.d/default.conf:ro",
                "./certs:/etc/nginx/certs:ro",
            ],
            "ports": [f"{published}:443"],
            "networks": [network_name],
            "labels": labels,
        }
    else:
        services["wordpress"]["ports"] = [f"{published}:80"]

    return {
        "name": slug,
        "services": services,
        "networks": {network_name: {"driver": "bridge", "name": network_name}},
        "volumes": {"db_data": {}},
    }
