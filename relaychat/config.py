"""Client settings from the environment (.env supported) and the TLS context."""

import os
import ssl
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    relay_host: str = "127.0.0.1"
    relay_port: int = 6000
    ca_cert: Optional[str] = None
    client_cert: Optional[str] = None
    client_key: Optional[str] = None
    server_hostname: Optional[str] = None
    log_level: str = "INFO"
    mysql_host: str = "127.0.0.1"
    mysql_user: Optional[str] = None
    mysql_password: Optional[str] = None
    mysql_database: Optional[str] = None

    @property
    def use_mysql(self) -> bool:
        return bool(self.mysql_user and self.mysql_database)


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Loads .env (without overriding the real environment) and reads the settings."""
    load_dotenv(env_file)
    return Settings(
        relay_host=os.getenv("RELAY_HOST", "127.0.0.1"),
        relay_port=int(os.getenv("RELAY_PORT", "6000")),
        ca_cert=os.getenv("RELAY_CA_CERT") or None,
        client_cert=os.getenv("RELAY_CLIENT_CERT") or None,
        client_key=os.getenv("RELAY_CLIENT_KEY") or None,
        server_hostname=os.getenv("RELAY_SERVER_NAME") or None,
        log_level=os.getenv("RELAYCHAT_LOG_LEVEL", "INFO").upper(),
        mysql_host=os.getenv("MYSQL_HOST", "127.0.0.1"),
        mysql_user=os.getenv("MYSQL_USER"),
        mysql_password=os.getenv("MYSQL_PASSWORD"),
        mysql_database=os.getenv("MYSQL_DATABASE"),
    )


def build_tls_context(settings: Settings) -> Optional[ssl.SSLContext]:
    """
    Returns a client TLS context trusting the configured CA and presenting
    the client certificate, or None when no CA is configured (plain TCP).
    """
    if not settings.ca_cert:
        return None
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH, cafile=settings.ca_cert)
    if settings.client_cert:
        context.load_cert_chain(settings.client_cert, settings.client_key)
    if not settings.server_hostname:
        # Relay certs are issued to a service name, not the dial address.
        context.check_hostname = False
    return context
