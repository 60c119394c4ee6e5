"""
Connection configuration models.

Validated with pydantic at construction time; invalid settings raise
ValueError (pydantic.ValidationError) before any socket is opened.
Environment variables use the MONGOWIRE_ prefix.
"""

import os
import ssl
from typing import List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

from .auth import AuthMechanism
from .handshake import MAX_APP_NAME_BYTES

DEFAULT_PORT = 27017
MAX_POOL_SIZE_LIMIT = 200


class Host(BaseModel):
    """A single ``hostname[:port]`` endpoint"""

    model_config = ConfigDict(frozen=True)

    hostname: str = Field(min_length=1)
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)

    @classmethod
    def parse(cls, value: str) -> "Host":
        value = value.strip()
        if value.startswith("["):
            # [ipv6]:port
            address, _, rest = value[1:].partition("]")
            port = rest[1:] if rest.startswith(":") else ""
        elif value.count(":") == 1:
            address, _, port = value.partition(":")
        else:
            address, port = value, ""
        if port and not port.isdigit():
            raise ValueError(f"invalid port in host {value!r}")
        return cls(hostname=address, port=int(port) if port else DEFAULT_PORT)

    def __str__(self) -> str:
        if ":" in self.hostname:
            return f"[{self.hostname}]:{self.port}"
        return f"{self.hostname}:{self.port}"


class Credentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    username: str = Field(min_length=1)
    password: SecretStr
    mechanism: Optional[AuthMechanism] = None
    source: str = Field(default="admin", min_length=1)

    @property
    def user_namespace(self) -> str:
        return f"{self.source}.{self.username}"


class ConnectionSettings(BaseModel):
    """Everything a ConnectionPool needs to open and authenticate connections"""

    hosts: List[Host] = Field(min_length=1)
    credentials: Optional[Credentials] = None

    use_tls: bool = False
    tls_ca_file: Optional[str] = None
    verify_tls: bool = True

    max_pool_size: int = Field(default=10, ge=1)
    connect_timeout: float = Field(default=10.0, gt=0)
    socket_timeout: Optional[float] = Field(default=30.0, gt=0)
    app_name: Optional[str] = None

    @field_validator("hosts", mode="before")
    @classmethod
    def _parse_hosts(cls, value):
        if isinstance(value, str):
            value = [part for part in value.split(",") if part.strip()]
        return [Host.parse(item) if isinstance(item, str) else item for item in value]

    @field_validator("max_pool_size")
    @classmethod
    def _check_pool_size(cls, value: int) -> int:
        if value > MAX_POOL_SIZE_LIMIT:
            raise ValueError(f"max_pool_size {value} exceeds maximum {MAX_POOL_SIZE_LIMIT}")
        return value

    @field_validator("app_name")
    @classmethod
    def _check_app_name(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and len(value.encode("utf-8")) > MAX_APP_NAME_BYTES:
            raise ValueError(f"app_name exceeds maximum of {MAX_APP_NAME_BYTES} bytes")
        return value

    @model_validator(mode="after")
    def _check_tls(self) -> "ConnectionSettings":
        if self.tls_ca_file and not self.use_tls:
            raise ValueError("tls_ca_file requires use_tls=True")
        return self

    def ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.use_tls:
            return None
        context = ssl.create_default_context(cafile=self.tls_ca_file)
        if not self.verify_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    @classmethod
    def from_env(cls, prefix: str = "MONGOWIRE_",
                 environ: Optional[Mapping[str, str]] = None) -> "ConnectionSettings":
        """
        Build settings from environment variables.

        Recognized: HOSTS (comma separated), USERNAME, PASSWORD, AUTH_MECHANISM,
        AUTH_SOURCE, TLS, TLS_CA_FILE, TLS_VERIFY, MAX_POOL_SIZE,
        CONNECT_TIMEOUT, SOCKET_TIMEOUT, APP_NAME.
        """
        env = os.environ if environ is None else environ

        def get(name: str, default: Optional[str] = None) -> Optional[str]:
            return env.get(prefix + name, default)

        def flag(name: str, default: bool) -> bool:
            raw = get(name)
            if raw is None:
                return default
            return raw.strip().lower() in ("1", "true", "yes", "on")

        values = {
            "hosts": get("HOSTS", f"localhost:{DEFAULT_PORT}"),
            "use_tls": flag("TLS", False),
            "tls_ca_file": get("TLS_CA_FILE"),
            "verify_tls": flag("TLS_VERIFY", True),
            "app_name": get("APP_NAME"),
        }
        for key, name in (("max_pool_size", "MAX_POOL_SIZE"),
                          ("connect_timeout", "CONNECT_TIMEOUT"),
                          ("socket_timeout", "SOCKET_TIMEOUT")):
            raw = get(name)
            if raw is not None:
                values[key] = raw

        username = get("USERNAME")
        if username:
            values["credentials"] = Credentials(
                username=username,
                password=get("PASSWORD", ""),
                mechanism=get("AUTH_MECHANISM") or None,
                source=get("AUTH_SOURCE", "admin"),
            )
        return cls(**values)
