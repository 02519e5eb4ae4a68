"""Configuration module for certmail.

All connection details and credentials are collected into one Config value at
startup and passed down explicitly; nothing below this module reads the
environment.
"""

import os
import sys
import typing as t
from email.utils import formataddr

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

from certmail.errors import ConfigurationError
from certmail.payload import DEFAULT_MAX_DOCUMENT_SIZE, MIN_DOCUMENT_SIZE
from certmail.templating import DEFAULT_ORGANIZATION


class StrictBaseModel(BaseModel):
    """Base model with immutable (frozen) configuration."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class SmtpConfig(StrictBaseModel):
    """Outbound mail account and submission endpoint.

    Attributes:
        host: Submission hostname (implicit TLS)
        port: Submission port
        username: Account login
        password: Account secret
        from_name: Display name of the From header
        from_address: Address of the From header and the MAIL FROM envelope
        timeout: Seconds to wait for connection setup and for each socket read
        max_read_attempts: Reads allowed while collecting a single reply
        local_hostname: Name announced in EHLO (defaults to the local FQDN)
        auth_initial_response: Send the username on the AUTH LOGIN line
    """

    host: str = Field(default="smtp.titan.email", alias="HOST")
    port: int = Field(default=465, alias="PORT", gt=0, lt=65536)
    username: str = Field(default="", alias="USERNAME")
    password: SecretStr = Field(default=SecretStr(""), alias="PASSWORD")
    from_name: str = Field(default="", alias="FROM_NAME")
    from_address: str = Field(default="", alias="FROM_ADDRESS")
    timeout: float = Field(default=30.0, alias="TIMEOUT", gt=0)
    max_read_attempts: int = Field(default=10, alias="MAX_READ_ATTEMPTS", gt=0)
    local_hostname: t.Optional[str] = Field(default=None, alias="LOCAL_HOSTNAME")
    auth_initial_response: bool = Field(default=True, alias="AUTH_INITIAL_RESPONSE")

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        """Reject empty or whitespace-containing hostnames."""
        if not v or any(c.isspace() for c in v):
            raise ValueError(f"Invalid SMTP host: '{v}'")
        return v

    @property
    def envelope_from(self) -> str:
        """Bare sender address, falling back to the login name."""
        return self.from_address or self.username

    @property
    def sender(self) -> str:
        """Value of the From header, e.g. 'Institute <support@example.com>'."""
        return formataddr((self.from_name, self.envelope_from), charset="utf-8")

    def require_secret(self) -> None:
        """Fail before any connection attempt if the account is unusable.

        Raises:
            ConfigurationError: If the password, username or endpoint is missing.
        """
        if not self.password.get_secret_value():
            raise ConfigurationError("SMTP password is not configured")
        if not self.username:
            raise ConfigurationError("SMTP username is not configured")
        if not self.envelope_from:
            raise ConfigurationError("Sender address is not configured")


class DeliveryConfig(StrictBaseModel):
    """Retry, pacing and payload limits of the delivery pipeline.

    Attributes:
        max_attempts: Connection cycles per recipient before giving up
        retry_delay: Base delay in seconds, multiplied by the attempt number
        batch_delay: Pause in seconds between recipients of one batch
        workers: Size of the background worker pool
        min_attachment_bytes: Smallest acceptable decoded certificate
        max_attachment_bytes: Largest acceptable decoded certificate
        check_magic: Compare the decoded header against the PDF signature
        organization: Name signing the email bodies
    """

    max_attempts: int = Field(default=3, alias="MAX_ATTEMPTS", gt=0)
    retry_delay: float = Field(default=1.0, alias="RETRY_DELAY", ge=0)
    batch_delay: float = Field(default=1.0, alias="BATCH_DELAY", ge=0)
    workers: int = Field(default=1, alias="WORKERS", gt=0)
    min_attachment_bytes: int = Field(default=MIN_DOCUMENT_SIZE, alias="MIN_ATTACHMENT_BYTES", ge=0)
    max_attachment_bytes: int = Field(
        default=DEFAULT_MAX_DOCUMENT_SIZE, alias="MAX_ATTACHMENT_BYTES", gt=0
    )
    check_magic: bool = Field(default=True, alias="CHECK_MAGIC")
    organization: str = Field(default=DEFAULT_ORGANIZATION, alias="ORGANIZATION")


class TelemetryConfig(StrictBaseModel):
    """OpenTelemetry configuration for application tracing.

    Attributes:
        enabled: Enable or disable telemetry tracing
        endpoint: OTLP endpoint URL (e.g., http://localhost:4317)
        console_export: Export traces to console for debugging
        timeout: Timeout in seconds for exporter (default: 10)
        deployment_environment: Deployment environment (e.g., production, staging, dev)
        service_instance_id: Service instance ID (auto-generated if not provided)
    """

    enabled: bool = Field(default=False, alias="enabled")
    endpoint: t.Optional[str] = Field(default=None, alias="endpoint")
    console_export: bool = Field(default=False, alias="console_export")
    timeout: int = Field(default=10, alias="timeout", gt=0)
    deployment_environment: t.Optional[str] = Field(default=None, alias="deployment_environment")
    service_instance_id: t.Optional[str] = Field(default=None, alias="service_instance_id")

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v: t.Optional[str]) -> t.Optional[str]:
        """Validate endpoint URL format."""
        if v is None:
            return v

        from urllib.parse import urlparse

        parsed = urlparse(v)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValueError(f"Invalid endpoint: '{v}'. Must be http(s)://host[:port]")

        return v


# Environment variable -> SmtpConfig alias
SMTP_ENVIRONMENT: dict[str, str] = {
    "SMTP_HOST": "HOST",
    "SMTP_PORT": "PORT",
    "SMTP_USERNAME": "USERNAME",
    "SMTP_PASSWORD": "PASSWORD",
    "SMTP_FROM_NAME": "FROM_NAME",
    "SMTP_FROM_ADDRESS": "FROM_ADDRESS",
    "SMTP_TIMEOUT": "TIMEOUT",
}


class Config(StrictBaseModel):
    """Main application configuration.

    Attributes:
        app_name: Application name
        smtp: Outbound mail account
        delivery: Retry and pacing settings
        telemetry: OpenTelemetry configuration
        debug: Enable debug mode
        testing: Enable testing mode
    """

    app_name: str = Field(default="certmail", alias="APP_NAME")
    smtp: SmtpConfig = Field(default_factory=SmtpConfig, alias="SMTP")
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig, alias="DELIVERY")
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig, alias="TELEMETRY")
    debug: bool = Field(default=False, alias="DEBUG")
    testing: bool = Field(default=False, alias="TESTING")

    @classmethod
    def parse_yaml(cls, path: str) -> "Config":
        """Parse configuration from YAML file.

        Environment variables listed in SMTP_ENVIRONMENT override the SMTP
        section, so the secret never has to live in the file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Validated Config instance

        Raises:
            SystemExit: If config file is not found
        """
        try:
            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}
        except FileNotFoundError:
            print(f"Config file not found: {path}", file=sys.stderr)
            raise SystemExit(1)
        return cls.from_env(os.environ, base=raw)

    @classmethod
    def from_env(
        cls, environ: t.Mapping[str, str], base: t.Optional[dict[str, t.Any]] = None
    ) -> "Config":
        """Build a Config from environment-style variables.

        Args:
            environ: Mapping to read SMTP_* variables from
            base: Optional raw configuration the variables are layered on

        Returns:
            Validated Config instance
        """
        raw = dict(base or {})
        smtp = dict(raw.get("SMTP") or {})
        for variable, alias in SMTP_ENVIRONMENT.items():
            if environ.get(variable):
                smtp[alias] = environ[variable]
        raw["SMTP"] = smtp
        return cls.model_validate(raw)
