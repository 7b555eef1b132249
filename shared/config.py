"""
Shared configuration management for the IAM service.
"""

from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PasswordPolicySettings(BaseModel):
    """Rules enforced whenever a password credential is set."""

    min_length: int = Field(default=8, ge=1)
    max_length: int = Field(default=256, ge=1)
    require_digit: bool = True
    require_upper: bool = False
    require_lower: bool = False
    require_symbol: bool = False
    pattern: Optional[str] = None
    # 0 disables account locking
    num_of_trials_until_lock: int = Field(default=10, ge=0)


class VerificationPolicySettings(BaseModel):
    """TTLs (seconds) for single-use challenges."""

    reset_expires: int = Field(default=3600, gt=0)
    invitation_expires: int = Field(default=86400, gt=0)
    profile_verification_expires: int = Field(default=86400, gt=0)


class OtpSettings(BaseModel):
    """TOTP parameters."""

    digits: int = Field(default=6, ge=6, le=10)
    interval: int = Field(default=30, gt=0)
    valid_window: int = Field(default=1, ge=0)
    issuer: str = "iam"


class RetrySettings(BaseModel):
    """Retry policy for external calls."""

    max_attempts: int = Field(default=3, ge=1)
    base_delay: float = Field(default=1.0, ge=0.0)
    max_delay: float = Field(default=10.0, ge=0.0)
    exponential_base: float = Field(default=2.0, ge=1.0)
    jitter: bool = True


class CircuitBreakerSettings(BaseModel):
    """Circuit breaker thresholds."""

    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=3, ge=1)
    recovery_timeout: float = Field(default=5.0, ge=0.0)


class LdapSettings(BaseModel):
    """LDAP directory connection settings."""

    url: Optional[str] = None
    user_dn_template: str = "uid={account},ou=people,dc=example,dc=com"
    base_dn: str = "dc=example,dc=com"
    group_filter: str = "(&(objectClass=groupOfNames)(member={user_dn}))"
    timeout: float = Field(default=10.0, gt=0.0)
    auto_provision: bool = False
    sync_groups: bool = True


class OidcProviderSettings(BaseModel):
    """An external OpenID Connect provider."""

    name: str
    client_id: str
    client_secret: str
    token_endpoint: str
    jwks_uri: Optional[str] = None
    issuer: Optional[str] = None
    redirect_uri: Optional[str] = None
    scope: str = "openid"
    algorithms: List[str] = Field(default_factory=lambda: ["RS256"])


class IamConfig(BaseSettings):
    """Service configuration loaded from IAM_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IAM_",
        env_nested_delimiter="__",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    service_name: str = "iam"
    env: str = "local"
    log_level: str = "info"
    host: str = "0.0.0.0"
    port: int = 8020

    # Token lifecycle
    token_expires: int = Field(default=1800, gt=0)
    authorization_code_expires: int = Field(default=60, gt=0)
    oidc_session_expires: int = Field(default=180, gt=0)
    token_name: str = "IAM_TOKEN"
    backend_header_name: str = "X-Iam-Credential"
    backend_credential_key: Optional[str] = None
    backend_credential_expires: int = Field(default=300, gt=0)

    # Features
    password_enabled: bool = True
    sign_up_enabled: bool = True

    # Management routes require permissions in this application/realm
    admin_application: str = "iam"
    admin_realm: str = "iam"
    bootstrap_admin_account: Optional[str] = None
    bootstrap_admin_password: Optional[str] = None

    # Policies
    password_policy: PasswordPolicySettings = Field(default_factory=PasswordPolicySettings)
    verification_policy: VerificationPolicySettings = Field(default_factory=VerificationPolicySettings)
    otp: OtpSettings = Field(default_factory=OtpSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    ldap_circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)

    # External identity sources
    ldap: LdapSettings = Field(default_factory=LdapSettings)
    oidc_providers: List[OidcProviderSettings] = Field(default_factory=list)

    # Backing stores
    kvs_backend: str = Field(default="memory", pattern="^(memory|redis)$")
    redis_url: str = "redis://localhost:6379/0"
    repository_backend: str = Field(default="memory", pattern="^(memory|postgres)$")
    postgres_dsn: str = "postgres://localhost:5432/iam"

    # HTTP surface
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    hook_timeout: float = Field(default=5.0, gt=0.0)


def get_config(**overrides) -> IamConfig:
    """Load configuration from the environment, applying explicit overrides."""
    return IamConfig(**overrides)
