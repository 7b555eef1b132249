from .credential_store import CredentialStore, check_password, hash_password
from .otp import OtpService
from .password_policy import PasswordPolicy

__all__ = ["CredentialStore", "OtpService", "PasswordPolicy", "check_password", "hash_password"]
