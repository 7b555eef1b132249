from .signup import SignUpRequest, SignUpService

__all__ = ["SignUpRequest", "SignUpService"]
