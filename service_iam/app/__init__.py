"""
IAM service package: the authentication and authorization engine.

- app.authn: Claim variants and the authenticator dispatch table.
- app.credentials: Password hashes, password policy, OTP second factor.
- app.challenges: Single-use reset, invitation and verification codes.
- app.tokens: Session tokens, authorization codes, OIDC session bindings
  and the signed backend credential.
- app.rbac: Directory entities, repositories and permission resolution.
- app.directory / app.oidc: External identity sources behind the shared
  resilience policy.
- app.hooks: Best-effort lifecycle notifications.
- app.main: FastAPI wiring and routes.

Importing the package performs no IO; stores and pools open in the
service startup hook.
"""
