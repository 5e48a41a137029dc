"""Security components: RBAC, sessions, API keys, two-factor auth and lockout."""
