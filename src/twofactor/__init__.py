"""twofactor — TOTP two-factor authentication with recoverable backup codes."""

__version__ = "0.1.0"
