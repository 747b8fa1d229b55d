"""orgguard: authorization and rate limiting for multi-tenant organization APIs."""

__version__ = "0.1.0"
