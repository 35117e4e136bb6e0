"""HTTP routers exposed by the login guard service."""

from . import lockout, otp, ratelimit, system, users

__all__ = ["lockout", "otp", "ratelimit", "system", "users"]
