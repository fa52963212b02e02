"""Version 1 routers, mounted under /api/v1 by create_app()."""

from . import bookings, instances, waitlist

__all__ = ["bookings", "instances", "waitlist"]
