"""
api/limiter.py -- The one slowapi Limiter shared by every route module.

api/main.py mounts it (SlowAPIMiddleware + app.state.limiter) and
api/routes/v1/auth.py attaches the per-IP limits for password sign-in and
one-time-code requests. A second Limiter instance would keep its own counters
and the limits would never trip.

Counters live in process memory. Behind several workers each one counts
separately, so the effective limit is per worker.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
