"""
api/limiter.py -- The one slowapi Limiter shared by the whole app.

api/main.py mounts it (SlowAPIMiddleware + app.state.limiter) and
api/routes/v1/auth.py attaches the login and refresh limits to it. A second
Limiter instance would keep its own counters and its limits would never be
reached through the middleware.

Counters live in process memory; several workers or instances each count
separately unless storage_uri points at a shared backend (e.g. redis://).
Tests call limiter.reset() between cases.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
