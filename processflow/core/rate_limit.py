from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

from processflow.config import settings

limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)
