from slowapi import Limiter
from slowapi.util import get_remote_address

from telecare.config import get_settings

# Global limiter instance reused across the app
limiter = Limiter(key_func=get_remote_address, enabled=get_settings().RATE_LIMIT_ENABLED)
