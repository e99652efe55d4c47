"""Rate limiting configuration.

Separated from main.py to avoid circular imports when endpoints
need to apply per-route rate limits. Uploaders send many chunks per file,
so the default budget is per client address and deliberately generous.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from chunked_uploads.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[get_settings().upload_rate_limit],
)
