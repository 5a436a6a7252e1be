"""
API routes - combined router from all domain modules.

Shared infrastructure (limiter, caller identity, error mapping) lives here;
every sub-router imports what it needs from this package.
"""

import os
from typing import Dict, Optional

from fastapi import APIRouter, Header, HTTPException
from slowapi import Limiter
from slowapi.util import get_remote_address

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
if IS_TEST_ENV:
    limiter = Limiter(key_func=get_remote_address)

    def no_op_limit(*args, **kwargs):
        """No-op decorator for test mode - doesn't apply any rate limiting."""
        def decorator(func):
            return func
        return decorator

    limiter.limit = lambda *args, **kwargs: no_op_limit()
else:
    limiter = Limiter(key_func=get_remote_address)

# ---------------------------------------------------------------------------
# Caller identity and result mapping
# ---------------------------------------------------------------------------
ERROR_STATUS_CODES = {
    "not_found": 404,
    "policy_violation": 403,
    "invalid_transition": 409,
    "validation": 400,
    "conflict": 409,
    "duration_mismatch": 409,
    "store_error": 500,
}


async def get_current_user_id(x_user_id: Optional[str] = Header(None)) -> str:
    """
    Caller identity, set by the auth gateway in front of this service.

    Raises:
        HTTPException: 401 if the header is missing
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id


def unwrap_result(result: Dict) -> Dict:
    """
    Return a successful BattleService result or raise the matching HTTP error.
    """
    if result.get("success"):
        return result
    status_code = ERROR_STATUS_CODES.get(result.get("error_code"), 400)
    raise HTTPException(status_code=status_code, detail=result.get("error"))


# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from battle_backend.api.routes.battles import router as battles_router  # noqa: E402

router = APIRouter()
router.include_router(battles_router)
