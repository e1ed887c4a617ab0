from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, check_rbac
from models import UserRole
from services.letter_errors import LetterGenerationError

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_role(request: Request, required_role: UserRole) -> dict:
    """Require specific role."""
    user = await require_auth(request)

    if not check_rbac(user.get("role"), required_role):
        logger.warning(
            f"Access denied for user {user.get('user_id')} on {request.url.path}: "
            f"requires {required_role.value}"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return user

async def require_staff(request: Request) -> dict:
    """Any practice staff member: accountants, managers and admins."""
    return await require_role(request, UserRole.ROLE_STAFF)

async def require_manager(request: Request) -> dict:
    """Template authoring is limited to managers and admins."""
    return await require_role(request, UserRole.ROLE_MANAGER)

def letter_http_error(err: LetterGenerationError) -> HTTPException:
    """Map a letter pipeline error onto its HTTP status with the structured body."""
    return HTTPException(status_code=err.status_code, detail=err.to_dict())

def actor_id(user: dict) -> str:
    """Stable id of the authenticated user for audit and letter records."""
    return user.get("user_id") or user.get("sub") or "system"
