"""
Caller identity checks shared by the services.
"""

from ..utils.errors import UnauthorizedError


def require_caller(caller_id: str, actor_id: str, action: str) -> None:
    """Ensure the authenticated caller is the user the operation acts for.

    Args:
        caller_id: Authenticated user ID
        actor_id: User ID the operation acts on behalf of
        action: Operation name for the error message

    Raises:
        UnauthorizedError: If the caller is missing or differs from the actor
    """
    if not caller_id or caller_id != actor_id:
        raise UnauthorizedError(f'Caller {caller_id or "<anonymous>"} may not {action} for user {actor_id}')
