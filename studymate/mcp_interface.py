"""
MCP Interface Layer using fastmcp to expose the StudyMate services as tools.

Run with ``python -m studymate.mcp_interface``. The services are built
when the server starts and the store is closed when it stops.
"""
from datetime import datetime
from functools import wraps
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .services.registry import ServiceRegistry
from .utils.config import config
from .utils.document_store import DocumentStore
from .utils.dynamodb_client import DynamoDBDocumentStore
from .utils.errors import StudyMateError
from .utils.json_utils import to_jsonable
from .utils.logging_config import get_logger
from .utils.timestamp_utils import from_iso

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('StudyMate')
_registry: Optional[ServiceRegistry] = None


def init_services(store: DocumentStore) -> ServiceRegistry:
    """Build the services the tools call into."""
    global _registry
    _registry = ServiceRegistry.build(store)
    return _registry


def get_services() -> ServiceRegistry:
    if _registry is None:
        raise RuntimeError('Services are not initialized, call init_services() first')
    return _registry


def handle_tool_errors(func):
    """Log service failures and re-raise them with their error kind for the client."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except StudyMateError as e:
            logger.error(f'{func.__name__} failed ({e.kind}): {e}')
            raise Exception(f'{e.kind}: {e}') from e
        except ValueError as e:
            logger.error(f'{func.__name__} rejected its input: {e}')
            raise Exception(f'invalid_argument: {e}') from e

    return wrapper


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return from_iso(value) if value else None


# --- Users ---


@mcp.tool()
@handle_tool_errors
def register_user(caller_id: str, email: str = '', display_name: str = '') -> Dict[str, Any]:
    """Create the caller's record on first sign-in; an existing record is returned unchanged."""
    return to_jsonable(get_services().users.ensure_user(caller_id, email=email, display_name=display_name))


@mcp.tool()
@handle_tool_errors
def update_profile(caller_id: str,
                   display_name: Optional[str] = None,
                   email: Optional[str] = None) -> Dict[str, Any]:
    """Change the caller's display name and/or email. A blank email is ignored."""
    return to_jsonable(get_services().users.update_profile(caller_id, caller_id, display_name, email))


# --- Social graph ---


@mcp.tool()
@handle_tool_errors
def send_friend_request(caller_id: str, receiver_id: str) -> Dict[str, Any]:
    """Send a friend request from the caller to another user."""
    get_services().social.send_request(caller_id, caller_id, receiver_id)
    return {'status': 'sent', 'receiver_id': receiver_id}


@mcp.tool()
@handle_tool_errors
def accept_friend_request(caller_id: str, sender_id: str) -> Dict[str, Any]:
    """Accept a pending friend request addressed to the caller."""
    get_services().social.accept_request(caller_id, caller_id, sender_id)
    return {'status': 'accepted', 'friend_id': sender_id}


@mcp.tool()
@handle_tool_errors
def reject_friend_request(caller_id: str, sender_id: str) -> Dict[str, Any]:
    """Reject a pending friend request addressed to the caller."""
    get_services().social.reject_request(caller_id, caller_id, sender_id)
    return {'status': 'rejected', 'sender_id': sender_id}


@mcp.tool()
@handle_tool_errors
def remove_friend(caller_id: str, friend_id: str) -> Dict[str, Any]:
    """End a friendship on both sides."""
    get_services().social.remove_friend(caller_id, caller_id, friend_id)
    return {'status': 'removed', 'friend_id': friend_id}


@mcp.tool()
@handle_tool_errors
def list_friends(caller_id: str) -> List[Dict[str, Any]]:
    """The caller's friends with their study time this week."""
    return to_jsonable(get_services().social.list_friends(caller_id, caller_id))


@mcp.tool()
@handle_tool_errors
def list_friend_requests(caller_id: str) -> List[Dict[str, Any]]:
    """Users waiting for the caller to answer their friend request."""
    return to_jsonable(get_services().social.list_friend_requests(caller_id, caller_id))


@mcp.tool()
@handle_tool_errors
def get_leaderboard(caller_id: str) -> List[Dict[str, Any]]:
    """The caller and their friends ranked by study time this week."""
    return to_jsonable(get_services().social.leaderboard(caller_id, caller_id))


@mcp.tool()
@handle_tool_errors
def search_users(caller_id: str, query: str) -> List[Dict[str, Any]]:
    """Find users by part of their email or display name."""
    results = get_services().users.search(query, caller_id)
    return [{**to_jsonable(record), 'is_friend': is_friend} for record, is_friend in results]


# --- Study time ---


@mcp.tool()
@handle_tool_errors
def record_study_session(caller_id: str, duration_minutes: int) -> Dict[str, Any]:
    """Record a finished study session of the given length."""
    return to_jsonable(get_services().tracking.record_study_session(caller_id, caller_id, duration_minutes))


@mcp.tool()
@handle_tool_errors
def start_study_session(caller_id: str) -> Dict[str, Any]:
    """Open a study session that runs until finish_study_session is called."""
    return to_jsonable(get_services().tracking.start_study_session(caller_id, caller_id))


@mcp.tool()
@handle_tool_errors
def finish_study_session(caller_id: str, session_id: str) -> Dict[str, Any]:
    """Close one of the caller's open sessions and add its whole minutes to their study time."""
    return to_jsonable(get_services().tracking.finish_study_session(caller_id, session_id))


@mcp.tool()
@handle_tool_errors
def recent_study_sessions(caller_id: str, limit: int = 20) -> List[Dict[str, Any]]:
    """The caller's latest study sessions, newest first."""
    return to_jsonable(get_services().tracking.recent_study_sessions(caller_id, limit))


@mcp.tool()
@handle_tool_errors
def weekly_study_minutes(caller_id: str, now: Optional[str] = None) -> Dict[str, Any]:
    """Minutes studied since Monday 00:00 UTC, with a per-day breakdown; `now` is an optional ISO-8601 time."""
    services = get_services()
    reference = _parse_time(now)
    return {
        'total_minutes': services.aggregation.weekly_study_minutes(caller_id, reference),
        'days': to_jsonable(services.aggregation.daily_study_minutes(caller_id, reference)),
    }


# --- Money ---


@mcp.tool()
@handle_tool_errors
def add_transaction(caller_id: str,
                    amount: str,
                    category: str,
                    date: str,
                    transaction_type: str = 'debit',
                    description: str = '') -> Dict[str, Any]:
    """Add an income (credit) or expense (debit) entry; date is ISO-8601."""
    transaction = get_services().tracking.add_transaction(caller_id, caller_id, amount, category, description,
                                                          from_iso(date), transaction_type)
    return to_jsonable(transaction)


@mcp.tool()
@handle_tool_errors
def update_transaction(caller_id: str,
                       transaction_id: str,
                       amount: Optional[str] = None,
                       category: Optional[str] = None,
                       description: Optional[str] = None,
                       date: Optional[str] = None,
                       transaction_type: Optional[str] = None) -> Dict[str, Any]:
    """Edit fields of one of the caller's transactions; omitted fields keep their value."""
    transaction = get_services().tracking.update_transaction(caller_id, transaction_id, amount, category, description,
                                                             _parse_time(date), transaction_type)
    return to_jsonable(transaction)


@mcp.tool()
@handle_tool_errors
def delete_transaction(caller_id: str, transaction_id: str) -> Dict[str, Any]:
    """Delete one of the caller's transactions."""
    get_services().tracking.delete_transaction(caller_id, transaction_id)
    return {'status': 'deleted', 'transaction_id': transaction_id}


@mcp.tool()
@handle_tool_errors
def list_transactions(caller_id: str, category: Optional[str] = None) -> List[Dict[str, Any]]:
    """The caller's transactions, latest date first, optionally for one category."""
    return to_jsonable(get_services().tracking.list_transactions(caller_id, category))


@mcp.tool()
@handle_tool_errors
def monthly_summary(caller_id: str, year: int, month: int) -> Dict[str, Any]:
    """Net and absolute totals per category for one month (1-12)."""
    aggregation = get_services().aggregation
    summaries = aggregation.monthly_summary(caller_id, year, month)
    return {
        'categories': to_jsonable(summaries),
        'total_expenditure': to_jsonable(aggregation.total_expenditure(summaries)),
    }


@mcp.tool()
@handle_tool_errors
def credit_debit_totals(caller_id: str, year: int, month: int) -> Dict[str, Any]:
    """Total income (credit) and total spending (debit) for one month (1-12)."""
    credit, debit = get_services().aggregation.credit_debit_totals(caller_id, year, month)
    return {'credit': to_jsonable(credit), 'debit': to_jsonable(debit)}


def main() -> None:
    store = DynamoDBDocumentStore(config.dynamodb, poll_interval=config.watch.poll_interval)
    registry = init_services(store)
    try:
        mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
    finally:
        registry.close()


if __name__ == '__main__':
    main()
