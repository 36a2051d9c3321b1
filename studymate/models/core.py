"""
Core data models for user records and activity events.

Each model maps to one document collection. Stored items carry a
``schemaVersion``; items written by older clients are upgraded by
``migrate_item`` before a model is built from them, so readers never
backfill defaults on their own.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..utils.errors import InvalidStateError
from ..utils.timestamp_utils import from_iso, to_iso

SCHEMA_VERSION = 1

USERS = 'users'
STUDY_SESSIONS = 'study_sessions'
TRANSACTIONS = 'transactions'

# Student expense categories
EXPENSE_CATEGORIES = [
    'Books & Supplies',
    'Tuition & Fees',
    'Food',
    'Housing',
    'Transportation',
    'Entertainment',
    'Technology',
    'Health',
    'Clothing',
    'Other',
]


class TransactionType(str, Enum):
    """Direction of a transaction: credits increase the balance, debits decrease it."""
    CREDIT = 'credit'
    DEBIT = 'debit'


def _to_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    return int(value)


def _to_decimal(value: Any) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class UserRecord:
    """A user's profile, study totals and social graph edges."""
    id: str
    email: str = ''
    display_name: str = ''
    study_time: int = 0  # Cumulative minutes
    weekly_study_time: int = 0  # Legacy field, never written; live values come from the aggregation service
    friends: Set[str] = field(default_factory=set)  # Symmetric relation
    friend_requests: Set[str] = field(default_factory=set)  # Inbound pending sender ids
    created_at: Optional[datetime] = None
    version: int = 0  # Bumped by the store on every write

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'UserRecord':
        item = migrate_item(USERS, item)
        return cls(id=item['id'],
                   email=item['email'],
                   display_name=item['displayName'],
                   study_time=_to_int(item['studyTime']),
                   weekly_study_time=_to_int(item['weeklyStudyTime']),
                   friends=set(item['friends']),
                   friend_requests=set(item['friendRequests']),
                   created_at=from_iso(item.get('createdAt')),
                   version=_to_int(item['version']))

    def to_item(self) -> Dict[str, Any]:
        item = {
            'id': self.id,
            'displayName': self.display_name,
            'studyTime': self.study_time,
            'weeklyStudyTime': self.weekly_study_time,
            'createdAt': to_iso(self.created_at),
            'version': self.version,
            'schemaVersion': SCHEMA_VERSION,
        }
        # email is an index key and may not be empty; empty sets are rejected outright.
        # Absent attributes read back as empty.
        if self.email:
            item['email'] = self.email
        if self.friends:
            item['friends'] = set(self.friends)
        if self.friend_requests:
            item['friendRequests'] = set(self.friend_requests)
        return item


@dataclass
class UserSummary:
    """Public view of a user, enriched with the current weekly study aggregate."""
    id: str
    display_name: str
    email: str
    study_time: int
    weekly_study_time: int

    @classmethod
    def from_record(cls, record: UserRecord, weekly_study_time: Optional[int] = None) -> 'UserSummary':
        return cls(id=record.id,
                   display_name=record.display_name,
                   email=record.email,
                   study_time=record.study_time,
                   weekly_study_time=record.weekly_study_time if weekly_study_time is None else weekly_study_time)


@dataclass
class StudySession:
    """An append-only study session event."""
    id: str
    user_id: str
    start_time: Optional[datetime]
    end_time: Optional[datetime] = None  # None while in progress
    duration: Optional[int] = None  # Minutes; computed from start/end when absent
    created_at: Optional[datetime] = None

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'StudySession':
        item = migrate_item(STUDY_SESSIONS, item)
        duration = item.get('duration')
        return cls(id=item['id'],
                   user_id=item['userId'],
                   start_time=from_iso(item.get('startTime')),
                   end_time=from_iso(item.get('endTime')),
                   duration=None if duration is None else int(duration),
                   created_at=from_iso(item.get('createdAt')))

    def to_item(self) -> Dict[str, Any]:
        item = {
            'id': self.id,
            'userId': self.user_id,
            'createdAt': to_iso(self.created_at),
            'schemaVersion': SCHEMA_VERSION,
        }
        if self.start_time is not None:
            item['startTime'] = to_iso(self.start_time)
        if self.end_time is not None:
            item['endTime'] = to_iso(self.end_time)
        if self.duration is not None:
            item['duration'] = self.duration
        return item


@dataclass
class Transaction:
    """An income or expense entry owned by one user."""
    id: str
    user_id: str
    amount: Decimal  # Always non-negative, the sign comes from transaction_type
    category: str
    description: str
    date: datetime
    transaction_type: TransactionType = TransactionType.DEBIT
    created_at: Optional[datetime] = None

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.transaction_type == TransactionType.CREDIT else -self.amount

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> 'Transaction':
        item = migrate_item(TRANSACTIONS, item)
        return cls(id=item['id'],
                   user_id=item['userId'],
                   amount=_to_decimal(item['amount']),
                   category=item['category'],
                   description=item.get('description', ''),
                   date=from_iso(item['date']),
                   transaction_type=TransactionType(item['transactionType']),
                   created_at=from_iso(item.get('createdAt')))

    def to_item(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'userId': self.user_id,
            'amount': _to_decimal(self.amount),
            'category': self.category,
            'description': self.description,
            'date': to_iso(self.date),
            'transactionType': self.transaction_type.value,
            'createdAt': to_iso(self.created_at),
            'schemaVersion': SCHEMA_VERSION,
        }


@dataclass
class CategorySummary:
    """Per-category totals of a monthly window."""
    category: str
    net_total: Decimal = Decimal('0')
    absolute_total: Decimal = Decimal('0')


# --- Schema migrations ---


def _users_v0_to_v1(item: Dict[str, Any]) -> Dict[str, Any]:
    item.setdefault('email', '')
    item.setdefault('displayName', '')
    item.setdefault('studyTime', 0)
    item.setdefault('weeklyStudyTime', 0)
    item.setdefault('version', 0)
    # Early records stored the edges as lists
    item['friends'] = set(item.get('friends') or [])
    item['friendRequests'] = set(item.get('friendRequests') or [])
    return item


def _study_sessions_v0_to_v1(item: Dict[str, Any]) -> Dict[str, Any]:
    item.setdefault('duration', None)
    return item


def _transactions_v0_to_v1(item: Dict[str, Any]) -> Dict[str, Any]:
    # Entries written before credits existed are expenses
    item['transactionType'] = item.get('transactionType') or TransactionType.DEBIT.value
    if item.get('category') not in EXPENSE_CATEGORIES:
        item['category'] = 'Other'
    return item


MIGRATIONS: Dict[str, List[Callable[[Dict[str, Any]], Dict[str, Any]]]] = {
    USERS: [_users_v0_to_v1],
    STUDY_SESSIONS: [_study_sessions_v0_to_v1],
    TRANSACTIONS: [_transactions_v0_to_v1],
}


def is_outdated(item: Dict[str, Any]) -> bool:
    """True when the item was written by an older schema and still has its old layout in the store."""
    return _to_int(item.get('schemaVersion')) < SCHEMA_VERSION


def migrate_item(collection: str, item: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade a stored item to the current schema version.

    Args:
        collection: Collection the item was read from
        item: Raw item as returned by the store

    Returns:
        A new dict at ``SCHEMA_VERSION`` with defaults filled in

    Raises:
        InvalidStateError: If the item was written by a newer schema
    """
    item = dict(item)
    version = _to_int(item.get('schemaVersion'))
    if version > SCHEMA_VERSION:
        raise InvalidStateError(f'{collection} item {item.get("id")} has schema version {version}, '
                                f'newer than supported version {SCHEMA_VERSION}')

    # Sets are absent rather than empty once written at v1
    if collection == USERS and version >= 1:
        item.setdefault('email', '')
        item.setdefault('friends', set())
        item.setdefault('friendRequests', set())

    for migration in MIGRATIONS[collection][version:SCHEMA_VERSION]:
        item = migration(item)
    item['schemaVersion'] = SCHEMA_VERSION
    return item
