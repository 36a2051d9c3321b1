"""
Recording of study sessions and money transactions.
"""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Union

from ..models.core import (EXPENSE_CATEGORIES, STUDY_SESSIONS, TRANSACTIONS, USERS, StudySession, Transaction,
                           TransactionType)
from ..utils.document_store import DocumentStore, DocumentTransaction, FieldUpdate, Filter
from ..utils.errors import InvalidStateError, NotFoundError, UnauthorizedError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import ensure_aware, to_iso, utc_now
from .access import require_caller
from .aggregation import session_minutes

logger = get_logger(__name__)


def _parse_amount(amount: Union[Decimal, int, float, str]) -> Decimal:
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise InvalidStateError(f'Invalid amount: {amount!r}')
    if not value.is_finite() or value <= 0:
        raise InvalidStateError(f'Amount must be a positive number, got {amount!r}')
    return value


def _parse_category(category: str) -> str:
    if category not in EXPENSE_CATEGORIES:
        raise InvalidStateError(f'Unknown category {category!r}, expected one of {EXPENSE_CATEGORIES}')
    return category


def _parse_type(transaction_type: Union[TransactionType, str]) -> TransactionType:
    try:
        return TransactionType(transaction_type)
    except ValueError:
        raise InvalidStateError(f'Transaction type must be credit or debit, got {transaction_type!r}')


class TrackingService:
    """Appends study sessions and manages a user's income and expense entries."""

    def __init__(self, store: DocumentStore):
        self.store = store

    # --- Study sessions ---

    def record_study_session(self,
                             caller_id: str,
                             user_id: str,
                             duration_minutes: int,
                             now: Optional[datetime] = None) -> StudySession:
        """Record a finished session and add it to the user's cumulative study time.

        Args:
            caller_id: Authenticated user ID, must equal user_id
            user_id: Owner of the session
            duration_minutes: Length of the session, at least one minute
            now: End of the session (current UTC time if None)

        Returns:
            The stored session

        Raises:
            InvalidStateError: If the session is shorter than a minute
            NotFoundError: If the user does not exist
        """
        require_caller(caller_id, user_id, 'record study sessions')
        if duration_minutes < 1:
            raise InvalidStateError('Study sessions must last at least one minute')
        now = ensure_aware(now or utc_now())

        # Counted first so a missing user leaves no orphaned session behind
        self.store.update_document(USERS, user_id, FieldUpdate(increment={'studyTime': int(duration_minutes)}))

        session = StudySession(id=uuid.uuid4().hex,
                               user_id=user_id,
                               start_time=now - timedelta(minutes=duration_minutes),
                               end_time=now,
                               duration=int(duration_minutes),
                               created_at=now)
        self.store.create_document(STUDY_SESSIONS, session.id, session.to_item())
        logger.info(f'Recorded {duration_minutes} minute study session for {user_id}')
        return session

    def start_study_session(self, caller_id: str, user_id: str, now: Optional[datetime] = None) -> StudySession:
        """Open a session without an end time; it counts as in progress until finished."""
        require_caller(caller_id, user_id, 'start study sessions')
        if self.store.get_document(USERS, user_id) is None:
            raise NotFoundError(f'User {user_id} does not exist')
        now = ensure_aware(now or utc_now())

        session = StudySession(id=uuid.uuid4().hex, user_id=user_id, start_time=now, created_at=now)
        self.store.create_document(STUDY_SESSIONS, session.id, session.to_item())
        logger.info(f'Started study session {session.id} for {user_id}')
        return session

    def finish_study_session(self, caller_id: str, session_id: str, now: Optional[datetime] = None) -> StudySession:
        """
        Close an open session and add its length to the owner's cumulative study time.

        The close and the increment commit together, conditioned on the
        session still being open, so concurrent finishes count it once.

        Raises:
            NotFoundError: If the session or its owner does not exist
            UnauthorizedError: If the caller does not own the session
            InvalidStateError: If the session was already finished
        """
        now = ensure_aware(now or utc_now())

        def finish(tx: DocumentTransaction) -> StudySession:
            document = tx.get(STUDY_SESSIONS, session_id)
            if document is None:
                raise NotFoundError(f'Study session {session_id} does not exist')
            session = StudySession.from_item(document)
            require_caller(caller_id, session.user_id, 'finish study sessions')
            if session.end_time is not None or session.duration is not None:
                raise InvalidStateError(f'Study session {session_id} is already finished')
            if tx.get(USERS, session.user_id) is None:
                raise NotFoundError(f'User {session.user_id} does not exist')

            session.end_time = now
            session.duration = session_minutes(session, now)
            tx.update(STUDY_SESSIONS, session_id,
                      FieldUpdate(set={'endTime': to_iso(now), 'duration': session.duration}))
            if session.duration:
                tx.update(USERS, session.user_id, FieldUpdate(increment={'studyTime': session.duration}))
            return session

        session = self.store.run_transaction(finish)
        logger.info(f'Finished study session {session_id} after {session.duration} minutes')
        return session

    def recent_study_sessions(self, user_id: str, limit: int = 20) -> List[StudySession]:
        """The user's latest sessions, newest first."""
        documents = self.store.query_documents(STUDY_SESSIONS, [Filter('userId', '==', user_id)],
                                               order_by='createdAt',
                                               descending=True,
                                               limit=limit)
        return [StudySession.from_item(document) for document in documents]

    # --- Transactions ---

    def add_transaction(self,
                        caller_id: str,
                        user_id: str,
                        amount: Union[Decimal, int, float, str],
                        category: str,
                        description: str,
                        date: datetime,
                        transaction_type: Union[TransactionType, str] = TransactionType.DEBIT,
                        now: Optional[datetime] = None) -> Transaction:
        """Add an income (credit) or expense (debit) entry.

        Args:
            caller_id: Authenticated user ID, must equal user_id
            user_id: Owner of the entry
            amount: Positive amount
            category: One of EXPENSE_CATEGORIES
            description: Free text
            date: Effective date
            transaction_type: credit or debit
            now: Creation time (current UTC time if None)

        Returns:
            The stored transaction

        Raises:
            InvalidStateError: If amount, category or type is invalid
        """
        require_caller(caller_id, user_id, 'add transactions')
        transaction = Transaction(id=uuid.uuid4().hex,
                                  user_id=user_id,
                                  amount=_parse_amount(amount),
                                  category=_parse_category(category),
                                  description=description.strip(),
                                  date=ensure_aware(date),
                                  transaction_type=_parse_type(transaction_type),
                                  created_at=ensure_aware(now or utc_now()))
        self.store.create_document(TRANSACTIONS, transaction.id, transaction.to_item())
        logger.info(f'Added {transaction.transaction_type.value} of {transaction.amount} ({transaction.category}) for {user_id}')
        return transaction

    def _owned_transaction(self, caller_id: str, transaction_id: str) -> Transaction:
        document = self.store.get_document(TRANSACTIONS, transaction_id)
        if document is None:
            raise NotFoundError(f'Transaction {transaction_id} does not exist')
        transaction = Transaction.from_item(document)
        if not caller_id or transaction.user_id != caller_id:
            raise UnauthorizedError(f'Transaction {transaction_id} does not belong to {caller_id or "<anonymous>"}')
        return transaction

    def update_transaction(self,
                           caller_id: str,
                           transaction_id: str,
                           amount: Optional[Union[Decimal, int, float, str]] = None,
                           category: Optional[str] = None,
                           description: Optional[str] = None,
                           date: Optional[datetime] = None,
                           transaction_type: Optional[Union[TransactionType, str]] = None) -> Transaction:
        """
        Edit fields of one of the caller's transactions.

        Raises:
            NotFoundError: If the transaction does not exist
            UnauthorizedError: If the caller does not own it
            InvalidStateError: If a new value is invalid
        """
        self._owned_transaction(caller_id, transaction_id)
        changes = {}
        if amount is not None:
            changes['amount'] = _parse_amount(amount)
        if category is not None:
            changes['category'] = _parse_category(category)
        if description is not None:
            changes['description'] = description.strip()
        if date is not None:
            changes['date'] = to_iso(date)
        if transaction_type is not None:
            changes['transactionType'] = _parse_type(transaction_type).value

        document = self.store.update_document(TRANSACTIONS, transaction_id, FieldUpdate(set=changes))
        logger.info(f'Updated transaction {transaction_id}: {sorted(changes)}')
        return Transaction.from_item(document)

    def delete_transaction(self, caller_id: str, transaction_id: str) -> None:
        """
        Delete one of the caller's transactions.

        Raises:
            NotFoundError: If the transaction does not exist
            UnauthorizedError: If the caller does not own it
        """
        self._owned_transaction(caller_id, transaction_id)
        self.store.delete_document(TRANSACTIONS, transaction_id)
        logger.info(f'Deleted transaction {transaction_id}')

    def list_transactions(self, user_id: str, category: Optional[str] = None) -> List[Transaction]:
        """The user's transactions, latest effective date first, optionally for one category."""
        filters = [Filter('userId', '==', user_id)]
        if category is not None:
            filters.append(Filter('category', '==', _parse_category(category)))
        documents = self.store.query_documents(TRANSACTIONS, filters, order_by='date', descending=True)
        return [Transaction.from_item(document) for document in documents]
