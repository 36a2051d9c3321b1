"""
Aggregation Service: weekly study time and monthly money summaries.

Both aggregates are window scans over the event collections at query
time; nothing is rolled up ahead of time. A week holds a handful of
sessions per day and a month a few hundred transactions at most, so a
scan reads at most a few pages.
"""

from collections import OrderedDict
from datetime import date, datetime, timedelta, tzinfo
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from ..models.core import STUDY_SESSIONS, TRANSACTIONS, CategorySummary, StudySession, Transaction, TransactionType
from ..utils.document_store import DocumentStore, Filter
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import ensure_aware, month_window, start_of_week, to_iso, utc_now, week_days

logger = get_logger(__name__)

ONE_MINUTE = timedelta(minutes=1)


def session_minutes(session: StudySession, now: datetime) -> int:
    """Minutes a session contributes to an aggregate.

    The recorded duration wins; otherwise the span from start to end is
    floored to whole minutes, with a missing end meaning the session is
    still running at ``now``.

    Args:
        session: Study session
        now: Reference time for sessions in progress

    Returns:
        Non-negative number of minutes
    """
    if session.duration is not None:
        return max(0, session.duration)
    if session.start_time is None:
        return 0
    end = session.end_time or ensure_aware(now)
    return max(0, (end - session.start_time) // ONE_MINUTE)


class AggregationService:
    """Computes time-windowed summaries from study sessions and transactions."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def _sessions_in_week(self, user_id: str, now: datetime) -> List[StudySession]:
        window_start = start_of_week(now)
        items = self.store.query_documents(STUDY_SESSIONS, [
            Filter('userId', '==', user_id),
            Filter('createdAt', 'between', (to_iso(window_start), to_iso(now))),
        ])
        return [StudySession.from_item(item) for item in items]

    def weekly_study_minutes(self, user_id: str, now: Optional[datetime] = None) -> int:
        """Total study minutes of the current week.

        The week runs from Monday 00:00 in the timezone of ``now`` up to and
        including ``now``; sessions are placed by their creation time.

        Args:
            user_id: Owner of the sessions
            now: Reference time (current UTC time if None)

        Returns:
            Total minutes, never negative

        Raises:
            BackendUnavailableError: If the store query fails
        """
        now = ensure_aware(now or utc_now())
        sessions = self._sessions_in_week(user_id, now)
        total = sum(session_minutes(session, now) for session in sessions)
        logger.debug(f'Weekly study time for {user_id}: {total} minutes over {len(sessions)} sessions')
        return total

    def daily_study_minutes(self, user_id: str, now: Optional[datetime] = None) -> List[Tuple[date, int]]:
        """Study minutes per day of the current week, Monday first.

        Args:
            user_id: Owner of the sessions
            now: Reference time (current UTC time if None)

        Returns:
            Seven (day, minutes) pairs
        """
        now = ensure_aware(now or utc_now())
        totals = OrderedDict((day, 0) for day in week_days(now))
        for session in self._sessions_in_week(user_id, now):
            day = session.created_at.astimezone(now.tzinfo).date()
            if day in totals:
                totals[day] += session_minutes(session, now)
        return list(totals.items())

    def _transactions_in_month(self, user_id: str, year: int, month: int, tz: Optional[tzinfo]) -> List[Transaction]:
        start, end = month_window(year, month, tz)
        filters = [Filter('userId', '==', user_id), Filter('date', 'between', (to_iso(start), to_iso(end)))]
        items = self.store.query_documents(TRANSACTIONS, filters, order_by='date')
        return [Transaction.from_item(item) for item in items]

    def monthly_summary(self, user_id: str, year: int, month: int, tz: Optional[tzinfo] = None) -> List[CategorySummary]:
        """Per-category totals of one calendar month.

        Credits count positive and debits negative towards ``net_total``;
        ``absolute_total`` sums the amounts regardless of direction. Only
        categories with at least one transaction are returned, in the order
        they first appear.

        Args:
            user_id: Owner of the transactions
            year: Four digit year
            month: Month number, 1-12
            tz: Timezone of the month boundaries (UTC if None)

        Returns:
            List of CategorySummary objects

        Raises:
            BackendUnavailableError: If the store query fails
        """
        summaries: 'OrderedDict[str, CategorySummary]' = OrderedDict()
        transactions = self._transactions_in_month(user_id, year, month, tz)
        for transaction in transactions:
            summary = summaries.setdefault(transaction.category, CategorySummary(category=transaction.category))
            summary.net_total += transaction.signed_amount
            summary.absolute_total += abs(transaction.amount)

        logger.debug(f'Monthly summary for {user_id} {year}-{month:02d}: '
                     f'{len(transactions)} transactions in {len(summaries)} categories')
        return list(summaries.values())

    def credit_debit_totals(self,
                            user_id: str,
                            year: int,
                            month: int,
                            tz: Optional[tzinfo] = None) -> Tuple[Decimal, Decimal]:
        """Total credited and total debited amounts of one calendar month."""
        credit, debit = Decimal('0'), Decimal('0')
        for transaction in self._transactions_in_month(user_id, year, month, tz):
            if transaction.transaction_type == TransactionType.CREDIT:
                credit += transaction.amount
            else:
                debit += transaction.amount
        return credit, debit

    @staticmethod
    def total_expenditure(summaries: Iterable[CategorySummary]) -> Decimal:
        """Money spent: the net debit of every category that ended in the red."""
        return sum((abs(summary.net_total) for summary in summaries if summary.net_total < 0), Decimal('0'))
