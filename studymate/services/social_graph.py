"""
Social Graph Manager: friend requests and the symmetric friendship relation.

Friendship lives on both user records (``friends``); a pending request is
the sender's ID in the receiver's ``friendRequests``. Operations touching
both records run in one store transaction so that, for any users A and B,
A is in B's friends exactly when B is in A's friends.
"""

from datetime import datetime
from typing import Callable, List, Optional, Set

from ..models.core import USERS, UserRecord, UserSummary, is_outdated
from ..utils.document_store import DocumentStore, DocumentTransaction, ErrorHandler, FieldUpdate
from ..utils.errors import InvalidStateError, NotFoundError, StudyMateError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import ensure_aware, utc_now
from .access import require_caller
from .aggregation import AggregationService
from .users import upgrade_user

logger = get_logger(__name__)


class SocialGraphService:
    """Sends, accepts and rejects friend requests and maintains friend lists."""

    def __init__(self, store: DocumentStore, aggregation: AggregationService):
        """
        Initialize the social graph service.

        Args:
            store: DocumentStore holding the user records
            aggregation: Service used to enrich friends with weekly study time
        """
        self.store = store
        self.aggregation = aggregation

    def _get_user(self, user_id: str, upgrade: bool = False) -> UserRecord:
        document = self.store.get_document(USERS, user_id)
        if document is None:
            raise NotFoundError(f'User {user_id} does not exist')
        if upgrade and is_outdated(document):
            upgrade_user(self.store, user_id)
        return UserRecord.from_item(document)

    def _upgrade_outdated(self, *user_ids: str) -> None:
        # Set updates fail on edges an older schema stored as lists
        for user_id in user_ids:
            document = self.store.get_document(USERS, user_id)
            if document is not None and is_outdated(document):
                upgrade_user(self.store, user_id)

    def send_request(self, caller_id: str, sender_id: str, receiver_id: str) -> None:
        """Ask ``receiver_id`` to become friends with ``sender_id``.

        Sending the same request twice leaves a single pending entry.

        Args:
            caller_id: Authenticated user ID, must equal sender_id
            sender_id: User sending the request
            receiver_id: User receiving the request

        Raises:
            UnauthorizedError: If the caller is not the sender
            InvalidStateError: If sender and receiver are the same user or already friends
            NotFoundError: If the receiver does not exist
        """
        require_caller(caller_id, sender_id, 'send friend requests')
        if sender_id == receiver_id:
            raise InvalidStateError('Users cannot send a friend request to themselves')

        receiver = self._get_user(receiver_id, upgrade=True)
        if sender_id in receiver.friends:
            raise InvalidStateError(f'{sender_id} and {receiver_id} are already friends')

        try:
            # Set-add is atomic in the store, concurrent senders never overwrite each other
            self.store.update_document(USERS, receiver_id, FieldUpdate(add_to_set={'friendRequests': {sender_id}}))
        except StudyMateError as e:
            logger.error(f'Failed to send friend request {sender_id} -> {receiver_id}: {e}')
            raise
        logger.info(f'Friend request sent {sender_id} -> {receiver_id}')

    def accept_request(self, caller_id: str, receiver_id: str, sender_id: str) -> None:
        """Accept a pending request, making both users friends in one transaction.

        Args:
            caller_id: Authenticated user ID, must equal receiver_id
            receiver_id: User who received the request
            sender_id: User who sent it

        Raises:
            UnauthorizedError: If the caller is not the receiver
            NotFoundError: If either user does not exist
            InvalidStateError: If no request from sender_id is pending
            BackendUnavailableError: If the transaction cannot be committed
        """
        require_caller(caller_id, receiver_id, 'accept friend requests')
        self._upgrade_outdated(receiver_id, sender_id)

        def accept(tx: DocumentTransaction) -> None:
            receiver_document = tx.get(USERS, receiver_id)
            sender_document = tx.get(USERS, sender_id)
            if receiver_document is None:
                raise NotFoundError(f'User {receiver_id} does not exist')

            receiver = UserRecord.from_item(receiver_document)
            if sender_id not in receiver.friend_requests:
                raise InvalidStateError(f'No pending friend request from {sender_id} to {receiver_id}')
            if sender_document is None:
                raise NotFoundError(f'User {sender_id} does not exist')

            sender_update = FieldUpdate(add_to_set={'friends': {receiver_id}})
            # A crossed request in the other direction is settled by this acceptance
            if receiver_id in UserRecord.from_item(sender_document).friend_requests:
                sender_update.remove_from_set['friendRequests'] = {receiver_id}

            tx.update(USERS, receiver_id,
                      FieldUpdate(add_to_set={'friends': {sender_id}}, remove_from_set={'friendRequests': {sender_id}}))
            tx.update(USERS, sender_id, sender_update)

        try:
            self.store.run_transaction(accept)
        except StudyMateError as e:
            logger.error(f'Failed to accept friend request {sender_id} -> {receiver_id}: {e}')
            raise
        logger.info(f'Friend request accepted {sender_id} -> {receiver_id}')

    def reject_request(self, caller_id: str, receiver_id: str, sender_id: str) -> None:
        """Drop a pending request without creating a friendship. Idempotent.

        Raises:
            UnauthorizedError: If the caller is not the receiver
            NotFoundError: If the receiver does not exist
        """
        require_caller(caller_id, receiver_id, 'reject friend requests')
        self._upgrade_outdated(receiver_id)
        try:
            self.store.update_document(USERS, receiver_id, FieldUpdate(remove_from_set={'friendRequests': {sender_id}}))
        except StudyMateError as e:
            logger.error(f'Failed to reject friend request {sender_id} -> {receiver_id}: {e}')
            raise
        logger.info(f'Friend request rejected {sender_id} -> {receiver_id}')

    def remove_friend(self, caller_id: str, user_id: str, friend_id: str) -> None:
        """End a friendship on both records in one transaction.

        Also repairs a one-sided edge left behind by older clients. When the
        friend's record no longer exists only the caller's side is cleaned.

        Raises:
            UnauthorizedError: If the caller is not user_id
            NotFoundError: If user_id does not exist
            BackendUnavailableError: If the transaction cannot be committed
        """
        require_caller(caller_id, user_id, 'remove friends')
        self._upgrade_outdated(user_id, friend_id)

        def remove(tx: DocumentTransaction) -> None:
            if tx.get(USERS, user_id) is None:
                raise NotFoundError(f'User {user_id} does not exist')
            friend_document = tx.get(USERS, friend_id)

            tx.update(USERS, user_id, FieldUpdate(remove_from_set={'friends': {friend_id}}))
            if friend_document is not None:
                tx.update(USERS, friend_id, FieldUpdate(remove_from_set={'friends': {user_id}}))
            else:
                logger.warning(f'Friend {friend_id} of {user_id} no longer exists, removing one side only')

        try:
            self.store.run_transaction(remove)
        except StudyMateError as e:
            logger.error(f'Failed to remove friend {friend_id} from {user_id}: {e}')
            raise
        logger.info(f'Friendship removed {user_id} <-> {friend_id}')

    def _summaries(self, user_ids: Set[str], now: datetime) -> List[UserSummary]:
        summaries = []
        for user_id in sorted(user_ids):
            document = self.store.get_document(USERS, user_id)
            if document is None:
                logger.warning(f'Skipping unresolvable user {user_id}')
                continue
            record = UserRecord.from_item(document)
            summaries.append(UserSummary.from_record(record, self.aggregation.weekly_study_minutes(user_id, now)))
        return summaries

    def list_friends(self, caller_id: str, user_id: str, now: Optional[datetime] = None) -> List[UserSummary]:
        """Friends of a user with their weekly study time, in no particular order.

        Friend IDs whose record cannot be found are skipped.

        Raises:
            UnauthorizedError: If the caller is not user_id
            NotFoundError: If user_id does not exist
        """
        require_caller(caller_id, user_id, 'list friends')
        now = ensure_aware(now or utc_now())
        record = self._get_user(user_id)
        friends = self._summaries(record.friends, now)
        logger.debug(f'Resolved {len(friends)}/{len(record.friends)} friends of {user_id}')
        return friends

    def list_friend_requests(self, caller_id: str, user_id: str) -> List[UserSummary]:
        """Senders of the requests pending for a user."""
        require_caller(caller_id, user_id, 'list friend requests')
        record = self._get_user(user_id)
        senders = []
        for sender_id in sorted(record.friend_requests):
            document = self.store.get_document(USERS, sender_id)
            if document is None:
                logger.warning(f'Skipping request from unresolvable user {sender_id}')
                continue
            senders.append(UserSummary.from_record(UserRecord.from_item(document)))
        return senders

    def leaderboard(self, caller_id: str, user_id: str, now: Optional[datetime] = None) -> List[UserSummary]:
        """The user and their friends ranked by weekly study time, highest first."""
        require_caller(caller_id, user_id, 'view the leaderboard')
        now = ensure_aware(now or utc_now())
        record = self._get_user(user_id)
        entries = self._summaries(record.friends | {user_id}, now)
        return sorted(entries, key=lambda entry: (-entry.weekly_study_time, entry.display_name.lower(), entry.id))

    def subscribe_friends(self,
                          caller_id: str,
                          user_id: str,
                          on_change: Callable[[Set[str]], None],
                          on_error: Optional[ErrorHandler] = None) -> Callable[[], None]:
        """Call ``on_change`` with the user's friend IDs now and whenever they change.

        The handler runs on a background thread, possibly alongside other
        handlers; it must not assume it runs alone.

        Returns:
            Callable that cancels the subscription
        """
        require_caller(caller_id, user_id, 'watch friends')
        last: List[Optional[Set[str]]] = [None]

        def handle(document) -> None:
            friends = set() if document is None else UserRecord.from_item(document).friends
            # The record also changes for requests and study time
            if friends != last[0]:
                last[0] = friends
                on_change(set(friends))

        return self.store.subscribe(USERS, user_id, handle, on_error)
