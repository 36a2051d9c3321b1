"""
User record lifecycle and lookups.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from ..models.core import SCHEMA_VERSION, USERS, UserRecord, is_outdated
from ..utils.document_store import DocumentStore, DocumentTransaction, FieldUpdate, Filter
from ..utils.errors import InvalidStateError, NotFoundError
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import utc_now
from .access import require_caller

logger = get_logger(__name__)

EDGE_FIELDS = ('friends', 'friendRequests')


def upgrade_user(store: DocumentStore, user_id: str) -> bool:
    """Rewrite a user record stored by an older schema in the current layout.

    Old records may keep their edges as lists, which set-add and set-remove
    updates cannot be applied to. The rewrite runs in a transaction so edges
    written concurrently are not lost.

    Args:
        store: DocumentStore holding the user records
        user_id: User to upgrade

    Returns:
        True if the record was rewritten, False if it was current or absent
    """

    def upgrade(tx: DocumentTransaction) -> bool:
        document = tx.get(USERS, user_id)
        if document is None or not is_outdated(document):
            return False
        current = UserRecord.from_item(document).to_item()
        update = FieldUpdate(set={'schemaVersion': SCHEMA_VERSION})
        for name in EDGE_FIELDS:
            if name in current:
                update.set[name] = current[name]
            elif name in document:
                update.unset.add(name)
        tx.update(USERS, user_id, update)
        return True

    upgraded = store.run_transaction(upgrade)
    if upgraded:
        logger.info(f'Upgraded user record {user_id} to schema version {SCHEMA_VERSION}')
    return upgraded


class UserService:
    """Creates user records on first sign-in and finds users by ID, email or name."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def ensure_user(self, user_id: str, email: str = '', display_name: str = '', now: Optional[datetime] = None) -> UserRecord:
        """Create the user record if this is the user's first authentication.

        Args:
            user_id: ID issued by the identity provider
            email: Email address
            display_name: Name shown to friends
            now: Creation time (current UTC time if None)

        Returns:
            The stored record, new or pre-existing
        """
        if not user_id:
            raise InvalidStateError('User ID is required')
        record = UserRecord(id=user_id, email=email.strip(), display_name=display_name.strip(), created_at=now or utc_now())
        if self.store.create_document(USERS, user_id, record.to_item()):
            logger.info(f'Created user record {user_id}')
        else:
            logger.debug(f'User record {user_id} already exists')
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> UserRecord:
        """
        Fetch one user record.

        Raises:
            NotFoundError: If no such user exists
        """
        document = self.store.get_document(USERS, user_id)
        if document is None:
            raise NotFoundError(f'User {user_id} does not exist')
        return UserRecord.from_item(document)

    def find_by_ids(self, user_ids: Iterable[str]) -> List[UserRecord]:
        """Resolve user IDs to records, skipping the ones that do not exist."""
        records = []
        for user_id in user_ids:
            document = self.store.get_document(USERS, user_id)
            if document is not None:
                records.append(UserRecord.from_item(document))
        return records

    def find_by_email(self, email: str) -> List[UserRecord]:
        """Users registered with exactly this email address."""
        email = email.strip()
        if not email:
            return []
        documents = self.store.query_documents(USERS, [Filter('email', '==', email)])
        return [UserRecord.from_item(document) for document in documents]

    def search(self, query: str, caller_id: Optional[str] = None) -> List[Tuple[UserRecord, bool]]:
        """Case-insensitive substring search on email and display name.

        Args:
            query: Text to look for
            caller_id: The searching user, excluded from the results

        Returns:
            List of (record, is_friend_of_caller) tuples
        """
        query = query.strip().lower()
        if not query:
            return []

        friends = set()
        if caller_id:
            caller = self.store.get_document(USERS, caller_id)
            if caller is not None:
                friends = UserRecord.from_item(caller).friends

        results = []
        for document in self.store.query_documents(USERS, []):
            record = UserRecord.from_item(document)
            if record.id == caller_id:
                continue
            if query in record.email.lower() or query in record.display_name.lower():
                results.append((record, record.id in friends))

        logger.debug(f'User search matched {len(results)} users')
        return results

    def update_profile(self,
                       caller_id: str,
                       user_id: str,
                       display_name: Optional[str] = None,
                       email: Optional[str] = None) -> UserRecord:
        """
        Change the display name and/or email of a user.

        Raises:
            UnauthorizedError: If the caller is not user_id
            NotFoundError: If the user does not exist
        """
        require_caller(caller_id, user_id, 'update the profile')
        changes = {}
        if display_name is not None:
            changes['displayName'] = display_name.strip()
        if email is not None and email.strip():
            changes['email'] = email.strip()
        if not changes:
            return self.get_user(user_id)

        document = self.store.update_document(USERS, user_id, FieldUpdate(set=changes))
        logger.info(f'Updated profile of {user_id}: {sorted(changes)}')
        return UserRecord.from_item(document)
