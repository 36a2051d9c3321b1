"""
Test fixtures for StudyMate.

Provides an in-memory document store with the same contract as the
DynamoDB store (versioned documents, conditional create, optimistic
transactions) plus service and seeded-user fixtures on top of it.
"""

import copy
import os
import threading
import time
from datetime import datetime, timezone

import pytest

# Keep boto3 away from real credentials and endpoints
os.environ.setdefault('AWS_ACCESS_KEY_ID', 'testing')
os.environ.setdefault('AWS_SECRET_ACCESS_KEY', 'testing')
os.environ.setdefault('AWS_DEFAULT_REGION', 'us-east-1')
os.environ.setdefault('LOG_LEVEL', 'DEBUG')

from studymate.services.registry import ServiceRegistry  # noqa: E402
from studymate.utils.document_store import DocumentStore, DocumentTransaction, FieldUpdate  # noqa: E402
from studymate.utils.errors import BackendUnavailableError, NotFoundError  # noqa: E402

# Wednesday; the week started on Monday 2024-05-06
NOW = datetime(2024, 5, 8, 12, 0, tzinfo=timezone.utc)


def _matches(document, f):
    if f.field not in document:
        return f.op == '!='
    value = document[f.field]
    if f.op == '==':
        return value == f.value
    if f.op == '!=':
        return value != f.value
    if f.op == '<':
        return value < f.value
    if f.op == '<=':
        return value <= f.value
    if f.op == '>':
        return value > f.value
    if f.op == '>=':
        return value >= f.value
    if f.op == 'between':
        low, high = f.value
        return low <= value <= high
    if f.op == 'begins_with':
        return isinstance(value, str) and value.startswith(f.value)
    if f.op == 'contains':
        return f.value in value
    return value in f.value


class InMemoryTransaction(DocumentTransaction):

    def __init__(self, store):
        self.store = store
        self.read_versions = {}
        self.updates = {}

    def get(self, collection, doc_id):
        document = self.store.get_document(collection, doc_id)
        self.read_versions.setdefault((collection, doc_id), None if document is None else document['version'])
        return document

    def update(self, collection, doc_id, update):
        if self.read_versions.get((collection, doc_id), 0) is None:
            raise NotFoundError(f'{collection}/{doc_id} does not exist')
        key = (collection, doc_id)
        self.updates[key] = self.updates[key].merge(update) if key in self.updates else update


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe DocumentStore keeping every collection in a dict."""

    def __init__(self, poll_interval=0.01, transaction_attempts=5):
        super().__init__(poll_interval=poll_interval)
        self.transaction_attempts = transaction_attempts
        self.collections = {}
        self.lock = threading.RLock()
        self.commits = 0

    def _collection(self, collection):
        return self.collections.setdefault(collection, {})

    def get_document(self, collection, doc_id):
        with self.lock:
            document = self._collection(collection).get(doc_id)
            return copy.deepcopy(document)

    def set_document(self, collection, doc_id, fields, merge=False):
        with self.lock:
            documents = self._collection(collection)
            current = documents.get(doc_id)
            version = current['version'] + 1 if current else 1
            base = dict(current) if merge and current else {}
            base.update(copy.deepcopy(fields))
            base.update(id=doc_id, version=version)
            documents[doc_id] = base

    def create_document(self, collection, doc_id, fields):
        with self.lock:
            documents = self._collection(collection)
            if doc_id in documents:
                return False
            documents[doc_id] = {**copy.deepcopy(fields), 'id': doc_id, 'version': 1}
            return True

    def _apply(self, collection, doc_id, update):
        documents = self._collection(collection)
        if doc_id not in documents:
            raise NotFoundError(f'{collection}/{doc_id} does not exist')
        # DynamoDB rejects ADD and DELETE on list attributes
        for name in (*update.add_to_set, *update.remove_from_set):
            if isinstance(documents[doc_id].get(name), list):
                raise BackendUnavailableError(f'ValidationException: {name} in {collection}/{doc_id} is not a set')
        document = update.apply_to(documents[doc_id])
        document['version'] = documents[doc_id]['version'] + 1
        documents[doc_id] = document
        return copy.deepcopy(document)

    def update_document(self, collection, doc_id, update):
        with self.lock:
            return self._apply(collection, doc_id, update)

    def delete_document(self, collection, doc_id):
        with self.lock:
            return self._collection(collection).pop(doc_id, None) is not None

    def query_documents(self, collection, filters, order_by=None, descending=False, limit=None):
        with self.lock:
            documents = [copy.deepcopy(d) for d in self._collection(collection).values()
                         if all(_matches(d, f) for f in filters)]
        if order_by is not None:
            documents.sort(key=lambda d: (d.get(order_by) is None, d.get(order_by)), reverse=descending)
        if limit is not None:
            documents = documents[:limit]
        return documents

    def run_transaction(self, body):
        for _ in range(self.transaction_attempts):
            transaction = InMemoryTransaction(self)
            result = body(transaction)
            with self.lock:
                current = {key: (self._collection(key[0]).get(key[1]) or {}).get('version')
                           for key in transaction.read_versions}
                if current != transaction.read_versions:
                    continue
                for (collection, doc_id), update in transaction.updates.items():
                    if doc_id not in self._collection(collection):
                        raise NotFoundError(f'{collection}/{doc_id} does not exist')
                for (collection, doc_id), update in transaction.updates.items():
                    self._apply(collection, doc_id, update)
                if transaction.updates:
                    self.commits += 1
            return result
        raise BackendUnavailableError(f'Transaction did not commit after {self.transaction_attempts} attempts')


def wait_for(predicate, timeout=2.0):
    """Poll until predicate() is truthy; subscriptions deliver on a background thread."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return bool(predicate())


@pytest.fixture
def store():
    """Empty in-memory store, closed after the test."""
    store = InMemoryDocumentStore()
    yield store
    store.close()


@pytest.fixture
def services(store):
    """All services wired to the in-memory store."""
    return ServiceRegistry.build(store)


@pytest.fixture
def users(services):
    """Three registered users: alice, bob and carol."""
    created = NOW.replace(day=1)
    for user_id, name in (('alice', 'Alice Adams'), ('bob', 'Bob Brown'), ('carol', 'Carol Clark')):
        services.users.ensure_user(user_id, email=f'{user_id}@example.com', display_name=name, now=created)
    return ['alice', 'bob', 'carol']


@pytest.fixture
def friends(services, users):
    """alice and bob are friends."""
    services.social.send_request('alice', 'alice', 'bob')
    services.social.accept_request('bob', 'bob', 'alice')
    return ('alice', 'bob')


def raw_update(store, collection, doc_id, **kwargs):
    """Write directly to the store, e.g. to simulate data left by an older client."""
    return store.update_document(collection, doc_id, FieldUpdate(**kwargs))
