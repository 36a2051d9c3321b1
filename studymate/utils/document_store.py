"""
Document store contract shared by the services and the backend implementations.
"""

import builtins
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Set, Union

from .errors import StudyMateError
from .logging_config import get_logger

logger = get_logger(__name__)

Document = Dict[str, Any]
ChangeHandler = Callable[[Optional[Document]], None]
ErrorHandler = Callable[[Exception], None]

FILTER_OPERATORS = ('==', '!=', '<', '<=', '>', '>=', 'between', 'begins_with', 'contains', 'in')


@dataclass(frozen=True)
class Filter:
    """A single query predicate, e.g. ``Filter('userId', '==', 'u1')``."""
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPERATORS:
            raise ValueError(f'Unsupported filter operator: {self.op}')


@dataclass
class FieldUpdate:
    """Field-level mutations applied atomically to one document.

    ``add_to_set`` and ``remove_from_set`` have set semantics and are safe
    under concurrent application; ``increment`` adds to a numeric field
    without reading it first. ``unset`` drops whole fields.
    """
    set: Dict[str, Any] = field(default_factory=dict)
    unset: Set[str] = field(default_factory=builtins.set)
    add_to_set: Dict[str, Set[str]] = field(default_factory=dict)
    remove_from_set: Dict[str, Set[str]] = field(default_factory=dict)
    increment: Dict[str, Union[int, Decimal]] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.set or self.unset or any(self.add_to_set.values()) or any(self.remove_from_set.values())
                    or self.increment)

    def merge(self, other: 'FieldUpdate') -> 'FieldUpdate':
        """Combine two updates to the same document into one."""
        merged = FieldUpdate(set={**self.set, **other.set}, unset=self.unset | other.unset, increment=dict(self.increment))
        for name, amount in other.increment.items():
            merged.increment[name] = merged.increment.get(name, 0) + amount
        for source, target in ((self.add_to_set, merged.add_to_set), (other.add_to_set, merged.add_to_set),
                               (self.remove_from_set, merged.remove_from_set),
                               (other.remove_from_set, merged.remove_from_set)):
            for name, values in source.items():
                target.setdefault(name, set()).update(values)
        return merged

    def apply_to(self, document: Document) -> Document:
        """Return a copy of ``document`` with this update applied locally."""
        result = dict(document)
        result.update(self.set)
        for name in self.unset:
            result.pop(name, None)
        for name, values in self.add_to_set.items():
            result[name] = set(result.get(name) or set()) | set(values)
        for name, values in self.remove_from_set.items():
            remaining = set(result.get(name) or set()) - set(values)
            if remaining:
                result[name] = remaining
            else:
                result.pop(name, None)
        for name, amount in self.increment.items():
            result[name] = (result.get(name) or 0) + amount
        return result


class DocumentTransaction:
    """Handle passed to a ``run_transaction`` body.

    Reads go through ``get`` so the commit can verify that nothing changed
    underneath them; writes are buffered and applied all-or-nothing.
    """

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, update: FieldUpdate) -> None:
        raise NotImplementedError


class DocumentStore:
    """Abstract document store.

    Implementations provide get/set/update/query/transaction primitives;
    change subscriptions are provided here on top of ``get_document``.
    """

    def __init__(self, poll_interval: float = 2.0):
        self.poll_interval = poll_interval
        self._watchers: Set['DocumentWatcher'] = set()
        self._watchers_lock = threading.Lock()

    def get_document(self, collection: str, doc_id: str) -> Optional[Document]:
        raise NotImplementedError

    def set_document(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        raise NotImplementedError

    def create_document(self, collection: str, doc_id: str, fields: Document) -> bool:
        raise NotImplementedError

    def update_document(self, collection: str, doc_id: str, update: FieldUpdate) -> Document:
        raise NotImplementedError

    def delete_document(self, collection: str, doc_id: str) -> bool:
        raise NotImplementedError

    def query_documents(self,
                        collection: str,
                        filters: List[Filter],
                        order_by: Optional[str] = None,
                        descending: bool = False,
                        limit: Optional[int] = None) -> List[Document]:
        raise NotImplementedError

    def run_transaction(self, body: Callable[[DocumentTransaction], Any]) -> Any:
        raise NotImplementedError

    def subscribe(self,
                  collection: str,
                  doc_id: str,
                  on_change: ChangeHandler,
                  on_error: Optional[ErrorHandler] = None) -> Callable[[], None]:
        """Watch one document for changes.

        ``on_change`` receives the current document (None once it is gone)
        immediately and again after every change. Handlers run on a watcher
        thread and may run concurrently with other handlers and with the
        caller, so they must not assume exclusive access to shared state.

        Args:
            collection: Collection name
            doc_id: Document ID
            on_change: Called with the document snapshot
            on_error: Called with store errors; they are logged when None

        Returns:
            Callable that cancels the subscription
        """
        watcher = DocumentWatcher(self, collection, doc_id, on_change, on_error, self.poll_interval)
        with self._watchers_lock:
            self._watchers.add(watcher)
        watcher.start()

        def unsubscribe() -> None:
            watcher.stop()
            with self._watchers_lock:
                self._watchers.discard(watcher)

        return unsubscribe

    def close(self) -> None:
        """Cancel every active subscription."""
        with self._watchers_lock:
            watchers = list(self._watchers)
            self._watchers.clear()
        for watcher in watchers:
            watcher.stop()
        logger.debug(f'Closed document store with {len(watchers)} active subscriptions')


class DocumentWatcher(threading.Thread):
    """Polls a document and reports snapshots that differ from the last one seen."""

    def __init__(self,
                 store: DocumentStore,
                 collection: str,
                 doc_id: str,
                 on_change: ChangeHandler,
                 on_error: Optional[ErrorHandler],
                 interval: float):
        super().__init__(name=f'watch-{collection}-{doc_id}', daemon=True)
        self.store = store
        self.collection = collection
        self.doc_id = doc_id
        self.on_change = on_change
        self.on_error = on_error
        self.interval = interval
        self._stopped = threading.Event()

    def stop(self) -> None:
        self._stopped.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout=self.interval + 1)

    def run(self) -> None:
        last: Optional[Document] = None
        first = True
        while not self._stopped.is_set():
            try:
                document = self.store.get_document(self.collection, self.doc_id)
                if first or document != last:
                    first = False
                    last = document
                    self.on_change(document)
            except StudyMateError as e:
                self._report(e)
            except Exception as e:
                logger.exception(f'Change handler for {self.collection}/{self.doc_id} failed')
                self._report(e)
            self._stopped.wait(self.interval)

    def _report(self, error: Exception) -> None:
        if self.on_error is not None:
            self.on_error(error)
        else:
            logger.error(f'Subscription to {self.collection}/{self.doc_id} failed: {error}')
