"""
Amazon DynamoDB document store with optimistic multi-document transactions.

Every collection is one table keyed by ``id``. Owner-scoped queries go
through global secondary indexes on ``userId``. Every write bumps the
numeric ``version`` attribute, which transactions use to detect that a
document changed between their read and their commit.
"""

from functools import wraps
from typing import Any, Callable, Dict, List, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import TypeSerializer
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import DynamoDBConfig
from .document_store import Document, DocumentStore, DocumentTransaction, FieldUpdate, Filter
from .errors import BackendUnavailableError, NotFoundError, StudyMateError
from .logging_config import get_logger

logger = get_logger(__name__)

VERSION_FIELD = 'version'

# collection -> [(index name, hash key, range key)]
INDEXES: Dict[str, List[Tuple[str, str, Optional[str]]]] = {
    'users': [('email-index', 'email', None)],
    'study_sessions': [('userId-createdAt-index', 'userId', 'createdAt')],
    'transactions': [('userId-date-index', 'userId', 'date')],
}

CONFLICT_REASONS = {'ConditionalCheckFailed', 'TransactionConflict'}


def translate_backend_errors(func):
    """Decorator turning botocore failures into BackendUnavailableError."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except StudyMateError:
            raise
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Error in {func.__name__}: {e}')
            raise BackendUnavailableError(f'Failed to {func.__name__}: {e}') from e

    return wrapper


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def _key_condition(f: Filter):
    key = Key(f.field)
    if f.op == '==':
        return key.eq(f.value)
    if f.op == 'between':
        low, high = f.value
        return key.between(low, high)
    return {'<': key.lt, '<=': key.lte, '>': key.gt, '>=': key.gte, 'begins_with': key.begins_with}[f.op](f.value)


def _attr_condition(f: Filter):
    attr = Attr(f.field)
    if f.op == 'between':
        low, high = f.value
        return attr.between(low, high)
    if f.op == 'in':
        return attr.is_in(list(f.value))
    return {
        '==': attr.eq,
        '!=': attr.ne,
        '<': attr.lt,
        '<=': attr.lte,
        '>': attr.gt,
        '>=': attr.gte,
        'begins_with': attr.begins_with,
        'contains': attr.contains,
    }[f.op](f.value)


def build_update_expression(update: FieldUpdate) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
    """Translate a FieldUpdate into a DynamoDB update expression.

    The document version is always incremented.

    Args:
        update: Field mutations

    Returns:
        Tuple of (UpdateExpression, ExpressionAttributeNames, ExpressionAttributeValues)
    """
    names: Dict[str, str] = {'#version': VERSION_FIELD}
    values: Dict[str, Any] = {':one': 1}
    set_clauses, remove_clauses, add_clauses, delete_clauses = [], [], [], []

    def placeholder(field_name: str, value: Any) -> Tuple[str, str]:
        index = len(values)
        names[f'#f{index}'] = field_name
        values[f':v{index}'] = value
        return f'#f{index}', f':v{index}'

    for field_name, value in update.set.items():
        name, ref = placeholder(field_name, value)
        set_clauses.append(f'{name} = {ref}')
    for field_name in sorted(update.unset):
        name = f'#r{len(names)}'
        names[name] = field_name
        remove_clauses.append(name)
    for field_name, members in update.add_to_set.items():
        if members:
            name, ref = placeholder(field_name, set(members))
            add_clauses.append(f'{name} {ref}')
    for field_name, amount in update.increment.items():
        name, ref = placeholder(field_name, amount)
        add_clauses.append(f'{name} {ref}')
    for field_name, members in update.remove_from_set.items():
        if members:
            name, ref = placeholder(field_name, set(members))
            delete_clauses.append(f'{name} {ref}')

    add_clauses.append('#version :one')
    expression = []
    if set_clauses:
        expression.append('SET ' + ', '.join(set_clauses))
    if remove_clauses:
        expression.append('REMOVE ' + ', '.join(remove_clauses))
    expression.append('ADD ' + ', '.join(add_clauses))
    if delete_clauses:
        expression.append('DELETE ' + ', '.join(delete_clauses))
    return ' '.join(expression), names, values


class DynamoDBTransaction(DocumentTransaction):
    """Optimistic transaction: consistent reads now, version-checked writes at commit."""

    def __init__(self, store: 'DynamoDBDocumentStore'):
        self.store = store
        self._read_versions: Dict[Tuple[str, str], Optional[int]] = {}
        self._updates: Dict[Tuple[str, str], FieldUpdate] = {}

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        document = self.store.get_document(collection, doc_id, consistent=True)
        if (collection, doc_id) not in self._read_versions:
            self._read_versions[(collection, doc_id)] = None if document is None else int(document.get(VERSION_FIELD, 0))
        return document

    def update(self, collection: str, doc_id: str, update: FieldUpdate) -> None:
        if self._read_versions.get((collection, doc_id), 0) is None:
            raise NotFoundError(f'{collection}/{doc_id} does not exist')
        key = (collection, doc_id)
        self._updates[key] = self._updates[key].merge(update) if key in self._updates else update

    @property
    def has_writes(self) -> bool:
        return bool(self._updates)

    def build_items(self) -> List[Dict[str, Any]]:
        """Build the TransactItems for TransactWriteItems."""
        serializer = TypeSerializer()
        items = []

        for (collection, doc_id), update in self._updates.items():
            expression, names, values = build_update_expression(update)
            condition = self._condition(collection, doc_id, names, values)
            items.append({
                'Update': {
                    'TableName': self.store.table_name(collection),
                    'Key': {'id': {'S': doc_id}},
                    'UpdateExpression': expression,
                    'ConditionExpression': condition,
                    'ExpressionAttributeNames': names,
                    'ExpressionAttributeValues': {k: serializer.serialize(v) for k, v in values.items()},
                }
            })

        # Documents that were only read must still be unchanged at commit time
        for collection, doc_id in self._read_versions:
            if (collection, doc_id) in self._updates:
                continue
            names, values = {}, {}
            condition = self._condition(collection, doc_id, names, values)
            check = {
                'TableName': self.store.table_name(collection),
                'Key': {'id': {'S': doc_id}},
                'ConditionExpression': condition,
                'ExpressionAttributeNames': names,
            }
            if values:
                check['ExpressionAttributeValues'] = {k: serializer.serialize(v) for k, v in values.items()}
            items.append({'ConditionCheck': check})

        return items

    def _condition(self, collection: str, doc_id: str, names: Dict[str, str], values: Dict[str, Any]) -> str:
        names['#id'] = 'id'
        key = (collection, doc_id)
        if key not in self._read_versions:
            return 'attribute_exists(#id)'
        version = self._read_versions[key]
        if version is None:
            return 'attribute_not_exists(#id)'
        names['#version'] = VERSION_FIELD
        values[':expected'] = version
        if version == 0:
            return 'attribute_exists(#id) AND (attribute_not_exists(#version) OR #version = :expected)'
        return 'attribute_exists(#id) AND #version = :expected'


class DynamoDBDocumentStore(DocumentStore):
    """DocumentStore backed by Amazon DynamoDB."""

    def __init__(self, config: DynamoDBConfig, poll_interval: float = 2.0, session: Optional[boto3.session.Session] = None):
        """
        Initialize DynamoDB clients.

        Args:
            config: DynamoDBConfig instance with connection parameters
            poll_interval: Seconds between polls of a subscribed document
            session: boto3 Session to use (a new one if None)
        """
        super().__init__(poll_interval=poll_interval)
        self.config = config
        session = session or boto3.session.Session(region_name=config.region)
        boto_config = BotoConfig(connect_timeout=config.connect_timeout,
                                 read_timeout=config.read_timeout,
                                 retries={'mode': 'standard'})

        self.resource = session.resource('dynamodb', endpoint_url=config.endpoint_url, config=boto_config)
        # Transactions use the low-level client with explicitly serialized values
        self.client = session.client('dynamodb', endpoint_url=config.endpoint_url, config=boto_config)
        self._tables: Dict[str, Any] = {}

        logger.info(f'Initialized DynamoDB document store in {config.region} (prefix: {config.table_prefix})')

    def table_name(self, collection: str) -> str:
        return f'{self.config.table_prefix}-{collection}'

    def table(self, collection: str):
        if collection not in self._tables:
            self._tables[collection] = self.resource.Table(self.table_name(collection))
        return self._tables[collection]

    @translate_backend_errors
    def get_document(self, collection: str, doc_id: str, consistent: Optional[bool] = None) -> Optional[Document]:
        """
        Fetch one document by ID.

        Args:
            collection: Collection name
            doc_id: Document ID
            consistent: Strongly consistent read (config default if None)

        Returns:
            The document, or None if it does not exist
        """
        if consistent is None:
            consistent = self.config.consistent_reads
        response = self.table(collection).get_item(Key={'id': doc_id}, ConsistentRead=consistent)
        document = response.get('Item')
        logger.debug(f'Fetched {collection}/{doc_id}: {"found" if document else "missing"}')
        return document

    @translate_backend_errors
    def set_document(self, collection: str, doc_id: str, fields: Document, merge: bool = False) -> None:
        """
        Write a document, replacing it unless ``merge`` is set.

        Args:
            collection: Collection name
            doc_id: Document ID
            fields: Document fields
            merge: Only overwrite the given fields, creating the document if needed
        """
        fields = {k: v for k, v in fields.items() if k not in ('id', VERSION_FIELD)}
        if merge:
            expression, names, values = build_update_expression(FieldUpdate(set=fields))
            self.table(collection).update_item(Key={'id': doc_id},
                                               UpdateExpression=expression,
                                               ExpressionAttributeNames=names,
                                               ExpressionAttributeValues=values)
        else:
            current = self.get_document(collection, doc_id, consistent=True)
            version = int(current.get(VERSION_FIELD, 0)) + 1 if current else 1
            self.table(collection).put_item(Item={**fields, 'id': doc_id, VERSION_FIELD: version})
        logger.debug(f'Set {collection}/{doc_id} (merge={merge})')

    @translate_backend_errors
    def create_document(self, collection: str, doc_id: str, fields: Document) -> bool:
        """
        Create a document only if it does not exist yet.

        Returns:
            True if created, False if a document with this ID already existed
        """
        item = {**fields, 'id': doc_id, VERSION_FIELD: 1}
        try:
            self.table(collection).put_item(Item=item,
                                            ConditionExpression='attribute_not_exists(#id)',
                                            ExpressionAttributeNames={'#id': 'id'})
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                logger.debug(f'{collection}/{doc_id} already exists')
                return False
            raise
        logger.debug(f'Created {collection}/{doc_id}')
        return True

    @translate_backend_errors
    def update_document(self, collection: str, doc_id: str, update: FieldUpdate) -> Document:
        """
        Atomically apply field updates to an existing document.

        Args:
            collection: Collection name
            doc_id: Document ID
            update: Field mutations (set, add/remove set members, increments)

        Returns:
            The document after the update

        Raises:
            NotFoundError: If the document does not exist
        """
        expression, names, values = build_update_expression(update)
        names['#id'] = 'id'
        try:
            response = self.table(collection).update_item(Key={'id': doc_id},
                                                          UpdateExpression=expression,
                                                          ConditionExpression='attribute_exists(#id)',
                                                          ExpressionAttributeNames=names,
                                                          ExpressionAttributeValues=values,
                                                          ReturnValues='ALL_NEW')
        except ClientError as e:
            if _error_code(e) == 'ConditionalCheckFailedException':
                raise NotFoundError(f'{collection}/{doc_id} does not exist') from e
            raise
        logger.debug(f'Updated {collection}/{doc_id}')
        return response.get('Attributes', {})

    @translate_backend_errors
    def delete_document(self, collection: str, doc_id: str) -> bool:
        """
        Delete a document.

        Returns:
            True if a document was deleted, False if none existed
        """
        response = self.table(collection).delete_item(Key={'id': doc_id}, ReturnValues='ALL_OLD')
        deleted = bool(response.get('Attributes'))
        logger.debug(f'Deleted {collection}/{doc_id}: {deleted}')
        return deleted

    @translate_backend_errors
    def query_documents(self,
                        collection: str,
                        filters: List[Filter],
                        order_by: Optional[str] = None,
                        descending: bool = False,
                        limit: Optional[int] = None) -> List[Document]:
        """
        Find documents matching all filters.

        Uses a secondary index when one of the filters is an equality on the
        index hash key, otherwise scans the table. Pages are followed until
        the result is complete or ``limit`` is reached.

        Args:
            collection: Collection name
            filters: Predicates, all of which must hold
            order_by: Field to sort by
            descending: Sort direction
            limit: Maximum number of documents to return

        Returns:
            Matching documents
        """
        index = self._pick_index(collection, filters, order_by)
        params: Dict[str, Any] = {}
        remaining = list(filters)

        if index is not None:
            index_name, hash_key, range_key = index
            hash_filter = next(f for f in remaining if f.field == hash_key and f.op == '==')
            remaining.remove(hash_filter)
            key_condition = _key_condition(hash_filter)
            range_filter = next((f for f in remaining if range_key and f.field == range_key and f.op != '!='
                                 and f.op not in ('contains', 'in')), None)
            if range_filter is not None:
                remaining.remove(range_filter)
                key_condition = key_condition & _key_condition(range_filter)
            params.update(IndexName=index_name, KeyConditionExpression=key_condition, ScanIndexForward=not descending)
        else:
            params['ConsistentRead'] = self.config.consistent_reads

        if remaining:
            condition = _attr_condition(remaining[0])
            for f in remaining[1:]:
                condition = condition & _attr_condition(f)
            params['FilterExpression'] = condition

        table = self.table(collection)
        operation = table.query if index is not None else table.scan
        documents: List[Document] = []
        while True:
            response = operation(**params)
            documents.extend(response.get('Items', []))
            last_key = response.get('LastEvaluatedKey')
            # Query results are already ordered, so a full page can stop early
            if not last_key or (limit is not None and index is not None and len(documents) >= limit):
                break
            params['ExclusiveStartKey'] = last_key

        if order_by is not None and (index is None or index[2] != order_by):
            documents.sort(key=lambda d: (d.get(order_by) is None, d.get(order_by)), reverse=descending)
        if limit is not None:
            documents = documents[:limit]

        logger.debug(f'Query on {collection} returned {len(documents)} documents')
        return documents

    def _pick_index(self, collection: str, filters: List[Filter], order_by: Optional[str]):
        equality_fields = {f.field for f in filters if f.op == '=='}
        filtered_fields = {f.field for f in filters}
        candidates = [index for index in INDEXES.get(collection, []) if index[1] in equality_fields]
        if not candidates:
            return None
        # Prefer an index whose range key serves a filter or the requested order
        for index in candidates:
            if index[2] is not None and (index[2] in filtered_fields or index[2] == order_by):
                return index
        return candidates[0]

    def run_transaction(self, body: Callable[[DocumentTransaction], Any]) -> Any:
        """
        Run ``body`` as an all-or-nothing transaction.

        The body is re-run with fresh reads when a document it read changed
        before the commit.

        Args:
            body: Callable receiving the transaction handle

        Returns:
            Whatever the body returned on the committed attempt

        Raises:
            BackendUnavailableError: If the commit keeps conflicting or the store fails
        """
        attempts = max(1, self.config.transaction_attempts)
        for attempt in range(attempts):
            transaction = DynamoDBTransaction(self)
            result = body(transaction)
            if not transaction.has_writes:
                return result

            try:
                self.client.transact_write_items(TransactItems=transaction.build_items())
                logger.debug(f'Transaction committed on attempt {attempt + 1}/{attempts}')
                return result
            except ClientError as e:
                reasons = {reason.get('Code') for reason in e.response.get('CancellationReasons', [])}
                if _error_code(e) == 'TransactionCanceledException' and reasons & CONFLICT_REASONS:
                    logger.warning(f'Transaction attempt {attempt + 1}/{attempts} conflicted: {sorted(reasons - {"None"})}')
                    continue
                logger.error(f'Transaction failed: {e}')
                raise BackendUnavailableError(f'Transaction failed: {e}') from e
            except BotoCoreError as e:
                logger.error(f'Transaction failed: {e}')
                raise BackendUnavailableError(f'Transaction failed: {e}') from e

        raise BackendUnavailableError(f'Transaction did not commit after {attempts} attempts')

    @translate_backend_errors
    def create_tables_if_not_exist(self) -> Dict[str, str]:
        """
        Create the collection tables and their secondary indexes.

        Returns:
            Mapping of table name to 'created' or 'exists'
        """
        results = {}
        for collection, indexes in INDEXES.items():
            table_name = self.table_name(collection)
            attributes = {'id'}
            gsis = []
            for index_name, hash_key, range_key in indexes:
                key_schema = [{'AttributeName': hash_key, 'KeyType': 'HASH'}]
                attributes.add(hash_key)
                if range_key:
                    key_schema.append({'AttributeName': range_key, 'KeyType': 'RANGE'})
                    attributes.add(range_key)
                gsis.append({'IndexName': index_name, 'KeySchema': key_schema, 'Projection': {'ProjectionType': 'ALL'}})

            try:
                self.client.create_table(TableName=table_name,
                                         KeySchema=[{'AttributeName': 'id', 'KeyType': 'HASH'}],
                                         AttributeDefinitions=[{'AttributeName': name, 'AttributeType': 'S'}
                                                               for name in sorted(attributes)],
                                         GlobalSecondaryIndexes=gsis,
                                         BillingMode='PAY_PER_REQUEST')
            except ClientError as e:
                if _error_code(e) == 'ResourceInUseException':
                    logger.debug(f'Table {table_name} already exists')
                    results[table_name] = 'exists'
                    continue
                raise

            self.client.get_waiter('table_exists').wait(TableName=table_name)
            logger.info(f'Created table {table_name}')
            results[table_name] = 'created'
        return results

    def health_check(self) -> bool:
        """
        Perform a health check on the DynamoDB tables.

        Returns:
            True if every table is active, False otherwise
        """
        try:
            for collection in INDEXES:
                status = self.client.describe_table(TableName=self.table_name(collection))['Table']['TableStatus']
                if status != 'ACTIVE':
                    logger.warning(f'Table {self.table_name(collection)} is {status}')
                    return False
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f'DynamoDB health check failed: {e}')
            return False
