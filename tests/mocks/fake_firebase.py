"""
In-memory stand-ins for the Firestore client, Firebase Auth and a Storage bucket
Only the calls the portal makes are supported
"""

import copy
import itertools
import threading
from datetime import datetime, timedelta, timezone
from google.api_core.exceptions import FailedPrecondition, NotFound
from google.cloud.firestore import SERVER_TIMESTAMP, Increment

INDEX_ERROR_URL = 'https://console.firebase.google.com/v1/r/project/demo-portal/firestore/indexes?create_composite=Cl9wcm9qZWN0cy9kZW1v'


class FakeSnapshot:
    def __init__(self, reference, data):
        self.reference = reference
        self.id = reference.id
        self._data = data

    @property
    def exists(self):
        return self._data is not None

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeDocumentRef:
    def __init__(self, db, collection, doc_id):
        self._db = db
        self._collection = collection
        self.id = doc_id

    def get(self):
        with self._db.lock:
            data = self._db.collections[self._collection].get(self.id)
            return FakeSnapshot(self, copy.deepcopy(data))

    def set(self, data):
        with self._db.lock:
            self._db.collections[self._collection][self.id] = self._db.resolve(data, {})
        self._db.notify(self._collection)

    def update(self, data):
        with self._db.lock:
            current = self._db.collections[self._collection].get(self.id)
            if current is None:
                raise NotFound(f'No document to update: {self._collection}/{self.id}')
            for path, value in data.items():
                target = current
                parts = path.split('.')
                for part in parts[:-1]:
                    target = target.setdefault(part, {})
                target[parts[-1]] = self._db.resolve_value(value, target.get(parts[-1]))
        self._db.notify(self._collection)

    def delete(self):
        with self._db.lock:
            self._db.collections[self._collection].pop(self.id, None)
        self._db.notify(self._collection)


class FakeWatch:
    def __init__(self, db, query, callback):
        self._db = db
        self.query = query
        self.callback = callback
        self.active = True

    def fire(self):
        if self.active:
            docs = self.query.get()
            self.callback(docs, [], datetime.now(timezone.utc))

    def unsubscribe(self):
        self.active = False
        with self._db.lock:
            if self in self._db.watches:
                self._db.watches.remove(self)


class FakeQuery:
    def __init__(self, db, collection, filters=(), orders=(), limit=None):
        self._db = db
        self.collection_name = collection
        self.filters = list(filters)
        self.orders = list(orders)
        self._limit = limit

    def _copy(self, **changes):
        values = {
            'filters': self.filters,
            'orders': self.orders,
            'limit': self._limit,
        }
        values.update(changes)
        return FakeQuery(self._db, self.collection_name, **values)

    def where(self, field_path=None, op_string=None, value=None, filter=None):
        if filter is not None:
            field_path, op_string, value = filter.field_path, filter.op_string, filter.value
        return self._copy(filters=self.filters + [(field_path, op_string, value)])

    def order_by(self, field_path, direction='ASCENDING'):
        return self._copy(orders=self.orders + [(field_path, direction)])

    def limit(self, count):
        return self._copy(limit=count)

    @staticmethod
    def _matches(data, field_path, op, value):
        if field_path not in data:
            return False
        actual = data[field_path]
        if op == '==':
            return actual == value
        if op == 'in':
            return actual in value
        if op == 'not-in':
            return actual not in value
        if op == 'array_contains':
            return value in (actual or [])
        raise ValueError(f'Unsupported operator {op}')

    def get(self):
        with self._db.lock:
            self._db.queries.append(self)
            if self.filters and self.orders and not self._db.indexes_ready:
                raise FailedPrecondition(self._db.index_error_message)

            docs = [
                (doc_id, data)
                for doc_id, data in self._db.collections[self.collection_name].items()
                if all(self._matches(data, *f) for f in self.filters)
            ]
            for field_path, direction in reversed(self.orders):
                docs.sort(key=lambda item: item[1].get(field_path), reverse=direction == 'DESCENDING')
            if self._limit is not None:
                docs = docs[:self._limit]

            return [
                FakeSnapshot(FakeDocumentRef(self._db, self.collection_name, doc_id), copy.deepcopy(data))
                for doc_id, data in docs
            ]

    def stream(self):
        return iter(self.get())

    def on_snapshot(self, callback):
        watch = FakeWatch(self._db, self, callback)
        with self._db.lock:
            self._db.watches.append(watch)
        watch.fire()
        return watch


class FakeCollection(FakeQuery):
    def __init__(self, db, name):
        super().__init__(db, name)

    def document(self, doc_id=None):
        if doc_id is None:
            doc_id = self._db.new_id()
        return FakeDocumentRef(self._db, self.collection_name, doc_id)

    def add(self, data):
        ref = self.document()
        ref.set(data)
        return self._db.clock, ref


class FakeFirestore:
    """Firestore client double; ordered+filtered queries fail until indexes_ready"""

    def __init__(self, indexes_ready=True):
        self.collections = {}
        self.indexes_ready = indexes_ready
        self.index_error_message = (
            'The query requires an index. You can create it here: ' + INDEX_ERROR_URL
        )
        self.watches = []
        self.queries = []
        self.lock = threading.RLock()
        self.clock = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        self._ids = itertools.count(1)

    def collection(self, name):
        with self.lock:
            self.collections.setdefault(name, {})
        return FakeCollection(self, name)

    def new_id(self):
        return f'doc{next(self._ids):04d}'

    def tick(self):
        """Advance the server clock one second and return it"""
        with self.lock:
            self.clock += timedelta(seconds=1)
            return self.clock

    def resolve_value(self, value, current):
        if value is SERVER_TIMESTAMP:
            return self.tick()
        if isinstance(value, Increment):
            return (current or 0) + value.value
        if isinstance(value, dict):
            return self.resolve(value, current if isinstance(current, dict) else {})
        return copy.deepcopy(value)

    def resolve(self, data, current):
        return {key: self.resolve_value(value, current.get(key)) for key, value in data.items()}

    def notify(self, collection):
        with self.lock:
            watches = [w for w in self.watches if w.query.collection_name == collection]
        for watch in watches:
            watch.fire()

    # Test helpers

    def seed(self, collection, doc_id, data):
        with self.lock:
            self.collections.setdefault(collection, {})[doc_id] = copy.deepcopy(data)
        return doc_id

    def docs(self, collection):
        with self.lock:
            return copy.deepcopy(self.collections.get(collection, {}))


class FakeUserRecord:
    def __init__(self, uid, email, display_name):
        self.uid = uid
        self.email = email
        self.display_name = display_name


class FakeAuth:
    """Replaces firebase_admin.auth inside utils.portal_auth"""

    class EmailAlreadyExistsError(Exception):
        pass

    def __init__(self):
        self.users = {}
        self._ids = itertools.count(1)

    def create_user(self, email=None, password=None, display_name=None, app=None):
        if any(user.email == email for user in self.users.values()):
            raise self.EmailAlreadyExistsError(f'{email} already exists')
        uid = f'uid{next(self._ids):03d}'
        self.users[uid] = FakeUserRecord(uid, email, display_name)
        return self.users[uid]

    def delete_user(self, uid, app=None):
        self.users.pop(uid)


class FakeBlob:
    def __init__(self, bucket, name):
        self.bucket = bucket
        self.name = name
        self.data = None
        self.content_type = None
        self.public = False

    def upload_from_string(self, data, content_type=None):
        self.data = data
        self.content_type = content_type
        self.bucket.blobs[self.name] = self

    def make_public(self):
        self.public = True

    @property
    def public_url(self):
        return f'https://storage.googleapis.com/{self.bucket.name}/{self.name}'


class FakeBucket:
    def __init__(self, name='demo-portal.appspot.com'):
        self.name = name
        self.blobs = {}

    def blob(self, name):
        return FakeBlob(self, name)
