import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

logger = logging.getLogger(__name__)

_client: Optional[firestore.Client] = None

# (field, op, value); dotted field paths reach into nested maps
Filter = Tuple[str, str, Any]


def _get_client() -> firestore.Client:
    global _client
    if _client is None:
        _client = firestore.Client()
    return _client


def _collection(name: str) -> firestore.CollectionReference:
    return _get_client().collection(name)


def _with_id(snapshot) -> Dict[str, Any]:
    data = snapshot.to_dict() or {}
    data["id"] = snapshot.id
    return data


def get_document(collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
    snapshot = _collection(collection).document(doc_id).get()
    if snapshot.exists:
        return _with_id(snapshot)
    return None


def set_document(collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
    _collection(collection).document(doc_id).set(data, merge=merge)


def add_document(collection: str, data: Dict[str, Any]) -> str:
    ref = _collection(collection).document()
    ref.set(data)
    return ref.id


def update_document(collection: str, doc_id: str, data: Dict[str, Any]) -> None:
    _collection(collection).document(doc_id).update(data)


def increment_fields(collection: str, doc_id: str, deltas: Dict[str, float]) -> None:
    """Atomically add to numeric fields, creating the document if needed."""
    payload: Dict[str, Any] = {}
    for path, amount in deltas.items():
        node = payload
        *parents, leaf = path.split(".")
        for key in parents:
            node = node.setdefault(key, {})
        node[leaf] = firestore.Increment(amount)
    _collection(collection).document(doc_id).set(payload, merge=True)


def delete_document(collection: str, doc_id: str) -> None:
    _collection(collection).document(doc_id).delete()


def query_documents(
    collection: str,
    filters: Iterable[Filter] = (),
    order_by: Optional[str] = None,
    descending: bool = False,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    query = _collection(collection)
    for field, op, value in filters:
        query = query.where(filter=FieldFilter(field, op, value))
    if order_by:
        direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
        query = query.order_by(order_by, direction=direction)
    if limit:
        query = query.limit(limit)
    return [_with_id(snapshot) for snapshot in query.stream()]


def batch_write(operations: Iterable[Tuple[str, str, str, Dict[str, Any]]]) -> None:
    """Apply ("set" | "update", collection, doc_id, data) operations atomically."""
    client = _get_client()
    batch = client.batch()
    for kind, collection, doc_id, data in operations:
        ref = client.collection(collection).document(doc_id)
        if kind == "set":
            batch.set(ref, data)
        elif kind == "update":
            batch.update(ref, data)
        else:
            raise ValueError(f"Unknown batch operation: {kind}")
    batch.commit()


def new_document_id(collection: str) -> str:
    return _collection(collection).document().id
