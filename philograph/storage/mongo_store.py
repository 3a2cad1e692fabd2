"""
PhiloGraph - MongoDocumentStore

Document store adapter on MongoDB. Theses live in the `theses` collection,
SynthesisProvenance in `synthesis_provenance`. Documents carry their own
string ids (thesis_id, provenance_id) under unique indexes; concept_id is
indexed for batched reads, element_id is unique (one provenance record per
element).

Batch writes (create_theses, create_provenance, delete_*) run inside one
multi-document transaction, so each is atomic from the coordinator's point
of view. Transactions need a replica set (a single-node one is enough).
"""

from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional
import logging

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.errors import (
    BulkWriteError,
    ConnectionFailure,
    DuplicateKeyError,
    ExecutionTimeout,
    PyMongoError,
)

from philograph.core.errors import ConflictError, NotFoundError, UnavailableError
from philograph.core.models import SynthesisProvenance, Thesis, new_id, utcnow
from philograph.storage.base import DocumentStore
from philograph.storage.memory_store import THESIS_MUTABLE_FIELDS

logger = logging.getLogger(__name__)

THESES = 'theses'
PROVENANCE = 'synthesis_provenance'

DUPLICATE_KEY = 11000


@contextmanager
def translate_errors(operation: str) -> Iterator[None]:
    """
    Map pymongo errors onto the store error kinds.

    Duplicate keys are ConflictError; connection loss, server selection and
    operation timeouts, and transient transaction aborts are UnavailableError.
    """
    try:
        yield
    except DuplicateKeyError as e:
        raise ConflictError(f"{operation}: duplicate key") from e
    except BulkWriteError as e:
        codes = {error.get('code') for error in e.details.get('writeErrors', [])}
        if DUPLICATE_KEY in codes:
            raise ConflictError(f"{operation}: duplicate key") from e
        raise
    except (ConnectionFailure, ExecutionTimeout) as e:
        logger.warning(f"MongoDB unavailable during {operation}: {e}")
        raise UnavailableError(f"{operation}: document store unavailable") from e
    except PyMongoError as e:
        if e.has_error_label('TransientTransactionError'):
            raise UnavailableError(f"{operation}: transient transaction error") from e
        raise


def _thesis_document(thesis: Thesis) -> Dict[str, Any]:
    return {
        'thesis_id': thesis.id or new_id(),
        'concept_id': thesis.concept_id,
        'type': thesis.type,
        'content': thesis.content,
        'style': thesis.style,
        'related_category_ids': list(thesis.related_category_ids),
        'parent_thesis_ids': list(thesis.parent_thesis_ids),
        'created_at': utcnow(),
    }


def _to_thesis(document: Dict[str, Any]) -> Thesis:
    data = {k: v for k, v in document.items() if k not in ('_id', 'thesis_id')}
    return Thesis.from_dict({**data, 'id': document['thesis_id']})


def _provenance_document(record: SynthesisProvenance) -> Dict[str, Any]:
    document = replace(record, id=record.id or new_id(), created_at=utcnow()).to_dict()
    document['provenance_id'] = document.pop('id')
    return document


def _to_provenance(document: Dict[str, Any]) -> SynthesisProvenance:
    data = {k: v for k, v in document.items() if k not in ('_id', 'provenance_id')}
    return SynthesisProvenance.from_dict({**data, 'id': document['provenance_id']})


class MongoDocumentStore(DocumentStore):
    """
    MongoDB-backed DocumentStore.

    Usage:
        store = MongoDocumentStore.connect(uri, 'philograph')
        store.ensure_indexes()
    """

    def __init__(self, db: Any):
        """
        Args:
            db: pymongo.database.Database
        """
        self.db = db
        self.client = db.client
        self.theses = db[THESES]
        self.provenance = db[PROVENANCE]
        logger.debug("MongoDocumentStore initialized")

    @classmethod
    def connect(cls, uri: str, database: str, timeout: float = 10.0) -> 'MongoDocumentStore':
        """timeout (seconds) bounds server selection, connects and socket reads."""
        timeout_ms = int(timeout * 1000)
        client = MongoClient(
            uri,
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )
        return cls(client[database])

    def close(self) -> None:
        self.client.close()

    def ensure_indexes(self) -> None:
        with translate_errors("ensure indexes"):
            self.theses.create_index([('thesis_id', ASCENDING)], unique=True)
            self.theses.create_index([('concept_id', ASCENDING)])
            self.provenance.create_index([('provenance_id', ASCENDING)], unique=True)
            self.provenance.create_index([('element_id', ASCENDING)], unique=True)
            self.provenance.create_index([('concept_id', ASCENDING)])

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        # Commits on exit, aborts if the block raises
        with self.client.start_session() as session:
            with session.start_transaction():
                yield session

    # Theses

    def create_thesis(self, thesis: Thesis) -> Thesis:
        return self.create_theses([thesis])[0]

    def create_theses(self, theses: List[Thesis]) -> List[Thesis]:
        if not theses:
            return []

        documents = [_thesis_document(thesis) for thesis in theses]
        with translate_errors(f"create {len(theses)} theses"):
            with self._transaction() as session:
                self.theses.insert_many(documents, session=session)

        logger.debug(f"Created {len(documents)} theses")
        return [_to_thesis(document) for document in documents]

    def get_thesis(self, thesis_id: str) -> Optional[Thesis]:
        with translate_errors(f"get thesis {thesis_id}"):
            document = self.theses.find_one({'thesis_id': thesis_id})
        return _to_thesis(document) if document else None

    def update_thesis(self, thesis_id: str, changes: Dict[str, Any]) -> Thesis:
        unknown = set(changes) - THESIS_MUTABLE_FIELDS
        if unknown:
            raise ConflictError(f"Cannot update thesis fields: {sorted(unknown)}")

        with translate_errors(f"update thesis {thesis_id}"):
            document = self.theses.find_one_and_update(
                {'thesis_id': thesis_id},
                {'$set': dict(changes)},
                return_document=ReturnDocument.AFTER,
            )

        if document is None:
            raise NotFoundError(f"Thesis {thesis_id} not found")
        return _to_thesis(document)

    def delete_thesis(self, thesis_id: str) -> bool:
        return self.delete_theses([thesis_id]) > 0

    def delete_theses(self, thesis_ids: List[str]) -> int:
        if not thesis_ids:
            return 0

        with translate_errors(f"delete {len(thesis_ids)} theses"):
            with self._transaction() as session:
                result = self.theses.delete_many({'thesis_id': {'$in': list(thesis_ids)}}, session=session)
        return result.deleted_count

    def get_theses_by_concept(self, concept_id: str) -> List[Thesis]:
        with translate_errors(f"get theses of {concept_id}"):
            documents = list(
                self.theses.find({'concept_id': concept_id})
                .sort([('created_at', ASCENDING), ('thesis_id', ASCENDING)])
            )
        return [_to_thesis(document) for document in documents]

    # Provenance

    def create_provenance(self, records: List[SynthesisProvenance]) -> List[SynthesisProvenance]:
        if not records:
            return []

        documents = [_provenance_document(record) for record in records]
        with translate_errors(f"create {len(records)} provenance records"):
            with self._transaction() as session:
                self.provenance.insert_many(documents, session=session)

        return [_to_provenance(document) for document in documents]

    def delete_provenance(self, provenance_ids: List[str]) -> int:
        if not provenance_ids:
            return 0

        with translate_errors(f"delete {len(provenance_ids)} provenance records"):
            with self._transaction() as session:
                result = self.provenance.delete_many(
                    {'provenance_id': {'$in': list(provenance_ids)}},
                    session=session,
                )
        return result.deleted_count

    def get_provenance_by_concept(self, concept_id: str) -> List[SynthesisProvenance]:
        with translate_errors(f"get provenance of {concept_id}"):
            documents = list(
                self.provenance.find({'concept_id': concept_id})
                .sort([('created_at', ASCENDING), ('provenance_id', ASCENDING)])
            )
        return [_to_provenance(document) for document in documents]

    def is_available(self) -> bool:
        try:
            self.client.admin.command('ping')
            return True
        except PyMongoError as e:
            logger.error(f"Document store health check failed: {e}")
            return False

    def get_store_name(self) -> str:
        return 'mongodb'
