"""
PhiloGraph - In-Memory Store Adapters

Thread-safe, process-local implementations of the three adapters. They are
the default development backend and the test doubles for the coordinator.

Every read returns a copy, so callers can never mutate stored state without
going through a write operation. snapshot() exposes the full contents for
before/after comparisons.
"""

from typing import Any, Dict, List, Optional
from dataclasses import replace
import copy
import logging
import threading

from philograph.core.errors import ConflictError, NotFoundError
from philograph.core.models import (
    Category,
    Concept,
    ConceptGraph,
    ConceptStatus,
    Relationship,
    RelationshipDirection,
    SynthesisProvenance,
    Thesis,
    new_id,
    utcnow,
)
from philograph.storage.base import ConceptStore, DocumentStore, GraphStore

logger = logging.getLogger(__name__)

CONCEPT_MUTABLE_FIELDS = {
    'name', 'description', 'status', 'synthesis_method', 'focus',
    'innovation_degree', 'parent_concept_ids', 'is_synthesis',
}
CATEGORY_MUTABLE_FIELDS = {
    'name', 'definition', 'centrality', 'certainty', 'historical_significance',
}
RELATIONSHIP_MUTABLE_FIELDS = {'type', 'direction', 'strength', 'certainty'}
THESIS_MUTABLE_FIELDS = {'type', 'content', 'style', 'related_category_ids', 'parent_thesis_ids'}


def _check_fields(changes: Dict[str, Any], allowed: set, entity: str) -> None:
    unknown = set(changes) - allowed
    if unknown:
        raise ConflictError(f"Cannot update {entity} fields: {sorted(unknown)}")


class InMemoryConceptStore(ConceptStore):

    def __init__(self):
        self._concepts: Dict[str, Concept] = {}
        self._lock = threading.RLock()

    def create_concept(self, concept: Concept) -> Concept:
        with self._lock:
            concept_id = concept.id or new_id()
            if concept_id in self._concepts:
                raise ConflictError(f"Concept {concept_id} already exists")

            now = utcnow()
            stored = replace(
                concept,
                id=concept_id,
                parent_concept_ids=list(concept.parent_concept_ids),
                created_at=now,
                last_modified=now,
            )
            self._concepts[concept_id] = stored
            logger.debug(f"Created concept {concept_id}")
            return copy.deepcopy(stored)

    def get_concept(self, concept_id: str) -> Optional[Concept]:
        with self._lock:
            concept = self._concepts.get(concept_id)
            return copy.deepcopy(concept) if concept else None

    def get_concepts(self, concept_ids: List[str]) -> List[Concept]:
        with self._lock:
            return [
                copy.deepcopy(self._concepts[concept_id])
                for concept_id in concept_ids
                if concept_id in self._concepts
            ]

    def update_concept(self, concept_id: str, changes: Dict[str, Any]) -> Concept:
        _check_fields(changes, CONCEPT_MUTABLE_FIELDS, "concept")
        with self._lock:
            concept = self._concepts.get(concept_id)
            if concept is None:
                raise NotFoundError(f"Concept {concept_id} not found")

            values = dict(changes)
            if 'status' in values:
                values['status'] = ConceptStatus(values['status'])

            updated = replace(concept, last_modified=utcnow(), **values)
            self._concepts[concept_id] = updated
            return copy.deepcopy(updated)

    def set_status(self, concept_id: str, status: ConceptStatus) -> Concept:
        return self.update_concept(concept_id, {'status': status})

    def delete_concept(self, concept_id: str) -> bool:
        with self._lock:
            return self._concepts.pop(concept_id, None) is not None

    def is_available(self) -> bool:
        return True

    def snapshot(self) -> Dict[str, Concept]:
        with self._lock:
            return copy.deepcopy(self._concepts)


class InMemoryGraphStore(GraphStore):

    def __init__(self):
        self._categories: Dict[str, Category] = {}
        self._relationships: Dict[str, Relationship] = {}
        self._lock = threading.RLock()

    # Categories

    def _insert_category(self, category: Category) -> Category:
        category_id = category.id or new_id()
        if category_id in self._categories:
            raise ConflictError(f"Category {category_id} already exists")

        stored = replace(category, id=category_id)
        self._categories[category_id] = stored
        return stored

    def create_category(self, category: Category) -> Category:
        with self._lock:
            return copy.deepcopy(self._insert_category(category))

    def get_category(self, category_id: str) -> Optional[Category]:
        with self._lock:
            category = self._categories.get(category_id)
            return copy.deepcopy(category) if category else None

    def update_category(self, category_id: str, changes: Dict[str, Any]) -> Category:
        _check_fields(changes, CATEGORY_MUTABLE_FIELDS, "category")
        with self._lock:
            category = self._categories.get(category_id)
            if category is None:
                raise NotFoundError(f"Category {category_id} not found")

            updated = replace(category, **changes)
            self._categories[category_id] = updated
            return copy.deepcopy(updated)

    def delete_category(self, category_id: str) -> bool:
        with self._lock:
            if self._categories.pop(category_id, None) is None:
                return False

            attached = [
                rel_id for rel_id, rel in self._relationships.items()
                if category_id in (rel.source_category_id, rel.target_category_id)
            ]
            for rel_id in attached:
                del self._relationships[rel_id]
            return True

    # Relationships

    def _insert_relationship(self, relationship: Relationship) -> Relationship:
        source = self._categories.get(relationship.source_category_id)
        target = self._categories.get(relationship.target_category_id)

        if source is None or target is None:
            raise NotFoundError(
                f"Relationship endpoints not found: "
                f"{relationship.source_category_id} -> {relationship.target_category_id}"
            )

        if source.concept_id != target.concept_id:
            raise ConflictError(
                f"Relationship endpoints belong to different concepts "
                f"({source.concept_id} -> {target.concept_id})"
            )

        relationship_id = relationship.id or new_id()
        if relationship_id in self._relationships:
            raise ConflictError(f"Relationship {relationship_id} already exists")

        stored = replace(
            relationship,
            id=relationship_id,
            concept_id=source.concept_id,
            direction=RelationshipDirection(relationship.direction),
        )
        self._relationships[relationship_id] = stored
        return stored

    def create_relationship(self, relationship: Relationship) -> Relationship:
        with self._lock:
            return copy.deepcopy(self._insert_relationship(relationship))

    def get_relationship(self, relationship_id: str) -> Optional[Relationship]:
        with self._lock:
            relationship = self._relationships.get(relationship_id)
            return copy.deepcopy(relationship) if relationship else None

    def update_relationship(self, relationship_id: str, changes: Dict[str, Any]) -> Relationship:
        _check_fields(changes, RELATIONSHIP_MUTABLE_FIELDS, "relationship")
        with self._lock:
            relationship = self._relationships.get(relationship_id)
            if relationship is None:
                raise NotFoundError(f"Relationship {relationship_id} not found")

            values = dict(changes)
            if 'direction' in values:
                values['direction'] = RelationshipDirection(values['direction'])

            updated = replace(relationship, **values)
            self._relationships[relationship_id] = updated
            return copy.deepcopy(updated)

    def delete_relationship(self, relationship_id: str) -> bool:
        with self._lock:
            return self._relationships.pop(relationship_id, None) is not None

    # Batched

    def get_categories_by_concept(self, concept_id: str) -> List[Category]:
        with self._lock:
            return [
                copy.deepcopy(c) for c in self._categories.values()
                if c.concept_id == concept_id
            ]

    def get_relationships_by_concept(self, concept_id: str) -> List[Relationship]:
        with self._lock:
            return [
                copy.deepcopy(r) for r in self._relationships.values()
                if r.concept_id == concept_id
            ]

    def create_graph(self, graph: ConceptGraph) -> ConceptGraph:
        with self._lock:
            categories_before = dict(self._categories)
            relationships_before = dict(self._relationships)
            try:
                categories = [self._insert_category(c) for c in graph.categories]
                relationships = [self._insert_relationship(r) for r in graph.relationships]
            except Exception:
                # All-or-nothing, like a single store transaction
                self._categories = categories_before
                self._relationships = relationships_before
                raise

            return copy.deepcopy(ConceptGraph(
                concept_id=graph.concept_id,
                categories=categories,
                relationships=relationships,
            ))

    def delete_graph_elements(self, category_ids: List[str], relationship_ids: List[str]) -> int:
        with self._lock:
            removed = 0
            for relationship_id in relationship_ids:
                if self._relationships.pop(relationship_id, None) is not None:
                    removed += 1
            for category_id in category_ids:
                if self.delete_category(category_id):
                    removed += 1
            return removed

    def is_available(self) -> bool:
        return True

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                'categories': copy.deepcopy(self._categories),
                'relationships': copy.deepcopy(self._relationships),
            }


class InMemoryDocumentStore(DocumentStore):

    def __init__(self):
        self._theses: Dict[str, Thesis] = {}
        self._provenance: Dict[str, SynthesisProvenance] = {}
        self._lock = threading.RLock()

    def _insert_thesis(self, thesis: Thesis) -> Thesis:
        thesis_id = thesis.id or new_id()
        if thesis_id in self._theses:
            raise ConflictError(f"Thesis {thesis_id} already exists")

        stored = replace(
            thesis,
            id=thesis_id,
            related_category_ids=list(thesis.related_category_ids),
            parent_thesis_ids=list(thesis.parent_thesis_ids),
            created_at=thesis.created_at or utcnow(),
        )
        self._theses[thesis_id] = stored
        return stored

    def create_thesis(self, thesis: Thesis) -> Thesis:
        with self._lock:
            return copy.deepcopy(self._insert_thesis(thesis))

    def get_thesis(self, thesis_id: str) -> Optional[Thesis]:
        with self._lock:
            thesis = self._theses.get(thesis_id)
            return copy.deepcopy(thesis) if thesis else None

    def update_thesis(self, thesis_id: str, changes: Dict[str, Any]) -> Thesis:
        _check_fields(changes, THESIS_MUTABLE_FIELDS, "thesis")
        with self._lock:
            thesis = self._theses.get(thesis_id)
            if thesis is None:
                raise NotFoundError(f"Thesis {thesis_id} not found")

            updated = replace(thesis, **changes)
            self._theses[thesis_id] = updated
            return copy.deepcopy(updated)

    def delete_thesis(self, thesis_id: str) -> bool:
        with self._lock:
            return self._theses.pop(thesis_id, None) is not None

    def create_theses(self, theses: List[Thesis]) -> List[Thesis]:
        with self._lock:
            before = dict(self._theses)
            try:
                created = [self._insert_thesis(t) for t in theses]
            except Exception:
                self._theses = before
                raise
            return copy.deepcopy(created)

    def delete_theses(self, thesis_ids: List[str]) -> int:
        with self._lock:
            return sum(1 for t in thesis_ids if self._theses.pop(t, None) is not None)

    def get_theses_by_concept(self, concept_id: str) -> List[Thesis]:
        with self._lock:
            return [copy.deepcopy(t) for t in self._theses.values() if t.concept_id == concept_id]

    def create_provenance(self, records: List[SynthesisProvenance]) -> List[SynthesisProvenance]:
        with self._lock:
            existing = {p.element_id for p in self._provenance.values()}
            seen = set()
            for record in records:
                if record.element_id in existing or record.element_id in seen:
                    raise ConflictError(
                        f"Element {record.element_id} already has a provenance record"
                    )
                seen.add(record.element_id)

            created = []
            now = utcnow()
            for record in records:
                stored = replace(record, id=record.id or new_id(), created_at=now)
                self._provenance[stored.id] = stored
                created.append(stored)
            return copy.deepcopy(created)

    def delete_provenance(self, provenance_ids: List[str]) -> int:
        with self._lock:
            return sum(1 for p in provenance_ids if self._provenance.pop(p, None) is not None)

    def get_provenance_by_concept(self, concept_id: str) -> List[SynthesisProvenance]:
        with self._lock:
            return [
                copy.deepcopy(p) for p in self._provenance.values()
                if p.concept_id == concept_id
            ]

    def is_available(self) -> bool:
        return True

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                'theses': copy.deepcopy(self._theses),
                'provenance': copy.deepcopy(self._provenance),
            }
