"""
Unit tests for the in-memory store adapters.
"""

import pytest

from philograph.core.errors import ConflictError, NotFoundError
from philograph.core.models import (
    Category,
    Concept,
    ConceptGraph,
    ConceptStatus,
    ElementKind,
    Relationship,
    SynthesisProvenance,
    Thesis,
    TransformationKind,
)
from philograph.storage.base import StoreFactory


@pytest.fixture
def concepts(stores):
    return stores.concepts


@pytest.fixture
def graphs(stores):
    return stores.graphs


@pytest.fixture
def documents(stores):
    return stores.documents


class TestConceptStore:

    def test_create_assigns_timestamps(self, concepts):
        created = concepts.create_concept(Concept(id='c-1', name='Stoicism'))

        assert created.created_at is not None
        assert created.status == ConceptStatus.DRAFT
        assert concepts.get_concept('c-1').name == 'Stoicism'

    def test_duplicate_id_conflicts(self, concepts):
        concepts.create_concept(Concept(id='c-1', name='Stoicism'))

        with pytest.raises(ConflictError):
            concepts.create_concept(Concept(id='c-1', name='Epicureanism'))

    def test_returned_objects_are_copies(self, concepts):
        created = concepts.create_concept(Concept(id='c-1', name='Stoicism'))
        created.name = 'Mutated'

        assert concepts.get_concept('c-1').name == 'Stoicism'

    def test_update_and_status(self, concepts):
        concepts.create_concept(Concept(id='c-1', name='Stoicism'))

        concepts.update_concept('c-1', {'description': 'Virtue ethics', 'status': 'published'})
        archived = concepts.set_status('c-1', ConceptStatus.ARCHIVED)

        assert archived.description == 'Virtue ethics'
        assert archived.is_archived

    def test_update_missing_concept(self, concepts):
        with pytest.raises(NotFoundError):
            concepts.update_concept('missing', {'name': 'x'})

    def test_update_unknown_field(self, concepts):
        concepts.create_concept(Concept(id='c-1', name='Stoicism'))

        with pytest.raises(ConflictError):
            concepts.update_concept('c-1', {'created_at': None})

    def test_get_concepts_keeps_requested_order(self, concepts):
        concepts.create_concept(Concept(id='a', name='A'))
        concepts.create_concept(Concept(id='b', name='B'))

        assert [c.id for c in concepts.get_concepts(['b', 'missing', 'a'])] == ['b', 'a']

    def test_delete(self, concepts):
        concepts.create_concept(Concept(id='c-1', name='Stoicism'))

        assert concepts.delete_concept('c-1') is True
        assert concepts.delete_concept('c-1') is False


class TestGraphStore:

    def _graph(self):
        return ConceptGraph(
            concept_id='c-1',
            categories=[
                Category(id='k1', concept_id='c-1', name='Virtue'),
                Category(id='k2', concept_id='c-1', name='Nature'),
            ],
            relationships=[
                Relationship(id='r1', concept_id='c-1', source_category_id='k1',
                             target_category_id='k2', type='accords with'),
            ],
        )

    def test_create_and_read_graph(self, graphs):
        graphs.create_graph(self._graph())

        graph = graphs.get_graph('c-1')

        assert sorted(c.name for c in graph.categories) == ['Nature', 'Virtue']
        assert graph.relationships[0].type == 'accords with'

    def test_create_graph_is_all_or_nothing(self, graphs):
        graph = self._graph()
        graph.relationships.append(Relationship(
            id='r2', concept_id='c-1', source_category_id='k1', target_category_id='ghost', type='haunts',
        ))

        with pytest.raises(NotFoundError):
            graphs.create_graph(graph)

        assert graphs.get_categories_by_concept('c-1') == []
        assert graphs.get_relationships_by_concept('c-1') == []

    def test_cross_concept_relationship_conflicts(self, graphs):
        graphs.create_category(Category(id='k1', concept_id='c-1', name='Virtue'))
        graphs.create_category(Category(id='k9', concept_id='c-2', name='Pleasure'))

        with pytest.raises(ConflictError):
            graphs.create_relationship(Relationship(
                concept_id='c-1', source_category_id='k1', target_category_id='k9', type='opposes',
            ))

    def test_deleting_category_removes_attached_relationships(self, graphs):
        graphs.create_graph(self._graph())

        graphs.delete_category('k2')

        assert graphs.get_relationship('r1') is None

    def test_delete_graph_elements_counts(self, graphs):
        graphs.create_graph(self._graph())

        assert graphs.delete_graph_elements(['k1', 'k2'], ['r1']) == 3
        assert graphs.delete_graph_elements(['k1'], ['r1']) == 0

    def test_update_category(self, graphs):
        graphs.create_category(Category(id='k1', concept_id='c-1', name='Virtue'))

        updated = graphs.update_category('k1', {'definition': 'Excellence of character'})

        assert updated.definition == 'Excellence of character'
        with pytest.raises(ConflictError):
            graphs.update_category('k1', {'concept_id': 'c-2'})


class TestDocumentStore:

    def test_create_theses_batch_is_atomic(self, documents):
        documents.create_thesis(Thesis(id='t1', concept_id='c-1', type='ethical', content='A'))

        with pytest.raises(ConflictError):
            documents.create_theses([
                Thesis(id='t2', concept_id='c-1', type='ethical', content='B'),
                Thesis(id='t1', concept_id='c-1', type='ethical', content='dup'),
            ])

        assert documents.get_thesis('t2') is None
        assert [t.id for t in documents.get_theses_by_concept('c-1')] == ['t1']

    def test_one_provenance_record_per_element(self, documents):
        record = SynthesisProvenance(
            concept_id='c-3',
            element_id='k1',
            element_kind=ElementKind.CATEGORY,
            transformation_kind=TransformationKind.NEW,
        )
        documents.create_provenance([record])

        with pytest.raises(ConflictError):
            documents.create_provenance([record])

        assert len(documents.get_provenance_by_concept('c-3')) == 1

    def test_delete_theses(self, documents):
        documents.create_theses([
            Thesis(id='t1', concept_id='c-1', type='ethical', content='A'),
            Thesis(id='t2', concept_id='c-1', type='ethical', content='B'),
        ])

        assert documents.delete_theses(['t1', 't2', 't3']) == 2


class TestStoreFactory:

    def test_memory_health(self):
        stores = StoreFactory.create_stores('memory')

        assert stores.health() == {'relational': True, 'graph': True, 'document': True}

    def test_postgres_requires_pool(self):
        with pytest.raises(ValueError):
            StoreFactory.create_stores('postgres')

    def test_invalid_backend(self):
        with pytest.raises(ValueError):
            StoreFactory.create_stores('sqlite')
