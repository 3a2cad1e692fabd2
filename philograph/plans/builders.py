"""
PhiloGraph - Plan Builders

Turns (kind, args) submissions into Plans of ordered steps with
compensations, and provides the payload-driven compensation handlers used
both in-process and by crash recovery.

PLAN KINDS:
- create-concept   concept [-> graph] [-> theses]
- update-concept   concept update (restores prior snapshot on compensation)
- archive-concept  status -> archived (soft delete)
- synthesize       compatibility-check -> synthesis -> concept -> graph
                   -> theses -> provenance
- graph-to-theses  generate theses -> theses
- theses-to-graph  build graph -> graph
- enrich-category  enrichment [-> category definition update]
- validate-graph   validation report (no writes)

Inputs are validated when the plan is built, so malformed submissions raise
ValidationFailedError before any step runs. Steps re-check the invariants
that depend on store state (e.g. concept not archived) right before writing.
"""

from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass

from philograph.core.errors import NotFoundError, ValidationFailedError
from philograph.core.guardrails import (
    require_active_concept,
    validate_graph,
    validate_innovation_degree,
    validate_synthesis_parents,
    validate_theses,
)
from philograph.core.models import (
    DEFAULT_SCORE,
    Category,
    Concept,
    ConceptGraph,
    ConceptStatus,
    Relationship,
    RelationshipDirection,
    SynthesisProvenance,
    Thesis,
    ThesisStyle,
    ThesisType,
    new_id,
)
from philograph.plans.projections import ProjectionReader
from philograph.saga.coordinator import CompensationRegistry
from philograph.saga.plan import Plan, Step, StepCategory, StepContext
from philograph.storage.base import Stores
from philograph.transform.engine import ThesisParams, TransformEngine

PLAN_KINDS = (
    'create-concept',
    'update-concept',
    'archive-concept',
    'synthesize',
    'graph-to-theses',
    'theses-to-graph',
    'enrich-category',
    'validate-graph',
)

REASONING_STEP_KINDS = (
    'reasoning.compatibility-check',
    'reasoning.concept-synthesis',
    'reasoning.generate-theses',
    'reasoning.thesis-to-graph',
    'reasoning.enrich-category',
    'reasoning.validate-graph',
)

# Fields an update-concept plan may change (status -> archived goes through archive-concept)
CONCEPT_UPDATE_FIELDS = {'name', 'description', 'status', 'focus', 'synthesis_method', 'innovation_degree'}

DEFAULT_SYNTHESIS_METHOD = "dialectical"
DEFAULT_INNOVATION_DEGREE = 50


def _require(args: Dict[str, Any], key: str) -> Any:
    value = args.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationFailedError(f"'{key}' is required")
    return value


def _score_arg(item: Dict[str, Any], key: str) -> float:
    value = item.get(key)
    return DEFAULT_SCORE if value is None else value


def graph_from_args(concept_id: str, data: Dict[str, Any]) -> ConceptGraph:
    """
    Build a graph with pre-assigned ids from submitted arguments.

    Relationship endpoints may name a category by its submitted id or its
    name. Unlike reasoning output, unresolved endpoints are an input error.

    Raises:
        ValidationFailedError: Unresolved endpoints or invalid values
    """
    graph = ConceptGraph(concept_id=concept_id)
    submitted_ids: Dict[str, str] = {}

    for item in data.get('categories') or []:
        category = Category(
            id=new_id(),
            concept_id=concept_id,
            name=item.get('name') or "",
            definition=item.get('definition') or "",
            centrality=_score_arg(item, 'centrality'),
            certainty=_score_arg(item, 'certainty'),
            historical_significance=_score_arg(item, 'historical_significance'),
        )
        if item.get('id'):
            submitted_ids[str(item['id'])] = category.id
        graph.categories.append(category)

    def resolve(ref: Any) -> str:
        if ref is not None and str(ref) in submitted_ids:
            return submitted_ids[str(ref)]
        category = graph.category_by_name(str(ref or ""))
        if category is None:
            raise ValidationFailedError(f"Relationship endpoint '{ref}' does not name a category")
        return category.id

    for item in data.get('relationships') or []:
        try:
            direction = RelationshipDirection(item.get('direction') or RelationshipDirection.DIRECTED.value)
        except ValueError as e:
            raise ValidationFailedError(f"Invalid relationship direction: {item.get('direction')}") from e

        graph.relationships.append(Relationship(
            id=new_id(),
            concept_id=concept_id,
            source_category_id=resolve(item.get('source')),
            target_category_id=resolve(item.get('target')),
            type=item.get('type') or "",
            direction=direction,
            strength=_score_arg(item, 'strength'),
            certainty=_score_arg(item, 'certainty'),
        ))

    validate_graph(graph)
    return graph


def theses_from_args(concept_id: str, items: List[Dict[str, Any]], graph: ConceptGraph) -> List[Thesis]:
    theses = []
    for item in items:
        related = []
        for ref in item.get('related_categories') or []:
            category = graph.category_by_name(str(ref))
            if category is None:
                raise ValidationFailedError(f"Thesis references unknown category '{ref}'")
            related.append(category.id)

        theses.append(Thesis(
            id=new_id(),
            concept_id=concept_id,
            type=item.get('type') or "",
            content=item.get('content') or "",
            style=item.get('style') or ThesisStyle.ACADEMIC.value,
            related_category_ids=related,
        ))

    validate_theses(theses)
    return theses


@dataclass
class PlanDependencies:
    stores: Stores
    engine: TransformEngine
    projections: ProjectionReader


class PlanBuilder:
    """
    Builds Plans by kind.

    Usage:
        builder = PlanBuilder(deps)
        plan = builder.build('synthesize', {'concept_a_id': 'A', 'concept_b_id': 'B'})
    """

    def __init__(self, deps: PlanDependencies):
        self.deps = deps
        self.stores = deps.stores
        self.engine = deps.engine
        self.projections = deps.projections
        self._builders: Dict[str, Callable[[Dict[str, Any]], Plan]] = {
            'create-concept': self.create_concept,
            'update-concept': self.update_concept,
            'archive-concept': self.archive_concept,
            'synthesize': self.synthesize,
            'graph-to-theses': self.graph_to_theses,
            'theses-to-graph': self.theses_to_graph,
            'enrich-category': self.enrich_category,
            'validate-graph': self.validate_graph,
        }

    def build(self, kind: str, args: Dict[str, Any]) -> Plan:
        """
        Raises:
            ValidationFailedError: Unknown kind or invalid arguments
        """
        builder = self._builders.get(kind)
        if builder is None:
            raise ValidationFailedError(
                f"Unknown plan kind: {kind}. Valid kinds: {', '.join(PLAN_KINDS)}"
            )
        return builder(dict(args or {}))

    # Compensation handlers (payload-driven)

    def undo_concept_create(self, payload: Dict[str, Any]) -> None:
        # Hard delete: a compensated creation leaves no trace
        self.stores.concepts.delete_concept(payload['concept_id'])

    def undo_concept_update(self, payload: Dict[str, Any]) -> None:
        self.stores.concepts.update_concept(payload['concept_id'], payload['prior'])

    def undo_concept_status(self, payload: Dict[str, Any]) -> None:
        self.stores.concepts.set_status(payload['concept_id'], ConceptStatus(payload['prior_status']))

    def undo_graph_create(self, payload: Dict[str, Any]) -> None:
        self.stores.graphs.delete_graph_elements(
            list(payload.get('category_ids') or []),
            list(payload.get('relationship_ids') or []),
        )

    def undo_category_update(self, payload: Dict[str, Any]) -> None:
        if payload.get('prior'):
            self.stores.graphs.update_category(payload['category_id'], payload['prior'])

    def undo_theses_create(self, payload: Dict[str, Any]) -> None:
        self.stores.documents.delete_theses(list(payload.get('thesis_ids') or []))

    def undo_provenance_create(self, payload: Dict[str, Any]) -> None:
        self.stores.documents.delete_provenance(list(payload.get('provenance_ids') or []))

    def compensation_registry(self) -> CompensationRegistry:
        registry = CompensationRegistry()
        registry.register('concept.create', self.undo_concept_create, pending_safe=True)
        registry.register('concept.update', self.undo_concept_update)
        registry.register('concept.status', self.undo_concept_status)
        registry.register('graph.create', self.undo_graph_create, pending_safe=True)
        registry.register('category.update', self.undo_category_update)
        registry.register('theses.create', self.undo_theses_create, pending_safe=True)
        registry.register('provenance.create', self.undo_provenance_create, pending_safe=True)
        for kind in REASONING_STEP_KINDS:
            registry.register_noop(kind)
        return registry

    # Step factories

    def _store_step(
        self,
        name: str,
        kind: str,
        do: Callable[[StepContext], Any],
        handler: Callable[[Dict[str, Any]], None],
        payload: Any,
        undo: Callable[[Any], Dict[str, Any]],
        touches: Callable[[Any], List[str]]
    ) -> Step:
        step = Step(
            name=name,
            kind=kind,
            category=StepCategory.STORE,
            do=do,
            payload=payload,
            undo=undo,
            touches=touches,
        )
        step.compensate = lambda ctx, result: handler(step.undo_payload(ctx, result))
        return step

    def _reasoning_step(self, name: str, request_kind: str, do: Callable[[StepContext], Any]) -> Step:
        return Step(
            name=name,
            kind=f"reasoning.{request_kind}",
            category=StepCategory.REASONING,
            do=do,
        )

    def _active_concept(self, concept_id: str) -> Concept:
        return require_active_concept(self.stores.concepts.get_concept(concept_id), concept_id)

    def _create_concept_step(self, concept_id: str, concept_fn: Callable[[StepContext], Concept]) -> Step:
        return self._store_step(
            name="create-concept",
            kind="concept.create",
            do=lambda ctx: self.stores.concepts.create_concept(concept_fn(ctx)),
            handler=self.undo_concept_create,
            payload={'concept_id': concept_id},
            undo=lambda concept: {'concept_id': concept.id},
            touches=lambda concept: [concept.id],
        )

    def _create_graph_step(self, concept_id: str, graph_fn: Callable[[StepContext], ConceptGraph]) -> Step:
        def do(ctx: StepContext) -> ConceptGraph:
            graph = graph_fn(ctx)
            self._active_concept(concept_id)
            validate_graph(graph)
            return self.stores.graphs.create_graph(graph)

        def payload(ctx: StepContext) -> Dict[str, Any]:
            graph = graph_fn(ctx)
            return {
                'concept_id': concept_id,
                'category_ids': [c.id for c in graph.categories],
                'relationship_ids': [r.id for r in graph.relationships],
            }

        return self._store_step(
            name="create-graph",
            kind="graph.create",
            do=do,
            handler=self.undo_graph_create,
            payload=payload,
            undo=lambda graph: {
                'category_ids': [c.id for c in graph.categories],
                'relationship_ids': [r.id for r in graph.relationships],
            },
            touches=lambda graph: [concept_id],
        )

    def _create_theses_step(self, concept_id: str, theses_fn: Callable[[StepContext], List[Thesis]]) -> Step:
        def do(ctx: StepContext) -> List[Thesis]:
            theses = theses_fn(ctx)
            self._active_concept(concept_id)
            validate_theses(theses)
            return self.stores.documents.create_theses(theses)

        return self._store_step(
            name="create-theses",
            kind="theses.create",
            do=do,
            handler=self.undo_theses_create,
            payload=lambda ctx: {
                'concept_id': concept_id,
                'thesis_ids': [t.id for t in theses_fn(ctx)],
            },
            undo=lambda theses: {'thesis_ids': [t.id for t in theses]},
            touches=lambda theses: [concept_id],
        )

    def _create_provenance_step(
        self,
        concept_id: str,
        provenance_fn: Callable[[StepContext], List[SynthesisProvenance]]
    ) -> Step:
        return self._store_step(
            name="create-provenance",
            kind="provenance.create",
            do=lambda ctx: self.stores.documents.create_provenance(provenance_fn(ctx)),
            handler=self.undo_provenance_create,
            payload=lambda ctx: {
                'concept_id': concept_id,
                'provenance_ids': [p.id for p in provenance_fn(ctx)],
            },
            undo=lambda records: {'provenance_ids': [p.id for p in records]},
            touches=lambda records: [concept_id],
        )

    # Plans

    def create_concept(self, args: Dict[str, Any]) -> Plan:
        name = _require(args, 'name')
        try:
            status = ConceptStatus(args.get('status') or ConceptStatus.DRAFT.value)
        except ValueError as e:
            raise ValidationFailedError(f"Invalid status: {args.get('status')}") from e
        if status == ConceptStatus.ARCHIVED:
            raise ValidationFailedError("A concept cannot be created archived")

        concept_id = new_id()
        concept = Concept(
            id=concept_id,
            name=name,
            description=args.get('description') or "",
            status=status,
            focus=args.get('focus'),
        )
        graph = graph_from_args(concept_id, args.get('graph') or {})
        theses = theses_from_args(concept_id, args.get('theses') or [], graph)

        steps = [self._create_concept_step(concept_id, lambda ctx: concept)]
        if not graph.is_empty:
            steps.append(self._create_graph_step(concept_id, lambda ctx: graph))
        if theses:
            steps.append(self._create_theses_step(concept_id, lambda ctx: theses))

        def finalize(ctx: StepContext) -> Dict[str, Any]:
            created = ctx.results.get('create-graph')
            return {
                'concept_id': concept_id,
                'category_ids': [c.id for c in created.categories] if created else [],
                'relationship_ids': [r.id for r in created.relationships] if created else [],
                'thesis_ids': [t.id for t in ctx.results.get('create-theses') or []],
            }

        return Plan(kind='create-concept', steps=steps, concept_ids=[concept_id], args=args, finalize=finalize)

    def update_concept(self, args: Dict[str, Any]) -> Plan:
        concept_id = _require(args, 'concept_id')
        changes = dict(args.get('changes') or {})
        if not changes:
            raise ValidationFailedError("'changes' must contain at least one field")

        unknown = set(changes) - CONCEPT_UPDATE_FIELDS
        if unknown:
            raise ValidationFailedError(f"Cannot update concept fields: {sorted(unknown)}")
        if 'status' in changes:
            try:
                status = ConceptStatus(changes['status'])
            except ValueError as e:
                raise ValidationFailedError(f"Invalid status: {changes['status']}") from e
            if status == ConceptStatus.ARCHIVED:
                raise ValidationFailedError("Use archive-concept to archive a concept")
            changes['status'] = status.value
        if 'name' in changes and not str(changes['name'] or '').strip():
            raise ValidationFailedError("Concept name cannot be empty")
        if changes.get('innovation_degree') is not None:
            validate_innovation_degree(changes['innovation_degree'])

        def do(ctx: StepContext) -> Dict[str, Any]:
            current = self._active_concept(concept_id).to_dict()
            prior = {field_name: current[field_name] for field_name in changes}
            updated = self.stores.concepts.update_concept(concept_id, changes)
            return {'concept': updated, 'prior': prior}

        step = self._store_step(
            name="update-concept",
            kind="concept.update",
            do=do,
            handler=self.undo_concept_update,
            payload={'concept_id': concept_id, 'changes': changes},
            undo=lambda result: {'prior': result['prior']},
            touches=lambda result: [concept_id],
        )

        def finalize(ctx: StepContext) -> Dict[str, Any]:
            return {'concept': ctx.result('update-concept')['concept'].to_dict()}

        return Plan(kind='update-concept', steps=[step], concept_ids=[concept_id], args=args, finalize=finalize)

    def archive_concept(self, args: Dict[str, Any]) -> Plan:
        concept_id = _require(args, 'concept_id')

        def do(ctx: StepContext) -> Dict[str, Any]:
            concept = self.stores.concepts.get_concept(concept_id)
            if concept is None:
                raise NotFoundError(f"Concept {concept_id} not found")
            archived = self.stores.concepts.set_status(concept_id, ConceptStatus.ARCHIVED)
            return {'concept': archived, 'prior_status': concept.status.value}

        step = self._store_step(
            name="archive-concept",
            kind="concept.status",
            do=do,
            handler=self.undo_concept_status,
            payload={'concept_id': concept_id},
            undo=lambda result: {'prior_status': result['prior_status']},
            touches=lambda result: [concept_id],
        )

        def finalize(ctx: StepContext) -> Dict[str, Any]:
            return {'concept_id': concept_id, 'status': ConceptStatus.ARCHIVED.value}

        return Plan(kind='archive-concept', steps=[step], concept_ids=[concept_id], args=args, finalize=finalize)

    def synthesize(self, args: Dict[str, Any]) -> Plan:
        concept_a_id = _require(args, 'concept_a_id')
        concept_b_id = _require(args, 'concept_b_id')
        validate_synthesis_parents([concept_a_id, concept_b_id])

        method = args.get('method') or DEFAULT_SYNTHESIS_METHOD
        focus = args.get('focus')
        innovation_degree = args.get('innovation_degree', DEFAULT_INNOVATION_DEGREE)
        validate_innovation_degree(innovation_degree)

        concept_id = new_id()

        def check(ctx: StepContext) -> Dict[str, Any]:
            self._active_concept(concept_a_id)
            self._active_concept(concept_b_id)
            graph_a = self.projections.graph(concept_a_id)
            graph_b = self.projections.graph(concept_b_id)
            report = self.engine.check_compatibility(graph_a, graph_b)
            return {'graph_a': graph_a, 'graph_b': graph_b, 'report': report}

        def synthesize(ctx: StepContext) -> Any:
            precheck = ctx.result('compatibility-check')
            return self.engine.synthesize(
                precheck['graph_a'],
                precheck['graph_b'],
                method,
                focus,
                innovation_degree,
                compatibility=precheck['report'],
                concept_id=concept_id,
            )

        def concept_fn(ctx: StepContext) -> Concept:
            synthesis = ctx.result('synthesize')
            return Concept(
                id=concept_id,
                name=args.get('name') or synthesis.name,
                description=args.get('description') or synthesis.description,
                is_synthesis=True,
                parent_concept_ids=[concept_a_id, concept_b_id],
                synthesis_method=method,
                focus=focus,
                innovation_degree=innovation_degree,
            )

        steps = [
            self._reasoning_step("compatibility-check", "compatibility-check", check),
            self._reasoning_step("synthesize", "concept-synthesis", synthesize),
            self._create_concept_step(concept_id, concept_fn),
            self._create_graph_step(concept_id, lambda ctx: ctx.result('synthesize').graph),
            self._create_theses_step(concept_id, lambda ctx: ctx.result('synthesize').theses),
            self._create_provenance_step(concept_id, lambda ctx: ctx.result('synthesize').provenance),
        ]

        def finalize(ctx: StepContext) -> Dict[str, Any]:
            synthesis = ctx.result('synthesize')
            graph = ctx.result('create-graph')
            return {
                'concept_id': concept_id,
                'name': ctx.result('create-concept').name,
                'parent_concept_ids': [concept_a_id, concept_b_id],
                'compatibility': synthesis.compatibility.verdict.value if synthesis.compatibility else None,
                'category_ids': [c.id for c in graph.categories],
                'relationship_ids': [r.id for r in graph.relationships],
                'thesis_ids': [t.id for t in ctx.result('create-theses')],
                'provenance_ids': [p.id for p in ctx.result('create-provenance')],
            }

        return Plan(
            kind='synthesize',
            steps=steps,
            concept_ids=[concept_a_id, concept_b_id],
            args=args,
            finalize=finalize,
        )

    def graph_to_theses(self, args: Dict[str, Any]) -> Plan:
        concept_id = _require(args, 'concept_id')
        quantity = args.get('quantity', 5)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise ValidationFailedError(f"quantity must be a positive integer, got {quantity!r}")

        thesis_type = _require(args, 'thesis_type')
        if thesis_type not in {t.value for t in ThesisType}:
            raise ValidationFailedError(f"Unknown thesis type: {thesis_type}")
        style = args.get('style') or ThesisStyle.ACADEMIC.value
        if style not in {s.value for s in ThesisStyle}:
            raise ValidationFailedError(f"Unknown thesis style: {style}")

        params = ThesisParams(quantity=quantity, thesis_type=thesis_type, style=style)

        def generate(ctx: StepContext) -> List[Thesis]:
            self._active_concept(concept_id)
            return self.engine.graph_to_theses(self.projections.graph(concept_id), params)

        steps = [
            self._reasoning_step("generate-theses", "generate-theses", generate),
            self._create_theses_step(concept_id, lambda ctx: ctx.result('generate-theses')),
        ]

        def finalize(ctx: StepContext) -> Dict[str, Any]:
            return {
                'concept_id': concept_id,
                'thesis_ids': [t.id for t in ctx.result('create-theses')],
            }

        return Plan(kind='graph-to-theses', steps=steps, concept_ids=[concept_id], args=args, finalize=finalize)

    def theses_to_graph(self, args: Dict[str, Any]) -> Plan:
        concept_id = _require(args, 'concept_id')
        thesis_ids = args.get('thesis_ids')

        def build(ctx: StepContext) -> ConceptGraph:
            self._active_concept(concept_id)
            theses = self.projections.theses(concept_id)
            if thesis_ids:
                wanted = set(thesis_ids)
                theses = [t for t in theses if t.id in wanted]
            if not theses:
                raise ValidationFailedError(f"Concept {concept_id} has no theses to transform")
            return self.engine.theses_to_graph(theses, concept_id)

        steps = [
            self._reasoning_step("build-graph", "thesis-to-graph", build),
            self._create_graph_step(concept_id, lambda ctx: ctx.result('build-graph')),
        ]

        def finalize(ctx: StepContext) -> Dict[str, Any]:
            graph = ctx.result('create-graph')
            return {
                'concept_id': concept_id,
                'category_ids': [c.id for c in graph.categories],
                'relationship_ids': [r.id for r in graph.relationships],
            }

        return Plan(kind='theses-to-graph', steps=steps, concept_ids=[concept_id], args=args, finalize=finalize)

    def enrich_category(self, args: Dict[str, Any]) -> Plan:
        concept_id = _require(args, 'concept_id')
        category_id = _require(args, 'category_id')
        apply_definition = bool(args.get('apply_definition', False))

        def enrich(ctx: StepContext) -> Dict[str, Any]:
            concept = self._active_concept(concept_id)
            category = self.stores.graphs.get_category(category_id)
            if category is None or category.concept_id != concept_id:
                raise NotFoundError(f"Category {category_id} not found in concept {concept_id}")
            enrichment = self.engine.enrich_category(
                category,
                concept.name,
                traditions=args.get('traditions'),
                philosophers=args.get('philosophers'),
            )
            return {'category': category, 'enrichment': enrichment}

        steps = [self._reasoning_step("enrich-category", "enrich-category", enrich)]

        if apply_definition:
            def update(ctx: StepContext) -> Dict[str, Any]:
                enriched = ctx.result('enrich-category')
                enrichment = enriched['enrichment']
                if enrichment.skipped or not enrichment.extended_description:
                    return {'category': None, 'prior': None}
                prior = {'definition': enriched['category'].definition}
                updated = self.stores.graphs.update_category(
                    category_id,
                    {'definition': enrichment.extended_description}
                )
                return {'category': updated, 'prior': prior}

            steps.append(self._store_step(
                name="update-category",
                kind="category.update",
                do=update,
                handler=self.undo_category_update,
                payload={'concept_id': concept_id, 'category_id': category_id},
                undo=lambda result: {'prior': result['prior']},
                touches=lambda result: [concept_id] if result['category'] is not None else [],
            ))

        def finalize(ctx: StepContext) -> Dict[str, Any]:
            enrichment = ctx.result('enrich-category')['enrichment']
            if not enrichment.skipped:
                self.projections.put_enrichment(concept_id, category_id, enrichment.to_dict())
            return enrichment.to_dict()

        return Plan(kind='enrich-category', steps=steps, concept_ids=[concept_id], args=args, finalize=finalize)

    def validate_graph(self, args: Dict[str, Any]) -> Plan:
        concept_id = _require(args, 'concept_id')

        def validate(ctx: StepContext) -> Any:
            self._active_concept(concept_id)
            return self.engine.validate_graph(self.projections.graph(concept_id))

        steps = [self._reasoning_step("validate-graph", "validate-graph", validate)]

        def finalize(ctx: StepContext) -> Dict[str, Any]:
            return {'concept_id': concept_id, **ctx.result('validate-graph').to_dict()}

        return Plan(kind='validate-graph', steps=steps, concept_ids=[concept_id], args=args, finalize=finalize)
