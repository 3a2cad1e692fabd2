"""
PhiloGraph - Bidirectional Transform Engine

Drives Graph->Theses, Theses->Graph and concept synthesis through the
Reasoning Gateway and interprets the structured responses into entities
ready to be written by plan steps.

RESPONSE SHAPES (structured fields consumed here):
- generate-theses:     {"theses": [{type, content, style, related_categories}]}
- thesis-to-graph:     {"categories": [...], "relationships": [{source, target, ...}]}
- compatibility-check: {"fully_compatible": [...], "reinterpretable": [...],
                        "incompatible": [...], "overall"?, "explanation"?}
- concept-synthesis:   {"name", "description", "categories", "relationships", "theses"}
- validate-graph:      {"valid"?, "issues", "suggestions"}
- enrich-category:     {"extended_description", "alternative_interpretations",
                        "historical_analogues", "related_concepts"}

Category references in responses may be ids or names; both are accepted.
Missing scores default to DEFAULT_SCORE (not inferred).

Gateway errors propagate unchanged, except where a call site installs a
fallback (category enrichment skips on an open circuit).
"""

from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum
import logging

from philograph.core.errors import ValidationFailedError
from philograph.core.models import (
    DEFAULT_SCORE,
    Category,
    ConceptGraph,
    ElementKind,
    Relationship,
    RelationshipDirection,
    SynthesisProvenance,
    Thesis,
    ThesisStyle,
    TransformationKind,
    new_id,
    normalize_name,
)
from philograph.reasoning.gateway import ReasoningGateway
from philograph.reasoning.messages import build_request

logger = logging.getLogger(__name__)

SCORE_FIELDS = ('centrality', 'certainty', 'historical_significance')


class CompatibilityVerdict(str, Enum):
    FULLY_COMPATIBLE = "fully_compatible"
    REINTERPRETABLE = "reinterpretable"
    INCOMPATIBLE = "incompatible"


@dataclass
class ThesisParams:
    """Parameters for Graph->Theses generation."""
    quantity: int
    thesis_type: str
    style: str = ThesisStyle.ACADEMIC.value


@dataclass
class CompatibilityReport:
    """Classification of the two graphs' elements before synthesis."""
    verdict: CompatibilityVerdict
    fully_compatible: List[str] = field(default_factory=list)
    reinterpretable: List[str] = field(default_factory=list)
    incompatible: List[str] = field(default_factory=list)
    explanation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'verdict': self.verdict.value,
            'fully_compatible': list(self.fully_compatible),
            'reinterpretable': list(self.reinterpretable),
            'incompatible': list(self.incompatible),
            'explanation': self.explanation,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CompatibilityReport':
        return cls(
            verdict=CompatibilityVerdict(data['verdict']),
            fully_compatible=list(data.get('fully_compatible') or []),
            reinterpretable=list(data.get('reinterpretable') or []),
            incompatible=list(data.get('incompatible') or []),
            explanation=data.get('explanation') or "",
        )


@dataclass
class SynthesisResult:
    """Entities of a synthesized concept, not yet written."""
    concept_id: str
    name: str
    description: str
    graph: ConceptGraph
    theses: List[Thesis]
    provenance: List[SynthesisProvenance]
    compatibility: Optional[CompatibilityReport] = None


@dataclass
class GraphValidation:
    valid: bool
    issues: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'valid': self.valid, 'issues': list(self.issues), 'suggestions': list(self.suggestions)}


@dataclass
class CategoryEnrichment:
    category_id: Optional[str]
    extended_description: str = ""
    alternative_interpretations: List[str] = field(default_factory=list)
    historical_analogues: List[str] = field(default_factory=list)
    related_concepts: List[str] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'category_id': self.category_id,
            'extended_description': self.extended_description,
            'alternative_interpretations': list(self.alternative_interpretations),
            'historical_analogues': list(self.historical_analogues),
            'related_concepts': list(self.related_concepts),
            'skipped': self.skipped,
        }


def _score(value: Any) -> float:
    if value is None:
        return DEFAULT_SCORE
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationFailedError(f"Reasoning service returned a non-numeric score: {value!r}")


def _direction(value: Any) -> RelationshipDirection:
    try:
        return RelationshipDirection(value or RelationshipDirection.DIRECTED.value)
    except ValueError:
        logger.warning(f"Unknown relationship direction '{value}', using directed")
        return RelationshipDirection.DIRECTED


def _resolve_category(graph: ConceptGraph, ref: Any) -> Optional[Category]:
    """Resolve a category reference that may be an id or a name."""
    if not ref:
        return None
    return graph.category_by_id(str(ref)) or graph.category_by_name(str(ref))


def _resolve_refs(graph: ConceptGraph, refs: List[Any]) -> List[str]:
    resolved = []
    for ref in refs or []:
        category = _resolve_category(graph, ref)
        if category is None:
            logger.warning(f"Dropping unresolved category reference '{ref}'")
        elif category.id not in resolved:
            resolved.append(category.id)
    return resolved


def _category_unchanged(candidate: Category, origin: Category) -> bool:
    return (
        normalize_name(candidate.name) == normalize_name(origin.name)
        and (candidate.definition or "") == (origin.definition or "")
        and all(getattr(candidate, f) == getattr(origin, f) for f in SCORE_FIELDS)
    )


def _relationship_unchanged(candidate: Relationship, origin: Relationship) -> bool:
    return (
        normalize_name(candidate.type) == normalize_name(origin.type)
        and candidate.direction == origin.direction
        and candidate.strength == origin.strength
        and candidate.certainty == origin.certainty
    )


class TransformEngine:
    """
    Interprets reasoning responses into graph/thesis entities.

    Usage:
        engine = TransformEngine(gateway)
        theses = engine.graph_to_theses(graph, ThesisParams(5, 'ontological'))
    """

    def __init__(self, gateway: ReasoningGateway):
        self.gateway = gateway

    # Graph -> Theses

    def graph_to_theses(self, graph: ConceptGraph, params: ThesisParams) -> List[Thesis]:
        """
        Generate theses from a concept graph.

        Raises:
            ValidationFailedError: Invalid params or empty graph (no network call)
        """
        request = build_request(
            "generate-theses",
            graph=graph.to_payload(),
            quantity=params.quantity,
            thesis_type=params.thesis_type,
            style=params.style,
        )
        response = self.gateway.send(request)

        theses = []
        for item in response.payload.get('theses') or []:
            refs = item.get('related_categories') or item.get('related_category_ids') or []
            theses.append(Thesis(
                id=new_id(),
                concept_id=graph.concept_id,
                type=item.get('type') or params.thesis_type,
                content=item.get('content') or "",
                style=item.get('style') or params.style,
                related_category_ids=_resolve_refs(graph, refs),
            ))

        logger.info(f"Generated {len(theses)} theses for concept {graph.concept_id}")
        return theses

    # Theses -> Graph

    def theses_to_graph(self, theses: List[Thesis], concept_id: str) -> ConceptGraph:
        """
        Build a concept graph from theses.

        Relationship endpoints are resolved by category name or by the id the
        service gave the category; unresolved edges are dropped.
        """
        request = build_request(
            "thesis-to-graph",
            concept_id=concept_id,
            theses=[t.to_payload() for t in theses],
        )
        response = self.gateway.send(request)
        return self._graph_from_response(response.payload, concept_id)

    def _graph_from_response(self, payload: Dict[str, Any], concept_id: str) -> ConceptGraph:
        graph = ConceptGraph(concept_id=concept_id)
        response_ids: Dict[str, str] = {}

        for item in payload.get('categories') or []:
            category = Category(
                id=new_id(),
                concept_id=concept_id,
                name=item.get('name') or "",
                definition=item.get('definition') or "",
                centrality=_score(item.get('centrality')),
                certainty=_score(item.get('certainty')),
                historical_significance=_score(item.get('historical_significance')),
            )
            if item.get('id'):
                response_ids[str(item['id'])] = category.id
            graph.categories.append(category)

        for item in payload.get('relationships') or []:
            endpoints = self._resolve_endpoints(graph, item, response_ids)
            if endpoints is None:
                continue
            source, target = endpoints
            graph.relationships.append(Relationship(
                id=new_id(),
                concept_id=concept_id,
                source_category_id=source.id,
                target_category_id=target.id,
                type=item.get('type') or "related",
                direction=_direction(item.get('direction')),
                strength=_score(item.get('strength')),
                certainty=_score(item.get('certainty')),
            ))

        return graph

    def _resolve_endpoints(
        self,
        graph: ConceptGraph,
        item: Dict[str, Any],
        response_ids: Dict[str, str]
    ) -> Optional[Tuple[Category, Category]]:
        refs = (
            item.get('source') or item.get('source_category_id'),
            item.get('target') or item.get('target_category_id'),
        )
        resolved = []
        for ref in refs:
            category = None
            if ref is not None and str(ref) in response_ids:
                category = graph.category_by_id(response_ids[str(ref)])
            category = category or _resolve_category(graph, ref)
            resolved.append(category)

        if None in resolved:
            logger.warning(
                f"Dropping relationship '{item.get('type')}' with unresolved endpoints "
                f"{refs[0]} -> {refs[1]}"
            )
            return None
        return resolved[0], resolved[1]

    # Synthesis

    def check_compatibility(self, graph_a: ConceptGraph, graph_b: ConceptGraph) -> CompatibilityReport:
        request = build_request(
            "compatibility-check",
            graph_a=graph_a.to_payload(),
            graph_b=graph_b.to_payload(),
        )
        payload = self.gateway.send(request).payload

        fully_compatible = list(payload.get('fully_compatible') or [])
        reinterpretable = list(payload.get('reinterpretable') or [])
        incompatible = list(payload.get('incompatible') or [])

        overall = payload.get('overall')
        if overall in {v.value for v in CompatibilityVerdict}:
            verdict = CompatibilityVerdict(overall)
        elif incompatible and not (fully_compatible or reinterpretable):
            verdict = CompatibilityVerdict.INCOMPATIBLE
        elif incompatible or reinterpretable:
            verdict = CompatibilityVerdict.REINTERPRETABLE
        else:
            verdict = CompatibilityVerdict.FULLY_COMPATIBLE

        return CompatibilityReport(
            verdict=verdict,
            fully_compatible=fully_compatible,
            reinterpretable=reinterpretable,
            incompatible=incompatible,
            explanation=payload.get('explanation') or "",
        )

    def synthesize(
        self,
        graph_a: ConceptGraph,
        graph_b: ConceptGraph,
        method: str,
        focus: Optional[str],
        innovation_degree: int,
        compatibility: Optional[CompatibilityReport] = None,
        concept_id: Optional[str] = None
    ) -> SynthesisResult:
        """
        Synthesize two concept graphs into a new one.

        Runs the compatibility pre-check unless a report is supplied, then
        requests the synthesized graph and theses. Every output element gets
        exactly one provenance record.

        Args:
            graph_a: Graph of the first parent concept
            graph_b: Graph of the second parent concept
            method: Synthesis method (e.g. 'dialectical')
            focus: Optional synthesis focus
            innovation_degree: 0..100
            compatibility: Report from a previous check_compatibility call
            concept_id: Id of the synthesized concept (generated if None)

        Returns:
            SynthesisResult with fresh element ids
        """
        if compatibility is None:
            compatibility = self.check_compatibility(graph_a, graph_b)

        request = build_request(
            "concept-synthesis",
            concept_a_id=graph_a.concept_id,
            concept_b_id=graph_b.concept_id,
            graph_a=graph_a.to_payload(),
            graph_b=graph_b.to_payload(),
            method=method,
            focus=focus,
            innovation_degree=innovation_degree,
            compatibility=compatibility.to_dict(),
        )
        payload = self.gateway.send(request).payload

        concept_id = concept_id or new_id()
        parents = (graph_a, graph_b)
        graph = ConceptGraph(concept_id=concept_id)
        provenance: List[SynthesisProvenance] = []
        response_ids: Dict[str, str] = {}

        for item in payload.get('categories') or []:
            category = Category(
                id=new_id(),
                concept_id=concept_id,
                name=item.get('name') or "",
                definition=item.get('definition') or "",
                centrality=_score(item.get('centrality')),
                certainty=_score(item.get('certainty')),
                historical_significance=_score(item.get('historical_significance')),
            )
            if item.get('id'):
                response_ids[str(item['id'])] = category.id
            graph.categories.append(category)

            origin_concept_id, origin = self._match_category(parents, item)
            provenance.append(self._provenance(
                concept_id,
                category.id,
                ElementKind.CATEGORY,
                origin_concept_id,
                origin.id if origin else None,
                origin is not None and _category_unchanged(category, origin),
                item,
            ))

        for item in payload.get('relationships') or []:
            endpoints = self._resolve_endpoints(graph, item, response_ids)
            if endpoints is None:
                continue
            source, target = endpoints
            relationship = Relationship(
                id=new_id(),
                concept_id=concept_id,
                source_category_id=source.id,
                target_category_id=target.id,
                type=item.get('type') or "related",
                direction=_direction(item.get('direction')),
                strength=_score(item.get('strength')),
                certainty=_score(item.get('certainty')),
            )
            graph.relationships.append(relationship)

            origin_concept_id, origin = self._match_relationship(parents, item, source, target)
            provenance.append(self._provenance(
                concept_id,
                relationship.id,
                ElementKind.RELATIONSHIP,
                origin_concept_id,
                origin.id if origin else None,
                origin is not None and _relationship_unchanged(relationship, origin),
                item,
            ))

        theses = []
        parent_ids = {graph_a.concept_id, graph_b.concept_id}
        for item in payload.get('theses') or []:
            refs = item.get('related_categories') or item.get('related_category_ids') or []
            thesis = Thesis(
                id=new_id(),
                concept_id=concept_id,
                type=item.get('type') or "synthetic",
                content=item.get('content') or "",
                style=item.get('style') or ThesisStyle.ACADEMIC.value,
                related_category_ids=[
                    response_ids.get(str(ref), ref) for ref in refs
                ],
            )
            thesis.related_category_ids = _resolve_refs(graph, thesis.related_category_ids)
            theses.append(thesis)

            origin_concept_id = item.get('origin_concept_id')
            if origin_concept_id not in parent_ids:
                origin_concept_id = None
            provenance.append(self._provenance(
                concept_id,
                thesis.id,
                ElementKind.THESIS,
                origin_concept_id,
                item.get('origin_element_id') if origin_concept_id else None,
                False,
                item,
            ))

        logger.info(
            f"Synthesized {graph_a.concept_id} + {graph_b.concept_id} -> {concept_id}: "
            f"{len(graph.categories)} categories, {len(graph.relationships)} relationships, "
            f"{len(theses)} theses"
        )

        return SynthesisResult(
            concept_id=concept_id,
            name=payload.get('name') or f"Synthesis ({method})",
            description=payload.get('description') or "",
            graph=graph,
            theses=theses,
            provenance=provenance,
            compatibility=compatibility,
        )

    def _match_category(
        self,
        parents: Tuple[ConceptGraph, ConceptGraph],
        item: Dict[str, Any]
    ) -> Tuple[Optional[str], Optional[Category]]:
        """Match a synthesized category to a parent category: ids first, then names."""
        for ref in (item.get('origin_element_id'), item.get('id')):
            if not ref:
                continue
            for parent in parents:
                origin = parent.category_by_id(str(ref))
                if origin is not None:
                    return parent.concept_id, origin

        for parent in self._hinted_order(parents, item):
            origin = parent.category_by_name(item.get('name') or "")
            if origin is not None:
                return parent.concept_id, origin

        return None, None

    def _match_relationship(
        self,
        parents: Tuple[ConceptGraph, ConceptGraph],
        item: Dict[str, Any],
        source: Category,
        target: Category
    ) -> Tuple[Optional[str], Optional[Relationship]]:
        """Match by relationship id, then by endpoint category names."""
        for ref in (item.get('origin_element_id'), item.get('id')):
            if not ref:
                continue
            for parent in parents:
                origin = next((r for r in parent.relationships if r.id == str(ref)), None)
                if origin is not None:
                    return parent.concept_id, origin

        wanted = (normalize_name(source.name), normalize_name(target.name))
        for parent in self._hinted_order(parents, item):
            for rel in parent.relationships:
                rel_source = parent.category_by_id(rel.source_category_id)
                rel_target = parent.category_by_id(rel.target_category_id)
                if rel_source is None or rel_target is None:
                    continue
                if (normalize_name(rel_source.name), normalize_name(rel_target.name)) == wanted:
                    return parent.concept_id, rel

        return None, None

    def _hinted_order(
        self,
        parents: Tuple[ConceptGraph, ConceptGraph],
        item: Dict[str, Any]
    ) -> Tuple[ConceptGraph, ConceptGraph]:
        # Names present in both parents go to the parent the service named
        if item.get('origin_concept_id') == parents[1].concept_id:
            return parents[1], parents[0]
        return parents

    def _provenance(
        self,
        concept_id: str,
        element_id: str,
        element_kind: ElementKind,
        origin_concept_id: Optional[str],
        origin_element_id: Optional[str],
        unchanged: bool,
        item: Dict[str, Any]
    ) -> SynthesisProvenance:
        if origin_concept_id is None:
            kind = TransformationKind.NEW
        elif unchanged:
            kind = TransformationKind.UNCHANGED
        else:
            kind = TransformationKind.MODIFIED

        return SynthesisProvenance(
            id=new_id(),
            concept_id=concept_id,
            element_id=element_id,
            element_kind=element_kind,
            transformation_kind=kind,
            origin_concept_id=origin_concept_id,
            origin_element_id=origin_element_id,
            justification=item.get('justification') or "",
        )

    # Supplementary request kinds

    def validate_graph(self, graph: ConceptGraph) -> GraphValidation:
        request = build_request("validate-graph", graph=graph.to_payload())
        payload = self.gateway.send(request).payload

        issues = list(payload.get('issues') or [])
        valid = payload.get('valid')
        return GraphValidation(
            valid=bool(valid) if valid is not None else not issues,
            issues=issues,
            suggestions=list(payload.get('suggestions') or []),
        )

    def enrich_category(
        self,
        category: Category,
        concept_name: str,
        traditions: Optional[List[str]] = None,
        philosophers: Optional[List[str]] = None
    ) -> CategoryEnrichment:
        """
        Enrich one category.

        While the circuit is open, enrichment is skipped instead of failing
        (skipped=True, nothing to write).
        """
        request = build_request(
            "enrich-category",
            category=category.to_dict(),
            concept_name=concept_name,
            traditions=list(traditions or []),
            philosophers=list(philosophers or []),
        )
        response = self.gateway.send(request, fallback=lambda _request: {'skipped': True})

        if response.degraded:
            logger.warning(f"Enrichment of category {category.id} skipped: reasoning degraded")
            return CategoryEnrichment(category_id=category.id, skipped=True)

        payload = response.payload
        return CategoryEnrichment(
            category_id=category.id,
            extended_description=payload.get('extended_description') or "",
            alternative_interpretations=list(payload.get('alternative_interpretations') or []),
            historical_analogues=list(payload.get('historical_analogues') or []),
            related_concepts=list(payload.get('related_concepts') or []),
        )
