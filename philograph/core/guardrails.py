"""
Guardrails for PhiloGraph write paths

Every plan step that writes MUST run the relevant guardrail before the write,
so invariant violations surface as ValidationFailedError before any store is
touched (and before any compensation becomes necessary).

CONTRACTS:
- Scores (centrality, certainty, historical significance, strength) in [0, 1]
- Relationship endpoints belong to the same concept
- Categories/theses only attach to an existing, non-archived concept
- A synthesis has exactly two distinct parent concepts
"""
from typing import Iterable, Optional

from philograph.core.errors import ValidationFailedError
from philograph.core.models import (
    Category,
    Concept,
    ConceptGraph,
    Relationship,
    Thesis,
    ThesisStyle,
    ThesisType,
)


def require_score(value: float, field_name: str) -> None:
    """
    Validate that a score is a number within [0, 1].

    Raises:
        ValidationFailedError: If value is missing or out of range
    """
    if value is None or isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationFailedError(f"{field_name} must be a number, got {value!r}")

    if not 0.0 <= float(value) <= 1.0:
        raise ValidationFailedError(f"{field_name} must be within [0, 1], got {value}")


def require_active_concept(concept: Optional[Concept], concept_id: str) -> Concept:
    """
    Validate that a concept exists and is not archived.

    Every Category's concept_id must reference an existing, non-archived Concept.

    Raises:
        ValidationFailedError: If concept is missing or archived
    """
    if concept is None:
        raise ValidationFailedError(f"Concept {concept_id} does not exist")

    if concept.is_archived:
        raise ValidationFailedError(f"Concept {concept_id} is archived")

    return concept


def validate_category(category: Category) -> None:
    if not category.name or not category.name.strip():
        raise ValidationFailedError("Category name is required")

    require_score(category.centrality, f"Category '{category.name}' centrality")
    require_score(category.certainty, f"Category '{category.name}' certainty")
    require_score(
        category.historical_significance,
        f"Category '{category.name}' historical_significance"
    )


def validate_relationship(relationship: Relationship, graph: ConceptGraph) -> None:
    """
    Validate a relationship against the graph it belongs to.

    Raises:
        ValidationFailedError: If endpoints are unknown or cross concepts
    """
    if not relationship.type or not relationship.type.strip():
        raise ValidationFailedError("Relationship type is required")

    require_score(relationship.strength, f"Relationship '{relationship.type}' strength")
    require_score(relationship.certainty, f"Relationship '{relationship.type}' certainty")

    source = graph.category_by_id(relationship.source_category_id)
    target = graph.category_by_id(relationship.target_category_id)

    if source is None or target is None:
        raise ValidationFailedError(
            f"Relationship '{relationship.type}' references unknown categories "
            f"{relationship.source_category_id} -> {relationship.target_category_id}"
        )

    if source.concept_id != target.concept_id:
        raise ValidationFailedError(
            f"Relationship '{relationship.type}' crosses concepts "
            f"({source.concept_id} -> {target.concept_id})"
        )


def validate_graph(graph: ConceptGraph) -> None:
    """
    Run all graph checks before a batch write.

    Raises:
        ValidationFailedError: If any category or relationship is invalid
    """
    seen = set()
    for category in graph.categories:
        validate_category(category)
        if category.concept_id != graph.concept_id:
            raise ValidationFailedError(
                f"Category '{category.name}' belongs to {category.concept_id}, "
                f"not {graph.concept_id}"
            )
        if category.id is not None:
            if category.id in seen:
                raise ValidationFailedError(f"Duplicate category id {category.id}")
            seen.add(category.id)

    for relationship in graph.relationships:
        validate_relationship(relationship, graph)


def validate_thesis(thesis: Thesis) -> None:
    if not thesis.content or not thesis.content.strip():
        raise ValidationFailedError("Thesis content is required")

    if thesis.type not in {t.value for t in ThesisType}:
        raise ValidationFailedError(f"Unknown thesis type: {thesis.type}")

    if thesis.style not in {s.value for s in ThesisStyle}:
        raise ValidationFailedError(f"Unknown thesis style: {thesis.style}")


def validate_theses(theses: Iterable[Thesis]) -> None:
    for thesis in theses:
        validate_thesis(thesis)


def validate_synthesis_parents(parent_ids: Iterable[str]) -> None:
    """
    Validate synthesis parents.

    A synthesized concept has 0..2 parents in the data model; a synthesis
    plan always has exactly two distinct ones.
    """
    parents = list(parent_ids)
    if len(parents) != 2 or len(set(parents)) != 2:
        raise ValidationFailedError(
            f"Synthesis requires exactly two distinct parent concepts, got {parents}"
        )


def validate_innovation_degree(degree: int) -> None:
    if isinstance(degree, bool) or not isinstance(degree, int) or not 0 <= degree <= 100:
        raise ValidationFailedError(
            f"innovation_degree must be an integer within [0, 100], got {degree!r}"
        )
