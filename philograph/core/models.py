"""
PhiloGraph - Domain Models

Typed records for the three stores:
- Concept: relational store (lifecycle owner)
- Category / Relationship: graph store
- Thesis / SynthesisProvenance: document store

Ownership is by store; cross-store references are plain ids
(Category.concept_id is a back-reference, not ownership).
"""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from enum import Enum
import uuid


class ConceptStatus(str, Enum):
    """Concept lifecycle status (archived is the soft-delete state)."""
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class RelationshipDirection(str, Enum):
    DIRECTED = "directed"
    BIDIRECTIONAL = "bidirectional"


class ThesisType(str, Enum):
    ONTOLOGICAL = "ontological"
    EPISTEMOLOGICAL = "epistemological"
    ETHICAL = "ethical"
    AESTHETIC = "aesthetic"
    POLITICAL = "political"
    LOGICAL = "logical"
    METHODOLOGICAL = "methodological"
    CRITICAL = "critical"
    SYNTHETIC = "synthetic"


class ThesisStyle(str, Enum):
    ACADEMIC = "academic"
    APHORISTIC = "aphoristic"
    POETIC = "poetic"
    DIALECTICAL = "dialectical"
    ANALYTICAL = "analytical"
    NARRATIVE = "narrative"
    POPULAR = "popular"


class TransformationKind(str, Enum):
    """How a synthesized element relates to its origin."""
    UNCHANGED = "unchanged"
    MODIFIED = "modified"
    NEW = "new"


class ElementKind(str, Enum):
    CATEGORY = "category"
    RELATIONSHIP = "relationship"
    THESIS = "thesis"


# Fallback for scores the reasoning service omits (not inferred)
DEFAULT_SCORE = 0.5


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Concept:
    """
    Identified unit of philosophical content (relational store).

    parent_concept_ids is empty unless is_synthesis.
    """
    name: str
    description: str = ""
    status: ConceptStatus = ConceptStatus.DRAFT
    is_synthesis: bool = False
    parent_concept_ids: List[str] = field(default_factory=list)
    synthesis_method: Optional[str] = None
    focus: Optional[str] = None
    innovation_degree: Optional[int] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    last_modified: Optional[datetime] = None

    @property
    def is_archived(self) -> bool:
        return self.status == ConceptStatus.ARCHIVED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['status'] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Concept':
        return cls(
            id=data.get('id'),
            name=data['name'],
            description=data.get('description') or "",
            status=ConceptStatus(data.get('status') or ConceptStatus.DRAFT.value),
            is_synthesis=bool(data.get('is_synthesis', False)),
            parent_concept_ids=list(data.get('parent_concept_ids') or []),
            synthesis_method=data.get('synthesis_method'),
            focus=data.get('focus'),
            innovation_degree=data.get('innovation_degree'),
            created_at=data.get('created_at'),
            last_modified=data.get('last_modified'),
        )


@dataclass
class Category:
    """Node in a concept graph (graph store)."""
    concept_id: str
    name: str
    definition: str = ""
    centrality: float = DEFAULT_SCORE
    certainty: float = DEFAULT_SCORE
    historical_significance: float = DEFAULT_SCORE
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Relationship:
    """Edge between two categories of the same concept (graph store)."""
    concept_id: str
    source_category_id: str
    target_category_id: str
    type: str
    direction: RelationshipDirection = RelationshipDirection.DIRECTED
    strength: float = DEFAULT_SCORE
    certainty: float = DEFAULT_SCORE
    id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['direction'] = self.direction.value
        return data


@dataclass
class ConceptGraph:
    """Category/Relationship structure of one concept."""
    concept_id: str
    categories: List[Category] = field(default_factory=list)
    relationships: List[Relationship] = field(default_factory=list)

    def category_by_id(self, category_id: str) -> Optional[Category]:
        return next((c for c in self.categories if c.id == category_id), None)

    def category_by_name(self, name: str) -> Optional[Category]:
        wanted = normalize_name(name)
        return next((c for c in self.categories if normalize_name(c.name) == wanted), None)

    def with_concept_id(self, concept_id: str) -> 'ConceptGraph':
        """Copy of the graph re-homed under another concept id."""
        return ConceptGraph(
            concept_id=concept_id,
            categories=[replace(c, concept_id=concept_id) for c in self.categories],
            relationships=[replace(r, concept_id=concept_id) for r in self.relationships],
        )

    def to_payload(self) -> Dict[str, Any]:
        """Structured form sent to the reasoning service."""
        return {
            'concept_id': self.concept_id,
            'categories': [c.to_dict() for c in self.categories],
            'relationships': [r.to_dict() for r in self.relationships],
        }

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> 'ConceptGraph':
        return cls(
            concept_id=data['concept_id'],
            categories=[Category(**c) for c in data.get('categories') or []],
            relationships=[
                Relationship(**{**r, 'direction': RelationshipDirection(r['direction'])})
                for r in data.get('relationships') or []
            ],
        )

    @property
    def is_empty(self) -> bool:
        return not self.categories


@dataclass
class Thesis:
    """Natural-language proposition (document store)."""
    concept_id: str
    type: str
    content: str
    style: str = ThesisStyle.ACADEMIC.value
    related_category_ids: List[str] = field(default_factory=list)
    parent_thesis_ids: List[str] = field(default_factory=list)
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_payload(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'content': self.content,
            'style': self.style,
            'related_category_ids': list(self.related_category_ids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Thesis':
        return cls(
            id=data.get('id'),
            concept_id=data['concept_id'],
            type=data['type'],
            content=data['content'],
            style=data.get('style') or ThesisStyle.ACADEMIC.value,
            related_category_ids=list(data.get('related_category_ids') or []),
            parent_thesis_ids=list(data.get('parent_thesis_ids') or []),
            created_at=data.get('created_at'),
        )


@dataclass
class SynthesisProvenance:
    """
    Origin record for one element created by a synthesis plan.

    origin_concept_id is None exactly when transformation_kind is NEW.
    """
    concept_id: str
    element_id: str
    element_kind: ElementKind
    transformation_kind: TransformationKind
    origin_concept_id: Optional[str] = None
    origin_element_id: Optional[str] = None
    justification: str = ""
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['element_kind'] = self.element_kind.value
        data['transformation_kind'] = self.transformation_kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SynthesisProvenance':
        return cls(
            id=data.get('id'),
            concept_id=data['concept_id'],
            element_id=data['element_id'],
            element_kind=ElementKind(data['element_kind']),
            transformation_kind=TransformationKind(data['transformation_kind']),
            origin_concept_id=data.get('origin_concept_id'),
            origin_element_id=data.get('origin_element_id'),
            justification=data.get('justification') or "",
            created_at=data.get('created_at'),
        )


def normalize_name(name: Optional[str]) -> str:
    """Case/whitespace-insensitive form used for name matching."""
    return " ".join((name or "").split()).casefold()
