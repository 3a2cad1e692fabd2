"""
PhiloGraph - Reasoning Request Models

One pydantic model per request kind. Required fields are validated when the
request is built, so a malformed request fails with ValidationFailedError
before any network call (and before the circuit breaker is consulted).

Request kinds:
- validate-graph
- enrich-category
- generate-theses
- thesis-to-graph
- concept-synthesis
- compatibility-check

Human-readable prompt formatting is the reasoning service's job; these
models only carry structured fields.
"""

from typing import Any, ClassVar, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from philograph.core.errors import ValidationFailedError
from philograph.core.hashing import payload_hash
from philograph.core.models import ThesisStyle, ThesisType


class GraphPayload(BaseModel):
    """Structured graph as sent to the reasoning service."""
    model_config = ConfigDict(extra='allow')

    concept_id: Optional[str] = None
    categories: List[Dict[str, Any]] = Field(min_length=1)
    relationships: List[Dict[str, Any]] = Field(default_factory=list)

    @field_validator('categories')
    @classmethod
    def categories_have_names(cls, value: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for category in value:
            if not str(category.get('name') or '').strip():
                raise ValueError("every category needs a name")
        return value


class ReasoningRequest(BaseModel):
    """Base request. Subclasses set `kind`."""
    model_config = ConfigDict(extra='forbid', frozen=True)

    kind: ClassVar[str] = ""

    @classmethod
    def create(cls, **fields: Any) -> 'ReasoningRequest':
        """
        Build and validate a request.

        Raises:
            ValidationFailedError: If a required field is missing or invalid
        """
        try:
            return cls(**fields)
        except ValidationError as e:
            raise ValidationFailedError(f"Invalid {cls.kind} request: {e}") from e

    def payload(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')

    def cache_key(self) -> str:
        return f"reasoning:{self.kind}:{payload_hash(self.payload())}"


class ValidateGraphRequest(ReasoningRequest):
    kind: ClassVar[str] = "validate-graph"

    graph: GraphPayload


class EnrichCategoryRequest(ReasoningRequest):
    kind: ClassVar[str] = "enrich-category"

    category: Dict[str, Any]
    concept_name: str = Field(min_length=1)
    traditions: List[str] = Field(default_factory=list)
    philosophers: List[str] = Field(default_factory=list)

    @field_validator('category')
    @classmethod
    def category_has_name(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if not str(value.get('name') or '').strip():
            raise ValueError("category name is required")
        return value


class GenerateThesesRequest(ReasoningRequest):
    kind: ClassVar[str] = "generate-theses"

    graph: GraphPayload
    quantity: int = Field(gt=0)
    thesis_type: ThesisType
    style: ThesisStyle = ThesisStyle.ACADEMIC


class ThesisToGraphRequest(ReasoningRequest):
    kind: ClassVar[str] = "thesis-to-graph"

    concept_id: str = Field(min_length=1)
    theses: List[Dict[str, Any]] = Field(min_length=1)

    @field_validator('theses')
    @classmethod
    def theses_have_content(cls, value: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        for thesis in value:
            if not str(thesis.get('content') or '').strip():
                raise ValueError("every thesis needs content")
        return value


class ConceptSynthesisRequest(ReasoningRequest):
    kind: ClassVar[str] = "concept-synthesis"

    concept_a_id: str = Field(min_length=1)
    concept_b_id: str = Field(min_length=1)
    graph_a: GraphPayload
    graph_b: GraphPayload
    method: str = Field(min_length=1)
    focus: Optional[str] = None
    innovation_degree: int = Field(ge=0, le=100)
    compatibility: Optional[Dict[str, Any]] = None


class CompatibilityCheckRequest(ReasoningRequest):
    kind: ClassVar[str] = "compatibility-check"

    graph_a: GraphPayload
    graph_b: GraphPayload


REQUEST_TYPES: Dict[str, Type[ReasoningRequest]] = {
    request_type.kind: request_type
    for request_type in (
        ValidateGraphRequest,
        EnrichCategoryRequest,
        GenerateThesesRequest,
        ThesisToGraphRequest,
        ConceptSynthesisRequest,
        CompatibilityCheckRequest,
    )
}


def build_request(kind: str, **fields: Any) -> ReasoningRequest:
    """
    Build a validated request of the given kind.

    Raises:
        ValidationFailedError: Unknown kind or invalid fields
    """
    request_type = REQUEST_TYPES.get(kind)
    if request_type is None:
        raise ValidationFailedError(
            f"Unknown reasoning request kind: {kind}. "
            f"Valid kinds: {', '.join(sorted(REQUEST_TYPES))}"
        )
    return request_type.create(**fields)
