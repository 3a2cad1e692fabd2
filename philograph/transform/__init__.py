"""
PhiloGraph - Bidirectional Transform Engine
"""

from philograph.transform.engine import (
    CategoryEnrichment,
    CompatibilityReport,
    CompatibilityVerdict,
    GraphValidation,
    SynthesisResult,
    ThesisParams,
    TransformEngine,
)

__all__ = [
    'TransformEngine',
    'ThesisParams',
    'CompatibilityReport',
    'CompatibilityVerdict',
    'SynthesisResult',
    'GraphValidation',
    'CategoryEnrichment',
]
