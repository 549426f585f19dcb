"""Domain services: classification, extraction, transformation and orchestration."""

from fhir_timeline.domain.services.clinical_classifier import (
    ClassifierConfig,
    ClinicalSummary,
    ClinicalTextClassifier,
)
from fhir_timeline.domain.services.content_extractor import ContentExtractor, ExtractedContent
from fhir_timeline.domain.services.import_orchestrator import ImportOrchestrator, ImportRunContext
from fhir_timeline.domain.services.resource_transformer import ResourceTransformer

__all__ = [
    "ClassifierConfig",
    "ClinicalSummary",
    "ClinicalTextClassifier",
    "ContentExtractor",
    "ExtractedContent",
    "ImportOrchestrator",
    "ImportRunContext",
    "ResourceTransformer",
]
