"""Clinical Text Classifier.

Rule-based detection of health-related content in free text (post bodies).
The classifier answers two questions:

    1. Is this text clinically relevant at all? (keyword / phrase / shorthand match)
    2. Which findings does it mention? (mapped terms, medication and
       vital-sign patterns, each with a heuristic confidence, severity and
       temporal pattern)

Security Impact:
    - Operates on text only, never persists or logs the analysed content
    - Deterministic: the same text always yields the same findings

Architecture:
    - Pure domain service with no infrastructure dependencies
    - All keyword tables and scoring constants live in an injected
      ``ClassifierConfig`` so deployments can tune them from configuration
"""

import logging
import re
from typing import Optional

from pydantic import BaseModel, Field

from fhir_timeline.domain.enums import FindingType, Severity, TemporalPattern
from fhir_timeline.domain.resources import SNOMED_SYSTEM, ClinicalFinding

logger = logging.getLogger(__name__)


DEFAULT_KEYWORDS = (
    'sick', 'pain', 'doctor', 'hospital', 'medication', 'surgery',
    'headache', 'fever', 'tired', 'appointment', 'diagnosis', 'treatment',
    'prescription', 'symptoms', 'illness', 'injury', 'therapy', 'recovery',
    'ache', 'hurt', 'sore', 'pharmacy', 'clinic', 'emergency', 'urgent care',
    'checkup', 'blood test', 'x-ray', 'scan', 'mri', 'ct', 'ultrasound',
    'vaccination', 'vaccine', 'shot', 'immunization', 'allergy', 'allergic',
    'rash', 'swelling', 'bruise', 'cut', 'wound', 'bleeding', 'nausea',
    'vomiting', 'diarrhea', 'constipation', 'heartburn', 'indigestion',
    'dizzy', 'fainting', 'chest pain', 'shortness of breath', 'cough',
    'cold', 'flu', 'covid', 'coronavirus', 'quarantine', 'isolation',
    'mental health', 'depression', 'anxiety', 'stress', 'counseling',
    'therapist', 'psychiatrist', 'psychologist', 'medicine', 'pills',
    'tablet', 'capsule', 'dose', 'dosage', 'side effect', 'reaction',
)

DEFAULT_HEALTH_PHRASES = (
    'feeling sick', 'not feeling well', 'under the weather',
    'doctor visit', 'medical appointment', 'health issue',
    'taking medication', 'prescription drug', 'side effects',
    'test results', 'lab results', 'blood work',
    'getting better', 'feeling worse', 'recovery',
    'health problem', 'medical condition', 'chronic pain',
)

DEFAULT_MEDICAL_TERMS = (
    'mg', 'ml', 'dose', 'twice daily', 'once daily',
    'blood pressure', 'heart rate', 'temperature',
    'diagnosis', 'prognosis', 'treatment plan',
    'specialist', 'referral', 'follow-up',
)


class TermMapping(BaseModel):
    """SNOMED CT concept a detected term maps to."""
    code: str
    display: str


def _default_term_codes() -> dict[str, TermMapping]:
    return {
        'headache': TermMapping(code='25064002', display='Headache'),
        'fever': TermMapping(code='386661006', display='Fever'),
        'pain': TermMapping(code='22253000', display='Pain'),
        'cough': TermMapping(code='49727002', display='Cough'),
        'nausea': TermMapping(code='422587007', display='Nausea'),
        'tired': TermMapping(code='84229001', display='Fatigue'),
        'anxiety': TermMapping(code='48694002', display='Anxiety'),
        'depression': TermMapping(code='35489007', display='Depressive disorder'),
        'surgery': TermMapping(code='387713003', display='Surgical procedure'),
        'medication': TermMapping(code='410942007', display='Drug or medicament'),
    }


def _default_severity_indicators() -> dict[Severity, list[str]]:
    return {
        Severity.HIGH: ['severe', 'terrible', 'excruciating', 'unbearable', 'worst', 'emergency', 'urgent'],
        Severity.MEDIUM: ['bad', 'moderate', 'uncomfortable', 'concerning', 'worrying'],
        Severity.LOW: ['mild', 'slight', 'minor', 'little', 'small'],
    }


def _default_temporal_indicators() -> dict[TemporalPattern, list[str]]:
    return {
        TemporalPattern.ACUTE: ['sudden', 'suddenly', 'immediate', 'now', 'today', 'right now'],
        TemporalPattern.CHRONIC: ['always', 'constantly', 'ongoing', 'persistent', 'chronic', 'for months', 'for years'],
        TemporalPattern.RECURRING: ['again', 'recurring', 'comes back', 'intermittent', 'on and off'],
    }


class ClassifierConfig(BaseModel):
    """Keyword tables and scoring constants for the classifier.

    Defaults reproduce the stock rule set. Indicator dictionaries are checked
    in insertion order, so the first listed level wins when several match.
    """

    keywords: list[str] = Field(default_factory=lambda: list(DEFAULT_KEYWORDS))
    health_phrases: list[str] = Field(default_factory=lambda: list(DEFAULT_HEALTH_PHRASES))
    medical_terms: list[str] = Field(default_factory=lambda: list(DEFAULT_MEDICAL_TERMS))
    term_codes: dict[str, TermMapping] = Field(default_factory=_default_term_codes)
    severity_indicators: dict[Severity, list[str]] = Field(default_factory=_default_severity_indicators)
    temporal_indicators: dict[TemporalPattern, list[str]] = Field(default_factory=_default_temporal_indicators)
    context_clues: list[str] = Field(
        default_factory=lambda: ['i have', 'i feel', 'experiencing', 'suffering from', 'diagnosed with']
    )
    negations: list[str] = Field(
        default_factory=lambda: ['no ', 'not ', 'without ', 'never ', "don't have"]
    )
    medication_patterns: list[str] = Field(
        default_factory=lambda: [
            r'(\w+)\s+(\d+)\s*(mg|ml|g|mcg)',
            r'(taking|prescribed|on)\s+(\w+)',
            r'(\w+)\s+(tablet|pill|capsule|injection)',
        ]
    )
    vital_sign_patterns: list[str] = Field(
        default_factory=lambda: [
            r'(\d+)/(\d+)\s*(mmhg|blood pressure)',
            r'(\d+)\s*(bpm|beats per minute|heart rate)',
            r'(\d+\.?\d*)\s*(°f|°c|degrees|fever|temperature)',
            r'(\d+\.?\d*)\s*(lbs|kg|pounds|weight)',
        ]
    )
    medication_code: TermMapping = Field(
        default_factory=lambda: TermMapping(code='410942007', display='Drug or medicament')
    )
    vital_sign_code: TermMapping = Field(
        default_factory=lambda: TermMapping(code='72313002', display='Vital signs')
    )
    base_confidence: float = 0.5
    whole_word_boost: float = 0.2
    context_clue_boost: float = 0.2
    negation_penalty: float = 0.4
    negation_window: int = 20
    context_window: int = 50
    medication_confidence: float = 0.7
    vital_sign_confidence: float = 0.8
    min_confidence: float = 0.3
    high_confidence: float = 0.7


class ClinicalSummary(BaseModel):
    """Aggregate view over a list of findings."""

    total_findings: int = 0
    high_confidence: int = 0
    symptoms: int = 0
    medications: int = 0
    vitals: int = 0
    severity_distribution: dict[Severity, int] = Field(
        default_factory=lambda: {level: 0 for level in Severity}
    )


class ClinicalTextClassifier:
    """Keyword and pattern based clinical text classifier.

    Example Usage:
        ```python
        classifier = ClinicalTextClassifier()
        text = "I have a severe headache today"
        if classifier.is_clinically_relevant(text):
            findings = classifier.extract_findings(text)
            # [ClinicalFinding(term='headache', code='25064002', severity='high', ...)]
        ```
    """

    def __init__(self, config: Optional[ClassifierConfig] = None):
        """Initialize the classifier.

        Parameters:
            config: Rule tables and constants (stock rules if None)
        """
        config = config or ClassifierConfig()
        # Text is matched lowercased, so the term tables are lowercased once here
        self.config = config.model_copy(update={
            'keywords': [keyword.lower() for keyword in config.keywords],
            'health_phrases': [phrase.lower() for phrase in config.health_phrases],
            'medical_terms': [term.lower() for term in config.medical_terms],
            'term_codes': {term.lower(): mapping for term, mapping in config.term_codes.items()},
        })
        self._medication_regexes = [re.compile(p, re.IGNORECASE) for p in self.config.medication_patterns]
        self._vital_sign_regexes = [re.compile(p, re.IGNORECASE) for p in self.config.vital_sign_patterns]

    def is_clinically_relevant(self, text: Optional[str]) -> bool:
        """Check whether the text mentions anything health related.

        Parameters:
            text: Free text (post body)

        Returns:
            bool: True if any keyword, health phrase or medical shorthand term
            appears as a case-insensitive substring. False for empty or
            non-string input.
        """
        if not text or not isinstance(text, str):
            return False

        lowered = text.lower()
        return (
            any(keyword in lowered for keyword in self.config.keywords)
            or any(phrase in lowered for phrase in self.config.health_phrases)
            or any(term in lowered for term in self.config.medical_terms)
        )

    def extract_findings(self, text: Optional[str]) -> list[ClinicalFinding]:
        """Extract clinical findings from text.

        Mapped terms come first (in table order), followed by medication and
        vital-sign pattern matches. Findings at or below the minimum
        confidence are dropped.

        Parameters:
            text: Free text (post body)

        Returns:
            list[ClinicalFinding]: Findings with confidence above the minimum
        """
        if not text or not isinstance(text, str):
            return []

        lowered = text.lower()
        findings: list[ClinicalFinding] = []

        for term, mapping in self.config.term_codes.items():
            if term not in lowered:
                continue
            findings.append(ClinicalFinding(
                term=term,
                display=mapping.display,
                system=SNOMED_SYSTEM,
                code=mapping.code,
                confidence=self._calculate_confidence(lowered, term),
                severity=self._determine_severity(lowered),
                temporal=self._determine_temporal(lowered),
                context=self._extract_context(text, term),
                finding_type=FindingType.CONDITION,
            ))

        findings.extend(self._extract_pattern_findings(
            text, self._medication_regexes, "Medication",
            self.config.medication_code, self.config.medication_confidence,
            FindingType.MEDICATION,
        ))
        findings.extend(self._extract_pattern_findings(
            text, self._vital_sign_regexes, "Vital Sign",
            self.config.vital_sign_code, self.config.vital_sign_confidence,
            FindingType.VITAL_SIGN,
        ))

        return [f for f in findings if f.confidence > self.config.min_confidence]

    def summarize_findings(self, findings: list[ClinicalFinding]) -> ClinicalSummary:
        """Summarize findings by type, confidence and severity."""
        summary = ClinicalSummary(total_findings=len(findings))
        for finding in findings:
            if finding.confidence > self.config.high_confidence:
                summary.high_confidence += 1
            if finding.finding_type == FindingType.MEDICATION:
                summary.medications += 1
            elif finding.finding_type == FindingType.VITAL_SIGN:
                summary.vitals += 1
            else:
                summary.symptoms += 1
            summary.severity_distribution[finding.severity] += 1
        return summary

    def _calculate_confidence(self, lowered: str, term: str) -> float:
        cfg = self.config
        confidence = cfg.base_confidence

        if (
            f" {term} " in lowered
            or lowered.startswith(f"{term} ")
            or lowered.endswith(f" {term}")
            or lowered == term
        ):
            confidence += cfg.whole_word_boost

        if any(clue in lowered for clue in cfg.context_clues):
            confidence += cfg.context_clue_boost

        term_index = lowered.find(term)
        if term_index > 0:
            before_term = lowered[max(0, term_index - cfg.negation_window):term_index]
            if any(negation in before_term for negation in cfg.negations):
                confidence -= cfg.negation_penalty

        return max(0.0, min(1.0, confidence))

    def _determine_severity(self, lowered: str) -> Severity:
        for level, indicators in self.config.severity_indicators.items():
            if any(indicator in lowered for indicator in indicators):
                return level
        return Severity.UNKNOWN

    def _determine_temporal(self, lowered: str) -> TemporalPattern:
        for pattern, indicators in self.config.temporal_indicators.items():
            if any(indicator in lowered for indicator in indicators):
                return pattern
        return TemporalPattern.UNKNOWN

    def _extract_context(self, text: str, term: str) -> str:
        # Lookup is case-insensitive so pattern matches keep their context
        term_index = text.lower().find(term.lower())
        if term_index == -1:
            return ''
        window = self.config.context_window
        start = max(0, term_index - window)
        end = min(len(text), term_index + len(term) + window)
        return text[start:end].strip()

    def _extract_pattern_findings(
        self,
        text: str,
        regexes: list[re.Pattern],
        label: str,
        mapping: TermMapping,
        confidence: float,
        finding_type: FindingType,
    ) -> list[ClinicalFinding]:
        findings = []
        for regex in regexes:
            for match in regex.finditer(text):
                matched = match.group(0)
                findings.append(ClinicalFinding(
                    term=matched,
                    display=f"{label}: {matched}",
                    system=SNOMED_SYSTEM,
                    code=mapping.code,
                    confidence=confidence,
                    context=self._extract_context(text, matched),
                    finding_type=finding_type,
                ))
        return findings
