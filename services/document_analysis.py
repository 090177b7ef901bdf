"""
============================================================================
Tradegate Risk Engine - Instrument Document Analysis
============================================================================

Reliability Level: L4 Advisory
Side Effects: One call to the text-generation collaborator per evaluation

Sends the raw SWIFT text of an instrument to the text-generation
collaborator and turns its answer into a DocumentAnalysis. The result is
attached to the InstrumentSnapshot before the instrument rule set runs, so
rule evaluation itself stays free of I/O.

Parsing is tolerant:
    - camelCase (parsedFields, additionalFlags) and snake_case keys accepted
    - unknown keys are preserved in DocumentAnalysis.extra
    - a prose answer is tried as JSON, then kept as the narrative

Any ExternalServiceError or unusable answer yields available=False, which
the rule set reports as one WARNING finding. Never raises.

============================================================================
"""

import json
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from services.flag_models import GateJSONEncoder
from services.gate_errors import ExternalServiceError
from services.subject_models import DocumentAnalysis, InstrumentSnapshot

# Configure module logger
logger = logging.getLogger(__name__)

MAX_RAW_TEXT_CHARS = 3000

SYSTEM_PROMPT = """You are a trade finance compliance expert specializing in SWIFT MT messages and banking instruments.
Parse the provided SWIFT message and identify any inconsistencies, red flags, or missing fields.

Return JSON with:
{
  "parsedFields": { "field_tag": "value", ... },
  "analysis": "narrative analysis",
  "additionalFlags": ["FLAG_1", "FLAG_2"]
}

Focus on: MT field completeness, amount/currency/date consistency, BIC validity, UCP600/ISP98 compliance indicators.
Flag: SANCTION_RISK_KEYWORDS, UNUSUAL_CONDITIONS, MISSING_REQUIRED_FIELDS, PRESENTATION_PERIOD_SHORT"""

_PARSED_KEYS = ("parsedFields", "parsed_fields")
_ANALYSIS_KEYS = ("analysis",)
_FLAG_KEYS = ("additionalFlags", "additional_flags")
_KNOWN_KEYS = frozenset(_PARSED_KEYS + _ANALYSIS_KEYS + _FLAG_KEYS)


def build_prompt(instrument: InstrumentSnapshot) -> str:
    record = {
        "type": instrument.instrument_type,
        "amount": instrument.amount,
        "currency": instrument.currency,
        "issuing_bic": instrument.issuing_bank_bic,
        "beneficiary": instrument.beneficiary_name,
        "expiry": instrument.expiry_date,
    }
    raw_text = (instrument.raw_text or "")[:MAX_RAW_TEXT_CHARS]
    return (
        f"SWIFT Text:\n{raw_text}\n\n"
        f"Instrument DB Record:\n{json.dumps(record, indent=2, cls=GateJSONEncoder)}"
    )


def _first(payload: Mapping[str, Any], keys: Tuple[str, ...]) -> Any:
    for key in keys:
        if key in payload:
            return payload[key]
    return None


def _normalize_flags(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return ()
    flags: List[str] = []
    for item in value:
        flag = str(item).strip()
        if flag and flag not in flags:
            flags.append(flag)
    return tuple(flags)


def parse_analysis(output: Any) -> DocumentAnalysis:
    """
    Build a DocumentAnalysis from whatever the collaborator returned.

    A dict is read field by field. A string is tried as JSON first and
    otherwise kept as the narrative. Anything else is unusable.
    """
    if isinstance(output, str):
        try:
            decoded = json.loads(output)
        except ValueError:
            return DocumentAnalysis(available=True, analysis=output.strip())
        output = decoded

    if not isinstance(output, dict):
        return DocumentAnalysis(
            available=False,
            error=f"Unexpected collaborator output type: {type(output).__name__}",
        )

    parsed_fields = _first(output, _PARSED_KEYS)
    if not isinstance(parsed_fields, dict):
        parsed_fields = {}
    analysis = _first(output, _ANALYSIS_KEYS)

    return DocumentAnalysis(
        available=True,
        parsed_fields=parsed_fields,
        analysis="" if analysis is None else str(analysis),
        additional_flags=_normalize_flags(_first(output, _FLAG_KEYS)),
        extra={k: v for k, v in output.items() if k not in _KNOWN_KEYS},
    )


class DocumentAnalyzer:
    """Runs the advisory document pass for instruments carrying raw text."""

    def __init__(self, client: Optional[Any] = None) -> None:
        # Anything with generate(prompt, system=..., correlation_id=...)
        self._client = client

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def analyze(
        self,
        instrument: InstrumentSnapshot,
        correlation_id: Optional[str] = None,
    ) -> Optional[DocumentAnalysis]:
        """
        Analyze the instrument's raw text.

        Returns:
            None when there is no raw text or no collaborator configured,
            otherwise a DocumentAnalysis (available=False on failure)
        """
        if not instrument.raw_text or not instrument.raw_text.strip():
            return None
        if self._client is None:
            logger.info(
                f"[DOC-ANALYSIS] Skipped, no text-generation collaborator | "
                f"subject_id={instrument.subject_id} | correlation_id={correlation_id}"
            )
            return None

        try:
            output = self._client.generate(
                build_prompt(instrument),
                system=SYSTEM_PROMPT,
                correlation_id=correlation_id,
            )
        except ExternalServiceError as e:
            logger.warning(
                f"[{e.error_code}] Document analysis unavailable | "
                f"subject_id={instrument.subject_id} | "
                f"error={e.message} | correlation_id={correlation_id}"
            )
            return DocumentAnalysis(available=False, error=e.message)
        except Exception as e:
            # Advisory only; a broken collaborator never aborts the evaluation
            logger.warning(
                f"[DOC-ANALYSIS] Collaborator raised unexpectedly | "
                f"subject_id={instrument.subject_id} | "
                f"error={type(e).__name__}: {e} | correlation_id={correlation_id}"
            )
            return DocumentAnalysis(available=False, error=f"{type(e).__name__}: {e}")

        result = parse_analysis(output)
        logger.info(
            f"[DOC-ANALYSIS] Completed | subject_id={instrument.subject_id} | "
            f"available={result.available} | flags={len(result.additional_flags)} | "
            f"correlation_id={correlation_id}"
        )
        return result


def analysis_summary(analysis: Optional[DocumentAnalysis]) -> Dict[str, Any]:
    """Compact form recorded in the evaluation audit entry."""
    if analysis is None:
        return {"performed": False}
    return {
        "performed": True,
        "available": analysis.available,
        "flags": list(analysis.additional_flags),
        "error": analysis.error,
    }


__all__ = [
    "DocumentAnalyzer",
    "MAX_RAW_TEXT_CHARS",
    "SYSTEM_PROMPT",
    "analysis_summary",
    "build_prompt",
    "parse_analysis",
]
