"""
Combine the per-source results of one case into a case-level verdict.

Reconciliation is a pure read-side computation: stored results are never
modified, and a verdict can be recomputed at any time with different
weights. A missing confidence counts as 0.5 when weighing evidence.
"""

import logging

from nvdrs_ipv.config import ReconciliationSettings
from nvdrs_ipv.schemas import CaseVerdict, NarrativeResult, ParsedResult
from nvdrs_ipv.storage import IPVStorage

logger = logging.getLogger(__name__)

NEUTRAL_CONFIDENCE = 0.5

SourceResult = ParsedResult | NarrativeResult


def _usable(result: SourceResult | None) -> bool:
    return result is not None and result.detected is not None


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def reconcile(
    primary: SourceResult | None,
    secondary: SourceResult | None,
    settings: ReconciliationSettings,
    case_id: str | None = None,
) -> CaseVerdict:
    if case_id is None:
        case_id = getattr(primary, "case_id", None) or getattr(secondary, "case_id", None) or ""

    per_source = {
        "primary_detected": primary.detected if primary is not None else None,
        "primary_confidence": primary.confidence if primary is not None else None,
        "secondary_detected": secondary.detected if secondary is not None else None,
        "secondary_confidence": secondary.confidence if secondary is not None else None,
    }

    p_ok, s_ok = _usable(primary), _usable(secondary)

    if not p_ok and not s_ok:
        return CaseVerdict(
            case_id=case_id,
            final_detected=None,
            final_confidence=None,
            conflict_flag=False,
            rationale="No usable result from either source",
            **per_source,
        )

    if p_ok != s_ok:
        name, only = ("primary", primary) if p_ok else ("secondary", secondary)
        return CaseVerdict(
            case_id=case_id,
            final_detected=only.detected,
            final_confidence=only.confidence,
            conflict_flag=False,
            sources=(name,),
            rationale=f"Only the {name} source was usable",
            **per_source,
        )

    p_conf, s_conf = primary.confidence, secondary.confidence
    gap_conflict = (
        p_conf is not None
        and s_conf is not None
        and abs(p_conf - s_conf) > settings.confidence_gap_threshold
    )

    if primary.detected == secondary.detected:
        present = [c for c in (p_conf, s_conf) if c is not None]
        return CaseVerdict(
            case_id=case_id,
            final_detected=primary.detected,
            final_confidence=max(present) if present else None,
            conflict_flag=gap_conflict,
            sources=("primary", "secondary"),
            rationale=(
                "Sources agree; confidence gap exceeds threshold"
                if gap_conflict else "Sources agree"
            ),
            **per_source,
        )

    w_p = settings.source_weights["primary"]
    w_s = settings.source_weights["secondary"]
    p_evidence = w_p * (p_conf if p_conf is not None else NEUTRAL_CONFIDENCE)
    s_evidence = w_s * (s_conf if s_conf is not None else NEUTRAL_CONFIDENCE)

    if p_evidence > s_evidence:
        winner = "primary"
    elif s_evidence > p_evidence:
        winner = "secondary"
    else:
        winner = "secondary" if w_s > w_p else "primary"
    final_detected = primary.detected if winner == "primary" else secondary.detected

    higher = max(c if c is not None else NEUTRAL_CONFIDENCE for c in (p_conf, s_conf))
    final_confidence = _clamp(settings.base_floor + higher * settings.spread_weight)

    return CaseVerdict(
        case_id=case_id,
        final_detected=final_detected,
        final_confidence=final_confidence,
        conflict_flag=True,
        sources=("primary", "secondary"),
        rationale=(
            f"Sources disagree; {winner} carries more weighted evidence "
            f"({p_evidence:.3f} vs {s_evidence:.3f})"
        ),
        **per_source,
    )


def reconcile_experiment(
    storage: IPVStorage, experiment_id: str, settings: ReconciliationSettings
) -> list[CaseVerdict]:
    """Reconcile every case of an experiment, in stored order."""
    by_case: dict[str, dict[str, NarrativeResult]] = {}
    for result in storage.get_results(experiment_id):
        by_case.setdefault(result.case_id, {})[result.narrative_type] = result

    verdicts = [
        reconcile(sources.get("primary"), sources.get("secondary"), settings, case_id=case_id)
        for case_id, sources in by_case.items()
    ]
    logger.info(
        "Reconciled %d cases for experiment %s (%d conflicts)",
        len(verdicts), experiment_id, sum(1 for v in verdicts if v.conflict_flag),
    )
    return verdicts


def calculate_agreement(verdicts: list[CaseVerdict]) -> dict:
    """Agreement between the two sources over cases where both gave a verdict."""
    both = [
        v for v in verdicts
        if v.primary_detected is not None and v.secondary_detected is not None
    ]
    both_positive = sum(1 for v in both if v.primary_detected and v.secondary_detected)
    both_negative = sum(1 for v in both if not v.primary_detected and not v.secondary_detected)
    return {
        "n": len(both),
        "agreement_rate": (both_positive + both_negative) / len(both) if both else None,
        "both_positive": both_positive,
        "both_negative": both_negative,
        "primary_only": sum(1 for v in both if v.primary_detected and not v.secondary_detected),
        "secondary_only": sum(1 for v in both if v.secondary_detected and not v.primary_detected),
    }
