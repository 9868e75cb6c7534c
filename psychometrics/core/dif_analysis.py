"""
Differential Item Functioning (DIF) analysis with the Mantel-Haenszel method.

An item shows DIF when respondents of equal overall ability but from
different groups (focal vs. reference) have different chances of answering
it correctly. Group membership is supplied by the caller as sets of session
ids; the engine stores no demographic data.

Steps:
1. Collect each session's scores for the items in scope, keeping only
   sessions that belong to one of the two groups.
2. Stratify respondents by total score into up to NUM_STRATA
   equal-frequency strata. Respondents with the same total are never split
   across strata.
3. For each item and stratum, build the 2x2 table

                   Correct   Incorrect
       Focal          A          B
       Reference      C          D

4. Combine the strata:
       alpha_MH = sum(A*D/N) / sum(B*C/N)
       MH D-DIF = -2.35 * ln(alpha_MH)
       chi2_MH  = (|sum(A) - sum(E[A])| - 0.5)^2 / sum(Var[A])
5. Classify |MH D-DIF| with the ETS rules:
       A (negligible) < 1.0 <= B (moderate) < 1.5 <= C (large)

Positive D-DIF means the item favors the reference group.

Reference: Holland, P.W. & Thayer, D.T. (1988). Differential Item Functioning
and the Mantel-Haenszel Procedure.
"""

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import AbstractSet, Dict, Iterable, List, Optional, Sequence

from psychometrics.core.data_sources import ItemCatalog, ResponseSource, ScoreTriple
from psychometrics.core.errors import NotFoundError
from psychometrics.core.irt.model import dichotomize
from psychometrics.core.item_statistics import round_metric

logger = logging.getLogger(__name__)

# Ability strata (quintiles) used for matching
NUM_STRATA = 5

# Sample requirements for a meaningful analysis
MIN_TOTAL_RESPONDENTS = 100
MIN_GROUP_SIZE = 20

# Strata with fewer respondents than this are skipped
MIN_STRATUM_SIZE = 2

# MH D-DIF = ETS_DELTA_CONSTANT * ln(alpha_MH)
ETS_DELTA_CONSTANT = -2.35
ETS_A_B_BOUNDARY = 1.0
ETS_B_C_BOUNDARY = 1.5

# Substituted for an empty sum(B*C/N) and for the odds ratio of a degenerate item
CONTINUITY_CORRECTION = 0.5

# Totals closer than this belong to the same score group
SCORE_TIE_TOLERANCE = 1e-9

FAVORS_FOCAL = "favors focal"
FAVORS_REFERENCE = "favors reference"


class DifClassification(str, Enum):
    """ETS category of an item's MH D-DIF magnitude."""

    A_NEGLIGIBLE = "A_NEGLIGIBLE"
    B_MODERATE = "B_MODERATE"
    C_LARGE = "C_LARGE"


@dataclass(frozen=True)
class ItemDifResult:
    """Mantel-Haenszel statistics for one item (values rounded to 4 places)."""

    item_id: int
    mh_odds_ratio: float
    ets_delta: float
    mh_chi_square: float
    p_value: float
    classification: DifClassification
    direction: str


@dataclass
class DifAnalysisResult:
    """Outcome of a DIF analysis across a set of items."""

    competency_id: Optional[int]
    focal_group_label: str
    reference_group_label: str
    focal_group_size: int
    reference_group_size: int
    insufficient_data: bool = False
    items: List[ItemDifResult] = field(default_factory=list)

    @property
    def total_items(self) -> int:
        return len(self.items)

    @property
    def items_with_moderate_dif(self) -> int:
        return sum(
            1 for r in self.items if r.classification == DifClassification.B_MODERATE
        )

    @property
    def items_with_large_dif(self) -> int:
        return sum(
            1 for r in self.items if r.classification == DifClassification.C_LARGE
        )


@dataclass
class _Respondent:
    session_id: str
    is_focal: bool
    scores: Dict[int, float] = field(default_factory=dict)

    @property
    def total_score(self) -> float:
        return sum(self.scores.values())


# =============================================================================
# PUBLIC OPERATIONS
# =============================================================================


def analyze_competency_dif(
    source: ResponseSource,
    catalog: ItemCatalog,
    competency_id: int,
    focal_session_ids: AbstractSet[str],
    reference_session_ids: AbstractSet[str],
    focal_label: str = "focal",
    reference_label: str = "reference",
) -> DifAnalysisResult:
    """
    Run DIF analysis over every item of a competency.

    Args:
        source: Response data source
        catalog: Item catalog
        competency_id: Competency whose items are analyzed
        focal_session_ids: Sessions of the focal (potentially disadvantaged) group
        reference_session_ids: Sessions of the reference group
        focal_label: Human-readable name of the focal group
        reference_label: Human-readable name of the reference group

    Returns:
        DifAnalysisResult. Too few respondents is reported through
        ``insufficient_data``, never raised.

    Raises:
        NotFoundError: If the competency is unknown.
        ValueError: If a group is empty or the groups overlap.
    """
    if not catalog.competency_exists(competency_id):
        raise NotFoundError(
            "Competency not found", context={"competency_id": competency_id}
        )
    _validate_groups(focal_session_ids, reference_session_ids)

    return _analyze(
        source.stream_competency_scores(competency_id),
        competency_id,
        focal_session_ids,
        reference_session_ids,
        focal_label,
        reference_label,
    )


def analyze_items_dif(
    source: ResponseSource,
    item_ids: Sequence[int],
    focal_session_ids: AbstractSet[str],
    reference_session_ids: AbstractSet[str],
    focal_label: str = "focal",
    reference_label: str = "reference",
) -> DifAnalysisResult:
    """
    Run DIF analysis over an explicit set of items.

    The matching total is computed over the given items only.

    Raises:
        ValueError: If no items are given, a group is empty or the groups overlap.
    """
    if not item_ids:
        raise ValueError("Item ids must not be empty")
    _validate_groups(focal_session_ids, reference_session_ids)

    def _triples() -> Iterable[ScoreTriple]:
        for item_id in item_ids:
            for row in source.stream_item_scores(item_id):
                yield ScoreTriple(row.session_id, item_id, row.score)

    return _analyze(
        _triples(),
        None,
        focal_session_ids,
        reference_session_ids,
        focal_label,
        reference_label,
    )


def classify_dif(ets_delta: float) -> DifClassification:
    """ETS category of an MH D-DIF value."""
    magnitude = abs(ets_delta)
    if magnitude < ETS_A_B_BOUNDARY:
        return DifClassification.A_NEGLIGIBLE
    if magnitude < ETS_B_C_BOUNDARY:
        return DifClassification.B_MODERATE
    return DifClassification.C_LARGE


# =============================================================================
# INTERNALS
# =============================================================================


def _validate_groups(
    focal_session_ids: AbstractSet[str], reference_session_ids: AbstractSet[str]
) -> None:
    if not focal_session_ids:
        raise ValueError("Focal group session ids must not be empty")
    if not reference_session_ids:
        raise ValueError("Reference group session ids must not be empty")

    overlap = set(focal_session_ids) & set(reference_session_ids)
    if overlap:
        raise ValueError(
            f"Focal and reference groups must not overlap; "
            f"found {len(overlap)} shared session ids"
        )


def _analyze(
    triples: Iterable[ScoreTriple],
    competency_id: Optional[int],
    focal_session_ids: AbstractSet[str],
    reference_session_ids: AbstractSet[str],
    focal_label: str,
    reference_label: str,
) -> DifAnalysisResult:
    respondents: Dict[str, _Respondent] = {}
    item_ids = set()

    for session_id, item_id, score in triples:
        item_ids.add(item_id)
        if session_id in focal_session_ids:
            is_focal = True
        elif session_id in reference_session_ids:
            is_focal = False
        else:
            continue
        respondent = respondents.setdefault(
            session_id, _Respondent(session_id, is_focal)
        )
        respondent.scores[item_id] = score

    focal_size = sum(1 for r in respondents.values() if r.is_focal)
    reference_size = len(respondents) - focal_size

    result = DifAnalysisResult(
        competency_id=competency_id,
        focal_group_label=focal_label,
        reference_group_label=reference_label,
        focal_group_size=focal_size,
        reference_group_size=reference_size,
    )

    if (
        len(respondents) < MIN_TOTAL_RESPONDENTS
        or focal_size < MIN_GROUP_SIZE
        or reference_size < MIN_GROUP_SIZE
        or not item_ids
    ):
        logger.info(
            f"Insufficient data for DIF analysis: {focal_size} focal and "
            f"{reference_size} reference respondents, {len(item_ids)} items "
            f"(min {MIN_TOTAL_RESPONDENTS} total, {MIN_GROUP_SIZE} per group)"
        )
        result.insufficient_data = True
        return result

    strata = _assign_strata(list(respondents.values()))
    result.items = [_item_dif(item_id, strata) for item_id in sorted(item_ids)]

    if result.items_with_large_dif:
        logger.warning(
            f"DIF analysis found {result.items_with_large_dif} items with large "
            f"DIF (category C) between '{focal_label}' and '{reference_label}'"
        )
    return result


def _assign_strata(respondents: List[_Respondent]) -> List[List[_Respondent]]:
    """
    Group respondents into up to NUM_STRATA equal-frequency strata by total score.

    Respondents sharing a total score always land in the same stratum, so
    fewer distinct totals than NUM_STRATA give one stratum per total.
    """
    ordered = sorted(respondents, key=lambda r: r.total_score)

    score_groups: List[List[_Respondent]] = [[ordered[0]]]
    for respondent in ordered[1:]:
        previous = score_groups[-1][-1].total_score
        if abs(respondent.total_score - previous) < SCORE_TIE_TOLERANCE:
            score_groups[-1].append(respondent)
        else:
            score_groups.append([respondent])

    target_strata = min(NUM_STRATA, len(score_groups))
    target_size = len(ordered) // target_strata

    strata: List[List[_Respondent]] = []
    current: List[_Respondent] = []
    for group in score_groups:
        current.extend(group)
        if len(current) >= target_size and len(strata) < target_strata - 1:
            strata.append(current)
            current = []
    if current:
        strata.append(current)
    return strata


def _chi_square_p_value(chi_square: float) -> float:
    """Upper-tail probability of a chi-square statistic with 1 degree of freedom."""
    if chi_square <= 0:
        return 1.0
    return min(1.0, max(0.0, math.erfc(math.sqrt(chi_square / 2.0))))


def _item_dif(item_id: int, strata: List[List[_Respondent]]) -> ItemDifResult:
    sum_ad_n = 0.0
    sum_bc_n = 0.0
    sum_a = 0.0
    sum_expected_a = 0.0
    sum_var_a = 0.0

    for stratum in strata:
        counts: Dict[str, float] = defaultdict(float)
        for respondent in stratum:
            score = respondent.scores.get(item_id)
            if score is None:
                continue
            group = "focal" if respondent.is_focal else "reference"
            outcome = "correct" if dichotomize(score) else "incorrect"
            counts[f"{group}_{outcome}"] += 1

        a = counts["focal_correct"]
        b = counts["focal_incorrect"]
        c = counts["reference_correct"]
        d = counts["reference_incorrect"]
        n = a + b + c + d
        if n < MIN_STRATUM_SIZE:
            continue

        sum_ad_n += a * d / n
        sum_bc_n += b * c / n

        focal_total = a + b
        reference_total = c + d
        correct_total = a + c
        incorrect_total = b + d

        sum_a += a
        sum_expected_a += focal_total * correct_total / n
        # Hypergeometric variance of A under no DIF
        sum_var_a += (focal_total * reference_total * correct_total * incorrect_total) / (
            n * n * (n - 1)
        )

    if sum_ad_n == 0.0 and sum_bc_n == 0.0:
        odds_ratio = 1.0
    else:
        odds_ratio = sum_ad_n / (sum_bc_n if sum_bc_n > 0.0 else CONTINUITY_CORRECTION)

    if odds_ratio <= 0.0:
        ets_delta = ETS_DELTA_CONSTANT * math.log(CONTINUITY_CORRECTION)
    else:
        ets_delta = ETS_DELTA_CONSTANT * math.log(odds_ratio)

    chi_square = 0.0
    if sum_var_a > 0:
        deviation = max(abs(sum_a - sum_expected_a) - 0.5, 0.0)
        chi_square = deviation * deviation / sum_var_a

    classification = classify_dif(ets_delta)
    direction = FAVORS_REFERENCE if ets_delta > 0 else FAVORS_FOCAL

    if classification != DifClassification.A_NEGLIGIBLE:
        logger.info(
            f"Item {item_id} classified as {classification.value} DIF "
            f"(delta={ets_delta:.3f}, {direction})"
        )

    return ItemDifResult(
        item_id=item_id,
        mh_odds_ratio=round_metric(odds_ratio),
        ets_delta=round_metric(ets_delta),
        mh_chi_square=round_metric(chi_square),
        p_value=round_metric(_chi_square_p_value(chi_square)),
        classification=classification,
        direction=direction,
    )
