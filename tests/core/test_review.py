"""
Tests for the review list and the psychometric health report.
"""
from datetime import timedelta

import pytest

from psychometrics.core.item_statistics import get_or_create_item_statistics
from psychometrics.core.review import (
    HEALTH_CRITICAL,
    HEALTH_HEALTHY,
    HEALTH_WARNING,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
    calculate_severity,
    determine_overall_health,
    generate_health_report,
    get_items_requiring_review,
)
from psychometrics.models.models import (
    BigFiveReliability,
    BigFiveTrait,
    CompetencyReliability,
    DifficultyFlag,
    DiscriminationFlag,
    ItemValidityStatus,
    ReliabilityStatus,
)


@pytest.fixture
def add_stats(db_session, seed):
    """Create an item with a statistics record in the given state."""
    competency = seed.competency("Verbal Reasoning")

    def _add(
        status=ItemValidityStatus.ACTIVE,
        difficulty_flag=DifficultyFlag.NONE,
        discrimination_flag=DiscriminationFlag.NONE,
        discrimination=0.4,
        last_calculated_at=None,
    ):
        item = seed.item(competency)
        stats = get_or_create_item_statistics(db_session, item.id)
        stats.validity_status = status
        stats.difficulty_flag = difficulty_flag
        stats.discrimination_flag = discrimination_flag
        stats.discrimination_index = discrimination
        stats.difficulty_index = 0.5
        stats.response_count = 80
        stats.last_calculated_at = last_calculated_at
        db_session.commit()
        return stats

    return _add


class TestCalculateSeverity:
    """Tests for calculate_severity()."""

    @pytest.mark.parametrize(
        "difficulty_flag,discrimination_flag,expected",
        [
            pytest.param(
                DifficultyFlag.NONE, DiscriminationFlag.NEGATIVE, SEVERITY_CRITICAL,
                id="negative",
            ),
            pytest.param(
                DifficultyFlag.TOO_EASY, DiscriminationFlag.NEGATIVE, SEVERITY_CRITICAL,
                id="negative_and_easy",
            ),
            pytest.param(
                DifficultyFlag.NONE, DiscriminationFlag.CRITICAL, SEVERITY_HIGH,
                id="critical",
            ),
            pytest.param(
                DifficultyFlag.TOO_HARD, DiscriminationFlag.NONE, SEVERITY_HIGH,
                id="too_hard",
            ),
            pytest.param(
                DifficultyFlag.TOO_EASY, DiscriminationFlag.WARNING, SEVERITY_HIGH,
                id="too_easy_and_warning",
            ),
            pytest.param(
                DifficultyFlag.NONE, DiscriminationFlag.WARNING, SEVERITY_MEDIUM,
                id="warning",
            ),
            pytest.param(
                DifficultyFlag.NONE, DiscriminationFlag.NONE, SEVERITY_LOW,
                id="clean",
            ),
        ],
    )
    def test_severity(self, difficulty_flag, discrimination_flag, expected):
        assert calculate_severity(difficulty_flag, discrimination_flag) == expected


class TestGetItemsRequiringReview:
    """Tests for get_items_requiring_review()."""

    def test_sorted_by_severity(self, db_session, add_stats):
        warning = add_stats(discrimination_flag=DiscriminationFlag.WARNING)
        negative = add_stats(
            status=ItemValidityStatus.RETIRED,
            discrimination_flag=DiscriminationFlag.NEGATIVE,
            discrimination=-0.2,
        )
        too_hard = add_stats(difficulty_flag=DifficultyFlag.TOO_HARD)
        add_stats()

        summaries = get_items_requiring_review(db_session)

        assert [s.item_id for s in summaries] == [
            negative.item_id,
            too_hard.item_id,
            warning.item_id,
        ]
        assert summaries[0].severity == SEVERITY_CRITICAL
        assert summaries[0].primary_issue.startswith("Toxic item")
        assert summaries[0].competency_name == "Verbal Reasoning"

    def test_flagged_status_without_flags_included(self, db_session, add_stats):
        flagged = add_stats(status=ItemValidityStatus.FLAGGED_FOR_REVIEW)

        summaries = get_items_requiring_review(db_session)

        assert [s.item_id for s in summaries] == [flagged.item_id]
        assert summaries[0].severity == SEVERITY_LOW
        assert summaries[0].primary_issue == "Under review for potential issues"

    def test_limit(self, db_session, add_stats):
        for _ in range(3):
            add_stats(discrimination_flag=DiscriminationFlag.CRITICAL)

        assert len(get_items_requiring_review(db_session, limit=2)) == 2

    def test_empty(self, db_session):
        assert get_items_requiring_review(db_session) == []


class TestDetermineOverallHealth:
    """Tests for determine_overall_health()."""

    @staticmethod
    def _status_counts(flagged=0, retired=0, probation=0, active=0):
        return {
            ItemValidityStatus.FLAGGED_FOR_REVIEW.value: flagged,
            ItemValidityStatus.RETIRED.value: retired,
            ItemValidityStatus.PROBATION.value: probation,
            ItemValidityStatus.ACTIVE.value: active,
        }

    @staticmethod
    def _reliability_counts(unreliable=0, reliable=0):
        return {
            ReliabilityStatus.UNRELIABLE.value: unreliable,
            ReliabilityStatus.RELIABLE.value: reliable,
            ReliabilityStatus.ACCEPTABLE.value: 0,
            ReliabilityStatus.INSUFFICIENT_DATA.value: 0,
        }

    def test_healthy(self):
        health = determine_overall_health(
            100, self._status_counts(active=100), 10, self._reliability_counts(reliable=10), 0.8
        )
        assert health == HEALTH_HEALTHY

    def test_many_flagged_is_critical(self):
        health = determine_overall_health(
            100,
            self._status_counts(flagged=25, active=75),
            10,
            self._reliability_counts(reliable=10),
            0.8,
        )
        assert health == HEALTH_CRITICAL

    def test_low_average_alpha_is_warning(self):
        health = determine_overall_health(
            100, self._status_counts(active=100), 10, self._reliability_counts(reliable=10), 0.65
        )
        assert health == HEALTH_WARNING

    def test_many_probation_is_warning(self):
        health = determine_overall_health(
            100,
            self._status_counts(probation=60, active=40),
            10,
            self._reliability_counts(reliable=10),
            None,
        )
        assert health == HEALTH_WARNING


class TestGenerateHealthReport:
    """Tests for generate_health_report()."""

    def test_report_contents(self, db_session, add_stats, seed, now):
        add_stats(last_calculated_at=now - timedelta(hours=2))
        add_stats(
            status=ItemValidityStatus.FLAGGED_FOR_REVIEW,
            discrimination_flag=DiscriminationFlag.CRITICAL,
            discrimination=0.05,
            last_calculated_at=now - timedelta(days=3),
        )
        add_stats(status=ItemValidityStatus.PROBATION, discrimination=None)

        competency = seed.competency("Spatial Reasoning")
        db_session.add(
            CompetencyReliability(
                competency_id=competency.id,
                cronbach_alpha=0.75,
                sample_size=120,
                item_count=5,
                reliability_status=ReliabilityStatus.RELIABLE,
            )
        )
        db_session.add(
            BigFiveReliability(
                trait=BigFiveTrait.OPENNESS,
                cronbach_alpha=0.55,
                sample_size=90,
                item_count=6,
                reliability_status=ReliabilityStatus.UNRELIABLE,
            )
        )
        db_session.add(
            BigFiveReliability(
                trait=BigFiveTrait.EXTRAVERSION,
                cronbach_alpha=0.82,
                sample_size=90,
                item_count=6,
                reliability_status=ReliabilityStatus.RELIABLE,
            )
        )
        db_session.commit()

        report = generate_health_report(db_session, now)

        assert report["generated_at"] == now
        assert report["total_items"] == 3
        assert report["status_counts"][ItemValidityStatus.ACTIVE.value] == 1
        assert report["status_counts"][ItemValidityStatus.RETIRED.value] == 0
        assert report["items_needing_attention"] == 2
        assert report["total_competencies"] == 1
        assert report["average_alpha"] == 0.75
        assert report["average_discrimination"] == pytest.approx(0.225)
        assert report["items_analyzed_last_24h"] == 1
        assert len(report["top_flagged_items"]) == 1
        assert report["big_five"]["total_traits"] == 2
        assert report["big_five"]["lowest_alpha_trait"] == "openness"
        assert report["big_five"]["average_alpha"] == pytest.approx(0.685)
        # One of three items flagged is above the 20% critical ratio
        assert report["overall_health"] == HEALTH_CRITICAL

    def test_empty_pool(self, db_session, now):
        report = generate_health_report(db_session, now)

        assert report["total_items"] == 0
        assert report["average_alpha"] is None
        assert report["top_flagged_items"] == []
        assert report["big_five"]["lowest_alpha_trait"] is None
        assert report["overall_health"] == HEALTH_HEALTHY
