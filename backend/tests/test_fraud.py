"""
Fraud Pattern Analyzer Tests — signal scoring and company flagging.
"""

from datetime import datetime, timedelta

import pandas as pd
import pytest
from sqlalchemy import select

from db.models import WeightDispute
from disputes.fraud import analyze_company, score_disputes
from weights.readings import ReportedWeight

from tests.conftest import COMPANY_ID

NOW = datetime(2026, 10, 19, 12, 0)


def _frame(rows):
    return pd.DataFrame(
        rows,
        columns=["declared_weight_kg", "actual_weight_kg", "percentage", "cost_difference", "created_at", "evidence_count"],
    )


class TestScoreDisputes:
    def test_empty_window(self):
        score, signals = score_disputes(_frame([]), NOW, 10, 500.0)
        assert score == 0.0
        assert set(signals.values()) == {0.0}

    def test_identical_overweight_burst_scores_high(self):
        rows = [(0.5, 0.8, 60.0, 30.0, NOW - timedelta(hours=i), 0) for i in range(6)]

        score, signals = score_disputes(_frame(rows), NOW, 10, 500.0)

        assert signals["systematic_underweight"] == 1.0
        assert signals["repeated_percentage"] == 1.0
        assert signals["bulk_attempts"] == 0.6
        assert signals["unevidenced_high_value"] == 0.0
        assert score == pytest.approx(0.72)

    def test_mixed_history_scores_low(self):
        rows = [
            (1.0, 0.7, 30.0, -40.0, NOW - timedelta(days=10), 1),
            (0.5, 0.8, 60.0, 30.0, NOW - timedelta(days=9), 1),
            (2.0, 1.5, 25.0, -60.0, NOW - timedelta(days=5), 0),
            (1.0, 1.2, 20.0, 25.0, NOW - timedelta(days=3), 2),
            (0.4, 0.3, 25.0, -10.0, NOW - timedelta(days=2), 0),
        ]

        score, signals = score_disputes(_frame(rows), NOW, 10, 500.0)

        assert signals["systematic_underweight"] == 0.4
        assert signals["bulk_attempts"] == 0.0
        assert score < 0.7

    def test_unevidenced_high_value(self):
        rows = [
            (0.5, 6.0, 1100.0, 550.0, NOW - timedelta(days=1), 0),
            (0.5, 6.5, 1200.0, 600.0, NOW - timedelta(days=2), 3),
        ]
        _, signals = score_disputes(_frame(rows), NOW, 10, 500.0)
        assert signals["unevidenced_high_value"] == 0.5


@pytest.mark.asyncio
class TestAnalyzeCompany:
    async def _open_disputes(self, detector, make_shipment, count):
        for index in range(count):
            await make_shipment(f"VEL-F{index}", declared_weight=0.5)
            await detector.process(ReportedWeight(f"VEL-F{index}", 0.8, scanned_at=datetime.utcnow()))

    async def test_flags_company_and_escalates_pending(
        self, test_db, company, detector, lifecycle, make_shipment, notifier
    ):
        await self._open_disputes(detector, make_shipment, 6)

        assessment = await analyze_company(test_db, COMPANY_ID, lifecycle)

        assert assessment.flagged is True
        assert assessment.score > 0.7
        assert assessment.dispute_count == 6
        assert len(assessment.escalated) == 6

        await test_db.refresh(company)
        assert company.suspicious_fraud is True
        assert company.fraud_score == assessment.score
        disputes = (await test_db.execute(select(WeightDispute))).scalars().all()
        assert {d.status for d in disputes} == {"escalated"}
        assert {d.priority for d in disputes} == {"urgent"}
        assert notifier.templates.count("weight_fraud_flagged") == 1

    async def test_too_few_disputes_scores_zero(self, test_db, company, detector, lifecycle, make_shipment):
        await self._open_disputes(detector, make_shipment, 4)

        assessment = await analyze_company(test_db, COMPANY_ID, lifecycle)

        assert assessment.score == 0.0
        assert assessment.flagged is False
        disputes = (await test_db.execute(select(WeightDispute))).scalars().all()
        assert {d.status for d in disputes} == {"pending"}

    async def test_flag_clears_when_window_moves_on(self, test_db, company, detector, lifecycle, make_shipment):
        await self._open_disputes(detector, make_shipment, 6)
        await analyze_company(test_db, COMPANY_ID, lifecycle)

        later = await analyze_company(test_db, COMPANY_ID, lifecycle, now=datetime.utcnow() + timedelta(days=45))

        assert later.flagged is False
        await test_db.refresh(company)
        assert company.suspicious_fraud is False

    async def test_unknown_company(self, test_db, lifecycle):
        with pytest.raises(ValueError):
            await analyze_company(test_db, COMPANY_ID, lifecycle)
