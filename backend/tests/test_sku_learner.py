"""
SKU Weight Learner Tests — running statistics, promotion, suggestions and freezes.
"""

import math
from datetime import datetime, timedelta

import pytest

from core.exceptions import InvalidMeasurement, SKUNotFound
from db.models import SKUWeightMaster
from weights import records, sku_learner

from tests.conftest import COMPANY_ID

TIGHT_SAMPLES = [0.300, 0.302, 0.298, 0.301, 0.299, 0.300, 0.303, 0.297, 0.300, 0.300]
NOISY_SAMPLES = [0.20, 0.40, 0.25, 0.35, 0.30, 0.22, 0.38, 0.27, 0.33, 0.30]


async def _feed(db, sku, samples):
    master = None
    for weight in samples:
        master = await sku_learner.record_sample(db, COMPANY_ID, sku, weight)
    return master


class TestStatistics:
    def test_welford_matches_batch_stddev(self):
        master = SKUWeightMaster(sample_count=0, mean_kg=0.0, m2=0.0)
        for weight in NOISY_SAMPLES:
            sku_learner.welford_update(master, weight)

        mean = sum(NOISY_SAMPLES) / len(NOISY_SAMPLES)
        variance = sum((w - mean) ** 2 for w in NOISY_SAMPLES) / (len(NOISY_SAMPLES) - 1)
        assert master.mean_kg == pytest.approx(mean)
        assert master.stddev_kg == pytest.approx(math.sqrt(variance))
        assert (master.min_kg, master.max_kg) == (0.20, 0.40)

    def test_batch_merge_matches_sample_by_sample(self):
        streamed = SKUWeightMaster(sample_count=0, mean_kg=0.0, m2=0.0)
        for weight in NOISY_SAMPLES:
            sku_learner.welford_update(streamed, weight)

        merged = SKUWeightMaster(sample_count=0, mean_kg=0.0, m2=0.0)
        for weight in NOISY_SAMPLES[:4]:
            sku_learner.welford_update(merged, weight)
        batch = NOISY_SAMPLES[4:]
        mean = sum(batch) / len(batch)
        m2 = sum((w - mean) ** 2 for w in batch)
        sku_learner.welford_merge(merged, len(batch), mean, m2, min(batch), max(batch))

        assert merged.sample_count == 10
        assert merged.mean_kg == pytest.approx(streamed.mean_kg)
        assert merged.stddev_kg == pytest.approx(streamed.stddev_kg)
        assert (merged.min_kg, merged.max_kg) == (0.20, 0.40)

    def test_confidence_blends_size_and_spread(self):
        assert sku_learner.compute_confidence(0, 0.3, 0.0) == 0.0
        assert sku_learner.compute_confidence(99, 1.0, 0.01) == 100.0
        # Few samples cap out well below the suggestion bar
        assert sku_learner.compute_confidence(3, 1.0, 0.0) < 70

    def test_dispute_penalty_above_tolerance(self):
        assert sku_learner.dispute_penalty(SKUWeightMaster(sample_count=10, total_disputes=1)) == 0.0
        assert sku_learner.dispute_penalty(SKUWeightMaster(sample_count=10, total_disputes=2)) == 10.0
        assert sku_learner.dispute_penalty(SKUWeightMaster(sample_count=10, total_disputes=9)) == 20.0


@pytest.mark.asyncio
class TestLearning:
    async def test_tight_cluster_becomes_active(self, test_db, company):
        master = await _feed(test_db, "TEA-250", TIGHT_SAMPLES)

        assert master.sample_count == 10
        assert master.status == "active"
        assert master.standard_weight_kg == 0.3
        assert master.confidence >= 70

        suggestion = await sku_learner.suggest_weight(test_db, COMPANY_ID, "TEA-250")
        assert suggestion.source == "learned"
        assert suggestion.weight_kg == pytest.approx(0.3)
        assert suggestion.variability == "low"

    async def test_nine_samples_still_learning(self, test_db, company):
        master = await _feed(test_db, "TEA-250", TIGHT_SAMPLES[:9])

        assert master.status == "learning"
        assert master.sample_count == 9

    async def test_noisy_sku_never_promoted(self, test_db, company):
        master = await _feed(test_db, "GIFT-BOX", NOISY_SAMPLES)

        assert master.status == "learning"
        assert await sku_learner.suggest_weight(test_db, COMPANY_ID, "GIFT-BOX") is None

    async def test_unknown_sku_has_no_suggestion(self, test_db, company):
        assert await sku_learner.suggest_weight(test_db, COMPANY_ID, "NOPE") is None

    async def test_rejects_non_positive_sample(self, test_db, company):
        with pytest.raises(InvalidMeasurement):
            await sku_learner.record_sample(test_db, COMPANY_ID, "TEA-250", 0)

    async def test_multi_item_shipments_are_ignored(self, test_db, make_shipment):
        shipment = await make_shipment("VEL-MULTI", sku="TEA-250", item_count=3)

        assert await sku_learner.learn_from_shipment(test_db, shipment, 0.9) is None
        assert await sku_learner.get_master(test_db, COMPANY_ID, "TEA-250") is None

    async def test_dispute_outcomes_lower_confidence(self, test_db, company):
        master = await _feed(test_db, "TEA-250", TIGHT_SAMPLES)
        before = master.confidence

        for _ in range(3):
            master = await sku_learner.record_dispute_outcome(test_db, COMPANY_ID, "TEA-250", seller_favor=False)

        assert master.total_disputes == 3
        assert master.disputes_carrier_favor == 3
        assert master.confidence == pytest.approx(before - 20.0)


@pytest.mark.asyncio
class TestFreeze:
    async def test_freeze_overrides_learned_weight(self, test_db, company):
        await _feed(test_db, "TEA-250", TIGHT_SAMPLES)

        await sku_learner.freeze_weight(test_db, COMPANY_ID, "TEA-250", 0.35, "New packaging", frozen_by="ops-1")
        suggestion = await sku_learner.suggest_weight(test_db, COMPANY_ID, "TEA-250")

        assert suggestion.source == "frozen"
        assert suggestion.weight_kg == 0.35
        assert suggestion.confidence == 100.0

    async def test_frozen_sku_skips_learning(self, test_db, company):
        await sku_learner.freeze_weight(test_db, COMPANY_ID, "TEA-250", 0.35, "Pinned", frozen_by="ops-1")

        assert await sku_learner.record_sample(test_db, COMPANY_ID, "TEA-250", 0.31) is None
        master = await sku_learner.get_master(test_db, COMPANY_ID, "TEA-250")
        assert master.sample_count == 0

    async def test_unfreeze_resumes_learning(self, test_db, company):
        await sku_learner.freeze_weight(test_db, COMPANY_ID, "TEA-250", 0.35, "Pinned", frozen_by="ops-1")
        await sku_learner.unfreeze_weight(test_db, COMPANY_ID, "TEA-250", actor="ops-1")

        master = await sku_learner.record_sample(test_db, COMPANY_ID, "TEA-250", 0.31)
        assert master.sample_count == 1
        assert await sku_learner.suggest_weight(test_db, COMPANY_ID, "TEA-250") is None

    async def test_expired_freeze_is_ignored(self, test_db, company):
        master = await sku_learner.freeze_weight(
            test_db,
            COMPANY_ID,
            "TEA-250",
            0.35,
            "Festive pack",
            frozen_by="ops-1",
            expires_at=datetime.utcnow() + timedelta(days=1),
        )
        assert sku_learner.freeze_active(master)
        assert not sku_learner.freeze_active(master, now=datetime.utcnow() + timedelta(days=2))

    async def test_freeze_expiry_must_be_future(self, test_db, company):
        with pytest.raises(InvalidMeasurement):
            await sku_learner.freeze_weight(
                test_db,
                COMPANY_ID,
                "TEA-250",
                0.35,
                "Too late",
                frozen_by="ops-1",
                expires_at=datetime.utcnow() - timedelta(hours=1),
            )

    async def test_unfreeze_unknown_sku(self, test_db, company):
        with pytest.raises(SKUNotFound):
            await sku_learner.unfreeze_weight(test_db, COMPANY_ID, "NOPE", actor="ops-1")


async def _verified(db, make_shipment, tracking_id, weight, sku="TEA-250", item_count=1, status="verified"):
    shipment = await make_shipment(tracking_id, sku=sku, item_count=item_count, declared_weight=0.3)
    records.add_observation(db, shipment, stage="applied", value_kg=weight, source="carrier", observed_at=datetime.utcnow())
    shipment.weight_status = status
    await db.commit()
    return shipment


@pytest.mark.asyncio
class TestBackfill:
    async def test_learns_verified_single_item_history(self, test_db, make_shipment):
        await sku_learner.record_sample(test_db, COMPANY_ID, "TEA-250", 0.30)
        for i, weight in enumerate((0.32, 0.28, 0.30)):
            await _verified(test_db, make_shipment, f"VEL-HIST-{i}", weight)
        await _verified(test_db, make_shipment, "VEL-HIST-OPEN", 0.9, status="disputed")
        await _verified(test_db, make_shipment, "VEL-HIST-MULTI", 0.9, item_count=2)

        summary = await sku_learner.bulk_learn_from_history(test_db, COMPANY_ID)

        assert summary == {"shipments": 3, "skus": 1, "skipped_frozen": 0}
        master = await sku_learner.get_master(test_db, COMPANY_ID, "TEA-250")
        assert master.sample_count == 4
        assert master.mean_kg == pytest.approx(0.30)
        assert master.stddev_kg == pytest.approx(math.sqrt(0.0008 / 3))
        assert (master.min_kg, master.max_kg) == (0.28, 0.32)

    async def test_second_run_learns_nothing(self, test_db, make_shipment):
        shipment = await _verified(test_db, make_shipment, "VEL-HIST-1", 0.3)
        await sku_learner.bulk_learn_from_history(test_db, COMPANY_ID)

        again = await sku_learner.bulk_learn_from_history(test_db, COMPANY_ID)

        assert again["shipments"] == 0
        assert await sku_learner.learn_from_shipment(test_db, shipment, 0.3) is None
        master = await sku_learner.get_master(test_db, COMPANY_ID, "TEA-250")
        assert master.sample_count == 1

    async def test_only_first_carrier_reading_counts(self, test_db, make_shipment):
        shipment = await _verified(test_db, make_shipment, "VEL-HIST-1", 0.30)
        later = records.add_observation(
            test_db, shipment, stage="scanned", value_kg=0.31, source="carrier", observed_at=datetime.utcnow()
        )
        later.recorded_at = datetime.utcnow() + timedelta(hours=1)
        await test_db.commit()

        await sku_learner.bulk_learn_from_history(test_db, COMPANY_ID)

        master = await sku_learner.get_master(test_db, COMPANY_ID, "TEA-250")
        assert master.sample_count == 1
        assert master.mean_kg == pytest.approx(0.30)

    async def test_frozen_sku_keeps_its_shipments_pending(self, test_db, make_shipment):
        await sku_learner.freeze_weight(test_db, COMPANY_ID, "TEA-250", 0.35, reason="Gift box", frozen_by="ops")
        shipment = await _verified(test_db, make_shipment, "VEL-HIST-1", 0.3)

        summary = await sku_learner.bulk_learn_from_history(test_db, COMPANY_ID)

        assert summary == {"shipments": 0, "skus": 0, "skipped_frozen": 1}
        await test_db.refresh(shipment)
        assert shipment.sku_learned_at is None
