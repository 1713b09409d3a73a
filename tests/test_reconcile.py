import random
import unittest
from pathlib import Path

import reconcile
from errors import ReconciliationExhausted


def make_pool(durations, prefix="input_a"):
    return [
        reconcile.ClipCandidate(name=f"{prefix}_{i}", path=Path(f"clips/{prefix}_{i}.mp4"), duration=d)
        for i, d in enumerate(durations)
    ]


class TestClassifyTotal(unittest.TestCase):
    def setUp(self):
        self.bounds = reconcile.ReconcileBounds()

    def test_within_tolerance_is_kept_as_is(self):
        decision = reconcile.classify_total(42.1, 42.0, 5.0, self.bounds)
        self.assertEqual(decision.adjustment, reconcile.Adjustment.AS_IS)
        self.assertEqual(decision.rate, 1.0)
        self.assertIsNone(decision.trim_last_to)

    def test_short_total_is_stretched(self):
        decision = reconcile.classify_total(40.0, 42.0, 5.0, self.bounds)
        self.assertEqual(decision.adjustment, reconcile.Adjustment.STRETCH)
        self.assertAlmostEqual(decision.rate, 1.05)

    def test_stretch_checks_speed_ratio_against_bounds(self):
        # T / A = 0.9507 is in bounds even though the applied factor A / T = 1.0519 is not.
        decision = reconcile.classify_total(28.52, 30.0, 5.0, self.bounds)
        self.assertEqual(decision.adjustment, reconcile.Adjustment.STRETCH)
        self.assertAlmostEqual(decision.rate, 30.0 / 28.52)
        self.assertAlmostEqual(
            reconcile.effective_duration([28.52], rate=decision.rate), 30.0
        )

    def test_stretch_rejected_below_min_speed_ratio(self):
        self.assertIsNone(reconcile.classify_total(28.4, 30.0, 5.0, self.bounds))

    def test_shortfall_beyond_limit_is_rejected(self):
        self.assertIsNone(reconcile.classify_total(39.0, 42.0, 5.0, self.bounds))

    def test_stretch_out_of_rate_bounds_is_rejected(self):
        bounds = reconcile.ReconcileBounds(shorter_max_diff=5.0)
        self.assertIsNone(reconcile.classify_total(38.0, 42.0, 5.0, bounds))

    def test_long_total_is_compressed_when_rate_fits(self):
        bounds = reconcile.ReconcileBounds(min_rate=0.9, longer_max_diff=5.0)
        decision = reconcile.classify_total(45.0, 42.0, 5.0, bounds)
        self.assertEqual(decision.adjustment, reconcile.Adjustment.COMPRESS)
        self.assertAlmostEqual(decision.rate, 42.0 / 45.0)

    def test_long_total_trims_last_clip_when_rate_out_of_bounds(self):
        bounds = reconcile.ReconcileBounds(longer_max_diff=5.0)
        decision = reconcile.classify_total(45.0, 42.0, 5.0, bounds)
        self.assertEqual(decision.adjustment, reconcile.Adjustment.TRIM_TAIL)
        self.assertEqual(decision.rate, 1.0)
        self.assertAlmostEqual(decision.trim_last_to, 2.0)

    def test_trim_rejected_when_remainder_below_min_clip(self):
        bounds = reconcile.ReconcileBounds(longer_max_diff=5.0, min_clip=2.5)
        self.assertIsNone(reconcile.classify_total(45.0, 42.0, 5.0, bounds))

    def test_excess_beyond_limit_is_rejected(self):
        self.assertIsNone(reconcile.classify_total(45.0, 42.0, 5.0, self.bounds))


class TestAccumulate(unittest.TestCase):
    def test_skips_out_of_bounds_clips_and_stops_before_overshoot(self):
        pool = make_pool([1.0, 5.0, 40.0, 5.0, 5.0])
        bounds = reconcile.ReconcileBounds()
        selected = reconcile.accumulate_clips(pool, range(len(pool)), 9.0, bounds)
        self.assertEqual([clip.name for clip in selected], ["input_a_1"])

    def test_stops_once_target_reached(self):
        pool = make_pool([5.0, 5.0, 5.0])
        bounds = reconcile.ReconcileBounds()
        selected = reconcile.accumulate_clips(pool, range(3), 10.0, bounds)
        self.assertEqual(len(selected), 2)


class TestReconcile(unittest.TestCase):
    def test_nine_five_second_clips_against_42_seconds(self):
        pool = make_pool([5.0] * 9)
        plan = reconcile.reconcile(pool, 42.0, reconcile.ReconcileBounds(), rng=random.Random(7))

        self.assertEqual(len(plan.clips), 8)
        self.assertAlmostEqual(plan.total_duration, 40.0)
        self.assertEqual(plan.decision.adjustment, reconcile.Adjustment.STRETCH)
        self.assertAlmostEqual(plan.rate, 1.05)
        self.assertAlmostEqual(plan.effective_duration, 42.0)
        self.assertEqual(plan.attempts, 1)

    def test_accepted_plans_match_audio_within_tolerance(self):
        rng = random.Random(1234)
        bounds = reconcile.ReconcileBounds()
        accepted = 0
        for trial in range(200):
            pool = make_pool([rng.uniform(0.5, 12.0) for _ in range(25)], prefix=f"t{trial}")
            target = rng.uniform(20.0, 90.0)
            try:
                plan = reconcile.reconcile(pool, target, bounds, rng=rng)
            except ReconciliationExhausted:
                continue
            accepted += 1
            self.assertLessEqual(abs(plan.effective_duration - target), bounds.max_av_diff + 1e-6)
            self.assertTrue(bounds.rate_in_bounds(plan.bounded_rate))
            for clip in plan.clips:
                self.assertGreaterEqual(clip.duration, bounds.min_clip)
                self.assertLessEqual(clip.duration, bounds.max_clip)
            if plan.trim_last_to is not None:
                self.assertEqual(plan.rate, 1.0)
                self.assertGreaterEqual(plan.trim_last_to, bounds.min_clip)
        self.assertGreater(accepted, 0)

    def test_duplicate_selection_is_rejected(self):
        pool = make_pool([5.0, 5.0])
        used = {("input_a_0", "input_a_1")}
        plan = reconcile.reconcile(
            pool, 10.0, reconcile.ReconcileBounds(), used_selections=used, rng=random.Random(3)
        )
        self.assertEqual(plan.selection_key, ("input_a_1", "input_a_0"))

    def test_batch_never_repeats_a_selection(self):
        pool = make_pool([5.0] * 6)
        bounds = reconcile.ReconcileBounds()
        rng = random.Random(99)
        used = set()
        for _ in range(10):
            plan = reconcile.reconcile(pool, 10.0, bounds, used_selections=used, rng=rng)
            self.assertNotIn(plan.selection_key, used)
            used.add(plan.selection_key)

    def test_exhaustion_after_attempt_ceiling(self):
        pool = make_pool([5.0, 5.0])
        used = {("input_a_0", "input_a_1"), ("input_a_1", "input_a_0")}
        bounds = reconcile.ReconcileBounds(max_attempts=25)
        with self.assertRaises(ReconciliationExhausted) as ctx:
            reconcile.reconcile(pool, 10.0, bounds, used_selections=used, rng=random.Random(1))
        self.assertEqual(ctx.exception.attempts, 25)

    def test_empty_pool_exhausts(self):
        with self.assertRaises(ReconciliationExhausted):
            reconcile.reconcile([], 10.0, reconcile.ReconcileBounds(max_attempts=3))

    def test_non_positive_target_rejected(self):
        with self.assertRaises(ValueError):
            reconcile.reconcile(make_pool([5.0]), 0.0, reconcile.ReconcileBounds())


class TestEffectiveDuration(unittest.TestCase):
    def test_trim_replaces_last_clip_length(self):
        self.assertAlmostEqual(
            reconcile.effective_duration([5.0, 5.0], trim_last_to=2.0), 7.0
        )

    def test_rate_scales_total(self):
        self.assertAlmostEqual(reconcile.effective_duration([10.0, 10.0], rate=1.05), 21.0)

    def test_bounds_validation(self):
        with self.assertRaises(ValueError):
            reconcile.ReconcileBounds(min_rate=1.1, max_rate=1.0).validate()


if __name__ == "__main__":
    unittest.main()
