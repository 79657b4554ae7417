import unittest

from cccontext.model_config import (
    DEFAULT_PRICING,
    apply_window_upgrade,
    calculate_message_cost,
    get_auto_compact_factor,
    get_base_context_window,
    get_context_window,
    get_model_name,
    get_model_pricing,
)


class ModelConfigTests(unittest.TestCase):
    def test_pricing_falls_back_to_canonical_id(self) -> None:
        self.assertEqual(get_model_pricing("claude-opus-4-5-20251101").input, 5.0)
        self.assertEqual(get_model_pricing("claude-opus-4-5-20251101[1m]").name, "Claude Opus 4.5")
        self.assertIs(get_model_pricing("not-a-model"), DEFAULT_PRICING)

    def test_model_name_derives_unknown_claude_ids(self) -> None:
        self.assertEqual(get_model_name("claude-sonnet-4-20250514"), "Claude Sonnet 4")
        self.assertEqual(get_model_name("claude-opus-4-7"), "Claude Opus 4.7")
        self.assertEqual(get_model_name("gpt-4o"), "Unknown Model")

    def test_context_windows(self) -> None:
        self.assertEqual(get_base_context_window("claude-2.0"), 100_000)
        self.assertEqual(get_base_context_window("claude-haiku-4-5"), 200_000)
        self.assertEqual(get_base_context_window("claude-sonnet-4-20250514[1m]"), 200_000)
        self.assertEqual(get_context_window("claude-sonnet-4-20250514[1m]", current_tokens=190_000), 1_000_000)
        self.assertEqual(get_context_window("claude-sonnet-4-20250514"), 200_000)
        self.assertEqual(get_context_window("claude-sonnet-4-20250514", current_tokens=180_001), 1_000_000)
        self.assertEqual(get_context_window("claude-sonnet-4-20250514", 180_001, context_window_override=300_000), 300_000)

    def test_upgrade_needs_usage_strictly_above_threshold(self) -> None:
        self.assertEqual(apply_window_upgrade(200_000, 180_000), 200_000)
        self.assertEqual(apply_window_upgrade(200_000, None), 200_000)
        self.assertEqual(apply_window_upgrade(1_000_000, 990_000), 1_000_000)

    def test_auto_compact_factor_default(self) -> None:
        self.assertEqual(get_auto_compact_factor("claude-sonnet-4-20250514"), 0.92)
        self.assertEqual(get_auto_compact_factor("mystery", default=0.5), 0.5)

    def test_cost_ignores_non_finite_values(self) -> None:
        cost = calculate_message_cost("claude-sonnet-4-20250514", {"input_tokens": float("inf"), "output_tokens": 1_000_000})
        self.assertAlmostEqual(cost, 15.0)

    def test_message_cost_bills_cache_reads_at_tenth_of_input(self) -> None:
        model = "claude-sonnet-4-20250514"
        self.assertAlmostEqual(calculate_message_cost(model, {"input_tokens": 1_000_000}), 3.0)
        self.assertAlmostEqual(calculate_message_cost(model, {"output_tokens": 1_000_000}), 15.0)
        self.assertAlmostEqual(calculate_message_cost(model, {"cache_read_input_tokens": 1_000_000}), 0.3)
        self.assertAlmostEqual(calculate_message_cost(model, {"cache_creation_input_tokens": 1_000_000}), 3.0)
        self.assertEqual(calculate_message_cost(model, None), 0.0)
        self.assertEqual(calculate_message_cost(model, {"input_tokens": "bogus"}), 0.0)


if __name__ == "__main__":
    unittest.main()
