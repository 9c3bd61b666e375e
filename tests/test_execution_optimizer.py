"""
Tests for ExecutionOptimizer
"""
from browser_agent.execution_optimizer import ExecutionOptimizer, action_key


class TestValidation:
    """Guardrails checked before each action"""

    def test_third_consecutive_snapshot_blocked(self):
        optimizer = ExecutionOptimizer()
        for _ in range(2):
            assert optimizer.validate_action("snapshot", {}).valid
            optimizer.record_action("snapshot", {}, {"success": True})

        verdict = optimizer.validate_action("snapshot", {})
        assert verdict.valid is False
        assert verdict.reason == "Too many consecutive snapshot() calls without taking action"
        assert verdict.alternative.startswith("Take an action based on the previous snapshot")

    def test_other_action_resets_snapshot_run(self):
        optimizer = ExecutionOptimizer()
        optimizer.record_action("snapshot", {}, {})
        optimizer.record_action("snapshot", {}, {})
        optimizer.record_action("click", {"ref": "e1"}, {})

        assert optimizer.validate_action("snapshot", {}).valid

    def test_get_url_once_per_sub_goal(self):
        optimizer = ExecutionOptimizer()
        optimizer.reset_for_sub_goal(1)
        optimizer.record_action("getUrl", {}, {})

        verdict = optimizer.validate_action("getUrl", {})
        assert verdict.valid is False
        assert verdict.reason == "getUrl() already called once in this sub-goal"

        optimizer.reset_for_sub_goal(2)
        assert optimizer.validate_action("getUrl", {}).valid

    def test_sub_goal_reset_clears_snapshot_run(self):
        optimizer = ExecutionOptimizer()
        optimizer.reset_for_sub_goal(1)
        optimizer.record_action("snapshot", {}, {})
        optimizer.record_action("snapshot", {}, {})
        assert optimizer.validate_action("snapshot", {}).valid is False

        optimizer.reset_for_sub_goal(2)
        assert optimizer.consecutive_snapshots == 0
        assert optimizer.validate_action("snapshot", {}).valid

    def test_finished_always_valid(self):
        optimizer = ExecutionOptimizer()
        optimizer.consecutive_snapshots = 5
        optimizer.get_url_count = 5
        assert optimizer.validate_action("finished", {"result": "x"}).valid


class TestRetries:
    """Retry counting per action key"""

    def test_two_retries_allowed(self):
        optimizer = ExecutionOptimizer()
        args = {"ref": "e1"}

        assert optimizer.can_retry("click", args)
        assert optimizer.can_retry("click", args)
        assert optimizer.can_retry("click", args) is False
        assert optimizer.can_retry("click", {"ref": "e2"})

    def test_retries_survive_sub_goal_reset(self):
        optimizer = ExecutionOptimizer()
        optimizer.can_retry("click", {})
        optimizer.can_retry("click", {})
        optimizer.reset_for_sub_goal(2)

        assert optimizer.can_retry("click", {}) is False

    def test_action_key_is_order_independent(self):
        assert action_key("fill", {"ref": "e1", "text": "x"}) == action_key("fill", {"text": "x", "ref": "e1"})
        assert action_key("snapshot", None) == "snapshot:{}"


class TestSnapshotCache:
    """Per sub-goal snapshot cache"""

    def test_cache_is_scoped_to_sub_goal(self):
        optimizer = ExecutionOptimizer()
        optimizer.cache_snapshot(1, {"tree": "- button"})

        assert optimizer.get_cached_snapshot(1) == {"tree": "- button"}
        assert optimizer.get_cached_snapshot(2) is None

        optimizer.reset_for_sub_goal(2)
        assert optimizer.get_cached_snapshot(1) is None


class TestNavigation:
    """Redundant navigation check"""

    def test_same_page_not_needed(self):
        optimizer = ExecutionOptimizer()
        assert optimizer.is_navigation_needed("https://Example.com/path/", "https://example.com/path") is False
        assert optimizer.is_navigation_needed("https://example.com/a#top", "https://example.com/a") is False

    def test_different_page_needed(self):
        optimizer = ExecutionOptimizer()
        assert optimizer.is_navigation_needed("https://example.com/a", "https://example.com/b")
        assert optimizer.is_navigation_needed("https://example.com/?q=1", "https://example.com/?q=2")
        assert optimizer.is_navigation_needed("https://example.com", None)
