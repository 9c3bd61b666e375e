"""
Tests for LoopDetector
"""
from browser_agent.agent import SNAPSHOT_OBSERVATION
from browser_agent.loop_detector import (
    PATTERN_CONSECUTIVE_SNAPSHOTS,
    PATTERN_LEGACY,
    PATTERN_PAGE_NAVIGATION,
    PATTERN_SAME_ACTION_DIFFERENT_ARGS,
    PATTERN_SNAPSHOT_WAIT,
    LoopDetector,
    LoopResult,
)
from browser_agent.models.schemas import SubGoal


def feed(detector, actions, observation="same page"):
    result = LoopResult()
    for action, args in actions:
        result = detector.detect_loop(action, args, observation)
    return result


class TestPatterns:
    """Pattern recognition in priority order"""

    def test_consecutive_snapshots(self):
        result = feed(LoopDetector(), [("snapshot", {})] * 3)

        assert result.detected
        assert result.pattern == PATTERN_CONSECUTIVE_SNAPSHOTS
        assert result.confidence == 0.85
        assert result.productive is False
        assert result.count == 3

    def test_agent_snapshot_observations_are_not_progress(self):
        detector = LoopDetector()
        observation = SNAPSHOT_OBSERVATION.format(count=42)
        for _ in range(3):
            detector.record_observation(observation)
            result = detector.detect_loop("snapshot", {}, observation)

        assert result.pattern == PATTERN_CONSECUTIVE_SNAPSHOTS
        assert result.productive is False
        assert result.confidence == 0.85

    def test_waits_do_not_break_snapshot_run(self):
        result = feed(LoopDetector(), [("snapshot", {}), ("wait", {"ms": 500}), ("snapshot", {}), ("snapshot", {})])

        assert result.pattern == PATTERN_CONSECUTIVE_SNAPSHOTS

    def test_alternating_navigation(self):
        detector = LoopDetector()
        result = feed(
            detector,
            [
                ("navigate", {"url": "https://a.com"}),
                ("navigate", {"url": "https://b.com"}),
                ("navigate", {"url": "https://a.com"}),
                ("navigate", {"url": "https://b.com"}),
            ],
            observation="navigated successfully",
        )

        assert result.pattern == PATTERN_PAGE_NAVIGATION
        assert result.confidence == 0.95
        assert result.productive is False
        assert result.urls == ["https://a.com", "https://b.com"]

    def test_same_action_different_args(self):
        result = feed(LoopDetector(), [("click", {"ref": f"e{i}"}) for i in range(4)])

        assert result.pattern == PATTERN_SAME_ACTION_DIFFERENT_ARGS
        assert result.action_name == "click"
        assert result.count == 4
        # distinct click refs count as productive
        assert result.productive is True
        assert result.confidence == 0.5

    def test_snapshot_wait_pattern(self):
        actions = [("snapshot", {}), ("wait", {}), ("snapshot", {}), ("wait", {}),
                   ("snapshot", {}), ("click", {"ref": "e1"})]
        detector = LoopDetector()
        result = feed(detector, actions)

        assert result.pattern == PATTERN_SNAPSHOT_WAIT
        assert result.count == 2

    def test_exact_repeat_is_legacy(self):
        result = feed(LoopDetector(), [("getTitle", {})] * 3, observation='{"success": true}')

        assert result.pattern == PATTERN_LEGACY
        assert result.reason == "same_action_repeated"
        assert result.confidence == 1.0
        assert result.productive is False
        assert result.key == PATTERN_LEGACY

    def test_no_loop_for_varied_actions(self):
        result = feed(LoopDetector(), [("search", {"text": "a"}), ("snapshot", {}), ("click", {"ref": "e1"})])
        assert result.detected is False

    def test_video_page_can_finish(self):
        detector = LoopDetector()
        result = detector.detect_loop("click", {"ref": "e2"}, "videoOpened: Video is playing!")

        assert result.detected is False
        assert result.can_finish is True


class TestProductivity:
    """Productive iteration heuristic"""

    def test_changing_observations_are_productive(self):
        detector = LoopDetector()
        detector.record_observation("page one")
        detector.record_observation("page two")

        assert detector.is_productive_iteration("scroll", "", [])

    def test_progress_keywords(self):
        detector = LoopDetector()
        assert detector.is_productive_iteration("scroll", "Content extracted", [])
        assert detector.is_productive_iteration("scroll", "nothing", []) is False

    def test_completed_sub_goals_count_as_progress(self):
        detector = LoopDetector()
        assert detector.is_productive_iteration("scroll", "nothing", [], sub_goals_completed=1)

    def test_productive_snapshot_run_is_discounted(self):
        detector = LoopDetector()
        for i in range(3):
            detector.record_observation(f"observation {i}")
            result = detector.detect_loop("snapshot", {}, "same page")

        assert result.pattern == PATTERN_CONSECUTIVE_SNAPSHOTS
        assert result.productive is True
        assert result.confidence == 0.6


class TestAlternatives:
    """Suggestions offered for each pattern"""

    def test_always_ends_with_finish(self):
        for pattern in (PATTERN_CONSECUTIVE_SNAPSHOTS, PATTERN_PAGE_NAVIGATION, PATTERN_SNAPSHOT_WAIT, PATTERN_LEGACY):
            alternatives = LoopDetector().get_alternatives(LoopResult(detected=True, pattern=pattern))
            assert alternatives[-1].action == "Call finished() if done"

    def test_click_loop_with_sub_goal(self):
        loop = LoopResult(detected=True, pattern=PATTERN_SAME_ACTION_DIFFERENT_ARGS, action_name="click")
        sub_goal = SubGoal(id=1, description="open the post")
        actions = [alt.action for alt in LoopDetector().get_alternatives(loop, sub_goal)]

        assert actions == [
            "Try a completely different action type",
            "Use getText or getMarkdown",
            "Skip to next sub-goal",
            "Call finished() if done",
        ]

    def test_no_alternatives_without_detection(self):
        assert LoopDetector().get_alternatives(LoopResult()) == []

    def test_recent_action_names(self):
        detector = LoopDetector()
        feed(detector, [("search", {"text": "x"}), ("snapshot", {}), ("click", {"ref": "e1"})])
        assert detector.recent_action_names(2) == ["snapshot", "click"]
