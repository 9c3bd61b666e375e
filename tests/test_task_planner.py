"""
Tests for TaskPlanner
"""
import pytest

from browser_agent.models.schemas import SubGoal, TaskCategory, TaskPattern
from browser_agent.task_planner import TaskPlanner


@pytest.fixture
def planner():
    return TaskPlanner()


class TestClassification:
    """Keyword classification and multi-step detection"""

    def test_search_and_extract_task(self, planner):
        plan = planner.analyze_task("Search Baidu for '莆田' and tell me about the first two posts")

        assert planner.is_multi_step("Search Baidu for '莆田' and tell me about the first two posts")
        assert len(plan.sub_goals) == 2
        assert plan.step_budget == 50
        assert plan.sub_goals[0].description == 'Search for "莆田"'
        assert plan.sub_goals[0].completion_criteria == "Search results page loaded"
        assert plan.sub_goals[1].description == "Extract content from first two results"
        assert plan.pattern == TaskPattern.SEARCH_AND_EXTRACT
        assert plan.heuristic.name == "Search and Extract"

    def test_single_step_navigation(self, planner):
        plan = planner.analyze_task("Open Bilibili")

        assert planner.is_multi_step("Open Bilibili") is False
        assert plan.sub_goals == []
        assert plan.step_budget == 30
        assert plan.category == TaskCategory.NAVIGATION
        assert plan.pattern == TaskPattern.NAVIGATION

    @pytest.mark.parametrize(
        "task,category",
        [
            ("visit example.com", TaskCategory.NAVIGATION),
            ("look for cheap flights", TaskCategory.SEARCH),
            ("what is on this page", TaskCategory.CONTENT_EXTRACTION),
            ("click the login button", TaskCategory.INTERACTION),
            ("hello there", TaskCategory.COMPOSITE),
            ("search the docs and click the first link", TaskCategory.COMPOSITE),
        ],
    )
    def test_classify(self, planner, task, category):
        assert planner.classify_task(task) == category

    def test_sequence_keyword_makes_multi_step(self, planner):
        assert planner.is_multi_step("scroll down then wait")

    @pytest.mark.parametrize("task", [None, "", "   ", 42])
    def test_unusable_input_gives_default_plan(self, planner, task):
        plan = planner.analyze_task(task)

        assert plan.category == TaskCategory.COMPOSITE
        assert plan.sub_goals == []
        assert plan.step_budget == 30


class TestDecomposition:
    """Sub-goal generation strategies"""

    def test_navigate_and_interact(self, planner):
        sub_goals = planner.generate_sub_goals("Open bilibili.com and click the login button", TaskCategory.COMPOSITE)

        assert [sg.description for sg in sub_goals] == ["Navigate to bilibili.com", "Interact with login button"]
        assert sub_goals[0].completion_criteria == "Page loaded successfully"

    def test_sequence_split(self, planner):
        sub_goals = planner.generate_sub_goals(
            "scroll down then wait a bit then take a screenshot", TaskCategory.COMPOSITE
        )

        assert [sg.description for sg in sub_goals] == ["scroll down", "wait a bit", "take a screenshot"]
        assert sub_goals[2].completion_criteria == "Step 3 completed"

    def test_conjunction_split_respects_quotes(self, planner):
        components = planner._split_task_components("type 'salt and pepper' and press enter")
        assert components == ["type 'salt and pepper'", "press enter"]

    def test_comma_fallback(self, planner):
        assert planner._split_task_components("scroll, wait, stop") == ["scroll", "wait", "stop"]

    def test_generic_halves(self, planner):
        sub_goals = planner.generate_sub_goals("do it", TaskCategory.COMPOSITE)

        assert [sg.description for sg in sub_goals] == [
            "Complete first part of task",
            "Complete second part of task",
        ]

    def test_at_most_five_sub_goals(self, planner):
        task = "a then b then c then d then e then f then g"
        assert len(planner.generate_sub_goals(task, TaskCategory.COMPOSITE)) == 5


class TestBudget:
    """Step budget allocation"""

    @pytest.mark.parametrize("count,budget", [(0, 30), (1, 30), (2, 50), (3, 50), (4, 80), (5, 80), (6, 50)])
    def test_budget_by_sub_goal_count(self, planner, count, budget):
        sub_goals = [SubGoal(id=i + 1, description=f"goal {i}") for i in range(count)]
        assert planner.calculate_step_budget(sub_goals) == budget

    def test_shares_sum_to_budget(self, planner):
        sub_goals = [
            SubGoal(id=1, description="a", estimated_steps=3),
            SubGoal(id=2, description="b", estimated_steps=5),
            SubGoal(id=3, description="c", estimated_steps=1),
        ]
        budget = planner.calculate_step_budget(sub_goals)

        assert budget == 50
        assert sum(sg.estimated_steps for sg in sub_goals) == 50
        assert [sg.estimated_steps for sg in sub_goals] == [16, 27, 7]

    def test_heuristic_is_a_copy(self, planner):
        first = planner.get_heuristic_for_pattern(TaskPattern.SIMPLE_SEARCH)
        first.steps.append("extra")
        second = planner.get_heuristic_for_pattern(TaskPattern.SIMPLE_SEARCH)

        assert "extra" not in second.steps
        assert planner.get_heuristic_for_pattern(None) is None
