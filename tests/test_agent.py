"""
Tests for the BrowserAgent control loop
"""
import asyncio
import json

import pytest

from browser_agent.agent import BrowserAgent, is_sub_goal_complete, is_video_url
from browser_agent.errors import LLMError
from browser_agent.models.schemas import ActionKind, ActionOutcome, RunStatus, SubGoal
from browser_agent.observer import CallbackObserver, RecordingObserver

from conftest import FakeEnvironment, ScriptedLLM, reply


SEARCH_TASK = "Search Baidu for '莆田' and tell me about the first two posts"
SIMPLE_TASK = "Open Bilibili"


def make_agent(env, llm, **kwargs):
    kwargs.setdefault("navigation_settle_ms", 0)
    kwargs.setdefault("search_settle_ms", 0)
    kwargs.setdefault("poll_interval_ms", 1)
    kwargs.setdefault("observer", RecordingObserver())
    return BrowserAgent(env, llm, **kwargs)


def contents(messages):
    return "\n".join(m["content"] for m in messages)


class TestConstruction:
    """Dispatch table and focused snapshot requests"""

    def test_every_action_kind_has_a_handler(self, env):
        agent = make_agent(env, ScriptedLLM([]))
        assert set(agent._handlers) == set(ActionKind)

    def test_request_focused_snapshot(self, env):
        agent = make_agent(env, ScriptedLLM([]))
        assert agent.request_focused_snapshot("search-results") == {"region": "search-results", "status": "pending"}
        assert agent.request_focused_snapshot("sidebar") == {"region": "full-page", "status": "pending"}


class TestTermination:
    """Every run ends with exactly one terminal result"""

    def test_finished_returns_result(self, env):
        llm = ScriptedLLM([reply("navigate", url="bilibili.com"), reply("finished", result="done")])
        agent = make_agent(env, llm)

        result = asyncio.run(agent.run(SIMPLE_TASK))

        assert result.status == RunStatus.SUCCESS
        assert result.success is True
        assert result.result == "done"
        assert result.steps_taken == 2
        assert [r.action for r in result.history] == ["navigate", "finished"]
        assert env.called("navigate") == [("navigate", "https://bilibili.com")]

    def test_finished_with_structured_result_is_json(self, env):
        llm = ScriptedLLM([reply("finished", result={"titles": ["a", "b"]})])
        result = asyncio.run(make_agent(env, llm).run(SIMPLE_TASK))

        assert json.loads(result.result) == {"titles": ["a", "b"]}

    def test_event_order_for_immediate_finish(self, env):
        observer = RecordingObserver()
        llm = ScriptedLLM([reply("finished", result="ok")])
        asyncio.run(make_agent(env, llm, observer=observer).run(SIMPLE_TASK))

        assert [e.type for e in observer.events] == ["start", "step", "thought", "action", "complete"]

    def test_max_steps_reached(self, env):
        observer = RecordingObserver()
        llm = ScriptedLLM([], default=reply("scroll", direction="down"))
        agent = make_agent(env, llm, observer=observer, max_steps=3)

        result = asyncio.run(agent.run(SIMPLE_TASK))

        assert result.status == RunStatus.INCOMPLETE
        assert result.error == "Max steps reached without completion"
        assert result.steps_taken == 3
        assert len(llm.calls) == 3
        assert len(observer.of_type("incomplete")) == 1

    def test_llm_failure_ends_run_with_error(self, env):
        observer = RecordingObserver()
        llm = ScriptedLLM([LLMError("endpoint down")])
        result = asyncio.run(make_agent(env, llm, observer=observer).run(SIMPLE_TASK))

        assert result.status == RunStatus.ERROR
        assert result.error == "endpoint down"
        assert observer.of_type("error")[0].data["message"] == "endpoint down"

    def test_stop_during_action(self, env):
        llm = ScriptedLLM([], default=reply("scroll"))
        agent = make_agent(env, llm)
        agent.observer = CallbackObserver(lambda event: agent.stop() if event.type == "action" else None)

        result = asyncio.run(agent.run(SIMPLE_TASK))

        assert result.status == RunStatus.STOPPED
        assert result.error == "Stopped by user"
        assert len(llm.calls) == 1

    def test_stop_interrupts_wait(self, env):
        llm = ScriptedLLM([reply("wait", ms=60000)])
        agent = make_agent(env, llm, poll_interval_ms=5)

        async def scenario():
            task = asyncio.ensure_future(agent.run(SIMPLE_TASK))
            await asyncio.sleep(0.05)
            agent.stop()
            return await asyncio.wait_for(task, timeout=5)

        result = asyncio.run(scenario())
        assert result.status == RunStatus.STOPPED

    def test_run_resets_state_between_runs(self, env):
        llm = ScriptedLLM([reply("scroll"), reply("finished", result="one"), reply("finished", result="two")])
        agent = make_agent(env, llm)

        asyncio.run(agent.run(SIMPLE_TASK))
        second = asyncio.run(agent.run(SIMPLE_TASK))

        assert second.result == "two"
        assert second.steps_taken == 1
        assert len(second.history) == 1


class TestSubGoals:
    """Progress tracker integration"""

    def test_tracker_completion_ends_run_without_extra_llm_call(self, env):
        observer = RecordingObserver()
        llm = ScriptedLLM([reply("search", text="莆田"), reply("getText", ref="e2")])
        agent = make_agent(env, llm, observer=observer)

        result = asyncio.run(agent.run(SEARCH_TASK))

        assert result.status == RunStatus.SUCCESS
        assert result.result == "All sub-goals completed"
        assert len(llm.calls) == 2
        assert result.summary["completed"] == 2
        assert len(observer.of_type("subGoalComplete")) == 2
        assert len(observer.of_type("complete")) == 1

    def test_plan_sets_step_budget(self, env):
        observer = RecordingObserver()
        llm = ScriptedLLM([reply("finished", result="x")])
        asyncio.run(make_agent(env, llm, observer=observer).run(SEARCH_TASK))

        plan_event = observer.of_type("planCreated")[0]
        assert plan_event.data["total_sub_goals"] == 2
        assert plan_event.data["step_budget"] == 50
        assert observer.of_type("start")[0].data["task"] == SEARCH_TASK

    def test_repeated_loop_skips_each_sub_goal_once(self, env):
        llm = ScriptedLLM([], default=reply("getTitle"))
        agent = make_agent(env, llm)

        result = asyncio.run(agent.run(SEARCH_TASK))

        # Three detections per sub-goal: steps 3-5 skip the first, 6-8 the second
        assert result.status == RunStatus.SUCCESS
        assert len(llm.calls) == 8
        assert result.summary["skipped"] == 2
        reasons = [sg["skip_reason"] for sg in result.summary["sub_goals"]]
        assert reasons == ["Loop detected 3 times: legacy"] * 2
        assert "AUTO-SKIPPED" in contents(llm.calls[5])
        assert "SECOND TIME" in contents(llm.calls[4])
        assert "LOOP DETECTED (legacy, confidence: 100%)" in contents(llm.calls[3])

    def test_stuck_sub_goal_is_skipped(self, env):
        observer = RecordingObserver()
        replies = [reply("scroll", direction=f"d{i}") for i in range(9)]
        llm = ScriptedLLM(replies, default=reply("finished", result="end"))
        agent = make_agent(env, llm, observer=observer)

        result = asyncio.run(agent.run(SEARCH_TASK))

        stuck = [e for e in observer.of_type("warning") if e.data.get("warning_type") == "stuck"]
        assert len(stuck) == 1
        assert stuck[0].data["message"] == 'Stuck on sub-goal "Search for "莆田"" after 9 steps'
        assert result.summary["sub_goals"][0]["status"] == "skipped"
        assert "Moving to next sub-goal" in contents(llm.calls[9])

    def test_planner_failure_falls_back_to_single_goal(self, env):
        class BrokenPlanner:
            def analyze_task(self, task):
                raise RuntimeError("boom")

        llm = ScriptedLLM([reply("finished", result="ok")])
        agent = make_agent(env, llm, planner=BrokenPlanner())

        result = asyncio.run(agent.run(SEARCH_TASK))

        assert result.status == RunStatus.SUCCESS
        errors = [t for t in agent.get_trace_history() if t["event_type"] == "error"]
        assert errors[0]["component"] == "TaskPlanner"


class TestActions:
    """Action execution and observations"""

    def test_unknown_action_becomes_error_observation(self, env):
        llm = ScriptedLLM([reply("dance"), reply("finished", result="ok")])
        asyncio.run(make_agent(env, llm).run(SIMPLE_TASK))

        assert "Result: Error: Unknown action: dance" in contents(llm.calls[1])

    def test_unparseable_reply_is_unknown_action(self, env):
        llm = ScriptedLLM(["I am not sure what to do", reply("finished", result="ok")])
        result = asyncio.run(make_agent(env, llm).run(SIMPLE_TASK))

        assert result.history[0].action == "unknown"
        assert result.history[0].thought == "I am not sure what to do"

    def test_third_snapshot_is_blocked(self, env):
        observer = RecordingObserver()
        llm = ScriptedLLM([reply("snapshot")] * 3 + [reply("finished", result="ok")])
        asyncio.run(make_agent(env, llm, observer=observer).run(SIMPLE_TASK))

        assert len(env.called("snapshot")) == 2
        last_prompt = contents(llm.calls[3])
        assert "Action blocked: Too many consecutive snapshot() calls" in last_prompt
        assert "Suggestion: Take an action based on the previous snapshot" in last_prompt
        # cached tree is still shown
        assert "Page snapshot:" in last_prompt
        blocked = [e for e in observer.of_type("warning") if e.data.get("warning_type") == "blocked"]
        assert len(blocked) == 1

    def test_snapshot_observation_and_refs(self, env):
        llm = ScriptedLLM([reply("snapshot"), reply("finished", result="ok")])
        agent = make_agent(env, llm)
        asyncio.run(agent.run(SIMPLE_TASK))

        assert "Result: Snapshot: 3 elements" in contents(llm.calls[1])
        assert "Putian travel guide" in contents(llm.calls[1])
        assert set(agent.state.current_refs) == {"e1", "e2", "e3"}

    def test_failed_snapshot_observation(self, env):
        env.snapshot_fails = True
        llm = ScriptedLLM([reply("snapshot"), reply("finished", result="ok")])
        asyncio.run(make_agent(env, llm).run(SIMPLE_TASK))

        assert "Snapshot failed: page crashed" in contents(llm.calls[1])

    def test_focused_snapshot_passes_region(self, env):
        llm = ScriptedLLM([reply("snapshot"), reply("snapshot"), reply("finished", result="ok")])
        agent = make_agent(env, llm)

        async def scenario():
            agent._reset(SIMPLE_TASK)
            agent.request_focused_snapshot("search-results")
            first = await agent.execute_action("snapshot", {})
            second = await agent.execute_action("snapshot", {})
            return first, second

        first, second = asyncio.run(scenario())
        assert env.called("snapshot")[0][1] == {"interactiveOnly": True, "focusRegion": "search-results"}
        assert env.called("snapshot")[1][1] == {"interactiveOnly": True}
        assert first.success and second.success

    def test_click_opening_video(self, env):
        env.click_results["e2"] = {"success": True, "navigate": "https://www.bilibili.com/video/BV1xx411c7mD"}
        llm = ScriptedLLM([reply("click", ref="e2"), reply("finished", result="ok")])
        asyncio.run(make_agent(env, llm).run(SIMPLE_TASK))

        prompt = contents(llm.calls[1])
        assert "videoOpened: Video is playing!" in prompt
        assert "Task likely complete" in prompt
        assert env.called("navigate") == [("navigate", "https://www.bilibili.com/video/BV1xx411c7mD")]

    def test_click_follow_button(self, env):
        env.refs["e4"] = {"role": "follow-button", "name": "Follow"}
        llm = ScriptedLLM([reply("snapshot"), reply("click", ref="e4"), reply("finished", result="ok")])
        asyncio.run(make_agent(env, llm).run(SIMPLE_TASK))

        assert "followClicked: Followed successfully!" in contents(llm.calls[2])

    def test_navigation_to_current_page_is_skipped(self, env):
        env.url = "https://www.bilibili.com"
        llm = ScriptedLLM([reply("navigate", url="www.bilibili.com/"), reply("finished", result="ok")])
        asyncio.run(make_agent(env, llm).run(SIMPLE_TASK))

        assert env.called("navigate") == []
        assert "Already on https://www.bilibili.com" in contents(llm.calls[1])

    def test_navigate_without_url(self, env):
        llm = ScriptedLLM([reply("navigate"), reply("finished", result="ok")])
        asyncio.run(make_agent(env, llm).run(SIMPLE_TASK))

        assert "Error: No URL provided" in contents(llm.calls[1])

    def test_repeated_failures_hit_retry_limit(self, env):
        llm = ScriptedLLM([reply("click", ref="e9")] * 3 + [reply("finished", result="ok")])
        asyncio.run(make_agent(env, llm).run(SIMPLE_TASK))

        assert "Retry limit reached" not in contents(llm.calls[2])
        assert "Retry limit reached" in contents(llm.calls[3])

    def test_ask_user(self, env):
        questions = []

        async def answer(question):
            questions.append(question)
            return "blue"

        observer = RecordingObserver()
        llm = ScriptedLLM([reply("askUser", question="Which color?"), reply("finished", result="ok")])
        asyncio.run(make_agent(env, llm, observer=observer, ask_user=answer).run(SIMPLE_TASK))

        assert questions == ["Which color?"]
        assert observer.of_type("askUser")[0].data["question"] == "Which color?"
        assert "User answered: blue" in contents(llm.calls[1])

    def test_ask_user_without_handler(self, env):
        llm = ScriptedLLM([reply("askUser", question="?"), reply("finished", result="ok")])
        asyncio.run(make_agent(env, llm).run(SIMPLE_TASK))

        assert "Error: No user is available to answer questions" in contents(llm.calls[1])

    def test_long_text_is_summarized(self, env):
        env.text = "\n\n".join(f"Paragraph {i}. " + "word " * 60 for i in range(20))
        observer = RecordingObserver()
        agent = make_agent(env, ScriptedLLM([]), observer=observer)

        async def scenario():
            agent._reset(SIMPLE_TASK)
            return await agent.execute_action("getText", {"ref": "e2"})

        outcome = asyncio.run(scenario())
        assert outcome.data["original_length"] == len(env.text)
        assert len(outcome.data["text"]) <= 1000
        extracted = observer.of_type("contentExtracted")[0]
        assert extracted.data["full_length"] == len(env.text)
        assert len(extracted.data["content"]) == 500

    def test_extract_multiple_items(self, env):
        agent = make_agent(env, ScriptedLLM([]))

        async def scenario():
            agent._reset(SIMPLE_TASK)
            return await agent.execute_action("extractMultipleItems", {"itemType": "results", "count": 2})

        outcome = asyncio.run(scenario())
        assert outcome.success
        assert outcome.data["count"] == 2
        assert outcome.data["message"] == "Extracted 2 results"

    def test_generate_document_defaults(self, env):
        agent = make_agent(env, ScriptedLLM([]))

        async def scenario():
            agent._reset(SIMPLE_TASK)
            return await agent.execute_action("generateDocument", {"data": [{"a": 1}]})

        outcome = asyncio.run(scenario())
        assert outcome.success
        assert env.called("generate_document") == [("generate_document", [{"a": 1}], "excel", "export.csv")]

    def test_task_state_bookkeeping(self, env):
        agent = make_agent(env, ScriptedLLM([]))

        async def scenario():
            agent._reset(SIMPLE_TASK)
            await agent.execute_action("navigate", {"url": "https://example.com"})
            await agent.execute_action("click", {"ref": "missing"})

        asyncio.run(scenario())
        ts = agent.state.task_state
        assert [a["action"] for a in ts.completed_actions] == ["navigate"]
        assert [a["action"] for a in ts.failed_actions] == ["click"]
        assert ts.page_history[0]["url"] == "https://example.com"


class TestStateValidation:
    """Corrupted run state is reset once, then aborts the run"""

    def test_second_corruption_aborts(self, env):
        llm = ScriptedLLM([], default=reply("scroll"))
        agent = make_agent(env, llm)

        def corrupt(event):
            if event.type == "thought":
                agent.state.step_count = -1

        agent.observer = CallbackObserver(corrupt)
        result = asyncio.run(agent.run(SIMPLE_TASK))

        assert result.status == RunStatus.ERROR
        assert result.error == "State validation failed"
        events = [t["event_type"] for t in agent.get_trace_history()]
        assert "stateCorruption" in events

    def test_valid_state_passes(self, env):
        agent = make_agent(env, ScriptedLLM([]))
        assert agent.validate_state() is True


class TestTracing:
    """Execution trace"""

    def test_trace_history_export(self, env):
        traced = []
        llm = ScriptedLLM([reply("scroll"), reply("finished", result="ok")])
        agent = make_agent(env, llm, on_trace=traced.append)
        asyncio.run(agent.run(SIMPLE_TASK))

        exported = json.loads(agent.export_trace_history())
        types = [t["event_type"] for t in exported]
        assert "llmCallStart" in types
        assert "actionStart" in types
        assert "actionComplete" in types
        assert types[-1] == "taskComplete"
        assert len(traced) == len(exported)

        agent.clear_trace_history()
        assert agent.get_trace_history() == []

    def test_failing_trace_callback_is_ignored(self, env):
        def explode(event):
            raise ValueError("nope")

        llm = ScriptedLLM([reply("finished", result="ok")])
        result = asyncio.run(make_agent(env, llm, on_trace=explode).run(SIMPLE_TASK))
        assert result.status == RunStatus.SUCCESS

    def test_failing_observer_is_ignored(self, env):
        def explode(event):
            raise ValueError("nope")

        llm = ScriptedLLM([reply("finished", result="ok")])
        result = asyncio.run(make_agent(env, llm, observer=CallbackObserver(explode)).run(SIMPLE_TASK))
        assert result.status == RunStatus.SUCCESS


class TestCompletionRules:
    """Sub-goal completion keyword table"""

    @pytest.mark.parametrize(
        "criteria,action,expected",
        [
            ("Search results page loaded", "search", True),
            ("Search results page loaded", "navigate", False),
            ("Content from first two results extracted", "getMarkdown", True),
            ("Content from first two results extracted", "click", False),
            ("Page loaded successfully", "navigate", True),
            ("Button clicked", "click", True),
        ],
    )
    def test_keyword_rules(self, criteria, action, expected):
        sub_goal = SubGoal(id=1, description="x", completion_criteria=criteria)
        outcome = ActionOutcome(success=True)
        assert is_sub_goal_complete(sub_goal, action, outcome, "{}") is expected

    def test_failed_action_never_completes(self):
        sub_goal = SubGoal(id=1, description="x", completion_criteria="Search results page loaded")
        assert is_sub_goal_complete(sub_goal, "search", ActionOutcome(success=False), "") is False

    def test_fallback_on_observation_text(self):
        sub_goal = SubGoal(id=1, description="x", completion_criteria="Step 1 completed")
        assert is_sub_goal_complete(sub_goal, "scroll", ActionOutcome(success=True), '{"success": true}')
        assert not is_sub_goal_complete(sub_goal, "scroll", ActionOutcome(success=True), "nothing here")

    def test_video_urls(self):
        assert is_video_url("https://www.bilibili.com/video/BV1xx")
        assert not is_video_url("https://www.bilibili.com/")
