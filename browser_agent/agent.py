"""
Autonomous browser agent control loop.

Implements a sequential reason-and-act loop that:
1. Plans the task into sub-goals with a step budget
2. Asks the LLM for the next action given page state and progress
3. Validates and executes the action against the browser environment
4. Tracks sub-goal progress, detects loops and stuck sub-goals
5. Repeats until finished, stopped, or out of steps

All run state lives on the BrowserAgent instance and is reset by run().
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .config import settings
from .content_extractor import SUMMARY_THRESHOLD, ContentExtractor, ContentPattern
from .environment import BrowserEnvironment
from .errors import AgentError, LLMError, StateCorruptionError, UnknownActionError
from .execution_optimizer import ExecutionOptimizer
from .loop_detector import LoopDetector, LoopResult
from .models.schemas import (
    ActionKind,
    ActionOutcome,
    ActionRecord,
    Annotation,
    EventType,
    Plan,
    ProgressEvent,
    RunResult,
    RunStatus,
    SubGoal,
)
from .observer import AgentObserver, safe_notify
from .progress_tracker import ProgressTracker
from .prompt_builder import VALID_REGIONS, PromptBuilder, StepContext, filter_snapshot_by_region, parse_response
from .task_planner import TaskPlanner
from .utils.logger import get_logger


logger = get_logger(__name__)


AskUserFn = Callable[[str], Awaitable[str]]
TraceFn = Callable[[Dict[str, Any]], None]


# ============================================================================
# Constants
# ============================================================================

STOPPED_MESSAGE = "Stopped by user"
INCOMPLETE_MESSAGE = "Max steps reached without completion"
STATE_INVALID_MESSAGE = "State validation failed"
ALL_SUB_GOALS_DONE = "All sub-goals completed"

TASK_LIKELY_COMPLETE = "\n✅ Task likely complete! Call finished() now if this meets the goal."
REPEATING_WARNING = "\n⚠️ You are repeating the same action! Try a different approach or call finished() if done."
RETRY_LIMIT_NOTE = "\n⚠️ Retry limit reached for this action with these arguments. Do not try it again; use a different approach."
SNAPSHOT_OBSERVATION = "Snapshot: {count} elements"

LOOP_ESCALATION_SKIP = 3
REPETITION_WINDOW = 10
REPETITION_THRESHOLD = 4
CONTENT_PREVIEW_CHARS = 500
EXTRACTION_ACTIONS = ("getText", "getMarkdown", "extractMultipleItems")

# Observation flags for annotations that have no dedicated observation phrase
ANNOTATION_FLAGS = {
    Annotation.VIDEO_OPENED: "videoOpened",
    Annotation.FOLLOW_CLICKED: "followClicked",
    Annotation.USER_PAGE_OPENED: "userPageOpened",
    Annotation.SUMMARIZED: "summarized",
}


def is_video_url(url: str) -> bool:
    return any(marker in url for marker in ("video/BV", "video/av", "/BV", "/av"))


def is_user_space_url(url: str) -> bool:
    return "space.bilibili.com" in url


def is_sub_goal_complete(sub_goal: Optional[SubGoal], action: str, outcome: ActionOutcome, observation: str) -> bool:
    """
    Keyword rule table over the sub-goal's completion criteria.

    The last rule accepts any observation mentioning "complete" or
    "success", which includes JSON dumps of successful results.
    """
    if sub_goal is None or not sub_goal.completion_criteria:
        return False

    criteria = sub_goal.completion_criteria.lower()
    obs_lower = (observation or "").lower()

    if "search" in criteria and "loaded" in criteria:
        return action == "search" and outcome.success
    if "content" in criteria and "extracted" in criteria:
        return action in ("getMarkdown", "getText") and outcome.success
    if "navigated" in criteria or "page loaded" in criteria:
        return action == "navigate" and outcome.success
    if "clicked" in criteria or "button" in criteria:
        return action == "click" and outcome.success

    return "complete" in obs_lower or "success" in obs_lower


@dataclass
class TaskState:
    """Action bookkeeping reported in the prompt's progress block."""
    completed_actions: List[Dict[str, Any]] = field(default_factory=list)
    failed_actions: List[Dict[str, Any]] = field(default_factory=list)
    page_history: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AgentRunState:
    """Mutable per-run state. Rebuilt from scratch on every run()."""
    task: str = ""
    step_count: int = 0
    max_steps: int = 0
    plan: Optional[Plan] = None
    history: List[ActionRecord] = field(default_factory=list)
    task_state: TaskState = field(default_factory=TaskState)
    current_refs: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    last_snapshot: Optional[str] = None
    last_observation: Optional[str] = None
    loop_detection_count: Dict[str, int] = field(default_factory=dict)
    focused_snapshot_region: Optional[str] = None


class BrowserAgent:
    """
    LLM-driven browser agent.

    Usage::

        agent = BrowserAgent(environment, LLMClient())
        result = await agent.run("Search Baidu for 'python' and tell me about the first two results")
    """

    def __init__(
        self,
        environment: BrowserEnvironment,
        llm_client: Any,
        observer: Optional[AgentObserver] = None,
        ask_user: Optional[AskUserFn] = None,
        planner: Optional[TaskPlanner] = None,
        extractor: Optional[ContentExtractor] = None,
        max_steps: Optional[int] = None,
        on_trace: Optional[TraceFn] = None,
        poll_interval_ms: Optional[int] = None,
        navigation_settle_ms: Optional[int] = None,
        search_settle_ms: Optional[int] = None,
    ):
        """
        Initialize the agent.

        Args:
            environment: Browser environment the actions run against
            llm_client: Object with an async call_llm(messages) -> str
            observer: Receives progress events
            ask_user: Async callable answering askUser questions
            planner: Task planner; a default TaskPlanner when omitted
            extractor: Content extractor; a default one when omitted
            max_steps: Step cap for tasks without sub-goals
            on_trace: Receives every execution trace event
            poll_interval_ms: Tick length of waits and settle delays
            navigation_settle_ms: Delay after a navigation
            search_settle_ms: Delay after a successful search
        """
        self.env = environment
        self.llm = llm_client
        self.observer = observer
        self.ask_user = ask_user
        self.planner = planner or TaskPlanner()
        self.extractor = extractor or ContentExtractor()
        self.default_max_steps = max_steps or settings.AGENT_MAX_STEPS
        self.on_trace = on_trace
        self.poll_interval_ms = max(1, poll_interval_ms or settings.AGENT_POLL_INTERVAL_MS)
        self.navigation_settle_ms = (
            settings.AGENT_NAVIGATION_SETTLE_MS if navigation_settle_ms is None else navigation_settle_ms
        )
        self.search_settle_ms = settings.AGENT_SEARCH_SETTLE_MS if search_settle_ms is None else search_settle_ms

        self._handlers: Dict[ActionKind, Callable[[Dict[str, Any]], Awaitable[ActionOutcome]]] = {
            ActionKind.SNAPSHOT: self._handle_snapshot,
            ActionKind.CLICK: self._handle_click,
            ActionKind.FILL: self._handle_fill,
            ActionKind.SEARCH: self._handle_search,
            ActionKind.NAVIGATE: self._handle_navigate_action,
            ActionKind.SCROLL: self._handle_scroll,
            ActionKind.WAIT: self._handle_wait,
            ActionKind.GET_TEXT: self._handle_get_text,
            ActionKind.GET_MARKDOWN: self._handle_get_markdown,
            ActionKind.GET_URL: self._handle_get_url,
            ActionKind.GET_TITLE: self._handle_get_title,
            ActionKind.ASK_USER: self._handle_ask_user,
            ActionKind.EXTRACT_MULTIPLE_ITEMS: self._handle_extract_multiple_items,
            ActionKind.GENERATE_DOCUMENT: self._handle_generate_document,
            ActionKind.FINISHED: self._handle_finished,
        }
        missing = [kind.value for kind in ActionKind if kind not in self._handlers]
        if missing:
            raise AgentError(f"No handler registered for actions: {missing}")

        self.prompt_builder = PromptBuilder()
        self.trace_history: List[Dict[str, Any]] = []
        self._stopped = False
        self._reset("")

        logger.info(f"[Agent] Initialized (default max_steps={self.default_max_steps})")

    # ========================================================================
    # Run state
    # ========================================================================

    def _reset(self, task: str) -> None:
        self.state = AgentRunState(task=task, max_steps=self.default_max_steps)
        self.tracker: Optional[ProgressTracker] = None
        self.optimizer = ExecutionOptimizer()
        self.loop_detector = LoopDetector()
        self.prompt_builder.reset()
        self._recovered_fields: set = set()

    def stop(self) -> None:
        """Request cooperative cancellation; takes effect within one poll tick."""
        self._stopped = True
        logger.info("[Agent] Stop requested")

    @property
    def stopped(self) -> bool:
        return self._stopped

    def request_focused_snapshot(self, region: str = "full-page") -> Dict[str, str]:
        """Restrict the next snapshot to a page region."""
        if region not in VALID_REGIONS:
            logger.warning(f"[Agent] Invalid region '{region}', defaulting to 'full-page'")
            region = "full-page"
        self.state.focused_snapshot_region = region
        logger.info(f"[Agent] Focused snapshot requested for region: {region}")
        return {"region": region, "status": "pending"}

    def _current_sub_goal(self) -> Optional[SubGoal]:
        return self.tracker.get_current_sub_goal() if self.tracker else None

    def _current_sub_goal_id(self) -> Optional[int]:
        sub_goal = self._current_sub_goal()
        return sub_goal.id if sub_goal else None

    # ------------------------------------------------------------------
    # State validation
    # ------------------------------------------------------------------

    def _recover(self, field_name: str, detail: str, reset: Callable[[], None]) -> None:
        if field_name in self._recovered_fields:
            raise StateCorruptionError(field_name, detail)
        logger.warning(f"[Agent] Invalid {field_name} ({detail}), resetting")
        reset()
        self._recovered_fields.add(field_name)

    def validate_state(self) -> bool:
        """
        Check run-state fields, resetting a corrupted field once.

        Returns:
            True when the state was valid or has been recovered

        Raises:
            StateCorruptionError: A field was corrupted again after its reset
        """
        s = self.state
        corrupted = False

        def check(ok: bool, field_name: str, detail: str, reset: Callable[[], None]) -> None:
            nonlocal corrupted
            if not ok:
                self._recover(field_name, detail, reset)
                corrupted = True

        check(isinstance(s.step_count, int) and s.step_count >= 0,
              "step_count", f"value={s.step_count!r}", lambda: setattr(s, "step_count", 0))
        check(isinstance(s.history, list),
              "history", f"type={type(s.history).__name__}", lambda: setattr(s, "history", []))
        check(isinstance(s.task_state, TaskState),
              "task_state", f"type={type(s.task_state).__name__}", lambda: setattr(s, "task_state", TaskState()))
        check(isinstance(s.current_refs, dict),
              "current_refs", f"type={type(s.current_refs).__name__}", lambda: setattr(s, "current_refs", {}))
        check(isinstance(s.loop_detection_count, dict),
              "loop_detection_count", "not a mapping", lambda: setattr(s, "loop_detection_count", {}))
        check(isinstance(self.loop_detector, LoopDetector) and hasattr(self.loop_detector.last_actions, "append"),
              "last_actions", "not a sequence", lambda: setattr(self, "loop_detector", LoopDetector()))

        tracker = self.tracker
        if tracker is not None:
            check(isinstance(tracker.sub_goals, list),
                  "tracker.sub_goals", "not a list", lambda: setattr(tracker, "sub_goals", []))
            index_ok = (
                isinstance(tracker.current_sub_goal_index, int)
                and 0 <= tracker.current_sub_goal_index <= len(tracker.sub_goals)
            )
            check(index_ok, "tracker.current_sub_goal_index", f"value={tracker.current_sub_goal_index!r}",
                  lambda: setattr(tracker, "current_sub_goal_index", 0))
            counts_ok = (
                isinstance(tracker.sub_goal_step_counts, list)
                and len(tracker.sub_goal_step_counts) == len(tracker.sub_goals)
            )
            check(counts_ok, "tracker.sub_goal_step_counts", "length mismatch",
                  lambda: setattr(tracker, "sub_goal_step_counts", [0] * len(tracker.sub_goals)))

        if corrupted:
            self._trace("stateCorruption", recovered=True, fields=sorted(self._recovered_fields))
        return True

    # ========================================================================
    # Events and tracing
    # ========================================================================

    def _emit(self, event_type: EventType, **data: Any) -> None:
        event = ProgressEvent(type=event_type, step=self.state.step_count, data=data)
        safe_notify(self.observer, event)

    def _trace(self, event_type: str, **data: Any) -> None:
        event = {
            "timestamp": datetime.now().isoformat(),
            "event_type": event_type,
            "step": self.state.step_count,
            **data,
        }
        logger.debug(f"[Trace:{event_type}] {json.dumps(event, ensure_ascii=False, default=str)}")
        self.trace_history.append(event)
        if self.on_trace:
            try:
                self.on_trace(event)
            except Exception as e:
                logger.error(f"[Agent] on_trace callback failed: {e}")

    def get_trace_history(self) -> List[Dict[str, Any]]:
        return list(self.trace_history)

    def export_trace_history(self) -> str:
        return json.dumps(self.trace_history, indent=2, ensure_ascii=False, default=str)

    def clear_trace_history(self) -> None:
        self.trace_history = []

    # ========================================================================
    # Main loop
    # ========================================================================

    async def run(self, task: str) -> RunResult:
        """
        Execute a natural-language task.

        Args:
            task: What the user wants done in the browser

        Returns:
            RunResult with status success, stopped, incomplete or error,
            always carrying the full action history
        """
        self._stopped = False
        self._reset(task)
        self.clear_trace_history()
        s = self.state

        logger.info(f"[Agent] Run started: {task!r}")
        self._emit(EventType.START, task=task, max_steps=s.max_steps)

        plan = self._plan(task)
        s.plan = plan
        if plan.sub_goals:
            self.tracker = ProgressTracker(plan.sub_goals)
            if plan.step_budget > 0:
                s.max_steps = plan.step_budget
            self.optimizer.reset_for_sub_goal(plan.sub_goals[0].id)
            self._emit(
                EventType.PLAN_CREATED,
                total_sub_goals=len(plan.sub_goals),
                step_budget=plan.step_budget,
                sub_goals=[
                    {"description": sg.description, "completion_criteria": sg.completion_criteria}
                    for sg in plan.sub_goals
                ],
            )

        while s.step_count < s.max_steps and not self._stopped:
            try:
                self.validate_state()
            except StateCorruptionError as e:
                logger.error(f"[Agent] Critical state validation failure, stopping execution: {e}")
                self._trace("error", component="StateValidator", error=str(e), critical=True)
                self._emit(EventType.ERROR, message=STATE_INVALID_MESSAGE, detail=str(e))
                return self._result(RunStatus.ERROR, error=STATE_INVALID_MESSAGE)

            s.step_count += 1
            self._emit(EventType.STEP, **self._step_progress())
            if self._stopped:
                break

            sub_goal = self._current_sub_goal()
            if self.tracker is not None:
                if sub_goal is not None and self.tracker.current_step_count() == 0:
                    self._trace(
                        "subGoalStart",
                        sub_goal_index=self.tracker.current_sub_goal_index,
                        description=sub_goal.description,
                        completion_criteria=sub_goal.completion_criteria,
                        estimated_steps=sub_goal.estimated_steps,
                    )
                if self.tracker.is_complete():
                    return self._complete_all_sub_goals()

            # ── ask the LLM ────────────────────────────────────────────
            messages = self.prompt_builder.build_messages(
                StepContext(
                    task=task,
                    step=s.step_count,
                    max_steps=s.max_steps,
                    completed_actions=len(s.task_state.completed_actions),
                    failed_actions=len(s.task_state.failed_actions),
                ),
                observation=s.last_observation,
                snapshot=s.last_snapshot,
                history=s.history,
                tracker=self.tracker,
                sub_goal=sub_goal,
                heuristic=plan.heuristic,
            )
            self._trace("llmCallStart", message_count=len(messages))
            try:
                llm_response = await self.llm.call_llm(messages)
            except LLMError as e:
                if self._stopped:
                    return self._stopped_result()
                logger.error(f"[Agent] LLM call failed: {e}")
                self._trace("error", component="LLMClient", error=str(e))
                self._emit(EventType.ERROR, message=str(e))
                return self._result(RunStatus.ERROR, error=str(e))

            if self._stopped:
                break

            parsed = parse_response(llm_response)
            self._trace(
                "llmCallComplete",
                response_length=len(llm_response or ""),
                thought=parsed["thought"],
            )
            self._emit(EventType.THOUGHT, content=llm_response)

            action, args = parsed["action"], parsed["args"]
            s.history.append(ActionRecord(step=s.step_count, thought=parsed["thought"], action=action, args=args))

            # ── act ────────────────────────────────────────────────────
            outcome = await self.execute_action(action, args)

            if self._stopped:
                return self._stopped_result()

            if action == ActionKind.FINISHED.value and outcome.success:
                return self._finish(outcome.data.get("result"))

            observation = self._derive_observation(action, args, outcome)
            self.loop_detector.record_observation(observation)

            # ── sub-goal progress ──────────────────────────────────────
            if self.tracker is not None and sub_goal is not None:
                self.tracker.record_step()

                if is_sub_goal_complete(sub_goal, action, outcome, observation):
                    self._on_sub_goal_complete(sub_goal, action, outcome, observation)
                    if self.tracker.is_complete():
                        return self._complete_all_sub_goals()

                elif self.tracker.is_stuck():
                    s.last_observation = self._skip_stuck_sub_goal(sub_goal, observation)
                    continue

            # ── loop detection ─────────────────────────────────────────
            loop = self.loop_detector.detect_loop(
                action, args, observation, sub_goals_completed=self._completed_sub_goals()
            )
            if loop.can_finish and action in ("click", "snapshot", "getMarkdown"):
                observation += TASK_LIKELY_COMPLETE
            if loop.detected:
                observation = self._escalate_loop(loop, observation)

            names = self.loop_detector.recent_action_names(REPETITION_WINDOW)
            if (
                names.count(action) >= REPETITION_THRESHOLD
                and action != ActionKind.FINISHED.value
                and "Task likely complete" not in observation
                and not loop.detected
            ):
                observation += REPEATING_WARNING

            s.last_observation = observation

        if self._stopped:
            return self._stopped_result()

        self._emit_content_summary()
        logger.warning(f"[Agent] Max steps reached ({s.max_steps}) without completion")
        self._emit(EventType.INCOMPLETE, reason="Max steps reached")
        self._trace("taskIncomplete", reason="Max steps reached", **self._sub_goal_totals())
        return self._result(RunStatus.INCOMPLETE, error=INCOMPLETE_MESSAGE)

    # ------------------------------------------------------------------
    # Run helpers
    # ------------------------------------------------------------------

    def _plan(self, task: str) -> Plan:
        try:
            plan = self.planner.analyze_task(task)
            if not isinstance(plan, Plan) or not isinstance(plan.sub_goals, list):
                raise AgentError("Invalid plan structure")
            logger.info(
                f"[Agent] Plan: category={plan.category} sub_goals={len(plan.sub_goals)} "
                f"budget={plan.step_budget} pattern={plan.pattern}"
            )
            return plan
        except Exception as e:
            logger.warning(f"[Agent] Task planning failed, using fallback: {e}")
            self._trace("error", component="TaskPlanner", error=str(e), fallback="simple task with 30 steps")
            return Plan()

    def _step_progress(self) -> Dict[str, Any]:
        s = self.state
        data: Dict[str, Any] = {
            "max_steps": s.max_steps,
            "progress_percentage": round(s.step_count / s.max_steps * 100) if s.max_steps else 0,
        }
        tracker = self.tracker
        if tracker is None:
            return data

        sub_goal = tracker.get_current_sub_goal()
        total = len(tracker.sub_goals)
        if sub_goal is not None:
            data["current_sub_goal"] = {
                "index": tracker.current_sub_goal_index + 1,
                "total": total,
                "description": sub_goal.description,
                "steps_on_sub_goal": tracker.current_step_count(),
            }
        done = tracker.current_sub_goal_index
        if done > 0:
            data["estimated_remaining_steps"] = -(-s.step_count * (total - done) // done)
        elif total:
            data["estimated_remaining_steps"] = -(-s.max_steps * (total - 1) // total)
        return data

    def _completed_sub_goals(self) -> int:
        if self.tracker is None:
            return 0
        return sum(1 for sg in self.tracker.sub_goals if sg.completed)

    def _sub_goal_totals(self) -> Dict[str, int]:
        sub_goals = self.tracker.sub_goals if self.tracker else []
        return {
            "total_steps": self.state.step_count,
            "total_sub_goals": len(sub_goals),
            "completed_sub_goals": sum(1 for sg in sub_goals if sg.completed),
            "skipped_sub_goals": sum(1 for sg in sub_goals if sg.skipped),
        }

    def _reset_optimizer_for_next(self) -> None:
        next_goal = self._current_sub_goal()
        if next_goal is not None:
            self.optimizer.reset_for_sub_goal(next_goal.id)

    def _on_sub_goal_complete(self, sub_goal: SubGoal, action: str, outcome: ActionOutcome, observation: str) -> None:
        tracker = self.tracker
        tracker.complete_current_sub_goal({
            "action": action,
            "result": outcome.to_dict(),
            "observation": observation,
        })
        self._reset_optimizer_for_next()

        completion = tracker.get_completion_data(sub_goal) or {}
        self._trace(
            "subGoalComplete",
            sub_goal_index=tracker.current_sub_goal_index - 1,
            description=sub_goal.description,
            steps_taken=completion.get("steps_taken", 0),
            completion_time=completion.get("completion_time"),
        )
        self._emit(
            EventType.SUB_GOAL_COMPLETE,
            sub_goal=sub_goal.model_dump(exclude={"result"}),
            sub_goal_index=tracker.current_sub_goal_index,
            total_sub_goals=len(tracker.sub_goals),
            steps_taken=completion.get("steps_taken", 0),
            completion_time=completion.get("completion_time"),
            summary=completion.get("summary", f"Completed: {sub_goal.description}"),
            progress=tracker.get_progress(),
        )

    def _skip_stuck_sub_goal(self, sub_goal: SubGoal, observation: str) -> str:
        tracker = self.tracker
        steps = tracker.current_step_count()
        reason = f'Stuck on sub-goal "{sub_goal.description}" after {steps} steps'
        logger.warning(f"[Agent] {reason}")
        recent = self.state.history[-5:]

        self._trace(
            "stuck",
            sub_goal_index=tracker.current_sub_goal_index,
            description=sub_goal.description,
            steps_taken=steps,
            recent_actions=[record.action for record in recent],
            reason=reason,
        )
        tracker.skip_current_sub_goal(reason)
        self._reset_optimizer_for_next()

        self._emit(
            EventType.WARNING,
            warning_type="stuck",
            message=reason,
            sub_goal={
                "description": sub_goal.description,
                "completion_criteria": sub_goal.completion_criteria,
                "steps_taken": steps,
            },
            recent_actions=[{"action": r.action, "args": r.args} for r in recent],
            suggestions=[
                "Try a completely different approach",
                "Skip to next sub-goal",
                "Call askUser() for help",
            ],
        )
        return (observation or "") + f"\n⚠️ {reason}. Moving to next sub-goal."

    def _escalate_loop(self, loop: LoopResult, observation: str) -> str:
        """
        Three-tier response to a detected loop, counted per pattern key.

        1st detection: list alternatives. 2nd: demand a decisive action.
        3rd: force-skip the current sub-goal and restart the count.
        """
        if loop.productive and loop.confidence < 0.7:
            logger.info("[Agent] Loop pattern detected but appears productive, continuing...")
            return observation

        s = self.state
        key = loop.key
        sub_goal = self._current_sub_goal()
        s.loop_detection_count[key] = s.loop_detection_count.get(key, 0) + 1
        count = s.loop_detection_count[key]

        self._trace(
            "loopDetected",
            pattern=loop.pattern,
            reason=loop.reason,
            confidence=loop.confidence,
            productive=loop.productive,
            detection_count=count,
        )
        self._emit(
            EventType.WARNING,
            warning_type="loop",
            message=f"Loop detected: {key}",
            confidence=loop.confidence,
            detection_count=count,
        )

        if count < 2:
            note = " (possibly productive)" if loop.productive else ""
            observation += (
                f"\n\n⚠️ LOOP DETECTED ({key}{note}, confidence: {loop.confidence * 100:.0f}%)\n"
                f"You are stuck in a repetitive pattern. Try one of these alternatives:\n\n"
            )
            for i, alt in enumerate(self.loop_detector.get_alternatives(loop, sub_goal), 1):
                observation += f"{i}. {alt.action}: {alt.suggestion}\n"
            return observation

        observation += f"\n\n🛑 LOOP DETECTED ({key}) - SECOND TIME! You MUST take one of these actions NOW:\n"
        if sub_goal is None or self.tracker is None or self.tracker.is_complete():
            observation += "1. Call finished() with whatever results you have gathered\n"
            observation += "2. Try ONE completely different approach\n"
            return observation

        observation += "1. Skip to next sub-goal by acknowledging this is not achievable\n"
        observation += "2. Call finished() if you have enough information to complete the task\n"

        if count >= LOOP_ESCALATION_SKIP:
            logger.warning(f"[Agent] Force skipping sub-goal due to repeated loop detection: {key}")
            self.tracker.skip_current_sub_goal(f"Loop detected {LOOP_ESCALATION_SKIP} times: {key}")
            self._reset_optimizer_for_next()
            s.loop_detection_count[key] = 0
            observation += "\n⚠️ AUTO-SKIPPED to next sub-goal due to repeated loop.\n"
            next_goal = self._current_sub_goal()
            if next_goal is not None:
                observation += f"\nNow working on: {next_goal.description}\n"
            else:
                observation += "\nAll sub-goals processed. Call finished() with your results.\n"
        return observation

    # ------------------------------------------------------------------
    # Terminal results
    # ------------------------------------------------------------------

    def _result(self, status: RunStatus, **kwargs: Any) -> RunResult:
        return RunResult(
            status=status,
            success=status == RunStatus.SUCCESS,
            history=list(self.state.history),
            steps_taken=self.state.step_count,
            **kwargs,
        )

    def _finish(self, payload: Any) -> RunResult:
        logger.info(f"[Agent] Task finished with result: {str(payload)[:200]}")
        self._trace("taskComplete", success=True, result=payload, **self._sub_goal_totals())
        summary = self.tracker.get_summary() if self.tracker else None
        self._emit(EventType.COMPLETE, result=payload, summary=summary)
        return self._result(RunStatus.SUCCESS, result=payload, summary=summary)

    def _complete_all_sub_goals(self) -> RunResult:
        summary = self.tracker.get_summary()
        logger.info(f"[Agent] {ALL_SUB_GOALS_DONE} in {self.state.step_count} steps")
        self._trace("taskComplete", success=True, result=ALL_SUB_GOALS_DONE, **self._sub_goal_totals())
        self._emit(EventType.COMPLETE, result=ALL_SUB_GOALS_DONE, summary=summary)
        return self._result(RunStatus.SUCCESS, result=ALL_SUB_GOALS_DONE, summary=summary)

    def _stopped_result(self) -> RunResult:
        logger.info("[Agent] Run stopped by user")
        self._emit_content_summary()
        self._emit(EventType.STOPPED)
        self._trace("taskIncomplete", reason=STOPPED_MESSAGE, **self._sub_goal_totals())
        return self._result(RunStatus.STOPPED, error=STOPPED_MESSAGE)

    def _emit_content_summary(self) -> None:
        extractions = [
            {"action": record.action, "step": record.step}
            for record in self.state.history
            if record.action in EXTRACTION_ACTIONS
        ]
        if extractions:
            self._emit(EventType.CONTENT_SUMMARY, total_extractions=len(extractions), extractions=extractions)

    # ========================================================================
    # Observations
    # ========================================================================

    def _derive_observation(self, action: str, args: Dict[str, Any], outcome: ActionOutcome) -> str:
        """Turn an outcome into the text the LLM sees next step; also updates last_snapshot."""
        s = self.state

        if action == ActionKind.SNAPSHOT.value and outcome.data.get("tree"):
            s.last_snapshot = outcome.data["tree"]
            return SNAPSHOT_OBSERVATION.format(count=outcome.data.get("element_count") or 0)

        if action == ActionKind.SNAPSHOT.value:
            cached = self.optimizer.get_cached_snapshot(self._current_sub_goal_id())
            s.last_snapshot = cached.get("tree") if cached else None
        else:
            s.last_snapshot = None

        if outcome.has(Annotation.VALIDATION_FAILED):
            return f"Action blocked: {outcome.error}\nSuggestion: {outcome.data.get('alternative', '')}"

        if not outcome.success:
            if action == ActionKind.SNAPSHOT.value:
                observation = f"Snapshot failed: {outcome.error or 'unknown error'}"
            else:
                observation = f"Error: {outcome.error or 'Unknown error'}"
            if outcome.error != STOPPED_MESSAGE and not self.optimizer.can_retry(action, args):
                observation += RETRY_LIMIT_NOTE
            return observation

        if outcome.has(Annotation.VIDEO_OPENED):
            return "videoOpened: Video is playing!"
        if outcome.has(Annotation.FOLLOW_CLICKED):
            return "followClicked: Followed successfully!"

        payload = outcome.to_dict()
        for annotation in outcome.annotations:
            flag = ANNOTATION_FLAGS.get(annotation)
            if flag:
                payload[flag] = True
        return json.dumps(payload, ensure_ascii=False, default=str)

    # ========================================================================
    # Action execution
    # ========================================================================

    async def execute_action(self, action: str, args: Optional[Dict[str, Any]]) -> ActionOutcome:
        """
        Validate and run one action.

        Blocked actions and unknown action names come back as failed
        outcomes; both are recorded with the optimizer like any other.
        """
        args = args if isinstance(args, dict) else {}
        sub_goal = self._current_sub_goal()

        validation = self.optimizer.validate_action(action, args, sub_goal)
        if not validation.valid:
            logger.warning(f"[Agent] Action validation failed: {validation.reason}")
            self._trace("optimization", action=action, args=args, blocked=True,
                        reason=validation.reason, alternative=validation.alternative)
            self._emit(EventType.WARNING, warning_type="blocked",
                       message=f"Action blocked: {validation.reason}", alternative=validation.alternative)
            outcome = ActionOutcome.failure(validation.reason, alternative=validation.alternative)
            outcome.annotations.add(Annotation.VALIDATION_FAILED)
            self.optimizer.record_action(action, args, outcome.to_dict())
            self._update_task_state(action, args, outcome)
            return outcome

        self._emit(EventType.ACTION, action=action, args=args)
        self._trace("actionStart", action=action, args=args,
                    sub_goal=sub_goal.description if sub_goal else None)
        started = datetime.now()

        try:
            handler = self._handlers[ActionKind.parse(action)]
            outcome = await handler(args)
        except UnknownActionError as e:
            logger.warning(f"[Agent] {e}")
            outcome = ActionOutcome.failure(str(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[Agent] Action {action} raised: {type(e).__name__}: {e}")
            outcome = ActionOutcome.failure(str(e) or type(e).__name__)

        self.optimizer.record_action(action, args, outcome.to_dict())
        self._trace(
            "actionComplete",
            action=action,
            args=args,
            success=outcome.success,
            duration_ms=int((datetime.now() - started).total_seconds() * 1000),
        )
        self._update_task_state(action, args, outcome)
        return outcome

    def _update_task_state(self, action: str, args: Dict[str, Any], outcome: ActionOutcome) -> None:
        ts = self.state.task_state
        now = datetime.now().isoformat()
        if outcome.success:
            ts.completed_actions.append({"action": action, "args": args, "timestamp": now})
        else:
            ts.failed_actions.append({"action": action, "args": args, "error": outcome.error, "timestamp": now})

        navigated = outcome.data.get("navigate")
        if action == ActionKind.NAVIGATE.value or (action == ActionKind.CLICK.value and navigated):
            ts.page_history.append({"url": navigated or args.get("url"), "timestamp": now})

    async def _settle(self, ms: int) -> bool:
        """Sleep in poll ticks; False when a stop arrives first."""
        elapsed = 0
        while elapsed < ms:
            if self._stopped:
                return False
            await asyncio.sleep(self.poll_interval_ms / 1000)
            elapsed += self.poll_interval_ms
        return not self._stopped

    async def _current_url(self) -> str:
        result = await self.env.get_url()
        if isinstance(result, str):
            return result
        return (result or {}).get("url") or ""

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_navigate(self, url: Optional[str]) -> ActionOutcome:
        if not url:
            return ActionOutcome.failure("No URL provided")
        final_url = str(url).strip()
        if not final_url.startswith("http"):
            final_url = "https://" + final_url

        result = await self.env.navigate(final_url)
        if result is None or result.get("success") is False:
            return ActionOutcome.from_result(result)
        if not await self._settle(self.navigation_settle_ms):
            return ActionOutcome.failure(STOPPED_MESSAGE)
        return ActionOutcome(success=True, data={"message": f"Navigated to {final_url}", "navigate": final_url})

    async def _handle_navigate_action(self, args: Dict[str, Any]) -> ActionOutcome:
        url = args.get("url")
        if url:
            current = await self._current_url()
            target = str(url).strip()
            if not target.startswith("http"):
                target = "https://" + target
            if not self.optimizer.is_navigation_needed(target, current):
                logger.info(f"[Agent] Skipping navigation, already on {current}")
                return ActionOutcome(success=True, data={"message": f"Already on {current}"})
        return await self._handle_navigate(url)

    async def _handle_snapshot(self, args: Dict[str, Any]) -> ActionOutcome:
        s = self.state
        options: Dict[str, Any] = {"interactiveOnly": True}
        region = s.focused_snapshot_region
        if region and region != "full-page":
            options["focusRegion"] = region

        outcome = ActionOutcome.from_result(await self.env.snapshot(options))
        tree = outcome.data.get("tree")
        if not outcome.success or not tree:
            return outcome

        if "focusRegion" in options:
            tree = filter_snapshot_by_region(tree, region)
            outcome.data["tree"] = tree
        s.focused_snapshot_region = None
        s.current_refs = outcome.data.get("refs") or {}

        pattern = self.extractor.identify_pattern(tree, await self._current_url())
        recommendation = self.extractor.recommend_action(pattern, self._current_sub_goal())
        outcome.data["content_pattern"] = pattern.value
        outcome.data["extraction_recommendation"] = recommendation
        logger.info(f"[Agent] Content pattern: {pattern.value}, recommended {recommendation['action']}")

        if pattern == ContentPattern.SEARCH_RESULTS:
            results = self.extractor.extract_search_results(tree, 5)
            if results:
                outcome.data["extracted_search_results"] = results
                self._emit(
                    EventType.CONTENT_EXTRACTED,
                    content_type="searchResults",
                    source="page",
                    result_count=len(results),
                    results=[
                        {"title": r["title"], "snippet": r["snippet"][:100], "url": r["link"]} for r in results
                    ],
                )

        self.optimizer.cache_snapshot(self._current_sub_goal_id(), dict(outcome.data))
        return outcome

    async def _handle_click(self, args: Dict[str, Any]) -> ActionOutcome:
        ref = args.get("ref")
        outcome = ActionOutcome.from_result(await self.env.click(ref))

        ref_data = self.state.current_refs.get(ref) if isinstance(ref, str) else None
        if ref_data and ref_data.get("role") == "follow-button":
            outcome.annotations.add(Annotation.FOLLOW_CLICKED)
            outcome.data["message"] = "Follow button clicked!"

        target = outcome.data.get("navigate") if outcome.success else None
        if target:
            logger.info(f"[Agent] Click navigated to: {target}")
            nav_outcome = await self._handle_navigate(target)
            nav_outcome.annotations |= outcome.annotations
            if is_video_url(target):
                nav_outcome.annotations.add(Annotation.VIDEO_OPENED)
            elif is_user_space_url(target):
                nav_outcome.annotations.add(Annotation.USER_PAGE_OPENED)
            return nav_outcome

        if outcome.success:
            current = await self._current_url()
            if current and is_video_url(current):
                outcome.annotations.add(Annotation.VIDEO_OPENED)
        return outcome

    async def _handle_fill(self, args: Dict[str, Any]) -> ActionOutcome:
        return ActionOutcome.from_result(await self.env.fill(args.get("ref"), args.get("text", "")))

    async def _handle_search(self, args: Dict[str, Any]) -> ActionOutcome:
        outcome = ActionOutcome.from_result(await self.env.search(args.get("text") or args.get("query")))
        if outcome.success and not await self._settle(self.search_settle_ms):
            return ActionOutcome.failure(STOPPED_MESSAGE)
        if outcome.success and outcome.data.get("navigate"):
            return await self._handle_navigate(outcome.data["navigate"])
        return outcome

    async def _handle_scroll(self, args: Dict[str, Any]) -> ActionOutcome:
        return ActionOutcome.from_result(await self.env.scroll(args.get("direction") or "down"))

    async def _handle_wait(self, args: Dict[str, Any]) -> ActionOutcome:
        try:
            wait_ms = int(args.get("ms") or 1000)
        except (TypeError, ValueError):
            wait_ms = 1000
        if not await self._settle(wait_ms):
            return ActionOutcome.failure(STOPPED_MESSAGE)
        return ActionOutcome(success=True, data={"message": f"Waited {wait_ms}ms"})

    async def _handle_get_text(self, args: Dict[str, Any]) -> ActionOutcome:
        ref = args.get("ref")
        outcome = ActionOutcome.from_result(await self.env.get_text(ref))
        text = outcome.data.get("text")
        if not text:
            return outcome

        self._emit(
            EventType.CONTENT_EXTRACTED,
            content_type="text",
            source=f"element {ref}",
            content=text[:CONTENT_PREVIEW_CHARS],
            full_length=len(text),
        )
        if len(text) > SUMMARY_THRESHOLD:
            outcome.data["original_text"] = text
            outcome.data["text"] = self.extractor.summarize(text, SUMMARY_THRESHOLD)
            outcome.data["original_length"] = len(text)
            outcome.annotations.add(Annotation.SUMMARIZED)
            logger.info(f"[Agent] Content summarized: {len(text)} -> {len(outcome.data['text'])} chars")
        return outcome

    async def _handle_get_markdown(self, args: Dict[str, Any]) -> ActionOutcome:
        outcome = ActionOutcome.from_result(await self.env.get_markdown())
        markdown = outcome.data.get("markdown")
        if not markdown:
            return outcome

        self._emit(
            EventType.CONTENT_EXTRACTED,
            content_type="markdown",
            source="page",
            content=markdown[:CONTENT_PREVIEW_CHARS],
            full_length=len(markdown),
        )

        pattern = self.extractor.identify_pattern(markdown, await self._current_url())
        if pattern == ContentPattern.ARTICLE_CONTENT:
            outcome.data["extracted_article"] = self.extractor.extract_article(markdown)
        elif pattern == ContentPattern.POST_CONTENT:
            outcome.data["extracted_post"] = self.extractor.extract_post(markdown)

        if len(markdown) > SUMMARY_THRESHOLD:
            outcome.data["original_markdown"] = markdown
            outcome.data["markdown"] = self.extractor.summarize(markdown, SUMMARY_THRESHOLD)
            outcome.data["original_length"] = len(markdown)
            outcome.annotations.add(Annotation.SUMMARIZED)
            logger.info(f"[Agent] Markdown summarized: {len(markdown)} -> {len(outcome.data['markdown'])} chars")

        outcome.data["content_pattern"] = pattern.value
        return outcome

    async def _handle_get_url(self, args: Dict[str, Any]) -> ActionOutcome:
        return ActionOutcome.from_result(await self.env.get_url())

    async def _handle_get_title(self, args: Dict[str, Any]) -> ActionOutcome:
        return ActionOutcome.from_result(await self.env.get_title())

    async def _handle_ask_user(self, args: Dict[str, Any]) -> ActionOutcome:
        question = str(args.get("question") or "")
        self._emit(EventType.ASK_USER, question=question)
        if self.ask_user is None:
            return ActionOutcome.failure("No user is available to answer questions")
        answer = await self.ask_user(question)
        return ActionOutcome(success=True, data={"user_answer": answer, "message": f"User answered: {answer}"})

    async def _handle_extract_multiple_items(self, args: Dict[str, Any]) -> ActionOutcome:
        snapshot = await self.env.snapshot({"interactiveOnly": True})
        if not snapshot or not snapshot.get("tree"):
            return ActionOutcome.failure("Failed to get page snapshot")

        item_type = args.get("itemType") or args.get("type") or "results"
        try:
            count = int(args.get("count") or args.get("number") or 5)
        except (TypeError, ValueError):
            count = 5

        items = self.extractor.extract_multiple_items(snapshot["tree"], item_type, count)
        if items:
            self._emit(
                EventType.CONTENT_EXTRACTED,
                content_type="multipleItems",
                source="page",
                item_count=len(items),
                item_type=item_type,
                items=[
                    {"ref": item.get("ref"), "preview": (item.get("title") or item.get("body") or "")[:100]}
                    for item in items
                ],
            )
        logger.info(f"[Agent] Batch extracted {len(items)} {item_type}")
        return ActionOutcome(
            success=True,
            data={"items": items, "count": len(items), "item_type": item_type,
                  "message": f"Extracted {len(items)} {item_type}"},
        )

    async def _handle_generate_document(self, args: Dict[str, Any]) -> ActionOutcome:
        data = args.get("data") or args.get("content") or []
        doc_type = args.get("type") or "excel"
        filename = args.get("filename") or ("export.csv" if doc_type == "excel" else "document.html")
        return ActionOutcome.from_result(await self.env.generate_document(data, doc_type, filename))

    async def _handle_finished(self, args: Dict[str, Any]) -> ActionOutcome:
        payload = args.get("result") or args.get("content") or args
        if isinstance(payload, (dict, list)):
            payload = json.dumps(payload, indent=2, ensure_ascii=False)
        return ActionOutcome(success=True, data={"result": payload})
