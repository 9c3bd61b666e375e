"""
Task planner for the browser agent.

Analyzes a natural-language task and produces a Plan:
- category (navigation, search, content_extraction, interaction, composite)
- 0-5 sub-goals for multi-step tasks
- a step budget (30, 50 or 80) spread across the sub-goals
- an advisory heuristic for recognised task patterns

Everything here is keyword matching over lowercased text. Keyword lists are
part of the behaviour and are pinned by tests.
"""

import re
from typing import List, Optional

from .models.schemas import (
    Heuristic,
    Plan,
    SubGoal,
    SubGoalType,
    TaskCategory,
    TaskPattern,
)
from .utils.logger import get_logger


logger = get_logger(__name__)


# ============================================================================
# Keyword sets
# ============================================================================

NAVIGATION_KEYWORDS = ["open", "go to", "visit", "navigate to", "navigate"]
SEARCH_KEYWORDS = ["search", "find", "look for", "search for"]
EXTRACTION_KEYWORDS = ["tell me", "what is", "extract", "get the", "show me", "find out"]
INTERACTION_KEYWORDS = ["click", "fill", "submit", "select", "type", "enter"]

SEQUENCE_KEYWORDS = ["then", "after", "next", "followed by"]
MULTI_STEP_EXTRACTION_KEYWORDS = ["tell me", "what is", "find out", "show me", "extract", "get the"]
ACTION_VERBS = ["search", "find", "open", "click", "navigate", "go to", "extract", "get", "tell", "show"]

# Decomposition strategy keywords
SE_SEARCH_KEYWORDS = ["search", "find", "look for"]
SE_EXTRACT_KEYWORDS = ["tell me", "show me", "show", "extract", "get the", "what is", "about"]
NI_NAV_KEYWORDS = ["open", "go to", "visit", "navigate"]
NI_INTERACT_KEYWORDS = ["click", "fill", "submit", "select", "type"]

MAX_SUB_GOALS = 5
DEFAULT_BUDGET = 30

_SEQUENCE_SPLIT = re.compile(r"\s+(?:then|after|next|followed by)\s+", re.IGNORECASE)
_QUOTED = re.compile(r"[\"'](.*?)[\"']")
_SEARCH_PHRASE = re.compile(r"(?:search|find|look)\s+(?:for\s+)?(.+?)(?:\s+and\s+|$)", re.IGNORECASE)
_ENGINE_PREFIX = re.compile(r"^(?:baidu|google|bing|yahoo)\s+(?:for\s+)?", re.IGNORECASE)
_COUNT_TARGET = re.compile(r"(?:first|top)\s+(\w+)", re.IGNORECASE)
_TYPE_TARGET = re.compile(r"(posts?|results?|articles?|items?)", re.IGNORECASE)
_NAV_TARGET = re.compile(r"(?:open|go to|visit|navigate to)\s+(.+?)(?:\s+and\s+|$)", re.IGNORECASE)
_INTERACT_TARGET = re.compile(
    r"(?:click|fill|submit|select|type)\s+(?:the\s+)?(.+?)(?:\s+and\s+|$)", re.IGNORECASE
)
_MULTIPLE_ITEMS = re.compile(
    r"(?:first|top|all)\s+(?:\d+|two|three|four|five|several|multiple)", re.IGNORECASE
)
_EXTRACTION_HINT = re.compile(r"tell me|show me|extract|get the|what is|about", re.IGNORECASE)
_INTERACTION_HINT = re.compile(r"click|fill|submit|select|type", re.IGNORECASE)


# ============================================================================
# Heuristics table
# ============================================================================

HEURISTICS = {
    TaskPattern.SIMPLE_SEARCH: Heuristic(
        name="Simple Search",
        description="Execute a search query and verify results appear",
        steps=[
            "Execute search() action with the query",
            "Wait 2 seconds for results to load",
            "Take snapshot to verify results appeared",
            "Call finished() with success",
        ],
        guidance=(
            "For simple searches, avoid over-verification. Execute search, wait briefly, "
            "verify results loaded, and finish."
        ),
        estimated_steps=3,
    ),
    TaskPattern.SEARCH_AND_EXTRACT: Heuristic(
        name="Search and Extract",
        description="Search for content and extract information from results",
        steps=[
            "Execute search() action with the query",
            "Wait 2 seconds for results to load",
            "Take ONE snapshot to see result structure",
            "Extract content using getText() or getMarkdown() on specific elements",
            "Call finished() with extracted content",
        ],
        guidance=(
            "After search succeeds, take a single snapshot to identify result elements. "
            "Then extract content from specific refs. Avoid multiple snapshots - extract all "
            "needed content in one pass."
        ),
        estimated_steps=5,
        tips=[
            "Use getText(ref) for titles and snippets",
            "Use getMarkdown() for full article content",
            "Extract multiple items from one snapshot when possible",
            "Don't call snapshot() multiple times - reuse the first one",
        ],
    ),
    TaskPattern.NAVIGATION: Heuristic(
        name="Navigation",
        description="Navigate to a website and verify page loaded",
        steps=[
            "Execute navigate() action with target URL",
            "Wait 2 seconds for page to load",
            "Optionally verify page title or key element",
            "Call finished() with success",
        ],
        guidance=(
            "Navigation tasks are straightforward. Navigate to URL, wait for load, optionally "
            "verify you're on the right page, then finish. Don't over-verify."
        ),
        estimated_steps=3,
        tips=[
            "Use navigate() for direct URL navigation",
            "Wait 2 seconds after navigation before verification",
            "Verify using page title or key element presence",
            "Don't take multiple snapshots unless verification fails",
        ],
    ),
    TaskPattern.MULTI_PAGE_EXTRACTION: Heuristic(
        name="Multi-Page Extraction",
        description="Extract content from multiple pages or items",
        steps=[
            "Navigate to first page or search results",
            "Take snapshot to identify items",
            "Extract content from first N items using getText() or getMarkdown()",
            "If items span multiple pages, navigate to next page and repeat",
            "Call finished() with all extracted content",
        ],
        guidance=(
            "For multi-item extraction, identify all items in one snapshot when possible. "
            "Extract content efficiently using targeted getText() calls. Only navigate to "
            "additional pages if items aren't all visible."
        ),
        estimated_steps=7,
        tips=[
            "Try to extract all items from one page/snapshot",
            "Use getText() for structured data (titles, snippets)",
            "Use getMarkdown() for full content",
            "Track which items you've extracted to avoid duplicates",
            "Summarize long content to stay within token limits",
        ],
    ),
    TaskPattern.INTERACTION: Heuristic(
        name="Interaction",
        description="Find and interact with page elements",
        steps=[
            "Take snapshot to identify target element",
            "Identify element ref from snapshot",
            "Execute click() or fill() action on element",
            "Wait 1 second for action to complete",
            "Optionally verify action succeeded",
            "Call finished() with result",
        ],
        guidance=(
            "For interaction tasks, take one snapshot to find the element, execute the action, "
            "wait briefly, and finish. Avoid excessive verification unless the action is critical."
        ),
        estimated_steps=4,
        tips=[
            "Use snapshot() to find interactive elements",
            "Look for buttons, links, inputs with clear labels",
            "Use click(ref) for buttons and links",
            "Use fill(ref, text) for input fields",
            "Wait 1-2 seconds after interaction before verification",
        ],
    ),
}


def _contains_any(text: str, keywords: List[str]) -> bool:
    return any(keyword in text for keyword in keywords)


# ============================================================================
# TaskPlanner
# ============================================================================

class TaskPlanner:
    """
    Decomposes a task into sub-goals and allocates a step budget.

    Stateless: every method is a pure function of its arguments, so one
    planner may be shared between agents.
    """

    def analyze_task(self, task: str) -> Plan:
        """
        Analyze a task and build its execution plan.

        Args:
            task: Natural-language task description

        Returns:
            Plan with category, sub-goals, step budget, pattern and heuristic.
            Malformed input yields the default composite plan with budget 30.
        """
        if not isinstance(task, str) or not task.strip():
            logger.warning(f"[Planner] Unusable task {task!r}, using default plan")
            return Plan(category=TaskCategory.COMPOSITE, sub_goals=[], step_budget=DEFAULT_BUDGET)

        try:
            category = self.classify_task(task)
            multi = self.is_multi_step(task)
            sub_goals = self.generate_sub_goals(task, category) if multi else []
            step_budget = self.calculate_step_budget(sub_goals)
            pattern = self.identify_task_pattern(task, category, sub_goals)
            heuristic = self.get_heuristic_for_pattern(pattern)
        except Exception as e:
            logger.error(f"[Planner] Analysis failed, using default plan: {e}", exc_info=True)
            return Plan(category=TaskCategory.COMPOSITE, sub_goals=[], step_budget=DEFAULT_BUDGET)

        logger.info(
            f"[Planner] category={category.value} multi_step={multi} "
            f"sub_goals={len(sub_goals)} budget={step_budget} "
            f"pattern={pattern.value if pattern else None}"
        )
        return Plan(
            category=category,
            sub_goals=sub_goals,
            step_budget=step_budget,
            pattern=pattern,
            heuristic=heuristic,
        )

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def is_multi_step(self, task: str) -> bool:
        """True for sequence connectives, extraction plus a verb, or two distinct verbs."""
        if not isinstance(task, str):
            return False
        lower = task.lower()

        has_sequence = _contains_any(lower, SEQUENCE_KEYWORDS)
        has_extraction = _contains_any(lower, MULTI_STEP_EXTRACTION_KEYWORDS)
        verb_matches = [verb for verb in ACTION_VERBS if verb in lower]

        return has_sequence or (has_extraction and len(verb_matches) >= 1) or len(verb_matches) >= 2

    def classify_task(self, task: str) -> TaskCategory:
        """Single matching keyword family wins; zero or several give composite."""
        if not isinstance(task, str):
            return TaskCategory.COMPOSITE
        lower = task.lower()

        matches = [
            (TaskCategory.NAVIGATION, _contains_any(lower, NAVIGATION_KEYWORDS)),
            (TaskCategory.SEARCH, _contains_any(lower, SEARCH_KEYWORDS)),
            (TaskCategory.CONTENT_EXTRACTION, _contains_any(lower, EXTRACTION_KEYWORDS)),
            (TaskCategory.INTERACTION, _contains_any(lower, INTERACTION_KEYWORDS)),
        ]
        hits = [category for category, matched in matches if matched]
        if len(hits) == 1:
            return hits[0]
        return TaskCategory.COMPOSITE

    # ------------------------------------------------------------------
    # Decomposition
    # ------------------------------------------------------------------

    def generate_sub_goals(self, task: str, category: TaskCategory) -> List[SubGoal]:
        """
        Decompose a multi-step task.

        Strategies are tried in order: search-and-extract, navigate-and-interact,
        sequence, then a generic conjunction split.

        Args:
            task: Task description
            category: Category from classify_task

        Returns:
            List of 2-5 sub-goals (empty for unusable input)
        """
        if not isinstance(task, str) or not task.strip():
            return []
        lower = task.lower()

        if self._is_search_and_extract(lower):
            query = self._extract_search_query(task)
            target = self._extract_content_target(task)
            return [
                SubGoal(
                    id=1,
                    description=f'Search for "{query}"',
                    type=SubGoalType.SEARCH,
                    completion_criteria="Search results page loaded",
                    estimated_steps=3,
                ),
                SubGoal(
                    id=2,
                    description=f"Extract content from {target}",
                    type=SubGoalType.CONTENT_EXTRACTION,
                    completion_criteria=f"Content from {target} extracted",
                    estimated_steps=5,
                ),
            ]

        if self._is_navigate_and_interact(lower):
            site = self._extract_navigation_target(task)
            target = self._extract_interaction_target(task)
            return [
                SubGoal(
                    id=1,
                    description=f"Navigate to {site}",
                    type=SubGoalType.NAVIGATION,
                    completion_criteria="Page loaded successfully",
                    estimated_steps=2,
                ),
                SubGoal(
                    id=2,
                    description=f"Interact with {target}",
                    type=SubGoalType.INTERACTION,
                    completion_criteria="Interaction completed",
                    estimated_steps=3,
                ),
            ]

        if _contains_any(lower, SEQUENCE_KEYWORDS):
            parts = [part.strip() for part in _SEQUENCE_SPLIT.split(task) if part.strip()]
            if len(parts) >= 2:
                return [
                    SubGoal(
                        id=index + 1,
                        description=part,
                        type=self._infer_component_type(part),
                        completion_criteria=f"Step {index + 1} completed",
                        estimated_steps=3,
                    )
                    for index, part in enumerate(parts[:MAX_SUB_GOALS])
                ]

        components = self._split_task_components(task)
        sub_goals = [
            SubGoal(
                id=index + 1,
                description=component,
                type=self._infer_component_type(component),
                completion_criteria="Step completed",
                estimated_steps=3,
            )
            for index, component in enumerate(components[:MAX_SUB_GOALS])
        ]
        if len(sub_goals) >= 2:
            return sub_goals

        # Could not decompose, fall back to two generic halves
        return [
            SubGoal(
                id=1,
                description="Complete first part of task",
                type=category,
                completion_criteria="First part completed",
                estimated_steps=4,
            ),
            SubGoal(
                id=2,
                description="Complete second part of task",
                type=category,
                completion_criteria="Second part completed",
                estimated_steps=4,
            ),
        ]

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    def calculate_step_budget(self, sub_goals: List[SubGoal]) -> int:
        """
        Map sub-goal count to a step budget and spread it across sub-goals.

        0-1 sub-goals give 30, 2-3 give 50, 4-5 give 80, anything else 50.
        Each sub-goal's estimated_steps is rewritten in place to its share:
        floored, except the last which takes the remainder. Every share is
        at least 1.

        Args:
            sub_goals: Sub-goals to rebalance

        Returns:
            Total step budget
        """
        if not sub_goals or len(sub_goals) <= 1:
            return DEFAULT_BUDGET

        count = len(sub_goals)
        if 2 <= count <= 3:
            budget = 50
        elif 4 <= count <= 5:
            budget = 80
        else:
            budget = 50

        weights = [sg.estimated_steps or 3 for sg in sub_goals]
        total_weight = sum(weights)
        if total_weight <= 0:
            return budget

        allocated = 0
        for index, sub_goal in enumerate(sub_goals):
            if index == count - 1:
                share = budget - allocated
            else:
                share = (budget * weights[index]) // total_weight
                allocated += share
            sub_goal.estimated_steps = max(1, share)

        return budget

    # ------------------------------------------------------------------
    # Patterns and heuristics
    # ------------------------------------------------------------------

    def identify_task_pattern(
        self,
        task: str,
        category: TaskCategory,
        sub_goals: List[SubGoal],
    ) -> Optional[TaskPattern]:
        """Classify the task shape independently of its category."""
        if not isinstance(task, str):
            return None
        lower = task.lower()

        if category == TaskCategory.SEARCH and len(sub_goals) <= 1:
            return TaskPattern.SIMPLE_SEARCH
        if self._is_search_and_extract(lower):
            return TaskPattern.SEARCH_AND_EXTRACT
        if category == TaskCategory.NAVIGATION or self._is_navigate_and_interact(lower):
            return TaskPattern.NAVIGATION
        if _MULTIPLE_ITEMS.search(lower) and _EXTRACTION_HINT.search(lower):
            return TaskPattern.MULTI_PAGE_EXTRACTION
        if category == TaskCategory.INTERACTION or _INTERACTION_HINT.search(lower):
            return TaskPattern.INTERACTION
        return None

    def get_heuristic_for_pattern(self, pattern: Optional[TaskPattern]) -> Optional[Heuristic]:
        """Return a copy of the advisory record for a pattern, or None."""
        if pattern is None:
            return None
        heuristic = HEURISTICS.get(TaskPattern(pattern))
        return heuristic.model_copy(deep=True) if heuristic else None

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_search_and_extract(lower: str) -> bool:
        return _contains_any(lower, SE_SEARCH_KEYWORDS) and _contains_any(lower, SE_EXTRACT_KEYWORDS)

    @staticmethod
    def _is_navigate_and_interact(lower: str) -> bool:
        return _contains_any(lower, NI_NAV_KEYWORDS) and _contains_any(lower, NI_INTERACT_KEYWORDS)

    @staticmethod
    def _extract_search_query(task: str) -> str:
        quoted = _QUOTED.search(task)
        if quoted:
            return quoted.group(1)

        phrase = _SEARCH_PHRASE.search(task)
        if phrase:
            query = _ENGINE_PREFIX.sub("", phrase.group(1).strip())
            if query:
                return query

        return "specified query"

    @staticmethod
    def _extract_content_target(task: str) -> str:
        count = _COUNT_TARGET.search(task)
        if count:
            return f"first {count.group(1)} results"
        kind = _TYPE_TARGET.search(task)
        if kind:
            return kind.group(1)
        return "content"

    @staticmethod
    def _extract_navigation_target(task: str) -> str:
        match = _NAV_TARGET.search(task)
        if match and match.group(1).strip():
            return match.group(1).strip()
        return "target site"

    @staticmethod
    def _extract_interaction_target(task: str) -> str:
        match = _INTERACT_TARGET.search(task)
        if match and match.group(1).strip():
            return match.group(1).strip()
        return "target element"

    @staticmethod
    def _split_task_components(task: str) -> List[str]:
        """Split on ' and ' outside quotes; fall back to commas."""
        parts: List[str] = []
        current: List[str] = []
        in_quotes = False
        i = 0
        while i < len(task):
            char = task[i]
            if char in ("\"", "'"):
                in_quotes = not in_quotes
                current.append(char)
            elif not in_quotes and task[i:i + 5].lower() == " and ":
                segment = "".join(current).strip()
                if segment:
                    parts.append(segment)
                current = []
                i += 4
            else:
                current.append(char)
            i += 1

        tail = "".join(current).strip()
        if tail:
            parts.append(tail)

        if len(parts) == 1:
            return [part.strip() for part in task.split(",") if part.strip()]
        return parts

    @staticmethod
    def _infer_component_type(component: str) -> SubGoalType:
        lower = component.lower()
        if re.search(r"search|find|look for", lower):
            return SubGoalType.SEARCH
        if re.search(r"open|go to|visit|navigate", lower):
            return SubGoalType.NAVIGATION
        if re.search(r"tell me|show me|extract|get the", lower):
            return SubGoalType.CONTENT_EXTRACTION
        if re.search(r"click|fill|submit|select|type", lower):
            return SubGoalType.INTERACTION
        return SubGoalType.COMPOSITE
