"""
Hierarchical goals - a meta-controller over low-level action selection.

Each agent has at most one active goal. Goals are evaluated on a coarse
cadence: a goal whose success predicate holds is completed (and pays a bonus),
one that outlives its duration times out, and critical needs force an
emergency goal that abandons the current one. The active goal steers the
policy through a per-action multiplier vector; the policy itself is untouched.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional

import numpy as np

from world.actions import ActionCatalog
from world.snapshot import GoalContext, ObservationSnapshot, PsychState, TOOL_KINDS
from village_ai.config import GoalConfig

logger = logging.getLogger(__name__)

SuccessPredicate = Callable[[ObservationSnapshot, ObservationSnapshot], bool]


class GoalStatus(Enum):
    SELECTING = "selecting"
    ACTIVE = "active"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    ABANDONED = "abandoned"


@dataclass(frozen=True)
class GoalDefinition:
    key: str
    name: str
    description: str
    duration: float                      # seconds
    action_bias: Dict[str, float]
    needs_priority: Dict[str, float]     # negative weight inverts urgency
    success: SuccessPredicate


@dataclass
class ActiveGoal:
    definition: GoalDefinition
    start_time: float
    start_snapshot: ObservationSnapshot
    status: GoalStatus = GoalStatus.ACTIVE
    score: float = 0.0

    @property
    def key(self) -> str:
        return self.definition.key

    def elapsed(self, now: float) -> float:
        return max(0.0, now - self.start_time)


@dataclass
class GoalUpdate:
    """Result of one evaluation that changed the active goal."""
    current: ActiveGoal
    previous: Optional[ActiveGoal] = None
    outcome: Optional[GoalStatus] = None
    bonus: float = 0.0


@dataclass
class GoalRecord:
    key: str
    outcome: GoalStatus
    elapsed: float


# --- Success predicates (start snapshot vs. current snapshot) ---------------

def _explored_new_chunks(start, curr):
    return curr.exploration.explored_chunks - start.exploration.explored_chunks >= 2


def _gathered_items(start, curr):
    return curr.inventory_size - start.inventory_size >= 5


def _placed_blocks(start, curr):
    return curr.stats.blocks_placed - start.stats.blocks_placed >= 10


def _cooperated(start, curr):
    return curr.stats.cooperation_events - start.stats.cooperation_events >= 1


def _defended(start, curr):
    killed = curr.stats.mobs_killed - start.stats.mobs_killed
    return killed >= 1 or curr.vitals.health > start.vitals.health


def _recovered(start, curr):
    return (curr.vitals.health > start.vitals.health or
            curr.vitals.food - start.vitals.food > 2)


def _crafted_tool(start, curr):
    return any(curr.has_tool(kind) and not start.has_tool(kind) for kind in TOOL_KINDS)


DEFAULT_GOALS: Dict[str, GoalDefinition] = {
    'EXPLORE': GoalDefinition(
        'EXPLORE', 'explore', 'Discover new areas and resources', 120.0,
        {'random_walk': 2.0, 'go_underground': 2.5, 'surface_explore': 2.0,
         'mine_nearest_ore': 1.5, 'seek_adventure': 1.5},
        {'exploration': 2.0, 'curiosity': 1.5, 'boredom': 1.8},
        _explored_new_chunks),
    'GATHER_RESOURCES': GoalDefinition(
        'GATHER_RESOURCES', 'gather_resources', 'Collect materials and items', 180.0,
        {'mine_nearest_ore': 2.5, 'mine_stone': 2.0, 'chop_nearest_tree': 2.0,
         'collect_nearest_item': 2.5, 'attack_nearest': 1.8, 'gather_food': 2.0},
        {'achievement': 2.0, 'hunger': 1.5, 'motivation': 1.7},
        _gathered_items),
    'BUILD_SHELTER': GoalDefinition(
        'BUILD_SHELTER', 'build_shelter', 'Construct protective structures', 240.0,
        {'build_shelter_structure': 3.0, 'place_block': 2.5, 'build_wall': 2.5,
         'build_floor': 2.0, 'find_shelter': 2.0, 'craft_tools': 1.8},
        {'comfort': 2.5, 'safety': 2.0, 'creativity': 1.8},
        _placed_blocks),
    'SOCIALIZE': GoalDefinition(
        'SOCIALIZE', 'socialize', 'Interact with other agents', 150.0,
        {'follow_agent': 2.5, 'gather_near_agents': 2.5, 'coordinate_mining': 2.0,
         'defend_ally': 2.0, 'share_resources': 2.0, 'random_walk': 1.5},
        {'social': 2.5, 'loneliness': 2.0, 'cooperation': 2.2},
        _cooperated),
    'DEFEND': GoalDefinition(
        'DEFEND', 'defend', 'Fight hostile mobs and protect allies', 90.0,
        {'attack_nearest': 2.5, 'fight_zombie': 2.5, 'fight_skeleton': 2.5,
         'fight_creeper': 2.5, 'defend_ally': 3.0, 'retreat': 2.0},
        {'safety': 3.0, 'stress': -1.5, 'fear': -1.5},
        _defended),
    'REST': GoalDefinition(
        'REST', 'rest', 'Recover and plan next actions', 60.0,
        {'idle': 2.0, 'look_around': 1.8, 'eat_food': 2.5, 'craft_tools': 1.5},
        {'rest': 2.5, 'energy': 2.0, 'hunger': 1.8},
        _recovered),
    'CRAFT_TOOLS': GoalDefinition(
        'CRAFT_TOOLS', 'craft_tools', 'Create tools and equipment', 120.0,
        {'craft_tools': 3.0, 'craft_weapons': 2.5, 'equip_best_tool': 2.5,
         'place_crafting_table': 2.5, 'smelt_ores': 2.0},
        {'achievement': 2.2, 'creativity': 2.0, 'motivation': 1.8},
        _crafted_tool),
}


class GoalManager:
    """Per-agent goal state machine."""

    def __init__(self, catalog: ActionCatalog, config: Optional[GoalConfig] = None,
                 rng: Optional[np.random.Generator] = None,
                 goals: Optional[Dict[str, GoalDefinition]] = None):
        self.catalog = catalog
        self.config = config or GoalConfig()
        self.rng = rng if rng is not None else np.random.default_rng()
        self.goals = dict(goals or DEFAULT_GOALS)

        for goal in self.goals.values():
            for action in goal.action_bias:
                if catalog.find(action) is None:
                    raise ValueError(f"goal {goal.key} biases unknown action {action!r}")

        self._active: Dict[str, ActiveGoal] = {}
        self._last_evaluated: Dict[str, float] = {}
        self._history: Dict[str, List[GoalRecord]] = {}
        self._lock = threading.Lock()

        logger.info(f"Goal system initialized with {len(self.goals)} goals")

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    @staticmethod
    def _need_value(psyche: Optional[PsychState], name: str) -> float:
        if psyche is None:
            return 0.5
        value = psyche.value(name)
        return 0.5 if value is None else value

    def score_goals(self, psyche: Optional[PsychState], jitter: bool = True) -> Dict[str, float]:
        """score = 1 + sum((1 - need) * weight) (+ jitter)."""
        scores = {}
        for key, goal in self.goals.items():
            score = 1.0
            for need, weight in goal.needs_priority.items():
                score += (1.0 - self._need_value(psyche, need)) * weight
            if jitter:
                score += float(self.rng.random()) * self.config.selection_jitter
            scores[key] = score
        return scores

    def emergency_goal(self, psyche: Optional[PsychState]) -> Optional[str]:
        """Goal forced by a critical need, if any (safety, then hunger, then rest)."""
        if psyche is None:
            return None
        needs = psyche.needs
        if needs.safety < self.config.safety_threshold and 'DEFEND' in self.goals:
            return 'DEFEND'
        if needs.hunger < self.config.hunger_threshold and 'GATHER_RESOURCES' in self.goals:
            return 'GATHER_RESOURCES'
        if needs.rest < self.config.rest_threshold and 'REST' in self.goals:
            return 'REST'
        return None

    def _start(self, agent_id: str, key: str, snapshot: ObservationSnapshot,
               now: float, score: float = 0.0) -> ActiveGoal:
        goal = ActiveGoal(self.goals[key], now, snapshot, GoalStatus.ACTIVE, score)
        self._active[agent_id] = goal
        return goal

    def select_goal(self, agent_id: str, snapshot: ObservationSnapshot,
                    now: Optional[float] = None) -> ActiveGoal:
        """Start the highest-scoring goal for the agent's current needs."""
        now = snapshot.timestamp if now is None else now
        scores = self.score_goals(snapshot.psyche)
        best = max(scores, key=scores.get)
        with self._lock:
            goal = self._start(agent_id, best, snapshot, now, scores[best])
        logger.debug(f"{agent_id} selected goal {goal.definition.name} (score {scores[best]:.2f})")
        return goal

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def should_evaluate(self, agent_id: str, now: float) -> bool:
        last = self._last_evaluated.get(agent_id)
        if last is None or agent_id not in self._active:
            return True
        return now - last >= self.config.evaluation_interval

    def _record(self, agent_id: str, goal: ActiveGoal, outcome: GoalStatus, now: float):
        goal.status = outcome
        self._history.setdefault(agent_id, []).append(
            GoalRecord(goal.key, outcome, goal.elapsed(now)))

    def update(self, agent_id: str, snapshot: ObservationSnapshot,
               now: Optional[float] = None) -> Optional[GoalUpdate]:
        """
        Evaluate the agent's goal. Returns a GoalUpdate when the active goal
        changed, otherwise None.
        """
        now = snapshot.timestamp if now is None else now
        self._last_evaluated[agent_id] = now
        current = self._active.get(agent_id)
        emergency = self.emergency_goal(snapshot.psyche)

        if current is None:
            if emergency is not None:
                with self._lock:
                    goal = self._start(agent_id, emergency, snapshot, now)
                return GoalUpdate(goal)
            return GoalUpdate(self.select_goal(agent_id, snapshot, now))

        if current.definition.success(current.start_snapshot, snapshot):
            with self._lock:
                self._record(agent_id, current, GoalStatus.COMPLETED, now)
            logger.info(f"{agent_id} completed goal {current.definition.name}")
            goal = self.select_goal(agent_id, snapshot, now)
            return GoalUpdate(goal, current, GoalStatus.COMPLETED, self.config.completion_bonus)

        if current.elapsed(now) > current.definition.duration:
            with self._lock:
                self._record(agent_id, current, GoalStatus.TIMED_OUT, now)
            logger.info(f"{agent_id} timed out on goal {current.definition.name}")
            return GoalUpdate(self.select_goal(agent_id, snapshot, now), current,
                              GoalStatus.TIMED_OUT)

        if emergency is not None and current.key != emergency:
            with self._lock:
                self._record(agent_id, current, GoalStatus.ABANDONED, now)
                goal = self._start(agent_id, emergency, snapshot, now)
            logger.info(f"{agent_id} abandoning {current.definition.name} "
                        f"for {goal.definition.name}")
            return GoalUpdate(goal, current, GoalStatus.ABANDONED)

        return None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current(self, agent_id: str) -> Optional[ActiveGoal]:
        return self._active.get(agent_id)

    def action_bias_vector(self, agent_id: str) -> np.ndarray:
        """1.0 everywhere, overwritten by the active goal's multipliers."""
        bias = np.ones(self.catalog.count(), dtype=np.float32)
        goal = self._active.get(agent_id)
        if goal is None:
            return bias
        for action, multiplier in goal.definition.action_bias.items():
            bias[self.catalog.index_of(action)] = multiplier
        return bias

    def progress(self, agent_id: str, snapshot: ObservationSnapshot,
                 now: Optional[float] = None) -> float:
        """Fraction of the duration used, or 1.0 once the predicate holds."""
        goal = self._active.get(agent_id)
        if goal is None:
            return 0.0
        now = snapshot.timestamp if now is None else now
        if goal.definition.success(goal.start_snapshot, snapshot):
            return 1.0
        return min(1.0, goal.elapsed(now) / goal.definition.duration)

    def goal_context(self, agent_id: str, snapshot: ObservationSnapshot,
                     now: Optional[float] = None) -> Optional[GoalContext]:
        goal = self._active.get(agent_id)
        if goal is None:
            return None
        now = snapshot.timestamp if now is None else now
        elapsed = min(1.0, goal.elapsed(now) / goal.definition.duration)
        return GoalContext(goal.key, self.progress(agent_id, snapshot, now), elapsed)

    def goal_stats(self, agent_id: str, snapshot: ObservationSnapshot,
                   now: Optional[float] = None) -> Optional[Dict]:
        goal = self._active.get(agent_id)
        if goal is None:
            return None
        now = snapshot.timestamp if now is None else now
        return {
            'name': goal.definition.name,
            'description': goal.definition.description,
            'progress': self.progress(agent_id, snapshot, now),
            'time_elapsed': goal.elapsed(now),
            'duration': goal.definition.duration,
            'status': goal.status.value,
        }

    def history(self, agent_id: str) -> List[GoalRecord]:
        return list(self._history.get(agent_id, []))

    def forget(self, agent_id: str):
        with self._lock:
            self._active.pop(agent_id, None)
            self._last_evaluated.pop(agent_id, None)
            self._history.pop(agent_id, None)
