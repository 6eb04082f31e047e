"""
Reward Function - dense, additive reward shaped by psychological state.

Components (each its own term in the breakdown):
- Survival: +0.1 per survived step, capped at 10 (x1.5 when unsafe)
- Vitals: damage x2.0 (x0.7 under high stress), healing x1.5, food x1.5
- Progress: inventory growth, first tool of each kind, skill level-ups
- Exploration: movement, new chunks, boredom penalty, observation diversity
- Social: clustering near peers, bonded peers, cooperative build/mine/defend
- Opportunistic: comfort under a roof, creative actions, resting
- Status: memory balance, moodle penalties, healthy bonus, stuck penalty

Base values are capped first, then need and mood multipliers are applied.
Every term that lacks its optional context contributes 0.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

from world.actions import BUILDING_ACTIONS, COMBAT_ACTIONS, CREATIVE_ACTIONS, MINING_ACTIONS
from world.snapshot import ObservationSnapshot, PsychState, TOOL_KINDS
from village_ai.config import RewardConfig

# (threshold, penalty per severity level)
MOODLE_PENALTIES = {
    'injured': (3, -1.5),
    'bleeding': (2, -2.0),
    'poisoned': (2, -1.8),
    'sick': (3, -1.2),
    'panicked': (3, -1.0),
    'depressed': (4, -0.8),
    'cold': (3, -0.6),
    'hot': (3, -0.6),
}

TERM_NAMES = (
    'survival', 'damage', 'heal', 'eat', 'starving', 'pickup', 'tools',
    'move', 'discovery', 'interaction', 'cluster', 'bonded', 'build_together',
    'mine_together', 'defend_ally', 'boredom', 'diversity', 'comfort',
    'creativity', 'rest', 'memory', 'skill_up', 'moodles', 'healthy', 'stuck',
)


@dataclass
class RewardBreakdown:
    total: float = 0.0
    terms: Dict[str, float] = field(default_factory=dict)

    def add(self, name: str, value: float):
        if value:
            self.terms[name] = self.terms.get(name, 0.0) + value
            self.total += value


class RewardFunction:
    """Computes the step reward from two successive snapshots."""

    def __init__(self, config: Optional[RewardConfig] = None):
        self.config = config or RewardConfig()

    def compute(self, prev: Optional[ObservationSnapshot], curr: ObservationSnapshot,
                last_action: Optional[str] = None,
                psyche: Optional[PsychState] = None) -> RewardBreakdown:
        """
        Reward for the transition prev -> curr. ``psyche`` defaults to the
        current snapshot's psychological state. With no previous snapshot
        only the state-based terms are scored.
        """
        psyche = psyche if psyche is not None else curr.psyche
        out = RewardBreakdown()

        out.add('survival', self._survival(curr, psyche))
        out.add('stuck', self.config.stuck_penalty if curr.stuck else 0.0)
        out.add('moodles', self._moodle_penalty(curr))
        out.add('healthy', self._healthy(curr))
        out.add('diversity', self._diversity(curr))
        out.add('boredom', self._boredom(curr))
        out.add('memory', self._memory(psyche))

        if prev is not None:
            out.add('damage', self._damage(prev, curr, psyche))
            out.add('heal', self._heal(prev, curr, psyche))
            eat, starving = self._food(prev, curr, psyche)
            out.add('eat', eat)
            out.add('starving', starving)
            out.add('pickup', self._pickup(prev, curr, psyche))
            out.add('tools', self._tools(prev, curr, psyche))
            out.add('skill_up', self._skill_up(prev, curr))
            out.add('interaction', (curr.stats.external_reward - prev.stats.external_reward) * 0.5)
            moved = curr.position.distance_to(prev.position)
            out.add('move', self._movement(moved, curr, psyche))
            out.add('rest', self._rest(moved, psyche))

        out.add('discovery', self._discovery(curr, psyche))
        out.add('cluster', self._cluster(curr, psyche))
        out.add('bonded', self._bonded(curr, psyche))
        out.add('comfort', self._comfort(curr, psyche))
        if last_action:
            self._cooperation(out, last_action, curr, psyche)
            out.add('creativity', self._creativity(last_action, psyche))

        return out

    # ------------------------------------------------------------------
    # Vitals
    # ------------------------------------------------------------------

    def _survival(self, curr, psyche) -> float:
        c = self.config
        reward = min(curr.survival_steps * c.survival_rate, c.survival_cap)
        if psyche is not None and psyche.needs.safety < 0.4:
            reward *= 1.5
        return reward

    def _damage(self, prev, curr, psyche) -> float:
        delta = curr.vitals.health - prev.vitals.health
        if delta >= 0:
            return 0.0
        c = self.config
        penalty = delta * c.damage_scale
        if psyche is not None and psyche.moods.stress >= c.stress_threshold:
            penalty *= c.stress_dampening
        return penalty

    def _heal(self, prev, curr, psyche) -> float:
        delta = curr.vitals.health - prev.vitals.health
        if delta <= 0:
            return 0.0
        reward = delta * self.config.heal_scale
        if psyche is not None and psyche.needs.safety < 0.5:
            reward *= 1.3
        return reward

    def _food(self, prev, curr, psyche):
        gain = curr.vitals.food - prev.vitals.food
        if gain > 0:
            reward = gain * self.config.food_scale
            if psyche is not None and psyche.needs.hunger < 0.4:
                reward *= 2.0
            return reward, 0.0
        if curr.vitals.food < 6:
            return 0.0, -0.5
        return 0.0, 0.0

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def _pickup(self, prev, curr, psyche) -> float:
        gained = curr.inventory_size - prev.inventory_size
        if gained <= 0:
            return 0.0
        motivation = psyche.moods.motivation if psyche is not None else 0.5
        return gained * self.config.pickup_scale * (0.7 + motivation * 0.6)

    def _tools(self, prev, curr, psyche) -> float:
        new_tools = sum(1 for kind in TOOL_KINDS
                        if curr.has_tool(kind) and not prev.has_tool(kind))
        if not new_tools:
            return 0.0
        multiplier = 1.0
        if psyche is not None:
            multiplier = (1 + psyche.needs.achievement * 0.5) * (1 + psyche.needs.creativity * 0.4)
        return new_tools * self.config.tool_bonus * multiplier

    def _skill_up(self, prev, curr) -> float:
        levels = 0
        for name, skill in curr.skills.items():
            before = prev.skills.get(name)
            if before is not None and skill.level > before.level:
                levels += skill.level - before.level
        return levels * self.config.skill_level_bonus

    # ------------------------------------------------------------------
    # Exploration
    # ------------------------------------------------------------------

    @staticmethod
    def _exploration_multiplier(psyche) -> float:
        if psyche is None:
            return 1.0
        moods = psyche.moods
        multiplier = 1 + moods.curiosity * 0.5
        if moods.boredom > 0.6:
            multiplier *= 1.3
        multiplier *= 1 + (1 - psyche.needs.exploration) * 0.6
        return multiplier

    def _movement(self, moved: float, curr, psyche) -> float:
        if moved <= 0.1:
            return 0.0
        c = self.config
        return min(moved * c.move_scale, c.move_cap) * self._exploration_multiplier(psyche)

    def _discovery(self, curr, psyche) -> float:
        if not curr.exploration.new_chunk:
            return 0.0
        return self.config.discovery_bonus * self._exploration_multiplier(psyche)

    @staticmethod
    def _boredom(curr) -> float:
        idle_steps = curr.exploration.steps_since_discovery
        if idle_steps <= 50:
            return 0.0
        return max(-(idle_steps - 50) * 0.1, -3.0)

    @staticmethod
    def _diversity(curr) -> float:
        steps = curr.survival_steps
        if steps <= 0 or steps % 20:
            return 0.0
        seen = curr.exploration.unique_blocks_seen + curr.exploration.unique_entities_seen
        return min(seen * 0.05, 5.0)

    # ------------------------------------------------------------------
    # Social
    # ------------------------------------------------------------------

    @staticmethod
    def _cluster(curr, psyche) -> float:
        nearby = len(curr.peers_within(32.0))
        if nearby == 0:
            return 0.0
        reward = float(min(nearby, 5))
        if psyche is not None:
            reward *= 1 + psyche.needs.social * 0.8
            if psyche.moods.loneliness > 0.6:
                reward *= 1.5
        return reward

    @staticmethod
    def _bonded(curr, psyche) -> float:
        if psyche is None:
            return 0.0
        reward = 0.0
        for peer in curr.peers:
            rel = psyche.relationship_with(peer.agent_id)
            if rel is not None and rel.bond > 0.5:
                reward += rel.bond * 2.0
        return reward

    @staticmethod
    def _has_bonded_peer(curr, psyche, radius: float) -> bool:
        if psyche is None:
            return False
        for peer in curr.peers_within(radius):
            rel = psyche.relationship_with(peer.agent_id)
            if rel is not None and rel.bond > 0.5:
                return True
        return False

    def _cooperation(self, out: RewardBreakdown, action: str, curr, psyche):
        coop = 1.0
        if psyche is not None:
            coop = 1 + psyche.needs.cooperation * 0.7

        if action in BUILDING_ACTIONS and curr.peers_within(16.0):
            reward = 10.0 * coop
            if self._has_bonded_peer(curr, psyche, 16.0):
                reward *= 1.4
            out.add('build_together', reward)

        if action in MINING_ACTIONS and curr.peers_within(10.0):
            out.add('mine_together', 5.0 * coop)

        if action in COMBAT_ACTIONS and curr.peers_within(12.0):
            reward = 7.0
            if self._has_bonded_peer(curr, psyche, 12.0):
                reward *= 2.0
            out.add('defend_ally', reward)

    # ------------------------------------------------------------------
    # Opportunistic
    # ------------------------------------------------------------------

    @staticmethod
    def _comfort(curr, psyche) -> float:
        if psyche is None or not curr.has_roof():
            return 0.0
        comfort = psyche.needs.comfort
        return (0.5 - comfort) * 8.0 if comfort < 0.5 else 0.0

    @staticmethod
    def _creativity(action: str, psyche) -> float:
        if psyche is None or action not in CREATIVE_ACTIONS:
            return 0.0
        creativity = psyche.needs.creativity
        return (0.5 - creativity) * 12.0 if creativity < 0.5 else 0.0

    @staticmethod
    def _rest(moved: float, psyche) -> float:
        if psyche is None or moved > 0.1:
            return 0.0
        rest = psyche.needs.rest
        return (0.3 - rest) * 10.0 if rest < 0.3 else 0.0

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @staticmethod
    def _memory(psyche) -> float:
        if psyche is None or not psyche.memories:
            return 0.0
        danger = sum(1 for m in psyche.memories if m.kind == 'danger')
        achievement = sum(1 for m in psyche.memories if m.kind == 'achievement')
        safe = sum(1 for m in psyche.memories
                   if m.valence > 0 and m.kind not in ('danger', 'death'))
        reward = 0.0
        if danger > achievement:
            reward -= 1.5
        if safe > 2:
            reward += 1.0
        return reward

    @staticmethod
    def _moodle_penalty(curr) -> float:
        penalty = 0.0
        for name, (threshold, per_level) in MOODLE_PENALTIES.items():
            severity = curr.moodles.get(name, 0)
            if severity >= threshold:
                penalty += severity * per_level
        return penalty

    @staticmethod
    def _healthy(curr) -> float:
        if not curr.moodles:
            return 0.0
        return 2.0 if max(curr.moodles.values()) < 3 else 0.0
