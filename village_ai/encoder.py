"""
Feature Encoder - converts an ObservationSnapshot into a fixed-length vector.

The vector is partitioned into disjoint, fixed-width segments. Each segment is
owned by a SegmentEncoder that sorts its candidates by relevance, truncates or
pads to its width and degrades to zeros when the optional context it reads is
absent. The total length therefore never depends on how much was observed.

Layout (704 floats):
  position 3 | vitals 4 | inventory 50 | neighborhood 125 | entities 30 |
  environment 10 | goal 34 | social 30 | achievements 24 | curiosity 10 |
  needs 10 | moods 8 | relationships 20 | memories 7 | skills 40 | moodles 14 |
  sensor blocks 50 | sensor entities 30 | sensor mob targeting 40 |
  sensor weather 10 | sensor chunks 30 | sensor items 40 |
  experience 5 | effects 20 | equipment 15 | players 10 | reserved 35
"""

import logging
import math
from typing import Dict, List, Optional, Sequence

import numpy as np

from world.snapshot import MOOD_NAMES, NEED_NAMES, ObservationSnapshot
from village_ai.vocab import (
    ACHIEVEMENT_FLAGS, ACHIEVEMENT_ITEMS, AGENT_ROLES, BLOCK_VOCAB,
    EFFECT_ORDER, ENTITY_TYPES, EQUIPMENT_MATERIALS, EQUIPMENT_SLOTS,
    GOAL_KEYS, HOSTILE_MOBS, ITEM_VOCAB, MEMORY_KINDS, MOODLE_ORDER,
    RELATIONSHIP_KINDS, SHARED_STRUCTURES, SKILL_ORDER, VALUABLE_BLOCKS,
)

logger = logging.getLogger(__name__)

STATE_SIZE = 704


def normalize_coord(value: float, scale: float = 1000.0) -> float:
    """World coordinate -> [-1, 1]."""
    return max(-1.0, min(1.0, value / scale))


def saturate(count: float, limit: float) -> float:
    """Divide a count by its saturation constant and cap at 1."""
    return min(count / limit, 1.0)


def closeness(distance: float, radius: float) -> float:
    """1 at the agent, falling to 0 at ``radius``."""
    return 1.0 - min(distance / radius, 1.0)


def fit(values: Sequence[float], width: int) -> np.ndarray:
    """Truncate or zero-pad ``values`` to exactly ``width`` entries."""
    out = np.zeros(width, dtype=np.float32)
    arr = np.asarray(values, dtype=np.float32).ravel()[:width]
    out[:len(arr)] = arr
    return out


def sanitize(vector: np.ndarray) -> np.ndarray:
    """Replace non-finite entries with 0 and clip to [-1, 1]."""
    vector = np.nan_to_num(vector, nan=0.0, posinf=0.0, neginf=0.0)
    return np.clip(vector, -1.0, 1.0).astype(np.float32)


class SegmentEncoder:
    """Owns one fixed-width slice of the feature vector."""

    name = "segment"
    width = 0

    def features(self, snapshot: ObservationSnapshot) -> List[float]:
        raise NotImplementedError

    def encode(self, snapshot: ObservationSnapshot) -> np.ndarray:
        return fit(self.features(snapshot), self.width)


class ReservedSegment(SegmentEncoder):
    """Zero tail kept so new segments can be added without resizing networks."""

    name = "reserved"

    def __init__(self, width: int):
        self.width = width

    def features(self, snapshot):
        return []


class PositionSegment(SegmentEncoder):
    name = "position"
    width = 3

    def features(self, snapshot):
        pos = snapshot.position
        return [normalize_coord(pos.x), normalize_coord(pos.y), normalize_coord(pos.z)]


class VitalsSegment(SegmentEncoder):
    name = "vitals"
    width = 4

    def features(self, snapshot):
        v = snapshot.vitals
        return [v.health / 20.0, v.food / 20.0, v.saturation / 20.0, v.oxygen / 20.0]


class InventorySegment(SegmentEncoder):
    """Item-vocabulary histogram (count / 64) plus a held-item one-hot."""

    name = "inventory"
    width = 50
    HISTOGRAM = 40
    HELD_SLOTS = 10

    def features(self, snapshot):
        counts = snapshot.item_counts()
        features = [saturate(counts.get(item, 0), 64.0)
                    for item in ITEM_VOCAB[:self.HISTOGRAM]]

        held = [0.0] * self.HELD_SLOTS
        if snapshot.held_item in ITEM_VOCAB:
            idx = ITEM_VOCAB.index(snapshot.held_item)
            if idx < self.HELD_SLOTS:
                held[idx] = 1.0
        return features + held


class NeighborhoodSegment(SegmentEncoder):
    """5x5x5 voxel grid around the agent, y-major then z then x."""

    name = "neighborhood"
    radius = 2
    width = 125

    def features(self, snapshot):
        vocab_size = float(len(BLOCK_VOCAB))
        features = []
        r = self.radius
        for dy in range(-r, r + 1):
            for dz in range(-r, r + 1):
                for dx in range(-r, r + 1):
                    name = snapshot.blocks.get((dx, dy, dz))
                    if name in BLOCK_VOCAB:
                        features.append((BLOCK_VOCAB.index(name) + 1) / vocab_size)
                    else:
                        features.append(0.0)
        return features


class EntitySegment(SegmentEncoder):
    """Nearest 10 entities within 16 blocks: type index, distance, relative y."""

    name = "entities"
    width = 30
    max_entities = 10
    radius = 16.0

    def features(self, snapshot):
        origin = snapshot.position
        nearby = [(e.position.distance_to(origin), e) for e in snapshot.entities]
        nearby = sorted((pair for pair in nearby if pair[0] < self.radius),
                        key=lambda pair: pair[0])[:self.max_entities]

        features = []
        for dist, entity in nearby:
            if entity.name in ENTITY_TYPES:
                features.append((ENTITY_TYPES.index(entity.name) + 1) / len(ENTITY_TYPES))
            else:
                features.append(0.0)
            features.append(saturate(dist, self.radius))
            features.append(max(-1.0, min(1.0, (entity.position.y - origin.y) / 10.0)))
        return features


class EnvironmentSegment(SegmentEncoder):
    name = "environment"
    width = 10

    def features(self, snapshot):
        weather = snapshot.weather
        vitals = snapshot.vitals
        has_resources = any(name in VALUABLE_BLOCKS for name in snapshot.blocks.values())
        return [
            (weather.time_of_day % 24000) / 24000.0,
            1.0 if weather.raining else 0.0,
            1.0 if weather.thundering else 0.0,
            weather.temperature,
            1.0 if vitals.on_ground else 0.0,
            1.0 if vitals.in_water else 0.0,
            1.0 if vitals.in_lava else 0.0,
            max(0.0, min(1.0, snapshot.position.y / 128.0)),
            saturate(len(snapshot.hostiles_within(8.0)), 5.0),
            1.0 if has_resources else 0.0,
        ]


class GoalSegment(SegmentEncoder):
    """
    Role and active goal context.

    12 role one-hot | 7 goal one-hot | goal progress | tanh(episode reward/100)
    | generation | stuck | top-3 skills (level, xp) | goal elapsed fraction |
    needs-resources flag | survival time | has-goal flag | health-critical flag
    """

    name = "goal"
    width = 34

    def features(self, snapshot):
        features = [1.0 if role == snapshot.role else 0.0 for role in AGENT_ROLES]

        goal = snapshot.active_goal
        features.extend(1.0 if goal is not None and goal.name == key else 0.0
                        for key in GOAL_KEYS)
        features.append(goal.progress if goal is not None else 0.0)

        features.append(math.tanh(snapshot.episode_reward / 100.0))
        features.append(saturate(snapshot.generation, 10.0))
        features.append(1.0 if snapshot.stuck else 0.0)

        top = sorted(snapshot.skills.values(), key=lambda s: s.level, reverse=True)[:3]
        for i in range(3):
            if i < len(top):
                skill = top[i]
                features.append(skill.level / max(skill.max_level, 1))
                features.append(min(skill.xp / skill.xp_to_next, 1.0)
                                if skill.xp_to_next > 0 else 0.0)
            else:
                features.extend([0.0, 0.0])

        features.append(goal.elapsed_fraction if goal is not None else 0.0)
        features.append(1.0 if snapshot.inventory_size < 5 else 0.0)
        features.append(saturate(snapshot.survival_steps, 1000.0))
        features.append(1.0 if goal is not None else 0.0)
        features.append(1.0 if snapshot.vitals.health < 6 else 0.0)
        return features


class SocialSegment(SegmentEncoder):
    """Nearest 5 peers within 32 blocks plus clustering signals."""

    name = "social"
    width = 30
    radius = 32.0

    def features(self, snapshot):
        origin = snapshot.position
        nearby = sorted(((p.position.distance_to(origin), p) for p in snapshot.peers),
                        key=lambda pair: pair[0])
        nearby = [pair for pair in nearby if pair[0] < self.radius]

        features = [saturate(len(nearby), 10.0)]
        for i in range(5):
            if i < len(nearby):
                dist, peer = nearby[i]
                features.extend([
                    closeness(dist, self.radius),
                    1.0 if peer.role == snapshot.role else 0.0,
                    peer.health / 20.0,
                    1.0 if peer.inventory_size > 5 else 0.0,
                ])
            else:
                features.extend([0.0, 0.0, 0.0, 0.0])

        shared = any(name in SHARED_STRUCTURES for name in snapshot.blocks.values())
        working = [p for d, p in nearby if d < 10 and p.busy]
        features.append(saturate(sum(1 for d, _ in nearby if d < 16), 5.0))
        features.append(1.0 if shared else 0.0)
        features.append(saturate(len(working), 3.0))
        features.append(1.0 if not nearby else 0.0)

        if nearby:
            features.append(sum(p.health for _, p in nearby) / len(nearby) / 20.0)
            features.append(sum(1 for _, p in nearby if p.busy) / len(nearby))
            features.append(saturate(sum(1 for _, p in nearby if p.role == snapshot.role), 5.0))
            features.append(closeness(nearby[0][0], self.radius))
        else:
            features.extend([0.0, 0.0, 0.0, 0.0])
        features.append(saturate(snapshot.stats.cooperation_events, 50.0))
        return features


class AchievementSegment(SegmentEncoder):
    name = "achievements"
    width = 24

    def features(self, snapshot):
        done = snapshot.achievements
        stats = snapshot.stats
        features = [1.0 if flag in done else 0.0 for flag in ACHIEVEMENT_FLAGS]

        features.append(saturate(snapshot.exploration.explored_chunks, 100.0))
        features.append(saturate(stats.cooperation_events, 50.0))
        features.append(saturate(stats.trades_completed, 100.0))
        features.append(saturate(stats.blocks_placed, 1000.0))

        features.append(1.0 if snapshot.has_item('diamond') else 0.0)
        names = {stack.name for stack in snapshot.inventory}
        features.extend(1.0 if item in names else 0.0 for item in ACHIEVEMENT_ITEMS[1:])

        features.append(saturate(stats.resources_gathered, 1000.0))
        features.append(saturate(stats.mobs_killed, 100.0))
        features.append(saturate(stats.trades_completed, 50.0))

        score = ((1 if 'diamonds' in done else 0) + (1 if 'iron_armor' in done else 0) +
                 (3 if 'beaten_dragon' in done else 0) + (2 if 'beaten_wither' in done else 0))
        features.append(saturate(score, 10.0))
        features.append(saturate(snapshot.exploration.total_discoveries, 100.0))
        features.append(saturate(len(done), len(ACHIEVEMENT_FLAGS)))
        return features


class CuriositySegment(SegmentEncoder):
    name = "curiosity"
    width = 10

    def features(self, snapshot):
        ex = snapshot.exploration
        return [
            1.0 if ex.new_chunk else 0.0,
            saturate(ex.explored_chunks, 100.0),
            saturate(ex.steps_since_discovery, 100.0),
            saturate(ex.unique_blocks_seen, 50.0),
            saturate(ex.unique_entities_seen, 30.0),
            1.0 if snapshot.position.y < 50 else 0.0,
            saturate(ex.distance_from_spawn, 500.0),
            1.0 if ex.unexplored_nearby else 0.0,
            saturate(ex.steps_since_discovery, 50.0),
            saturate(ex.total_discoveries, 100.0),
        ]


class NeedsSegment(SegmentEncoder):
    name = "needs"
    width = len(NEED_NAMES)

    def features(self, snapshot):
        if snapshot.psyche is None:
            return []
        return list(snapshot.psyche.needs.as_tuple())


class MoodsSegment(SegmentEncoder):
    name = "moods"
    width = len(MOOD_NAMES)

    def features(self, snapshot):
        if snapshot.psyche is None:
            return []
        return list(snapshot.psyche.moods.as_tuple())


class RelationshipSegment(SegmentEncoder):
    """Top-4 relationships by descending bond; empty slots read as neutral."""

    name = "relationships"
    width = 20
    slots = 4
    EMPTY = [0.0, 0.5, 0.33, 0.0, 0.0]

    def features(self, snapshot):
        if snapshot.psyche is None:
            return []
        ranked = sorted(snapshot.psyche.relationships, key=lambda r: r.bond, reverse=True)
        features = []
        for i in range(self.slots):
            if i < len(ranked):
                rel = ranked[i]
                features.extend([
                    max(-1.0, min(1.0, rel.bond)),
                    max(0.0, min(1.0, rel.trust)),
                    RELATIONSHIP_KINDS.get(rel.kind, 1.0),
                    saturate(rel.cooperation_count, 20.0),
                    max(0.0, 1.0 - rel.seconds_since_seen / 300.0),
                ])
            else:
                features.extend(self.EMPTY)
        return features


class MemorySegment(SegmentEncoder):
    name = "memories"
    width = 7

    def features(self, snapshot):
        if snapshot.psyche is None:
            return []
        memories = snapshot.psyche.memories
        if memories:
            last = memories[-1]
            features = [MEMORY_KINDS.get(last.kind, 0) / 6.0, last.valence,
                        last.arousal, last.strength]
        else:
            features = [0.0, 0.0, 0.5, 0.0]

        features.append(saturate(len(memories), 50.0))
        recent = memories[-10:]
        if recent:
            avg = sum(m.valence for m in recent) / len(recent)
            features.append(max(-1.0, min(1.0, avg)))
        else:
            features.append(0.0)
        negative = sum(1 for m in memories[-5:] if m.valence < -0.5)
        features.append(saturate(negative, 5.0))
        return features


class SkillSegment(SegmentEncoder):
    """20 skills in fixed order x (level / max level, xp progress)."""

    name = "skills"
    width = 2 * len(SKILL_ORDER)

    def features(self, snapshot):
        features = []
        for skill_id in SKILL_ORDER:
            skill = snapshot.skills.get(skill_id)
            if skill is None:
                features.extend([0.0, 0.0])
                continue
            features.append(skill.level / max(skill.max_level, 1))
            features.append(min(1.0, skill.xp / skill.xp_to_next)
                            if skill.xp_to_next > 0 else 0.0)
        return features


class MoodleSegment(SegmentEncoder):
    name = "moodles"
    width = len(MOODLE_ORDER)

    def features(self, snapshot):
        return [snapshot.moodles.get(m, 0) / 4.0 for m in MOODLE_ORDER]


class ExperienceSegment(SegmentEncoder):
    name = "experience"
    width = 5

    def features(self, snapshot):
        xp = snapshot.experience
        if xp is None:
            return []
        points_needed = 17 if xp.level < 16 else 97 if xp.level < 31 else 277
        minutes = max(snapshot.timestamp / 60.0, 0.1)
        return [
            saturate(xp.level, 30.0),
            xp.progress,
            saturate(xp.points, 1000.0),
            saturate(points_needed, 300.0),
            saturate(xp.level / minutes, 5.0),
        ]


class EffectSegment(SegmentEncoder):
    """Amplifier and remaining duration for each tracked status effect."""

    name = "effects"
    width = 2 * len(EFFECT_ORDER)

    def features(self, snapshot):
        features = []
        for effect_id in EFFECT_ORDER:
            effect = snapshot.effects.get(effect_id)
            if effect is None:
                features.extend([0.0, 0.0])
            else:
                features.append(saturate(effect.amplifier, 3.0))
                features.append(saturate(effect.duration, 600.0))
        return features


class EquipmentSegment(SegmentEncoder):
    name = "equipment"
    width = 15

    @staticmethod
    def _tier(item: Optional[str]) -> float:
        if not item:
            return 0.0
        for rank, material in enumerate(EQUIPMENT_MATERIALS, start=1):
            if material in item:
                return rank / len(EQUIPMENT_MATERIALS)
        return 0.25

    def features(self, snapshot):
        equipment = snapshot.equipment
        armor = [equipment.get(slot) for slot in EQUIPMENT_SLOTS[:4]]
        tiers = [self._tier(item) for item in armor]
        pieces = sum(1 for item in armor if item)
        held = equipment.get('hand') or snapshot.held_item

        features = [1.0 if item else 0.0 for item in armor]
        features.extend(tiers)
        features.append(sum(tiers) / 4.0)
        features.append(1.0 if held else 0.0)
        features.append(self._tier(held))
        features.append(pieces / 4.0)
        features.append(1.0 if pieces == 4 else 0.0)
        features.append(0.5 if any(item and 'iron' in item for item in armor) else 0.0)
        features.append(1.0 if equipment.get('offhand') else 0.0)
        return features


class PlayerSegment(SegmentEncoder):
    """Non-agent players (entities of kind 'player') within 32 blocks."""

    name = "players"
    width = 10
    radius = 32.0

    def features(self, snapshot):
        origin = snapshot.position
        dists = sorted(e.position.distance_to(origin) for e in snapshot.entities
                       if e.kind == 'player')
        dists = [d for d in dists if d < self.radius]

        features = [saturate(len(dists), 10.0)]
        features.extend(closeness(dists[i], self.radius) if i < len(dists) else 0.0
                        for i in range(5))
        features.append(closeness(dists[0], self.radius) if dists else 0.0)
        features.append(saturate(sum(1 for d in dists if d < 5), 3.0))
        features.append(saturate(sum(1 for d in dists if d < 16), 5.0))
        features.append(1.0 if not dists else 0.0)
        return features


def default_segments() -> List[SegmentEncoder]:
    """The canonical segment order. Appending is safe; reordering is not."""
    from village_ai.sensor_encoder import sensor_segments

    segments: List[SegmentEncoder] = [
        PositionSegment(), VitalsSegment(), InventorySegment(),
        NeighborhoodSegment(), EntitySegment(), EnvironmentSegment(),
        GoalSegment(), SocialSegment(), AchievementSegment(),
        CuriositySegment(), NeedsSegment(), MoodsSegment(),
        RelationshipSegment(), MemorySegment(), SkillSegment(),
        MoodleSegment(),
    ]
    segments.extend(sensor_segments())
    segments.extend([ExperienceSegment(), EffectSegment(),
                     EquipmentSegment(), PlayerSegment()])

    used = sum(s.width for s in segments)
    if used < STATE_SIZE:
        segments.append(ReservedSegment(STATE_SIZE - used))
    return segments


class FeatureEncoder:
    """
    Deterministic snapshot -> float32 vector of exactly ``size`` values.

    A segment that raises is logged and contributes zeros; the vector is
    always sanitized so no NaN or infinite value leaves the encoder.
    """

    def __init__(self, segments: Optional[List[SegmentEncoder]] = None):
        self.segments = segments if segments is not None else default_segments()
        self._layout: Dict[str, slice] = {}
        offset = 0
        for seg in self.segments:
            if seg.name in self._layout:
                raise ValueError(f"duplicate segment name: {seg.name}")
            self._layout[seg.name] = slice(offset, offset + seg.width)
            offset += seg.width
        self.size = offset

    def layout(self) -> Dict[str, slice]:
        return dict(self._layout)

    def encode(self, snapshot: ObservationSnapshot) -> np.ndarray:
        state = np.zeros(self.size, dtype=np.float32)
        for seg in self.segments:
            try:
                state[self._layout[seg.name]] = seg.encode(snapshot)
            except Exception as e:
                logger.warning(f"Segment {seg.name} failed, zero-filled: {e}")
        return sanitize(state)

    def segment_view(self, vector: np.ndarray, name: str) -> np.ndarray:
        return vector[self._layout[name]]
