"""
Observation Snapshot - immutable view of world + agent state at one decision step.

The snapshot is produced by whatever drives the simulated world (a live
server bridge, the sandbox, a replayed log) and is passed by value into the
learning core. Nothing in the core mutates it: ObservationSnapshot stores its
mapping fields as read-only copies, so later edits to the dicts a producer
passed in do not leak into a snapshot already handed over.

Optional sub-systems (psyche, sensors, experience, ...) are modelled as
``None`` or empty containers; the encoder and reward function degrade those
segments to neutral defaults.
"""

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional, Tuple


@dataclass(frozen=True)
class Vec3:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def distance_to(self, other: 'Vec3') -> float:
        return math.sqrt((self.x - other.x) ** 2 +
                         (self.y - other.y) ** 2 +
                         (self.z - other.z) ** 2)

    def offset(self, dx: float, dy: float, dz: float) -> 'Vec3':
        return Vec3(self.x + dx, self.y + dy, self.z + dz)

    def chunk_key(self, chunk_size: int = 16) -> Tuple[int, int]:
        return (math.floor(self.x / chunk_size), math.floor(self.z / chunk_size))


@dataclass(frozen=True)
class Vitals:
    health: float = 20.0
    food: float = 20.0
    saturation: float = 5.0
    oxygen: float = 20.0
    on_ground: bool = True
    in_water: bool = False
    in_lava: bool = False


@dataclass(frozen=True)
class ItemStack:
    name: str
    count: int = 1


@dataclass(frozen=True)
class EntityObservation:
    """A mob, animal, dropped item or other non-agent entity near the agent."""
    name: str
    position: Vec3
    kind: str = "mob"
    health: float = 20.0
    hostile: bool = False


@dataclass(frozen=True)
class PeerObservation:
    """Another learning agent visible to this one."""
    agent_id: str
    role: str
    position: Vec3
    health: float = 20.0
    inventory_size: int = 0
    busy: bool = False


@dataclass(frozen=True)
class Weather:
    time_of_day: int = 6000     # 0..24000 ticks
    raining: bool = False
    thundering: bool = False
    temperature: float = 0.5


@dataclass(frozen=True)
class SkillLevel:
    level: int = 0
    max_level: int = 10
    xp: float = 0.0
    xp_to_next: float = 100.0


@dataclass(frozen=True)
class ActivityStats:
    """Monotonic activity counters maintained by the world bridge."""
    blocks_placed: int = 0
    mobs_killed: int = 0
    cooperation_events: int = 0
    resources_gathered: int = 0
    trades_completed: int = 0
    external_reward: float = 0.0


@dataclass(frozen=True)
class ExplorationStats:
    explored_chunks: int = 0
    steps_since_discovery: int = 0
    unique_blocks_seen: int = 0
    unique_entities_seen: int = 0
    total_discoveries: int = 0
    distance_from_spawn: float = 0.0
    unexplored_nearby: bool = True
    new_chunk: bool = False


@dataclass(frozen=True)
class GoalContext:
    """The active goal as seen by the encoder (name + progress in [0, 1])."""
    name: str
    progress: float = 0.0
    elapsed_fraction: float = 0.0


@dataclass(frozen=True)
class ExperienceInfo:
    level: int = 0
    progress: float = 0.0
    points: int = 0


@dataclass(frozen=True)
class StatusEffect:
    amplifier: int = 0
    duration: int = 0   # ticks


# --- Rich external sensor payload ------------------------------------------

@dataclass(frozen=True)
class SensorBlock:
    type: str
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    hardness: float = 0.0
    light_level: int = 0
    passable: bool = False
    solid: bool = True
    flammable: bool = False


@dataclass(frozen=True)
class SensorEntity:
    type: str
    category: str = "neutral"    # hostile | passive | neutral | player | item | projectile
    distance: Optional[float] = None
    health: float = 0.0
    max_health: float = 20.0
    dx: Optional[float] = None
    dz: Optional[float] = None
    target: Optional[str] = None  # "me" | "agent" | "animal" | None
    aggressive: bool = False


@dataclass(frozen=True)
class SensorWeather:
    raining: bool = False
    thundering: bool = False
    rain_level: float = 0.0
    thunder_level: float = 0.0
    sky_light: int = 15
    block_light: int = 0
    humidity: float = 0.5
    temperature: float = 0.5
    moon_phase: int = 0
    full_time: int = 0


@dataclass(frozen=True)
class SensorChunk:
    x: int
    z: int
    loaded: bool = True
    entity_count: int = 0
    tile_entity_count: int = 0
    inhabited_time: int = 0
    slime_chunk: bool = False


@dataclass(frozen=True)
class SensorItem:
    name: str
    count: int = 1
    distance: Optional[float] = None
    age: int = 0


@dataclass(frozen=True)
class SensorPayload:
    """Optional richer sensor feed supplied by a server-side plugin."""
    blocks: Tuple[SensorBlock, ...] = ()
    entities: Tuple[SensorEntity, ...] = ()
    weather: Optional[SensorWeather] = None
    chunks: Tuple[SensorChunk, ...] = ()
    items: Tuple[SensorItem, ...] = ()


# --- Psychological state ----------------------------------------------------

NEED_NAMES = ('hunger', 'energy', 'safety', 'social', 'comfort',
              'achievement', 'exploration', 'cooperation', 'creativity', 'rest')
MOOD_NAMES = ('happiness', 'stress', 'boredom', 'motivation',
              'loneliness', 'confidence', 'curiosity', 'fear')


@dataclass(frozen=True)
class Needs:
    """Need satisfaction levels; 1.0 = fully satisfied, 0.0 = urgent."""
    hunger: float = 1.0
    energy: float = 1.0
    safety: float = 1.0
    social: float = 0.5
    comfort: float = 0.5
    achievement: float = 0.5
    exploration: float = 0.5
    cooperation: float = 0.5
    creativity: float = 0.5
    rest: float = 1.0

    def as_tuple(self) -> Tuple[float, ...]:
        return tuple(getattr(self, n) for n in NEED_NAMES)


@dataclass(frozen=True)
class Moods:
    happiness: float = 0.5
    stress: float = 0.3
    boredom: float = 0.2
    motivation: float = 0.7
    loneliness: float = 0.3
    confidence: float = 0.5
    curiosity: float = 0.6
    fear: float = 0.1

    def as_tuple(self) -> Tuple[float, ...]:
        return tuple(getattr(self, n) for n in MOOD_NAMES)


@dataclass(frozen=True)
class Relationship:
    other_id: str
    bond: float = 0.0           # -1..1
    trust: float = 0.5
    kind: str = "neutral"       # hostile | neutral | ally | friend
    cooperation_count: int = 0
    seconds_since_seen: float = 0.0


@dataclass(frozen=True)
class MemoryEvent:
    kind: str                   # achievement | danger | social | discovery | death | birth
    valence: float = 0.0        # -1..1
    arousal: float = 0.5
    strength: float = 1.0


@dataclass(frozen=True)
class PsychState:
    needs: Needs = field(default_factory=Needs)
    moods: Moods = field(default_factory=Moods)
    relationships: Tuple[Relationship, ...] = ()
    memories: Tuple[MemoryEvent, ...] = ()

    def value(self, name: str) -> Optional[float]:
        """Look a name up in needs, then moods."""
        if name in NEED_NAMES:
            return getattr(self.needs, name)
        if name in MOOD_NAMES:
            return getattr(self.moods, name)
        return None

    def relationship_with(self, other_id: str) -> Optional[Relationship]:
        for rel in self.relationships:
            if rel.other_id == other_id:
                return rel
        return None


# --- Snapshot ---------------------------------------------------------------

TOOL_KINDS = ('pickaxe', 'axe', 'sword')
MAPPING_FIELDS = ('blocks', 'skills', 'moodles', 'effects', 'equipment')


@dataclass(frozen=True)
class ObservationSnapshot:
    """Keyed fields (blocks, skills, moodles, effects, equipment) are read-only views."""

    agent_id: str
    role: str = "GENERIC"
    generation: int = 1
    timestamp: float = 0.0
    position: Vec3 = field(default_factory=Vec3)
    vitals: Vitals = field(default_factory=Vitals)
    inventory: Tuple[ItemStack, ...] = ()
    held_item: Optional[str] = None
    blocks: Mapping[Tuple[int, int, int], str] = field(default_factory=dict)
    entities: Tuple[EntityObservation, ...] = ()
    peers: Tuple[PeerObservation, ...] = ()
    weather: Weather = field(default_factory=Weather)
    psyche: Optional[PsychState] = None
    skills: Mapping[str, SkillLevel] = field(default_factory=dict)
    moodles: Mapping[str, int] = field(default_factory=dict)
    stats: ActivityStats = field(default_factory=ActivityStats)
    exploration: ExplorationStats = field(default_factory=ExplorationStats)
    achievements: FrozenSet[str] = frozenset()
    active_goal: Optional[GoalContext] = None
    survival_steps: int = 0
    episode_reward: float = 0.0
    stuck: bool = False
    sensors: Optional[SensorPayload] = None
    experience: Optional[ExperienceInfo] = None
    effects: Mapping[str, StatusEffect] = field(default_factory=dict)
    equipment: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self):
        for name in MAPPING_FIELDS:
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    @property
    def inventory_size(self) -> int:
        return len(self.inventory)

    def item_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for stack in self.inventory:
            counts[stack.name] = counts.get(stack.name, 0) + stack.count
        return counts

    def has_item(self, fragment: str) -> bool:
        return any(fragment in stack.name for stack in self.inventory)

    def has_tool(self, kind: str) -> bool:
        # "axe" must not match "pickaxe"
        for stack in self.inventory:
            name = stack.name
            if kind == 'axe':
                if name.endswith('_axe') or name == 'axe':
                    return True
            elif kind in name:
                return True
        return False

    def block_at(self, dx: int, dy: int, dz: int) -> Optional[str]:
        return self.blocks.get((dx, dy, dz))

    def has_roof(self, max_height: int = 5) -> bool:
        for dy in range(1, max_height + 1):
            name = self.blocks.get((0, dy, 0))
            if name and name != 'air':
                return True
        return False

    def peers_within(self, radius: float) -> Tuple[PeerObservation, ...]:
        return tuple(p for p in self.peers
                     if p.position.distance_to(self.position) < radius)

    def hostiles_within(self, radius: float) -> Tuple[EntityObservation, ...]:
        return tuple(e for e in self.entities
                     if e.hostile and e.position.distance_to(self.position) < radius)
