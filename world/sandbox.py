"""
Sandbox World - a small deterministic voxel-ish world for training and tests.

A flat square of terrain columns (ground block plus optional tree or ore),
dropped items, passive animals and hostile mobs that walk toward the nearest
agent. Agents are driven through SandboxActuator, which applies catalog
actions to the world. Everything random draws from one seeded Generator, so
the same seed and action sequence always produce the same snapshots.

Handles:
- Terrain, items and mob spawning
- Action effects (movement, gathering, crafting, building, combat, social)
- Hunger, regeneration, mob damage and death
- Skill XP, exploration tracking and moodles
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import numpy as np

from world.actions import ACTIONS, BUILDING_ACTIONS, SKILL_FOR_ACTION
from world.snapshot import (
    ActivityStats, EntityObservation, ExplorationStats, ItemStack,
    ObservationSnapshot, PeerObservation, SkillLevel, Vec3, Vitals, Weather,
)

GROUND_Y = 64
DIRECTIONS = {
    'move_forward': (0, 1), 'move_backward': (0, -1),
    'move_left': (-1, 0), 'move_right': (1, 0),
}
FOOD_VALUES = {'apple': 4, 'bread': 5, 'cooked_beef': 8}
PLACEABLE = ('cobblestone', 'oak_planks', 'oak_log', 'dirt')
XP_PER_ACTION = 25.0
KNOWN_ACTIONS = frozenset(a.name for a in ACTIONS)


@dataclass
class Mob:
    name: str
    x: float
    z: float
    hostile: bool
    health: float = 20.0


@dataclass
class Body:
    """Mutable per-agent state owned by the world."""
    agent_id: str
    role: str
    x: float = 0.0
    z: float = 0.0
    health: float = 20.0
    food: float = 20.0
    inventory: Counter = field(default_factory=Counter)
    skill_xp: Dict[str, float] = field(default_factory=dict)
    blocks_placed: int = 0
    mobs_killed: int = 0
    cooperation_events: int = 0
    resources_gathered: int = 0
    visited_chunks: Set[Tuple[int, int]] = field(default_factory=set)
    new_chunk: bool = False
    steps_since_discovery: int = 0
    seen_blocks: Set[str] = field(default_factory=set)
    seen_entities: Set[str] = field(default_factory=set)
    survival_steps: int = 0
    achievements: Set[str] = field(default_factory=set)
    roof: bool = False
    stuck_steps: int = 0

    @property
    def position(self) -> Vec3:
        return Vec3(self.x, GROUND_Y, self.z)


class SandboxWorld:
    """Deterministic world shared by every sandbox agent."""

    def __init__(self, size: int = 64, seed: Optional[int] = None,
                 n_items: int = 40, n_hostiles: int = 3, n_animals: int = 6):
        self.size = size
        self.rng = np.random.default_rng(seed)
        self.time = 0.0
        self.tick_count = 0
        self.raining = False

        self.ground: Dict[Tuple[int, int], str] = {}
        self.features: Dict[Tuple[int, int], str] = {}
        self.placed: Dict[Tuple[int, int, int], str] = {}
        self._generate_terrain()

        self.items: List[Tuple[str, int, int]] = []
        for _ in range(n_items):
            self._spawn_item()
        self.mobs: List[Mob] = []
        for _ in range(n_hostiles):
            self._spawn_mob(hostile=True)
        for _ in range(n_animals):
            self._spawn_mob(hostile=False)

        self.bodies: Dict[str, Body] = {}

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def _generate_terrain(self):
        for x in range(self.size):
            for z in range(self.size):
                roll = self.rng.random()
                self.ground[(x, z)] = ('stone' if roll < 0.2 else
                                       'sand' if roll < 0.25 else 'grass_block')
                feature = self.rng.random()
                if feature < 0.08:
                    self.features[(x, z)] = 'oak_log'
                elif feature < 0.11:
                    self.features[(x, z)] = 'coal_ore'
                elif feature < 0.13:
                    self.features[(x, z)] = 'iron_ore'
                elif feature < 0.135:
                    self.features[(x, z)] = 'diamond_ore'

    def _random_cell(self) -> Tuple[int, int]:
        return int(self.rng.integers(self.size)), int(self.rng.integers(self.size))

    def _spawn_item(self):
        name = str(self.rng.choice(['apple', 'cobblestone', 'oak_planks', 'stick', 'bread']))
        x, z = self._random_cell()
        self.items.append((name, x, z))

    def _spawn_mob(self, hostile: bool):
        names = ['zombie', 'skeleton', 'creeper'] if hostile else ['cow', 'pig', 'sheep']
        x, z = self._random_cell()
        self.mobs.append(Mob(str(self.rng.choice(names)), float(x), float(z), hostile))

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def add_agent(self, agent_id: str, role: str = "GENERIC") -> Body:
        x, z = self._random_cell()
        body = Body(agent_id, role, float(x), float(z))
        body.visited_chunks.add(body.position.chunk_key())
        self.bodies[agent_id] = body
        return body

    def remove_agent(self, agent_id: str):
        self.bodies.pop(agent_id, None)

    def respawn(self, agent_id: str) -> Body:
        role = self.bodies[agent_id].role
        return self.add_agent(agent_id, role)

    def is_dead(self, agent_id: str) -> bool:
        return self.bodies[agent_id].health <= 0

    def actuator(self, agent_id: str) -> 'SandboxActuator':
        return SandboxActuator(self, agent_id)

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _move(self, body: Body, dx: float, dz: float) -> bool:
        nx = min(max(body.x + dx, 0.0), self.size - 1.0)
        nz = min(max(body.z + dz, 0.0), self.size - 1.0)
        if (nx, nz) == (body.x, body.z):
            body.stuck_steps += 1
            return False
        body.x, body.z = nx, nz
        body.stuck_steps = 0
        body.roof = False
        chunk = body.position.chunk_key()
        if chunk not in body.visited_chunks:
            body.visited_chunks.add(chunk)
            body.new_chunk = True
            body.steps_since_discovery = 0
        return True

    def _nearest_feature(self, body: Body, kinds: Tuple[str, ...],
                         radius: int = 3) -> Optional[Tuple[int, int]]:
        cx, cz = int(round(body.x)), int(round(body.z))
        best, best_d = None, None
        for dx in range(-radius, radius + 1):
            for dz in range(-radius, radius + 1):
                cell = (cx + dx, cz + dz)
                if self.features.get(cell) in kinds:
                    d = abs(dx) + abs(dz)
                    if best_d is None or d < best_d:
                        best, best_d = cell, d
        return best

    def _harvest(self, body: Body, kinds: Tuple[str, ...]) -> bool:
        cell = self._nearest_feature(body, kinds)
        if cell is None:
            return False
        block = self.features.pop(cell)
        drop = {'coal_ore': 'coal', 'diamond_ore': 'diamond'}.get(block, block)
        body.inventory[drop] += 1
        body.resources_gathered += 1
        if drop == 'diamond':
            body.achievements.add('diamonds')
        return True

    def _collect(self, body: Body, radius: float = 4.0) -> bool:
        for i, (name, x, z) in enumerate(self.items):
            if abs(x - body.x) + abs(z - body.z) <= radius:
                body.inventory[name] += 1
                body.resources_gathered += 1
                del self.items[i]
                self._spawn_item()
                return True
        return False

    def _eat(self, body: Body) -> bool:
        for name, value in FOOD_VALUES.items():
            if body.inventory[name] > 0:
                body.inventory[name] -= 1
                body.food = min(20.0, body.food + value)
                return True
        return False

    def _craft(self, body: Body, tool: str) -> bool:
        logs = body.inventory['oak_log'] + body.inventory['oak_planks']
        if logs < 2:
            return False
        material = 'stone' if body.inventory['cobblestone'] >= 3 else 'wooden'
        name = f"{material}_{tool}"
        if body.inventory[name] > 0:
            return False
        for _ in range(2):
            key = 'oak_planks' if body.inventory['oak_planks'] > 0 else 'oak_log'
            body.inventory[key] -= 1
        if material == 'stone':
            body.inventory['cobblestone'] -= 3
        body.inventory[name] += 1
        return True

    def _place(self, body: Body, roof: bool = False) -> bool:
        for name in PLACEABLE:
            if body.inventory[name] > 0:
                body.inventory[name] -= 1
                dy = 3 if roof else 0
                self.placed[(int(round(body.x)) + (0 if roof else 1), GROUND_Y + dy,
                             int(round(body.z)))] = name
                body.blocks_placed += 1
                if roof:
                    body.roof = True
                return True
        return False

    def _attack(self, body: Body, radius: float = 4.0) -> bool:
        targets = [m for m in self.mobs
                   if abs(m.x - body.x) + abs(m.z - body.z) <= radius]
        if not targets:
            return False
        target = min(targets, key=lambda m: (not m.hostile, abs(m.x - body.x) + abs(m.z - body.z)))
        damage = 8.0 if any(k.endswith('sword') for k in body.inventory if body.inventory[k] > 0) else 4.0
        target.health -= damage
        if target.health <= 0:
            self.mobs.remove(target)
            body.mobs_killed += 1
            if not target.hostile:
                body.inventory['cooked_beef'] += 1
            self._spawn_mob(target.hostile)
        return True

    def _peer_nearby(self, body: Body, radius: float = 16.0) -> bool:
        return any(other.agent_id != body.agent_id and
                   other.position.distance_to(body.position) < radius
                   for other in self.bodies.values())

    def apply(self, agent_id: str, action: str) -> bool:
        """Apply a catalog action; returns whether it had an effect."""
        body = self.bodies.get(agent_id)
        if body is None or body.health <= 0:
            return False

        if action in DIRECTIONS:
            dx, dz = DIRECTIONS[action]
            ok = self._move(body, dx, dz)
        elif action in ('random_walk', 'surface_explore', 'seek_adventure', 'sprint'):
            step = 2.0 if action != 'random_walk' else 1.0
            angle = self.rng.random() * 2 * np.pi
            ok = self._move(body, step * np.cos(angle), step * np.sin(angle))
        elif action in ('mine_nearest_ore', 'mine_deep', 'dig_forward', 'dig_down'):
            ok = self._harvest(body, ('coal_ore', 'iron_ore', 'diamond_ore'))
        elif action == 'mine_stone':
            ok = self.ground.get((int(round(body.x)), int(round(body.z)))) == 'stone'
            if ok:
                body.inventory['cobblestone'] += 1
                body.resources_gathered += 1
        elif action == 'chop_nearest_tree':
            ok = self._harvest(body, ('oak_log',))
        elif action in ('collect_nearest_item', 'search_for_resources'):
            ok = self._collect(body)
        elif action in ('gather_food', 'fish', 'farm_crops'):
            ok = self.rng.random() < 0.3
            if ok:
                body.inventory['apple' if action == 'gather_food' else 'bread'] += 1
        elif action in ('eat_food', 'satisfy_needs'):
            ok = self._eat(body)
        elif action == 'craft_tools':
            ok = self._craft(body, 'pickaxe') or self._craft(body, 'axe')
        elif action == 'craft_weapons':
            ok = self._craft(body, 'sword')
        elif action in ('build_shelter_structure', 'find_shelter'):
            ok = self._place(body, roof=True)
        elif action in BUILDING_ACTIONS:
            ok = self._place(body)
        elif action in ('attack_nearest', 'fight_zombie', 'fight_skeleton',
                        'fight_creeper', 'defend_position', 'defend_ally'):
            ok = self._attack(body)
        elif action == 'retreat':
            ok = self._move(body, -1.0, -1.0)
        elif action in ('find_agent', 'trade_with_agent', 'follow_agent', 'share_resources',
                        'request_help', 'gather_near_agents', 'coordinate_mining',
                        'celebrate_achievement'):
            ok = self._peer_nearby(body)
            if ok:
                body.cooperation_events += 1
        else:
            ok = action in KNOWN_ACTIONS

        if ok and action in SKILL_FOR_ACTION:
            skill = SKILL_FOR_ACTION[action]
            body.skill_xp[skill] = body.skill_xp.get(skill, 0.0) + XP_PER_ACTION
        return ok

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def tick(self, dt: float = 1.0):
        """Advance time: mobs move and bite, hunger drains, health regenerates."""
        self.time += dt
        self.tick_count += 1
        if self.tick_count % 200 == 0:
            self.raining = not self.raining

        for mob in self.mobs:
            if mob.hostile and self.bodies:
                target = min(self.bodies.values(),
                             key=lambda b: abs(b.x - mob.x) + abs(b.z - mob.z))
                mob.x += float(np.sign(target.x - mob.x)) * 0.5
                mob.z += float(np.sign(target.z - mob.z)) * 0.5
            else:
                mob.x = min(max(mob.x + float(self.rng.integers(-1, 2)), 0.0), self.size - 1.0)
                mob.z = min(max(mob.z + float(self.rng.integers(-1, 2)), 0.0), self.size - 1.0)

        for body in self.bodies.values():
            if body.health <= 0:
                continue
            body.survival_steps += 1
            body.steps_since_discovery += 1
            if self.tick_count % 20 == 0:
                body.food = max(0.0, body.food - 1.0)
            if body.food <= 0:
                body.health -= 1.0
            elif body.food >= 18 and body.health < 20:
                body.health = min(20.0, body.health + 0.5)
            for mob in self.mobs:
                if mob.hostile and abs(mob.x - body.x) + abs(mob.z - body.z) < 1.5:
                    body.health -= 0.5 if body.roof else 2.0

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def _block(self, x: int, y: int, z: int) -> str:
        if (x, y, z) in self.placed:
            return self.placed[(x, y, z)]
        if y < GROUND_Y:
            return self.ground.get((x, z), 'bedrock')
        if y == GROUND_Y:
            return self.features.get((x, z), 'air')
        return 'air'

    def _skills(self, body: Body) -> Dict[str, SkillLevel]:
        skills = {}
        for name, xp in body.skill_xp.items():
            level = min(int(xp // 100), 10)
            skills[name] = SkillLevel(level=level, xp=xp % 100)
        return skills

    def _moodles(self, body: Body) -> Dict[str, int]:
        moodles = {}
        if body.food < 10:
            moodles['hungry'] = int(min(4, (10 - body.food) // 2 + 1))
        if body.health < 15:
            moodles['injured'] = int(min(4, (15 - body.health) // 3 + 1))
        if self.raining and not body.roof:
            moodles['wet'] = 1
        return moodles

    def snapshot(self, agent_id: str, radius: int = 2) -> ObservationSnapshot:
        body = self.bodies[agent_id]
        cx, cz = int(round(body.x)), int(round(body.z))
        blocks = {}
        for dx in range(-radius, radius + 1):
            for dy in range(-radius, radius + 1):
                for dz in range(-radius, radius + 1):
                    name = self._block(cx + dx, GROUND_Y + dy, cz + dz)
                    blocks[(dx, dy, dz)] = name
                    if name != 'air':
                        body.seen_blocks.add(name)
        if body.roof:
            blocks[(0, 3, 0)] = 'oak_planks'

        entities = []
        for mob in self.mobs:
            pos = Vec3(mob.x, GROUND_Y, mob.z)
            if pos.distance_to(body.position) < 32:
                entities.append(EntityObservation(mob.name, pos, health=mob.health,
                                                  hostile=mob.hostile))
                body.seen_entities.add(mob.name)
        for name, x, z in self.items:
            pos = Vec3(x, GROUND_Y, z)
            if pos.distance_to(body.position) < 16:
                entities.append(EntityObservation(name, pos, kind="item", health=0.0))

        peers = tuple(
            PeerObservation(other.agent_id, other.role, other.position, other.health,
                            sum(1 for v in other.inventory.values() if v > 0))
            for other in self.bodies.values() if other.agent_id != agent_id)

        new_chunk = body.new_chunk
        body.new_chunk = False

        return ObservationSnapshot(
            agent_id=agent_id,
            role=body.role,
            timestamp=self.time,
            position=body.position,
            vitals=Vitals(health=max(body.health, 0.0), food=body.food),
            inventory=tuple(ItemStack(name, count)
                            for name, count in sorted(body.inventory.items()) if count > 0),
            blocks=blocks,
            entities=tuple(entities),
            peers=peers,
            weather=Weather(time_of_day=int(self.time * 20) % 24000, raining=self.raining),
            skills=self._skills(body),
            moodles=self._moodles(body),
            stats=ActivityStats(blocks_placed=body.blocks_placed,
                                mobs_killed=body.mobs_killed,
                                cooperation_events=body.cooperation_events,
                                resources_gathered=body.resources_gathered),
            exploration=ExplorationStats(
                explored_chunks=len(body.visited_chunks),
                steps_since_discovery=body.steps_since_discovery,
                unique_blocks_seen=len(body.seen_blocks),
                unique_entities_seen=len(body.seen_entities),
                total_discoveries=len(body.visited_chunks) - 1,
                new_chunk=new_chunk,
            ),
            achievements=frozenset(body.achievements),
            survival_steps=body.survival_steps,
            stuck=body.stuck_steps >= 3,
        )


class SandboxActuator:
    """Actuator bound to one agent; reports failure instead of raising."""

    def __init__(self, world: SandboxWorld, agent_id: str):
        self.world = world
        self.agent_id = agent_id

    def execute(self, action_name: str) -> bool:
        return self.world.apply(self.agent_id, action_name)
