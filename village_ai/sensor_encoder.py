"""
Sensor segment encoders for the optional server-side sensor payload.

Every segment here reads ``snapshot.sensors``; when the payload (or the part of
it a segment needs) is missing the segment returns nothing and is zero-filled
by the FeatureEncoder.
"""

import math
from collections import Counter
from typing import List

from village_ai.encoder import SegmentEncoder, closeness, normalize_coord, saturate
from village_ai.vocab import (
    AGRICULTURAL_BLOCKS, BLOCK_VOCAB, BUILDING_MATERIALS, DANGER_BLOCKS,
    FOOD_ITEMS, ITEM_VOCAB, ORE_TYPES, PASSIVE_MOBS, SENSOR_HOSTILES,
    STRUCTURAL_BLOCKS, VALUABLE_ITEMS,
)

# Cap on blocks considered per step; payloads can carry hundreds of thousands
MAX_SENSOR_BLOCKS = 1000


def _is_hostile(entity) -> bool:
    return entity.category == 'hostile' or entity.type.lower() in SENSOR_HOSTILES


def _quadrants(entities) -> List[float]:
    """Threat count per quadrant (NE, SE, SW, NW) for entities with offsets."""
    counts = [0, 0, 0, 0]
    for e in entities:
        if e.dx is None or e.dz is None:
            continue
        if e.dx >= 0 and e.dz >= 0:
            counts[0] += 1
        elif e.dx >= 0:
            counts[1] += 1
        elif e.dz < 0:
            counts[2] += 1
        else:
            counts[3] += 1
    return [saturate(c, 5.0) for c in counts]


class SensorBlockSegment(SegmentEncoder):
    name = "sensor_blocks"
    width = 50

    def features(self, snapshot):
        sensors = snapshot.sensors
        if sensors is None or not sensors.blocks:
            return []
        blocks = sensors.blocks[:MAX_SENSOR_BLOCKS]
        n = len(blocks)
        counts = Counter(b.type for b in blocks)

        features = []
        top = counts.most_common(5)
        for i in range(5):
            if i < len(top) and top[i][0] in BLOCK_VOCAB:
                features.append(BLOCK_VOCAB.index(top[i][0]) / len(BLOCK_VOCAB))
            else:
                features.append(0.0)

        features.append(min(1.0, sum(b.hardness for b in blocks) / n / 50.0))
        features.append(sum(b.light_level for b in blocks) / n / 15.0)
        features.append(sum(1 for b in blocks if b.passable) / n)
        features.append(sum(1 for b in blocks if b.solid) / n)
        features.append(sum(1 for b in blocks if b.flammable) / n)

        features.extend(saturate(counts.get(ore, 0), 10.0) for ore in ORE_TYPES)
        features.extend(saturate(counts.get(mat, 0), 50.0) for mat in BUILDING_MATERIALS)
        features.extend(saturate(counts.get(kind, 0), limit) for kind, limit in DANGER_BLOCKS)
        features.extend(saturate(counts.get(kind, 0), 3.0) for kind in STRUCTURAL_BLOCKS)
        features.extend(saturate(counts.get(kind, 0), 10.0) for kind in AGRICULTURAL_BLOCKS)

        ax = sum(b.x for b in blocks) / n
        ay = sum(b.y for b in blocks) / n
        az = sum(b.z for b in blocks) / n
        spread = max(math.sqrt((b.x - ax) ** 2 + (b.y - ay) ** 2 + (b.z - az) ** 2)
                     for b in blocks)
        features.extend([
            normalize_coord(ax), normalize_coord(ay), normalize_coord(az),
            saturate(spread, 30.0),
            saturate(n, 27000.0),
        ])
        return features


class SensorEntitySegment(SegmentEncoder):
    name = "sensor_entities"
    width = 30

    def features(self, snapshot):
        sensors = snapshot.sensors
        if sensors is None or not sensors.entities:
            return []
        entities = sensors.entities
        types = Counter(e.type.lower() for e in entities)
        hostiles = sorted((e for e in entities if _is_hostile(e)),
                          key=lambda e: e.distance if e.distance is not None else 32.0)
        passive = sum(1 for e in entities if e.category == 'passive')
        neutral = sum(1 for e in entities if e.category == 'neutral')

        features = [saturate(len(hostiles), 10.0), saturate(passive, 20.0),
                    saturate(neutral, 10.0)]
        for i in range(5):
            if i < len(hostiles):
                dist = hostiles[i].distance if hostiles[i].distance is not None else 32.0
                features.append(closeness(dist, 32.0))
            else:
                features.append(0.0)

        for mob in SENSOR_HOSTILES:
            group = [e for e in entities if e.type.lower() == mob]
            features.append(sum(e.health for e in group) / len(group) / 20.0 if group else 0.0)

        features.extend(saturate(types.get(mob, 0), 10.0) for mob in PASSIVE_MOBS)

        projectiles = types.get('arrow', 0)
        features.extend([
            saturate(types.get('player', 0), 5.0),
            saturate(types.get('villager', 0), 10.0),
            saturate(types.get('item', 0), 20.0),
            saturate(types.get('experience_orb', 0), 10.0),
            saturate(projectiles, 5.0),
        ])
        features.extend(_quadrants(hostiles[:5]))
        features.append(saturate(len(entities), 50.0))
        features.append(min(1.0, (len(hostiles) * 2 + projectiles) / 25.0))
        return features


class SensorTargetingSegment(SegmentEncoder):
    """Which mobs are hunting this agent, how hurt they are and how close."""

    name = "sensor_targeting"
    width = 40

    def features(self, snapshot):
        sensors = snapshot.sensors
        if sensors is None or not sensors.entities:
            return []
        mobs = [e for e in sensors.entities if e.category not in ('item', 'projectile')]
        if not mobs:
            return []

        def dist_of(e, default):
            return e.distance if e.distance is not None else default

        on_me = sorted((m for m in mobs if m.target == 'me'), key=lambda m: dist_of(m, 16.0))
        features = [
            saturate(len(on_me), 5.0),
            saturate(sum(1 for m in mobs if m.target == 'agent'), 5.0),
            saturate(sum(1 for m in mobs if m.target is None), 10.0),
            saturate(sum(1 for m in mobs if m.target == 'animal'), 5.0),
            saturate(sum(1 for m in mobs if m.aggressive), 10.0),
        ]
        features.extend(closeness(dist_of(on_me[i], 16.0), 16.0) if i < len(on_me) else 0.0
                        for i in range(5))

        limits = (3.0, 3.0, 3.0, 2.0, 1.0)
        for mob, limit in zip(SENSOR_HOSTILES, limits):
            features.append(saturate(sum(1 for m in on_me if m.type.lower() == mob), limit))

        healths = [m.health for m in mobs]
        features.extend([
            saturate(sum(1 for h in healths if h < 5), 5.0),
            saturate(sum(1 for h in healths if 5 <= h < 15), 10.0),
            saturate(sum(1 for h in healths if h >= 15), 10.0),
            sum(healths) / len(healths) / 20.0,
            min(min(healths), 20.0) / 20.0,
        ])

        dists = [dist_of(m, 32.0) for m in mobs]
        features.extend([
            saturate(sum(1 for d in dists if d < 8), 5.0),
            saturate(sum(1 for d in dists if 8 <= d < 16), 10.0),
            saturate(sum(1 for d in dists if d >= 16), 10.0),
            saturate(sum(dists) / len(dists), 32.0),
            saturate(min(min(dists), 32.0), 32.0),
        ])

        features.extend(_quadrants(on_me))
        for mob in SENSOR_HOSTILES:
            features.append(saturate(sum(1 for m in mobs
                                         if m.aggressive and m.type.lower() == mob), 3.0))
        features.append(min(1.0, sum(closeness(dist_of(m, 16.0), 16.0) for m in on_me) / 3.0))
        return features


class SensorWeatherSegment(SegmentEncoder):
    name = "sensor_weather"
    width = 10

    def features(self, snapshot):
        sensors = snapshot.sensors
        if sensors is None or sensors.weather is None:
            return []
        w = sensors.weather
        tod = w.full_time % 24000
        is_night = tod >= 12000
        danger = (0.3 if w.raining else 0.0) + (0.4 if w.thundering else 0.0) + \
            (0.3 if is_night else 0.0)
        return [
            1.0 if w.raining else 0.0,
            1.0 if w.thundering else 0.0,
            w.rain_level,
            w.thunder_level,
            tod / 24000.0,
            0.0 if is_night else 1.0,
            1.0 if is_night else 0.0,
            w.sky_light / 15.0,
            min(1.0, danger),
            w.block_light / 15.0,
        ]


class SensorChunkSegment(SegmentEncoder):
    """Loaded-chunk summary plus the 8 chunks surrounding the agent."""

    name = "sensor_chunks"
    width = 30

    def features(self, snapshot):
        sensors = snapshot.sensors
        if sensors is None or not sensors.chunks:
            return []
        chunks = sensors.chunks
        by_key = {(c.x, c.z): c for c in chunks}
        cx, cz = snapshot.position.chunk_key()

        features = [
            saturate(len(chunks), 200.0),
            sum(1 for c in chunks if c.loaded) / len(chunks),
            saturate(sum(c.entity_count for c in chunks), 100.0),
            saturate(sum(c.tile_entity_count for c in chunks), 50.0),
            saturate(sum(1 for c in chunks if c.slime_chunk), 5.0),
            saturate(sum(c.inhabited_time for c in chunks) / len(chunks), 72000.0),
        ]

        neighbours = [by_key.get((cx + dx, cz + dz))
                      for dx in (-1, 0, 1) for dz in (-1, 0, 1) if (dx, dz) != (0, 0)]
        features.extend(1.0 if c is not None and c.loaded else 0.0 for c in neighbours)
        features.extend(saturate(c.entity_count, 20.0) if c is not None else 0.0
                        for c in neighbours)

        here = by_key.get((cx, cz))
        if here is not None:
            features.extend([
                1.0 if here.loaded else 0.0,
                saturate(here.entity_count, 20.0),
                saturate(here.tile_entity_count, 10.0),
                saturate(here.inhabited_time, 72000.0),
                1.0 if here.slime_chunk else 0.0,
            ])
        else:
            features.extend([0.0] * 5)

        loaded_near = sum(1 for c in neighbours if c is not None and c.loaded)
        features.append(loaded_near / 8.0)
        features.append(saturate(max(c.entity_count for c in chunks), 50.0))
        features.append(sum(1 for c in chunks if c.entity_count > 0) / len(chunks))
        return features


class SensorItemSegment(SegmentEncoder):
    name = "sensor_items"
    width = 40

    def features(self, snapshot):
        sensors = snapshot.sensors
        if sensors is None or not sensors.items:
            return []
        items = sensors.items
        totals = Counter()
        for item in items:
            totals[item.name] += item.count

        features = []
        top = totals.most_common(10)
        for i in range(10):
            if i < len(top) and top[i][0] in ITEM_VOCAB:
                features.append(ITEM_VOCAB.index(top[i][0]) / len(ITEM_VOCAB))
            else:
                features.append(0.0)

        def count_matching(*fragments):
            return sum(1 for i in items if any(f in i.name for f in fragments))

        features.extend([
            saturate(count_matching('diamond'), 5.0),
            saturate(count_matching('iron'), 10.0),
            saturate(count_matching('gold'), 10.0),
            saturate(count_matching('pickaxe', '_axe', 'sword'), 5.0),
            saturate(sum(1 for i in items if i.name in FOOD_ITEMS), 10.0),
        ])

        ages = [i.age for i in items]
        features.extend([
            saturate(sum(1 for a in ages if a < 1000), 10.0),
            saturate(sum(1 for a in ages if 1000 <= a < 5000), 5.0),
            saturate(sum(1 for a in ages if a >= 5000), 5.0),
            saturate(sum(ages) / len(ages), 6000.0),
            saturate(min(ages), 6000.0),
        ])

        valuable = sorted((i for i in items
                           if any(f in i.name for f in ('diamond', 'iron', 'gold'))),
                          key=lambda i: i.distance if i.distance is not None else 32.0)
        for i in range(5):
            if i < len(valuable):
                dist = valuable[i].distance if valuable[i].distance is not None else 32.0
                features.append(closeness(dist, 32.0))
            else:
                features.append(0.0)

        counts = [i.count for i in items]
        features.extend([
            saturate(sum(1 for c in counts if c < 10), 10.0),
            saturate(sum(1 for c in counts if 10 <= c < 32), 10.0),
            saturate(sum(1 for c in counts if c >= 32), 5.0),
            saturate(sum(counts) / len(counts), 64.0),
            saturate(max(counts), 64.0),
        ])

        names = {i.name for i in items}
        features.extend(1.0 if name in names else 0.0 for name in VALUABLE_ITEMS)
        return features


def sensor_segments() -> List[SegmentEncoder]:
    return [
        SensorBlockSegment(), SensorEntitySegment(), SensorTargetingSegment(),
        SensorWeatherSegment(), SensorChunkSegment(), SensorItemSegment(),
    ]
