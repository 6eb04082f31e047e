"""
World interface for Village Mind.

Everything the learning core knows about the simulated world:

- Immutable observation snapshots (vitals, inventory, neighborhood, peers,
  weather, psychological state, optional rich sensor payload)
- The static action catalog and the Actuator protocol that executes actions
- A deterministic sandbox world for training runs and tests
"""

from world.snapshot import (
    Vec3, Vitals, ItemStack, EntityObservation, PeerObservation, Weather,
    SkillLevel, ActivityStats, ExplorationStats, GoalContext, Needs, Moods,
    Relationship, MemoryEvent, PsychState, SensorPayload, ObservationSnapshot,
)
from world.actions import ActionCategory, ActionSpec, ACTIONS, ActionCatalog, Actuator
from world.sandbox import SandboxWorld, SandboxActuator

__all__ = [
    "Vec3", "Vitals", "ItemStack", "EntityObservation", "PeerObservation",
    "Weather", "SkillLevel", "ActivityStats", "ExplorationStats", "GoalContext",
    "Needs", "Moods", "Relationship", "MemoryEvent", "PsychState",
    "SensorPayload", "ObservationSnapshot",
    "ActionCategory", "ActionSpec", "ACTIONS", "ActionCatalog", "Actuator",
    "SandboxWorld", "SandboxActuator",
]
