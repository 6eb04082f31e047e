"""
Psychological state provider - derives needs and moods from observations.

Agents receive an initial PsychState at spawn. Each refresh returns a new
immutable state; relationships and memories are carried over untouched, since
they are owned by an external memory system.
"""

from dataclasses import replace
from typing import Optional

from world.snapshot import MemoryEvent, Moods, Needs, ObservationSnapshot, PsychState

MAX_MEMORIES = 50


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


class PsycheProvider:

    def __init__(self, happiness_smoothing: float = 0.9, energy_horizon: float = 3600.0):
        self.happiness_smoothing = happiness_smoothing
        self.energy_horizon = energy_horizon

    def initial_state(self) -> PsychState:
        return PsychState(needs=Needs(), moods=Moods())

    def derive_needs(self, snapshot: ObservationSnapshot, elapsed: float) -> Needs:
        """Needs from the snapshot; ``elapsed`` is seconds since spawn."""
        vitals = snapshot.vitals
        weather = snapshot.weather
        energy = _clamp(1.0 - elapsed / self.energy_horizon)

        weather_penalty = (0.2 if weather.raining else 0.0) + (0.3 if weather.thundering else 0.0)
        comfort = _clamp(0.5 + (0.2 if snapshot.has_roof() else 0.0)
                         - weather_penalty + vitals.health / 20.0 * 0.3)

        milestones = sum(1 for a in ('diamonds', 'iron_armor', 'enchanting_table')
                         if a in snapshot.achievements)

        return Needs(
            hunger=_clamp(vitals.food / 20.0),
            energy=energy,
            safety=_clamp(1.0 - len(snapshot.hostiles_within(16.0)) * 0.2),
            social=min(1.0, 0.3 + len(snapshot.peers_within(32.0)) * 0.15),
            comfort=comfort,
            achievement=min(1.0, milestones / 3.0),
            exploration=_clamp(1.0 - snapshot.exploration.steps_since_discovery / 100.0),
            cooperation=min(1.0, snapshot.stats.cooperation_events / 10.0),
            creativity=min(1.0, snapshot.stats.blocks_placed / 20.0),
            rest=energy * 0.8 + 0.2,
        )

    def derive_moods(self, previous: Moods, needs: Needs,
                     snapshot: ObservationSnapshot, episode_reward: float) -> Moods:
        health = snapshot.vitals.health
        need_avg = (needs.hunger + needs.energy + needs.safety +
                    needs.social + needs.comfort) / 5.0
        happiness = (previous.happiness * self.happiness_smoothing +
                     need_avg * (1.0 - self.happiness_smoothing))
        boredom = min(1.0, (1.0 - needs.exploration) * (1.0 - needs.achievement))
        danger = 1.0 - needs.safety

        return Moods(
            happiness=happiness,
            stress=min(1.0, danger + (0.3 if health < 10 else 0.0)),
            boredom=boredom,
            motivation=_clamp(episode_reward / 100.0 + health / 30.0, 0.2, 1.0),
            loneliness=1.0 - needs.social,
            confidence=min(1.0, 0.3 + min(0.4, snapshot.survival_steps / 1000.0)
                           + min(0.3, snapshot.generation / 10.0) + needs.achievement),
            curiosity=min(1.0, (needs.exploration + boredom) / 2.0),
            fear=min(1.0, danger * 0.7 + (0.5 if health < 6 else 0.0)),
        )

    def refresh(self, previous: Optional[PsychState], snapshot: ObservationSnapshot,
                elapsed: float = 0.0, episode_reward: float = 0.0) -> PsychState:
        previous = previous or self.initial_state()
        needs = self.derive_needs(snapshot, elapsed)
        moods = self.derive_moods(previous.moods, needs, snapshot, episode_reward)
        return replace(previous, needs=needs, moods=moods)

    @staticmethod
    def remember(state: PsychState, event: MemoryEvent) -> PsychState:
        """Append a memory, keeping the most recent MAX_MEMORIES."""
        memories = (state.memories + (event,))[-MAX_MEMORIES:]
        return replace(state, memories=memories)
