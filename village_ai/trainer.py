"""
Trainer Orchestrator - runs the per-agent decision loop and the training cadence.

Per decision step, for one agent:
1. Refresh the psychological state (unless the snapshot carries one)
2. Score the previous action with the reward function
3. Evaluate the agent's goal on its own cadence (completion pays a bonus)
4. Encode the goal-enriched snapshot
5. Pick an action: epsilon-random, otherwise the shared/personal blended
   policy reweighted by the goal's action bias
6. Execute it through the actuator

Every ``steps_per_update`` aggregate steps the shared brain trains on a
prioritized replay sample and each personal brain on its own transitions.
Completed episodes additionally get an immediate on-policy PPO update.
Models are saved every ``save_interval`` steps.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

import numpy as np

from world.actions import ActionCatalog, Actuator
from world.snapshot import MemoryEvent, ObservationSnapshot, PsychState
from village_ai.brain import Brain
from village_ai.buffers import EpisodeBuffer, ReplayBuffer, standardize
from village_ai.config import EngineConfig
from village_ai.encoder import FeatureEncoder
from village_ai.goals import GoalManager, GoalStatus
from village_ai.persistence import BrainStore, NpzBrainStore
from village_ai.psyche import PsycheProvider
from village_ai.reward import RewardFunction

logger = logging.getLogger(__name__)


@dataclass
class StepResult:
    action_index: int
    action_name: str
    value_estimate: float
    success: bool
    was_exploring: bool
    reward: float = 0.0
    goal: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'action_index': self.action_index,
            'action_name': self.action_name,
            'value_estimate': self.value_estimate,
            'success': self.success,
            'was_exploring': self.was_exploring,
        }


@dataclass
class PendingStep:
    """A decision whose reward arrives with the next snapshot."""
    state: np.ndarray
    action: int
    value: float
    log_prob: float
    generation: int = 0         # shared brain generation that produced the action


@dataclass
class AgentState:
    agent_id: str
    role: str
    generation: int
    brain: Brain
    psyche: PsychState
    episode: EpisodeBuffer
    parent: Optional[str] = None
    spawn_time: Optional[float] = None
    prev_snapshot: Optional[ObservationSnapshot] = None
    pending: Optional[PendingStep] = None
    last_action: Optional[str] = None
    episode_reward: float = 0.0
    episode_steps: int = 0
    episodes: int = 0
    rewards: List[float] = field(default_factory=list)


class Trainer:
    """
    Composes encoder, catalog, brains, goals, buffers and reward.

    Agents' loops may run concurrently on separate threads. Per-agent state
    is touched only by that agent's thread; the shared brain and replay store
    are internally synchronized; training is guarded by a non-blocking lock
    so a thread that finds training in progress simply skips it.
    """

    def __init__(self, config: Optional[EngineConfig] = None,
                 catalog: Optional[ActionCatalog] = None,
                 encoder: Optional[FeatureEncoder] = None,
                 store: Optional[BrainStore] = None,
                 psyche_provider: Optional[PsycheProvider] = None):
        self.config = config or EngineConfig()
        self.rng = self.config.make_rng()
        self.catalog = catalog or ActionCatalog()
        self.encoder = encoder or FeatureEncoder()
        self.store = store or NpzBrainStore()
        self.psyche_provider = psyche_provider or PsycheProvider()

        t = self.config.trainer
        self.shared_brain = Brain(self.encoder.size, self.catalog.count(),
                                  self.config.brain, rng=self._child_rng(), name="shared")
        self.replay = ReplayBuffer(self.config.replay, rng=self._child_rng())
        self.goals = GoalManager(self.catalog, self.config.goals, rng=self._child_rng())
        self.reward_fn = RewardFunction(self.config.reward)

        self.agents: Dict[str, AgentState] = {}
        self.exploration_rate = t.exploration_rate
        self.training_enabled = True

        self.total_steps = 0
        self.episodes_completed = 0
        self.avg_reward = 0.0
        self.avg_episode_length = 0.0
        self.training_rounds = 0

        self._lock = threading.Lock()
        self._train_lock = threading.Lock()

        logger.info(f"Trainer ready: state={self.encoder.size} actions={self.catalog.count()} "
                    f"model_path={t.model_path}")

    def _child_rng(self) -> np.random.Generator:
        return np.random.default_rng(int(self.rng.integers(2 ** 63)))

    def _agents_snapshot(self) -> List:
        with self._lock:
            return list(self.agents.items())

    # ------------------------------------------------------------------
    # Agent lifecycle
    # ------------------------------------------------------------------

    def spawn_agent(self, agent_id: str, role: str = "GENERIC", generation: int = 1,
                    parent: Optional[str] = None) -> AgentState:
        """
        Register an agent with a fresh psyche and a personal brain. With a
        known ``parent`` the personal brain is a mutated clone of the
        parent's.
        """
        with self._lock:
            if agent_id in self.agents:
                logger.warning(f"Agent {agent_id} already spawned")
                return self.agents[agent_id]
            parent_state = self.agents.get(parent) if parent else None

        t = self.config.trainer
        name = f"{agent_id}-personal"
        if parent_state is not None:
            brain = parent_state.brain.clone(t.mutation_rate, t.mutation_strength,
                                             rng=self._child_rng(), name=name)
        else:
            if parent:
                logger.warning(f"Parent {parent} of {agent_id} not found, using a fresh brain")
            brain = Brain(self.encoder.size, self.catalog.count(), self.config.brain,
                          rng=self._child_rng(), name=name)

        agent = AgentState(
            agent_id=agent_id,
            role=role,
            generation=generation,
            brain=brain,
            psyche=self.psyche_provider.initial_state(),
            episode=EpisodeBuffer(self.config.brain.gamma, self.config.brain.gae_lambda),
            parent=parent_state.agent_id if parent_state is not None else None,
        )
        with self._lock:
            self.agents[agent_id] = agent
        logger.info(f"Spawned {agent_id} ({role}, generation {generation})")
        return agent

    def despawn_agent(self, agent_id: str, snapshot: Optional[ObservationSnapshot] = None):
        """Remove an agent; a final snapshot closes its episode first."""
        agent = self.agents.get(agent_id)
        if agent is None:
            return
        if snapshot is not None and agent.pending is not None:
            self.end_episode(agent_id, snapshot, died=False)
        elif len(agent.episode) > 0:
            agent.episode.drain_into(self.replay, agent_id)

        with self._lock:
            self.agents.pop(agent_id, None)
        self.goals.forget(agent_id)
        agent.brain.dispose()
        logger.info(f"Despawned {agent_id}")

    # ------------------------------------------------------------------
    # Decision loop
    # ------------------------------------------------------------------

    def _observe(self, agent: AgentState, snapshot: ObservationSnapshot) -> ObservationSnapshot:
        if agent.spawn_time is None:
            agent.spawn_time = snapshot.timestamp
        if snapshot.psyche is not None:
            agent.psyche = snapshot.psyche
            return snapshot
        elapsed = snapshot.timestamp - agent.spawn_time
        agent.psyche = self.psyche_provider.refresh(agent.psyche, snapshot, elapsed,
                                                    agent.episode_reward)
        return replace(snapshot, psyche=agent.psyche)

    def _evaluate_goal(self, agent: AgentState, snapshot: ObservationSnapshot) -> float:
        if not self.goals.should_evaluate(agent.agent_id, snapshot.timestamp):
            return 0.0
        update = self.goals.update(agent.agent_id, snapshot)
        if update is None or update.outcome is not GoalStatus.COMPLETED:
            return 0.0
        agent.psyche = self.psyche_provider.remember(
            agent.psyche, MemoryEvent('achievement', valence=0.8, arousal=0.6))
        return update.bonus

    def _policy(self, agent: AgentState, state: np.ndarray):
        """
        Blended action distribution and value estimate, plus the shared
        brain's output that supplies the stored log-probability.
        """
        w = self.config.trainer.personal_weight
        shared = self.shared_brain.policy_outputs(state)
        probs = shared.probs.astype(np.float64)
        value = shared.value
        if w > 0 and not agent.brain.disposed:
            personal = agent.brain.policy_outputs(state)
            probs = (1 - w) * probs + w * personal.probs
            value = (1 - w) * value + w * personal.value
        return probs, float(value), shared

    def _choose(self, agent_id: str, probs: np.ndarray):
        if self.rng.random() < self.exploration_rate:
            return int(self.rng.integers(self.catalog.count())), True

        biased = probs * self.goals.action_bias_vector(agent_id)
        total = biased.sum()
        if not np.isfinite(total) or total <= 0:
            biased = np.full(len(probs), 1.0 / len(probs))
        else:
            biased = biased / total
        return int(self.rng.choice(len(biased), p=biased)), False

    def step(self, agent_id: str, snapshot: ObservationSnapshot,
             actuator: Actuator) -> StepResult:
        agent = self.agents.get(agent_id)
        if agent is None:
            raise KeyError(f"agent {agent_id} was never spawned")

        snapshot = self._observe(agent, snapshot)

        reward = 0.0
        if agent.prev_snapshot is not None:
            reward = self.reward_fn.compute(agent.prev_snapshot, snapshot,
                                            agent.last_action, agent.psyche).total
        reward += self._evaluate_goal(agent, snapshot)

        enriched = replace(
            snapshot,
            psyche=agent.psyche,
            active_goal=self.goals.goal_context(agent_id, snapshot),
            episode_reward=agent.episode_reward,
        )
        state = self.encoder.encode(enriched)

        if agent.pending is not None:
            p = agent.pending
            if agent.episode.add(p.state, p.action, reward, p.value, p.log_prob, False):
                agent.episode_reward += reward

        probs, value, shared = self._policy(agent, state)
        action, exploring = self._choose(agent_id, probs)
        log_prob = shared.log_prob(action)
        action_name = self.catalog.name_of(action)

        success = self.catalog.execute(action, actuator)

        agent.pending = PendingStep(state, action, value, log_prob, shared.generation)
        agent.prev_snapshot = enriched
        agent.last_action = action_name
        agent.episode_steps += 1

        with self._lock:
            self.total_steps += 1
            total = self.total_steps
            t = self.config.trainer
            self.exploration_rate = max(t.min_exploration, self.exploration_rate * t.exploration_decay)

        if self.training_enabled and total % self.config.trainer.steps_per_update == 0:
            self.train_all_brains()
        if total % self.config.trainer.save_interval == 0:
            self.save_all_models()

        goal = self.goals.current(agent_id)
        return StepResult(action, action_name, value, success, exploring, reward,
                          goal.key if goal is not None else None)

    def end_episode(self, agent_id: str, snapshot: ObservationSnapshot,
                    died: bool = True) -> Optional[Dict]:
        """
        Close the agent's episode: score the final step, run on-policy PPO on
        the trajectory and drain it into the replay store.
        """
        agent = self.agents.get(agent_id)
        if agent is None:
            return None

        snapshot = self._observe(agent, snapshot)
        if agent.pending is not None:
            reward = 0.0
            if agent.prev_snapshot is not None:
                reward = self.reward_fn.compute(agent.prev_snapshot, snapshot,
                                                agent.last_action, agent.psyche).total
            if died:
                reward += self.config.trainer.death_penalty
            p = agent.pending
            if agent.episode.add(p.state, p.action, reward, p.value, p.log_prob, True):
                agent.episode_reward += reward

        data = agent.episode.get_data()
        losses = None
        if len(data) > 0 and self.training_enabled:
            losses = self.shared_brain.train_ppo(
                data.states, data.actions, data.log_probs, standardize(data.advantages),
                data.returns, epochs=self.config.trainer.training_epochs)
        moved = agent.episode.drain_into(self.replay, agent_id, data)

        summary = {
            'agent_id': agent_id,
            'steps': agent.episode_steps,
            'total_reward': agent.episode_reward,
            'transitions': moved,
            'losses': losses,
        }
        self._record_episode(agent)

        if died:
            agent.psyche = self.psyche_provider.remember(
                agent.psyche, MemoryEvent('death', valence=-1.0, arousal=1.0))
        agent.pending = None
        agent.prev_snapshot = None
        agent.last_action = None
        agent.spawn_time = None
        agent.episode_reward = 0.0
        agent.episode_steps = 0
        self.goals.forget(agent_id)

        logger.info(f"Episode ended for {agent_id}: {summary['steps']} steps, "
                    f"reward {summary['total_reward']:.2f}")
        return summary

    def _record_episode(self, agent: AgentState):
        s = self.config.trainer.stats_smoothing
        agent.episodes += 1
        agent.rewards.append(agent.episode_reward)
        with self._lock:
            self.episodes_completed += 1
            if self.episodes_completed == 1:
                self.avg_reward = agent.episode_reward
                self.avg_episode_length = float(agent.episode_steps)
            else:
                self.avg_reward = s * self.avg_reward + (1 - s) * agent.episode_reward
                self.avg_episode_length = (s * self.avg_episode_length
                                           + (1 - s) * agent.episode_steps)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train_all_brains(self) -> Optional[Dict]:
        """
        One batched training round. Returns per-brain losses, or None when
        another thread is already training.
        """
        if not self._train_lock.acquire(blocking=False):
            logger.debug("Training already in progress, skipping")
            return None
        try:
            results = {}
            if self.replay.is_ready(self.config.trainer.min_buffer_size):
                shared = self._train_shared()
                if shared is not None:
                    results['shared'] = shared
            for agent_id, agent in self._agents_snapshot():
                personal = self._train_personal(agent)
                if personal is not None:
                    results[agent_id] = personal
            self.training_rounds += 1
            if results:
                logger.info(f"Training round {self.training_rounds}: "
                            f"{len(results)} brains updated")
            return results
        finally:
            self._train_lock.release()

    def _train_shared(self) -> Optional[Dict[str, float]]:
        t = self.config.trainer
        gamma = self.config.brain.gamma
        losses = []
        for _ in range(max(1, t.sample_size // t.batch_size)):
            batch, keys, weights = self.replay.sample_prioritized(t.batch_size)
            if not batch:
                break
            states = np.stack([tr.state for tr in batch])
            actions = np.array([tr.action for tr in batch], dtype=np.int64)
            rewards = np.array([tr.reward for tr in batch], dtype=np.float32)
            old_log_probs = np.array([tr.log_prob for tr in batch], dtype=np.float32)

            next_values = np.zeros(len(batch), dtype=np.float32)
            live = [i for i, tr in enumerate(batch) if not tr.done and tr.next_state is not None]
            if live:
                next_values[live] = self.shared_brain.evaluate_states(
                    np.stack([batch[i].next_state for i in live]))
            targets = rewards + gamma * next_values
            td_errors = targets - self.shared_brain.evaluate_states(states)

            if not np.all(np.isfinite(td_errors)):
                logger.warning("Non-finite TD errors in replay batch, skipping")
                continue

            result = self.shared_brain.train_ppo(states, actions, old_log_probs,
                                                 standardize(td_errors), targets,
                                                 epochs=t.shared_epochs, weights=weights)
            self.replay.update_priorities(keys, td_errors)
            if result is not None:
                losses.append(result)

        if not losses:
            return None
        return {
            'actor_loss': float(np.mean([r['actor_loss'] for r in losses])),
            'critic_loss': float(np.mean([r['critic_loss'] for r in losses])),
            'batches': len(losses),
        }

    def _train_personal(self, agent: AgentState) -> Optional[Dict[str, float]]:
        t = self.config.trainer
        if agent.brain.disposed:
            return None
        owned = self.replay.by_owner(agent.agent_id, t.sample_size)
        if len(owned) < t.personal_min_experiences:
            return None

        n = min(t.personal_batch_size, len(owned))
        batch = [owned[i] for i in self.rng.choice(len(owned), size=n, replace=False)]
        states = np.stack([tr.state for tr in batch])
        actions = np.array([tr.action for tr in batch], dtype=np.int64)
        advantages = standardize(np.array([tr.advantage for tr in batch], dtype=np.float32))
        returns = np.array([tr.discounted_return for tr in batch], dtype=np.float32)
        old_log_probs = agent.brain.log_probs(states, actions)

        return agent.brain.train_ppo(states, actions, old_log_probs, advantages, returns,
                                     epochs=t.personal_epochs)

    def set_training(self, enabled: bool):
        self.training_enabled = bool(enabled)
        logger.info(f"Training {'enabled' if enabled else 'disabled'}")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _shared_path(self) -> str:
        return os.path.join(self.config.trainer.model_path, 'shared_brain')

    def save_all_models(self) -> bool:
        """Save the shared brain, every personal brain and the trainer stats."""
        model_path = self.config.trainer.model_path
        ok = self.shared_brain.save(self._shared_path(), self.store)
        for agent_id, agent in self._agents_snapshot():
            path = os.path.join(model_path, 'agents', agent_id)
            ok = agent.brain.save(path, self.store) and ok

        try:
            os.makedirs(model_path, exist_ok=True)
            with open(os.path.join(model_path, 'trainer_stats.json'), 'w') as f:
                json.dump(self.get_stats(), f, indent=2)
        except OSError as e:
            logger.error(f"Failed to write trainer stats: {e}")
            ok = False
        return ok

    def load_shared_brain(self, path: Optional[str] = None) -> bool:
        return self.shared_brain.load(path or self._shared_path(), self.store)

    # ------------------------------------------------------------------
    # Stats / lifecycle
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict:
        return {
            'total_steps': self.total_steps,
            'episodes_completed': self.episodes_completed,
            'avg_reward': float(self.avg_reward),
            'avg_episode_length': float(self.avg_episode_length),
            'buffer_size': len(self.replay),
            'exploration_rate': float(self.exploration_rate),
            'active_agents': len(self.agents),
            'training_rounds': self.training_rounds,
            'shared_brain': self.shared_brain.get_stats(),
        }

    def dispose(self):
        for agent in list(self.agents.values()):
            agent.brain.dispose()
        self.agents.clear()
        self.shared_brain.dispose()
        logger.info("Trainer disposed")
