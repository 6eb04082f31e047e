"""
Experience storage: per-agent episode buffers and the global replay store.

EpisodeBuffer keeps one agent's trajectory and computes discounted returns and
GAE advantages on demand. At a terminal event the trajectory drains into the
ReplayBuffer, a fixed-capacity circular store shared by every agent that
supports uniform and prioritized sampling.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from village_ai.config import ReplayConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Transition:
    """One decision step. Immutable once stored; only its priority changes."""
    state: np.ndarray
    action: int
    reward: float
    next_state: Optional[np.ndarray]
    done: bool
    owner: str
    value: float = 0.0
    log_prob: float = 0.0
    advantage: float = 0.0
    discounted_return: float = 0.0


@dataclass
class EpisodeData:
    """Aligned arrays for one trajectory, ready for a PPO update."""
    states: np.ndarray
    actions: np.ndarray
    rewards: np.ndarray
    values: np.ndarray
    log_probs: np.ndarray
    dones: np.ndarray
    returns: np.ndarray
    advantages: np.ndarray

    def __len__(self) -> int:
        return len(self.actions)


def standardize(values: np.ndarray, eps: float = 1e-8) -> np.ndarray:
    """Zero mean, unit variance."""
    values = np.asarray(values, dtype=np.float32)
    if len(values) == 0:
        return values
    return ((values - values.mean()) / (values.std() + eps)).astype(np.float32)


def discounted_returns(rewards: np.ndarray, dones: np.ndarray, gamma: float) -> np.ndarray:
    """G_t = r_t + gamma * G_{t+1}, restarting after every terminal step."""
    returns = np.zeros(len(rewards), dtype=np.float32)
    running = 0.0
    for t in reversed(range(len(rewards))):
        running = rewards[t] + gamma * running * (1.0 - dones[t])
        returns[t] = running
    return returns


def gae_advantages(rewards: np.ndarray, values: np.ndarray, dones: np.ndarray,
                   gamma: float, gae_lambda: float,
                   bootstrap_value: float = 0.0) -> np.ndarray:
    """Generalized Advantage Estimation over one trajectory."""
    n = len(rewards)
    advantages = np.zeros(n, dtype=np.float32)
    last_gae = 0.0
    next_value = bootstrap_value
    for t in reversed(range(n)):
        next_non_terminal = 1.0 - dones[t]
        delta = rewards[t] + gamma * next_value * next_non_terminal - values[t]
        last_gae = delta + gamma * gae_lambda * next_non_terminal * last_gae
        advantages[t] = last_gae
        next_value = values[t]
    return advantages


@dataclass
class EpisodeBuffer:
    """Per-agent trajectory store."""
    gamma: float = 0.99
    gae_lambda: float = 0.95
    states: List[np.ndarray] = field(default_factory=list)
    actions: List[int] = field(default_factory=list)
    rewards: List[float] = field(default_factory=list)
    values: List[float] = field(default_factory=list)
    log_probs: List[float] = field(default_factory=list)
    dones: List[bool] = field(default_factory=list)

    def add(self, state: np.ndarray, action: int, reward: float, value: float,
            log_prob: float, done: bool) -> bool:
        """Append one step; steps with a non-finite reward or value are dropped."""
        if not (np.isfinite(reward) and np.isfinite(value)):
            logger.warning(f"Dropping step with non-finite reward/value ({reward}, {value})")
            return False
        self.states.append(state)
        self.actions.append(int(action))
        self.rewards.append(float(reward))
        self.values.append(float(value))
        self.log_probs.append(float(log_prob))
        self.dones.append(bool(done))
        return True

    def clear(self):
        self.states.clear()
        self.actions.clear()
        self.rewards.clear()
        self.values.clear()
        self.log_probs.clear()
        self.dones.clear()

    def __len__(self) -> int:
        return len(self.actions)

    @property
    def size(self) -> int:
        return len(self)

    def total_reward(self) -> float:
        return float(sum(self.rewards))

    def _aligned(self) -> Tuple[np.ndarray, ...]:
        columns = (self.states, self.actions, self.rewards,
                   self.values, self.log_probs, self.dones)
        n = min(len(c) for c in columns)
        if any(len(c) != n for c in columns):
            logger.warning(f"Episode arrays out of sync {[len(c) for c in columns]}, "
                           f"truncating to {n}")
        states = (np.stack(self.states[:n]).astype(np.float32) if n
                  else np.zeros((0, 0), dtype=np.float32))
        return (states,
                np.asarray(self.actions[:n], dtype=np.int64),
                np.asarray(self.rewards[:n], dtype=np.float32),
                np.asarray(self.values[:n], dtype=np.float32),
                np.asarray(self.log_probs[:n], dtype=np.float32),
                np.asarray(self.dones[:n], dtype=np.float32))

    def compute_returns(self) -> np.ndarray:
        _, _, rewards, _, _, dones = self._aligned()
        return discounted_returns(rewards, dones, self.gamma)

    def compute_advantages(self, bootstrap_value: float = 0.0) -> np.ndarray:
        _, _, rewards, values, _, dones = self._aligned()
        return gae_advantages(rewards, values, dones, self.gamma,
                              self.gae_lambda, bootstrap_value)

    def get_data(self, bootstrap_value: float = 0.0) -> EpisodeData:
        states, actions, rewards, values, log_probs, dones = self._aligned()
        returns = discounted_returns(rewards, dones, self.gamma)
        advantages = gae_advantages(rewards, values, dones, self.gamma,
                                    self.gae_lambda, bootstrap_value)

        finite = np.isfinite(returns) & np.isfinite(advantages)
        if not np.all(finite):
            logger.warning(f"Dropping {int((~finite).sum())} steps with non-finite targets")
            states, actions, rewards, values = states[finite], actions[finite], rewards[finite], values[finite]
            log_probs, dones = log_probs[finite], dones[finite]
            returns, advantages = returns[finite], advantages[finite]

        return EpisodeData(states, actions, rewards, values, log_probs,
                           dones, returns, advantages)

    def to_transitions(self, owner: str, data: Optional[EpisodeData] = None) -> List[Transition]:
        data = data if data is not None else self.get_data()
        transitions = []
        n = len(data)
        for t in range(n):
            done = bool(data.dones[t])
            next_state = data.states[t + 1] if (t + 1 < n and not done) else None
            transitions.append(Transition(
                state=data.states[t],
                action=int(data.actions[t]),
                reward=float(data.rewards[t]),
                next_state=next_state,
                done=done,
                owner=owner,
                value=float(data.values[t]),
                log_prob=float(data.log_probs[t]),
                advantage=float(data.advantages[t]),
                discounted_return=float(data.returns[t]),
            ))
        return transitions

    def drain_into(self, replay: 'ReplayBuffer', owner: str,
                   data: Optional[EpisodeData] = None) -> int:
        """Flush the trajectory into ``replay`` and clear; returns steps moved."""
        transitions = self.to_transitions(owner, data)
        replay.add_many(transitions)
        self.clear()
        return len(transitions)


class ReplayBuffer:
    """
    Fixed-capacity circular store of transitions from every agent.

    Priorities hold |TD error|; sampling probability is
    (priority + epsilon) ** alpha normalized over the store. New transitions
    enter with the largest priority seen so far.

    Every stored transition gets a monotonically increasing insertion key,
    and key % capacity is always its storage slot. Sampled batches carry
    keys rather than slots, so a priority update for a transition that was
    overwritten in the meantime is dropped.
    """

    def __init__(self, config: Optional[ReplayConfig] = None,
                 rng: Optional[np.random.Generator] = None):
        self.config = config or ReplayConfig()
        self.capacity = self.config.capacity
        self.alpha = self.config.alpha
        self.beta = self.config.beta
        self.beta_increment = self.config.beta_increment
        self.epsilon = self.config.epsilon
        self.rng = rng if rng is not None else np.random.default_rng()

        self._storage: List[Optional[Transition]] = [None] * self.capacity
        self._priorities = np.zeros(self.capacity, dtype=np.float64)
        self._ids = np.full(self.capacity, -1, dtype=np.int64)
        self._next_id = 0
        self._position = 0
        self._size = 0
        self._max_priority = 1.0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return self._size

    @property
    def size(self) -> int:
        return self._size

    def add(self, transition: Transition):
        with self._lock:
            self._add(transition)

    def add_many(self, transitions: List[Transition]):
        with self._lock:
            for transition in transitions:
                self._add(transition)

    def _add(self, transition: Transition):
        self._storage[self._position] = transition
        self._priorities[self._position] = self._max_priority
        self._ids[self._position] = self._next_id
        self._next_id += 1
        self._position = (self._position + 1) % self.capacity
        self._size = min(self._size + 1, self.capacity)

    def transitions(self) -> List[Transition]:
        """All stored transitions, oldest first."""
        with self._lock:
            return self._ordered()

    def _ordered(self) -> List[Transition]:
        if self._size < self.capacity:
            return list(self._storage[:self._size])
        return self._storage[self._position:] + self._storage[:self._position]

    def sampling_probabilities(self) -> np.ndarray:
        with self._lock:
            return self._probabilities()

    def _probabilities(self) -> np.ndarray:
        scaled = (self._priorities[:self._size] + self.epsilon) ** self.alpha
        return scaled / scaled.sum()

    def sample_uniform(self, batch_size: int) -> List[Transition]:
        with self._lock:
            if self._size == 0:
                return []
            n = min(batch_size, self._size)
            indices = self.rng.choice(self._size, size=n, replace=False)
            return [self._storage[i] for i in indices]

    def sample_prioritized(self, batch_size: int
                           ) -> Tuple[List[Transition], np.ndarray, np.ndarray]:
        """
        Priority-weighted sample with replacement.

        Returns (transitions, insertion keys, importance weights normalized
        by the batch max). Each call anneals beta toward 1.
        """
        with self._lock:
            if self._size == 0:
                return [], np.zeros(0, dtype=np.int64), np.zeros(0, dtype=np.float32)
            n = min(batch_size, self._size)
            probs = self._probabilities()
            indices = self.rng.choice(self._size, size=n, replace=True, p=probs)
            weights = (self._size * probs[indices]) ** (-self.beta)
            weights = weights / weights.max()
            self.beta = min(1.0, self.beta + self.beta_increment)
            return ([self._storage[i] for i in indices],
                    self._ids[indices].copy(), weights.astype(np.float32))

    def update_priorities(self, keys: np.ndarray, td_errors: np.ndarray):
        """Set |td_error| as priority for the transitions still stored under ``keys``."""
        stale = 0
        with self._lock:
            for key, err in zip(keys, td_errors):
                key = int(key)
                slot = key % self.capacity
                if key < 0 or slot >= self._size or self._ids[slot] != key:
                    stale += 1
                    continue
                if not np.isfinite(err):
                    continue
                priority = abs(float(err))
                self._priorities[slot] = priority
                self._max_priority = max(self._max_priority, priority)
        if stale:
            logger.debug(f"Skipped {stale} priority updates for overwritten transitions")

    def by_owner(self, owner: str, max_count: int = 1000) -> List[Transition]:
        """Most recent ``max_count`` transitions recorded by ``owner``."""
        with self._lock:
            owned = [t for t in self._ordered() if t.owner == owner]
        return owned[-max_count:] if max_count > 0 else []

    def top_experiences(self, count: int = 100, min_reward: float = 5.0) -> List[Transition]:
        with self._lock:
            good = [t for t in self._ordered() if t.reward >= min_reward]
        good.sort(key=lambda t: t.reward, reverse=True)
        return good[:count]

    def is_ready(self, min_size: int = 1000) -> bool:
        return self._size >= min_size

    def stats(self) -> Dict:
        with self._lock:
            stored = self._ordered()
            priorities = self._priorities[:self._size]
        if not stored:
            return {'size': 0, 'capacity': self.capacity, 'avg_reward': 0.0,
                    'max_reward': 0.0, 'min_reward': 0.0, 'success_rate': 0.0,
                    'beta': self.beta, 'max_priority': self._max_priority}
        rewards = np.array([t.reward for t in stored], dtype=np.float32)
        return {
            'size': len(stored),
            'capacity': self.capacity,
            'avg_reward': float(rewards.mean()),
            'max_reward': float(rewards.max()),
            'min_reward': float(rewards.min()),
            'success_rate': float((rewards > 0).mean()),
            'beta': self.beta,
            'max_priority': float(priorities.max()),
        }

    def clear(self):
        with self._lock:
            self._storage = [None] * self.capacity
            self._priorities[:] = 0.0
            self._ids[:] = -1
            # restart at slot 0 without reusing keys
            self._next_id = -(-self._next_id // self.capacity) * self.capacity
            self._position = 0
            self._size = 0
            self._max_priority = 1.0
