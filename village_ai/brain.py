"""
Policy/Value Brain - actor-critic MLPs trained with PPO, implemented in NumPy.

Architecture:
  Actor:  state -> [Dense -> ReLU] x len(hidden_sizes) -> Dense -> softmax
  Critic: state -> [Dense -> ReLU] x len(hidden_sizes) -> Dense (scalar value)

Gradients are computed analytically and applied with separate Adam optimizers
for the actor and the critic.

Concurrency model: parameters live in an immutable ParameterSet. Writers build
a new set and swap the reference under ``_write_lock``, bumping ``generation``;
readers grab the current reference and never see a half-updated set. A
reference count guards ``dispose`` so parameters are never released while an
inference, training step or clone is using them.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from village_ai.config import BrainConfig
from village_ai.persistence import BrainStore, NpzBrainStore

logger = logging.getLogger(__name__)

Params = Dict[str, np.ndarray]


@dataclass(frozen=True)
class ParameterSet:
    actor: Params
    critic: Params
    generation: int = 0


@dataclass
class PolicyOutput:
    probs: np.ndarray
    value: float
    generation: int

    def log_prob(self, action: int) -> float:
        return float(np.log(self.probs[action] + 1e-8))


@dataclass
class ActionSelection:
    action: int
    log_prob: float
    value: float
    action_probs: np.ndarray


def softmax(logits: np.ndarray) -> np.ndarray:
    z = logits - np.max(logits, axis=-1, keepdims=True)
    e = np.exp(z)
    return e / np.sum(e, axis=-1, keepdims=True)


def log_softmax(logits: np.ndarray) -> np.ndarray:
    z = logits - np.max(logits, axis=-1, keepdims=True)
    return z - np.log(np.sum(np.exp(z), axis=-1, keepdims=True))


def _init_mlp(rng: np.random.Generator, prefix: str, sizes: Sequence[int],
              out_scale: float = 1.0) -> Params:
    """He-initialized dense stack; the last layer is scaled by ``out_scale``."""
    params = {}
    n_layers = len(sizes) - 1
    for i in range(n_layers):
        fan_in, fan_out = sizes[i], sizes[i + 1]
        scale = np.sqrt(2.0 / fan_in)
        if i == n_layers - 1:
            scale *= out_scale
        params[f'{prefix}_w{i}'] = (rng.standard_normal((fan_in, fan_out)) * scale).astype(np.float32)
        params[f'{prefix}_b{i}'] = np.zeros(fan_out, dtype=np.float32)
    return params


def _mlp_forward(params: Params, prefix: str, n_layers: int,
                 x: np.ndarray) -> Tuple[np.ndarray, List[np.ndarray], List[np.ndarray]]:
    """Returns (output, layer inputs, hidden pre-activations)."""
    inputs = []
    pre = []
    h = x
    for i in range(n_layers):
        inputs.append(h)
        z = h @ params[f'{prefix}_w{i}'] + params[f'{prefix}_b{i}']
        if i < n_layers - 1:
            pre.append(z)
            h = np.maximum(z, 0)  # ReLU
        else:
            h = z
    return h, inputs, pre


def _mlp_backward(params: Params, prefix: str, n_layers: int,
                  inputs: List[np.ndarray], pre: List[np.ndarray],
                  d_out: np.ndarray) -> Params:
    grads = {}
    d = d_out
    for i in reversed(range(n_layers)):
        grads[f'{prefix}_w{i}'] = inputs[i].T @ d
        grads[f'{prefix}_b{i}'] = d.sum(axis=0)
        if i > 0:
            d = (d @ params[f'{prefix}_w{i}'].T) * (pre[i - 1] > 0)
    return grads


def _all_finite(arrays: Dict[str, np.ndarray]) -> bool:
    return all(np.all(np.isfinite(a)) for a in arrays.values())


def _clip_by_global_norm(grads: Params, max_norm: float) -> Params:
    if max_norm <= 0:
        return grads
    norm = np.sqrt(sum(float(np.sum(g * g)) for g in grads.values()))
    if norm <= max_norm:
        return grads
    scale = max_norm / (norm + 1e-6)
    return {k: g * scale for k, g in grads.items()}


class Adam:
    """Adam optimizer producing a fresh parameter dict per step."""

    def __init__(self, lr: float, beta1: float = 0.9, beta2: float = 0.999,
                 epsilon: float = 1e-8):
        self.lr = lr
        self.beta1 = beta1
        self.beta2 = beta2
        self.epsilon = epsilon
        self.t = 0
        self.m: Params = {}
        self.v: Params = {}

    def step(self, params: Params, grads: Params) -> Params:
        self.t += 1
        updated = {}
        for name, value in params.items():
            g = grads[name]
            m = self.beta1 * self.m.get(name, np.zeros_like(value)) + (1 - self.beta1) * g
            v = self.beta2 * self.v.get(name, np.zeros_like(value)) + (1 - self.beta2) * g * g
            self.m[name] = m
            self.v[name] = v
            m_hat = m / (1 - self.beta1 ** self.t)
            v_hat = v / (1 - self.beta2 ** self.t)
            updated[name] = (value - self.lr * m_hat / (np.sqrt(v_hat) + self.epsilon)).astype(np.float32)
        return updated

    def reset(self):
        self.t = 0
        self.m.clear()
        self.v.clear()


class Brain:
    """
    Actor-critic pair with PPO training and genetic clone/mutate.

    One instance serves as the shared brain for all agents; personal brains
    are separate instances, optionally cloned from a parent's.
    """

    def __init__(self, state_size: int, action_size: int,
                 config: Optional[BrainConfig] = None,
                 rng: Optional[np.random.Generator] = None,
                 name: str = "brain"):
        self.config = config or BrainConfig()
        self.state_size = state_size
        self.action_size = action_size
        self.name = name
        self.rng = rng if rng is not None else np.random.default_rng()

        sizes = [state_size] + list(self.config.hidden_sizes)
        self._n_layers = len(sizes)
        actor = _init_mlp(self.rng, 'actor', sizes + [action_size], out_scale=0.01)
        critic = _init_mlp(self.rng, 'critic', sizes + [1])
        self._params: Optional[ParameterSet] = ParameterSet(actor, critic, 0)

        c = self.config
        self.actor_optimizer = Adam(c.learning_rate, c.adam_beta1, c.adam_beta2, c.adam_epsilon)
        self.critic_optimizer = Adam(c.learning_rate, c.adam_beta1, c.adam_beta2, c.adam_epsilon)

        self.training_steps = 0
        self.skipped_steps = 0

        self._write_lock = threading.Lock()
        self._ref_lock = threading.Lock()
        self._refs = 0
        self._disposed = False
        self._dispose_pending = False

        logger.info(f"Created {name}: state={state_size} actions={action_size} "
                    f"hidden={self.config.hidden_sizes}")

    # ------------------------------------------------------------------
    # Reference counting / lifecycle
    # ------------------------------------------------------------------

    @contextmanager
    def _acquire(self) -> Iterator[Optional[ParameterSet]]:
        with self._ref_lock:
            if self._disposed:
                params = None
            else:
                self._refs += 1
                params = self._params
        try:
            yield params
        finally:
            if params is not None:
                with self._ref_lock:
                    self._refs -= 1
                    if self._dispose_pending and self._refs == 0:
                        self._release()

    def _release(self):
        self._params = None
        self._disposed = True
        self._dispose_pending = False
        self.actor_optimizer.reset()
        self.critic_optimizer.reset()
        logger.info(f"Disposed {self.name}")

    def dispose(self) -> bool:
        """
        Release parameters. Idempotent.

        Returns False and defers the release while references are in flight;
        the last reference to exit completes it.
        """
        with self._ref_lock:
            if self._disposed:
                return True
            if self._refs > 0:
                self._dispose_pending = True
                logger.warning(f"Dispose of {self.name} deferred: {self._refs} references in use")
                return False
            self._release()
            return True

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def generation(self) -> int:
        params = self._params
        return params.generation if params is not None else -1

    def _publish(self, current: ParameterSet, actor: Optional[Params] = None,
                 critic: Optional[Params] = None) -> ParameterSet:
        updated = ParameterSet(
            actor if actor is not None else current.actor,
            critic if critic is not None else current.critic,
            current.generation + 1,
        )
        self._params = updated
        return updated

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def _as_batch(self, state: np.ndarray) -> np.ndarray:
        x = np.asarray(state, dtype=np.float32)
        if x.ndim == 1:
            x = x[None, :]
        if x.shape[-1] != self.state_size:
            raise ValueError(f"expected state width {self.state_size}, got {x.shape[-1]}")
        return x

    def _logits(self, params: ParameterSet, x: np.ndarray) -> np.ndarray:
        return _mlp_forward(params.actor, 'actor', self._n_layers, x)[0]

    def _values(self, params: ParameterSet, x: np.ndarray) -> np.ndarray:
        return _mlp_forward(params.critic, 'critic', self._n_layers, x)[0][:, 0]

    def _uniform(self) -> np.ndarray:
        return np.full(self.action_size, 1.0 / self.action_size, dtype=np.float32)

    def action_probabilities(self, state: np.ndarray) -> np.ndarray:
        x = self._as_batch(state)
        with self._acquire() as params:
            if params is None:
                return self._uniform()
            return softmax(self._logits(params, x))[0].astype(np.float32)

    def log_prob(self, state: np.ndarray, action: int) -> float:
        x = self._as_batch(state)
        with self._acquire() as params:
            if params is None:
                return float(np.log(1.0 / self.action_size))
            return float(log_softmax(self._logits(params, x))[0, action])

    def evaluate_state(self, state: np.ndarray) -> float:
        x = self._as_batch(state)
        with self._acquire() as params:
            if params is None:
                return 0.0
            return float(self._values(params, x)[0])

    def evaluate_states(self, states: np.ndarray) -> np.ndarray:
        x = self._as_batch(states)
        with self._acquire() as params:
            if params is None:
                return np.zeros(len(x), dtype=np.float32)
            return self._values(params, x).astype(np.float32)

    def log_probs(self, states: np.ndarray, actions: Sequence[int]) -> np.ndarray:
        """Log-probabilities of ``actions`` under the current policy, batched."""
        x = self._as_batch(states)
        actions = np.asarray(actions, dtype=np.int64)
        with self._acquire() as params:
            if params is None:
                return np.full(len(x), np.log(1.0 / self.action_size), dtype=np.float32)
            logp = log_softmax(self._logits(params, x))
        return logp[np.arange(len(x)), actions].astype(np.float32)

    def policy_outputs(self, state: np.ndarray) -> PolicyOutput:
        """
        Action probabilities and value estimate for one state, both read from
        the same parameter generation. A disposed brain reports uniform
        probabilities, value 0 and generation -1.
        """
        x = self._as_batch(state)
        with self._acquire() as params:
            if params is None:
                return PolicyOutput(self._uniform(), 0.0, -1)
            probs = softmax(self._logits(params, x))[0].astype(np.float32)
            value = float(self._values(params, x)[0])
            return PolicyOutput(probs, value, params.generation)

    def select_action(self, state: np.ndarray, exploratory: bool = True) -> ActionSelection:
        """
        Pick an action for one state.

        Exploratory mode samples from the policy; otherwise returns the
        arg-max. Both return the full probability vector and value estimate.
        """
        out = self.policy_outputs(state)
        probs, value = out.probs, out.value

        if exploratory:
            p = probs.astype(np.float64)
            p /= p.sum()
            action = int(self.rng.choice(self.action_size, p=p))
        else:
            action = int(np.argmax(probs))
        log_prob = out.log_prob(action)
        return ActionSelection(action, log_prob, value, probs)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def policy_loss_gradient(self, states: np.ndarray, actions: Sequence[int],
                             old_log_probs: Sequence[float],
                             advantages: Sequence[float]) -> np.ndarray:
        """
        Clipped-surrogate loss gradient w.r.t. the actor logits, without the
        entropy bonus. Shape (batch, action_size).
        """
        x = self._as_batch(states)
        with self._acquire() as params:
            if params is None:
                return np.zeros((len(x), self.action_size), dtype=np.float32)
            d_logits, _, _ = self._surrogate_gradient(
                params, x, np.asarray(actions, dtype=np.int64),
                np.asarray(old_log_probs, dtype=np.float32),
                np.asarray(advantages, dtype=np.float32))
        return d_logits

    def _surrogate_gradient(self, params: ParameterSet, x: np.ndarray, actions: np.ndarray,
                            old_log_probs: np.ndarray, advantages: np.ndarray
                            ) -> Tuple[np.ndarray, np.ndarray, float]:
        """Returns (d_loss/d_logits, probabilities, surrogate loss)."""
        batch = x.shape[0]
        logits = self._logits(params, x)
        logp_all = log_softmax(logits)
        probs = np.exp(logp_all)
        rows = np.arange(batch)
        new_log_probs = logp_all[rows, actions]

        eps = self.config.clip_ratio
        ratio = np.exp(new_log_probs - old_log_probs)
        clipped = np.clip(ratio, 1 - eps, 1 + eps)
        surrogate = np.minimum(ratio * advantages, clipped * advantages)
        loss = -float(np.mean(surrogate))

        # Gradient flows only through the unclipped branch
        active = ((advantages >= 0) & (ratio < 1 + eps)) | ((advantages < 0) & (ratio > 1 - eps))
        g = np.where(active, advantages * ratio, 0.0)

        onehot = np.zeros_like(probs)
        onehot[rows, actions] = 1.0
        d_logits = -(g / batch)[:, None] * (onehot - probs)
        return d_logits.astype(np.float32), probs, loss

    def train_ppo(self, states: np.ndarray, actions: Sequence[int],
                  old_log_probs: Sequence[float], advantages: Sequence[float],
                  returns: Sequence[float], epochs: int = 1,
                  weights: Optional[Sequence[float]] = None) -> Optional[Dict[str, float]]:
        """
        PPO update: one actor step and one critic step per epoch.

        Advantages must already be standardized. ``weights`` optionally scales
        each sample's critic error (importance weights from prioritized replay).
        Returns mean losses, or None when the batch is rejected.
        """
        states = np.asarray(states, dtype=np.float32)
        lengths = {len(states), len(actions), len(old_log_probs), len(advantages), len(returns)}
        if weights is not None:
            lengths.add(len(weights))
        if len(lengths) != 1:
            logger.warning(f"{self.name}: batch length mismatch {sorted(lengths)}, skipping update")
            return None
        if len(states) == 0:
            return None
        if states.ndim != 2 or states.shape[1] != self.state_size:
            logger.warning(f"{self.name}: state shape {states.shape} does not match "
                           f"width {self.state_size}, skipping update")
            return None

        actions = np.asarray(actions, dtype=np.int64)
        old_log_probs = np.asarray(old_log_probs, dtype=np.float32)
        advantages = np.asarray(advantages, dtype=np.float32)
        returns = np.asarray(returns, dtype=np.float32)
        weights = (np.ones(len(states), dtype=np.float32) if weights is None
                   else np.asarray(weights, dtype=np.float32))
        if actions.min() < 0 or actions.max() >= self.action_size:
            logger.warning(f"{self.name}: action index out of range, skipping update")
            return None

        c = self.config
        batch = len(states)
        actor_losses, critic_losses, entropies = [], [], []

        with self._write_lock, self._acquire() as params:
            if params is None:
                return None
            for _ in range(max(int(epochs), 1)):
                # Actor step
                d_logits, probs, policy_loss = self._surrogate_gradient(
                    params, states, actions, old_log_probs, advantages)
                logp = np.log(probs + 1e-8)
                entropy = -np.sum(probs * logp, axis=1)
                d_logits = d_logits + c.entropy_coef * probs * (logp + entropy[:, None]) / batch
                actor_loss = policy_loss - c.entropy_coef * float(np.mean(entropy))

                _, a_inputs, a_pre = _mlp_forward(params.actor, 'actor', self._n_layers, states)
                actor_grads = _mlp_backward(params.actor, 'actor', self._n_layers,
                                            a_inputs, a_pre, d_logits)

                # Critic step
                c_out, c_inputs, c_pre = _mlp_forward(params.critic, 'critic', self._n_layers, states)
                values = c_out[:, 0]
                err = values - returns
                critic_loss = c.value_coef * float(np.mean(weights * err * err))
                d_values = (c.value_coef * 2.0 * weights * err / batch)[:, None].astype(np.float32)
                critic_grads = _mlp_backward(params.critic, 'critic', self._n_layers,
                                             c_inputs, c_pre, d_values)

                if not (np.isfinite(actor_loss) and np.isfinite(critic_loss)
                        and _all_finite(actor_grads) and _all_finite(critic_grads)):
                    self.skipped_steps += 1
                    logger.warning(f"{self.name}: non-finite loss or gradient, step discarded")
                    continue

                actor_grads = _clip_by_global_norm(actor_grads, c.max_grad_norm)
                critic_grads = _clip_by_global_norm(critic_grads, c.max_grad_norm)
                new_actor = self.actor_optimizer.step(params.actor, actor_grads)
                new_critic = self.critic_optimizer.step(params.critic, critic_grads)
                if not (_all_finite(new_actor) and _all_finite(new_critic)):
                    self.skipped_steps += 1
                    logger.warning(f"{self.name}: non-finite parameters after step, discarded")
                    continue

                params = self._publish(params, new_actor, new_critic)
                actor_losses.append(actor_loss)
                critic_losses.append(critic_loss)
                entropies.append(float(np.mean(entropy)))

            if actor_losses:
                self.training_steps += 1

        if not actor_losses:
            return None
        return {
            'actor_loss': float(np.mean(actor_losses)),
            'critic_loss': float(np.mean(critic_losses)),
            'entropy': float(np.mean(entropies)),
            'epochs': len(actor_losses),
        }

    # ------------------------------------------------------------------
    # Genetic inheritance
    # ------------------------------------------------------------------

    def clone(self, mutation_rate: float = 0.1, mutation_strength: float = 0.05,
              rng: Optional[np.random.Generator] = None, name: Optional[str] = None) -> 'Brain':
        """
        Deep-copy the parameters; each element independently receives
        Gaussian noise of std ``mutation_strength`` with probability
        ``mutation_rate``.
        """
        rng = rng if rng is not None else np.random.default_rng(self.rng.integers(2 ** 63))
        child = Brain(self.state_size, self.action_size, self.config, rng=rng,
                      name=name or f"{self.name}-clone")

        with self._acquire() as params:
            if params is None:
                logger.warning(f"Cloning disposed {self.name}; child keeps fresh weights")
                return child

            def mutate(source: Params) -> Params:
                out = {}
                for key, value in source.items():
                    mask = rng.random(value.shape) < mutation_rate
                    noise = rng.normal(0.0, mutation_strength, value.shape)
                    out[key] = (value + mask * noise).astype(np.float32)
                return out

            child._params = ParameterSet(mutate(params.actor), mutate(params.critic), 0)
            child.training_steps = self.training_steps
        return child

    # ------------------------------------------------------------------
    # Parameters and persistence
    # ------------------------------------------------------------------

    def get_params(self) -> Params:
        """Get all parameters as a dict."""
        with self._acquire() as params:
            if params is None:
                return {}
            merged = {k: v.copy() for k, v in params.actor.items()}
            merged.update({k: v.copy() for k, v in params.critic.items()})
            return merged

    def set_params(self, params: Params):
        """Replace all parameters; shapes must match the current network."""
        with self._write_lock, self._acquire() as current:
            if current is None:
                raise ValueError(f"{self.name} is disposed")
            actor, critic = {}, {}
            for target, source in ((actor, current.actor), (critic, current.critic)):
                for key, value in source.items():
                    if key not in params:
                        raise ValueError(f"missing parameter {key}")
                    if params[key].shape != value.shape:
                        raise ValueError(f"shape mismatch for {key}: "
                                         f"{params[key].shape} vs {value.shape}")
                    target[key] = np.array(params[key], dtype=np.float32)
            self._publish(current, actor, critic)

    def save(self, path: str, store: Optional[BrainStore] = None) -> bool:
        store = store or NpzBrainStore()
        params = self.get_params()
        if not params:
            return False
        params['meta_training_steps'] = np.array(self.training_steps)
        return store.save(params, path)

    def load(self, path: str, store: Optional[BrainStore] = None) -> bool:
        store = store or NpzBrainStore()
        params = store.load(path)
        if params is None:
            return False
        steps = params.pop('meta_training_steps', None)
        try:
            self.set_params(params)
        except ValueError as e:
            logger.warning(f"Saved brain at {path} is incompatible: {e}")
            return False
        if steps is not None:
            self.training_steps = int(steps)
        return True

    def get_stats(self) -> Dict:
        params = self._params
        actor_count = sum(v.size for v in params.actor.values()) if params else 0
        critic_count = sum(v.size for v in params.critic.values()) if params else 0
        return {
            'name': self.name,
            'training_steps': self.training_steps,
            'skipped_steps': self.skipped_steps,
            'generation': self.generation,
            'actor_params': int(actor_count),
            'critic_params': int(critic_count),
            'disposed': self._disposed,
        }
