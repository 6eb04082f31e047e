"""
Engine Configuration - hyperparameters for brains, replay, goals, reward and training.

Every component receives its config section explicitly, together with a
seeded numpy Generator built from ``EngineConfig.seed``. Nothing reads ambient
global randomness.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional, Tuple
import json
import os

import numpy as np


@dataclass
class BrainConfig:
    """Actor-critic network and PPO hyperparameters."""
    hidden_sizes: Tuple[int, ...] = (512, 256, 128)
    learning_rate: float = 3e-4
    gamma: float = 0.99            # Discount factor
    gae_lambda: float = 0.95
    clip_ratio: float = 0.2
    entropy_coef: float = 0.01
    value_coef: float = 0.5
    max_grad_norm: float = 0.5
    adam_beta1: float = 0.9
    adam_beta2: float = 0.999
    adam_epsilon: float = 1e-8

    def __post_init__(self):
        self.hidden_sizes = tuple(int(h) for h in self.hidden_sizes)
        if not self.hidden_sizes or min(self.hidden_sizes) <= 0:
            raise ValueError(f"hidden_sizes must be positive: {self.hidden_sizes}")
        if not 0.0 < self.gamma <= 1.0:
            raise ValueError(f"gamma must be in (0, 1]: {self.gamma}")
        if not 0.0 <= self.gae_lambda <= 1.0:
            raise ValueError(f"gae_lambda must be in [0, 1]: {self.gae_lambda}")
        if not 0.0 < self.clip_ratio < 1.0:
            raise ValueError(f"clip_ratio must be in (0, 1): {self.clip_ratio}")
        if self.learning_rate <= 0:
            raise ValueError(f"learning_rate must be positive: {self.learning_rate}")


@dataclass
class ReplayConfig:
    """Prioritized replay store settings."""
    capacity: int = 50000
    alpha: float = 0.6             # Priority exponent
    beta: float = 0.4              # Importance-sampling exponent, annealed to 1
    beta_increment: float = 0.001
    epsilon: float = 0.01          # Keeps zero-error transitions sampleable

    def __post_init__(self):
        if self.capacity <= 0:
            raise ValueError(f"capacity must be positive: {self.capacity}")


@dataclass
class GoalConfig:
    evaluation_interval: float = 5.0   # seconds between goal evaluations
    completion_bonus: float = 15.0
    selection_jitter: float = 0.1
    safety_threshold: float = 0.3
    hunger_threshold: float = 0.2
    rest_threshold: float = 0.15


@dataclass
class RewardConfig:
    """Base scales of the dominant reward terms."""
    survival_rate: float = 0.1
    survival_cap: float = 10.0
    damage_scale: float = 2.0
    heal_scale: float = 1.5
    food_scale: float = 1.5
    stress_dampening: float = 0.7
    stress_threshold: float = 0.7
    pickup_scale: float = 5.0
    tool_bonus: float = 10.0
    move_scale: float = 0.5
    move_cap: float = 3.0
    discovery_bonus: float = 15.0
    skill_level_bonus: float = 20.0
    stuck_penalty: float = -3.0


@dataclass
class TrainerConfig:
    """Cadence and exploration settings for the orchestrator."""
    steps_per_update: int = 512        # Train the shared brain every N steps
    batch_size: int = 64
    training_epochs: int = 4           # PPO epochs for on-policy episode updates
    shared_epochs: int = 2
    personal_epochs: int = 1
    min_buffer_size: int = 1000        # Replay size before batched training starts
    sample_size: int = 1000
    personal_min_experiences: int = 16
    personal_batch_size: int = 32
    save_interval: int = 5000          # Save models every N steps
    exploration_rate: float = 0.2      # Epsilon for random actions
    exploration_decay: float = 0.9995
    min_exploration: float = 0.05
    personal_weight: float = 0.3       # Personal brain share of the blended policy
    mutation_rate: float = 0.1
    mutation_strength: float = 0.05
    death_penalty: float = -10.0
    stats_smoothing: float = 0.99
    model_path: str = "ml_models"

    def __post_init__(self):
        if self.steps_per_update <= 0 or self.save_interval <= 0:
            raise ValueError("steps_per_update and save_interval must be positive")
        if not 0.0 <= self.min_exploration <= self.exploration_rate <= 1.0:
            raise ValueError(
                f"need 0 <= min_exploration <= exploration_rate <= 1, got "
                f"{self.min_exploration}, {self.exploration_rate}")
        if not 0.0 <= self.personal_weight <= 1.0:
            raise ValueError(f"personal_weight must be in [0, 1]: {self.personal_weight}")


@dataclass
class EngineConfig:
    """Master configuration composed of per-component sections."""
    brain: BrainConfig = field(default_factory=BrainConfig)
    replay: ReplayConfig = field(default_factory=ReplayConfig)
    goals: GoalConfig = field(default_factory=GoalConfig)
    reward: RewardConfig = field(default_factory=RewardConfig)
    trainer: TrainerConfig = field(default_factory=TrainerConfig)
    seed: Optional[int] = None

    def make_rng(self) -> np.random.Generator:
        return np.random.default_rng(self.seed)

    @classmethod
    def from_env(cls) -> 'EngineConfig':
        """Load from VILLAGE_* environment variables, defaults elsewhere."""
        config = cls()
        if os.getenv('VILLAGE_SEED'):
            config.seed = int(os.getenv('VILLAGE_SEED'))
        if os.getenv('VILLAGE_MODEL_PATH'):
            config.trainer.model_path = os.getenv('VILLAGE_MODEL_PATH')
        if os.getenv('VILLAGE_LEARNING_RATE'):
            config.brain.learning_rate = float(os.getenv('VILLAGE_LEARNING_RATE'))
        if os.getenv('VILLAGE_EXPLORATION_RATE'):
            config.trainer.exploration_rate = float(os.getenv('VILLAGE_EXPLORATION_RATE'))
        if os.getenv('VILLAGE_STEPS_PER_UPDATE'):
            config.trainer.steps_per_update = int(os.getenv('VILLAGE_STEPS_PER_UPDATE'))
        if os.getenv('VILLAGE_REPLAY_CAPACITY'):
            config.replay.capacity = int(os.getenv('VILLAGE_REPLAY_CAPACITY'))
        return config

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['brain']['hidden_sizes'] = list(self.brain.hidden_sizes)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EngineConfig':
        return cls(
            brain=BrainConfig(**data.get('brain', {})),
            replay=ReplayConfig(**data.get('replay', {})),
            goals=GoalConfig(**data.get('goals', {})),
            reward=RewardConfig(**data.get('reward', {})),
            trainer=TrainerConfig(**data.get('trainer', {})),
            seed=data.get('seed'),
        )

    def save(self, filepath: str):
        """Save configuration to file"""
        with open(filepath, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, filepath: str) -> 'EngineConfig':
        """Load configuration from file"""
        with open(filepath, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)
