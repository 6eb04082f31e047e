"""
Village AI - hierarchical reinforcement learning for embodied agents.

Turns observation snapshots into discrete actions and improves the policy
online. A shared brain learns from every agent's experience while each agent
keeps a personal brain, optionally inherited from its parent with mutation.

Architecture:
- Feature encoder: snapshot -> fixed 704-wide vector of disjoint segments
- Actor-critic brains in NumPy, trained with PPO and GAE
- Goal manager biasing action selection toward temporally-extended goals
- Episode buffers draining into a prioritized global replay store
- Dense reward shaped by needs and moods
"""

from village_ai.config import (
    BrainConfig, ReplayConfig, GoalConfig, RewardConfig, TrainerConfig, EngineConfig,
)
from village_ai.encoder import FeatureEncoder, STATE_SIZE
from village_ai.brain import Brain, ActionSelection
from village_ai.buffers import Transition, EpisodeBuffer, ReplayBuffer
from village_ai.goals import GoalManager, GoalStatus, DEFAULT_GOALS
from village_ai.psyche import PsycheProvider
from village_ai.reward import RewardFunction, RewardBreakdown
from village_ai.persistence import BrainStore, NpzBrainStore
from village_ai.trainer import Trainer, StepResult

__all__ = [
    "BrainConfig", "ReplayConfig", "GoalConfig", "RewardConfig",
    "TrainerConfig", "EngineConfig",
    "FeatureEncoder", "STATE_SIZE",
    "Brain", "ActionSelection",
    "Transition", "EpisodeBuffer", "ReplayBuffer",
    "GoalManager", "GoalStatus", "DEFAULT_GOALS",
    "PsycheProvider",
    "RewardFunction", "RewardBreakdown",
    "BrainStore", "NpzBrainStore",
    "Trainer", "StepResult",
]
