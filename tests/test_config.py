"""
Tests for engine configuration.
"""

import sys
import os
import tempfile

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from village_ai.config import (
    BrainConfig, ReplayConfig, TrainerConfig, EngineConfig,
)


class TestDefaults:
    def test_sections(self):
        config = EngineConfig()
        assert config.brain.hidden_sizes == (512, 256, 128)
        assert config.brain.gamma == 0.99
        assert config.replay.capacity == 50000
        assert config.goals.completion_bonus == 15.0
        assert config.reward.damage_scale == 2.0
        assert config.trainer.personal_weight == 0.3
        assert config.seed is None

    def test_seeded_rng_reproducible(self):
        a = EngineConfig(seed=5).make_rng().random(3)
        b = EngineConfig(seed=5).make_rng().random(3)
        assert list(a) == list(b)


class TestValidation:
    def test_bad_gamma(self):
        with pytest.raises(ValueError):
            BrainConfig(gamma=0.0)

    def test_empty_hidden(self):
        with pytest.raises(ValueError):
            BrainConfig(hidden_sizes=())

    def test_bad_capacity(self):
        with pytest.raises(ValueError):
            ReplayConfig(capacity=0)

    def test_exploration_bounds(self):
        with pytest.raises(ValueError):
            TrainerConfig(exploration_rate=0.01, min_exploration=0.05)

    def test_personal_weight_bounds(self):
        with pytest.raises(ValueError):
            TrainerConfig(personal_weight=1.5)


class TestSerialization:
    def test_save_load(self):
        config = EngineConfig(seed=42)
        config.brain = BrainConfig(hidden_sizes=(64, 32))
        config.trainer.model_path = "models_x"
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'config.json')
            config.save(path)
            loaded = EngineConfig.load(path)
        assert loaded.seed == 42
        assert loaded.brain.hidden_sizes == (64, 32)
        assert loaded.trainer.model_path == "models_x"
        assert loaded.to_dict() == config.to_dict()

    def test_partial_dict(self):
        config = EngineConfig.from_dict({'trainer': {'batch_size': 8}})
        assert config.trainer.batch_size == 8
        assert config.brain.learning_rate == 3e-4

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv('VILLAGE_SEED', '7')
        monkeypatch.setenv('VILLAGE_LEARNING_RATE', '0.001')
        monkeypatch.setenv('VILLAGE_REPLAY_CAPACITY', '128')
        config = EngineConfig.from_env()
        assert config.seed == 7
        assert config.brain.learning_rate == 0.001
        assert config.replay.capacity == 128
