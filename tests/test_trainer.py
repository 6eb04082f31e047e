"""
Tests for the trainer orchestrator and the sandbox world it trains in.
"""

import sys
import os
import json
import tempfile
import threading
import time
import numpy as np

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from world.sandbox import SandboxWorld
from village_ai.config import BrainConfig, ReplayConfig, TrainerConfig, EngineConfig
from village_ai.goals import GoalDefinition, GoalManager
from village_ai.reward import RewardBreakdown
from village_ai.trainer import Trainer, StepResult


def make_config(model_path, seed=0, **trainer_overrides):
    trainer = dict(steps_per_update=20, min_buffer_size=10, sample_size=32, batch_size=16,
                   personal_min_experiences=8, personal_batch_size=16,
                   save_interval=100000, model_path=model_path)
    trainer.update(trainer_overrides)
    return EngineConfig(
        brain=BrainConfig(hidden_sizes=(32,)),
        replay=ReplayConfig(capacity=500),
        trainer=TrainerConfig(**trainer),
        seed=seed,
    )


@pytest.fixture
def model_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


def run_steps(trainer, world, agent_id, n):
    results = []
    actuator = world.actuator(agent_id)
    for _ in range(n):
        results.append(trainer.step(agent_id, world.snapshot(agent_id), actuator))
        world.tick()
    return results


def setup(model_dir, seed=0, agent_id="a1", **overrides):
    trainer = Trainer(make_config(model_dir, seed=seed, **overrides))
    world = SandboxWorld(size=32, seed=seed)
    world.add_agent(agent_id, "BUILDER")
    trainer.spawn_agent(agent_id, "BUILDER")
    return trainer, world


class TestStep:
    def test_step_result(self, model_dir):
        trainer, world = setup(model_dir)
        result = run_steps(trainer, world, "a1", 1)[0]
        assert isinstance(result, StepResult)
        assert 0 <= result.action_index < trainer.catalog.count()
        assert result.action_name == trainer.catalog.name_of(result.action_index)
        assert np.isfinite(result.value_estimate)
        assert result.goal is not None
        assert set(result.to_dict()) == {'action_index', 'action_name', 'value_estimate',
                                         'success', 'was_exploring'}

    def test_unknown_agent(self, model_dir):
        trainer, world = setup(model_dir)
        with pytest.raises(KeyError):
            trainer.step("ghost", world.snapshot("a1"), world.actuator("a1"))

    def test_exploration_decays(self, model_dir):
        trainer, world = setup(model_dir)
        start = trainer.exploration_rate
        run_steps(trainer, world, "a1", 10)
        assert trainer.exploration_rate == pytest.approx(start * 0.9995 ** 10)
        assert trainer.total_steps == 10

    def test_exploration_floor(self, model_dir):
        trainer, world = setup(model_dir, exploration_rate=0.05, min_exploration=0.05)
        run_steps(trainer, world, "a1", 5)
        assert trainer.exploration_rate == 0.05

    def test_psyche_refreshed(self, model_dir):
        trainer, world = setup(model_dir)
        run_steps(trainer, world, "a1", 3)
        agent = trainer.agents["a1"]
        assert agent.prev_snapshot.psyche is agent.psyche
        assert agent.prev_snapshot.active_goal is not None


class TestEpisodes:
    def test_episode_drains_into_replay(self, model_dir):
        trainer, world = setup(model_dir)
        run_steps(trainer, world, "a1", 15)
        summary = trainer.end_episode("a1", world.snapshot("a1"), died=True)
        assert summary['steps'] == 15
        assert summary['transitions'] == 15
        assert len(trainer.replay) == 15
        assert trainer.episodes_completed == 1
        assert trainer.avg_episode_length == 15.0
        assert trainer.avg_reward == pytest.approx(summary['total_reward'])

        agent = trainer.agents["a1"]
        assert agent.episode_steps == 0
        assert agent.pending is None
        assert len(agent.episode) == 0
        assert agent.psyche.memories[-1].kind == 'death'

    def test_stats_are_smoothed(self, model_dir):
        trainer, world = setup(model_dir)
        run_steps(trainer, world, "a1", 10)
        trainer.end_episode("a1", world.snapshot("a1"))
        run_steps(trainer, world, "a1", 4)
        trainer.end_episode("a1", world.snapshot("a1"))
        assert trainer.avg_episode_length == pytest.approx(0.99 * 10 + 0.01 * 4)

    def test_training_disabled(self, model_dir):
        trainer, world = setup(model_dir)
        trainer.set_training(False)
        run_steps(trainer, world, "a1", 5)
        summary = trainer.end_episode("a1", world.snapshot("a1"))
        assert summary['losses'] is None
        assert trainer.shared_brain.training_steps == 0

    def test_unknown_agent_episode(self, model_dir):
        trainer, world = setup(model_dir)
        assert trainer.end_episode("ghost", world.snapshot("a1")) is None


class TestTraining:
    def test_round_trains_shared_and_personal(self, model_dir):
        trainer, world = setup(model_dir)
        trainer.set_training(False)
        run_steps(trainer, world, "a1", 19)
        trainer.end_episode("a1", world.snapshot("a1"))
        trainer.set_training(True)

        results = trainer.train_all_brains()
        assert 'shared' in results
        assert results['shared']['batches'] >= 1
        assert "a1" in results
        assert trainer.training_rounds == 1

    def test_concurrent_round_skipped(self, model_dir):
        trainer, world = setup(model_dir)
        with trainer._train_lock:
            assert trainer.train_all_brains() is None
        assert trainer.train_all_brains() is not None

    def test_small_replay_skips_shared(self, model_dir):
        trainer, world = setup(model_dir)
        results = trainer.train_all_brains()
        assert results == {}


class TestAgents:
    def test_child_inherits_parent_brain(self, model_dir):
        trainer = Trainer(make_config(model_dir, mutation_rate=0.0))
        trainer.spawn_agent("parent")
        child = trainer.spawn_agent("child", parent="parent", generation=2)
        assert child.parent == "parent"
        p = trainer.agents["parent"].brain.get_params()
        c = child.brain.get_params()
        assert all(np.array_equal(p[k], c[k]) for k in p)

    def test_missing_parent_gets_fresh_brain(self, model_dir):
        trainer = Trainer(make_config(model_dir))
        agent = trainer.spawn_agent("orphan", parent="nobody")
        assert agent.parent is None
        assert agent.brain.get_params()

    def test_spawn_twice_returns_existing(self, model_dir):
        trainer = Trainer(make_config(model_dir))
        first = trainer.spawn_agent("a1")
        assert trainer.spawn_agent("a1") is first

    def test_despawn(self, model_dir):
        trainer, world = setup(model_dir)
        run_steps(trainer, world, "a1", 5)
        brain = trainer.agents["a1"].brain
        trainer.despawn_agent("a1", world.snapshot("a1"))
        assert "a1" not in trainer.agents
        assert brain.disposed
        assert len(trainer.replay) == 5
        trainer.despawn_agent("a1")


class TestPersistence:
    def test_save_and_reload(self, model_dir):
        trainer, world = setup(model_dir)
        run_steps(trainer, world, "a1", 5)
        assert trainer.save_all_models()
        assert os.path.exists(os.path.join(model_dir, 'shared_brain.npz'))
        assert os.path.exists(os.path.join(model_dir, 'agents', 'a1.npz'))
        with open(os.path.join(model_dir, 'trainer_stats.json')) as f:
            stats = json.load(f)
        assert stats['total_steps'] == 5

        fresh = Trainer(make_config(model_dir, seed=123))
        assert fresh.load_shared_brain()
        saved = trainer.shared_brain.get_params()
        loaded = fresh.shared_brain.get_params()
        assert all(np.array_equal(saved[k], loaded[k]) for k in saved)

    def test_load_missing(self, model_dir):
        trainer = Trainer(make_config(model_dir))
        assert trainer.load_shared_brain() is False


class TestLifecycle:
    def test_stats(self, model_dir):
        trainer, world = setup(model_dir)
        stats = trainer.get_stats()
        assert set(stats) == {'total_steps', 'episodes_completed', 'avg_reward',
                              'avg_episode_length', 'buffer_size', 'exploration_rate',
                              'active_agents', 'training_rounds', 'shared_brain'}
        assert stats['active_agents'] == 1

    def test_dispose(self, model_dir):
        trainer, world = setup(model_dir)
        brain = trainer.agents["a1"].brain
        trainer.dispose()
        assert trainer.shared_brain.disposed
        assert brain.disposed
        assert trainer.agents == {}

    def test_same_seed_same_actions(self, model_dir):
        runs = []
        for _ in range(2):
            trainer, world = setup(model_dir, seed=3)
            runs.append([r.action_index for r in run_steps(trainer, world, "a1", 30)])
            trainer.dispose()
        assert runs[0] == runs[1]


class TestSandbox:
    def test_unknown_action(self):
        world = SandboxWorld(size=16, seed=0)
        world.add_agent("a1")
        assert world.apply("a1", "teleport") is False

    def test_movement(self):
        world = SandboxWorld(size=32, seed=0)
        body = world.add_agent("a1")
        body.x, body.z = 10.0, 10.0
        assert world.apply("a1", "move_forward")
        assert world.snapshot("a1").position.z == 11.0

    def test_new_chunk_reported_once(self):
        world = SandboxWorld(size=32, seed=0)
        body = world.add_agent("a1")
        body.x, body.z = 15.0, 5.0
        body.visited_chunks = {body.position.chunk_key()}
        assert world.apply("a1", "move_right")
        assert world.snapshot("a1").exploration.new_chunk
        assert not world.snapshot("a1").exploration.new_chunk

    def test_wall_blocks_movement(self):
        world = SandboxWorld(size=16, seed=0)
        body = world.add_agent("a1")
        body.x, body.z = 0.0, 0.0
        assert world.apply("a1", "move_left") is False

    def test_tick_advances(self):
        world = SandboxWorld(size=16, seed=0)
        world.add_agent("a1")
        world.tick()
        snap = world.snapshot("a1")
        assert snap.timestamp == 1.0
        assert snap.survival_steps == 1

    def test_peers_visible(self):
        world = SandboxWorld(size=16, seed=0)
        world.add_agent("a1")
        world.add_agent("a2")
        assert [p.agent_id for p in world.snapshot("a1").peers] == ["a2"]


def single_goal(trainer, definition):
    trainer.goals = GoalManager(trainer.catalog, trainer.config.goals,
                                rng=np.random.default_rng(0),
                                goals={definition.key: definition})


class ZeroReward:
    def compute(self, prev, curr, last_action=None, psyche=None):
        return RewardBreakdown()


class TestGoalIntegration:
    def test_bias_restricts_choice(self, model_dir):
        trainer, world = setup(model_dir, exploration_rate=0.0, min_exploration=0.0)
        only_idle = {name: 0.0 for name in trainer.catalog.names() if name != 'idle'}
        single_goal(trainer, GoalDefinition('FOCUS', 'focus', 'only idle', 1000.0,
                                            only_idle, {}, lambda s, c: False))
        results = run_steps(trainer, world, "a1", 20)
        assert all(r.action_name == 'idle' for r in results)
        assert not any(r.was_exploring for r in results)
        assert all(r.goal == 'FOCUS' for r in results)

    def test_completion_bonus_in_stored_reward(self, model_dir):
        trainer, world = setup(model_dir)
        trainer.reward_fn = ZeroReward()
        single_goal(trainer, GoalDefinition('FOCUS', 'focus', 'always done', 1000.0,
                                            {}, {}, lambda s, c: True))
        results = run_steps(trainer, world, "a1", 7)
        assert [r.reward for r in results] == [0.0, 0.0, 0.0, 0.0, 0.0, 15.0, 0.0]

        agent = trainer.agents["a1"]
        assert [float(r) for r in agent.episode.rewards] == [0.0, 0.0, 0.0, 0.0, 15.0, 0.0]
        assert agent.episode_reward == 15.0
        assert agent.psyche.memories[-1].kind == 'achievement'


class TestConsistentReads:
    def test_action_and_log_prob_share_generation(self, model_dir):
        trainer, world = setup(model_dir)
        brain = trainer.shared_brain
        original = brain.policy_outputs
        reads = []

        def read_then_publish(state):
            out = original(state)
            reads.append(out)
            params = brain.get_params()
            brain.set_params({k: v + 0.1 for k, v in params.items()})
            return out

        def unexpected(*args, **kwargs):
            raise AssertionError("step must read the shared brain once")

        brain.policy_outputs = read_then_publish
        brain.action_probabilities = unexpected
        brain.evaluate_state = unexpected
        brain.log_prob = unexpected

        agent = trainer.agents["a1"]
        actuator = world.actuator("a1")
        for i in range(3):
            trainer.step("a1", world.snapshot("a1"), actuator)
            world.tick()
            pending = agent.pending
            assert len(reads) == i + 1
            assert pending.generation == reads[i].generation == i
            assert pending.log_prob == reads[i].log_prob(pending.action)
            personal = agent.brain.policy_outputs(pending.state)
            assert pending.value == pytest.approx(0.7 * reads[i].value + 0.3 * personal.value,
                                                  abs=1e-6)
        assert brain.generation == 3

    def test_parallel_agents_with_training_and_cloning(self, model_dir):
        trainer = Trainer(make_config(model_dir, steps_per_update=10))
        brain = trainer.shared_brain
        original = brain.policy_outputs
        last_read = {}

        def recording(state):
            out = original(state)
            last_read[threading.get_ident()] = out
            return out

        brain.policy_outputs = recording
        errors, mismatched = [], []

        def run(agent_id, seed, steps=40):
            try:
                world = SandboxWorld(size=32, seed=seed)
                world.add_agent(agent_id)
                actuator = world.actuator(agent_id)
                agent = trainer.agents[agent_id]
                for step in range(1, steps + 1):
                    trainer.step(agent_id, world.snapshot(agent_id), actuator)
                    out = last_read[threading.get_ident()]
                    pending = agent.pending
                    if (pending.generation != out.generation
                            or pending.log_prob != out.log_prob(pending.action)):
                        mismatched.append((agent_id, step))
                    world.tick()
                    if step % 20 == 0:
                        trainer.end_episode(agent_id, world.snapshot(agent_id), died=False)
            except Exception as e:
                errors.append(e)

        for i in range(4):
            trainer.spawn_agent(f"a{i}")
        threads = [threading.Thread(target=run, args=(f"a{i}", i)) for i in range(4)]
        for thread in threads:
            thread.start()

        deadline = time.time() + 60
        while trainer.total_steps < 40 and time.time() < deadline:
            time.sleep(0.001)
        trainer.spawn_agent("child", parent="a0", generation=2)
        child = threading.Thread(target=run, args=("child", 10, 20))
        child.start()
        for thread in threads + [child]:
            thread.join(timeout=120)

        assert errors == []
        assert mismatched == []
        assert trainer.agents["child"].parent == "a0"
        assert trainer.total_steps == 4 * 40 + 20
        assert trainer.episodes_completed == 4 * 2 + 1
        assert trainer.training_rounds >= 1
        assert len(trainer.replay) == 4 * 40 + 20
