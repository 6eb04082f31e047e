"""
Tests for the actor-critic brain: inference, PPO updates, cloning,
disposal and persistence.
"""

import sys
import os
import tempfile
import numpy as np

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from village_ai.brain import Brain, softmax, log_softmax
from village_ai.buffers import standardize
from village_ai.config import BrainConfig
from village_ai.persistence import NpzBrainStore

STATE, ACTIONS = 8, 4


def make_brain(seed=0, **overrides):
    config = BrainConfig(hidden_sizes=(16,), **overrides)
    return Brain(STATE, ACTIONS, config, rng=np.random.default_rng(seed))


def batch(n=32, seed=1):
    rng = np.random.default_rng(seed)
    states = rng.standard_normal((n, STATE)).astype(np.float32)
    actions = rng.integers(0, ACTIONS, size=n)
    returns = rng.standard_normal(n).astype(np.float32)
    advantages = standardize(rng.standard_normal(n))
    return states, actions, advantages, returns


class TestMath:
    def test_softmax_sums_to_one(self):
        p = softmax(np.array([[1.0, 2.0, 3.0], [1000.0, 0.0, -1000.0]]))
        assert np.allclose(p.sum(axis=1), 1.0)
        assert np.all(np.isfinite(p))

    def test_log_softmax_matches(self):
        logits = np.array([[0.5, -1.0, 2.0]])
        assert np.allclose(np.exp(log_softmax(logits)), softmax(logits))


class TestInference:
    def test_probabilities(self):
        brain = make_brain()
        probs = brain.action_probabilities(np.ones(STATE))
        assert probs.shape == (ACTIONS,)
        assert probs.sum() == pytest.approx(1.0, abs=1e-5)

    def test_argmax_is_deterministic(self):
        brain = make_brain()
        state = np.linspace(-1, 1, STATE)
        first = brain.select_action(state, exploratory=False)
        for _ in range(5):
            again = brain.select_action(state, exploratory=False)
            assert again.action == first.action
        assert first.action == int(np.argmax(first.action_probs))

    def test_exploratory_returns_full_distribution(self):
        brain = make_brain()
        sel = brain.select_action(np.zeros(STATE), exploratory=True)
        assert 0 <= sel.action < ACTIONS
        assert sel.action_probs.shape == (ACTIONS,)
        assert np.isfinite(sel.value)
        assert sel.log_prob <= 0

    def test_wrong_width_rejected(self):
        brain = make_brain()
        with pytest.raises(ValueError):
            brain.action_probabilities(np.zeros(STATE + 1))

    def test_policy_outputs_single_generation(self):
        brain = make_brain()
        state = np.linspace(-1, 1, STATE)
        out = brain.policy_outputs(state)
        assert np.allclose(out.probs, brain.action_probabilities(state))
        assert out.value == pytest.approx(brain.evaluate_state(state))
        assert out.generation == brain.generation == 0
        assert out.log_prob(2) == pytest.approx(brain.log_prob(state, 2), abs=1e-5)

        states, actions, advantages, returns = batch()
        brain.train_ppo(states, actions, brain.log_probs(states, actions),
                        advantages, returns, epochs=2)
        assert brain.policy_outputs(state).generation == 2

    def test_policy_outputs_after_dispose(self):
        brain = make_brain()
        brain.dispose()
        out = brain.policy_outputs(np.zeros(STATE))
        assert out.generation == -1
        assert out.value == 0.0
        assert np.allclose(out.probs, 1.0 / ACTIONS)

    def test_batched_helpers(self):
        brain = make_brain()
        states, actions, _, _ = batch(5)
        assert brain.evaluate_states(states).shape == (5,)
        logp = brain.log_probs(states, actions)
        for i in range(5):
            assert logp[i] == pytest.approx(brain.log_prob(states[i], actions[i]), abs=1e-5)


class TestPPO:
    def test_zero_advantages_zero_policy_gradient(self):
        brain = make_brain()
        states, actions, _, _ = batch()
        old = brain.log_probs(states, actions)
        grad = brain.policy_loss_gradient(states, actions, old, np.zeros(len(states)))
        assert grad.shape == (len(states), ACTIONS)
        assert np.allclose(grad, 0.0)

    def test_nonzero_advantages_move_policy(self):
        brain = make_brain()
        states, actions, advantages, _ = batch()
        old = brain.log_probs(states, actions)
        grad = brain.policy_loss_gradient(states, actions, old, advantages)
        assert np.abs(grad).sum() > 0

    def test_training_updates_parameters(self):
        brain = make_brain()
        states, actions, advantages, returns = batch()
        before = brain.get_params()
        generation = brain.generation
        result = brain.train_ppo(states, actions, brain.log_probs(states, actions),
                                 advantages, returns, epochs=3)
        assert result is not None
        assert result['epochs'] == 3
        assert brain.generation == generation + 3
        assert brain.training_steps == 1
        after = brain.get_params()
        assert any(not np.array_equal(before[k], after[k]) for k in before)

    def test_critic_learns_constant_return(self):
        brain = make_brain(learning_rate=1e-2)
        states, actions, _, _ = batch()
        returns = np.full(len(states), 2.0, dtype=np.float32)
        old = brain.log_probs(states, actions)
        first = brain.train_ppo(states, actions, old, np.zeros(len(states)), returns)
        for _ in range(30):
            last = brain.train_ppo(states, actions, old, np.zeros(len(states)), returns)
        assert last['critic_loss'] < first['critic_loss']

    def test_length_mismatch_skips(self):
        brain = make_brain()
        states, actions, advantages, returns = batch()
        before = brain.get_params()
        result = brain.train_ppo(states, actions[:-1], np.zeros(len(states)),
                                 advantages, returns)
        assert result is None
        after = brain.get_params()
        assert all(np.array_equal(before[k], after[k]) for k in before)
        assert brain.training_steps == 0

    def test_empty_batch(self):
        brain = make_brain()
        assert brain.train_ppo(np.zeros((0, STATE)), [], [], [], []) is None

    def test_bad_action_index_skips(self):
        brain = make_brain()
        states, actions, advantages, returns = batch()
        actions = actions.copy()
        actions[0] = ACTIONS
        assert brain.train_ppo(states, actions, np.zeros(len(states)),
                               advantages, returns) is None

    def test_non_finite_step_discarded(self):
        brain = make_brain()
        states, actions, advantages, returns = batch()
        returns = returns.copy()
        returns[3] = np.nan
        before = brain.get_params()
        result = brain.train_ppo(states, actions, brain.log_probs(states, actions),
                                 advantages, returns, epochs=2)
        assert result is None
        assert brain.skipped_steps == 2
        after = brain.get_params()
        assert all(np.array_equal(before[k], after[k]) for k in before)


class TestClone:
    def test_zero_mutation_copies(self):
        parent = make_brain()
        child = parent.clone(mutation_rate=0.0, mutation_strength=0.5)
        p, c = parent.get_params(), child.get_params()
        assert all(np.array_equal(p[k], c[k]) for k in p)

    def test_full_mutation_statistics(self):
        parent = make_brain()
        child = parent.clone(mutation_rate=1.0, mutation_strength=0.05,
                             rng=np.random.default_rng(7))
        p, c = parent.get_params(), child.get_params()
        diffs = np.concatenate([(c[k] - p[k]).ravel() for k in p])
        assert np.count_nonzero(diffs) == len(diffs)
        assert abs(diffs.mean()) < 0.01
        assert 0.04 < diffs.std() < 0.06

    def test_partial_mutation_rate(self):
        parent = make_brain()
        child = parent.clone(mutation_rate=0.3, mutation_strength=0.1,
                             rng=np.random.default_rng(3))
        p, c = parent.get_params(), child.get_params()
        changed = np.concatenate([(c[k] != p[k]).ravel() for k in p])
        assert 0.2 < changed.mean() < 0.4

    def test_clone_is_independent(self):
        parent = make_brain()
        child = parent.clone(mutation_rate=0.0)
        states, actions, advantages, returns = batch()
        before = parent.get_params()
        child.train_ppo(states, actions, child.log_probs(states, actions), advantages, returns)
        after = parent.get_params()
        assert all(np.array_equal(before[k], after[k]) for k in before)


class TestDispose:
    def test_idempotent(self):
        brain = make_brain()
        assert brain.dispose() is True
        assert brain.dispose() is True
        assert brain.disposed

    def test_deferred_while_in_use(self):
        brain = make_brain()
        with brain._acquire() as params:
            assert params is not None
            assert brain.dispose() is False
            assert not brain.disposed
        assert brain.disposed

    def test_disposed_brain_degrades(self):
        brain = make_brain()
        brain.dispose()
        probs = brain.action_probabilities(np.zeros(STATE))
        assert np.allclose(probs, 1.0 / ACTIONS)
        assert brain.evaluate_state(np.zeros(STATE)) == 0.0
        assert brain.get_params() == {}
        states, actions, advantages, returns = batch()
        assert brain.train_ppo(states, actions, np.zeros(len(states)),
                               advantages, returns) is None


class TestPersistence:
    def test_save_load_round_trip(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'nested', 'brain')
            brain = make_brain()
            states, actions, advantages, returns = batch()
            brain.train_ppo(states, actions, brain.log_probs(states, actions),
                            advantages, returns)
            assert brain.save(path)
            assert os.path.exists(path + '.npz')

            other = make_brain(seed=99)
            assert other.load(path)
            p, o = brain.get_params(), other.get_params()
            assert all(np.array_equal(p[k], o[k]) for k in p)
            assert other.training_steps == 1

    def test_load_missing(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            assert make_brain().load(os.path.join(tmpdir, 'absent')) is False

    def test_load_incompatible(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, 'brain')
            make_brain().save(path)
            wide = Brain(STATE + 2, ACTIONS, BrainConfig(hidden_sizes=(16,)),
                         rng=np.random.default_rng(0))
            before = wide.get_params()
            assert wide.load(path) is False
            after = wide.get_params()
            assert all(np.array_equal(before[k], after[k]) for k in before)

    def test_save_failure_reported(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = os.path.join(tmpdir, 'file')
            with open(blocker, 'w') as f:
                f.write('x')
            assert make_brain().save(os.path.join(blocker, 'brain')) is False

    def test_store_load_returns_none_on_missing(self):
        assert NpzBrainStore().load('/nonexistent/dir/brain') is None

    def test_set_params_shape_mismatch(self):
        brain = make_brain()
        params = brain.get_params()
        params['actor_w0'] = np.zeros((3, 3), dtype=np.float32)
        with pytest.raises(ValueError):
            brain.set_params(params)
