"""
Tests for episode buffers, return/advantage computation and the replay store.
"""

import sys
import os
import numpy as np

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from village_ai.buffers import (
    EpisodeBuffer, ReplayBuffer, Transition, discounted_returns, gae_advantages, standardize,
)
from village_ai.config import ReplayConfig


def make_transition(reward=0.0, owner="a1", action=0):
    return Transition(state=np.full(4, reward, dtype=np.float32), action=action,
                      reward=reward, next_state=None, done=False, owner=owner)


def fill_episode(rewards, values=None, gamma=0.9, gae_lambda=0.95):
    buf = EpisodeBuffer(gamma=gamma, gae_lambda=gae_lambda)
    values = values if values is not None else [0.0] * len(rewards)
    for t, (r, v) in enumerate(zip(rewards, values)):
        buf.add(np.full(4, t, dtype=np.float32), t % 3, r, v, -1.0,
                done=(t == len(rewards) - 1))
    return buf


class TestReturns:
    def test_last_return_is_terminal_reward(self):
        buf = fill_episode([1.0, 0.0, 2.0])
        returns = buf.compute_returns()
        assert returns[-1] == pytest.approx(2.0)

    def test_recursion(self):
        rewards = [1.0, -0.5, 0.0, 3.0, 2.0]
        gamma = 0.9
        returns = fill_episode(rewards, gamma=gamma).compute_returns()
        for t in range(len(rewards) - 1):
            assert returns[t] == pytest.approx(rewards[t] + gamma * returns[t + 1], rel=1e-5)
        assert returns[0] == pytest.approx(1.0 - 0.45 + 0.0 + 0.9 ** 3 * 3 + 0.9 ** 4 * 2, rel=1e-5)

    def test_reset_at_episode_boundary(self):
        returns = discounted_returns(np.array([1.0, 1.0, 1.0, 1.0]),
                                     np.array([0.0, 1.0, 0.0, 1.0]), 0.5)
        assert np.allclose(returns, [1.5, 1.0, 1.5, 1.0])


class TestGAE:
    def test_lambda_zero_is_td_error(self):
        rewards = np.array([1.0, 0.5, -1.0, 2.0])
        values = np.array([0.3, -0.2, 0.8, 0.1])
        dones = np.array([0.0, 0.0, 0.0, 1.0])
        gamma = 0.95
        adv = gae_advantages(rewards, values, dones, gamma, 0.0)
        next_values = np.append(values[1:], 0.0)
        td = rewards + gamma * next_values * (1 - dones) - values
        assert np.allclose(adv, td, atol=1e-6)

    def test_lambda_one_is_return_minus_value(self):
        rewards = [1.0, 0.5, -1.0, 2.0]
        values = [0.3, -0.2, 0.8, 0.1]
        buf = fill_episode(rewards, values, gamma=0.95, gae_lambda=1.0)
        adv = buf.compute_advantages()
        returns = buf.compute_returns()
        assert np.allclose(adv, returns - np.array(values, dtype=np.float32), atol=1e-5)

    def test_get_data_aligned(self):
        buf = fill_episode([1.0, 2.0, 3.0], [0.5, 0.5, 0.5])
        data = buf.get_data()
        assert len(data) == 3
        assert data.states.shape == (3, 4)
        assert data.returns.shape == data.advantages.shape == (3,)


class TestEpisodeBuffer:
    def test_non_finite_step_dropped(self):
        buf = EpisodeBuffer()
        assert buf.add(np.zeros(4), 0, float('nan'), 0.0, 0.0, False) is False
        assert buf.add(np.zeros(4), 0, 1.0, float('inf'), 0.0, False) is False
        assert buf.add(np.zeros(4), 0, 1.0, 0.0, 0.0, False) is True
        assert len(buf) == 1

    def test_total_reward(self):
        assert fill_episode([1.0, 2.0, -0.5]).total_reward() == pytest.approx(2.5)

    def test_transitions_link_next_state(self):
        buf = fill_episode([1.0, 2.0, 3.0])
        transitions = buf.to_transitions("a1")
        assert np.array_equal(transitions[0].next_state, transitions[1].state)
        assert transitions[-1].next_state is None
        assert transitions[-1].done
        assert all(t.owner == "a1" for t in transitions)

    def test_drain_into_replay(self):
        replay = ReplayBuffer(ReplayConfig(capacity=100), rng=np.random.default_rng(0))
        buf = fill_episode([1.0, 2.0, 3.0])
        moved = buf.drain_into(replay, "a1")
        assert moved == 3
        assert len(buf) == 0
        assert len(replay) == 3

    def test_standardize(self):
        out = standardize(np.array([1.0, 2.0, 3.0, 4.0]))
        assert out.mean() == pytest.approx(0.0, abs=1e-6)
        assert out.std() == pytest.approx(1.0, abs=1e-4)
        assert np.all(standardize(np.zeros(5)) == 0)


class TestReplayBuffer:
    def test_circular_overwrite(self):
        replay = ReplayBuffer(ReplayConfig(capacity=4), rng=np.random.default_rng(0))
        for i in range(6):
            replay.add(make_transition(reward=float(i)))
        assert len(replay) == 4
        assert [t.reward for t in replay.transitions()] == [2.0, 3.0, 4.0, 5.0]

    def test_priority_monotonic_in_td_error(self):
        replay = ReplayBuffer(ReplayConfig(capacity=10), rng=np.random.default_rng(0))
        for i in range(4):
            replay.add(make_transition(reward=float(i)))
        replay.update_priorities(np.array([0, 1, 2, 3]), np.array([0.1, 0.5, -2.0, 1.0]))
        probs = replay.sampling_probabilities()
        assert probs.sum() == pytest.approx(1.0)
        assert probs[0] < probs[1] < probs[3] < probs[2]

    def test_new_transitions_get_max_priority(self):
        replay = ReplayBuffer(ReplayConfig(capacity=10), rng=np.random.default_rng(0))
        replay.add(make_transition())
        replay.update_priorities(np.array([0]), np.array([5.0]))
        replay.add(make_transition())
        probs = replay.sampling_probabilities()
        assert probs[0] == pytest.approx(probs[1])

    def test_prioritized_sample(self):
        replay = ReplayBuffer(ReplayConfig(capacity=50), rng=np.random.default_rng(0))
        for i in range(20):
            replay.add(make_transition(reward=float(i)))
        replay.update_priorities(np.arange(20), np.linspace(0.0, 3.0, 20))
        beta = replay.beta
        batch, indices, weights = replay.sample_prioritized(8)
        assert len(batch) == len(indices) == len(weights) == 8
        assert weights.max() == pytest.approx(1.0)
        assert np.all(weights > 0)
        assert replay.beta > beta

    def test_high_priority_sampled_more(self):
        replay = ReplayBuffer(ReplayConfig(capacity=10), rng=np.random.default_rng(1))
        for i in range(2):
            replay.add(make_transition(reward=float(i)))
        replay.update_priorities(np.array([0, 1]), np.array([0.0, 10.0]))
        _, indices, _ = replay.sample_prioritized(500)
        assert np.mean(indices == 1) > 0.8

    def test_uniform_sample_without_replacement(self):
        replay = ReplayBuffer(ReplayConfig(capacity=50), rng=np.random.default_rng(0))
        for i in range(10):
            replay.add(make_transition(reward=float(i)))
        sample = replay.sample_uniform(6)
        assert len(sample) == 6
        assert len({t.reward for t in sample}) == 6
        assert len(replay.sample_uniform(100)) == 10

    def test_empty_samples(self):
        replay = ReplayBuffer(ReplayConfig(capacity=10))
        assert replay.sample_uniform(4) == []
        batch, indices, weights = replay.sample_prioritized(4)
        assert batch == [] and len(indices) == 0 and len(weights) == 0

    def test_by_owner(self):
        replay = ReplayBuffer(ReplayConfig(capacity=20), rng=np.random.default_rng(0))
        for i in range(6):
            replay.add(make_transition(reward=float(i), owner="a" if i % 2 else "b"))
        owned = replay.by_owner("a", max_count=2)
        assert [t.reward for t in owned] == [3.0, 5.0]

    def test_top_experiences(self):
        replay = ReplayBuffer(ReplayConfig(capacity=20), rng=np.random.default_rng(0))
        for r in (1.0, 9.0, 6.0, 3.0):
            replay.add(make_transition(reward=r))
        top = replay.top_experiences(count=5, min_reward=5.0)
        assert [t.reward for t in top] == [9.0, 6.0]

    def test_stats_and_clear(self):
        replay = ReplayBuffer(ReplayConfig(capacity=20), rng=np.random.default_rng(0))
        for r in (1.0, -1.0, 3.0):
            replay.add(make_transition(reward=r))
        stats = replay.stats()
        assert stats['size'] == 3
        assert stats['max_reward'] == 3.0
        assert stats['success_rate'] == pytest.approx(2 / 3)
        replay.clear()
        assert len(replay) == 0
        assert replay.stats()['size'] == 0

    def test_is_ready(self):
        replay = ReplayBuffer(ReplayConfig(capacity=20))
        replay.add_many([make_transition() for _ in range(5)])
        assert replay.is_ready(5)
        assert not replay.is_ready(6)

    def test_stale_keys_do_not_touch_new_transitions(self):
        replay = ReplayBuffer(ReplayConfig(capacity=4), rng=np.random.default_rng(0))
        for i in range(4):
            replay.add(make_transition(reward=float(i)))
        _, keys, _ = replay.sample_prioritized(4)
        for i in range(4, 8):
            replay.add(make_transition(reward=float(i)))

        replay.update_priorities(keys, np.full(len(keys), 50.0))
        probs = replay.sampling_probabilities()
        assert np.allclose(probs, 0.25)
        assert replay.stats()['max_priority'] == 1.0

    def test_keys_follow_wraparound(self):
        replay = ReplayBuffer(ReplayConfig(capacity=4), rng=np.random.default_rng(0))
        for i in range(6):
            replay.add(make_transition(reward=float(i)))
        batch, keys, _ = replay.sample_prioritized(8)
        assert np.all(keys >= 2)
        for transition, key in zip(batch, keys):
            assert transition.reward == float(key)

        newest = np.array([5])
        replay.update_priorities(newest, np.array([9.0]))
        probs = replay.sampling_probabilities()
        assert probs[5 % 4] == probs.max()

    def test_clear_invalidates_old_keys(self):
        replay = ReplayBuffer(ReplayConfig(capacity=4), rng=np.random.default_rng(0))
        for i in range(3):
            replay.add(make_transition(reward=float(i)))
        _, keys, _ = replay.sample_prioritized(3)
        replay.clear()
        for i in range(3):
            replay.add(make_transition(reward=float(i)))
        replay.update_priorities(keys, np.full(len(keys), 20.0))
        assert np.allclose(replay.sampling_probabilities(), 1 / 3)
