"""
Tests for the hand-written layers, the model's forward/backward passes and the
Q-learning agent.
"""

import numpy as np
import pytest

from lunar_lander_rl.lander_env import (
    DQNAgent,
    LinearLayer,
    Model,
    ReplayBuffer,
    SoftmaxLayer,
    td_loss_gradient,
)


def squared_loss(model, state, action, target):
    return 0.5 * float(model.forward(state)[action] - target) ** 2


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


class TestLinearLayer:

    def test_forward_is_affine(self, rng):
        layer = LinearLayer(3, 2, rng=rng)
        x = np.array([1.0, -2.0, 0.5], dtype=np.float32)
        expected = layer.weights @ x + layer.biases
        np.testing.assert_allclose(layer.forward(x), expected)

    def test_relu_clamps_negative(self, rng):
        layer = LinearLayer(2, 2, relu=True, rng=rng)
        layer.weights[:] = [[1.0, 0.0], [-1.0, 0.0]]
        layer.biases[:] = 0.0
        np.testing.assert_array_equal(layer.forward(np.array([2.0, 0.0], dtype=np.float32)), [2.0, 0.0])

    def test_initialisation_is_uniform_and_float32(self, rng):
        layer = LinearLayer(50, 30, rng=rng, bias_init_high=0.1)
        limit = np.sqrt(6.0 / 80)
        assert layer.weights.dtype == np.float32
        assert layer.weights.shape == (30, 50)
        assert np.abs(layer.weights).max() <= limit + 1e-6
        assert layer.biases.min() >= 0.0 and layer.biases.max() <= 0.1

    def test_backward_returns_input_gradient(self, rng):
        layer = LinearLayer(3, 2, rng=rng)
        x = np.array([1.0, 2.0, 3.0], dtype=np.float32)
        g = np.array([0.5, -1.0], dtype=np.float32)
        input_gradient = layer.backward(x, layer.forward(x), g)

        np.testing.assert_allclose(input_gradient, layer.weights.T @ g, rtol=1e-6)
        np.testing.assert_allclose(layer.weight_gradient, np.outer(g, x))
        np.testing.assert_allclose(layer.bias_gradient, g)

    def test_relu_backward_masks_inactive_units(self, rng):
        layer = LinearLayer(2, 2, relu=True, rng=rng)
        layer.weights[:] = [[1.0, 0.0], [-1.0, 0.0]]
        layer.biases[:] = 0.0
        x = np.array([2.0, 1.0], dtype=np.float32)
        layer.backward(x, layer.forward(x), np.array([1.0, 1.0], dtype=np.float32))

        np.testing.assert_array_equal(layer.weight_gradient[1], [0.0, 0.0])
        np.testing.assert_array_equal(layer.weight_gradient[0], [2.0, 1.0])
        np.testing.assert_array_equal(layer.bias_gradient, [1.0, 0.0])

    def test_gradients_accumulate_until_applied(self, rng):
        layer = LinearLayer(2, 1, rng=rng)
        x = np.array([1.0, 1.0], dtype=np.float32)
        weights_before = layer.weights.copy()
        for _ in range(3):
            layer.backward(x, layer.forward(x), np.array([1.0], dtype=np.float32))
        np.testing.assert_array_equal(layer.weight_gradient, [[3.0, 3.0]])

        layer.apply_gradient(0.1, batch_size=3)
        np.testing.assert_allclose(layer.weights, weights_before - 0.1, atol=1e-6)
        assert not layer.weight_gradient.any()
        assert not layer.bias_gradient.any()


class TestSoftmaxLayer:

    def test_forward_is_distribution(self):
        layer = SoftmaxLayer(4)
        p = layer.forward(np.array([1.0, 2.0, 3.0, 1000.0], dtype=np.float32))
        assert np.all(np.isfinite(p))
        assert p.sum() == pytest.approx(1.0, rel=1e-6)
        assert np.argmax(p) == 3

    def test_backward_passes_gradient_through(self):
        layer = SoftmaxLayer(3)
        x = np.array([0.1, 0.2, 0.3], dtype=np.float32)
        g = np.array([0.2, -0.5, 0.3], dtype=np.float32)
        np.testing.assert_array_equal(layer.backward(x, layer.forward(x), g), g)

    def test_cross_entropy_gradient_through_softmax_head(self, rng):
        model = Model([LinearLayer(2, 3, rng=rng), SoftmaxLayer(3)])
        x = np.array([0.3, -0.7], dtype=np.float32)
        probabilities = model.forward(x)
        one_hot = np.array([0.0, 1.0, 0.0], dtype=np.float32)

        model.backprop(x, probabilities - one_hot)

        linear = model.layers[0]
        np.testing.assert_allclose(linear.weight_gradient, np.outer(probabilities - one_hot, x),
                                   rtol=1e-5)


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class TestModel:

    def test_output_shape_invariant(self, rng):
        model = Model.build(7, [16, 8], 4, rng=rng)
        for _ in range(20):
            state = rng.normal(scale=10.0, size=7)
            out = model.forward(state)
            assert out.shape == (4,)
            assert out.dtype == np.float32

    def test_mismatched_layers_rejected(self, rng):
        with pytest.raises(ValueError):
            Model([LinearLayer(2, 3, rng=rng), LinearLayer(4, 2, rng=rng)])

        model = Model()
        model.add_layer(2, 3, rng=rng)
        with pytest.raises(ValueError):
            model.add_layer(2, 1, rng=rng)

    def test_wrong_input_length_rejected(self, rng):
        model = Model.build(3, [4], 2, rng=rng)
        with pytest.raises(ValueError):
            model.forward([1.0, 2.0])
        with pytest.raises(ValueError):
            model.backprop([1.0, 2.0, 3.0], [1.0, 0.0, 0.0])

    def test_empty_model_rejected(self):
        with pytest.raises(ValueError):
            Model().forward([1.0])

    def test_non_finite_loss_gradient_rejected(self, rng):
        model = Model.build(2, [3], 2, rng=rng)
        with pytest.raises(ValueError):
            model.backprop([0.0, 1.0], [np.nan, 0.0])

    def test_non_finite_input_rejected(self, rng):
        model = Model.build(2, [3], 2, rng=rng)
        with pytest.raises(ValueError):
            model.forward([np.nan, 0.0])
        with pytest.raises(ValueError):
            model.backprop([np.inf, 0.0], [1.0, 0.0])

    def test_forward_leaves_gradients_untouched(self, rng):
        model = Model.build(2, [3], 2, rng=rng)
        model.forward([1.0, 1.0])
        for layer in model.layers:
            assert not layer.weight_gradient.any()

    def test_two_layer_update_scenario(self, rng):
        model = Model()
        model.add_layer(2, 4, relu=True, rng=rng)
        model.add_layer(4, 2, relu=False, rng=rng)
        hidden_layer, output_layer = model.layers
        hidden_layer.weights[:] = [[1.0, 0.0], [0.0, -1.0], [0.5, 0.5], [-1.0, 0.0]]
        hidden_layer.biases[:] = 0.1

        x = np.array([0.5, -0.5], dtype=np.float32)
        out = model.forward(x)
        assert out.shape == (2,)

        hidden = hidden_layer.forward(x)
        assert (hidden > 0).any()
        second_row = output_layer.weights[1].copy()
        first_dot = float(output_layer.weights[0] @ hidden)

        model.backprop(x, np.array([1.0, 0.0], dtype=np.float32))
        model.apply_gradients(learning_rate=0.1)

        np.testing.assert_array_equal(output_layer.weights[1], second_row)
        assert float(output_layer.weights[0] @ hidden) < first_dot

    def test_gradient_step_reduces_squared_loss(self, rng):
        model = Model.build(5, [16, 16], 3, rng=rng)
        for _ in range(25):
            state = rng.uniform(-1.0, 1.0, size=5).astype(np.float32)
            action = int(rng.integers(3))
            prediction = model.forward(state)
            target = float(prediction[action] + rng.choice([-1.0, 1.0]) * rng.uniform(0.5, 2.0))

            before = squared_loss(model, state, action, target)
            model.backprop(state, td_loss_gradient(prediction, action, target))
            model.apply_gradients(learning_rate=0.005)
            after = squared_loss(model, state, action, target)

            assert after < before

    def test_gradients_match_finite_differences(self, rng):
        model = Model.build(3, [4], 2, rng=rng)
        state = np.array([0.4, -0.2, 0.9], dtype=np.float32)
        action, target = 1, 0.75
        model.backprop(state, td_loss_gradient(model.forward(state), action, target))

        eps = 1e-3
        for layer in model.layers:
            numeric = np.zeros_like(layer.weights, dtype=np.float64)
            for index in np.ndindex(*layer.weights.shape):
                original = layer.weights[index]
                layer.weights[index] = original + eps
                plus = squared_loss(model, state, action, target)
                layer.weights[index] = original - eps
                minus = squared_loss(model, state, action, target)
                layer.weights[index] = original
                numeric[index] = (plus - minus) / (2 * eps)
            np.testing.assert_allclose(layer.weight_gradient, numeric, atol=1e-3)

    def test_gradients_match_autograd(self, rng):
        torch = pytest.importorskip("torch")
        model = Model.build(4, [6, 5], 3, rng=rng)
        state = np.array([0.3, -0.8, 0.5, 0.1], dtype=np.float32)
        action, target = 2, -0.4

        params = []
        for layer in model.layers:
            params.append((torch.tensor(layer.weights, requires_grad=True),
                           torch.tensor(layer.biases, requires_grad=True)))
        activation = torch.tensor(state)
        for i, (w, b) in enumerate(params):
            activation = w @ activation + b
            if model.layers[i].relu:
                activation = torch.relu(activation)
        loss = 0.5 * (activation[action] - target) ** 2
        loss.backward()

        model.backprop(state, td_loss_gradient(model.forward(state), action, target))
        for layer, (w, b) in zip(model.layers, params):
            np.testing.assert_allclose(layer.weight_gradient, w.grad.numpy(), rtol=1e-4, atol=1e-6)
            np.testing.assert_allclose(layer.bias_gradient, b.grad.numpy(), rtol=1e-4, atol=1e-6)

    def test_batch_apply_averages(self, rng):
        model = Model.build(2, [3], 2, rng=rng)
        single = model.copy()
        state = np.array([0.2, 0.6], dtype=np.float32)
        gradient = np.array([0.5, -0.25], dtype=np.float32)

        model.backprop(state, gradient)
        model.backprop(state, gradient)
        model.apply_gradients(0.1, batch_size=2)

        single.backprop(state, gradient)
        single.apply_gradients(0.1)

        for a, b in zip(model.layers, single.layers):
            np.testing.assert_allclose(a.weights, b.weights, rtol=1e-6, atol=1e-7)
            np.testing.assert_allclose(a.biases, b.biases, rtol=1e-6, atol=1e-7)

    def test_invalid_batch_size_rejected(self, rng):
        with pytest.raises(ValueError):
            Model.build(2, [2], 2, rng=rng).apply_gradients(0.1, batch_size=0)

    def test_copy_shares_no_storage(self, rng):
        model = Model.build(3, [4], 2, rng=rng)
        target = model.copy()
        for a, b in zip(model.layers, target.layers):
            assert not np.shares_memory(a.weights, b.weights)
            assert not np.shares_memory(a.weight_gradient, b.weight_gradient)

        state = np.array([1.0, 0.0, -1.0], dtype=np.float32)
        frozen = target.forward(state)
        model.backprop(state, np.array([1.0, 1.0], dtype=np.float32))
        model.apply_gradients(0.5)

        np.testing.assert_array_equal(target.forward(state), frozen)
        assert not np.array_equal(model.forward(state), frozen)

    def test_save_and_load(self, rng, tmp_path):
        model = Model([LinearLayer(3, 4, relu=True, rng=rng), LinearLayer(4, 2, rng=rng)])
        path = str(tmp_path / "model.npz")
        model.save(path)

        loaded = Model.load(path)
        state = np.array([0.1, 0.2, 0.3], dtype=np.float32)
        np.testing.assert_array_equal(loaded.forward(state), model.forward(state))
        assert [layer.relu for layer in loaded.layers] == [True, False]


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------


class TestDQNAgent:

    def test_td_loss_gradient_only_at_action(self):
        prediction = np.array([1.0, 2.0, 3.0], dtype=np.float32)
        gradient = td_loss_gradient(prediction, 1, 0.5)
        np.testing.assert_array_equal(gradient, [0.0, 1.5, 0.0])

    def test_terminal_target_is_reward(self):
        agent = DQNAgent(3, 2, hidden_layers=[4], seed=0)
        assert agent.compute_target(5.0, np.zeros(3, dtype=np.float32), True) == 5.0

    def test_bootstrapped_target_uses_target_network(self):
        agent = DQNAgent(3, 2, hidden_layers=[4], gamma=0.9, seed=0)
        next_state = np.array([0.5, 0.5, 0.5], dtype=np.float32)
        expected = 1.0 + 0.9 * float(np.max(agent.target_model.forward(next_state)))
        assert agent.compute_target(1.0, next_state, False) == pytest.approx(expected)

    def test_greedy_and_random_selection(self):
        agent = DQNAgent(3, 4, hidden_layers=[4], seed=0)
        state = np.array([0.1, 0.2, 0.3], dtype=np.float32)
        greedy = int(np.argmax(agent.model.forward(state)))
        assert all(agent.select_action(state, 0.0) == greedy for _ in range(10))

        random_actions = {agent.select_action(state, 1.0) for _ in range(200)}
        assert random_actions == {0, 1, 2, 3}

    def test_target_frozen_until_sync(self):
        agent = DQNAgent(3, 2, hidden_layers=[4], learning_rate=0.1, seed=0)
        state = np.array([0.3, 0.1, -0.2], dtype=np.float32)
        frozen = agent.target_model.forward(state)

        for _ in range(5):
            agent.accumulate(state, 0, 10.0, state, True)
        agent.apply_gradients()
        np.testing.assert_array_equal(agent.target_model.forward(state), frozen)

        agent.sync_target()
        np.testing.assert_array_equal(agent.target_model.forward(state), agent.model.forward(state))

    def test_non_finite_state_rejected_when_acting(self):
        agent = DQNAgent(2, 3, hidden_layers=[4], seed=0)
        with pytest.raises(ValueError):
            agent.select_action(np.array([np.nan, 0.0], dtype=np.float32), epsilon=0.0)

    def test_apply_without_pending_is_noop(self):
        agent = DQNAgent(3, 2, hidden_layers=[4], seed=0)
        agent.apply_gradients()
        assert agent.total_updates == 0

    def test_train_on_replay_batch(self):
        agent = DQNAgent(3, 2, hidden_layers=[4], seed=0)
        buffer = ReplayBuffer(capacity=32, state_dim=3, seed=0)
        for i in range(16):
            state = np.full(3, i / 16, dtype=np.float32)
            buffer.add(state, i % 2, 1.0, state, i % 5 == 0)

        metrics = agent.train(buffer, batch_size=8)
        assert set(metrics) == {'loss', 'td_error_mean', 'td_error_abs_max'}
        assert agent.total_updates == 1
        assert agent.pending_gradients == 0

    def test_model_shape_must_match(self, rng):
        with pytest.raises(ValueError):
            DQNAgent(3, 2, model=Model.build(4, [4], 2, rng=rng))

    def test_save_and_load_resyncs_target(self, tmp_path):
        agent = DQNAgent(3, 2, hidden_layers=[4], seed=0)
        path = str(tmp_path / "agent.npz")
        agent.save(path)

        other = DQNAgent(3, 2, hidden_layers=[4], seed=1)
        assert other.load(path)
        state = np.array([0.1, 0.5, 0.9], dtype=np.float32)
        np.testing.assert_array_equal(other.model.forward(state), agent.model.forward(state))
        np.testing.assert_array_equal(other.target_model.forward(state), agent.model.forward(state))

        assert not other.load(str(tmp_path / "missing.npz"))
