"""
Lunar Lander RL - Q-Network Architecture
========================================

This module implements a feed-forward network with hand-written forward and
backward passes (no automatic differentiation) and the Q-learning agent that
trains it against a periodically synced target network.

Gradient discipline: ``Model.backprop`` always accumulates parameter gradients
and ``Model.apply_gradients`` applies and zeroes them. Per-step updates are a
batch size of one.
"""

import os
import copy
import logging
from typing import Dict, List, Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)


class Layer:
    """
    Shared contract for network layers.

    ``forward`` returns the layer's activation for one input vector and
    ``backward`` returns the gradient of the loss with respect to the layer
    input. Neither keeps the values around; callers thread them through.
    """

    input_size: int
    output_size: int

    def forward(self, layer_input: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def backward(self, layer_input: np.ndarray, activation: np.ndarray,
                 output_gradient: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def apply_gradient(self, learning_rate: float, batch_size: int = 1):
        """Layers without parameters have nothing to update."""

    def zero_gradient(self):
        pass

    def parameters(self) -> Dict[str, np.ndarray]:
        return {}


class LinearLayer(Layer):
    """
    Fully connected layer ``W x + b`` with optional ReLU.

    Weights are drawn from a Xavier uniform distribution, biases from
    Uniform(0, bias_init_high) so that ReLU units start out active.
    """

    def __init__(self, inputs: int, outputs: int, relu: bool = False,
                 rng: Optional[np.random.Generator] = None, bias_init_high: float = 0.1):
        if inputs < 1 or outputs < 1:
            raise ValueError(f"Layer sizes must be positive, got {inputs}->{outputs}")
        if rng is None:
            rng = np.random.default_rng()

        self.input_size = inputs
        self.output_size = outputs
        self.relu = relu

        limit = np.sqrt(6.0 / (inputs + outputs))
        self.weights = rng.uniform(-limit, limit, size=(outputs, inputs)).astype(np.float32)
        self.biases = rng.uniform(0.0, bias_init_high, size=outputs).astype(np.float32)

        self.weight_gradient = np.zeros_like(self.weights)
        self.bias_gradient = np.zeros_like(self.biases)

    def forward(self, layer_input: np.ndarray) -> np.ndarray:
        activation = self.weights @ layer_input + self.biases
        if self.relu:
            activation = np.maximum(activation, np.float32(0.0))
        return activation

    def backward(self, layer_input: np.ndarray, activation: np.ndarray,
                 output_gradient: np.ndarray) -> np.ndarray:
        if self.relu:
            output_gradient = output_gradient * (activation > 0)
        self.weight_gradient += np.outer(output_gradient, layer_input)
        self.bias_gradient += output_gradient
        return self.weights.T @ output_gradient

    def apply_gradient(self, learning_rate: float, batch_size: int = 1):
        scale = np.float32(learning_rate / batch_size)
        self.weights -= scale * self.weight_gradient
        self.biases -= scale * self.bias_gradient
        self.zero_gradient()

    def zero_gradient(self):
        self.weight_gradient.fill(0.0)
        self.bias_gradient.fill(0.0)

    def parameters(self) -> Dict[str, np.ndarray]:
        return {'weights': self.weights, 'biases': self.biases}


class SoftmaxLayer(Layer):
    """
    Softmax over the input vector.

    ``backward`` passes the incoming gradient through unchanged instead of
    multiplying by the softmax Jacobian. That is only correct when the caller
    has already folded the Jacobian into the gradient, as with cross-entropy on
    the probabilities (``probabilities - one_hot``). Any other loss placed on
    top of this layer gets wrong gradients.
    """

    def __init__(self, size: int):
        if size < 1:
            raise ValueError(f"Layer size must be positive, got {size}")
        self.input_size = size
        self.output_size = size

    def forward(self, layer_input: np.ndarray) -> np.ndarray:
        exponents = np.exp(layer_input - np.max(layer_input))
        return exponents / np.sum(exponents)

    def backward(self, layer_input: np.ndarray, activation: np.ndarray,
                 output_gradient: np.ndarray) -> np.ndarray:
        return output_gradient.copy()


class Model:
    """
    Ordered sequence of layers.

    Layer ``i``'s output size must equal layer ``i + 1``'s input size; this is
    checked whenever a layer is added.
    """

    def __init__(self, layers: Optional[Sequence[Layer]] = None):
        self.layers: List[Layer] = []
        for layer in layers or []:
            self._append(layer)

    @classmethod
    def build(cls, input_size: int, hidden_sizes: Sequence[int], output_size: int,
              rng: Optional[np.random.Generator] = None, bias_init_high: float = 0.1) -> 'Model':
        """ReLU hidden layers followed by a linear output layer."""
        if rng is None:
            rng = np.random.default_rng()
        model = cls()
        sizes = [input_size, *hidden_sizes]
        for inputs, outputs in zip(sizes[:-1], sizes[1:]):
            model.add_layer(inputs, outputs, relu=True, rng=rng, bias_init_high=bias_init_high)
        model.add_layer(sizes[-1], output_size, relu=False, rng=rng, bias_init_high=bias_init_high)
        return model

    def add_layer(self, input_size: int, output_size: int, relu: bool = False,
                  rng: Optional[np.random.Generator] = None, bias_init_high: float = 0.1):
        self._append(LinearLayer(input_size, output_size, relu, rng=rng,
                                 bias_init_high=bias_init_high))

    def _append(self, layer: Layer):
        if self.layers and self.layers[-1].output_size != layer.input_size:
            raise ValueError(
                f"Layer {len(self.layers)} expects {layer.input_size} inputs but the previous "
                f"layer produces {self.layers[-1].output_size}")
        self.layers.append(layer)

    @property
    def input_size(self) -> int:
        return self.layers[0].input_size

    @property
    def output_size(self) -> int:
        return self.layers[-1].output_size

    def _check_input(self, state) -> np.ndarray:
        if not self.layers:
            raise ValueError("Model has no layers")
        state = np.asarray(state, dtype=np.float32)
        if state.shape != (self.input_size,):
            raise ValueError(f"Expected input of shape ({self.input_size},), got {state.shape}")
        if not np.all(np.isfinite(state)):
            raise ValueError("Input state contains non-finite values")
        return state

    def _forward_trace(self, state: np.ndarray) -> List[np.ndarray]:
        activations = [state]
        for layer in self.layers:
            activations.append(layer.forward(activations[-1]))
        return activations

    def forward(self, state) -> np.ndarray:
        """Run the network on one input vector and return the output activation."""
        state = self._check_input(state)
        return self._forward_trace(state)[-1]

    def backprop(self, state, loss_gradient) -> np.ndarray:
        """
        Accumulate parameter gradients for one sample.

        ``loss_gradient`` is the gradient of the loss with respect to the
        network output for ``state``. Returns the gradient with respect to the
        network input.
        """
        state = self._check_input(state)
        gradient = np.asarray(loss_gradient, dtype=np.float32)
        if gradient.shape != (self.output_size,):
            raise ValueError(f"Expected loss gradient of shape ({self.output_size},), "
                             f"got {gradient.shape}")
        if not np.all(np.isfinite(gradient)):
            raise ValueError("Loss gradient contains non-finite values")

        activations = self._forward_trace(state)
        for i in reversed(range(len(self.layers))):
            gradient = self.layers[i].backward(activations[i], activations[i + 1], gradient)
        return gradient

    def apply_gradients(self, learning_rate: float, batch_size: Optional[int] = None):
        """Subtract the accumulated gradients (averaged over ``batch_size``) and zero them."""
        if batch_size is not None and batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        for layer in self.layers:
            layer.apply_gradient(learning_rate, batch_size or 1)

    def zero_gradients(self):
        for layer in self.layers:
            layer.zero_gradient()

    def copy(self) -> 'Model':
        """Independent deep copy; no parameter storage is shared."""
        return copy.deepcopy(self)

    def parameter_count(self) -> int:
        return sum(p.size for layer in self.layers for p in layer.parameters().values())

    def save(self, filepath: str):
        """Save layer structure and parameters to an ``.npz`` archive."""
        arrays = {}
        spec = []
        for i, layer in enumerate(self.layers):
            if isinstance(layer, LinearLayer):
                spec.append(('linear', layer.input_size, layer.output_size, int(layer.relu)))
                arrays[f'layer_{i}_weights'] = layer.weights
                arrays[f'layer_{i}_biases'] = layer.biases
            else:
                spec.append(('softmax', layer.input_size, layer.output_size, 0))
        arrays['spec'] = np.array(spec, dtype=object)
        np.savez(filepath, **arrays)
        logger.info(f"Model saved to {filepath}")

    @classmethod
    def load(cls, filepath: str) -> 'Model':
        """Rebuild a model saved with ``save``."""
        with np.load(filepath, allow_pickle=True) as data:
            model = cls()
            for i, (kind, inputs, outputs, relu) in enumerate(data['spec']):
                if kind == 'linear':
                    layer = LinearLayer(int(inputs), int(outputs), relu=bool(relu))
                    layer.weights = data[f'layer_{i}_weights'].astype(np.float32)
                    layer.biases = data[f'layer_{i}_biases'].astype(np.float32)
                    layer.zero_gradient()
                else:
                    layer = SoftmaxLayer(int(inputs))
                model._append(layer)
        logger.info(f"Model loaded from {filepath}")
        return model


def td_loss_gradient(prediction: np.ndarray, action: int, target: float) -> np.ndarray:
    """Gradient of ``0.5 * (prediction[action] - target) ** 2`` w.r.t. the prediction vector."""
    gradient = np.zeros_like(prediction, dtype=np.float32)
    gradient[action] = prediction[action] - target
    return gradient


class DQNAgent:
    """
    Epsilon-greedy Q-learning agent with a hard-synced target network.

    Targets are ``reward`` for terminal transitions and
    ``reward + gamma * max_a target(next_state)[a]`` otherwise.
    """

    def __init__(self,
                 state_dim: int,
                 action_dim: int,
                 hidden_layers: Sequence[int] = (64, 64),
                 learning_rate: float = 1e-3,
                 gamma: float = 0.99,
                 bias_init_high: float = 0.1,
                 seed: Optional[int] = None,
                 model: Optional[Model] = None):

        self.state_dim = state_dim
        self.action_dim = action_dim
        self.learning_rate = learning_rate
        self.gamma = gamma
        self.rng = np.random.default_rng(seed)

        if model is None:
            model = Model.build(state_dim, hidden_layers, action_dim,
                                rng=self.rng, bias_init_high=bias_init_high)
        if model.input_size != state_dim or model.output_size != action_dim:
            raise ValueError(f"Model shape {model.input_size}->{model.output_size} does not match "
                             f"state_dim={state_dim}, action_dim={action_dim}")
        self.model = model
        self.target_model = model.copy()

        self.pending_gradients = 0
        self.total_updates = 0

        logger.info(f"DQN agent initialized with {self.model.parameter_count():,} parameters")

    def select_action(self, state: np.ndarray, epsilon: float = 0.0) -> int:
        """Random action with probability ``epsilon``, otherwise the greedy one."""
        if self.rng.random() < epsilon:
            return int(self.rng.integers(self.action_dim))
        return int(np.argmax(self.model.forward(state)))

    def compute_target(self, reward: float, next_state: np.ndarray, done: bool) -> float:
        if done:
            return float(reward)
        next_q = self.target_model.forward(next_state)
        return float(reward + self.gamma * np.max(next_q))

    def accumulate(self, state: np.ndarray, action: int, reward: float,
                   next_state: np.ndarray, done: bool) -> float:
        """Backpropagate one transition into the gradient accumulators; returns the TD error."""
        prediction = self.model.forward(state)
        target = self.compute_target(reward, next_state, done)
        gradient = td_loss_gradient(prediction, action, target)
        self.model.backprop(state, gradient)
        self.pending_gradients += 1
        return float(gradient[action])

    def apply_gradients(self):
        """Apply the averaged accumulated gradients, if any."""
        if self.pending_gradients == 0:
            return
        self.model.apply_gradients(self.learning_rate, self.pending_gradients)
        self.pending_gradients = 0
        self.total_updates += 1

    def train(self, replay_buffer, batch_size: int) -> Dict[str, float]:
        """Accumulate a sampled minibatch and apply it as one update."""
        batch = replay_buffer.sample(batch_size)
        td_errors = np.array([
            self.accumulate(s, int(a), float(r), ns, bool(d))
            for s, a, r, ns, d in zip(batch['state'], batch['action'], batch['reward'],
                                      batch['next_state'], batch['done'])
        ])
        self.apply_gradients()

        return {
            'loss': float(np.mean(0.5 * td_errors ** 2)),
            'td_error_mean': float(np.mean(td_errors)),
            'td_error_abs_max': float(np.max(np.abs(td_errors))),
        }

    def sync_target(self):
        """Replace the target network with a fresh copy of the live network."""
        self.target_model = self.model.copy()
        logger.debug("Target network synced")

    def save(self, filepath: str):
        self.model.save(filepath)

    def load(self, filepath: str) -> bool:
        """Load live weights from ``filepath`` and resync the target network."""
        if os.path.exists(filepath):
            model = Model.load(filepath)
            if model.input_size != self.state_dim or model.output_size != self.action_dim:
                raise ValueError(f"Checkpoint {filepath} has shape "
                                 f"{model.input_size}->{model.output_size}")
            self.model = model
            self.sync_target()
            return True
        else:
            logger.warning(f"No checkpoint found at {filepath}")
            return False
