"""
Lunar Lander RL - Experience Replay Buffer
==========================================

Circular experience replay buffer with uniform minibatch sampling for the
Q-learning agent.
"""

import logging
from typing import Any, Dict, Optional

import numpy as np

logger = logging.getLogger(__name__)


class ReplayBuffer:
    """
    Fixed-size store of (state, action, reward, next_state, done) transitions.

    Actions are discrete engine indices kept as int64. Arrays are allocated
    once; after ``capacity`` additions each new transition replaces the oldest.
    """

    def __init__(self, capacity: int, state_dim: int, seed: Optional[int] = None):
        """
        Args:
            capacity: Number of transitions kept before overwriting
            state_dim: Length of the observation vector
            seed: Seed for minibatch index sampling
        """
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")

        self.capacity = capacity
        self.position = 0
        self.size = 0
        self.rng = np.random.default_rng(seed)

        self.states = np.zeros((capacity, state_dim), dtype=np.float32)
        self.actions = np.zeros(capacity, dtype=np.int64)
        self.rewards = np.zeros(capacity, dtype=np.float32)
        self.next_states = np.zeros((capacity, state_dim), dtype=np.float32)
        self.dones = np.zeros(capacity, dtype=np.bool_)

        logger.info(f"Replay buffer ready: {capacity:,} transitions, state_dim={state_dim}")

    def add(self, state: np.ndarray, action: int, reward: float,
            next_state: np.ndarray, done: bool):
        """Store one transition at the write cursor."""
        slot = self.position
        self.states[slot], self.next_states[slot] = state, next_state
        self.actions[slot] = int(action)
        self.rewards[slot] = reward
        self.dones[slot] = bool(done)

        self.position = (slot + 1) % self.capacity
        self.size = min(self.size + 1, self.capacity)

    def sample(self, batch_size: int) -> Dict[str, np.ndarray]:
        """Draw ``batch_size`` distinct stored transitions, keyed by field name."""
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if self.size < batch_size:
            raise ValueError(f"Cannot draw {batch_size} transitions from a buffer "
                             f"holding {self.size}")

        indices = self.rng.choice(self.size, batch_size, replace=False)

        return {
            'state': self.states[indices],
            'action': self.actions[indices],
            'reward': self.rewards[indices],
            'next_state': self.next_states[indices],
            'done': self.dones[indices],
        }

    def can_sample(self, batch_size: int) -> bool:
        """True once ``sample(batch_size)`` would succeed."""
        return 1 <= batch_size <= self.size

    def __len__(self) -> int:
        return self.size

    def clear(self):
        self.position = 0
        self.size = 0
        logger.info("Replay buffer cleared")

    def get_statistics(self) -> Dict[str, Any]:
        """Fill level, reward spread, terminal rate and per-action counts."""
        stats = {"size": self.size, "capacity": self.capacity,
                 "utilization": self.size / self.capacity}
        if self.size == 0:
            return stats

        rewards = self.rewards[:self.size]
        stats.update({
            "reward_mean": float(rewards.mean()),
            "reward_std": float(rewards.std()),
            "reward_min": float(rewards.min()),
            "reward_max": float(rewards.max()),
            "done_rate": float(self.dones[:self.size].mean()),
            # Index i counts engine action i
            "action_counts": np.bincount(self.actions[:self.size]).tolist(),
        })
        return stats
