import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest
from dataclasses import replace

from lunar_lander_rl.lander_env import LanderConfig, LunarLanderGame


@pytest.fixture
def base_config():
    """Default physics with a deterministic start."""
    return LanderConfig()


@pytest.fixture
def randomized_config():
    return replace(LanderConfig(), random_initial_x=True, random_initial_y=True)


@pytest.fixture
def game(base_config):
    return LunarLanderGame(base_config, seed=0)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def small_training_config():
    """Training parameters small enough to run in a test."""
    return {
        'training_params': {
            'total_timesteps': 200,
            'learning_rate': 0.001,
            'gamma': 0.99,
            'target_update_freq': 50,
            'gradient_batch_size': 8,
            'use_replay': True,
            'buffer_size': 500,
            'learning_starts': 16,
            'epsilon_start': 1.0,
            'epsilon_decay': 0.9,
            'min_epsilon': 0.1,
        },
        'network_architecture': {
            'hidden_layers': [8],
            'bias_init_high': 0.1,
        },
        'evaluation': {
            'eval_freq': 100,
            'n_eval_episodes': 1,
        },
        'logging': {
            'log_freq': 50,
            'save_freq': 100,
            'generate_plots': False,
        },
    }
