"""
Lunar Lander RL - Lander Environment Package
============================================

This package contains the lunar lander rigid-body simulation, the hand-written
Q-network and the replay buffer used to train it.
"""

from .lander_physics import (
    Action,
    InvalidActionError,
    LanderConfig,
    LunarLanderEnvironment,
    LunarLanderGame,
    Rocket,
    load_config,
)
from .q_networks import DQNAgent, LinearLayer, Model, SoftmaxLayer, td_loss_gradient
from .replay_buffer import ReplayBuffer

__version__ = "0.1.0"

__all__ = [
    'Action',
    'InvalidActionError',
    'LanderConfig',
    'LunarLanderEnvironment',
    'LunarLanderGame',
    'Rocket',
    'load_config',
    'DQNAgent',
    'LinearLayer',
    'Model',
    'SoftmaxLayer',
    'td_loss_gradient',
    'ReplayBuffer',
]
