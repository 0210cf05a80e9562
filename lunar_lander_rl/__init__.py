"""
Lunar Lander RL
===============

2D lunar lander simulation trained with a hand-written Q-learning network.
"""

__version__ = "0.1.0"
