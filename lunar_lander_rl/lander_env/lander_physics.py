"""
Lunar Lander RL - Physics Simulation Environment
================================================

This module implements the 2D rigid-body simulation of a lunar lander rocket:
translational and rotational dynamics under gravity and three engines, landing
leg ground contact, short-lived thrust particles for renderers, the episode
state machine with its reward policy, and a Gymnasium adapter used by the
training and evaluation scripts.

All physics arithmetic runs in 32-bit floats.
"""

import os
import logging
from dataclasses import dataclass, field, fields, replace
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple

import numpy as np
import gymnasium as gym
from gymnasium import spaces
import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), '..', 'configs', 'environment.yaml')

OBSERVATION_FEATURES = ('x', 'y', 'vx', 'vy', 'angular_velocity', 'tilt_cos', 'tilt_sin')


class InvalidActionError(ValueError):
    """Raised when an action index is outside the configured action space."""


class Action(IntEnum):
    RIGHT = 0
    LEFT = 1
    DOWN = 2
    COAST = 3
    RIGHT_DOWN = 4
    LEFT_DOWN = 5


# Engines fired by each action
ENGINE_FIRINGS = {
    Action.RIGHT: (Action.RIGHT,),
    Action.LEFT: (Action.LEFT,),
    Action.DOWN: (Action.DOWN,),
    Action.COAST: (),
    Action.RIGHT_DOWN: (Action.RIGHT, Action.DOWN),
    Action.LEFT_DOWN: (Action.LEFT, Action.DOWN),
}

ACTION_SET_SIZES = {'basic': 4, 'extended': 6}


@dataclass(frozen=True)
class LanderConfig:
    """
    Immutable physics, episode and reward parameters for one environment.

    Mirrors the sections of ``configs/environment.yaml``; ``from_dict`` accepts
    the nested YAML layout and ``dataclasses.replace`` derives variants.
    """

    # rocket_params
    width: float = 5.0
    height: float = 5.0
    mass: float = 50.0
    leg_length: float = 2.5
    leg_angle: float = np.pi / 3
    random_initial_x: bool = False
    random_initial_y: bool = False
    initial_velocity: Tuple[float, float] = (0.0, 0.0)

    # engine_params
    main_engine_force: float = 1000.0
    side_engine_force: float = 100.0
    action_set: str = 'basic'
    particle_capacity: int = 64
    particle_lifetime: float = 0.5
    particle_speed: float = 8.0

    # world_params
    gravity: float = 9.81
    dt: float = 0.02
    box_width: float = 100.0
    box_height: float = 100.0
    floor_height: float = 0.0
    min_height: float = 0.05

    # episode_params
    max_steps: int = 1000
    target_x: float = 50.0

    # reward_params
    distance_weight: float = 10.0
    step_cost: float = 0.01
    landing_bonus: float = 100.0
    crash_penalty: float = 100.0
    out_of_bounds_penalty: float = 100.0
    timeout_penalty: float = 50.0
    max_landing_vx: float = 1.0
    max_landing_vy: float = 2.0
    max_landing_angular_velocity: float = 0.5

    # observation
    observation_features: Tuple[str, ...] = field(default=OBSERVATION_FEATURES)

    def __post_init__(self):
        for name in ('width', 'height', 'mass', 'dt', 'box_width', 'box_height',
                     'main_engine_force', 'side_engine_force'):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
        if self.action_set not in ACTION_SET_SIZES:
            raise ValueError(f"Unknown action set '{self.action_set}', "
                             f"expected one of {sorted(ACTION_SET_SIZES)}")
        if self.particle_capacity < 1:
            raise ValueError("particle_capacity must be at least 1")
        if self.max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        if not self.observation_features:
            raise ValueError("observation_features must not be empty")
        unknown = [f for f in self.observation_features if f not in OBSERVATION_FEATURES]
        if unknown:
            raise ValueError(f"Unknown observation features: {unknown}")
        # YAML hands us lists
        object.__setattr__(self, 'initial_velocity', tuple(float(v) for v in self.initial_velocity))
        object.__setattr__(self, 'observation_features', tuple(self.observation_features))

    @property
    def action_space_size(self) -> int:
        return ACTION_SET_SIZES[self.action_set]

    @property
    def observation_space_size(self) -> int:
        return len(self.observation_features)

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'LanderConfig':
        """Build a config from the nested section layout of environment.yaml."""
        known = {f.name for f in fields(cls)}
        values = {}
        for section, params in config.items():
            if section == 'observation':
                values['observation_features'] = params.get('features', OBSERVATION_FEATURES)
                continue
            if not isinstance(params, dict):
                raise ValueError(f"Config section '{section}' must be a mapping")
            for key, value in params.items():
                if key not in known:
                    raise ValueError(f"Unknown config key '{section}.{key}'")
                values[key] = value
        return cls(**values)


def load_config(config_path: Optional[str] = None) -> LanderConfig:
    """Load an environment configuration from a YAML file."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f)
        config = LanderConfig.from_dict(raw or {})
        logger.info(f"Environment configuration loaded from {config_path}")
        return config
    except Exception as e:
        logger.error(f"Failed to load environment configuration: {e}")
        raise


def rotate(vectors: np.ndarray, angle: float) -> np.ndarray:
    """Rotate body-frame row vectors counterclockwise by ``angle``."""
    c, s = np.cos(angle), np.sin(angle)
    rotation = np.array([[c, -s], [s, c]], dtype=np.float32)
    return vectors @ rotation.T


class Rocket:
    """
    Rigid-body lander with two side engines and one bottom engine.

    Position is the centre of mass in metres. ``tilt`` is measured
    counterclockwise with 0 meaning upright and is never wrapped. Mass, moment
    of inertia and engine accelerations are fixed at construction.
    """

    def __init__(self, config: LanderConfig, position=None, velocity=None):
        self.config = config
        f32 = np.float32

        if position is None:
            position = (config.box_width / 2, config.box_height / 2)
        if velocity is None:
            velocity = config.initial_velocity

        self.position = np.array(position, dtype=f32)
        self.velocity = np.array(velocity, dtype=f32)
        self.tilt = f32(0.0)
        self.angular_velocity = f32(0.0)

        # Geometry
        self.width = f32(config.width)
        self.height = f32(config.height)
        half_w, half_h = config.width / 2, config.height / 2
        leg_dx = half_w + config.leg_length * np.cos(config.leg_angle)
        leg_dy = half_h + config.leg_length * np.sin(config.leg_angle)
        self.leg_offsets = np.array([[-leg_dx, -leg_dy], [leg_dx, -leg_dy]], dtype=f32)
        self.corner_offsets = np.array([[-half_w, -half_h], [half_w, -half_h],
                                        [half_w, half_h], [-half_w, half_h]], dtype=f32)
        self.engine_offsets = {
            Action.RIGHT: np.array([half_w, -half_h], dtype=f32),
            Action.LEFT: np.array([-half_w, -half_h], dtype=f32),
            Action.DOWN: np.array([0.0, -half_h], dtype=f32),
        }

        # Physical parameters
        self.dt = f32(config.dt)
        self.gravity = f32(config.gravity)
        self.mass = f32(config.mass)
        self.moment_of_inertia = f32(config.mass * config.height ** 2 / 12.0)
        self.main_acceleration = f32(config.main_engine_force / config.mass)
        self.side_acceleration = f32(config.side_engine_force / config.mass)
        side_torque = config.side_engine_force * config.height / 2.0
        self.side_angular_acceleration = f32(side_torque / self.moment_of_inertia)

        # Particle ring buffer
        capacity = config.particle_capacity
        self.particle_positions = np.zeros((capacity, 2), dtype=f32)
        self.particle_velocities = np.zeros((capacity, 2), dtype=f32)
        self.particle_ages = np.zeros(capacity, dtype=f32)
        self.particle_active = np.zeros(capacity, dtype=bool)
        self.particle_index = 0

    @classmethod
    def spawn(cls, config: LanderConfig, rng: np.random.Generator) -> 'Rocket':
        """Create a rocket at the configured, optionally randomised, start state."""
        x = config.box_width / 2
        y = config.box_height / 2
        if config.random_initial_x:
            x = rng.uniform(config.width, config.box_width - config.width)
        if config.random_initial_y:
            y = rng.uniform(config.box_height / 2, config.box_height - config.height)
        return cls(config, position=(x, y))

    @property
    def lateral_axis(self) -> np.ndarray:
        return np.array([np.cos(self.tilt), np.sin(self.tilt)], dtype=np.float32)

    @property
    def longitudinal_axis(self) -> np.ndarray:
        return np.array([-np.sin(self.tilt), np.cos(self.tilt)], dtype=np.float32)

    def fire_engine(self, action: int):
        """
        Apply one timestep of thrust for ``action``.

        Side engines push along the lateral axis and apply torque; the bottom
        engine pushes along the longitudinal axis only. COAST changes nothing.
        """
        try:
            action = Action(action)
        except ValueError:
            raise InvalidActionError(f"Invalid action {action!r}") from None

        for engine in ENGINE_FIRINGS[action]:
            if engine == Action.RIGHT:
                thrust = -self.side_acceleration * self.lateral_axis
                self.angular_velocity -= self.side_angular_acceleration * self.dt
            elif engine == Action.LEFT:
                thrust = self.side_acceleration * self.lateral_axis
                self.angular_velocity += self.side_angular_acceleration * self.dt
            else:
                thrust = self.main_acceleration * self.longitudinal_axis
            self.velocity += thrust * self.dt
            self._emit_particle(engine, thrust)

    def _emit_particle(self, engine: Action, thrust: np.ndarray):
        """Write one exhaust particle into the ring buffer, overwriting the oldest slot."""
        direction = -thrust / np.linalg.norm(thrust)
        slot = self.particle_index
        offset = rotate(self.engine_offsets[engine][np.newaxis, :], self.tilt)[0]
        self.particle_positions[slot] = self.position + offset
        self.particle_velocities[slot] = self.velocity + direction * self.config.particle_speed
        self.particle_ages[slot] = 0.0
        self.particle_active[slot] = True
        self.particle_index = (slot + 1) % len(self.particle_active)

    def update(self):
        """Advance free-fall dynamics and particles by one DT (explicit Euler)."""
        self.velocity[1] -= self.gravity * self.dt
        self.position += self.velocity * self.dt
        self.tilt += self.angular_velocity * self.dt
        self._update_particles()

    def _update_particles(self):
        active = self.particle_active
        self.particle_positions[active] += self.particle_velocities[active] * self.dt
        self.particle_ages[active] += self.dt
        # Expired particles stay in place, inert, until their slot is reused
        self.particle_active &= self.particle_ages <= self.config.particle_lifetime

    def leg_tips(self) -> np.ndarray:
        """World positions of the left and right leg tips, shape (2, 2)."""
        return self.position + rotate(self.leg_offsets, self.tilt)

    def corners(self) -> np.ndarray:
        """World positions of the body corners, shape (4, 2)."""
        return self.position + rotate(self.corner_offsets, self.tilt)

    def legs_touching(self) -> np.ndarray:
        """Boolean per leg (left, right): tip within ``min_height`` of the floor."""
        threshold = self.config.floor_height + self.config.min_height
        return self.leg_tips()[:, 1] <= threshold

    def body_grounded(self) -> bool:
        return bool(np.min(self.corners()[:, 1]) <= self.config.floor_height)

    def active_particles(self) -> np.ndarray:
        return self.particle_positions[self.particle_active].copy()

    def state_dict(self) -> Dict[str, float]:
        return {
            'x': float(self.position[0]),
            'y': float(self.position[1]),
            'vx': float(self.velocity[0]),
            'vy': float(self.velocity[1]),
            'tilt': float(self.tilt),
            'angular_velocity': float(self.angular_velocity),
        }


class LunarLanderGame:
    """
    Episode state machine around one ``Rocket``.

    ``step`` applies one action, integrates one timestep and returns
    ``(reward, done)``. Termination policy, first match wins:

    1. landed: both legs touching and vx, vy, angular velocity within the
       landing bounds (``+landing_bonus``)
    2. crashed: a leg touching outside those bounds, or the body itself
       reaching the floor (``-crash_penalty``)
    3. out of bounds: centre left the box sideways or through the ceiling
       (``-out_of_bounds_penalty``)
    4. timeout: the step budget is spent (``-timeout_penalty``)

    A single leg touching within bounds is normal flight.
    """

    def __init__(self, config: Optional[LanderConfig] = None, seed: Optional[int] = None):
        self.config = config if config is not None else LanderConfig()
        self.np_random = np.random.default_rng(seed)
        self.action_space = self.config.action_space_size
        self.observation_space = self.config.observation_space_size

        self.rocket = None
        self.steps = 0
        self.done = False
        self.last_outcome = 'running'
        self._prev_distance = 0.0
        self.reset()

    def reset(self, seed: Optional[int] = None, randomize: Optional[bool] = None):
        """Start a fresh episode. ``randomize`` overrides the configured start randomisation."""
        if seed is not None:
            self.np_random = np.random.default_rng(seed)

        config = self.config
        if randomize is not None:
            config = _with_randomized_start(config, randomize)

        self.rocket = Rocket.spawn(config, self.np_random)
        self.steps = 0
        self.done = False
        self.last_outcome = 'running'
        self._prev_distance = self._distance()
        logger.debug(f"Game reset: {self.rocket.state_dict()}")

    def _distance(self) -> float:
        return abs(float(self.rocket.position[0]) - self.config.target_x) / self.config.box_width

    def step(self, action: int) -> Tuple[float, bool]:
        if self.done:
            raise RuntimeError("step() called on a finished episode; call reset() first")
        if (isinstance(action, (bool, np.bool_)) or not isinstance(action, (int, np.integer))
                or not 0 <= action < self.action_space):
            raise InvalidActionError(
                f"Invalid action {action!r} for action space of size {self.action_space}")

        self.rocket.fire_engine(action)
        self.rocket.update()

        cfg = self.config
        distance = self._distance()
        reward = cfg.distance_weight * (self._prev_distance - distance) - cfg.step_cost
        self._prev_distance = distance

        outcome = self._check_outcome()
        if outcome == 'landed':
            reward += cfg.landing_bonus
        elif outcome == 'crashed':
            reward -= cfg.crash_penalty
        elif outcome == 'out_of_bounds':
            reward -= cfg.out_of_bounds_penalty
        elif outcome == 'timeout':
            reward -= cfg.timeout_penalty

        self.last_outcome = outcome
        self.done = outcome != 'running'
        self.steps += 1

        if self.done:
            logger.debug(f"Episode finished after {self.steps} steps: {outcome}")
        return float(reward), self.done

    def within_landing_bounds(self) -> bool:
        cfg = self.config
        vx, vy = self.rocket.velocity
        return bool(abs(vx) <= cfg.max_landing_vx and
                    abs(vy) <= cfg.max_landing_vy and
                    abs(self.rocket.angular_velocity) <= cfg.max_landing_angular_velocity)

    def _check_outcome(self) -> str:
        cfg = self.config
        legs = self.rocket.legs_touching()
        safe = self.within_landing_bounds()

        if legs.all() and safe:
            return 'landed'
        if (legs.any() and not safe) or self.rocket.body_grounded():
            return 'crashed'

        x, y = self.rocket.position
        if x < 0 or x > cfg.box_width or y > cfg.box_height:
            return 'out_of_bounds'
        if self.steps + 1 >= cfg.max_steps:
            return 'timeout'
        return 'running'

    def observation(self) -> np.ndarray:
        """Observation vector in the configured feature order."""
        rocket = self.rocket
        values = {
            'x': rocket.position[0] / np.float32(self.config.box_width),
            'y': rocket.position[1] / np.float32(self.config.box_height),
            'vx': rocket.velocity[0],
            'vy': rocket.velocity[1],
            'angular_velocity': rocket.angular_velocity,
            'tilt_cos': np.cos(rocket.tilt),
            'tilt_sin': np.sin(rocket.tilt),
        }
        return np.array([values[name] for name in self.config.observation_features], dtype=np.float32)

    def draw_state(self) -> Dict[str, Any]:
        """Read-only pose and geometry for external renderers."""
        return {
            'position': self.rocket.position.copy(),
            'tilt': float(self.rocket.tilt),
            'corners': self.rocket.corners(),
            'leg_tips': self.rocket.leg_tips(),
            'particles': self.rocket.active_particles(),
            'steps': self.steps,
            'outcome': self.last_outcome,
        }


def _with_randomized_start(config: LanderConfig, randomize: bool) -> LanderConfig:
    return replace(config, random_initial_x=randomize, random_initial_y=randomize)


class LunarLanderEnvironment(gym.Env):
    """
    Gymnasium environment wrapping ``LunarLanderGame``.

    Every game termination, including the step budget, is reported as
    ``terminated`` since each carries its own terminal reward.
    """

    metadata = {'render_modes': ['human', 'ansi']}

    def __init__(self, config_path: str = None, config: Optional[LanderConfig] = None,
                 render_mode: Optional[str] = None):
        super().__init__()

        if config is None:
            config = load_config(config_path)
        self.config = config
        self.render_mode = render_mode

        self.game = LunarLanderGame(config)

        self.action_space = spaces.Discrete(config.action_space_size)
        self.observation_space = spaces.Box(
            low=-np.inf, high=np.inf, shape=(config.observation_space_size,), dtype=np.float32)

        self.episode_reward = 0.0

        logger.info("Lunar lander environment initialized")

    def reset(self, seed=None, options=None):
        """Reset environment to initial state."""
        super().reset(seed=seed)

        randomize = None
        if options and 'randomize_initial_conditions' in options:
            randomize = bool(options['randomize_initial_conditions'])

        self.game.reset(seed=seed, randomize=randomize)
        self.episode_reward = 0.0

        return self.game.observation(), self._get_info()

    def step(self, action):
        """Execute one step in the environment."""
        reward, done = self.game.step(int(action))
        self.episode_reward += reward

        observation = self.game.observation()
        info = self._get_info()

        if self.render_mode == 'human':
            self.render()

        return observation, reward, done, False, info

    def _get_info(self) -> Dict[str, Any]:
        rocket = self.game.rocket
        info = rocket.state_dict()
        info.update({
            'steps': self.game.steps,
            'outcome': self.game.last_outcome,
            'legs_touching': rocket.legs_touching().tolist(),
            'episode_reward': self.episode_reward,
        })
        return info

    def render(self):
        """Text rendering of the current pose."""
        state = self.game.rocket.state_dict()
        text = (f"Step: {self.game.steps}, "
                f"Pos: ({state['x']:.1f}, {state['y']:.1f})m, "
                f"Vel: ({state['vx']:.2f}, {state['vy']:.2f})m/s, "
                f"Tilt: {np.degrees(state['tilt']):.1f} deg, "
                f"Outcome: {self.game.last_outcome}")
        if self.render_mode == 'ansi':
            return text
        print(text)

    def close(self):
        pass
