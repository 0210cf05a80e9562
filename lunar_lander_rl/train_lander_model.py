"""
Lunar Lander RL - Training Script
=================================

Main training script for the Q-learning lunar lander agent. Runs the
epsilon-greedy loop against the simulation, periodically syncs the target
network, evaluates, checkpoints and writes history and plots.
"""

import os
import time
import yaml
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from dataclasses import replace
from typing import Any, Dict, Optional, Union
import logging
from tqdm import tqdm
import argparse

from lunar_lander_rl.lander_env import (
    DQNAgent,
    LanderConfig,
    LunarLanderEnvironment,
    LunarLanderGame,
    Model,
    ReplayBuffer,
    load_config,
)

logger = logging.getLogger(__name__)

DEFAULT_TRAINING_CONFIG = os.path.join(os.path.dirname(__file__), 'configs', 'training_params.yaml')


def load_training_config(config_path: str) -> Dict[str, Any]:
    """Load training configuration from YAML file."""
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
        logger.info(f"Configuration loaded from {config_path}")
        return config
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise


class TrainingManager:
    """
    Manages the complete training process for the lunar lander Q-network.

    Gradients are always accumulated and applied in batches of
    ``gradient_batch_size`` transitions. With ``use_replay`` each batch is
    sampled from the replay buffer every step; without it the batch is the
    last ``gradient_batch_size`` online transitions.
    """

    def __init__(self,
                 config: Union[str, Dict[str, Any]] = DEFAULT_TRAINING_CONFIG,
                 env_config: Optional[LanderConfig] = None,
                 output_dir: str = "results",
                 seed: Optional[int] = None):
        """Initialize training manager with configuration."""
        if isinstance(config, str):
            config = load_training_config(config)
        self.config = config
        self.training_params = config['training_params']
        self.network_params = config['network_architecture']
        self.eval_params = config['evaluation']
        self.log_params = config['logging']
        self.output_dir = output_dir

        if env_config is None:
            env_config = load_config()

        # Initialize environment
        self.env = LunarLanderEnvironment(config=env_config)
        self.eval_env = LunarLanderEnvironment(config=env_config)
        self.seed = seed

        self.state_dim = self.env.observation_space.shape[0]
        self.action_dim = int(self.env.action_space.n)

        self.agent = DQNAgent(
            state_dim=self.state_dim,
            action_dim=self.action_dim,
            hidden_layers=self.network_params['hidden_layers'],
            learning_rate=self.training_params['learning_rate'],
            gamma=self.training_params['gamma'],
            bias_init_high=self.network_params.get('bias_init_high', 0.1),
            seed=seed,
        )

        self.use_replay = self.training_params['use_replay']
        self.gradient_batch_size = self.training_params['gradient_batch_size']
        self.replay_buffer = None
        if self.use_replay:
            self.replay_buffer = ReplayBuffer(
                capacity=self.training_params['buffer_size'],
                state_dim=self.state_dim,
                seed=seed,
            )

        # Training tracking
        self.total_timesteps = 0
        self.episode_num = 0
        self.training_history = []
        self.evaluation_history = []
        self.recent_losses = []

        # Exploration schedule
        self.epsilon = self.training_params['epsilon_start']
        self.epsilon_decay = self.training_params['epsilon_decay']
        self.min_epsilon = self.training_params['min_epsilon']

        self._create_directories()

        logger.info("Training manager initialized successfully")
        logger.info(f"State dimension: {self.state_dim}")
        logger.info(f"Action dimension: {self.action_dim}")
        logger.info(f"Gradient batch size: {self.gradient_batch_size} "
                    f"({'replay' if self.use_replay else 'online'})")

    def _create_directories(self):
        for directory in ("models", "plots", "csv_logs"):
            os.makedirs(os.path.join(self.output_dir, directory), exist_ok=True)

    def _path(self, *parts: str) -> str:
        return os.path.join(self.output_dir, *parts)

    def train(self):
        """Main training loop."""
        total_timesteps = self.training_params['total_timesteps']
        logger.info("Starting Q-learning training...")
        logger.info(f"Total timesteps: {total_timesteps:,}")

        start_time = time.time()

        state, _ = self.env.reset(seed=self.seed)
        episode_reward = 0.0
        episode_timesteps = 0
        episode_start_time = time.time()

        with tqdm(total=total_timesteps, desc="Training") as pbar:
            while self.total_timesteps < total_timesteps:
                action = self.agent.select_action(state, self.epsilon)

                next_state, reward, terminated, truncated, info = self.env.step(action)
                done = terminated or truncated

                self._learn(state, action, reward, next_state, done)

                state = next_state
                episode_reward += reward
                episode_timesteps += 1
                self.total_timesteps += 1

                if self.total_timesteps % self.training_params['target_update_freq'] == 0:
                    self.agent.sync_target()

                if done:
                    episode_time = time.time() - episode_start_time
                    self._record_episode(episode_reward, episode_timesteps, episode_time, info)

                    state, _ = self.env.reset()
                    episode_reward = 0.0
                    episode_timesteps = 0
                    episode_start_time = time.time()
                    self.episode_num += 1

                    self.epsilon = max(self.min_epsilon, self.epsilon * self.epsilon_decay)

                if self.total_timesteps % self.log_params['log_freq'] == 0:
                    self._log_training_metrics()

                if self.total_timesteps % self.eval_params['eval_freq'] == 0:
                    eval_metrics = self._evaluate()
                    self.evaluation_history.append({
                        'timestep': self.total_timesteps,
                        **eval_metrics
                    })
                    logger.info(f"Evaluation at {self.total_timesteps:,} steps: "
                                f"Mean reward: {eval_metrics['mean_reward']:.2f}, "
                                f"Success rate: {eval_metrics['success_rate']:.2f}")

                if self.total_timesteps % self.log_params['save_freq'] == 0:
                    self._save_checkpoint()

                pbar.update(1)
                pbar.set_postfix({
                    'Episode': self.episode_num,
                    'Reward': f"{episode_reward:.1f}",
                    'Epsilon': f"{self.epsilon:.3f}",
                })

        # Flush a partial online batch
        self.agent.apply_gradients()

        final_eval = self._evaluate()
        self._save_final_model()
        self._save_training_history()
        if self.log_params.get('generate_plots', True):
            self._generate_plots()

        total_time = time.time() - start_time
        logger.info(f"Training completed in {total_time / 60:.2f} minutes")
        logger.info(f"Final evaluation: {final_eval}")
        return final_eval

    def _learn(self, state, action, reward, next_state, done):
        if self.use_replay:
            self.replay_buffer.add(state, action, reward, next_state, done)
            if (self.total_timesteps >= self.training_params['learning_starts'] and
                    self.replay_buffer.can_sample(self.gradient_batch_size)):
                metrics = self.agent.train(self.replay_buffer, self.gradient_batch_size)
                self.recent_losses.append(metrics['loss'])
        else:
            td_error = self.agent.accumulate(state, action, reward, next_state, done)
            self.recent_losses.append(0.5 * td_error ** 2)
            if self.agent.pending_gradients >= self.gradient_batch_size:
                self.agent.apply_gradients()

    def _record_episode(self, reward: float, timesteps: int, duration: float, info: Dict[str, Any]):
        """Record episode statistics."""
        self.training_history.append({
            'episode': self.episode_num,
            'timestep': self.total_timesteps,
            'reward': reward,
            'length': timesteps,
            'duration': duration,
            'outcome': info.get('outcome', 'running'),
            'final_x': info.get('x', 0.0),
            'final_vy': info.get('vy', 0.0),
            'epsilon': self.epsilon,
        })

        if self.episode_num % 100 == 0:
            recent_rewards = [ep['reward'] for ep in self.training_history[-100:]]
            logger.info(f"Episode {self.episode_num}: Mean reward (last 100): "
                        f"{np.mean(recent_rewards):.2f}")

    def _log_training_metrics(self):
        if not self.recent_losses:
            return
        logger.debug(f"Step {self.total_timesteps}: mean loss {np.mean(self.recent_losses):.4f} "
                     f"over {len(self.recent_losses)} samples")
        self.recent_losses = []

    def _evaluate(self) -> Dict[str, float]:
        """Evaluate current greedy policy."""
        eval_rewards = []
        success_count = 0
        n_episodes = self.eval_params['n_eval_episodes']

        for _ in range(n_episodes):
            state, _ = self.eval_env.reset()
            episode_reward = 0.0
            done = False

            while not done:
                action = self.agent.select_action(state, epsilon=0.0)
                state, reward, terminated, truncated, info = self.eval_env.step(action)
                episode_reward += reward
                done = terminated or truncated

            eval_rewards.append(episode_reward)
            if info['outcome'] == 'landed':
                success_count += 1

        return {
            'mean_reward': float(np.mean(eval_rewards)),
            'std_reward': float(np.std(eval_rewards)),
            'min_reward': float(np.min(eval_rewards)),
            'max_reward': float(np.max(eval_rewards)),
            'success_rate': success_count / n_episodes,
        }

    def _save_checkpoint(self):
        """Save model checkpoint and training state."""
        self.agent.save(self._path("models", f"q_checkpoint_{self.total_timesteps}.npz"))

        training_state = {
            'total_timesteps': self.total_timesteps,
            'episode_num': self.episode_num,
            'epsilon': float(self.epsilon),
            'total_updates': self.agent.total_updates,
        }
        with open(self._path("models", f"training_state_{self.total_timesteps}.yaml"), 'w') as f:
            yaml.safe_dump(training_state, f)

    def _save_final_model(self):
        self.agent.save(self._path("models", "q_final.npz"))
        logger.info("Final model saved")

    def _save_training_history(self):
        """Save training history to CSV files."""
        if self.training_history:
            pd.DataFrame(self.training_history).to_csv(
                self._path("csv_logs", "training_episodes.csv"), index=False)

        if self.evaluation_history:
            pd.DataFrame(self.evaluation_history).to_csv(
                self._path("csv_logs", "evaluation_results.csv"), index=False)

        logger.info("Training history saved to CSV files")

    def _generate_plots(self):
        """Generate training visualization plots."""
        if not self.training_history:
            return

        df = pd.DataFrame(self.training_history)

        fig, axes = plt.subplots(2, 2, figsize=(14, 10))
        fig.suptitle('Q-Learning Training Results - Lunar Lander', fontsize=16)

        axes[0, 0].plot(df['episode'], df['reward'], alpha=0.3, color='blue')
        window_size = min(100, len(df) // 10)
        if window_size > 1:
            moving_avg = df['reward'].rolling(window=window_size).mean()
            axes[0, 0].plot(df['episode'], moving_avg, color='red', linewidth=2,
                            label=f'MA({window_size})')
            axes[0, 0].legend()
        axes[0, 0].set_xlabel('Episode')
        axes[0, 0].set_ylabel('Episode Reward')
        axes[0, 0].set_title('Training Rewards')
        axes[0, 0].grid(True)

        axes[0, 1].plot(df['episode'], df['length'], alpha=0.6, color='green')
        axes[0, 1].set_xlabel('Episode')
        axes[0, 1].set_ylabel('Episode Length')
        axes[0, 1].set_title('Episode Lengths')
        axes[0, 1].grid(True)

        outcomes = df.groupby('outcome').size()
        axes[1, 0].bar(outcomes.index, outcomes.values, color='orange')
        axes[1, 0].set_ylabel('Episodes')
        axes[1, 0].set_title('Episode Outcomes')

        axes[1, 1].plot(df['episode'], df['epsilon'], color='black')
        axes[1, 1].set_xlabel('Episode')
        axes[1, 1].set_ylabel('Epsilon')
        axes[1, 1].set_title('Exploration Schedule')
        axes[1, 1].grid(True)

        plt.tight_layout()
        plt.savefig(self._path('plots', 'training_summary.png'), dpi=150, bbox_inches='tight')
        plt.close(fig)

        if self.evaluation_history:
            eval_df = pd.DataFrame(self.evaluation_history)
            fig, axes = plt.subplots(1, 2, figsize=(12, 5))

            axes[0].plot(eval_df['timestep'], eval_df['mean_reward'], 'o-', color='blue')
            axes[0].fill_between(eval_df['timestep'],
                                 eval_df['mean_reward'] - eval_df['std_reward'],
                                 eval_df['mean_reward'] + eval_df['std_reward'],
                                 alpha=0.3, color='blue')
            axes[0].set_xlabel('Training Timesteps')
            axes[0].set_ylabel('Mean Evaluation Reward')
            axes[0].set_title('Evaluation Performance')
            axes[0].grid(True)

            axes[1].plot(eval_df['timestep'], eval_df['success_rate'], 'o-', color='green')
            axes[1].set_xlabel('Training Timesteps')
            axes[1].set_ylabel('Success Rate')
            axes[1].set_title('Landing Success Rate')
            axes[1].set_ylim(0, 1)
            axes[1].grid(True)

            plt.tight_layout()
            plt.savefig(self._path('plots', 'evaluation_results.png'), dpi=150, bbox_inches='tight')
            plt.close(fig)

        logger.info("Training plots generated and saved")


def run_backprop_check(env_config: Optional[LanderConfig] = None,
                       iterations: int = 5000,
                       learning_rate: float = 0.01,
                       target_update_freq: int = 100,
                       batch_size: int = 64,
                       gamma: float = 0.0,
                       seed: Optional[int] = None) -> Dict[str, float]:
    """
    Train a single linear layer on (y, vy) observations with online updates.

    Sanity check for the backward pass: the mean absolute TD error over the
    last window should end up below the first window's.

    ``gamma`` defaults to 0 so the targets are the immediate rewards and the
    check exercises the gradient step alone. With ``gamma=1.0`` the targets
    bootstrap undiscounted from the target network, which over long episodes
    lets a single linear layer drift far enough to mask a broken backward pass.
    """
    if env_config is None:
        env_config = LanderConfig()
    env_config = replace(env_config, observation_features=('y', 'vy'))

    game = LunarLanderGame(env_config, seed=seed)
    rng = np.random.default_rng(seed)
    model = Model()
    model.add_layer(game.observation_space, game.action_space, relu=False, rng=rng)
    agent = DQNAgent(game.observation_space, game.action_space, learning_rate=learning_rate,
                     gamma=gamma, seed=seed, model=model)

    td_errors = []
    state = game.observation()
    for iteration in range(iterations):
        action = agent.select_action(state)
        reward, done = game.step(action)
        next_state = game.observation()
        td_errors.append(abs(agent.accumulate(state, action, reward, next_state, done)))

        if agent.pending_gradients >= batch_size:
            agent.apply_gradients()
        if iteration % target_update_freq == 0:
            agent.sync_target()

        if done:
            game.reset()
            state = game.observation()
        else:
            state = next_state

    window = max(1, iterations // 10)
    result = {
        'first_window_td_error': float(np.mean(td_errors[:window])),
        'last_window_td_error': float(np.mean(td_errors[-window:])),
        'updates': agent.total_updates,
    }
    logger.info(f"Backprop check: {result}")
    return result


def main():
    """Main training function."""
    parser = argparse.ArgumentParser(description='Train a Q-network for the lunar lander')
    parser.add_argument('--config', type=str, default=DEFAULT_TRAINING_CONFIG,
                        help='Path to training configuration file')
    parser.add_argument('--env-config', type=str, default=None,
                        help='Path to environment configuration file')
    parser.add_argument('--output-dir', type=str, default='results',
                        help='Directory for models, logs and plots')
    parser.add_argument('--seed', type=int, default=42,
                        help='Random seed for reproducibility')
    parser.add_argument('--backprop-check', action='store_true',
                        help='Run the single-layer backprop sanity check instead of training')

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler('training.log'),
            logging.StreamHandler()
        ]
    )

    env_config = load_config(args.env_config)

    if args.backprop_check:
        run_backprop_check(env_config, seed=args.seed)
        return

    trainer = TrainingManager(args.config, env_config=env_config,
                              output_dir=args.output_dir, seed=args.seed)

    try:
        trainer.train()
        logger.info("Training completed successfully!")

    except KeyboardInterrupt:
        logger.info("Training interrupted by user")
        trainer._save_checkpoint()
        trainer._save_training_history()

    except Exception as e:
        logger.error(f"Training failed with error: {e}")
        raise


if __name__ == "__main__":
    main()
