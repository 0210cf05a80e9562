"""
Lunar Lander RL - Model Evaluation
==================================

Evaluation script for trained Q-networks: greedy single flights with recorded
trajectories, Monte Carlo evaluation over perturbed physics, stress scenarios,
CSV export and plots.
"""

import os
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import yaml
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple
import argparse
from tqdm import tqdm
import logging

from lunar_lander_rl.lander_env import (
    Action,
    DQNAgent,
    LanderConfig,
    LunarLanderEnvironment,
    Model,
    load_config,
)

logger = logging.getLogger(__name__)


class ModelEvaluator:
    """
    Evaluation framework for trained lunar lander Q-networks.
    """

    def __init__(self, model_path: str, env_config: Optional[LanderConfig] = None,
                 output_dir: str = "results", seed: Optional[int] = None):
        """
        Initialize model evaluator.

        Args:
            model_path: Path to a model saved with ``Model.save``
            env_config: Environment configuration (defaults to configs/environment.yaml)
            output_dir: Directory for CSV logs and plots
            seed: Seed for scenario sampling and randomised starts
        """
        self.model_path = model_path
        self.env_config = env_config if env_config is not None else load_config()
        self.output_dir = output_dir
        self.rng = np.random.default_rng(seed)

        self.env = LunarLanderEnvironment(config=self.env_config)
        self.state_dim = self.env.observation_space.shape[0]
        self.action_dim = int(self.env.action_space.n)

        if not os.path.exists(model_path):
            raise FileNotFoundError(f"Could not load model from {model_path}")
        self.agent = DQNAgent(self.state_dim, self.action_dim, model=Model.load(model_path), seed=seed)

        self.flight_trajectories = []

        os.makedirs(os.path.join(output_dir, "csv_logs"), exist_ok=True)
        os.makedirs(os.path.join(output_dir, "plots"), exist_ok=True)

        logger.info(f"Model evaluator initialized with model: {model_path}")

    def _use_config(self, config: LanderConfig):
        if config is not self.env.config:
            self.env = LunarLanderEnvironment(config=config)

    def evaluate_single_flight(self, config: Optional[LanderConfig] = None,
                               randomize: bool = False, render: bool = False,
                               record_trajectory: bool = True) -> Dict[str, Any]:
        """
        Fly one greedy episode.

        Args:
            config: Scenario configuration, defaults to the evaluator's
            randomize: Randomise the start position
            render: Print the text rendering every step
            record_trajectory: Keep the per-step trajectory for plotting

        Returns:
            Flight performance metrics
        """
        self._use_config(config if config is not None else self.env_config)

        seed = int(self.rng.integers(2 ** 31))
        state, info = self.env.reset(seed=seed, options={'randomize_initial_conditions': randomize})

        trajectory = [self._trajectory_point(info, None, 0.0)]
        done = False
        while not done:
            action = self.agent.select_action(state, epsilon=0.0)
            state, reward, terminated, truncated, info = self.env.step(action)
            done = terminated or truncated
            trajectory.append(self._trajectory_point(info, action, reward))

            if render:
                self.env.render()

        metrics = self._calculate_performance_metrics(trajectory, info)
        if record_trajectory:
            self.flight_trajectories.append(trajectory)
        return metrics

    @staticmethod
    def _trajectory_point(info: Dict[str, Any], action: Optional[int], reward: float) -> Dict[str, Any]:
        return {
            'step': info['steps'],
            'x': info['x'],
            'y': info['y'],
            'vx': info['vx'],
            'vy': info['vy'],
            'tilt_deg': np.degrees(info['tilt']),
            'angular_velocity': info['angular_velocity'],
            'action': -1 if action is None else int(action),
            'reward': reward,
        }

    def _calculate_performance_metrics(self, trajectory: List[Dict], final_info: Dict) -> Dict[str, Any]:
        df = pd.DataFrame(trajectory)
        actions = df['action'][df['action'] >= 0]
        target_x = self.env.config.target_x

        return {
            'total_reward': float(df['reward'].sum()),
            'steps': int(final_info['steps']),
            'outcome': final_info['outcome'],
            'landed': final_info['outcome'] == 'landed',
            'final_x_error': abs(final_info['x'] - target_x),
            'final_vx': final_info['vx'],
            'final_vy': final_info['vy'],
            'max_abs_tilt_deg': float(df['tilt_deg'].abs().max()),
            'max_abs_angular_velocity': float(df['angular_velocity'].abs().max()),
            'engine_usage': float((actions != Action.COAST).mean()) if len(actions) else 0.0,
        }

    def monte_carlo_evaluation(self, num_trials: int = 100,
                               parameter_variations: Dict[str, Tuple[float, float]] = None) -> Dict[str, Any]:
        """
        Perform Monte Carlo evaluation with parameter variations.

        Args:
            num_trials: Number of Monte Carlo trials
            parameter_variations: ``LanderConfig`` field name -> (min, max)

        Returns:
            Statistical analysis of performance across trials
        """
        logger.info(f"Starting Monte Carlo evaluation with {num_trials} trials")

        if parameter_variations is None:
            base = self.env_config
            parameter_variations = {
                'mass': (0.8 * base.mass, 1.2 * base.mass),
                'main_engine_force': (0.9 * base.main_engine_force, 1.1 * base.main_engine_force),
                'side_engine_force': (0.9 * base.side_engine_force, 1.1 * base.side_engine_force),
            }

        trial_results = []
        for trial in tqdm(range(num_trials), desc="Monte Carlo Trials"):
            scenario = self._generate_random_scenario(parameter_variations)
            metrics = self.evaluate_single_flight(
                config=replace(self.env_config, **scenario),
                randomize=True,
                record_trajectory=False,
            )
            metrics['trial'] = trial
            metrics.update(scenario)
            trial_results.append(metrics)

        analysis = self._analyze_monte_carlo_results(trial_results)
        self._save_monte_carlo_results(trial_results, analysis)

        logger.info(f"Monte Carlo evaluation completed. Success rate: {analysis['success_rate']:.2%}")
        return analysis

    def stress_test_evaluation(self, trials_per_scenario: int = 20) -> Dict[str, Any]:
        """Evaluate under fixed extreme configurations."""
        logger.info("Starting stress test evaluation")
        base = self.env_config

        stress_scenarios = [
            {'name': 'Heavy Lander', 'config': {'mass': 1.5 * base.mass}},
            {'name': 'Weak Main Engine', 'config': {'main_engine_force': 0.7 * base.main_engine_force}},
            {'name': 'Strong Side Engines', 'config': {'side_engine_force': 2.0 * base.side_engine_force}},
            {'name': 'High Gravity', 'config': {'gravity': 1.3 * base.gravity}},
            {'name': 'Sideways Drift', 'config': {'initial_velocity': (3.0, 0.0)}},
        ]

        stress_results = []
        for scenario in stress_scenarios:
            logger.info(f"Testing scenario: {scenario['name']}")
            config = replace(base, **scenario['config'])
            trials = [self.evaluate_single_flight(config=config, randomize=True, record_trajectory=False)
                      for _ in range(trials_per_scenario)]

            stress_results.append({
                'scenario': scenario['name'],
                'num_trials': len(trials),
                'success_rate': float(np.mean([t['landed'] for t in trials])),
                'mean_reward': float(np.mean([t['total_reward'] for t in trials])),
                'mean_steps': float(np.mean([t['steps'] for t in trials])),
            })

        pd.DataFrame(stress_results).to_csv(
            os.path.join(self.output_dir, "csv_logs", "stress_test_results.csv"), index=False)

        return {'stress_scenarios': stress_results}

    def _generate_random_scenario(self, parameter_variations: Dict[str, Tuple[float, float]]) -> Dict[str, Any]:
        return {param: float(self.rng.uniform(low, high))
                for param, (low, high) in parameter_variations.items()}

    def _analyze_monte_carlo_results(self, trial_results: List[Dict]) -> Dict[str, Any]:
        """Analyze Monte Carlo trial results statistically."""
        if not trial_results:
            return {'num_trials': 0, 'success_rate': 0.0}

        df = pd.DataFrame(trial_results)

        performance_stats = {}
        for metric in ['total_reward', 'steps', 'final_x_error', 'max_abs_tilt_deg', 'engine_usage']:
            performance_stats[metric] = {
                'mean': float(df[metric].mean()),
                'std': float(df[metric].std()),
                'min': float(df[metric].min()),
                'max': float(df[metric].max()),
                'q25': float(df[metric].quantile(0.25)),
                'q50': float(df[metric].quantile(0.50)),
                'q75': float(df[metric].quantile(0.75)),
            }

        return {
            'num_trials': len(trial_results),
            'success_rate': float(df['landed'].mean()),
            'performance_statistics': performance_stats,
            'outcome_counts': {k: int(v) for k, v in df['outcome'].value_counts().items()},
        }

    def _save_monte_carlo_results(self, trial_results: List[Dict], analysis: Dict[str, Any]):
        if trial_results:
            pd.DataFrame(trial_results).to_csv(
                os.path.join(self.output_dir, "csv_logs", "monte_carlo_trials.csv"), index=False)

        with open(os.path.join(self.output_dir, "csv_logs", "monte_carlo_analysis.yaml"), 'w') as f:
            yaml.safe_dump(analysis, f, default_flow_style=False)

        logger.info("Monte Carlo results saved to CSV and YAML files")

    def visualize_flight_trajectory(self, trajectory_index: int = -1, save_path: str = None):
        """
        Plot path, velocities, tilt and actions of a recorded flight.

        Args:
            trajectory_index: Index of trajectory to visualize (-1 for latest)
            save_path: Path to save the figure
        """
        if not self.flight_trajectories:
            logger.warning("No trajectories available for visualization")
            return

        df = pd.DataFrame(self.flight_trajectories[trajectory_index])
        config = self.env.config

        fig, axes = plt.subplots(2, 2, figsize=(14, 10))
        fig.suptitle('Lunar Lander Flight Analysis', fontsize=16)

        axes[0, 0].plot(df['x'], df['y'], color='blue', linewidth=2)
        axes[0, 0].scatter(df['x'].iloc[0], df['y'].iloc[0], color='green', s=80, label='Start')
        axes[0, 0].scatter(df['x'].iloc[-1], df['y'].iloc[-1], color='red', s=80, label='End')
        axes[0, 0].axhline(config.floor_height, color='black', linewidth=1)
        axes[0, 0].axvline(config.target_x, color='orange', linestyle='--', label='Target')
        axes[0, 0].set_xlim(0, config.box_width)
        axes[0, 0].set_ylim(config.floor_height, config.box_height)
        axes[0, 0].set_xlabel('x (m)')
        axes[0, 0].set_ylabel('y (m)')
        axes[0, 0].set_title('Flight Path')
        axes[0, 0].legend()
        axes[0, 0].grid(True)

        axes[0, 1].plot(df['step'], df['vx'], label='vx')
        axes[0, 1].plot(df['step'], df['vy'], label='vy')
        axes[0, 1].set_xlabel('Step')
        axes[0, 1].set_ylabel('Velocity (m/s)')
        axes[0, 1].set_title('Velocity')
        axes[0, 1].legend()
        axes[0, 1].grid(True)

        axes[1, 0].plot(df['step'], df['tilt_deg'], color='purple')
        axes[1, 0].set_xlabel('Step')
        axes[1, 0].set_ylabel('Tilt (deg)')
        axes[1, 0].set_title('Attitude')
        axes[1, 0].grid(True)

        actions = df['action'][df['action'] >= 0]
        sns.countplot(x=actions, ax=axes[1, 1], color='steelblue')
        axes[1, 1].set_xlabel('Action')
        axes[1, 1].set_title('Action Usage')

        plt.tight_layout()
        if save_path:
            plt.savefig(save_path, dpi=150, bbox_inches='tight')
            logger.info(f"Trajectory visualization saved to {save_path}")
        plt.close(fig)

    def plot_reward_distribution(self, trial_results_csv: str, save_path: str):
        """Histogram of Monte Carlo episode rewards split by outcome."""
        df = pd.read_csv(trial_results_csv)
        fig, ax = plt.subplots(figsize=(8, 5))
        sns.histplot(data=df, x='total_reward', hue='outcome', multiple='stack', ax=ax)
        ax.set_title('Monte Carlo Reward Distribution')
        plt.tight_layout()
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        plt.close(fig)


def main():
    """Main evaluation function."""
    parser = argparse.ArgumentParser(description='Evaluate a trained lunar lander Q-network')
    parser.add_argument('--model', type=str, required=True,
                        help='Path to trained model file (.npz)')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to environment configuration')
    parser.add_argument('--output-dir', type=str, default='results',
                        help='Directory for CSV logs and plots')
    parser.add_argument('--single', action='store_true',
                        help='Run single flight evaluation with visualization')
    parser.add_argument('--monte-carlo', type=int, default=0,
                        help='Number of Monte Carlo trials (0 to skip)')
    parser.add_argument('--stress-test', action='store_true',
                        help='Run stress testing scenarios')
    parser.add_argument('--render', action='store_true',
                        help='Render flight during evaluation')
    parser.add_argument('--seed', type=int, default=None)

    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)

    try:
        evaluator = ModelEvaluator(args.model, load_config(args.config),
                                   output_dir=args.output_dir, seed=args.seed)

        if args.single:
            logger.info("Running single flight evaluation...")
            metrics = evaluator.evaluate_single_flight(render=args.render)

            print("\n" + "=" * 50)
            print("SINGLE FLIGHT EVALUATION RESULTS")
            print("=" * 50)
            for key, value in metrics.items():
                if isinstance(value, float):
                    print(f"{key}: {value:.3f}")
                else:
                    print(f"{key}: {value}")

            evaluator.visualize_flight_trajectory(
                save_path=os.path.join(args.output_dir, "plots", "single_flight_trajectory.png"))

        if args.monte_carlo > 0:
            logger.info(f"Running Monte Carlo evaluation with {args.monte_carlo} trials...")
            mc_results = evaluator.monte_carlo_evaluation(args.monte_carlo)

            print("\n" + "=" * 50)
            print("MONTE CARLO EVALUATION RESULTS")
            print("=" * 50)
            print(f"Success Rate: {mc_results['success_rate']:.2%}")
            print(f"Number of Trials: {mc_results['num_trials']}")
            print(f"Outcomes: {mc_results['outcome_counts']}")

            evaluator.plot_reward_distribution(
                os.path.join(args.output_dir, "csv_logs", "monte_carlo_trials.csv"),
                os.path.join(args.output_dir, "plots", "monte_carlo_rewards.png"))

        if args.stress_test:
            logger.info("Running stress test evaluation...")
            stress_results = evaluator.stress_test_evaluation()

            print("\n" + "=" * 50)
            print("STRESS TEST RESULTS")
            print("=" * 50)
            for scenario in stress_results['stress_scenarios']:
                print(f"{scenario['scenario']}: {scenario['success_rate']:.2%} success rate")

        logger.info("Evaluation completed successfully!")

    except Exception as e:
        logger.error(f"Evaluation failed: {e}")
        raise


if __name__ == "__main__":
    main()
