#!/usr/bin/env python3
"""
Village Mind - Command Line Interface

Train agents in the sandbox world and inspect saved models.

Usage:
    python cli.py train --agents 4 --steps 2000 --seed 7
    python cli.py train --config engine.json --resume
    python cli.py stats --model-path ml_models
    python cli.py config > engine.json
"""

import argparse
import json
import logging
import os
import sys
import time

import numpy as np

from world.sandbox import SandboxWorld
from village_ai.config import EngineConfig
from village_ai.persistence import NpzBrainStore
from village_ai.trainer import Trainer
from village_ai.vocab import AGENT_ROLES


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='village-mind',
        description='Hierarchical RL engine for embodied village agents'
    )
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Verbose output')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    train_parser = subparsers.add_parser('train', help='Train agents in the sandbox world')
    train_parser.add_argument('--agents', '-a', type=int, default=4,
                              help='Number of agents (default: 4)')
    train_parser.add_argument('--steps', '-s', type=int, default=2000,
                              help='Decision steps per agent (default: 2000)')
    train_parser.add_argument('--seed', type=int, default=None,
                              help='Random seed for world and trainer')
    train_parser.add_argument('--model-path', '-m', type=str, default=None,
                              help='Directory for saved brains')
    train_parser.add_argument('--config', '-c', type=str, default=None,
                              help='Engine config JSON file')
    train_parser.add_argument('--episode-length', type=int, default=500,
                              help='Steps before an episode is closed (default: 500)')
    train_parser.add_argument('--world-size', type=int, default=64,
                              help='Sandbox world edge length (default: 64)')
    train_parser.add_argument('--resume', action='store_true',
                              help='Load the saved shared brain before training')
    train_parser.add_argument('--log-interval', type=int, default=100,
                              help='Print progress every N steps (default: 100)')

    stats_parser = subparsers.add_parser('stats', help='Summarise saved models')
    stats_parser.add_argument('--model-path', '-m', type=str, default='ml_models',
                              help='Directory of saved brains (default: ml_models)')

    subparsers.add_parser('config', help='Print the default engine config as JSON')

    return parser


def load_config(args) -> EngineConfig:
    config = EngineConfig.load(args.config) if args.config else EngineConfig.from_env()
    if args.seed is not None:
        config.seed = args.seed
    if args.model_path:
        config.trainer.model_path = args.model_path
    return config


def cmd_train(args):
    """Run the trainer against the sandbox world"""
    config = load_config(args)
    print("=" * 60)
    print("VILLAGE MIND - Sandbox Training")
    print("=" * 60)

    world = SandboxWorld(size=args.world_size, seed=config.seed)
    trainer = Trainer(config)
    if args.resume and trainer.load_shared_brain():
        print(f"Resumed shared brain from {config.trainer.model_path}")

    agent_ids = []
    for i in range(args.agents):
        agent_id = f"agent_{i}"
        role = AGENT_ROLES[i % len(AGENT_ROLES)]
        world.add_agent(agent_id, role)
        trainer.spawn_agent(agent_id, role)
        agent_ids.append(agent_id)

    print(f"\nAgents: {args.agents}, steps: {args.steps}, seed: {config.seed}")
    start = time.time()
    deaths = 0

    for step in range(1, args.steps + 1):
        for agent_id in agent_ids:
            trainer.step(agent_id, world.snapshot(agent_id), world.actuator(agent_id))
        world.tick()

        for agent_id in agent_ids:
            if world.is_dead(agent_id):
                deaths += 1
                trainer.end_episode(agent_id, world.snapshot(agent_id), died=True)
                world.respawn(agent_id)
            elif trainer.agents[agent_id].episode_steps >= args.episode_length:
                trainer.end_episode(agent_id, world.snapshot(agent_id), died=False)

        if step % args.log_interval == 0:
            stats = trainer.get_stats()
            print(f"  step {step:>6}  episodes {stats['episodes_completed']:>4}  "
                  f"avg reward {stats['avg_reward']:>8.2f}  "
                  f"buffer {stats['buffer_size']:>6}  "
                  f"epsilon {stats['exploration_rate']:.3f}")

    for agent_id in agent_ids:
        if trainer.agents[agent_id].pending is not None:
            trainer.end_episode(agent_id, world.snapshot(agent_id), died=False)
    trainer.save_all_models()
    elapsed = time.time() - start

    stats = trainer.get_stats()
    print("\n" + "=" * 60)
    print("TRAINING COMPLETE")
    print("=" * 60)
    print(f"  Total steps:        {stats['total_steps']}")
    print(f"  Episodes:           {stats['episodes_completed']}")
    print(f"  Deaths:             {deaths}")
    print(f"  Avg reward:         {stats['avg_reward']:.2f}")
    print(f"  Avg episode length: {stats['avg_episode_length']:.1f}")
    print(f"  Replay size:        {stats['buffer_size']}")
    print(f"  Training rounds:    {stats['training_rounds']}")
    print(f"  Elapsed time:       {elapsed:.1f}s")
    print(f"\nModels saved to: {config.trainer.model_path}")
    trainer.dispose()
    return 0


def cmd_stats(args):
    """Summarise a saved shared brain and trainer stats"""
    params = NpzBrainStore().load(os.path.join(args.model_path, 'shared_brain'))
    if params is None:
        print(f"No saved shared brain under {args.model_path}")
        return 1

    steps = int(params.pop('meta_training_steps', np.array(0)))
    print("Shared Brain")
    print("=" * 50)
    print(f"  Training steps: {steps}")
    for prefix in ('actor', 'critic'):
        count = sum(v.size for k, v in params.items() if k.startswith(prefix))
        shapes = [params[k].shape for k in sorted(params) if k.startswith(f'{prefix}_w')]
        print(f"  {prefix.capitalize():<7} params: {count}  layers: {shapes}")

    stats_path = os.path.join(args.model_path, 'trainer_stats.json')
    if os.path.exists(stats_path):
        with open(stats_path, 'r') as f:
            stats = json.load(f)
        stats.pop('shared_brain', None)
        print("\nTrainer")
        print("=" * 50)
        print(json.dumps(stats, indent=2))
    return 0


def cmd_config(args):
    """Print the default config"""
    print(json.dumps(EngineConfig().to_dict(), indent=2))
    return 0


def main():
    parser = create_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    if not args.command:
        parser.print_help()
        return 0

    commands = {
        'train': cmd_train,
        'stats': cmd_stats,
        'config': cmd_config,
    }

    if args.command in commands:
        return commands[args.command](args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main() or 0)
