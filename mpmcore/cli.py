"""
CLI Entry Point for the MPM solver
"""
import argparse
import csv
import logging
import sys
from pathlib import Path

import numpy as np

from .config import MPMConfig
from .exceptions import MPMError, StabilityError
from .mpm_solver import MPMSolver
from .stability import validate_config

logger = logging.getLogger(__name__)


def print_validation(config: MPMConfig) -> bool:
    """Run stability validation and print the report, returns validity"""
    is_valid, messages = validate_config(config)
    print("\n" + "=" * 60)
    print("MPM Configuration Validation")
    print("=" * 60)
    for msg in messages:
        print(msg)
    print("=" * 60)
    if is_valid:
        print("✓ Configuration is valid")
    else:
        print("✗ Configuration has errors")
    print("=" * 60 + "\n")
    return is_valid


def run_simulation(config: MPMConfig, output_dir: str = None, num_steps: int = None,
                   strict: bool = True, arch: str = 'cpu'):
    """
    Run an explicit simulation and write particle snapshots

    Args:
        config: MPM configuration
        output_dir: Output directory (config.output.output_dir by default)
        num_steps: Number of steps (config.time.num_steps by default)
        strict: If True, abort on invalid config; if False, warn only
        arch: Taichi backend architecture, used only with the taichi stress backend

    Returns:
        List of StepReport
    """
    if not print_validation(config):
        if strict:
            raise StabilityError("Configuration failed validation; pass --no-strict to run anyway")
        print("⚠ Configuration has issues but proceeding (strict=False)")

    if config.analysis.backend == 'taichi':
        import taichi as ti
        ti.init(arch=ti.gpu if arch == 'gpu' else ti.cpu, default_fp=ti.f64)

    output_path = Path(output_dir or config.output.output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    config.save_json(str(output_path / "config.json"))

    if num_steps is None:
        num_steps = config.time.num_steps

    failures = []

    def save_snapshot(solver, report):
        failures.extend((report.step, f.particle_id, f.stage, type(f.error).__name__, str(f.error))
                        for f in report.failures)
        if report.step % 100 == 0:
            print(f"Step {report.step}: {report.n_completed}/{report.n_active} particles completed")
        if config.output.save_particles and report.step % config.output.output_interval == 0:
            data = solver.get_particle_data()
            np.savez(str(output_path / f"particles_{report.step:06d}.npz"), **data)

    with MPMSolver.from_config(config) as solver:
        init_report = solver.initialise_particles()
        print(f"Initialised {len(solver.particles)} particles "
              f"({len(init_report.failures)} failed)")
        print(f"Running simulation for {num_steps} steps...")
        reports = solver.run(num_steps, callback=save_snapshot)

    with open(output_path / "failures.csv", 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow(['step', 'particle_id', 'stage', 'error', 'message'])
        writer.writerows(failures)

    print(f"Simulation complete. {len(failures)} particle failures. Results saved to {output_path}")
    return reports


def main(argv=None):
    parser = argparse.ArgumentParser(description='Explicit MPM solver with Bingham viscoplastic materials')
    parser.add_argument('--log-level', default='WARNING',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Logging level')
    subparsers = parser.add_subparsers(dest='command', required=True)

    validate_parser = subparsers.add_parser('validate', help='Check configuration and time step')
    validate_parser.add_argument('config', type=str, help='Configuration file (JSON or YAML)')

    run_parser = subparsers.add_parser('run', help='Run a simulation')
    run_parser.add_argument('config', type=str, help='Configuration file (JSON or YAML)')
    run_parser.add_argument('--output', type=str, default=None, help='Output directory')
    run_parser.add_argument('--steps', type=int, default=None, help='Number of steps')
    run_parser.add_argument('--strict', dest='strict', action='store_true', default=True,
                            help='Abort when validation fails (default)')
    run_parser.add_argument('--no-strict', dest='strict', action='store_false',
                            help='Warn and run when validation fails')
    run_parser.add_argument('--arch', type=str, default='cpu', choices=['cpu', 'gpu'],
                            help='Taichi architecture for the taichi backend')

    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    try:
        config = MPMConfig.from_file(args.config)
        if args.command == 'validate':
            return 0 if print_validation(config) else 1
        run_simulation(config, output_dir=args.output, num_steps=args.steps,
                       strict=args.strict, arch=args.arch)
    except MPMError as e:
        logger.error("%s", e)
        print(f"✗ {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
