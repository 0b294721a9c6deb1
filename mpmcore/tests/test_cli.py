"""
CLI tests

Run with: pytest mpmcore/tests/test_cli.py -v
"""
import csv

import numpy as np
import pytest

from mpmcore.cli import main, run_simulation
from mpmcore.config import MPMConfig
from mpmcore.exceptions import StabilityError
from mpmcore.tests.test_solver import grid_particles, make_config


@pytest.fixture
def config_path(tmp_path):
    config = make_config(grid_particles())
    config.time.num_steps = 4
    config.output.output_interval = 2
    path = tmp_path / "config.yaml"
    config.save_yaml(str(path))
    return path


def test_validate_command(config_path, capsys):
    assert main(['validate', str(config_path)]) == 0
    assert "Configuration is valid" in capsys.readouterr().out


def test_validate_command_invalid(tmp_path, capsys):
    config = make_config(grid_particles())
    config.time.dt = 1.0
    path = tmp_path / "config.json"
    config.save_json(str(path))
    assert main(['validate', str(path)]) == 1
    assert "Configuration has errors" in capsys.readouterr().out


def test_run_command(config_path, tmp_path):
    output = tmp_path / "out"
    assert main(['run', str(config_path), '--output', str(output)]) == 0

    assert (output / "config.json").exists()
    snapshots = sorted(p.name for p in output.glob("particles_*.npz"))
    assert snapshots == ["particles_000000.npz", "particles_000002.npz"]
    data = np.load(output / "particles_000002.npz")
    assert data['x'].shape == (16, 2)
    with open(output / "failures.csv", newline='') as f:
        rows = list(csv.reader(f))
    assert rows == [['step', 'particle_id', 'stage', 'error', 'message']]


def test_run_strict_aborts_on_invalid(tmp_path):
    config = make_config(grid_particles())
    config.time.dt = 1.0
    with pytest.raises(StabilityError):
        run_simulation(config, output_dir=str(tmp_path), num_steps=1)
    assert main(['run', '--strict', _save(config, tmp_path)]) == 1


def test_run_steps_override(config_path, tmp_path):
    reports = run_simulation(MPMConfig.from_file(str(config_path)),
                             output_dir=str(tmp_path / "out"), num_steps=1)
    assert len(reports) == 1


def _save(config, tmp_path):
    path = tmp_path / "invalid.json"
    config.save_json(str(path))
    return str(path)
