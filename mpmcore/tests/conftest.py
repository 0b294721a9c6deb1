"""
Pytest Configuration and Fixtures for MPM Core Tests

Provides shared meshes, material parameters and a Taichi initialization fixture.

Note: Taichi initialization is NOT autouse - tests that need Taichi should
explicitly use the `init_taichi` fixture together with `pytest.importorskip("taichi")`.
"""
import itertools

import numpy as np
import pytest

try:
    import taichi as ti
    _HAS_TAICHI = True
except ImportError:
    _HAS_TAICHI = False
    ti = None


BINGHAM_PARAMETERS = {
    'density': 1000.0,
    'youngs_modulus': 1.0e7,
    'poisson_ratio': 0.3,
    'tau0': 200.0,
    'mu': 1.0,
    'critical_shear_rate': 1.0e-3,
}

ELASTIC_PARAMETERS = {
    'density': 2000.0,
    'youngs_modulus': 1.0e6,
    'poisson_ratio': 0.25,
}


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: long-running simulation tests")


def structured_grid(dimension: int, n_cells, spacing: float = 1.0):
    """Nodes and connectivity of a regular grid with n_cells cells per direction.

    Used only to build test meshes; node ordering follows LagrangeElement.
    """
    n_cells = [n_cells] * dimension if np.isscalar(n_cells) else list(n_cells)
    n_nodes = [n + 1 for n in n_cells]

    def node_index(ijk):
        index = 0
        stride = 1
        for d in range(dimension):
            index += ijk[d] * stride
            stride *= n_nodes[d]
        return index

    nodes = np.zeros((int(np.prod(n_nodes)), dimension))
    for ijk in itertools.product(*[range(n) for n in n_nodes]):
        nodes[node_index(ijk)] = np.array(ijk, dtype=float) * spacing

    square = [(0, 0), (1, 0), (1, 1), (0, 1)]
    if dimension == 2:
        offsets = square
    else:
        offsets = [s + (0,) for s in square] + [s + (1,) for s in square]

    cells = []
    for ijk in itertools.product(*[range(n) for n in reversed(n_cells)]):
        ijk = tuple(reversed(ijk))
        cells.append([node_index(tuple(i + o for i, o in zip(ijk, off))) for off in offsets])
    return nodes, cells


@pytest.fixture(scope="session")
def init_taichi():
    """Initialize Taichi once per test session.

    Uses CPU backend with float64 to match the numpy path.
    """
    if not _HAS_TAICHI:
        pytest.skip("Taichi not available")
        return

    ti.init(arch=ti.cpu, default_fp=ti.f64, debug=False)
    yield
    ti.reset()


@pytest.fixture
def bingham_parameters():
    return dict(BINGHAM_PARAMETERS)


@pytest.fixture
def bingham3d(bingham_parameters):
    from mpmcore.materials import BinghamMaterial

    material = BinghamMaterial(0, 3)
    material.configure(bingham_parameters)
    return material


@pytest.fixture
def bingham2d(bingham_parameters):
    from mpmcore.materials import BinghamMaterial

    material = BinghamMaterial(0, 2)
    material.configure(bingham_parameters)
    return material


@pytest.fixture
def elastic2d():
    from mpmcore.materials import LinearElasticMaterial

    material = LinearElasticMaterial(1, 2)
    material.configure(ELASTIC_PARAMETERS)
    return material


@pytest.fixture
def mesh2d():
    """2x2 unit cells on [0, 2] x [0, 2]"""
    from mpmcore.mesh import Mesh

    nodes, cells = structured_grid(2, 2)
    return Mesh(2, nodes, cells)


@pytest.fixture
def mesh3d():
    """2x1x1 unit cells on [0, 2] x [0, 1] x [0, 1]"""
    from mpmcore.mesh import Mesh

    nodes, cells = structured_grid(3, (2, 1, 1))
    return Mesh(3, nodes, cells)


class StrainRateContext:
    """Minimal particle context exposing a fixed strain rate"""

    def __init__(self, strain_rate):
        self._strain_rate = np.asarray(strain_rate, dtype=np.float64)

    def strain_rate(self, phase=0):
        return self._strain_rate.copy()
