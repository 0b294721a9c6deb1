"""
Background mesh: cell registry and the node arena shared by all particles
"""
import logging
import threading
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from .cell import Cell
from .exceptions import LocationError
from .tensor import check_dimension

logger = logging.getLogger(__name__)

# Nodes lighter than this are treated as empty
NODAL_MASS_TOLERANCE = 1e-15


class NodeArena:
    """
    Preallocated nodal storage owned by the mesh

    Arrays are indexed [phase, node] (scalars) or [phase, node, dim] (vectors).
    Particle contributions are written only through accumulate(), which adds
    under a lock so concurrent particle updates never lose an increment.
    """

    SCALAR_FIELDS = ('mass',)
    VECTOR_FIELDS = ('momentum', 'velocity', 'acceleration', 'external_force', 'internal_force')

    def __init__(self, n_nodes: int, dimension: int, nphases: int = 1):
        self.n_nodes = n_nodes
        self.dimension = dimension
        self.nphases = nphases

        self.mass = np.zeros((nphases, n_nodes))
        self.momentum = np.zeros((nphases, n_nodes, dimension))
        self.velocity = np.zeros((nphases, n_nodes, dimension))
        self.acceleration = np.zeros((nphases, n_nodes, dimension))
        self.external_force = np.zeros((nphases, n_nodes, dimension))
        self.internal_force = np.zeros((nphases, n_nodes, dimension))

        self._lock = threading.Lock()

    def accumulate(self, name: str, phase: int, node_ids: np.ndarray, values: np.ndarray) -> None:
        """Add values to the rows node_ids of field name for one phase"""
        if name not in self.SCALAR_FIELDS and name not in self.VECTOR_FIELDS:
            raise KeyError(f"Unknown nodal field '{name}'")
        target = getattr(self, name)[phase]
        with self._lock:
            np.add.at(target, node_ids, values)

    def reset(self, *names: str) -> None:
        """Clear the named nodal fields, or every field before a new step"""
        names = names or self.SCALAR_FIELDS + self.VECTOR_FIELDS
        with self._lock:
            for name in names:
                getattr(self, name).fill(0.0)


class Mesh:
    """
    Unstructured mesh of linear Lagrange cells

    The mesh is the sole owner of cells and nodal storage; particles only keep
    weak references to cells and look them up here by id.
    """

    def __init__(self, dimension: int, nodal_coordinates, connectivity, nphases: int = 1,
                 cell_ids: Optional[Iterable[int]] = None):
        """
        Args:
            dimension: Spatial dimension (2 or 3)
            nodal_coordinates: (n_nodes, dim) node positions
            connectivity: (n_cells, nodes_per_cell) node indices per cell
            nphases: Number of phases stored at every node
            cell_ids: Optional ids for the cells, defaults to 0..n_cells-1
        """
        self.dimension = check_dimension(dimension)
        self.nodal_coordinates = np.asarray(nodal_coordinates, dtype=np.float64)
        if self.nodal_coordinates.ndim != 2 or self.nodal_coordinates.shape[1] != dimension:
            raise ValueError(
                f"Nodal coordinates must have shape (n_nodes, {dimension}), got {self.nodal_coordinates.shape}"
            )
        self.nphases = nphases
        self.arena = NodeArena(len(self.nodal_coordinates), dimension, nphases)

        connectivity = [list(map(int, c)) for c in connectivity]
        if cell_ids is None:
            cell_ids = range(len(connectivity))
        self._cells: Dict[int, Cell] = {}
        for cell_id, node_ids in zip(cell_ids, connectivity):
            if cell_id in self._cells:
                raise ValueError(f"Duplicate cell id {cell_id}")
            self._cells[cell_id] = Cell(cell_id, node_ids, self.nodal_coordinates[node_ids], self.arena)

        # (node, direction) -> prescribed velocity
        self.velocity_constraints: Dict[Tuple[int, int], float] = {}

        logger.info("Created %dD mesh with %d nodes and %d cells",
                    dimension, self.n_nodes, len(self._cells))

    @property
    def n_nodes(self) -> int:
        return self.arena.n_nodes

    @property
    def cells(self) -> List[Cell]:
        return list(self._cells.values())

    def cell(self, cell_id: int) -> Cell:
        try:
            return self._cells[cell_id]
        except KeyError:
            raise LocationError(f"Cell {cell_id} does not exist in the mesh") from None

    def find_cell(self, point) -> Optional[Cell]:
        """First cell containing point, or None"""
        point = np.asarray(point, dtype=np.float64)
        for cell in self._cells.values():
            if cell.is_point_in_cell(point):
                return cell
        return None

    def locate_particle(self, particle) -> bool:
        """
        Bind a particle to the cell containing it

        The current cell is tried first, then every cell of the mesh.
        Returns False when the particle is outside the mesh.
        """
        current = particle.cell
        if current is not None and particle.assign_cell(current):
            return True
        for cell in self._cells.values():
            if cell is current:
                continue
            if cell.is_point_in_cell(particle.coordinates) and particle.assign_cell(cell):
                return True
        return False

    # ------------------------------------------------------------------
    # Nodal updates
    # ------------------------------------------------------------------
    def assign_velocity_constraint(self, node_id: int, direction: int, velocity: float) -> None:
        if not 0 <= node_id < self.n_nodes:
            raise ValueError(f"Node {node_id} does not exist in the mesh")
        if not 0 <= direction < self.dimension:
            raise ValueError(f"Direction {direction} is invalid for a {self.dimension}D mesh")
        self.velocity_constraints[(node_id, direction)] = float(velocity)

    def apply_velocity_constraints(self, phase: int) -> None:
        for (node_id, direction), velocity in self.velocity_constraints.items():
            self.arena.velocity[phase, node_id, direction] = velocity
            self.arena.acceleration[phase, node_id, direction] = 0.0

    def compute_nodal_velocity(self, phase: int) -> None:
        """v_I = p_I / m_I on every node carrying mass"""
        arena = self.arena
        mass = arena.mass[phase]
        active = mass > NODAL_MASS_TOLERANCE
        arena.velocity[phase].fill(0.0)
        arena.velocity[phase, active] = arena.momentum[phase, active] / mass[active, None]
        self.apply_velocity_constraints(phase)

    def compute_nodal_acceleration_velocity(self, phase: int, dt: float) -> None:
        """a_I = (f_ext + f_int) / m_I, then v_I += a_I * dt"""
        arena = self.arena
        mass = arena.mass[phase]
        active = mass > NODAL_MASS_TOLERANCE
        force = arena.external_force[phase] + arena.internal_force[phase]
        arena.acceleration[phase].fill(0.0)
        arena.acceleration[phase, active] = force[active] / mass[active, None]
        arena.velocity[phase] += arena.acceleration[phase] * dt
        self.apply_velocity_constraints(phase)

    def reset_nodes(self, *names: str) -> None:
        self.arena.reset(*names)
