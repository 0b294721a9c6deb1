"""
MPM Solver Configuration
Provides dataclass-based configuration for mesh, materials, particles, time stepping, analysis and output options.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import json
import yaml

from .exceptions import ConfigurationError

INTEGRATION_SCHEMES = ('acceleration', 'velocity')
STRESS_BACKENDS = ('numpy', 'taichi')


@dataclass
class VelocityConstraintConfig:
    """Prescribed nodal velocity along one direction"""
    node: int = 0
    direction: int = 0
    velocity: float = 0.0


@dataclass
class MeshConfig:
    """Background mesh given as explicit nodes and cell connectivity"""
    dimension: int = 2
    nodes: List[List[float]] = field(default_factory=list)  # (n_nodes, dim)
    cells: List[List[int]] = field(default_factory=list)  # (n_cells, nodes_per_cell)
    velocity_constraints: List[VelocityConstraintConfig] = field(default_factory=list)


@dataclass
class MaterialConfig:
    """One material: id, registered type name and raw parameter mapping"""
    id: int = 0
    type: str = 'Bingham'
    parameters: Dict[str, float] = field(default_factory=dict)


@dataclass
class ParticlesConfig:
    """Initial particle set"""
    coordinates: List[List[float]] = field(default_factory=list)
    velocities: Optional[List[List[float]]] = None
    material_id: int = 0


@dataclass
class TimeConfig:
    """Time stepping configuration"""
    dt: float = 1e-4  # Time step size
    num_steps: int = 1000  # Number of simulation steps


@dataclass
class AnalysisConfig:
    """Explicit analysis options"""
    gravity: List[float] = field(default_factory=lambda: [0.0, -9.81])
    integration: str = 'acceleration'  # 'acceleration' or 'velocity'
    nphases: int = 1
    n_workers: int = 1  # Threads used for per-particle phases
    backend: str = 'numpy'  # Stress backend: 'numpy' or 'taichi'
    update_volume: bool = True  # Scale particle volume by the volumetric strain increment


@dataclass
class OutputConfig:
    """Output configuration"""
    output_dir: str = "output"
    save_particles: bool = True
    output_interval: int = 10  # Save every N steps


@dataclass
class MPMConfig:
    """Complete MPM configuration"""
    mesh: MeshConfig = field(default_factory=MeshConfig)
    materials: List[MaterialConfig] = field(default_factory=list)
    particles: ParticlesConfig = field(default_factory=ParticlesConfig)
    time: TimeConfig = field(default_factory=TimeConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def __post_init__(self):
        if self.analysis.integration not in INTEGRATION_SCHEMES:
            raise ConfigurationError(
                f"Unknown integration scheme '{self.analysis.integration}', expected one of {INTEGRATION_SCHEMES}"
            )
        if self.analysis.backend not in STRESS_BACKENDS:
            raise ConfigurationError(
                f"Unknown stress backend '{self.analysis.backend}', expected one of {STRESS_BACKENDS}"
            )
        if self.analysis.nphases < 1:
            raise ConfigurationError(f"nphases must be at least 1, got {self.analysis.nphases}")
        if self.analysis.n_workers < 1:
            raise ConfigurationError(f"n_workers must be at least 1, got {self.analysis.n_workers}")
        if self.time.dt <= 0:
            raise ConfigurationError(f"Time step must be positive, got dt = {self.time.dt}")

    @classmethod
    def from_dict(cls, config_dict: dict) -> 'MPMConfig':
        """Load configuration from dictionary"""
        try:
            mesh_dict = dict(config_dict.get('mesh', {}))
            constraints = [
                VelocityConstraintConfig(**c) for c in mesh_dict.pop('velocity_constraints', [])
            ]
            mesh = MeshConfig(**mesh_dict, velocity_constraints=constraints)

            materials = [MaterialConfig(**m) for m in config_dict.get('materials', [])]
            particles = ParticlesConfig(**config_dict.get('particles', {}))
            time = TimeConfig(**config_dict.get('time', {}))
            analysis = AnalysisConfig(**config_dict.get('analysis', {}))
            output = OutputConfig(**config_dict.get('output', {}))
        except TypeError as e:
            # Unknown or misspelled keys surface as unexpected keyword arguments
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        return cls(
            mesh=mesh,
            materials=materials,
            particles=particles,
            time=time,
            analysis=analysis,
            output=output
        )

    @classmethod
    def from_json(cls, json_path: str) -> 'MPMConfig':
        """Load configuration from JSON file"""
        with open(json_path, 'r') as f:
            config_dict = json.load(f)
        return cls.from_dict(config_dict)

    @classmethod
    def from_yaml(cls, yaml_path: str) -> 'MPMConfig':
        """Load configuration from YAML file"""
        with open(yaml_path, 'r') as f:
            config_dict = yaml.safe_load(f)
        return cls.from_dict(config_dict or {})

    @classmethod
    def from_file(cls, path: str) -> 'MPMConfig':
        """Load configuration from a .json, .yaml or .yml file"""
        if str(path).endswith(('.yaml', '.yml')):
            return cls.from_yaml(path)
        return cls.from_json(path)

    def material(self, material_id: int) -> MaterialConfig:
        for m in self.materials:
            if m.id == material_id:
                return m
        raise ConfigurationError(f"Material {material_id} is not defined")

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return {
            'mesh': {
                'dimension': self.mesh.dimension,
                'nodes': [[float(v) for v in n] for n in self.mesh.nodes],
                'cells': [[int(i) for i in c] for c in self.mesh.cells],
                'velocity_constraints': [
                    {'node': c.node, 'direction': c.direction, 'velocity': c.velocity}
                    for c in self.mesh.velocity_constraints
                ]
            },
            'materials': [
                {'id': m.id, 'type': m.type, 'parameters': dict(m.parameters)}
                for m in self.materials
            ],
            'particles': {
                'coordinates': [[float(v) for v in x] for x in self.particles.coordinates],
                'velocities': (
                    [[float(c) for c in v] for v in self.particles.velocities]
                    if self.particles.velocities is not None else None
                ),
                'material_id': self.particles.material_id
            },
            'time': {
                'dt': self.time.dt,
                'num_steps': self.time.num_steps
            },
            'analysis': {
                'gravity': [float(g) for g in self.analysis.gravity],
                'integration': self.analysis.integration,
                'nphases': self.analysis.nphases,
                'n_workers': self.analysis.n_workers,
                'backend': self.analysis.backend,
                'update_volume': self.analysis.update_volume
            },
            'output': {
                'output_dir': self.output.output_dir,
                'save_particles': self.output.save_particles,
                'output_interval': self.output.output_interval
            }
        }

    def save_json(self, json_path: str):
        """Save configuration to JSON file"""
        with open(json_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def save_yaml(self, yaml_path: str):
        """Save configuration to YAML file"""
        with open(yaml_path, 'w') as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False)
