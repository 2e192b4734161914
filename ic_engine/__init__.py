"""
IC Reconstruction Engine - Piston Architecture
==============================================

Reconstructs an electrical circuit description from a stack of
layer-aligned microscope images of an integrated circuit.

The foreman (ReconstructionEngine) coordinates the pistons over one shared
LogicModel:

    Placement / Template Matching -> Net Extraction -> ERC

CORE:
    LogicModel      - objects per layer, templates, modules, nets, violations
    NetPiston       - union-find net extraction (lambda proximity, vias,
                      forced links), local re-extraction with stable net IDs
    ERCPiston       - registry of electrical rules with accept/reject state
    MatchingPiston  - NCC template matching for gates, vias and wires

SUPPORT:
    EventBus        - change notifications for presentation layers
    project_store   - atomic JSON save/load/import/export

Usage:
    from ic_engine import ReconstructionEngine, EngineConfig, LayerType

    engine = ReconstructionEngine(EngineConfig(verbose=True))
    layer = engine.add_layer(LayerType.LOGIC, image=logic_image)
    result = engine.match_gates([template], layer.index)
    print(engine.run_erc().summary())
"""

__version__ = '1.0.0'

# Main Engine
from .ic_engine import ReconstructionEngine, EngineConfig

# Errors
from .errors import (
    EngineError, NotFoundError, InvalidGeometryError, InvalidOperationError,
    CorruptedProjectError
)

# Geometry and model types
from .common_types import (
    BoundingBox, RectShape, CircleShape, PolylineShape, shape_distance
)
from .logic_types import (
    ObjectType, LayerType, Orientation, ViaDirection, PortDirection, LogicClass,
    RCSeverity, LogicModelObject, Gate, GatePort, Wire, Via, Annotation, EMarker,
    Net, GateTemplate, GateTemplatePort, Layer, Module, ModulePort,
    RCViolation, ProjectSettings, orient_image, orient_point
)
from .logic_model import LogicModel, SpatialIndex
from .events import EventBus, EventKind, ModelEvent

# Pistons
from .net_piston import NetPiston, NetConfig, NetResult, DisjointSet
from .erc_piston import ERCPiston, ERCConfig, ERCResult, RULE_REGISTRY, register_rule
from .matching_piston import (
    MatchingPiston, MatchingConfig, MatchingResult, MatchProgress, MatchPhase,
    MatchStatus, MatchType, OrientationFilter, TemplateMatch
)
from .image_provider import ImageProvider, ArrayImageProvider

# Persistence
from .project_store import save_project, load_project, import_project, export_module

__all__ = [
    # Engine
    'ReconstructionEngine', 'EngineConfig',

    # Errors
    'EngineError', 'NotFoundError', 'InvalidGeometryError',
    'InvalidOperationError', 'CorruptedProjectError',

    # Geometry
    'BoundingBox', 'RectShape', 'CircleShape', 'PolylineShape', 'shape_distance',

    # Model
    'ObjectType', 'LayerType', 'Orientation', 'ViaDirection', 'PortDirection',
    'LogicClass', 'RCSeverity', 'LogicModelObject', 'Gate', 'GatePort', 'Wire',
    'Via', 'Annotation', 'EMarker', 'Net', 'GateTemplate', 'GateTemplatePort',
    'Layer', 'Module', 'ModulePort', 'RCViolation', 'ProjectSettings',
    'orient_image', 'orient_point', 'LogicModel', 'SpatialIndex',
    'EventBus', 'EventKind', 'ModelEvent',

    # Pistons
    'NetPiston', 'NetConfig', 'NetResult', 'DisjointSet',
    'ERCPiston', 'ERCConfig', 'ERCResult', 'RULE_REGISTRY', 'register_rule',
    'MatchingPiston', 'MatchingConfig', 'MatchingResult', 'MatchProgress',
    'MatchPhase', 'MatchStatus', 'MatchType', 'OrientationFilter', 'TemplateMatch',
    'ImageProvider', 'ArrayImageProvider',

    # Persistence
    'save_project', 'load_project', 'import_project', 'export_module',
]
