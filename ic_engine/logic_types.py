"""
IC Engine - Logic Model Types
=============================

Unified data structures for everything stored in the logic model.
All pistons import from here, not define their own.

OBJECT VARIANTS (closed set, tagged by ObjectType):
    Gate, GatePort, Wire, Via, Annotation, EMarker, Net

Each variant implements the same small capability set instead of a deep
class hierarchy:
    geometry()                -> RectShape / CircleShape / PolylineShape
    is_connectable()          -> can it be part of a Net?
    render_hint(settings)     -> presentation hints (shape, colours, label)
    translate(dx, dy)         -> in-place move
    to_dict() / from_dict()   -> persistence

Objects never own each other. Gate -> GatePort, GatePort -> Gate and
Module -> Gate references are plain object IDs resolved through the
LogicModel.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Set, Tuple

import numpy as np

from .common_types import (
    BoundingBox, CircleShape, Point, PolylineShape, RectShape, to_point
)


# =============================================================================
# ENUMS
# =============================================================================

class ObjectType(Enum):
    """Logic model object variants"""
    GATE = 'gate'
    GATE_PORT = 'gate_port'
    WIRE = 'wire'
    VIA = 'via'
    ANNOTATION = 'annotation'
    EMARKER = 'emarker'
    NET = 'net'


class LayerType(Enum):
    """Physical layer kinds of a chip image stack"""
    UNDEFINED = 'undefined'
    TRANSISTOR = 'transistor'
    LOGIC = 'logic'
    METAL = 'metal'


class Orientation(Enum):
    """Placement orientation of a gate relative to its template"""
    NORMAL = 'normal'
    FLIPPED_UP_DOWN = 'flipped-up-down'
    FLIPPED_LEFT_RIGHT = 'flipped-left-right'
    FLIPPED_BOTH = 'flipped-both'


class ViaDirection(Enum):
    """Which neighbouring layer a via reaches"""
    UNDEFINED = 'undefined'
    UP = 'up'           # layer index + 1
    DOWN = 'down'       # layer index - 1


class PortDirection(Enum):
    """Electrical direction of a gate template port"""
    UNDEFINED = 'undefined'
    IN = 'in'
    OUT = 'out'
    INOUT = 'inout'


class LogicClass(Enum):
    """Logic class tag of a gate template"""
    UNDEFINED = 'undefined'
    INVERTER = 'inverter'
    TRISTATE_INVERTER = 'tristate-inverter'
    TRISTATE_INVERTER_LO_ACTIVE = 'tristate-inverter-lo-active'
    TRISTATE_INVERTER_HI_ACTIVE = 'tristate-inverter-hi-active'
    BUFFER = 'buffer'
    TRISTATE_BUFFER_LO_ACTIVE = 'tristate-buffer-lo-active'
    TRISTATE_BUFFER_HI_ACTIVE = 'tristate-buffer-hi-active'
    AND = 'and'
    NAND = 'nand'
    OR = 'or'
    NOR = 'nor'
    XOR = 'xor'
    XNOR = 'xnor'
    AND_OR = 'ao'
    AND_OR_INVERTER = 'aoi'
    OR_AND = 'oa'
    OR_AND_INVERTER = 'oai'
    LATCH_GENERIC = 'latch-generic'
    LATCH_ASYNC_ENABLE = 'latch-async-enable'
    LATCH_SYNC_ENABLE = 'latch-sync-enable'
    FLIPFLOP = 'flipflop'
    FLIPFLOP_SYNC_RESET = 'flipflop-sync-rst'
    FLIPFLOP_ASYNC_RESET = 'flipflop-async-rst'
    GENERIC_COMBINATIONAL = 'generic-combinational-logic'
    HALF_ADDER = 'half-adder'
    FULL_ADDER = 'full-adder'
    ISOLATION = 'isolation'
    TRANSISTOR = 'transistor'


class RCSeverity(Enum):
    """Severity levels for rule check violations"""
    UNDEFINED = 'undefined'
    WARNING = 'warning'
    ERROR = 'error'


# =============================================================================
# ORIENTATION HELPERS
# =============================================================================

def orient_point(px: float, py: float, width: float, height: float,
                 orientation: Orientation) -> Point:
    """Map a template-relative point into a placed gate's frame."""
    if orientation == Orientation.FLIPPED_LEFT_RIGHT:
        return (width - px, py)
    if orientation == Orientation.FLIPPED_UP_DOWN:
        return (px, height - py)
    if orientation == Orientation.FLIPPED_BOTH:
        return (width - px, height - py)
    return (px, py)


def orient_image(image: np.ndarray, orientation: Orientation) -> np.ndarray:
    """Return the template image as it appears in the given orientation."""
    if orientation == Orientation.FLIPPED_LEFT_RIGHT:
        return np.fliplr(image)
    if orientation == Orientation.FLIPPED_UP_DOWN:
        return np.flipud(image)
    if orientation == Orientation.FLIPPED_BOTH:
        return np.flipud(np.fliplr(image))
    return image


# =============================================================================
# PROJECT SETTINGS
# =============================================================================

DEFAULT_COLORS = {
    ObjectType.GATE.value: 0xa0303030,
    ObjectType.GATE_PORT.value: 0xff0000ff,
    ObjectType.WIRE.value: 0xff00cc00,
    ObjectType.ANNOTATION.value: 0xa0000080,
    ObjectType.EMARKER.value: 0xffffa500,
    'via_up': 0xffff4040,
    'via_down': 0xff4040ff,
    'via_undefined': 0xffa0a0a0,
}


@dataclass
class ProjectSettings:
    """
    Project-wide settings persisted with the project.

    lambda_px is the maximum pixel distance at which two electrically
    conductive objects are still considered touching.
    """
    project_name: str = ''
    description: str = ''
    lambda_px: float = 5.0
    default_wire_diameter: float = 5.0
    default_via_diameter: float = 7.0
    default_port_diameter: float = 5.0
    default_emarker_diameter: float = 5.0
    strict_gate_layers: bool = False     # Gates only on LOGIC layers
    colors: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_COLORS))

    def default_color(self, key: str) -> int:
        return self.colors.get(key, DEFAULT_COLORS.get(key, 0xffffffff))

    def to_dict(self) -> Dict:
        return {
            'project_name': self.project_name,
            'description': self.description,
            'lambda_px': self.lambda_px,
            'default_wire_diameter': self.default_wire_diameter,
            'default_via_diameter': self.default_via_diameter,
            'default_port_diameter': self.default_port_diameter,
            'default_emarker_diameter': self.default_emarker_diameter,
            'strict_gate_layers': self.strict_gate_layers,
            'colors': dict(self.colors),
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'ProjectSettings':
        colors = dict(DEFAULT_COLORS)
        colors.update({str(k): int(v) for k, v in data.get('colors', {}).items()})
        return cls(
            project_name=str(data.get('project_name', '')),
            description=str(data.get('description', '')),
            lambda_px=float(data['lambda_px']),
            default_wire_diameter=float(data.get('default_wire_diameter', 5.0)),
            default_via_diameter=float(data.get('default_via_diameter', 7.0)),
            default_port_diameter=float(data.get('default_port_diameter', 5.0)),
            default_emarker_diameter=float(data.get('default_emarker_diameter', 5.0)),
            strict_gate_layers=bool(data.get('strict_gate_layers', False)),
            colors=colors,
        )


# =============================================================================
# LAYERS AND TEMPLATES
# =============================================================================

@dataclass
class Layer:
    """One aligned image layer of the chip."""
    index: int
    layer_type: LayerType = LayerType.UNDEFINED
    width: int = 0
    height: int = 0
    description: str = ''
    enabled: bool = True

    @property
    def bounds(self) -> BoundingBox:
        return BoundingBox(0.0, 0.0, float(self.width), float(self.height))

    def to_dict(self) -> Dict:
        return {
            'index': self.index,
            'layer_type': self.layer_type.value,
            'width': self.width,
            'height': self.height,
            'description': self.description,
            'enabled': self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Layer':
        return cls(
            index=int(data['index']),
            layer_type=LayerType(data['layer_type']),
            width=int(data['width']),
            height=int(data['height']),
            description=str(data.get('description', '')),
            enabled=bool(data.get('enabled', True)),
        )


@dataclass
class GateTemplatePort:
    """A port of a gate template, relative to the template origin."""
    port_id: int
    name: str = ''
    x: float = 0.0
    y: float = 0.0
    direction: PortDirection = PortDirection.UNDEFINED

    def to_dict(self) -> Dict:
        return {
            'port_id': self.port_id,
            'name': self.name,
            'x': self.x,
            'y': self.y,
            'direction': self.direction.value,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'GateTemplatePort':
        return cls(
            port_id=int(data['port_id']),
            name=str(data.get('name', '')),
            x=float(data['x']),
            y=float(data['y']),
            direction=PortDirection(data.get('direction', 'undefined')),
        )


@dataclass
class GateTemplate:
    """
    Reusable standard cell description.

    images holds one grayscale (or RGB) array per layer type. The same images
    are the reference patterns for template matching.
    """
    name: str = ''
    width: int = 0
    height: int = 0
    logic_class: LogicClass = LogicClass.UNDEFINED
    description: str = ''
    ports: List[GateTemplatePort] = field(default_factory=list)
    images: Dict[LayerType, np.ndarray] = field(default_factory=dict)
    fill_color: Optional[int] = None
    frame_color: Optional[int] = None
    template_id: int = 0

    def add_port(self, name: str, x: float, y: float,
                 direction: PortDirection = PortDirection.UNDEFINED) -> GateTemplatePort:
        next_id = max((p.port_id for p in self.ports), default=0) + 1
        port = GateTemplatePort(port_id=next_id, name=name, x=x, y=y, direction=direction)
        self.ports.append(port)
        return port

    def get_port(self, port_id: int) -> Optional[GateTemplatePort]:
        for port in self.ports:
            if port.port_id == port_id:
                return port
        return None

    def image_for(self, layer_type: LayerType) -> Optional[np.ndarray]:
        return self.images.get(layer_type)

    def set_image(self, layer_type: LayerType, image: np.ndarray):
        image = np.asarray(image)
        if image.shape[0] != self.height or image.shape[1] != self.width:
            raise ValueError(
                f"Template image {image.shape[1]}x{image.shape[0]} does not match "
                f"template size {self.width}x{self.height}")
        self.images[layer_type] = image


# =============================================================================
# LOGIC MODEL OBJECTS
# =============================================================================

@dataclass
class LogicModelObject:
    """Common fields of every placed object."""
    layer: int = 0
    name: str = ''
    description: str = ''
    fill_color: Optional[int] = None
    frame_color: Optional[int] = None
    object_id: int = 0

    object_type: ClassVar[ObjectType] = None
    type_name: ClassVar[str] = 'Generic object'

    def geometry(self):
        return None

    def is_connectable(self) -> bool:
        return False

    def bounding_box(self) -> Optional[BoundingBox]:
        shape = self.geometry()
        return shape.bounding_box() if shape is not None else None

    def translate(self, dx: float, dy: float):
        pass

    def descriptive_identifier(self) -> str:
        if self.name:
            return f"{self.name} ({self.object_id})"
        return f"({self.object_id})"

    def _color_key(self) -> str:
        return self.object_type.value

    def render_hint(self, settings: Optional[ProjectSettings] = None) -> Dict[str, Any]:
        """Presentation hints for renderers; no rendering happens here."""
        settings = settings or ProjectSettings()
        shape = self.geometry()
        default = settings.default_color(self._color_key())
        return {
            'shape': shape.kind if shape is not None else None,
            'fill_color': self.fill_color if self.fill_color is not None else default,
            'frame_color': self.frame_color if self.frame_color is not None else default,
            'label': self.name,
            'layer': self.layer,
        }

    def _base_dict(self) -> Dict:
        return {
            'type': self.object_type.value,
            'object_id': self.object_id,
            'layer': self.layer,
            'name': self.name,
            'description': self.description,
            'fill_color': self.fill_color,
            'frame_color': self.frame_color,
        }

    @staticmethod
    def _base_kwargs(data: Dict) -> Dict:
        return {
            'object_id': int(data['object_id']),
            'layer': int(data['layer']),
            'name': str(data.get('name', '')),
            'description': str(data.get('description', '')),
            'fill_color': data.get('fill_color'),
            'frame_color': data.get('frame_color'),
        }

    def to_dict(self) -> Dict:
        return self._base_dict()


@dataclass
class Gate(LogicModelObject):
    """A placed instance of a GateTemplate."""
    template_id: int = 0
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    orientation: Orientation = Orientation.NORMAL
    port_ids: List[int] = field(default_factory=list)
    module_id: int = 0

    object_type: ClassVar[ObjectType] = ObjectType.GATE
    type_name: ClassVar[str] = 'Gate'

    def geometry(self) -> RectShape:
        return RectShape(BoundingBox(self.x, self.y, self.x + self.width, self.y + self.height))

    def translate(self, dx: float, dy: float):
        self.x += dx
        self.y += dy

    def to_dict(self) -> Dict:
        data = self._base_dict()
        data.update({
            'template_id': self.template_id,
            'x': self.x,
            'y': self.y,
            'width': self.width,
            'height': self.height,
            'orientation': self.orientation.value,
            'port_ids': list(self.port_ids),
            'module_id': self.module_id,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Gate':
        return cls(
            template_id=int(data['template_id']),
            x=float(data['x']),
            y=float(data['y']),
            width=float(data['width']),
            height=float(data['height']),
            orientation=Orientation(data['orientation']),
            port_ids=[int(p) for p in data.get('port_ids', [])],
            module_id=int(data.get('module_id', 0)),
            **cls._base_kwargs(data)
        )


@dataclass
class GatePort(LogicModelObject):
    """A template port bound to a world position on a gate's layer."""
    gate_id: int = 0
    template_port_id: int = 0
    x: float = 0.0
    y: float = 0.0
    diameter: float = 5.0

    object_type: ClassVar[ObjectType] = ObjectType.GATE_PORT
    type_name: ClassVar[str] = 'Gate port'

    def geometry(self) -> CircleShape:
        return CircleShape(self.x, self.y, self.diameter)

    def is_connectable(self) -> bool:
        return True

    def translate(self, dx: float, dy: float):
        self.x += dx
        self.y += dy

    def to_dict(self) -> Dict:
        data = self._base_dict()
        data.update({
            'gate_id': self.gate_id,
            'template_port_id': self.template_port_id,
            'x': self.x,
            'y': self.y,
            'diameter': self.diameter,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'GatePort':
        return cls(
            gate_id=int(data['gate_id']),
            template_port_id=int(data['template_port_id']),
            x=float(data['x']),
            y=float(data['y']),
            diameter=float(data['diameter']),
            **cls._base_kwargs(data)
        )


@dataclass
class Wire(LogicModelObject):
    """Polyline conductor on one layer."""
    points: List[Point] = field(default_factory=list)
    diameter: float = 5.0

    object_type: ClassVar[ObjectType] = ObjectType.WIRE
    type_name: ClassVar[str] = 'Wire'

    def __post_init__(self):
        self.points = [to_point(p) for p in self.points]

    def geometry(self) -> PolylineShape:
        return PolylineShape(list(self.points), self.diameter)

    def is_connectable(self) -> bool:
        return True

    @property
    def endpoints(self) -> Tuple[Point, Point]:
        return self.points[0], self.points[-1]

    def translate(self, dx: float, dy: float):
        self.points = [(x + dx, y + dy) for x, y in self.points]

    def to_dict(self) -> Dict:
        data = self._base_dict()
        data.update({
            'points': [[x, y] for x, y in self.points],
            'diameter': self.diameter,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Wire':
        return cls(
            points=[to_point(p) for p in data['points']],
            diameter=float(data['diameter']),
            **cls._base_kwargs(data)
        )


@dataclass
class Via(LogicModelObject):
    """Circular contact between this layer and one neighbouring layer."""
    x: float = 0.0
    y: float = 0.0
    diameter: float = 7.0
    direction: ViaDirection = ViaDirection.UNDEFINED

    object_type: ClassVar[ObjectType] = ObjectType.VIA
    type_name: ClassVar[str] = 'Via'

    def geometry(self) -> CircleShape:
        return CircleShape(self.x, self.y, self.diameter)

    def is_connectable(self) -> bool:
        return True

    def target_layer(self) -> Optional[int]:
        """Index of the neighbouring layer this via reaches, if any."""
        if self.direction == ViaDirection.UP:
            return self.layer + 1
        if self.direction == ViaDirection.DOWN:
            return self.layer - 1
        return None

    def _color_key(self) -> str:
        return f"via_{self.direction.value}"

    def translate(self, dx: float, dy: float):
        self.x += dx
        self.y += dy

    def to_dict(self) -> Dict:
        data = self._base_dict()
        data.update({
            'x': self.x,
            'y': self.y,
            'diameter': self.diameter,
            'direction': self.direction.value,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Via':
        return cls(
            x=float(data['x']),
            y=float(data['y']),
            diameter=float(data['diameter']),
            direction=ViaDirection(data['direction']),
            **cls._base_kwargs(data)
        )


@dataclass
class Annotation(LogicModelObject):
    """Free-form rectangular note; never electrically relevant."""
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    annotation_class: str = 'undefined'

    object_type: ClassVar[ObjectType] = ObjectType.ANNOTATION
    type_name: ClassVar[str] = 'Annotation'

    def geometry(self) -> RectShape:
        return RectShape(BoundingBox(self.x, self.y, self.x + self.width, self.y + self.height))

    def translate(self, dx: float, dy: float):
        self.x += dx
        self.y += dy

    def to_dict(self) -> Dict:
        data = self._base_dict()
        data.update({
            'x': self.x,
            'y': self.y,
            'width': self.width,
            'height': self.height,
            'annotation_class': self.annotation_class,
        })
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Annotation':
        return cls(
            x=float(data['x']),
            y=float(data['y']),
            width=float(data['width']),
            height=float(data['height']),
            annotation_class=str(data.get('annotation_class', 'undefined')),
            **cls._base_kwargs(data)
        )


@dataclass
class EMarker(LogicModelObject):
    """Electrical marker used to tag a point of a net."""
    x: float = 0.0
    y: float = 0.0
    diameter: float = 5.0

    object_type: ClassVar[ObjectType] = ObjectType.EMARKER
    type_name: ClassVar[str] = 'EMarker'

    def geometry(self) -> CircleShape:
        return CircleShape(self.x, self.y, self.diameter)

    def is_connectable(self) -> bool:
        return True

    def translate(self, dx: float, dy: float):
        self.x += dx
        self.y += dy

    def to_dict(self) -> Dict:
        data = self._base_dict()
        data.update({'x': self.x, 'y': self.y, 'diameter': self.diameter})
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'EMarker':
        return cls(
            x=float(data['x']),
            y=float(data['y']),
            diameter=float(data['diameter']),
            **cls._base_kwargs(data)
        )


@dataclass
class Net(LogicModelObject):
    """Equivalence class of electrically connected object IDs."""
    member_ids: Set[int] = field(default_factory=set)

    object_type: ClassVar[ObjectType] = ObjectType.NET
    type_name: ClassVar[str] = 'Net'

    def __len__(self) -> int:
        return len(self.member_ids)

    def __contains__(self, object_id: int) -> bool:
        return object_id in self.member_ids

    def to_dict(self) -> Dict:
        data = self._base_dict()
        data['member_ids'] = sorted(self.member_ids)
        return data

    @classmethod
    def from_dict(cls, data: Dict) -> 'Net':
        return cls(
            member_ids={int(m) for m in data['member_ids']},
            **cls._base_kwargs(data)
        )


OBJECT_CLASSES = {
    ObjectType.GATE: Gate,
    ObjectType.GATE_PORT: GatePort,
    ObjectType.WIRE: Wire,
    ObjectType.VIA: Via,
    ObjectType.ANNOTATION: Annotation,
    ObjectType.EMARKER: EMarker,
    ObjectType.NET: Net,
}


def object_from_dict(data: Dict) -> LogicModelObject:
    """Rebuild any placed object from its to_dict() form."""
    object_type = ObjectType(data['type'])
    return OBJECT_CLASSES[object_type].from_dict(data)


# =============================================================================
# MODULES
# =============================================================================

@dataclass
class ModulePort:
    """A gate port exposed by a module to its parent scope."""
    name: str
    gate_id: int
    gate_port_id: int

    def to_dict(self) -> Dict:
        return {'name': self.name, 'gate_id': self.gate_id, 'gate_port_id': self.gate_port_id}

    @classmethod
    def from_dict(cls, data: Dict) -> 'ModulePort':
        return cls(name=str(data['name']), gate_id=int(data['gate_id']),
                   gate_port_id=int(data['gate_port_id']))


@dataclass
class Module:
    """Named group of gates (and sub-modules) with an explicit port list."""
    module_id: int
    name: str = ''
    module_type: str = ''
    parent_id: int = 0
    gate_ids: Set[int] = field(default_factory=set)
    children: List[int] = field(default_factory=list)
    ports: Dict[str, ModulePort] = field(default_factory=dict)

    @property
    def is_root(self) -> bool:
        return self.parent_id == 0

    def to_dict(self) -> Dict:
        return {
            'module_id': self.module_id,
            'name': self.name,
            'module_type': self.module_type,
            'parent_id': self.parent_id,
            'gate_ids': sorted(self.gate_ids),
            'children': list(self.children),
            'ports': [p.to_dict() for p in self.ports.values()],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Module':
        ports = [ModulePort.from_dict(p) for p in data.get('ports', [])]
        return cls(
            module_id=int(data['module_id']),
            name=str(data.get('name', '')),
            module_type=str(data.get('module_type', '')),
            parent_id=int(data.get('parent_id', 0)),
            gate_ids={int(g) for g in data.get('gate_ids', [])},
            children=[int(c) for c in data.get('children', [])],
            ports={p.name: p for p in ports},
        )


# =============================================================================
# RULE CHECK VIOLATIONS
# =============================================================================

@dataclass
class RCViolation:
    """
    A single rule check violation.

    description is a template; {0}, {1}, ... are replaced by the descriptive
    identifiers of object_ids when rendered.
    """
    rule_id: str
    severity: RCSeverity
    description: str
    object_ids: List[int] = field(default_factory=list)
    layer: int = -1
    object_type: Optional[ObjectType] = None
    accepted: bool = False

    @property
    def key(self) -> Tuple[str, int]:
        """Identity used to carry the accepted flag across check runs."""
        return (self.rule_id, self.object_ids[0] if self.object_ids else 0)

    def render_description(self, model=None) -> str:
        if model is None:
            names = [f"({oid})" for oid in self.object_ids]
        else:
            names = [model.describe(oid) for oid in self.object_ids]
        try:
            return self.description.format(*names)
        except (IndexError, KeyError):
            return self.description

    def to_dict(self) -> Dict:
        return {
            'rule_id': self.rule_id,
            'severity': self.severity.value,
            'description': self.description,
            'object_ids': list(self.object_ids),
            'layer': self.layer,
            'object_type': self.object_type.value if self.object_type else None,
            'accepted': self.accepted,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'RCViolation':
        object_type = data.get('object_type')
        return cls(
            rule_id=str(data['rule_id']),
            severity=RCSeverity(data['severity']),
            description=str(data['description']),
            object_ids=[int(o) for o in data.get('object_ids', [])],
            layer=int(data.get('layer', -1)),
            object_type=ObjectType(object_type) if object_type else None,
            accepted=bool(data.get('accepted', False)),
        )
