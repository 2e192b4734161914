"""
IC Engine - Spatial Logic Model
===============================

The single mutable store shared by every piston.

    model = LogicModel(ProjectSettings(lambda_px=2))
    metal = model.add_layer(LayerType.METAL, 1024, 1024)
    wire_id = model.insert(Wire(layer=metal.index, points=[(0, 10), (10, 10)]))
    hits = model.query(metal.index, BoundingBox(0, 0, 20, 20))

RESPONSIBILITIES:
1. Own every object (arena keyed by object ID); cross references are IDs
2. Per-layer quadtree index for bounding-box queries
3. Gate template library, modules, nets, forced links, violations
4. Validate first, mutate second (errors leave the model untouched)
5. Publish a ModelEvent for every mutation

Electrical meaning (which objects form a net) lives in NetPiston; the model
only stores the resulting nets.
"""

import copy
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .common_types import BoundingBox, Point, shape_intersects_box, to_point
from .errors import InvalidGeometryError, InvalidOperationError, NotFoundError
from .events import EventBus, EventKind
from .logic_types import (
    Annotation, EMarker, Gate, GatePort, GateTemplate, Layer, LayerType,
    LogicModelObject, Module, ModulePort, Net, ObjectType, Orientation,
    ProjectSettings, RCViolation, Via, ViaDirection, Wire, orient_point
)


# =============================================================================
# QUADTREE SPATIAL INDEX
# =============================================================================

@dataclass
class QuadTreeItem:
    """An object's bounding box stored in the quadtree"""
    object_id: int
    bbox: BoundingBox


class QuadTree:
    """
    Quadtree over one layer's pixel bounds.

    Items spanning several children stay at the parent node. Items outside
    the root bounds are kept at the root so nothing is ever lost.
    """

    MAX_ITEMS = 8     # Split when exceeding this
    MAX_DEPTH = 10    # Maximum tree depth

    def __init__(self, bounds: BoundingBox, depth: int = 0):
        self.bounds = bounds
        self.depth = depth
        self.items: List[QuadTreeItem] = []
        self.children: Optional[List['QuadTree']] = None  # NW, NE, SW, SE

    def insert(self, item: QuadTreeItem):
        if self.children is not None:
            for child in self.children:
                if child.bounds.contains_box(item.bbox):
                    child.insert(item)
                    return
            self.items.append(item)
            return

        self.items.append(item)
        if len(self.items) > self.MAX_ITEMS and self.depth < self.MAX_DEPTH:
            self._split()

    def _split(self):
        cx, cy = self.bounds.center
        min_x, min_y = self.bounds.min_x, self.bounds.min_y
        max_x, max_y = self.bounds.max_x, self.bounds.max_y

        self.children = [
            QuadTree(BoundingBox(min_x, cy, cx, max_y), self.depth + 1),
            QuadTree(BoundingBox(cx, cy, max_x, max_y), self.depth + 1),
            QuadTree(BoundingBox(min_x, min_y, cx, cy), self.depth + 1),
            QuadTree(BoundingBox(cx, min_y, max_x, cy), self.depth + 1),
        ]

        remaining = []
        for item in self.items:
            for child in self.children:
                if child.bounds.contains_box(item.bbox):
                    child.insert(item)
                    break
            else:
                remaining.append(item)
        self.items = remaining

    def remove(self, object_id: int, bbox: BoundingBox) -> bool:
        """Remove the item stored for object_id under bbox."""
        for i, item in enumerate(self.items):
            if item.object_id == object_id:
                del self.items[i]
                return True
        if self.children is not None:
            for child in self.children:
                if child.bounds.contains_box(bbox) and child.remove(object_id, bbox):
                    return True
        return False

    def query_range(self, bbox: BoundingBox) -> List[QuadTreeItem]:
        """Find all items that intersect the given bounding box."""
        results = [item for item in self.items if item.bbox.intersects(bbox)]
        if self.children is not None:
            for child in self.children:
                if child.bounds.intersects(bbox):
                    results.extend(child.query_range(bbox))
        return results


class SpatialIndex:
    """Object ID -> bounding box index for one layer."""

    def __init__(self, bounds: BoundingBox):
        self._tree = QuadTree(bounds)
        self._boxes: Dict[int, BoundingBox] = {}

    def __len__(self) -> int:
        return len(self._boxes)

    def __contains__(self, object_id: int) -> bool:
        return object_id in self._boxes

    def insert(self, object_id: int, bbox: BoundingBox):
        if object_id in self._boxes:
            self.remove(object_id)
        self._boxes[object_id] = bbox
        self._tree.insert(QuadTreeItem(object_id, bbox))

    def remove(self, object_id: int):
        bbox = self._boxes.pop(object_id, None)
        if bbox is not None:
            self._tree.remove(object_id, bbox)

    def update(self, object_id: int, bbox: BoundingBox):
        self.remove(object_id)
        self.insert(object_id, bbox)

    def query(self, bbox: BoundingBox) -> List[int]:
        return sorted(item.object_id for item in self._tree.query_range(bbox))


# =============================================================================
# LOGIC MODEL
# =============================================================================

ROOT_MODULE_ID = 1

MOVABLE_TYPES = (Gate, GatePort, Wire, Via, Annotation, EMarker)
SIZED_TYPES = (GatePort, Wire, Via, EMarker)


class LogicModel:
    """
    Arena of placed objects, layers, templates, modules and nets.
    """

    def __init__(self, settings: Optional[ProjectSettings] = None,
                 events: Optional[EventBus] = None):
        self.settings = settings or ProjectSettings()
        self.events = events or EventBus()

        self._layers: List[Layer] = []
        self._indexes: List[SpatialIndex] = []
        self._templates: Dict[int, GateTemplate] = {}
        self._objects: Dict[int, LogicModelObject] = {}
        self._nets: Dict[int, Net] = {}
        self._net_of: Dict[int, int] = {}
        self._forced_links: Set[Tuple[int, int]] = set()
        self._modules: Dict[int, Module] = {
            ROOT_MODULE_ID: Module(module_id=ROOT_MODULE_ID, name='main')
        }
        self._violations: List[RCViolation] = []

        self._next_id = 1
        self._next_template_id = 1
        self._next_module_id = ROOT_MODULE_ID + 1

    # =========================================================================
    # IDS
    # =========================================================================

    def allocate_id(self) -> int:
        object_id = self._next_id
        self._next_id += 1
        return object_id

    @property
    def next_id(self) -> int:
        return self._next_id

    def reserve_ids(self, next_id: int):
        """Make sure future IDs start at next_id or later."""
        self._next_id = max(self._next_id, int(next_id))

    # =========================================================================
    # LAYERS
    # =========================================================================

    def add_layer(self, layer_type: LayerType, width: int, height: int,
                  description: str = '') -> Layer:
        if width <= 0 or height <= 0:
            raise InvalidGeometryError(f"Layer size must be positive: {width}x{height}")
        layer = Layer(index=len(self._layers), layer_type=layer_type,
                      width=int(width), height=int(height), description=description)
        self._layers.append(layer)
        self._indexes.append(SpatialIndex(layer.bounds))
        return layer

    def get_layer(self, index: int) -> Layer:
        if not 0 <= index < len(self._layers):
            raise NotFoundError('layer', index)
        return self._layers[index]

    @property
    def layers(self) -> List[Layer]:
        return list(self._layers)

    def has_layer(self, index: int) -> bool:
        return 0 <= index < len(self._layers)

    # =========================================================================
    # TEMPLATES
    # =========================================================================

    @staticmethod
    def validate_template(template: GateTemplate):
        """Raise InvalidGeometryError unless size, ports and images agree."""
        if template.width <= 0 or template.height <= 0:
            raise InvalidGeometryError(
                f"Template '{template.name}' has no size: {template.width}x{template.height}")
        box = BoundingBox(0, 0, template.width, template.height)
        for port in template.ports:
            if not box.contains_point(port.x, port.y):
                raise InvalidGeometryError(
                    f"Port '{port.name}' lies outside template '{template.name}'")
        for layer_type, image in template.images.items():
            if image.ndim not in (2, 3) or image.shape[:2] != (template.height, template.width):
                raise InvalidGeometryError(
                    f"Template '{template.name}' image for {layer_type.value} has wrong size")

    def add_template(self, template: GateTemplate) -> int:
        self.validate_template(template)
        template.template_id = self._next_template_id
        self._next_template_id += 1
        self._templates[template.template_id] = template
        self.events.publish(EventKind.TEMPLATE_CHANGED, template.template_id, action='added')
        return template.template_id

    def restore_template(self, template: GateTemplate):
        """Add a template keeping its stored ID (project loading)."""
        if template.template_id in self._templates:
            raise InvalidOperationError(f"Duplicate template ID {template.template_id}")
        self.validate_template(template)
        self._templates[template.template_id] = template
        self._next_template_id = max(self._next_template_id, template.template_id + 1)

    def get_template(self, template_id: int) -> GateTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError('template', template_id)
        return template

    def remove_template(self, template_id: int):
        """Remove a template together with every gate placed from it."""
        self.get_template(template_id)
        for gate in self.objects(object_type=ObjectType.GATE):
            if gate.template_id == template_id:
                self.remove(gate.object_id)
        del self._templates[template_id]
        self.events.publish(EventKind.TEMPLATE_CHANGED, template_id, action='removed')

    @property
    def templates(self) -> List[GateTemplate]:
        return [self._templates[k] for k in sorted(self._templates)]

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_geometry(self, obj: LogicModelObject):
        """Raise InvalidGeometryError unless obj fits its layer."""
        if not self.has_layer(obj.layer):
            raise InvalidGeometryError(f"Layer {obj.layer} does not exist")
        bounds = self._layers[obj.layer].bounds

        if isinstance(obj, (Gate, Annotation)):
            if obj.width <= 0 or obj.height <= 0:
                raise InvalidGeometryError(f"{obj.type_name} has no size")
            if not bounds.contains_box(obj.geometry().bounding_box()):
                raise InvalidGeometryError(
                    f"{obj.type_name} at ({obj.x}, {obj.y}) exceeds layer {obj.layer} bounds")
        elif isinstance(obj, Wire):
            if len(obj.points) < 2:
                raise InvalidGeometryError("Wire needs at least two points")
            if obj.diameter <= 0:
                raise InvalidGeometryError("Wire diameter must be positive")
            for x, y in obj.points:
                if not bounds.contains_point(x, y):
                    raise InvalidGeometryError(
                        f"Wire point ({x}, {y}) outside layer {obj.layer} bounds")
        elif isinstance(obj, (Via, GatePort, EMarker)):
            if obj.diameter <= 0:
                raise InvalidGeometryError(f"{obj.type_name} diameter must be positive")
            if not bounds.contains_point(obj.x, obj.y):
                raise InvalidGeometryError(
                    f"{obj.type_name} at ({obj.x}, {obj.y}) outside layer {obj.layer} bounds")

    def _gate_ports(self, gate: Gate, template: GateTemplate) -> List[GatePort]:
        """Build (unplaced) ports for a gate from its template."""
        ports = []
        for tport in template.ports:
            px, py = orient_point(tport.x, tport.y, gate.width, gate.height, gate.orientation)
            ports.append(GatePort(
                layer=gate.layer,
                name=tport.name,
                gate_id=gate.object_id,
                template_port_id=tport.port_id,
                x=gate.x + px,
                y=gate.y + py,
                diameter=self.settings.default_port_diameter,
            ))
        return ports

    # =========================================================================
    # INSERT / REMOVE
    # =========================================================================

    def insert(self, obj: LogicModelObject) -> int:
        """
        Insert a placed object and return its new ID.

        A Gate gets one GatePort per template port, positioned according to
        its orientation.
        """
        if obj.object_id and obj.object_id in self._objects:
            raise InvalidOperationError(f"Object {obj.object_id} is already in the model")
        if isinstance(obj, (Net, GatePort)):
            raise InvalidOperationError(
                f"{obj.type_name} objects are created by the model, not inserted")
        if not isinstance(obj, MOVABLE_TYPES):
            raise InvalidOperationError(f"Unsupported object: {type(obj).__name__}")

        ports: List[GatePort] = []
        if isinstance(obj, Gate):
            template = self.get_template(obj.template_id)
            obj.width = template.width
            obj.height = template.height
            if self.settings.strict_gate_layers and self.has_layer(obj.layer):
                layer_type = self._layers[obj.layer].layer_type
                if layer_type not in (LayerType.LOGIC, LayerType.UNDEFINED):
                    raise InvalidOperationError(
                        f"Gates cannot be placed on a {layer_type.value} layer")
            self.validate_geometry(obj)
            ports = self._gate_ports(obj, template)
            for port in ports:
                self.validate_geometry(port)
        else:
            self.validate_geometry(obj)

        obj.object_id = self.allocate_id()
        self._store(obj)

        if isinstance(obj, Gate):
            obj.port_ids = []
            for port in ports:
                port.gate_id = obj.object_id
                port.object_id = self.allocate_id()
                obj.port_ids.append(port.object_id)
                self._store(port)
            if not obj.module_id or obj.module_id not in self._modules:
                obj.module_id = ROOT_MODULE_ID
            self._modules[obj.module_id].gate_ids.add(obj.object_id)
            for port in ports:
                self.events.publish(EventKind.OBJECT_INSERTED, port.object_id,
                                    object_type=port.object_type.value, layer=port.layer)

        self.events.publish(EventKind.OBJECT_INSERTED, obj.object_id,
                            object_type=obj.object_type.value, layer=obj.layer)
        return obj.object_id

    def restore_object(self, obj: LogicModelObject):
        """Insert an object keeping its stored ID (project loading)."""
        if isinstance(obj, Net):
            raise InvalidOperationError("Nets are restored with replace_nets()")
        if obj.object_id <= 0 or obj.object_id in self._objects:
            raise InvalidOperationError(f"Invalid or duplicate object ID {obj.object_id}")
        self.validate_geometry(obj)
        self._store(obj)
        self._next_id = max(self._next_id, obj.object_id + 1)
        if isinstance(obj, Gate):
            if obj.module_id not in self._modules:
                obj.module_id = ROOT_MODULE_ID
            self._modules[obj.module_id].gate_ids.add(obj.object_id)

    def _store(self, obj: LogicModelObject):
        self._objects[obj.object_id] = obj
        self._indexes[obj.layer].insert(obj.object_id, obj.geometry().bounding_box())

    def remove(self, object_id: int):
        """
        Remove an object.

        Detaches it from its net, drops forced links and module references,
        and (for a gate) removes its ports as well.
        """
        obj = self.get(object_id)
        if isinstance(obj, Net):
            self.replace_nets([object_id], [])
            return

        ids = [object_id]
        if isinstance(obj, Gate):
            ids = list(obj.port_ids) + [object_id]
        elif isinstance(obj, GatePort):
            gate = self._objects.get(obj.gate_id)
            if isinstance(gate, Gate) and object_id in gate.port_ids:
                gate.port_ids.remove(object_id)

        for oid in ids:
            self._detach_from_net(oid)
            self._forced_links = {l for l in self._forced_links if oid not in l}

        for module in self._modules.values():
            module.gate_ids.discard(object_id)
            stale = [name for name, p in module.ports.items()
                     if p.gate_id == object_id or p.gate_port_id in ids]
            for name in stale:
                del module.ports[name]

        dropped = [v for v in self._violations if set(v.object_ids) & set(ids)]
        if dropped:
            self._violations = [v for v in self._violations if v not in dropped]

        for oid in ids:
            removed = self._objects.pop(oid)
            self._indexes[removed.layer].remove(oid)
            self.events.publish(EventKind.OBJECT_REMOVED, oid,
                                object_type=removed.object_type.value, layer=removed.layer)
        if dropped:
            self.events.publish(EventKind.VIOLATIONS_CHANGED, count=len(self._violations))

    def _detach_from_net(self, object_id: int):
        net_id = self._net_of.pop(object_id, None)
        if net_id is None:
            return
        net = self._nets[net_id]
        net.member_ids.discard(object_id)
        if len(net.member_ids) < 2:
            for member in net.member_ids:
                self._net_of.pop(member, None)
            del self._nets[net_id]
            self.events.publish(EventKind.NET_CHANGED, net_id, action='removed')
        else:
            self.events.publish(EventKind.NET_CHANGED, net_id, action='changed')

    # =========================================================================
    # LOOKUP
    # =========================================================================

    def get(self, object_id: int) -> LogicModelObject:
        obj = self._objects.get(object_id)
        if obj is None:
            obj = self._nets.get(object_id)
        if obj is None:
            raise NotFoundError('object', object_id)
        return obj

    def __contains__(self, object_id: int) -> bool:
        return object_id in self._objects or object_id in self._nets

    def __len__(self) -> int:
        return len(self._objects)

    def objects(self, layer: Optional[int] = None,
                object_type: Optional[ObjectType] = None) -> List[LogicModelObject]:
        """Placed objects (or nets, for ObjectType.NET) sorted by ID."""
        if object_type == ObjectType.NET:
            return self.nets
        result = []
        for oid in sorted(self._objects):
            obj = self._objects[oid]
            if layer is not None and obj.layer != layer:
                continue
            if object_type is not None and obj.object_type != object_type:
                continue
            result.append(obj)
        return result

    def connectable_objects(self, layer: Optional[int] = None) -> List[LogicModelObject]:
        return [o for o in self.objects(layer=layer) if o.is_connectable()]

    def candidates(self, layer: int, bbox: BoundingBox) -> List[LogicModelObject]:
        """Objects whose bounding box intersects bbox (no exact test)."""
        if not self.has_layer(layer):
            return []
        return [self._objects[oid] for oid in self._indexes[layer].query(bbox)]

    def query(self, layer: int, bbox: BoundingBox,
              object_type: Optional[ObjectType] = None) -> List[LogicModelObject]:
        """Objects on a layer whose geometry touches the rectangle."""
        self.get_layer(layer)
        result = []
        for obj in self.candidates(layer, bbox):
            if object_type is not None and obj.object_type != object_type:
                continue
            if shape_intersects_box(obj.geometry(), bbox):
                result.append(obj)
        return result

    def describe(self, object_id: int) -> str:
        obj = self._objects.get(object_id) or self._nets.get(object_id)
        if obj is None:
            return f"({object_id})"
        if isinstance(obj, GatePort):
            gate = self._objects.get(obj.gate_id)
            if isinstance(gate, Gate) and gate.name:
                return f"{gate.name}.{obj.name} ({object_id})"
        return obj.descriptive_identifier()

    def port_direction(self, port: GatePort):
        """Template direction of a gate port, or None when unresolved."""
        gate = self._objects.get(port.gate_id)
        if not isinstance(gate, Gate):
            return None
        template = self._templates.get(gate.template_id)
        if template is None:
            return None
        tport = template.get_port(port.template_port_id)
        return tport.direction if tport is not None else None

    # =========================================================================
    # MUTATION
    # =========================================================================

    def _commit(self, obj: LogicModelObject, candidate: LogicModelObject, **detail):
        """Copy validated candidate state onto obj and reindex it."""
        obj.__dict__.update(candidate.__dict__)
        self._indexes[obj.layer].update(obj.object_id, obj.geometry().bounding_box())
        self.events.publish(EventKind.OBJECT_CHANGED, obj.object_id, **detail)

    def _placed(self, object_id: int, types=MOVABLE_TYPES) -> LogicModelObject:
        obj = self.get(object_id)
        if not isinstance(obj, types):
            raise InvalidOperationError(
                f"Operation not supported for {obj.type_name} {object_id}")
        return obj

    def move(self, object_id: int, dx: float, dy: float):
        """Translate an object; a gate drags its ports along."""
        obj = self._placed(object_id)
        candidate = copy.deepcopy(obj)
        candidate.translate(dx, dy)
        self.validate_geometry(candidate)

        port_candidates = []
        if isinstance(obj, Gate):
            for pid in obj.port_ids:
                port = copy.deepcopy(self._objects[pid])
                port.translate(dx, dy)
                self.validate_geometry(port)
                port_candidates.append(port)

        self._commit(obj, candidate, action='moved', dx=dx, dy=dy)
        for port in port_candidates:
            self._commit(self._objects[port.object_id], port, action='moved', dx=dx, dy=dy)

    def set_wire_points(self, object_id: int, points: Iterable[Point]):
        wire = self._placed(object_id, Wire)
        candidate = copy.deepcopy(wire)
        candidate.points = [to_point(p) for p in points]
        self.validate_geometry(candidate)
        self._commit(wire, candidate, action='reshaped')

    def set_diameter(self, object_id: int, diameter: float):
        obj = self._placed(object_id, SIZED_TYPES)
        candidate = copy.deepcopy(obj)
        candidate.diameter = float(diameter)
        self.validate_geometry(candidate)
        self._commit(obj, candidate, action='resized', diameter=diameter)

    def set_via_direction(self, object_id: int, direction: ViaDirection):
        via = self._placed(object_id, Via)
        via.direction = direction
        self.events.publish(EventKind.OBJECT_CHANGED, object_id,
                            action='direction', direction=direction.value)

    def set_gate_orientation(self, object_id: int, orientation: Orientation):
        """Change a gate's orientation and reposition its ports."""
        gate = self._placed(object_id, Gate)
        template = self.get_template(gate.template_id)
        candidate = copy.deepcopy(gate)
        candidate.orientation = orientation

        moved = []
        for new_port in self._gate_ports(candidate, template):
            for pid in gate.port_ids:
                port = self._objects[pid]
                if port.template_port_id == new_port.template_port_id:
                    port_candidate = copy.deepcopy(port)
                    port_candidate.x, port_candidate.y = new_port.x, new_port.y
                    self.validate_geometry(port_candidate)
                    moved.append(port_candidate)

        self._commit(gate, candidate, action='orientation', orientation=orientation.value)
        for port in moved:
            self._commit(self._objects[port.object_id], port, action='moved')

    def rename(self, object_id: int, name: Optional[str] = None,
               description: Optional[str] = None):
        obj = self.get(object_id)
        if name is not None:
            obj.name = name
        if description is not None:
            obj.description = description
        self.events.publish(EventKind.OBJECT_CHANGED, object_id, action='renamed')

    def set_colors(self, object_id: int, fill_color: Optional[int] = None,
                   frame_color: Optional[int] = None):
        obj = self.get(object_id)
        obj.fill_color = fill_color
        obj.frame_color = frame_color
        self.events.publish(EventKind.OBJECT_CHANGED, object_id, action='colors')

    # =========================================================================
    # NETS AND FORCED LINKS
    # =========================================================================

    @property
    def nets(self) -> List[Net]:
        return [self._nets[k] for k in sorted(self._nets)]

    def net_of(self, object_id: int) -> Optional[Net]:
        self.get(object_id)
        net_id = self._net_of.get(object_id)
        return self._nets.get(net_id) if net_id is not None else None

    def replace_nets(self, removed_ids: Iterable[int], nets: Iterable[Net]):
        """
        Swap a set of nets in one step.

        removed_ids are dropped, every net in nets is stored under its ID
        (replacing an existing net with that ID).
        """
        nets = list(nets)
        removed_ids = set(removed_ids)
        for net in nets:
            for member in net.member_ids:
                if member not in self._objects:
                    raise NotFoundError('object', member)

        for net_id in sorted(removed_ids | {n.object_id for n in nets}):
            old = self._nets.pop(net_id, None)
            if old is None:
                continue
            for member in old.member_ids:
                if self._net_of.get(member) == net_id:
                    del self._net_of[member]

        for net in nets:
            for member in net.member_ids:
                previous = self._net_of.get(member)
                if previous is not None and previous != net.object_id:
                    other = self._nets[previous]
                    other.member_ids.discard(member)
                self._net_of[member] = net.object_id
            self._nets[net.object_id] = net
            self._next_id = max(self._next_id, net.object_id + 1)

        for net_id in sorted(removed_ids - {n.object_id for n in nets}):
            self.events.publish(EventKind.NET_CHANGED, net_id, action='removed')
        for net in nets:
            self.events.publish(EventKind.NET_CHANGED, net.object_id,
                                action='updated', size=len(net.member_ids))

    @property
    def forced_links(self) -> List[Tuple[int, int]]:
        return sorted(self._forced_links)

    def add_forced_links(self, pairs: Iterable[Tuple[int, int]]):
        pairs = [tuple(sorted((int(a), int(b)))) for a, b in pairs]
        for a, b in pairs:
            self.get(a)
            self.get(b)
        self._forced_links.update(p for p in pairs if p[0] != p[1])

    def remove_forced_links(self, object_ids: Iterable[int]) -> int:
        """Drop every forced link touching object_ids; returns the count."""
        ids = set(object_ids)
        before = len(self._forced_links)
        self._forced_links = {l for l in self._forced_links
                              if l[0] not in ids and l[1] not in ids}
        return before - len(self._forced_links)

    # =========================================================================
    # MODULES
    # =========================================================================

    @property
    def root_module(self) -> Module:
        return self._modules[ROOT_MODULE_ID]

    @property
    def modules(self) -> List[Module]:
        return [self._modules[k] for k in sorted(self._modules)]

    def get_module(self, module_id: int) -> Module:
        module = self._modules.get(module_id)
        if module is None:
            raise NotFoundError('module', module_id)
        return module

    def add_module(self, name: str, parent_id: Optional[int] = None,
                   module_type: str = '') -> Module:
        parent = self.get_module(parent_id if parent_id is not None else ROOT_MODULE_ID)
        module = Module(module_id=self._next_module_id, name=name,
                        module_type=module_type, parent_id=parent.module_id)
        self._next_module_id += 1
        self._modules[module.module_id] = module
        parent.children.append(module.module_id)
        self.events.publish(EventKind.MODULE_CHANGED, module.module_id, action='added')
        return module

    def restore_module(self, module: Module):
        """Store a module keeping its ID (project loading)."""
        if module.module_id == ROOT_MODULE_ID:
            root = self._modules[ROOT_MODULE_ID]
            root.name = module.name
            root.module_type = module.module_type
            root.children = list(module.children)
            root.ports = dict(module.ports)
            return
        self._modules[module.module_id] = Module(
            module_id=module.module_id, name=module.name,
            module_type=module.module_type, parent_id=module.parent_id,
            children=list(module.children), ports=dict(module.ports))
        self._next_module_id = max(self._next_module_id, module.module_id + 1)

    def move_gates_to_module(self, gate_ids: Iterable[int], module_id: int):
        target = self.get_module(module_id)
        gates = [self._placed(gid, Gate) for gid in gate_ids]
        for gate in gates:
            old = self._modules.get(gate.module_id)
            if old is not None and old is not target:
                old.gate_ids.discard(gate.object_id)
                stale = [n for n, p in old.ports.items() if p.gate_id == gate.object_id]
                for name in stale:
                    del old.ports[name]
            gate.module_id = target.module_id
            target.gate_ids.add(gate.object_id)
        self.events.publish(EventKind.MODULE_CHANGED, module_id, action='gates',
                            gate_ids=[g.object_id for g in gates])

    def remove_module(self, module_id: int):
        """Remove a module; its gates and sub-modules move to the parent."""
        module = self.get_module(module_id)
        if module.is_root:
            raise InvalidOperationError("The root module cannot be removed")
        parent = self._modules[module.parent_id]

        for gid in module.gate_ids:
            gate = self._objects.get(gid)
            if isinstance(gate, Gate):
                gate.module_id = parent.module_id
            parent.gate_ids.add(gid)
        for child_id in module.children:
            self._modules[child_id].parent_id = parent.module_id
            parent.children.append(child_id)
        parent.children.remove(module_id)
        del self._modules[module_id]
        self.events.publish(EventKind.MODULE_CHANGED, module_id, action='removed')

    def module_gate_ids(self, module_id: int) -> Set[int]:
        """Gates of a module including all sub-modules."""
        module = self.get_module(module_id)
        result = set(module.gate_ids)
        for child_id in module.children:
            result |= self.module_gate_ids(child_id)
        return result

    def add_module_port(self, module_id: int, name: str, gate_id: int,
                        gate_port_id: int) -> ModulePort:
        module = self.get_module(module_id)
        gate = self._placed(gate_id, Gate)
        if gate_port_id not in gate.port_ids:
            raise InvalidOperationError(f"Port {gate_port_id} does not belong to gate {gate_id}")
        if gate_id not in self.module_gate_ids(module_id):
            raise InvalidOperationError(f"Gate {gate_id} is not part of module {module.name}")
        port = ModulePort(name=name, gate_id=gate_id, gate_port_id=gate_port_id)
        module.ports[name] = port
        self.events.publish(EventKind.MODULE_CHANGED, module_id, action='port_added', port=name)
        return port

    def remove_module_port(self, module_id: int, name: str):
        module = self.get_module(module_id)
        if name not in module.ports:
            raise NotFoundError('module port', name)
        del module.ports[name]
        self.events.publish(EventKind.MODULE_CHANGED, module_id, action='port_removed', port=name)

    # =========================================================================
    # VIOLATIONS
    # =========================================================================

    @property
    def violations(self) -> List[RCViolation]:
        return list(self._violations)

    def set_violations(self, violations: Iterable[RCViolation]):
        self._violations = list(violations)
        self.events.publish(EventKind.VIOLATIONS_CHANGED, count=len(self._violations))
