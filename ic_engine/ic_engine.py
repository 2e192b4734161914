#!/usr/bin/env python3
"""
IC Reconstruction Engine - Foreman
==================================

Drives the pistons over one shared LogicModel:

    Placement / Matching -> Net Extraction -> ERC

Every edit issued through the engine re-extracts the nets around the edited
objects when auto_extract is on, so nets never go stale between commands.

Usage:
    engine = ReconstructionEngine(EngineConfig(settings=ProjectSettings(lambda_px=2)))
    metal = engine.add_layer(LayerType.METAL, image=metal_image)
    wire = engine.place_wire(metal.index, [(0, 10), (10, 10)])
    result = engine.run_erc()
    print(result.summary())
    engine.save('chip.json')
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from .common_types import BoundingBox, Point
from .erc_piston import ERCConfig, ERCPiston, ERCResult
from .errors import InvalidGeometryError
from .events import EventKind, ModelEvent
from .image_provider import ArrayImageProvider, ImageProvider
from .logic_model import LogicModel
from .logic_types import (
    Annotation, EMarker, Gate, GateTemplate, Layer, LayerType, LogicModelObject,
    Orientation, ProjectSettings, RCViolation, Via, ViaDirection, Wire
)
from .matching_piston import (
    MatchingConfig, MatchingPiston, MatchingResult, MatchProgress
)
from .net_piston import NetConfig, NetPiston, NetResult
from . import project_store


@dataclass
class EngineConfig:
    """Master configuration for the reconstruction engine"""
    settings: ProjectSettings = field(default_factory=ProjectSettings)

    # Piston configs
    net: NetConfig = field(default_factory=NetConfig)
    erc: ERCConfig = field(default_factory=ERCConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)

    # Re-extract nets around every edit
    auto_extract: bool = True

    # Run ERC after every matching run
    erc_after_matching: bool = False

    verbose: bool = False


class ReconstructionEngine:
    """
    The foreman: owns the model, the image provider and one instance of
    each piston.
    """

    def __init__(self, config: Optional[EngineConfig] = None,
                 model: Optional[LogicModel] = None,
                 image_provider: Optional[ImageProvider] = None):
        self.config = config or EngineConfig()
        if self.config.verbose:
            self.config.net.verbose = True
            self.config.erc.verbose = True
            self.config.matching.verbose = True

        self.images = image_provider or ArrayImageProvider()
        self.erc_piston = ERCPiston(self.config.erc)
        self._attach(model or LogicModel(self.config.settings))

    def _attach(self, model: LogicModel):
        self.model = model
        self.model.events.verbose = self.config.verbose
        self.config.settings = model.settings
        self.net_piston = NetPiston(model, self.config.net)
        self.matching_piston = MatchingPiston(model, self.images, self.config.matching)

    # =========================================================================
    # EVENTS
    # =========================================================================

    def subscribe(self, callback: Callable[[ModelEvent], None],
                  kinds: Optional[Iterable[EventKind]] = None) -> int:
        return self.model.events.subscribe(callback, kinds)

    def unsubscribe(self, token: int) -> bool:
        return self.model.events.unsubscribe(token)

    # =========================================================================
    # LAYERS AND TEMPLATES
    # =========================================================================

    def add_layer(self, layer_type: LayerType, image: Optional[np.ndarray] = None,
                  width: Optional[int] = None, height: Optional[int] = None,
                  description: str = '') -> Layer:
        """Add a layer; its size defaults to the image size."""
        if image is not None:
            height = height or image.shape[0]
            width = width or image.shape[1]
        if not width or not height:
            raise InvalidGeometryError("Layer needs an image or an explicit size")
        layer = self.model.add_layer(layer_type, width, height, description)
        if image is not None:
            self.set_layer_image(layer.index, image)
        self._log(f"[ENGINE] Layer {layer.index} ({layer_type.value}) {width}x{height}")
        return layer

    def set_layer_image(self, layer_index: int, image: np.ndarray):
        self.model.get_layer(layer_index)
        if not isinstance(self.images, ArrayImageProvider):
            raise TypeError("Layer images can only be set on an ArrayImageProvider")
        self.images.set_image(layer_index, image)

    def add_template(self, template: GateTemplate) -> int:
        return self.model.add_template(template)

    def remove_template(self, template_id: int):
        affected = self._affected_by_removal(
            [g.object_id for g in self.model.objects()
             if isinstance(g, Gate) and g.template_id == template_id])
        self.model.remove_template(template_id)
        self._auto_extract(affected)

    # =========================================================================
    # PLACEMENT AND EDITING
    # =========================================================================

    def place(self, obj: LogicModelObject) -> int:
        """Insert any placeable object and update the nets around it."""
        object_id = self.model.insert(obj)
        ids = [object_id] + list(getattr(obj, 'port_ids', []))
        self._auto_extract(ids)
        return object_id

    def place_gate(self, template_id: int, layer: int, x: float, y: float,
                   orientation: Orientation = Orientation.NORMAL, name: str = '') -> int:
        return self.place(Gate(layer=layer, template_id=template_id, x=x, y=y,
                               orientation=orientation, name=name))

    def place_wire(self, layer: int, points: List[Point],
                   diameter: Optional[float] = None, name: str = '') -> int:
        if diameter is None:
            diameter = self.model.settings.default_wire_diameter
        return self.place(Wire(layer=layer, points=points, diameter=diameter, name=name))

    def place_via(self, layer: int, x: float, y: float,
                  direction: ViaDirection = ViaDirection.UNDEFINED,
                  diameter: Optional[float] = None, name: str = '') -> int:
        if diameter is None:
            diameter = self.model.settings.default_via_diameter
        return self.place(Via(layer=layer, x=x, y=y, diameter=diameter,
                              direction=direction, name=name))

    def place_emarker(self, layer: int, x: float, y: float,
                      diameter: Optional[float] = None, name: str = '') -> int:
        if diameter is None:
            diameter = self.model.settings.default_emarker_diameter
        return self.place(EMarker(layer=layer, x=x, y=y, diameter=diameter, name=name))

    def place_annotation(self, layer: int, box: BoundingBox, name: str = '',
                         annotation_class: str = 'undefined') -> int:
        return self.place(Annotation(layer=layer, x=box.min_x, y=box.min_y,
                                     width=box.width, height=box.height, name=name,
                                     annotation_class=annotation_class))

    def _with_ports(self, object_id: int) -> List[int]:
        obj = self.model.get(object_id)
        return [object_id] + list(obj.port_ids) if isinstance(obj, Gate) else [object_id]

    def move(self, object_id: int, dx: float, dy: float):
        self.model.move(object_id, dx, dy)
        self._auto_extract(self._with_ports(object_id))

    def set_wire_points(self, object_id: int, points: List[Point]):
        self.model.set_wire_points(object_id, points)
        self._auto_extract([object_id])

    def set_diameter(self, object_id: int, diameter: float):
        self.model.set_diameter(object_id, diameter)
        self._auto_extract([object_id])

    def set_via_direction(self, object_id: int, direction: ViaDirection):
        self.model.set_via_direction(object_id, direction)
        self._auto_extract([object_id])

    def set_gate_orientation(self, object_id: int, orientation: Orientation):
        self.model.set_gate_orientation(object_id, orientation)
        self._auto_extract(self._with_ports(object_id))

    def rename(self, object_id: int, name: Optional[str] = None,
               description: Optional[str] = None):
        self.model.rename(object_id, name, description)

    def _affected_by_removal(self, object_ids: Iterable[int]) -> Set[int]:
        """Former net partners of the objects about to be removed."""
        removed: Set[int] = set()
        for oid in object_ids:
            removed |= set(self._with_ports(oid))
        affected: Set[int] = set()
        for oid in removed:
            net = self.model.net_of(oid)
            if net is not None:
                affected |= net.member_ids
        return affected - removed

    def remove(self, object_id: int):
        affected = self._affected_by_removal([object_id])
        self.model.remove(object_id)
        self._auto_extract(affected)

    # =========================================================================
    # NETS
    # =========================================================================

    def _auto_extract(self, object_ids: Iterable[int]) -> Optional[NetResult]:
        if not self.config.auto_extract:
            return None
        ids = [oid for oid in object_ids if oid in self.model]
        if not ids:
            return None
        return self.net_piston.extract(ids)

    def extract_nets(self, object_ids: Optional[Iterable[int]] = None) -> NetResult:
        return self.net_piston.extract(object_ids)

    def interconnect(self, object_ids: Iterable[int]) -> NetResult:
        return self.net_piston.interconnect(object_ids)

    def isolate(self, object_ids: Iterable[int]) -> NetResult:
        return self.net_piston.isolate(object_ids)

    # =========================================================================
    # ERC
    # =========================================================================

    def run_erc(self, rule_ids: Optional[Iterable[str]] = None) -> ERCResult:
        result = self.erc_piston.check(self.model, rule_ids)
        self._log(f"[ENGINE] {result.summary()}")
        return result

    def accept_violations(self, keys: Iterable[Tuple[str, int]]) -> int:
        return self.erc_piston.accept(self.model, keys)

    def reject_violations(self, keys: Iterable[Tuple[str, int]]) -> int:
        return self.erc_piston.reject(self.model, keys)

    def filter_violations(self, **criteria) -> List[RCViolation]:
        return ERCPiston.filter(self.model.violations, model=self.model, **criteria)

    # =========================================================================
    # MATCHING
    # =========================================================================

    def _after_matching(self, result: MatchingResult) -> MatchingResult:
        ids: List[int] = []
        for oid in result.inserted_ids:
            ids.extend(self._with_ports(oid))
        self._auto_extract(ids)
        if self.config.erc_after_matching:
            self.run_erc()
        self._log(f"[ENGINE] {result.summary()}")
        return result

    def match_gates(self, templates, layer: int, search_area: Optional[BoundingBox] = None,
                    progress_callback: Optional[Callable[[MatchProgress], None]] = None
                    ) -> MatchingResult:
        return self._after_matching(self.matching_piston.match_gates(
            templates, layer, search_area, progress_callback))

    def match_vias(self, layer: int, direction: ViaDirection = ViaDirection.UNDEFINED,
                   search_area: Optional[BoundingBox] = None, diameter: Optional[float] = None,
                   progress_callback: Optional[Callable[[MatchProgress], None]] = None
                   ) -> MatchingResult:
        return self._after_matching(self.matching_piston.match_vias(
            layer, direction, search_area, diameter, progress_callback))

    def match_wires(self, layer: int, search_area: Optional[BoundingBox] = None,
                    diameter: Optional[float] = None,
                    progress_callback: Optional[Callable[[MatchProgress], None]] = None
                    ) -> MatchingResult:
        return self._after_matching(self.matching_piston.match_wires(
            layer, search_area, diameter, progress_callback))

    def cancel_matching(self):
        self.matching_piston.cancel()

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def save(self, path: str):
        project_store.save_project(self.model, path)
        self._log(f"[ENGINE] Saved project to {path}")

    def load(self, path: str):
        """Replace the current model with a project file; subscribers are kept."""
        events = self.model.events
        model = project_store.load_project(path)
        model.events = events
        self._attach(model)
        self._log(f"[ENGINE] Loaded {len(model)} objects from {path}")

    def import_project(self, path: str, layer_offset: int = 0) -> Dict[int, int]:
        id_map = project_store.import_project(self.model, path, layer_offset)
        self._auto_extract(id_map.values())
        self._log(f"[ENGINE] Imported {len(id_map)} objects from {path}")
        return id_map

    def export_module(self, module_id: int, path: str) -> int:
        return project_store.export_module(self.model, module_id, path)

    # =========================================================================
    # REPORTING
    # =========================================================================

    def report(self) -> str:
        lines = [self.net_piston.net_report()]
        if self.model.violations:
            lines.append(self.erc_piston.erc_report(self.model))
        return "\n".join(lines)

    def _log(self, message: str):
        """Log a message if verbose mode is enabled"""
        if self.config.verbose:
            print(message)


if __name__ == '__main__':
    from .logic_types import GateTemplatePort, PortDirection

    rng = np.random.default_rng(7)
    logic_image = np.full((120, 160), 40.0)
    cell = rng.uniform(0, 255, (16, 12))
    for x, y in [(10, 20), (60, 20), (110, 20)]:
        logic_image[y:y + 16, x:x + 12] = cell

    engine = ReconstructionEngine(EngineConfig(verbose=True))
    logic = engine.add_layer(LayerType.LOGIC, image=logic_image)
    engine.add_layer(LayerType.METAL, width=160, height=120)

    inv = GateTemplate(name='INV', width=12, height=16,
                       ports=[GateTemplatePort(1, 'A', 0, 8, PortDirection.IN),
                              GateTemplatePort(2, 'Y', 12, 8, PortDirection.OUT)])
    inv.set_image(LayerType.LOGIC, cell)
    engine.add_template(inv)

    engine.match_gates([inv], logic.index)
    engine.place_wire(logic.index, [(22, 28), (60, 28)])
    engine.run_erc()
    print(engine.report())
