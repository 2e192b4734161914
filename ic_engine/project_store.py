"""
IC Engine - Project Store
=========================

JSON persistence for a complete LogicModel.

DOCUMENT LAYOUT (one JSON object):
    format, version, settings, layers, templates, objects, nets,
    forced_links, modules, violations, next_id

Template images are embedded as base64-encoded .npy payloads. Saving writes
to a temporary file next to the target and renames it into place, so a crash
never leaves a half-written project behind. Loading builds a fresh model and
only returns it when the whole document was valid.
"""

import base64
import copy
import io
import json
import os
import tempfile
from typing import Dict, List

import numpy as np

from .errors import CorruptedProjectError, EngineError
from .logic_model import ROOT_MODULE_ID, LogicModel
from .logic_types import (
    Gate, GatePort, GateTemplate, GateTemplatePort, Layer, LayerType,
    LogicClass, Module, ModulePort, Net, ProjectSettings, RCViolation,
    object_from_dict
)

FORMAT_NAME = 'ic-engine-project'
FORMAT_VERSION = 1


# =============================================================================
# ENCODING
# =============================================================================

def _encode_array(array: np.ndarray) -> str:
    buffer = io.BytesIO()
    np.save(buffer, np.asarray(array), allow_pickle=False)
    return base64.b64encode(buffer.getvalue()).decode('ascii')


def _decode_array(payload: str) -> np.ndarray:
    return np.load(io.BytesIO(base64.b64decode(payload)), allow_pickle=False)


def template_to_dict(template: GateTemplate) -> Dict:
    return {
        'template_id': template.template_id,
        'name': template.name,
        'description': template.description,
        'width': template.width,
        'height': template.height,
        'logic_class': template.logic_class.value,
        'fill_color': template.fill_color,
        'frame_color': template.frame_color,
        'ports': [p.to_dict() for p in template.ports],
        'images': {lt.value: _encode_array(img) for lt, img in template.images.items()},
    }


def template_from_dict(data: Dict) -> GateTemplate:
    return GateTemplate(
        template_id=int(data['template_id']),
        name=str(data.get('name', '')),
        description=str(data.get('description', '')),
        width=int(data['width']),
        height=int(data['height']),
        logic_class=LogicClass(data.get('logic_class', 'undefined')),
        fill_color=data.get('fill_color'),
        frame_color=data.get('frame_color'),
        ports=[GateTemplatePort.from_dict(p) for p in data.get('ports', [])],
        images={LayerType(k): _decode_array(v) for k, v in data.get('images', {}).items()},
    )


def project_to_dict(model: LogicModel) -> Dict:
    """Serialize every part of the model."""
    return {
        'format': FORMAT_NAME,
        'version': FORMAT_VERSION,
        'settings': model.settings.to_dict(),
        'layers': [layer.to_dict() for layer in model.layers],
        'templates': [template_to_dict(t) for t in model.templates],
        'objects': [obj.to_dict() for obj in model.objects()],
        'nets': [net.to_dict() for net in model.nets],
        'forced_links': [list(link) for link in model.forced_links],
        'modules': [module.to_dict() for module in model.modules],
        'violations': [v.to_dict() for v in model.violations],
        'next_id': model.next_id,
    }


def project_from_dict(data: Dict) -> LogicModel:
    """
    Rebuild a model from project_to_dict() output.

    Raises CorruptedProjectError for any structural problem.
    """
    try:
        if data.get('format') != FORMAT_NAME:
            raise CorruptedProjectError(f"Not a project document: {data.get('format')!r}")
        if int(data.get('version', 0)) > FORMAT_VERSION:
            raise CorruptedProjectError(f"Unsupported project version {data.get('version')}")

        model = LogicModel(ProjectSettings.from_dict(data['settings']))
        for index, layer_data in enumerate(data['layers']):
            layer = Layer.from_dict(layer_data)
            if layer.index != index:
                raise CorruptedProjectError(f"Layer index {layer.index} out of order")
            added = model.add_layer(layer.layer_type, layer.width, layer.height,
                                    layer.description)
            added.enabled = layer.enabled

        for template_data in data['templates']:
            model.restore_template(template_from_dict(template_data))

        modules = [Module.from_dict(m) for m in data.get('modules', [])]
        module_ids = {m.module_id for m in modules} | {ROOT_MODULE_ID}
        for module in modules:
            if module.module_id != ROOT_MODULE_ID and module.parent_id not in module_ids:
                raise CorruptedProjectError(
                    f"Module {module.module_id} has unknown parent {module.parent_id}")
            model.restore_module(module)

        objects = [object_from_dict(o) for o in data['objects']]
        for obj in objects:
            if isinstance(obj, Net):
                raise CorruptedProjectError("Nets belong in the 'nets' section")
            if isinstance(obj, Gate):
                template = model.get_template(obj.template_id)
                if (obj.width, obj.height) != (template.width, template.height):
                    raise CorruptedProjectError(
                        f"Gate {obj.object_id} is {obj.width}x{obj.height}, template "
                        f"'{template.name}' is {template.width}x{template.height}")
            model.restore_object(obj)
        _check_gate_ports(model, objects)

        for module in modules:
            for port in module.ports.values():
                gate = model.get(port.gate_id)
                if not isinstance(gate, Gate) or port.gate_port_id not in gate.port_ids:
                    raise CorruptedProjectError(
                        f"Module port '{port.name}' references unknown gate port")

        nets = [Net.from_dict(n) for n in data.get('nets', [])]
        seen = set()
        for net in nets:
            if net.member_ids & seen:
                raise CorruptedProjectError(f"Object in more than one net (net {net.object_id})")
            seen |= net.member_ids
        model.replace_nets([], nets)

        model.add_forced_links((int(a), int(b)) for a, b in data.get('forced_links', []))
        model.set_violations(RCViolation.from_dict(v) for v in data.get('violations', []))
        model.reserve_ids(int(data.get('next_id', 1)))
    except CorruptedProjectError:
        raise
    except (EngineError, KeyError, ValueError, TypeError, AttributeError) as e:
        raise CorruptedProjectError(f"Invalid project document: {e}") from e

    model.events.clear_history()
    return model


def _check_gate_ports(model: LogicModel, objects: List):
    for obj in objects:
        if isinstance(obj, Gate):
            for pid in obj.port_ids:
                port = model.get(pid)
                if not isinstance(port, GatePort) or port.gate_id != obj.object_id:
                    raise CorruptedProjectError(
                        f"Gate {obj.object_id} references invalid port {pid}")
        elif isinstance(obj, GatePort):
            gate = model.get(obj.gate_id)
            if not isinstance(gate, Gate) or obj.object_id not in gate.port_ids:
                raise CorruptedProjectError(
                    f"Gate port {obj.object_id} references invalid gate {obj.gate_id}")


# =============================================================================
# FILES
# =============================================================================

def save_project(model: LogicModel, path: str):
    """Write the project atomically (temp file + rename)."""
    data = project_to_dict(model)
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(prefix='.ic_engine_', suffix='.tmp', dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def _read_document(path: str) -> Dict:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise CorruptedProjectError(f"{path}: not valid JSON ({e})") from e
    if not isinstance(data, dict):
        raise CorruptedProjectError(f"{path}: top level is not an object")
    return data


def load_project(path: str) -> LogicModel:
    """Load a project file into a fresh LogicModel."""
    return project_from_dict(_read_document(path))


def import_project(model: LogicModel, path: str, layer_offset: int = 0) -> Dict[int, int]:
    """
    Merge a project file into an existing model.

    Layer i of the file lands on layer i + layer_offset. Every object gets a
    new ID; the returned dict maps file IDs to model IDs. The whole document
    is validated (including geometry against the target layers) before the
    first object is added. Nets are not imported; re-extract afterwards.
    """
    foreign = load_project(path)

    for template in foreign.templates:
        try:
            model.validate_template(template)
        except EngineError as e:
            raise CorruptedProjectError(f"Template {template.template_id}: {e}") from e

    for obj in foreign.objects():
        candidate = copy.deepcopy(obj)
        candidate.layer += layer_offset
        try:
            model.validate_geometry(candidate)
            if isinstance(candidate, Gate) and model.settings.strict_gate_layers and \
                    model.get_layer(candidate.layer).layer_type not in (
                        LayerType.LOGIC, LayerType.UNDEFINED):
                raise CorruptedProjectError(f"Gate on a non-logic layer {candidate.layer}")
        except EngineError as e:
            raise CorruptedProjectError(
                f"Object {obj.object_id} does not fit the target model: {e}") from e

    template_map: Dict[int, int] = {}
    for template in foreign.templates:
        imported = copy.deepcopy(template)
        template_map[template.template_id] = model.add_template(imported)

    module_map = {ROOT_MODULE_ID: model.root_module.module_id}
    pending = list(foreign.root_module.children)
    while pending:
        module = foreign.get_module(pending.pop(0))
        created = model.add_module(module.name, module_map[module.parent_id],
                                   module.module_type)
        module_map[module.module_id] = created.module_id
        pending.extend(module.children)

    id_map: Dict[int, int] = {}
    for obj in foreign.objects():
        if isinstance(obj, GatePort):
            continue
        imported = copy.deepcopy(obj)
        imported.object_id = 0
        imported.layer += layer_offset
        if isinstance(imported, Gate):
            imported.template_id = template_map[obj.template_id]
            imported.module_id = module_map.get(obj.module_id, ROOT_MODULE_ID)
            imported.port_ids = []
        new_id = model.insert(imported)
        id_map[obj.object_id] = new_id

        if isinstance(obj, Gate):
            new_ports = {model.get(pid).template_port_id: pid for pid in imported.port_ids}
            for pid in obj.port_ids:
                old_port = foreign.get(pid)
                if old_port.template_port_id in new_ports:
                    id_map[pid] = new_ports[old_port.template_port_id]

    for module in foreign.modules:
        for port in module.ports.values():
            if port.gate_id in id_map and port.gate_port_id in id_map:
                model.add_module_port(module_map[module.module_id], port.name,
                                      id_map[port.gate_id], id_map[port.gate_port_id])

    model.add_forced_links((id_map[a], id_map[b]) for a, b in foreign.forced_links
                           if a in id_map and b in id_map)
    return id_map


def export_module(model: LogicModel, module_id: int, path: str) -> int:
    """
    Write the gates of a module (with sub-modules) as a standalone project.

    Returns the number of exported gates.
    """
    module = model.get_module(module_id)
    gate_ids = sorted(model.module_gate_ids(module_id))

    exported = LogicModel(copy.deepcopy(model.settings))
    for layer in model.layers:
        added = exported.add_layer(layer.layer_type, layer.width, layer.height,
                                   layer.description)
        added.enabled = layer.enabled

    used_templates = {model.get(gid).template_id for gid in gate_ids}
    for template in model.templates:
        if template.template_id in used_templates:
            exported.restore_template(copy.deepcopy(template))

    exported.restore_module(Module(module_id=ROOT_MODULE_ID, name=module.name,
                                   module_type=module.module_type,
                                   ports={n: ModulePort(p.name, p.gate_id, p.gate_port_id)
                                          for n, p in module.ports.items()}))
    for gid in gate_ids:
        gate = copy.deepcopy(model.get(gid))
        gate.module_id = ROOT_MODULE_ID
        exported.restore_object(gate)
        for pid in gate.port_ids:
            exported.restore_object(copy.deepcopy(model.get(pid)))

    save_project(exported, path)
    return len(gate_ids)
