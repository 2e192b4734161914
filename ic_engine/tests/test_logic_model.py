#!/usr/bin/env python3
"""
Unit Tests for LogicModel
=========================

Tests all functionality of the spatial logic model:
- Insertion and validation against layer bounds
- Gate placement with generated ports
- Spatial queries
- Moving, reshaping and removing objects
- Templates and modules
- Event notifications
"""

import sys
import os
import unittest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from ic_engine.common_types import BoundingBox, shape_distance, CircleShape, PolylineShape
from ic_engine.errors import InvalidGeometryError, InvalidOperationError, NotFoundError
from ic_engine.events import EventKind
from ic_engine.logic_model import LogicModel, SpatialIndex, ROOT_MODULE_ID
from ic_engine.logic_types import (
    Annotation, EMarker, Gate, GatePort, GateTemplate, GateTemplatePort, LayerType,
    Net, ObjectType, Orientation, PortDirection, ProjectSettings, Via, ViaDirection,
    Wire, orient_point
)


def make_template(name='NAND'):
    """10x20 template with an input on the left edge and an output on the right."""
    return GateTemplate(name=name, width=10, height=20, ports=[
        GateTemplatePort(1, 'A', 0, 5, PortDirection.IN),
        GateTemplatePort(2, 'Y', 10, 10, PortDirection.OUT),
    ])


def make_model(lambda_px=2.0):
    model = LogicModel(ProjectSettings(lambda_px=lambda_px))
    model.add_layer(LayerType.LOGIC, 200, 200)
    model.add_layer(LayerType.METAL, 200, 200)
    return model


class TestGeometry(unittest.TestCase):
    """Test edge-to-edge shape distances."""

    def test_touching_circles(self):
        """Test touching circles are at distance zero."""
        a = CircleShape(0, 0, 4)
        b = CircleShape(4, 0, 4)
        self.assertAlmostEqual(shape_distance(a, b), 0.0)

    def test_wire_thickness_counts(self):
        """Test distances are measured edge to edge."""
        wire = PolylineShape([(0, 0), (10, 0)], 4)
        self.assertAlmostEqual(wire.distance_to_point(5, 3), 1.0)

    def test_orient_point(self):
        """Test port positions under each orientation."""
        self.assertEqual(orient_point(2, 3, 10, 20, Orientation.NORMAL), (2, 3))
        self.assertEqual(orient_point(2, 3, 10, 20, Orientation.FLIPPED_LEFT_RIGHT), (8, 3))
        self.assertEqual(orient_point(2, 3, 10, 20, Orientation.FLIPPED_UP_DOWN), (2, 17))
        self.assertEqual(orient_point(2, 3, 10, 20, Orientation.FLIPPED_BOTH), (8, 17))


class TestSpatialIndex(unittest.TestCase):
    """Test the quadtree-backed index."""

    def test_insert_query_remove(self):
        """Test insert, query and remove on the index."""
        index = SpatialIndex(BoundingBox(0, 0, 100, 100))
        for i in range(50):
            x = (i * 7) % 90
            y = (i * 13) % 90
            index.insert(i + 1, BoundingBox(x, y, x + 5, y + 5))
        self.assertEqual(len(index), 50)

        hits = index.query(BoundingBox(0, 0, 100, 100))
        self.assertEqual(hits, list(range(1, 51)))

        index.remove(1)
        self.assertNotIn(1, index)
        self.assertNotIn(1, index.query(BoundingBox(0, 0, 100, 100)))

    def test_update_moves_item(self):
        """Test updating an item's box in the index."""
        index = SpatialIndex(BoundingBox(0, 0, 100, 100))
        index.insert(7, BoundingBox(0, 0, 5, 5))
        index.update(7, BoundingBox(80, 80, 85, 85))
        self.assertEqual(index.query(BoundingBox(0, 0, 10, 10)), [])
        self.assertEqual(index.query(BoundingBox(79, 79, 90, 90)), [7])


class TestInsert(unittest.TestCase):
    """Test insertion and validation."""

    def setUp(self):
        self.model = make_model()

    def test_insert_assigns_unique_ids(self):
        """Test every insert gets a new ID."""
        a = self.model.insert(Wire(layer=0, points=[(0, 0), (10, 0)]))
        b = self.model.insert(Via(layer=0, x=50, y=50))
        self.assertNotEqual(a, b)
        self.assertIsInstance(self.model.get(a), Wire)
        self.assertIn(b, self.model)

    def test_out_of_bounds_rejected(self):
        """Test objects outside the layer are rejected."""
        with self.assertRaises(InvalidGeometryError):
            self.model.insert(Wire(layer=0, points=[(0, 0), (250, 0)]))
        self.assertEqual(len(self.model), 0)

    def test_unknown_layer_rejected(self):
        """Test objects on a missing layer are rejected."""
        with self.assertRaises(InvalidGeometryError):
            self.model.insert(Via(layer=5, x=10, y=10))

    def test_single_point_wire_rejected(self):
        """Test a wire needs two points."""
        with self.assertRaises(InvalidGeometryError):
            self.model.insert(Wire(layer=0, points=[(1, 1)]))

    def test_nets_cannot_be_inserted(self):
        """Test nets are not inserted directly."""
        with self.assertRaises(InvalidOperationError):
            self.model.insert(Net(member_ids={1, 2}))

    def test_gate_creates_ports(self):
        """Test a gate gets one port per template port."""
        tid = self.model.add_template(make_template())
        gid = self.model.insert(Gate(layer=0, template_id=tid, x=30, y=40))
        gate = self.model.get(gid)

        self.assertEqual((gate.width, gate.height), (10, 20))
        self.assertEqual(len(gate.port_ids), 2)
        ports = [self.model.get(pid) for pid in gate.port_ids]
        self.assertTrue(all(isinstance(p, GatePort) for p in ports))
        self.assertEqual([(p.x, p.y) for p in ports], [(30, 45), (40, 50)])
        self.assertEqual(ports[0].diameter, self.model.settings.default_port_diameter)
        self.assertIn(gid, self.model.root_module.gate_ids)

    def test_flipped_gate_ports(self):
        """Test port positions of a flipped gate."""
        tid = self.model.add_template(make_template())
        gid = self.model.insert(Gate(layer=0, template_id=tid, x=30, y=40,
                                     orientation=Orientation.FLIPPED_LEFT_RIGHT))
        ports = [self.model.get(pid) for pid in self.model.get(gid).port_ids]
        self.assertEqual([(p.x, p.y) for p in ports], [(40, 45), (30, 50)])

    def test_unknown_template(self):
        """Test a gate with an unknown template."""
        with self.assertRaises(NotFoundError):
            self.model.insert(Gate(layer=0, template_id=99, x=0, y=0))
        self.assertEqual(len(self.model), 0)

    def test_strict_gate_layers(self):
        """Test gates are refused on non-logic layers."""
        self.model.settings.strict_gate_layers = True
        tid = self.model.add_template(make_template())
        with self.assertRaises(InvalidOperationError):
            self.model.insert(Gate(layer=1, template_id=tid, x=0, y=0))
        self.model.insert(Gate(layer=0, template_id=tid, x=0, y=0))


class TestQuery(unittest.TestCase):
    """Test spatial queries."""

    def setUp(self):
        self.model = make_model()
        self.diagonal = self.model.insert(Wire(layer=0, points=[(0, 0), (100, 100)], diameter=2))
        self.via = self.model.insert(Via(layer=0, x=150, y=150, diameter=6))
        self.note = self.model.insert(Annotation(layer=0, x=140, y=140, width=20, height=20))

    def test_bbox_hit_without_geometry_hit(self):
        """Test a box hit that misses the geometry."""
        hits = self.model.query(0, BoundingBox(80, 0, 100, 20))
        self.assertEqual(hits, [])

    def test_geometry_hit(self):
        """Test a query hitting the geometry."""
        hits = self.model.query(0, BoundingBox(45, 45, 55, 55))
        self.assertEqual([o.object_id for o in hits], [self.diagonal])

    def test_type_filter(self):
        """Test querying by object type."""
        hits = self.model.query(0, BoundingBox(145, 145, 155, 155), ObjectType.VIA)
        self.assertEqual([o.object_id for o in hits], [self.via])

    def test_other_layer_empty(self):
        """Test queries stay on their layer."""
        self.assertEqual(self.model.query(1, BoundingBox(0, 0, 200, 200)), [])

    def test_unknown_layer(self):
        """Test querying a missing layer."""
        with self.assertRaises(NotFoundError):
            self.model.query(9, BoundingBox(0, 0, 1, 1))


class TestMutation(unittest.TestCase):
    """Test moving, reshaping and removing."""

    def setUp(self):
        self.model = make_model()
        self.tid = self.model.add_template(make_template())
        self.gid = self.model.insert(Gate(layer=0, template_id=self.tid, x=30, y=40))

    def test_move_gate_drags_ports(self):
        """Test moving a gate moves its ports."""
        self.model.move(self.gid, 5, -10)
        gate = self.model.get(self.gid)
        self.assertEqual((gate.x, gate.y), (35, 30))
        port = self.model.get(gate.port_ids[0])
        self.assertEqual((port.x, port.y), (35, 35))
        hits = self.model.query(0, BoundingBox(34, 34, 36, 36), ObjectType.GATE_PORT)
        self.assertEqual([o.object_id for o in hits], [port.object_id])

    def test_move_out_of_bounds_is_atomic(self):
        """Test a rejected move changes nothing."""
        with self.assertRaises(InvalidGeometryError):
            self.model.move(self.gid, 500, 0)
        gate = self.model.get(self.gid)
        self.assertEqual((gate.x, gate.y), (30, 40))
        port = self.model.get(gate.port_ids[0])
        self.assertEqual((port.x, port.y), (30, 45))

    def test_set_wire_points(self):
        """Test replacing wire points."""
        wid = self.model.insert(Wire(layer=1, points=[(0, 0), (10, 0)]))
        self.model.set_wire_points(wid, [(0, 0), (10, 0), (10, 10)])
        self.assertEqual(len(self.model.get(wid).points), 3)
        with self.assertRaises(InvalidOperationError):
            self.model.set_wire_points(self.gid, [(0, 0), (1, 1)])

    def test_set_diameter_validates(self):
        """Test diameter changes are validated."""
        vid = self.model.insert(Via(layer=1, x=10, y=10))
        self.model.set_diameter(vid, 9)
        self.assertEqual(self.model.get(vid).diameter, 9)
        with self.assertRaises(InvalidGeometryError):
            self.model.set_diameter(vid, 0)
        self.assertEqual(self.model.get(vid).diameter, 9)

    def test_orientation_moves_ports(self):
        """Test changing orientation moves ports."""
        self.model.set_gate_orientation(self.gid, Orientation.FLIPPED_UP_DOWN)
        gate = self.model.get(self.gid)
        ports = [self.model.get(pid) for pid in gate.port_ids]
        self.assertEqual([(p.x, p.y) for p in ports], [(30, 55), (40, 50)])

    def test_rename_and_colors(self):
        """Test renaming and custom colors."""
        self.model.rename(self.gid, name='U1', description='nand')
        self.model.set_colors(self.gid, 0xff112233, None)
        gate = self.model.get(self.gid)
        self.assertEqual(gate.descriptive_identifier(), f"U1 ({self.gid})")
        self.assertEqual(gate.render_hint()['fill_color'], 0xff112233)

    def test_describe_port_uses_gate_name(self):
        """Test a port is described through its gate."""
        self.model.rename(self.gid, name='U1')
        port_id = self.model.get(self.gid).port_ids[0]
        self.assertEqual(self.model.describe(port_id), f"U1.A ({port_id})")
        self.assertEqual(self.model.describe(99999), "(99999)")

    def test_via_direction_and_color(self):
        """Test via direction and its default color."""
        vid = self.model.insert(Via(layer=0, x=100, y=100))
        self.model.set_via_direction(vid, ViaDirection.UP)
        via = self.model.get(vid)
        self.assertEqual(via.target_layer(), 1)
        hint = via.render_hint(self.model.settings)
        self.assertEqual(hint['fill_color'], self.model.settings.default_color('via_up'))

    def test_remove_gate_removes_ports(self):
        """Test removing a gate removes its ports."""
        port_ids = list(self.model.get(self.gid).port_ids)
        self.model.remove(self.gid)
        self.assertNotIn(self.gid, self.model)
        for pid in port_ids:
            self.assertNotIn(pid, self.model)
        self.assertNotIn(self.gid, self.model.root_module.gate_ids)

    def test_remove_unknown(self):
        """Test removing an unknown ID."""
        with self.assertRaises(NotFoundError):
            self.model.remove(12345)

    def test_remove_template_cascades(self):
        """Test removing a template removes its gates."""
        self.model.remove_template(self.tid)
        self.assertEqual(self.model.objects(object_type=ObjectType.GATE), [])
        self.assertEqual(self.model.objects(object_type=ObjectType.GATE_PORT), [])
        with self.assertRaises(NotFoundError):
            self.model.get_template(self.tid)

    def test_remove_detaches_from_net(self):
        """Test removal detaches an object from its net."""
        a = self.model.insert(EMarker(layer=1, x=10, y=10))
        b = self.model.insert(EMarker(layer=1, x=12, y=10))
        c = self.model.insert(EMarker(layer=1, x=14, y=10))
        net_id = self.model.allocate_id()
        self.model.replace_nets([], [Net(object_id=net_id, member_ids={a, b, c})])

        self.model.remove(c)
        self.assertEqual(self.model.net_of(a).member_ids, {a, b})
        self.model.remove(b)
        self.assertIsNone(self.model.net_of(a))
        self.assertNotIn(net_id, self.model)


class TestModules(unittest.TestCase):
    """Test module hierarchy."""

    def setUp(self):
        self.model = make_model()
        tid = self.model.add_template(make_template())
        self.g1 = self.model.insert(Gate(layer=0, template_id=tid, x=0, y=0))
        self.g2 = self.model.insert(Gate(layer=0, template_id=tid, x=50, y=0))

    def test_move_gates_and_remove_module(self):
        """Test moving gates between modules."""
        alu = self.model.add_module('alu')
        self.model.move_gates_to_module([self.g1], alu.module_id)
        self.assertEqual(self.model.get(self.g1).module_id, alu.module_id)
        self.assertNotIn(self.g1, self.model.root_module.gate_ids)

        self.model.remove_module(alu.module_id)
        self.assertEqual(self.model.get(self.g1).module_id, ROOT_MODULE_ID)
        self.assertIn(self.g1, self.model.root_module.gate_ids)

    def test_root_cannot_be_removed(self):
        """Test the root module is permanent."""
        with self.assertRaises(InvalidOperationError):
            self.model.remove_module(ROOT_MODULE_ID)

    def test_module_ports(self):
        """Test adding and removing module ports."""
        alu = self.model.add_module('alu')
        self.model.move_gates_to_module([self.g1], alu.module_id)
        port_id = self.model.get(self.g1).port_ids[1]
        self.model.add_module_port(alu.module_id, 'out', self.g1, port_id)
        self.assertIn('out', alu.ports)

        with self.assertRaises(InvalidOperationError):
            self.model.add_module_port(alu.module_id, 'bad', self.g2,
                                       self.model.get(self.g2).port_ids[0])

        self.model.remove(self.g1)
        self.assertNotIn('out', alu.ports)

    def test_nested_gate_ids(self):
        """Test gate IDs of nested modules."""
        outer = self.model.add_module('outer')
        inner = self.model.add_module('inner', parent_id=outer.module_id)
        self.model.move_gates_to_module([self.g2], inner.module_id)
        self.assertEqual(self.model.module_gate_ids(outer.module_id), {self.g2})


class TestEvents(unittest.TestCase):
    """Test change notifications."""

    def test_insert_and_remove_events(self):
        """Test insert and remove publish events."""
        model = make_model()
        seen = []
        model.events.subscribe(lambda e: seen.append((e.kind, e.object_id)),
                               kinds={EventKind.OBJECT_INSERTED, EventKind.OBJECT_REMOVED})
        vid = model.insert(Via(layer=0, x=5, y=5))
        model.remove(vid)
        self.assertEqual(seen, [(EventKind.OBJECT_INSERTED, vid),
                                (EventKind.OBJECT_REMOVED, vid)])

    def test_failing_subscriber_is_isolated(self):
        """Test a raising subscriber does not stop delivery."""
        model = make_model()

        def broken(event):
            raise RuntimeError("boom")

        model.events.subscribe(broken)
        vid = model.insert(Via(layer=0, x=5, y=5))
        self.assertIn(vid, model)

    def test_unsubscribe(self):
        """Test an unsubscribed callback gets nothing."""
        model = make_model()
        seen = []
        token = model.events.subscribe(seen.append)
        self.assertTrue(model.events.unsubscribe(token))
        model.insert(Via(layer=0, x=5, y=5))
        self.assertEqual(seen, [])


if __name__ == '__main__':
    unittest.main()
