#!/usr/bin/env python3
"""
Unit Tests for NetPiston
========================

Tests all functionality of the NetPiston:
- Lambda proximity rule
- Via cross-layer links
- Full and local extraction
- Stable net IDs
- Interconnect / isolate edits
"""

import sys
import os
import unittest

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from ic_engine.errors import InvalidOperationError, NotFoundError
from ic_engine.logic_model import LogicModel
from ic_engine.logic_types import (
    Annotation, EMarker, LayerType, ProjectSettings, Via, ViaDirection, Wire
)
from ic_engine.net_piston import DisjointSet, NetConfig, NetPiston


def make_model(lambda_px=2.0):
    model = LogicModel(ProjectSettings(lambda_px=lambda_px))
    model.add_layer(LayerType.METAL, 200, 200)
    model.add_layer(LayerType.METAL, 200, 200)
    return model


def marker(model, x, y, layer=0, diameter=2.0):
    return model.insert(EMarker(layer=layer, x=x, y=y, diameter=diameter))


def partition(model):
    return sorted(sorted(n.member_ids) for n in model.nets)


class TestDisjointSet(unittest.TestCase):
    """Test the union-find structure."""

    def test_union_find(self):
        """Test union and find on the disjoint set."""
        ds = DisjointSet([1, 2, 3, 4])
        self.assertTrue(ds.union(1, 2))
        self.assertFalse(ds.union(2, 1))
        ds.union(3, 4)
        self.assertTrue(ds.connected(1, 2))
        self.assertFalse(ds.connected(1, 3))
        self.assertEqual(ds.groups(), [{1, 2}, {3, 4}])


class TestProximity(unittest.TestCase):
    """Test the lambda rule on one layer."""

    def setUp(self):
        self.model = make_model(lambda_px=2.0)
        self.piston = NetPiston(self.model)

    def test_within_lambda_connected(self):
        """Test objects within lambda connect."""
        a = marker(self.model, 10, 10)
        b = marker(self.model, 13.5, 10)       # edge gap 1.5
        self.piston.extract()
        self.assertEqual(partition(self.model), [[a, b]])

    def test_beyond_lambda_open(self):
        """Test objects beyond lambda stay apart."""
        a = marker(self.model, 10, 10)
        b = marker(self.model, 15, 10)         # edge gap 3.0
        result = self.piston.extract()
        self.assertEqual(self.model.nets, [])
        self.assertEqual(result.open_object_ids, [a, b])

    def test_other_layer_not_connected(self):
        """Test objects on other layers stay apart."""
        marker(self.model, 10, 10, layer=0)
        marker(self.model, 10, 10, layer=1)
        self.piston.extract()
        self.assertEqual(self.model.nets, [])

    def test_lambda_override(self):
        """Test the lambda override."""
        marker(self.model, 10, 10)
        marker(self.model, 15, 10)
        piston = NetPiston(self.model, NetConfig(lambda_px=4.0))
        piston.extract()
        self.assertEqual(len(self.model.nets), 1)

    def test_annotations_ignored(self):
        """Test annotations never join nets."""
        a = marker(self.model, 10, 10)
        self.model.insert(Annotation(layer=0, x=5, y=5, width=20, height=20))
        self.piston.extract()
        self.assertIsNone(self.model.net_of(a))

    def test_chain_through_wire(self):
        """Test connections chain through a wire."""
        a = marker(self.model, 2, 50)
        wire = self.model.insert(Wire(layer=0, points=[(5, 50), (95, 50)], diameter=2))
        b = marker(self.model, 98, 50)
        self.piston.extract()
        self.assertEqual(partition(self.model), [[a, wire, b]])


class TestVias(unittest.TestCase):
    """Test cross-layer links."""

    def setUp(self):
        self.model = make_model(lambda_px=50.0)
        self.piston = NetPiston(self.model)

    def test_via_up_reaches_next_layer(self):
        """Test an up via reaches the layer above."""
        via = self.model.insert(Via(layer=0, x=50, y=50, diameter=6, direction=ViaDirection.UP))
        wire = self.model.insert(Wire(layer=1, points=[(50, 40), (50, 60)], diameter=2))
        self.piston.extract()
        self.assertEqual(partition(self.model), [[via, wire]])

    def test_via_reach_ignores_lambda(self):
        """Test via reach does not use lambda."""
        self.model.insert(Via(layer=0, x=50, y=50, diameter=6, direction=ViaDirection.UP))
        self.model.insert(Wire(layer=1, points=[(60, 40), (60, 60)], diameter=2))
        self.piston.extract()
        self.assertEqual(self.model.nets, [])

    def test_via_down(self):
        """Test a down via reaches the layer below."""
        via = self.model.insert(Via(layer=1, x=50, y=50, diameter=6, direction=ViaDirection.DOWN))
        target = marker(self.model, 51, 50, layer=0)
        self.piston.extract()
        self.assertEqual(partition(self.model), [[via, target]])

    def test_undefined_via_stays_on_layer(self):
        """Test an undefined via stays on its layer."""
        self.model.insert(Via(layer=0, x=50, y=50, diameter=6))
        marker(self.model, 50, 50, layer=1)
        self.piston.extract()
        self.assertEqual(self.model.nets, [])


class TestExtraction(unittest.TestCase):
    """Test partition properties and net ID stability."""

    def setUp(self):
        self.model = make_model(lambda_px=2.0)
        self.piston = NetPiston(self.model)
        # Two groups of touching markers, far apart
        self.left = [marker(self.model, 10 + 3 * i, 10) for i in range(3)]
        self.right = [marker(self.model, 100 + 3 * i, 10) for i in range(3)]
        self.lonely = marker(self.model, 50, 100)

    def test_equivalence_relation(self):
        """Test connectivity is an equivalence relation."""
        self.piston.extract()
        seen = set()
        for net in self.model.nets:
            self.assertGreater(len(net), 1)
            self.assertFalse(seen & net.member_ids)
            seen |= net.member_ids
            for member in net.member_ids:
                self.assertIs(self.model.net_of(member), net)
        self.assertIsNone(self.model.net_of(self.lonely))

    def test_idempotent(self):
        """Test repeated extraction changes nothing."""
        self.piston.extract()
        first = {n.object_id: sorted(n.member_ids) for n in self.model.nets}
        result = self.piston.extract()
        second = {n.object_id: sorted(n.member_ids) for n in self.model.nets}
        self.assertEqual(first, second)
        self.assertFalse(result.changed)

    def test_growing_net_keeps_id(self):
        """Test a growing net keeps its ID."""
        self.piston.extract()
        net_id = self.model.net_of(self.left[0]).object_id
        extra = marker(self.model, 19, 10)
        result = self.piston.extract([extra])
        self.assertEqual(result.scope, 'local')
        self.assertEqual(self.model.net_of(extra).object_id, net_id)
        self.assertEqual(result.nets_changed, [net_id])

    def test_merge_keeps_lowest_id(self):
        """Test merged nets keep the lowest ID."""
        self.piston.extract()
        left_id = self.model.net_of(self.left[0]).object_id
        right_id = self.model.net_of(self.right[0]).object_id
        bridge = self.model.insert(Wire(layer=0, points=[(16, 10), (100, 10)], diameter=2))
        result = self.piston.extract([bridge])
        self.assertEqual(len(self.model.nets), 1)
        self.assertEqual(self.model.nets[0].object_id, min(left_id, right_id))
        self.assertEqual(result.nets_removed, [max(left_id, right_id)])

    def test_split_after_removal(self):
        """Test a net splits after removal."""
        self.piston.extract()
        net_id = self.model.net_of(self.left[0]).object_id
        middle = self.left[1]
        self.model.remove(middle)
        self.piston.extract([self.left[0]])
        self.assertIsNone(self.model.net_of(self.left[0]))
        self.assertIsNone(self.model.net_of(self.left[2]))
        self.assertNotIn(net_id, self.model)

    def test_local_matches_full(self):
        """Test local extraction matches full extraction."""
        self.piston.extract()
        moved = self.right[0]
        self.model.move(moved, -80, 0)          # next to left group
        self.piston.extract([moved])
        local = partition(self.model)
        self.piston.extract()
        self.assertEqual(local, partition(self.model))

    def test_unknown_object(self):
        """Test extraction around an unknown ID."""
        with self.assertRaises(NotFoundError):
            self.piston.extract([9999])

    def test_net_report(self):
        """Test the net report."""
        self.piston.extract()
        report = self.piston.net_report()
        self.assertIn("NET EXTRACTION REPORT", report)
        self.assertRegex(report, r"Nets:\s+2")


class TestConnectivityEdits(unittest.TestCase):
    """Test interconnect and isolate."""

    def setUp(self):
        self.model = make_model(lambda_px=2.0)
        self.piston = NetPiston(self.model)
        self.a = marker(self.model, 10, 10)
        self.b = marker(self.model, 150, 150)

    def test_interconnect_far_objects(self):
        """Test forcing a link between far objects."""
        self.piston.interconnect([self.a, self.b])
        self.assertEqual(partition(self.model), [[self.a, self.b]])
        self.assertEqual(self.model.forced_links, [(self.a, self.b)])

    def test_isolate_drops_forced_links(self):
        """Test isolate drops forced links."""
        self.piston.interconnect([self.a, self.b])
        self.piston.isolate([self.a])
        self.assertEqual(self.model.forced_links, [])
        self.assertEqual(self.model.nets, [])

    def test_isolate_objects_within_lambda_rejoin(self):
        """Test isolated objects within lambda rejoin."""
        c = marker(self.model, 13, 10)
        self.piston.extract()
        self.piston.isolate([self.a])
        self.assertEqual(partition(self.model), [[self.a, c]])

    def test_interconnect_annotation_rejected(self):
        """Test interconnecting an annotation."""
        note = self.model.insert(Annotation(layer=0, x=50, y=50, width=10, height=10))
        self.piston.extract()
        before = partition(self.model)
        with self.assertRaises(InvalidOperationError):
            self.piston.interconnect([self.a, note])
        self.assertEqual(self.model.forced_links, [])
        self.assertEqual(partition(self.model), before)

    def test_interconnect_unknown(self):
        """Test interconnecting an unknown ID."""
        with self.assertRaises(NotFoundError):
            self.piston.interconnect([self.a, 4242])
        self.assertEqual(self.model.forced_links, [])


if __name__ == '__main__':
    unittest.main()
