#!/usr/bin/env python3
"""
Unit Tests for MatchingPiston
=============================

Tests all functionality of the MatchingPiston:
- Gate template matching on synthetic images
- Overlap suppression and existing-object skipping
- Grid snapping and instance naming
- Via and wire matching
- Cancellation and progress reporting
- Validation errors
"""

import sys
import os
import unittest

import numpy as np
from scipy import ndimage

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from ic_engine.common_types import BoundingBox
from ic_engine.correlation_accel import JITCorrelator, PreparedTemplate, box_downscale
from ic_engine.errors import InvalidGeometryError, InvalidOperationError
from ic_engine.events import EventKind
from ic_engine.image_provider import ArrayImageProvider
from ic_engine.logic_model import LogicModel
from ic_engine.logic_types import GateTemplate, LayerType, ObjectType, Orientation, Via
from ic_engine.matching_piston import (
    MatchingConfig, MatchingPiston, MatchPhase, MatchStatus, MatchType,
    OrientationFilter, TemplateMatch, _SearchOutcome, suppress_overlaps
)

BACKGROUND = 128.0


def noise_pattern(size=16, seed=7):
    return np.random.RandomState(seed).randint(0, 256, (size, size)).astype(np.float64)


def smooth_pattern(size=24, seed=11):
    blurred = ndimage.gaussian_filter(noise_pattern(size, seed), sigma=2)
    return (blurred - blurred.mean()) * 6.0 + BACKGROUND


def stamped_image(pattern, positions, width=100, height=80):
    image = np.full((height, width), BACKGROUND)
    ph, pw = pattern.shape
    for x, y in positions:
        image[y:y + ph, x:x + pw] = pattern
    return image


def exact_config(**overrides):
    params = dict(scale_down=1, max_step_size=1, orientations=OrientationFilter.NORMAL,
                  max_workers=2)
    params.update(overrides)
    return MatchingConfig(**params)


class TestCorrelation(unittest.TestCase):
    """Test the NCC kernels."""

    def test_exact_position_scores_one(self):
        """Test the exact position scores one."""
        pattern = noise_pattern()
        corr = JITCorrelator(stamped_image(pattern, [(30, 20)]))
        tmpl = PreparedTemplate.from_image(pattern)
        self.assertAlmostEqual(corr.score(tmpl, 30, 20), 1.0, places=6)
        self.assertLess(corr.score(tmpl, 5, 5), 0.5)

    def test_out_of_range(self):
        """Test positions outside the image."""
        corr = JITCorrelator(np.zeros((10, 10)))
        tmpl = PreparedTemplate.from_image(noise_pattern(4))
        self.assertEqual(corr.score(tmpl, 8, 8), -1.0)

    def test_flat_patch_scores_zero(self):
        """Test a flat patch scores zero."""
        corr = JITCorrelator(np.full((20, 20), 50.0))
        tmpl = PreparedTemplate.from_image(noise_pattern(4))
        self.assertEqual(corr.score(tmpl, 3, 3), 0.0)

    def test_box_downscale(self):
        """Test box filter downscaling."""
        image = np.arange(16, dtype=np.float64).reshape(4, 4)
        small = box_downscale(image, 2)
        self.assertEqual(small.shape, (2, 2))
        self.assertAlmostEqual(small[0, 0], (0 + 1 + 4 + 5) / 4)


class TestSuppression(unittest.TestCase):
    """Test candidate selection."""

    def test_higher_score_wins(self):
        """Test the higher scoring overlap wins."""
        weak = TemplateMatch(template_id=1, x=0, y=0, width=10, height=10, score=0.8)
        strong = TemplateMatch(template_id=1, x=5, y=5, width=10, height=10, score=0.9)
        apart = TemplateMatch(template_id=1, x=50, y=0, width=10, height=10, score=0.75)
        kept = suppress_overlaps([weak, strong, apart])
        self.assertEqual(kept, [strong, apart])

    def test_touching_footprints_both_kept(self):
        """Test touching footprints are not suppressed."""
        a = TemplateMatch(template_id=1, x=0, y=0, width=10, height=10, score=0.8)
        b = TemplateMatch(template_id=1, x=10, y=0, width=10, height=10, score=0.9)
        self.assertEqual(len(suppress_overlaps([a, b])), 2)


class GateMatchFixture(unittest.TestCase):

    def setUp(self):
        self.pattern = noise_pattern()
        self.model = LogicModel()
        self.model.add_layer(LayerType.LOGIC, 100, 80)
        self.template = GateTemplate(name='INV', width=16, height=16,
                                     images={LayerType.LOGIC: self.pattern})
        self.model.add_template(self.template)
        self.images = ArrayImageProvider()

    def piston(self, **overrides):
        return MatchingPiston(self.model, self.images, exact_config(**overrides))


class TestGateMatching(GateMatchFixture):
    """Test gate placement from matches."""

    def test_single_stamp_found(self):
        """Test a single stamp becomes one gate."""
        self.images.set_image(0, stamped_image(self.pattern, [(37, 23)]))
        result = self.piston().match_gates([self.template], 0)

        self.assertEqual(result.status, MatchStatus.COMPLETE)
        self.assertEqual(len(result.matches), 1)
        match = result.matches[0]
        self.assertLessEqual(abs(match.x - 37), 1)
        self.assertLessEqual(abs(match.y - 23), 1)
        self.assertGreater(match.score, 0.7)

        gate = self.model.get(result.inserted_ids[0])
        self.assertEqual(gate.template_id, self.template.template_id)
        self.assertEqual((gate.width, gate.height), (16, 16))
        self.assertEqual(gate.orientation, Orientation.NORMAL)

    def test_template_by_id(self):
        """Test templates given by ID."""
        self.images.set_image(0, stamped_image(self.pattern, [(10, 10)]))
        result = self.piston().match_gates([self.template.template_id], 0)
        self.assertEqual(len(result.inserted_ids), 1)

    def test_flipped_stamp(self):
        """Test a flipped stamp is found flipped."""
        flipped = self.pattern[:, ::-1]
        self.images.set_image(0, stamped_image(flipped, [(50, 40)]))
        result = self.piston(orientations=OrientationFilter.ANY).match_gates([self.template], 0)
        self.assertEqual(len(result.matches), 1)
        self.assertEqual(result.matches[0].orientation, Orientation.FLIPPED_LEFT_RIGHT)

    def test_skip_existing(self):
        """Test a second run skips placed gates."""
        self.images.set_image(0, stamped_image(self.pattern, [(37, 23)]))
        piston = self.piston()
        piston.match_gates([self.template], 0)
        second = piston.match_gates([self.template], 0)
        self.assertEqual(second.inserted_ids, [])
        self.assertEqual(len(self.model.objects(object_type=ObjectType.GATE)), 1)

    def test_search_area(self):
        """Test matching inside a search area."""
        self.images.set_image(0, stamped_image(self.pattern, [(5, 5), (70, 50)]))
        result = self.piston().match_gates([self.template], 0,
                                           search_area=BoundingBox(50, 30, 100, 80))
        self.assertEqual([(m.x, m.y) for m in result.matches], [(70, 50)])

    def test_max_matches(self):
        """Test the match limit."""
        self.images.set_image(0, stamped_image(self.pattern, [(5, 5), (70, 50)]))
        result = self.piston(max_matches=1).match_gates([self.template], 0)
        self.assertEqual(len(result.inserted_ids), 1)

    def test_grid_rows(self):
        """Test row snapping and naming."""
        self.images.set_image(0, stamped_image(self.pattern, [(10, 20), (40, 22), (70, 20)]))
        result = self.piston(match_type=MatchType.GRID_ROWS).match_gates([self.template], 0)

        gates = sorted((self.model.get(oid) for oid in result.inserted_ids), key=lambda g: g.x)
        self.assertEqual([g.name for g in gates], ['row1.1', 'row1.2', 'row1.3'])
        self.assertEqual({g.y for g in gates}, {21.0})

    def test_progress_reported(self):
        """Test progress phases and events."""
        self.images.set_image(0, stamped_image(self.pattern, [(37, 23)]))
        updates, events = [], []
        self.model.events.subscribe(events.append, kinds={EventKind.MATCH_PROGRESS})
        self.piston().match_gates([self.template], 0, progress_callback=updates.append)

        self.assertEqual(updates[0].phase, MatchPhase.PREPARE)
        self.assertEqual(updates[-1].phase, MatchPhase.DONE)
        self.assertEqual(updates[-1].fraction, 1.0)
        fractions = [u.fraction for u in updates]
        self.assertEqual(fractions, sorted(fractions))
        self.assertEqual(len(events), len(updates))

    def test_failing_callback_ignored(self):
        """Test a raising progress callback is ignored."""
        self.images.set_image(0, stamped_image(self.pattern, [(37, 23)]))

        def broken(progress):
            raise RuntimeError("ui gone")

        result = self.piston().match_gates([self.template], 0, progress_callback=broken)
        self.assertEqual(len(result.inserted_ids), 1)


class TestCoarseToFine(GateMatchFixture):
    """Test the downscaled scan followed by full-scale refinement."""

    def setUp(self):
        super().setUp()
        self.smooth = smooth_pattern()
        self.smooth_template = GateTemplate(name='SMOOTH', width=24, height=24,
                                            images={LayerType.LOGIC: self.smooth})
        self.model.add_template(self.smooth_template)

    def coarse_piston(self, **overrides):
        return self.piston(scale_down=2, max_step_size=3, **overrides)

    def test_smooth_stamp_found_off_grid(self):
        """Test a stamp between grid points is refined to its position."""
        self.images.set_image(0, stamped_image(self.smooth, [(53, 37)]))
        result = self.coarse_piston().match_gates([self.smooth_template], 0)

        self.assertEqual(len(result.matches), 1)
        match = result.matches[0]
        self.assertLessEqual(abs(match.x - 53), 1)
        self.assertLessEqual(abs(match.y - 37), 1)
        self.assertGreater(match.score, 0.9)

    def test_sub_pixel_stamp(self):
        """Test a stamp blended over two positions lands on one of them."""
        left = stamped_image(self.smooth, [(40, 30)])
        right = stamped_image(self.smooth, [(41, 30)])
        self.images.set_image(0, (left + right) / 2)
        result = self.coarse_piston().match_gates([self.smooth_template], 0)

        self.assertEqual(len(result.matches), 1)
        match = result.matches[0]
        self.assertIn(match.x, (40, 41))
        self.assertLessEqual(abs(match.y - 30), 1)
        self.assertGreater(match.score, 0.9)

    def test_worker_count_does_not_change_matches(self):
        """Test one worker and four workers accept the same matches."""
        image = stamped_image(self.smooth, [(6, 6), (53, 37), (18, 48)])
        found = []
        for workers in (1, 4):
            model = LogicModel()
            model.add_layer(LayerType.LOGIC, 100, 80)
            template = GateTemplate(name='SMOOTH', width=24, height=24,
                                    images={LayerType.LOGIC: self.smooth})
            model.add_template(template)
            piston = MatchingPiston(model, ArrayImageProvider({0: image}),
                                    exact_config(scale_down=2, max_step_size=3,
                                                 max_workers=workers))
            result = piston.match_gates([template], 0)
            found.append([(m.x, m.y, m.orientation, m.score) for m in result.matches])

        self.assertEqual(len(found[0]), 3)
        self.assertEqual(found[0], found[1])


class TestGridPlacementBounds(unittest.TestCase):
    """Test grid snapping near the layer edge."""

    def setUp(self):
        self.model = LogicModel()
        self.model.add_layer(LayerType.LOGIC, 100, 40)
        self.small = noise_pattern(10, seed=1)
        self.tall = np.random.RandomState(2).randint(0, 256, (20, 10)).astype(np.float64)
        self.small_template = GateTemplate(name='A', width=10, height=10,
                                           images={LayerType.LOGIC: self.small})
        self.tall_template = GateTemplate(name='B', width=10, height=20,
                                          images={LayerType.LOGIC: self.tall})
        self.model.add_template(self.small_template)
        self.model.add_template(self.tall_template)

        image = np.full((40, 100), BACKGROUND)
        image[24:34, 5:15] = self.small
        image[20:40, 40:50] = self.tall
        self.images = ArrayImageProvider({0: image})

    def test_snapped_row_stays_inside_layer(self):
        """Test a tall gate on the bottom edge is not snapped past it."""
        piston = MatchingPiston(self.model, self.images,
                                exact_config(match_type=MatchType.GRID_ROWS))
        result = piston.match_gates([self.small_template, self.tall_template], 0)

        gates = sorted((self.model.get(oid) for oid in result.inserted_ids),
                       key=lambda g: g.x)
        self.assertEqual([g.name for g in gates], ['row1.1', 'row1.2'])
        self.assertEqual([(g.x, g.y) for g in gates], [(5.0, 22.0), (40.0, 20.0)])
        bounds = self.model.get_layer(0).bounds
        for gate in gates:
            self.assertTrue(bounds.contains_box(gate.bounding_box()))

    def test_unfit_objects_dropped_before_insert(self):
        """Test objects outside the layer are dropped and the rest inserted."""
        piston = MatchingPiston(self.model, self.images, exact_config())
        inside = TemplateMatch(template_id=0, x=10, y=10, width=7, height=7, score=0.9)
        outside = TemplateMatch(template_id=0, x=127, y=10, width=7, height=7, score=0.9)
        outcome = _SearchOutcome(matches=[inside, outside], evaluated=0, cancelled=False)

        inserted = piston._insert_all(outcome, [
            (inside, Via(layer=0, x=13.5, y=13.5, diameter=7)),
            (outside, Via(layer=0, x=130.5, y=13.5, diameter=7)),
        ])
        self.assertEqual(len(inserted), 1)
        self.assertEqual(outcome.matches, [inside])
        self.assertEqual(inside.object_id, inserted[0])
        self.assertEqual(len(self.model), 1)


class TestCancellation(GateMatchFixture):
    """Test cooperative cancellation."""

    def test_cancel_from_callback(self):
        """Test cancelling from the progress callback."""
        self.images.set_image(0, stamped_image(self.pattern, [(37, 23)]))
        piston = self.piston()
        result = piston.match_gates([self.template], 0,
                                    progress_callback=lambda p: piston.cancel())
        self.assertEqual(result.status, MatchStatus.CANCELLED)
        self.assertTrue(result.cancelled)
        self.assertEqual(result.inserted_ids, [])
        self.assertEqual(self.model.objects(object_type=ObjectType.GATE), [])

    def test_next_run_clears_cancel(self):
        """Test a new run clears the cancel flag."""
        self.images.set_image(0, stamped_image(self.pattern, [(37, 23)]))
        piston = self.piston()
        piston.cancel()
        result = piston.match_gates([self.template], 0)
        self.assertEqual(result.status, MatchStatus.COMPLETE)
        self.assertFalse(piston.cancel_requested)


class TestValidation(GateMatchFixture):
    """Test failures before any insert."""

    def test_no_templates(self):
        """Test matching without templates."""
        self.images.set_image(0, stamped_image(self.pattern, []))
        with self.assertRaises(InvalidOperationError):
            self.piston().match_gates([], 0)

    def test_missing_layer_image(self):
        """Test matching without a layer image."""
        with self.assertRaises(InvalidOperationError):
            self.piston().match_gates([self.template], 0)

    def test_template_without_image(self):
        """Test a template without an image for the layer."""
        self.images.set_image(0, stamped_image(self.pattern, []))
        bare = GateTemplate(name='BARE', width=16, height=16)
        self.model.add_template(bare)
        with self.assertRaises(InvalidOperationError):
            self.piston().match_gates([bare], 0)

    def test_flat_template(self):
        """Test a template without contrast."""
        self.images.set_image(0, stamped_image(self.pattern, []))
        flat = GateTemplate(name='FLAT', width=16, height=16,
                            images={LayerType.LOGIC: np.full((16, 16), 9.0)})
        self.model.add_template(flat)
        with self.assertRaises(InvalidOperationError):
            self.piston().match_gates([flat], 0)

    def test_template_larger_than_area(self):
        """Test a template larger than the search area."""
        self.images.set_image(0, stamped_image(self.pattern, []))
        with self.assertRaises(InvalidGeometryError):
            self.piston().match_gates([self.template], 0,
                                      search_area=BoundingBox(0, 0, 8, 8))
        self.assertEqual(len(self.model), 0)


class TestViaMatching(unittest.TestCase):
    """Test via detection with the synthetic disc profile."""

    def setUp(self):
        self.model = LogicModel()
        self.model.add_layer(LayerType.METAL, 80, 80)
        yy, xx = np.mgrid[0:80, 0:80]
        image = np.zeros((80, 80))
        for cx, cy in [(20, 20), (50, 40)]:
            image[np.hypot(xx - cx, yy - cy) <= 3.5] = 255.0
        self.images = ArrayImageProvider({0: image})

    def test_discs_found(self):
        """Test bright discs become vias."""
        piston = MatchingPiston(self.model, self.images, exact_config())
        result = piston.match_vias(0, diameter=7)

        vias = sorted((self.model.get(oid) for oid in result.inserted_ids),
                      key=lambda v: v.x)
        self.assertEqual(len(vias), 2)
        for via, (cx, cy) in zip(vias, [(20.5, 20.5), (50.5, 40.5)]):
            self.assertLessEqual(abs(via.x - cx), 1)
            self.assertLessEqual(abs(via.y - cy), 1)
            self.assertEqual(via.diameter, 7)

    def test_invalid_diameter(self):
        """Test a non-positive via diameter."""
        piston = MatchingPiston(self.model, self.images, exact_config())
        with self.assertRaises(InvalidGeometryError):
            piston.match_vias(0, diameter=0)


class TestWireMatching(unittest.TestCase):
    """Test straight wire runs."""

    def setUp(self):
        self.model = LogicModel()
        self.model.add_layer(LayerType.METAL, 120, 60)
        image = np.zeros((60, 120))
        image[28:33, 20:100] = 255.0           # 5 px tall horizontal run
        self.images = ArrayImageProvider({0: image})

    def test_horizontal_run_merged(self):
        """Test a horizontal run becomes one wire."""
        piston = MatchingPiston(self.model, self.images, exact_config(max_step_size=2))
        result = piston.match_wires(0, diameter=5)

        self.assertEqual(len(result.inserted_ids), 1)
        wire = self.model.get(result.inserted_ids[0])
        (x0, y0), (x1, y1) = wire.points
        self.assertEqual(y0, y1)
        self.assertAlmostEqual(y0, 30.5)
        self.assertEqual(x0, 20)
        self.assertGreater(x1, 70)
        self.assertLessEqual(x1, 100)

    def test_bar_profile_shape(self):
        """Test the wire bar profile."""
        bar = MatchingPiston._wire_profile(5)
        self.assertEqual(bar.shape, (9, 27))
        self.assertEqual(int((bar[:, 0] > 0).sum()), 5)


if __name__ == '__main__':
    unittest.main()
