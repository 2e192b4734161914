#!/usr/bin/env python3
"""
MatchingPiston - Template Matching on Layer Images

Finds gate templates, vias and straight wire runs in the layer images and
inserts them into the LogicModel.

PIPELINE:
1. VALIDATE     - fail fast, nothing is inserted on error
2. COARSE SCAN  - image and oriented templates are box-filter downscaled by
                  scale_down; NCC is evaluated on a step grid. Grid rows are
                  spread over a thread pool (the kernels release the GIL)
3. HILL CLIMB   - every coarse hit above threshold_hill_climbing is refined
                  at full scale by greedy 8-neighbour ascent
4. ACCEPT       - refined score > threshold_detection; candidates sorted by
                  (y, x, template order, orientation), then overlapping
                  footprints are suppressed, best score first
5. PLACE        - accepted matches become Gates / Vias / Wires, inserted from
                  the calling thread

Cancellation is cooperative: cancel() sets a flag that is polled between grid
rows and hill-climb iterations. A cancelled run still inserts the matches that
were completely refined and returns MatchStatus.CANCELLED.

Research:
- Lewis, "Fast Normalized Cross-Correlation" (integral image denominators)
- Coarse-to-fine search with local refinement
"""

import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
from scipy import ndimage

from .common_types import BoundingBox, shape_intersects_box
from .correlation_accel import JITCorrelator, PreparedTemplate, box_downscale
from .errors import InvalidGeometryError, InvalidOperationError, NotFoundError
from .events import EventKind
from .image_provider import ImageProvider, pixel_window, to_grayscale
from .logic_model import LogicModel
from .logic_types import (
    Gate, GateTemplate, LayerType, LogicModelObject, ObjectType, Orientation,
    Via, ViaDirection, Wire, orient_image
)


# =============================================================================
# ENUMS
# =============================================================================

class OrientationFilter(Enum):
    """Which template orientations are searched"""
    ANY = 'any'
    NORMAL = 'normal'
    FLIP_LEFT_RIGHT = 'flip-left-right'
    FLIP_UP_DOWN = 'flip-up-down'
    FLIP_BOTH = 'flip-both'

    def orientations(self) -> List[Orientation]:
        if self == OrientationFilter.ANY:
            return list(Orientation)
        return [{
            OrientationFilter.NORMAL: Orientation.NORMAL,
            OrientationFilter.FLIP_LEFT_RIGHT: Orientation.FLIPPED_LEFT_RIGHT,
            OrientationFilter.FLIP_UP_DOWN: Orientation.FLIPPED_UP_DOWN,
            OrientationFilter.FLIP_BOTH: Orientation.FLIPPED_BOTH,
        }[self]]


class MatchType(Enum):
    """Placement mode for accepted gate matches"""
    NORMAL = 'normal'
    GRID_ROWS = 'grid-rows'         # Same row -> common y, numbered along x
    GRID_COLUMNS = 'grid-columns'   # Same column -> common x, numbered along y


class MatchStatus(Enum):
    COMPLETE = 'complete'
    CANCELLED = 'cancelled'


class MatchPhase(Enum):
    PREPARE = 'prepare'
    SCAN = 'scan'
    REFINE = 'refine'
    PLACE = 'place'
    DONE = 'done'


ORIENTATION_ORDER = {o: i for i, o in enumerate(Orientation)}

NEIGHBOURS = [(-1, -1), (0, -1), (1, -1), (-1, 0), (1, 0), (-1, 1), (0, 1), (1, 1)]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class MatchingConfig:
    """Configuration for template matching"""
    # Coarse scan
    scale_down: int = 1                 # Box-filter downscale factor (>= 1)
    max_step_size: int = 2              # Grid step in downscaled pixels

    # Thresholds (NCC scores in [-1, 1])
    threshold_hill_climbing: float = 0.4
    threshold_detection: float = 0.7

    orientations: OrientationFilter = OrientationFilter.ANY
    match_type: MatchType = MatchType.NORMAL

    # Refinement budget per candidate
    max_hill_climb_steps: int = 100

    # Thread pool size
    max_workers: int = field(default_factory=lambda: min(os.cpu_count() or 4, 8))

    # Ignore positions overlapping objects of the same kind already placed
    skip_existing: bool = True

    # Templates flatter than this (pixel std) are rejected
    min_contrast: float = 1.0

    # 0 = keep all accepted matches
    max_matches: int = 0

    # Wire matching preprocessing (0 = off)
    wire_sigma: float = 0.0
    wire_median_size: int = 0

    verbose: bool = False


@dataclass
class MatchProgress:
    """Progress update structure."""
    phase: MatchPhase
    fraction: float = 0.0
    eta_s: float = 0.0
    message: str = ''
    matches_found: int = 0
    timestamp: float = 0.0

    def to_dict(self) -> Dict:
        return {
            'phase': self.phase.value,
            'fraction': self.fraction,
            'eta_s': self.eta_s,
            'message': self.message,
            'matches_found': self.matches_found,
            'timestamp': self.timestamp,
        }


@dataclass
class TemplateMatch:
    """One accepted match in layer coordinates (top-left origin)."""
    template_id: int
    x: int
    y: int
    width: int
    height: int
    orientation: Orientation = Orientation.NORMAL
    score: float = 0.0
    object_id: int = 0
    order: int = 0                      # Index of the pattern in the request

    def footprint(self) -> BoundingBox:
        return BoundingBox(self.x, self.y, self.x + self.width, self.y + self.height)


@dataclass
class MatchingResult:
    """Result from a matching run"""
    status: MatchStatus = MatchStatus.COMPLETE
    kind: str = 'gate'
    matches: List[TemplateMatch] = field(default_factory=list)
    inserted_ids: List[int] = field(default_factory=list)
    candidates_evaluated: int = 0
    elapsed_s: float = 0.0

    @property
    def cancelled(self) -> bool:
        return self.status == MatchStatus.CANCELLED

    def summary(self) -> str:
        return (f"{self.kind} matching {self.status.value}: {len(self.matches)} matches, "
                f"{len(self.inserted_ids)} objects inserted, "
                f"{self.candidates_evaluated} positions evaluated in {self.elapsed_s:.2f}s")


@dataclass
class _Pattern:
    template_id: int
    order: int
    orientation: Orientation
    full: PreparedTemplate
    coarse: Optional[PreparedTemplate] = None


@dataclass
class _SearchOutcome:
    matches: List[TemplateMatch]
    evaluated: int
    cancelled: bool


# =============================================================================
# CANDIDATE SELECTION
# =============================================================================

def sort_candidates(candidates: Iterable[TemplateMatch]) -> List[TemplateMatch]:
    """Deterministic order: (y, x, template order, orientation)."""
    return sorted(candidates, key=lambda m: (m.y, m.x, m.order,
                                             ORIENTATION_ORDER[m.orientation]))


def suppress_overlaps(candidates: Iterable[TemplateMatch]) -> List[TemplateMatch]:
    """
    Non-maximum suppression.

    Candidates are visited by descending score (stable with respect to
    sort_candidates order); a candidate whose footprint overlaps an already
    kept one is dropped.
    """
    ordered = sorted(sort_candidates(candidates), key=lambda m: -m.score)
    kept: List[TemplateMatch] = []
    for cand in ordered:
        box = cand.footprint()
        if any(box.overlaps(k.footprint()) for k in kept):
            continue
        kept.append(cand)
    return kept


# =============================================================================
# PISTON
# =============================================================================

class MatchingPiston:
    """
    Normalized cross correlation search over layer images.
    """

    def __init__(self, model: LogicModel, image_provider: ImageProvider,
                 config: Optional[MatchingConfig] = None):
        self.model = model
        self.images = image_provider
        self.config = config or MatchingConfig()
        self._cancel = threading.Event()
        self._progress_callback: Optional[Callable[[MatchProgress], None]] = None
        self._start_time = 0.0

    def cancel(self):
        """Request cancellation of the running search."""
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def match_gates(self, templates: Iterable[Union[GateTemplate, int]], layer: int,
                    search_area: Optional[BoundingBox] = None,
                    progress_callback: Optional[Callable[[MatchProgress], None]] = None
                    ) -> MatchingResult:
        """Find template instances on a layer and insert them as Gates."""
        self._begin(progress_callback)
        templates = [self.model.get_template(t) if isinstance(t, int) else t
                     for t in templates]
        if not templates:
            raise InvalidOperationError("No template selected for matching")
        layer_info = self.model.get_layer(layer)
        if self.model.settings.strict_gate_layers and \
                layer_info.layer_type not in (LayerType.LOGIC, LayerType.UNDEFINED):
            raise InvalidOperationError(
                f"Gates cannot be placed on a {layer_info.layer_type.value} layer")
        for template in templates:
            if template.template_id not in {t.template_id for t in self.model.templates}:
                raise NotFoundError('template', template.template_id)

        patterns = []
        for order, template in enumerate(templates):
            image = template.image_for(layer_info.layer_type)
            if image is None:
                image = template.image_for(LayerType.UNDEFINED)
            if image is None:
                raise InvalidOperationError(
                    f"Template '{template.name}' has no image for "
                    f"{layer_info.layer_type.value} layers")
            gray = to_grayscale(image)
            if gray.std() < self.config.min_contrast:
                raise InvalidOperationError(f"Template '{template.name}' has no contrast")
            for orientation in self.config.orientations.orientations():
                patterns.append(_Pattern(
                    template_id=template.template_id, order=order,
                    orientation=orientation,
                    full=PreparedTemplate.from_image(orient_image(gray, orientation))))

        self._log(f"[MATCH] {len(templates)} templates, {len(patterns)} patterns "
                  f"on layer {layer}")
        outcome = self._search(patterns, layer, search_area, ObjectType.GATE)

        self._report(MatchPhase.PLACE, 0.95, f"Placing {len(outcome.matches)} gates",
                     len(outcome.matches))
        by_id = {t.template_id: t for t in templates}
        inserted = self._place_gates(outcome, layer, by_id)
        return self._finish('gate', outcome, inserted)

    def match_vias(self, layer: int, direction: ViaDirection = ViaDirection.UNDEFINED,
                   search_area: Optional[BoundingBox] = None,
                   diameter: Optional[float] = None,
                   progress_callback: Optional[Callable[[MatchProgress], None]] = None
                   ) -> MatchingResult:
        """
        Find vias on a layer.

        The via profile is the average image of vias of the same direction
        already placed on the layer; a synthetic bright disc is used when
        there are none.
        """
        self._begin(progress_callback)
        self.model.get_layer(layer)
        existing = [v for v in self.model.objects(layer=layer, object_type=ObjectType.VIA)
                    if v.direction == direction]
        if diameter is None:
            if existing:
                diameter = float(np.median([v.diameter for v in existing]))
            else:
                diameter = self.model.settings.default_via_diameter
        if diameter <= 0:
            raise InvalidGeometryError(f"Via diameter must be positive: {diameter}")

        profile = self._via_profile(layer, existing, diameter)
        pattern = _Pattern(template_id=0, order=0, orientation=Orientation.NORMAL,
                           full=PreparedTemplate.from_image(profile))
        outcome = self._search([pattern], layer, search_area, ObjectType.VIA)

        self._report(MatchPhase.PLACE, 0.95, f"Placing {len(outcome.matches)} vias",
                     len(outcome.matches))
        pending = []
        for match in sort_candidates(outcome.matches):
            cx = match.x + match.width / 2
            cy = match.y + match.height / 2
            pending.append((match, Via(layer=layer, x=cx, y=cy, diameter=diameter,
                                       direction=direction)))
        inserted = self._insert_all(outcome, pending)
        return self._finish('via', outcome, inserted)

    def match_wires(self, layer: int, search_area: Optional[BoundingBox] = None,
                    diameter: Optional[float] = None,
                    progress_callback: Optional[Callable[[MatchProgress], None]] = None
                    ) -> MatchingResult:
        """
        Find straight horizontal and vertical wire runs.

        A bar profile of the wire diameter is matched in both directions;
        consecutive hits along a row (column) merge into one Wire.
        """
        self._begin(progress_callback)
        self.model.get_layer(layer)
        if diameter is None:
            diameter = self.model.settings.default_wire_diameter
        if diameter <= 0:
            raise InvalidGeometryError(f"Wire diameter must be positive: {diameter}")

        bar = self._wire_profile(diameter)
        patterns = [
            _Pattern(template_id=0, order=0, orientation=Orientation.NORMAL,
                     full=PreparedTemplate.from_image(bar)),
            _Pattern(template_id=1, order=1, orientation=Orientation.NORMAL,
                     full=PreparedTemplate.from_image(bar.T.copy())),
        ]
        outcome = self._search(patterns, layer, search_area, ObjectType.WIRE,
                               preprocess=self._preprocess_wires)

        self._report(MatchPhase.PLACE, 0.95, "Merging wire segments", len(outcome.matches))
        pending = [(None, Wire(layer=layer, points=points, diameter=diameter))
                   for points in self._merge_wire_hits(outcome.matches)]
        inserted = self._insert_all(outcome, pending)
        return self._finish('wire', outcome, inserted)

    # =========================================================================
    # SEARCH
    # =========================================================================

    def _search(self, patterns: List[_Pattern], layer: int,
                search_area: Optional[BoundingBox], object_type: ObjectType,
                preprocess: Optional[Callable[[np.ndarray], np.ndarray]] = None
                ) -> _SearchOutcome:
        config = self.config
        bounds = self.model.get_layer(layer).bounds
        area = search_area if search_area is not None else bounds
        if not bounds.intersects(area):
            raise InvalidGeometryError("Search area lies outside the layer")

        try:
            tile = self.images.get_tile(layer, area)
            img_w, img_h = self.images.layer_size(layer)
        except NotFoundError as e:
            raise InvalidOperationError(f"No image loaded for layer {layer}") from e
        x0, y0, _, _ = pixel_window(area, img_w, img_h)
        for pattern in patterns:
            if pattern.full.width > tile.shape[1] or pattern.full.height > tile.shape[0]:
                raise InvalidGeometryError(
                    f"Template {pattern.full.width}x{pattern.full.height} is larger than "
                    f"the search area {tile.shape[1]}x{tile.shape[0]}")
        if preprocess is not None:
            tile = preprocess(tile)

        scale = max(1, min([int(config.scale_down)] +
                           [min(p.full.width, p.full.height) for p in patterns]))
        step = max(1, int(config.max_step_size))
        full = JITCorrelator(tile)
        coarse = JITCorrelator(box_downscale(tile, scale))
        for pattern in patterns:
            pattern.coarse = PreparedTemplate.from_image(
                box_downscale(pattern.full.centered, scale))

        self._report(MatchPhase.PREPARE, 0.0,
                     f"Searching {tile.shape[1]}x{tile.shape[0]} px, scale 1/{scale}")

        hits, evaluated, cancelled = self._coarse_scan(patterns, coarse, step)
        refined, climbed, cancelled = self._refine(patterns, hits, full, scale, cancelled)
        evaluated += climbed

        accepted = [m for m in refined if m.score > config.threshold_detection]
        for match in accepted:
            match.x += x0
            match.y += y0
        if config.skip_existing:
            accepted = [m for m in accepted
                        if not self._overlaps_existing(layer, m.footprint(), object_type)]
        matches = suppress_overlaps(accepted)
        if config.max_matches > 0:
            matches = matches[:config.max_matches]

        self._log(f"[MATCH] {len(hits)} coarse hits, {len(refined)} refined, "
                  f"{len(matches)} accepted")
        return _SearchOutcome(matches=sort_candidates(matches), evaluated=evaluated,
                              cancelled=cancelled)

    def _scan_row(self, coarse: JITCorrelator, pattern_index: int, pattern: _Pattern,
                  y: int, xs: np.ndarray) -> Tuple[List[Tuple[int, int, int, float]], int]:
        """Runs on a worker thread; reads image data only."""
        if self._cancel.is_set():
            return [], 0
        scores = coarse.score_row(pattern.coarse, y, xs)
        threshold = self.config.threshold_hill_climbing
        hits = [(pattern_index, int(xs[i]), y, float(scores[i]))
                for i in np.nonzero(scores > threshold)[0]]
        return hits, len(xs)

    def _coarse_scan(self, patterns: List[_Pattern], coarse: JITCorrelator, step: int):
        tasks = []
        for index, pattern in enumerate(patterns):
            tmpl = pattern.coarse
            if tmpl.width > coarse.width or tmpl.height > coarse.height:
                continue
            xs = np.arange(0, coarse.width - tmpl.width + 1, step, dtype=np.int64)
            for y in range(0, coarse.height - tmpl.height + 1, step):
                tasks.append((index, pattern, y, xs))

        hits: List[Tuple[int, int, int, float]] = []
        evaluated = 0
        if self._cancel.is_set():
            return hits, evaluated, True

        cancelled = False
        done = 0
        with ThreadPoolExecutor(max_workers=max(1, self.config.max_workers)) as executor:
            futures = [executor.submit(self._scan_row, coarse, *task) for task in tasks]
            for future in as_completed(futures):
                row_hits, row_evaluated = future.result()
                hits.extend(row_hits)
                evaluated += row_evaluated
                done += 1
                if done % 16 == 0 or done == len(futures):
                    self._report(MatchPhase.SCAN, 0.7 * done / len(futures),
                                 f"Scanned {done}/{len(futures)} rows")
                if self._cancel.is_set():
                    cancelled = True
                    for pending in futures:
                        pending.cancel()
                    break

        hits.sort(key=lambda h: (h[0], h[2], h[1]))
        return hits, evaluated, cancelled

    def _refine(self, patterns: List[_Pattern], hits, full: JITCorrelator,
                scale: int, cancelled: bool):
        refined: Dict[Tuple[int, int, int], TemplateMatch] = {}
        evaluated = 0
        if cancelled:
            return [], evaluated, True

        for done, (index, cx, cy, _) in enumerate(hits):
            pattern = patterns[index]
            tmpl = pattern.full
            x = min(cx * scale, full.width - tmpl.width)
            y = min(cy * scale, full.height - tmpl.height)
            x, y, score, steps, interrupted = self._hill_climb(full, tmpl, x, y)
            evaluated += 1 + steps * len(NEIGHBOURS)
            if interrupted:
                cancelled = True
                break
            key = (index, x, y)
            if key not in refined:
                refined[key] = TemplateMatch(
                    template_id=pattern.template_id, x=x, y=y,
                    width=tmpl.width, height=tmpl.height,
                    orientation=pattern.orientation, score=score, order=pattern.order)
            if done % 32 == 0:
                self._report(MatchPhase.REFINE, 0.7 + 0.25 * done / max(1, len(hits)),
                             f"Refined {done}/{len(hits)} candidates", len(refined))

        return list(refined.values()), evaluated, cancelled

    def _hill_climb(self, corr: JITCorrelator, tmpl: PreparedTemplate, x: int, y: int):
        """Greedy 8-neighbour ascent; stops at a local optimum or the step budget."""
        score = corr.score(tmpl, x, y)
        steps = 0
        while steps < self.config.max_hill_climb_steps:
            if self._cancel.is_set():
                return x, y, score, steps, True
            best_x, best_y, best = x, y, score
            for dx, dy in NEIGHBOURS:
                s = corr.score(tmpl, x + dx, y + dy)
                if s > best:
                    best_x, best_y, best = x + dx, y + dy, s
            steps += 1
            if (best_x, best_y) == (x, y):
                break
            x, y, score = best_x, best_y, best
        return x, y, score, steps, False

    def _overlaps_existing(self, layer: int, box: BoundingBox, object_type: ObjectType) -> bool:
        for obj in self.model.candidates(layer, box):
            if obj.object_type != object_type:
                continue
            if object_type == ObjectType.WIRE:
                if shape_intersects_box(obj.geometry(), box):
                    return True
            elif obj.bounding_box().overlaps(box):
                return True
        return False

    # =========================================================================
    # PLACEMENT
    # =========================================================================

    def _place_gates(self, outcome: _SearchOutcome, layer: int,
                     templates: Dict[int, GateTemplate]) -> List[int]:
        matches = outcome.matches
        names: Dict[int, str] = {}
        mode = self.config.match_type
        if mode != MatchType.NORMAL:
            names = self._snap_to_grid(matches, mode, self.model.get_layer(layer).bounds)

        pending = []
        for index, match in enumerate(matches):
            template = templates[match.template_id]
            gate = Gate(layer=layer, template_id=match.template_id,
                        x=float(match.x), y=float(match.y),
                        width=template.width, height=template.height,
                        orientation=match.orientation,
                        name=names.get(index, template.name))
            pending.append((match, gate))
        return self._insert_all(outcome, pending)

    def _insert_all(self, outcome: _SearchOutcome,
                    pending: List[Tuple[Optional[TemplateMatch], LogicModelObject]]
                    ) -> List[int]:
        """Validate every object first, then insert; unfit objects are dropped."""
        placeable = []
        rejected: List[TemplateMatch] = []
        for match, obj in pending:
            try:
                self.model.validate_geometry(obj)
            except InvalidGeometryError as e:
                self._log(f"[MATCH] Dropping {obj.type_name.lower()}: {e}")
                if match is not None:
                    rejected.append(match)
                continue
            placeable.append((match, obj))
        if rejected:
            outcome.matches = [m for m in outcome.matches
                               if all(m is not r for r in rejected)]

        inserted = []
        for match, obj in placeable:
            object_id = self.model.insert(obj)
            if match is not None:
                match.object_id = object_id
            inserted.append(object_id)
        return inserted

    @staticmethod
    def _snap_to_grid(matches: List[TemplateMatch], mode: MatchType,
                      bounds: BoundingBox) -> Dict[int, str]:
        """
        Align matches sharing a row (column) and name them along the axis.

        The common coordinate is clamped per match so every footprint stays
        inside bounds.

        Returns match index -> instance name.
        """
        rows = mode == MatchType.GRID_ROWS
        across = (lambda m: m.y) if rows else (lambda m: m.x)
        along = (lambda m: m.x) if rows else (lambda m: m.y)
        extent = (lambda m: m.height) if rows else (lambda m: m.width)

        order = sorted(range(len(matches)), key=lambda i: (across(matches[i]), along(matches[i])))
        groups: List[List[int]] = []
        for i in order:
            if groups and across(matches[i]) - across(matches[groups[-1][0]]) \
                    < extent(matches[groups[-1][0]]) / 2:
                groups[-1].append(i)
            else:
                groups.append([i])

        names = {}
        prefix = 'row' if rows else 'col'
        for group_index, group in enumerate(groups, start=1):
            common = int(round(float(np.mean([across(matches[i]) for i in group]))))
            group.sort(key=lambda i: along(matches[i]))
            for position, i in enumerate(group, start=1):
                match = matches[i]
                if rows:
                    match.y = int(max(bounds.min_y, min(common, bounds.max_y - match.height)))
                else:
                    match.x = int(max(bounds.min_x, min(common, bounds.max_x - match.width)))
                names[i] = f"{prefix}{group_index}.{position}"
        return names

    def _via_profile(self, layer: int, existing: List[Via], diameter: float) -> np.ndarray:
        size = int(np.ceil(diameter)) + 4
        if size % 2 == 0:
            size += 1

        crops = []
        for via in existing:
            x0 = int(round(via.x - size / 2))
            y0 = int(round(via.y - size / 2))
            crop = self.images.get_tile(layer, BoundingBox(x0, y0, x0 + size, y0 + size))
            if crop.shape == (size, size):
                crops.append(crop)
        if crops:
            self._log(f"[MATCH] Via profile from {len(crops)} placed vias")
            return np.mean(crops, axis=0)

        yy, xx = np.mgrid[0:size, 0:size]
        centre = size / 2 - 0.5
        disc = np.hypot(xx - centre, yy - centre) <= diameter / 2
        return disc.astype(np.float64) * 255.0

    @staticmethod
    def _wire_profile(diameter: float) -> np.ndarray:
        """Horizontal bar: a wire-wide bright stripe with dark margins."""
        height = int(np.ceil(diameter)) + 4
        length = 3 * height
        rows = np.arange(height) + 0.5
        stripe = np.abs(rows - height / 2) <= diameter / 2
        return np.repeat(stripe.astype(np.float64)[:, None] * 255.0, length, axis=1)

    def _preprocess_wires(self, tile: np.ndarray) -> np.ndarray:
        if self.config.wire_sigma > 0:
            tile = ndimage.gaussian_filter(tile, sigma=self.config.wire_sigma)
        if self.config.wire_median_size > 1:
            tile = ndimage.median_filter(tile, size=self.config.wire_median_size)
        return tile

    @staticmethod
    def _merge_wire_hits(matches: List[TemplateMatch]) -> List[List[Tuple[float, float]]]:
        """Chain consecutive bar hits into wire polylines."""
        wires = []
        for horizontal in (True, False):
            hits = [m for m in matches if (m.template_id == 0) == horizontal]
            if horizontal:
                hits.sort(key=lambda m: (m.y, m.x))
            else:
                hits.sort(key=lambda m: (m.x, m.y))

            run: List[TemplateMatch] = []
            for hit in hits + [None]:
                if run and hit is not None:
                    last = run[-1]
                    if horizontal:
                        same_line = abs(hit.y - last.y) <= last.height / 2
                        adjacent = hit.x <= last.x + last.width + last.height
                    else:
                        same_line = abs(hit.x - last.x) <= last.width / 2
                        adjacent = hit.y <= last.y + last.height + last.width
                    if same_line and adjacent:
                        run.append(hit)
                        continue
                if run:
                    first, last = run[0], run[-1]
                    if horizontal:
                        cy = float(np.mean([m.y for m in run])) + first.height / 2
                        wires.append([(float(first.x), cy), (float(last.x + last.width), cy)])
                    else:
                        cx = float(np.mean([m.x for m in run])) + first.width / 2
                        wires.append([(cx, float(first.y)), (cx, float(last.y + last.height))])
                run = [hit] if hit is not None else []
        return wires

    # =========================================================================
    # PROGRESS
    # =========================================================================

    def _begin(self, progress_callback):
        self._cancel.clear()
        self._progress_callback = progress_callback
        self._start_time = time.time()

    def _finish(self, kind: str, outcome: _SearchOutcome, inserted: List[int]) -> MatchingResult:
        result = MatchingResult(
            status=MatchStatus.CANCELLED if outcome.cancelled else MatchStatus.COMPLETE,
            kind=kind,
            matches=outcome.matches,
            inserted_ids=inserted,
            candidates_evaluated=outcome.evaluated,
            elapsed_s=time.time() - self._start_time,
        )
        self._report(MatchPhase.DONE, 1.0, result.summary(), len(result.matches))
        self._log(f"[MATCH] {result.summary()}")
        self._progress_callback = None
        return result

    def _report(self, phase: MatchPhase, fraction: float, message: str,
                matches_found: int = 0):
        elapsed = time.time() - self._start_time
        eta = elapsed / fraction * (1.0 - fraction) if fraction > 0 else 0.0
        progress = MatchProgress(phase=phase, fraction=fraction, eta_s=eta,
                                 message=message, matches_found=matches_found,
                                 timestamp=time.time())

        if self._progress_callback:
            try:
                self._progress_callback(progress)
            except Exception as e:
                self._log(f"[PROGRESS] Callback error: {e}")

        self.model.events.publish(EventKind.MATCH_PROGRESS, **progress.to_dict())

    def _log(self, message: str):
        """Log a message if verbose mode is enabled"""
        if self.config.verbose:
            print(message)
