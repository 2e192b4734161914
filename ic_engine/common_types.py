"""
IC Engine - Common Geometry Types
=================================

Shared geometry used by the logic model, net extraction and matching.

Every logic model object exposes its geometry as one of three shapes:
- RectShape     : axis-aligned rectangle (gates, annotations)
- CircleShape   : centre + diameter (vias, gate ports, emarkers)
- PolylineShape : chain of segments with a conductor diameter (wires)

Distances are measured between conductor EDGES, so a wire of diameter 4
whose centre line passes 3px from a point is 1px away from it.
"""

import math
from dataclasses import dataclass, field
from typing import Any, List, Tuple

Point = Tuple[float, float]


def to_point(pos: Any) -> Point:
    """
    Extract an (x, y) tuple from any point format.

    Handles tuples/lists, dicts with 'x'/'y' keys and objects with
    .x/.y attributes.
    """
    if pos is None:
        raise TypeError("Cannot get coordinates from None")

    if isinstance(pos, (list, tuple)) and len(pos) >= 2:
        return (float(pos[0]), float(pos[1]))

    if isinstance(pos, dict):
        return (float(pos.get('x', 0.0)), float(pos.get('y', 0.0)))

    if hasattr(pos, 'x') and hasattr(pos, 'y'):
        return (float(pos.x), float(pos.y))

    raise TypeError(f"Cannot extract coordinates from {type(pos).__name__}: {pos}")


# =============================================================================
# BOUNDING BOX
# =============================================================================

@dataclass
class BoundingBox:
    """Axis-aligned bounding box in pixel coordinates."""
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def center(self) -> Point:
        return ((self.min_x + self.max_x) / 2, (self.min_y + self.max_y) / 2)

    def intersects(self, other: 'BoundingBox') -> bool:
        """Check if two bounding boxes overlap (touching counts)."""
        return not (self.max_x < other.min_x or self.min_x > other.max_x or
                    self.max_y < other.min_y or self.min_y > other.max_y)

    def overlaps(self, other: 'BoundingBox') -> bool:
        """Check for a strictly positive overlap area."""
        return (min(self.max_x, other.max_x) > max(self.min_x, other.min_x) and
                min(self.max_y, other.max_y) > max(self.min_y, other.min_y))

    def contains_point(self, x: float, y: float) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y

    def contains_box(self, other: 'BoundingBox') -> bool:
        return (self.min_x <= other.min_x and self.min_y <= other.min_y and
                other.max_x <= self.max_x and other.max_y <= self.max_y)

    def expand(self, margin: float) -> 'BoundingBox':
        """Return expanded bounding box"""
        return BoundingBox(
            self.min_x - margin,
            self.min_y - margin,
            self.max_x + margin,
            self.max_y + margin
        )

    def translate(self, dx: float, dy: float) -> 'BoundingBox':
        return BoundingBox(self.min_x + dx, self.min_y + dy,
                           self.max_x + dx, self.max_y + dy)

    def union(self, other: 'BoundingBox') -> 'BoundingBox':
        return BoundingBox(
            min(self.min_x, other.min_x),
            min(self.min_y, other.min_y),
            max(self.max_x, other.max_x),
            max(self.max_y, other.max_y)
        )

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return (self.min_x, self.min_y, self.max_x, self.max_y)

    @staticmethod
    def from_points(points: List[Point], margin: float = 0.0) -> 'BoundingBox':
        """Create bounding box around points with optional margin"""
        xs = [p[0] for p in points]
        ys = [p[1] for p in points]
        return BoundingBox(min(xs) - margin, min(ys) - margin,
                           max(xs) + margin, max(ys) + margin)

    @staticmethod
    def from_center(cx: float, cy: float, width: float, height: float) -> 'BoundingBox':
        return BoundingBox(cx - width / 2, cy - height / 2,
                           cx + width / 2, cy + height / 2)


# =============================================================================
# PRIMITIVE DISTANCES
# =============================================================================

def point_segment_distance(px: float, py: float, a: Point, b: Point) -> float:
    """Shortest distance from point (px, py) to segment a-b."""
    ax, ay = a
    bx, by = b
    dx = bx - ax
    dy = by - ay
    length_sq = dx * dx + dy * dy
    if length_sq == 0:
        return math.hypot(px - ax, py - ay)
    t = ((px - ax) * dx + (py - ay) * dy) / length_sq
    t = max(0.0, min(1.0, t))
    return math.hypot(px - (ax + t * dx), py - (ay + t * dy))


def _orientation(p: Point, q: Point, r: Point) -> int:
    val = (q[1] - p[1]) * (r[0] - q[0]) - (q[0] - p[0]) * (r[1] - q[1])
    if abs(val) < 1e-12:
        return 0
    return 1 if val > 0 else 2


def _on_segment(p: Point, q: Point, r: Point) -> bool:
    return (min(p[0], r[0]) <= q[0] <= max(p[0], r[0]) and
            min(p[1], r[1]) <= q[1] <= max(p[1], r[1]))


def segments_intersect(p1: Point, p2: Point, q1: Point, q2: Point) -> bool:
    """Check whether segments p1-p2 and q1-q2 share at least one point."""
    o1 = _orientation(p1, p2, q1)
    o2 = _orientation(p1, p2, q2)
    o3 = _orientation(q1, q2, p1)
    o4 = _orientation(q1, q2, p2)

    if o1 != o2 and o3 != o4:
        return True

    # Collinear special cases
    if o1 == 0 and _on_segment(p1, q1, p2):
        return True
    if o2 == 0 and _on_segment(p1, q2, p2):
        return True
    if o3 == 0 and _on_segment(q1, p1, q2):
        return True
    if o4 == 0 and _on_segment(q1, p2, q2):
        return True
    return False


def segment_segment_distance(p1: Point, p2: Point, q1: Point, q2: Point) -> float:
    """Shortest distance between two segments (0 if they intersect)."""
    if segments_intersect(p1, p2, q1, q2):
        return 0.0
    return min(
        point_segment_distance(p1[0], p1[1], q1, q2),
        point_segment_distance(p2[0], p2[1], q1, q2),
        point_segment_distance(q1[0], q1[1], p1, p2),
        point_segment_distance(q2[0], q2[1], p1, p2),
    )


def _rect_edges(box: BoundingBox) -> List[Tuple[Point, Point]]:
    tl = (box.min_x, box.min_y)
    tr = (box.max_x, box.min_y)
    br = (box.max_x, box.max_y)
    bl = (box.min_x, box.max_y)
    return [(tl, tr), (tr, br), (br, bl), (bl, tl)]


def segment_rect_distance(a: Point, b: Point, box: BoundingBox) -> float:
    """Shortest distance between a segment and a filled rectangle."""
    if box.contains_point(a[0], a[1]) or box.contains_point(b[0], b[1]):
        return 0.0
    return min(segment_segment_distance(a, b, e1, e2) for e1, e2 in _rect_edges(box))


def rect_rect_distance(a: BoundingBox, b: BoundingBox) -> float:
    dx = max(0.0, b.min_x - a.max_x, a.min_x - b.max_x)
    dy = max(0.0, b.min_y - a.max_y, a.min_y - b.max_y)
    return math.hypot(dx, dy)


# =============================================================================
# SHAPES
# =============================================================================

@dataclass
class RectShape:
    """Filled axis-aligned rectangle."""
    box: BoundingBox

    kind = 'rect'

    def bounding_box(self) -> BoundingBox:
        return self.box

    def distance_to_point(self, x: float, y: float) -> float:
        dx = max(self.box.min_x - x, 0.0, x - self.box.max_x)
        dy = max(self.box.min_y - y, 0.0, y - self.box.max_y)
        return math.hypot(dx, dy)


@dataclass
class CircleShape:
    """Filled circle."""
    x: float
    y: float
    diameter: float

    kind = 'circle'

    @property
    def radius(self) -> float:
        return self.diameter / 2

    def bounding_box(self) -> BoundingBox:
        return BoundingBox.from_center(self.x, self.y, self.diameter, self.diameter)

    def distance_to_point(self, x: float, y: float) -> float:
        return max(0.0, math.hypot(x - self.x, y - self.y) - self.radius)


@dataclass
class PolylineShape:
    """Chain of segments with a conductor diameter."""
    points: List[Point] = field(default_factory=list)
    diameter: float = 0.0

    kind = 'polyline'

    @property
    def radius(self) -> float:
        return self.diameter / 2

    def segments(self) -> List[Tuple[Point, Point]]:
        if len(self.points) == 1:
            return [(self.points[0], self.points[0])]
        return [(self.points[i], self.points[i + 1]) for i in range(len(self.points) - 1)]

    def bounding_box(self) -> BoundingBox:
        return BoundingBox.from_points(self.points, margin=self.radius)

    def distance_to_point(self, x: float, y: float) -> float:
        core = min(point_segment_distance(x, y, a, b) for a, b in self.segments())
        return max(0.0, core - self.radius)


def _core(shape) -> Tuple[str, Any, float]:
    """Reduce a shape to its core (segments or rectangle) plus a radius."""
    if isinstance(shape, RectShape):
        return ('rect', shape.box, 0.0)
    if isinstance(shape, CircleShape):
        p = (shape.x, shape.y)
        return ('segments', [(p, p)], shape.radius)
    if isinstance(shape, PolylineShape):
        return ('segments', shape.segments(), shape.radius)
    raise TypeError(f"Unsupported shape: {type(shape).__name__}")


def shape_distance(a, b) -> float:
    """
    Shortest edge-to-edge distance between two shapes.

    Returns 0 when the shapes touch or overlap.
    """
    kind_a, core_a, radius_a = _core(a)
    kind_b, core_b, radius_b = _core(b)

    if kind_a == 'rect' and kind_b == 'rect':
        core = rect_rect_distance(core_a, core_b)
    elif kind_a == 'rect':
        core = min(segment_rect_distance(p, q, core_a) for p, q in core_b)
    elif kind_b == 'rect':
        core = min(segment_rect_distance(p, q, core_b) for p, q in core_a)
    else:
        core = min(
            segment_segment_distance(p1, p2, q1, q2)
            for p1, p2 in core_a
            for q1, q2 in core_b
        )

    return max(0.0, core - radius_a - radius_b)


def shape_intersects_box(shape, box: BoundingBox) -> bool:
    """Exact test: does the shape touch the rectangle?"""
    if not shape.bounding_box().intersects(box):
        return False
    return shape_distance(shape, RectShape(box)) <= 0.0
