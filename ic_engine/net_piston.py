"""
NetPiston - Electrical Net Extraction

Computes which connectable objects are electrically connected and stores
the result as Net objects in the LogicModel.

CONNECTION RULES:
1. Proximity  - two connectable objects on the same layer whose conductor
                edges are within lambda pixels
2. Via        - a via with direction UP (DOWN) reaches layer + 1 (layer - 1)
                and connects to every connectable object there that comes
                within the via radius of the via centre. UNDEFINED vias only
                take part in rule 1.
3. Forced     - explicit interconnect edges stored on the model

ALGORITHM:
- Union-find over the connectable objects
- Neighbours come from the per-layer spatial index (bbox + lambda), never
  all pairs
- Local re-extraction grows a closed region from the edited objects (their
  current nets, their connected neighbours, and so on), partitions only that
  region, then swaps the new nets in at once
- Net IDs stay stable: a new class reuses the ID of the old net it shares
  the most members with (ties go to the lowest ID)
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .common_types import shape_distance
from .errors import InvalidOperationError
from .logic_model import LogicModel
from .logic_types import LogicModelObject, Net, Via


@dataclass
class NetConfig:
    """Configuration for net extraction"""
    # Overrides ProjectSettings.lambda_px when set
    lambda_px: Optional[float] = None

    verbose: bool = False


@dataclass
class NetResult:
    """Result from a net extraction run"""
    success: bool = True
    scope: str = 'full'                 # 'full' or 'local'
    objects_considered: int = 0
    net_count: int = 0
    nets_created: List[int] = field(default_factory=list)
    nets_removed: List[int] = field(default_factory=list)
    nets_changed: List[int] = field(default_factory=list)
    open_object_ids: List[int] = field(default_factory=list)
    elapsed_s: float = 0.0

    @property
    def changed(self) -> bool:
        return bool(self.nets_created or self.nets_removed or self.nets_changed)

    def summary(self) -> str:
        return (f"{self.scope} extraction: {self.objects_considered} objects, "
                f"{self.net_count} nets (+{len(self.nets_created)} "
                f"-{len(self.nets_removed)} ~{len(self.nets_changed)}), "
                f"{len(self.open_object_ids)} open, {self.elapsed_s * 1000:.1f}ms")


class DisjointSet:
    """Union-find with path halving and union by size."""

    def __init__(self, items: Iterable[int] = ()):
        self._parent: Dict[int, int] = {}
        self._size: Dict[int, int] = {}
        for item in items:
            self.add(item)

    def add(self, item: int):
        if item not in self._parent:
            self._parent[item] = item
            self._size[item] = 1

    def __contains__(self, item: int) -> bool:
        return item in self._parent

    def find(self, item: int) -> int:
        parent = self._parent
        while parent[item] != item:
            parent[item] = parent[parent[item]]
            item = parent[item]
        return item

    def union(self, a: int, b: int) -> bool:
        """Merge the classes of a and b; False if already merged."""
        root_a = self.find(a)
        root_b = self.find(b)
        if root_a == root_b:
            return False
        if self._size[root_a] < self._size[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        self._size[root_a] += self._size[root_b]
        return True

    def connected(self, a: int, b: int) -> bool:
        return self.find(a) == self.find(b)

    def groups(self) -> List[Set[int]]:
        """Equivalence classes ordered by their smallest member."""
        by_root: Dict[int, Set[int]] = {}
        for item in self._parent:
            by_root.setdefault(self.find(item), set()).add(item)
        return sorted(by_root.values(), key=min)


class NetPiston:
    """
    Extracts nets from geometry, vias and forced links.
    """

    def __init__(self, model: LogicModel, config: Optional[NetConfig] = None):
        self.model = model
        self.config = config or NetConfig()

    @property
    def lambda_px(self) -> float:
        if self.config.lambda_px is not None:
            return self.config.lambda_px
        return self.model.settings.lambda_px

    # =========================================================================
    # CONNECTION RULES
    # =========================================================================

    def _via_reaches(self, via: Via, other: LogicModelObject) -> bool:
        if via.target_layer() != other.layer:
            return False
        return other.geometry().distance_to_point(via.x, via.y) <= via.diameter / 2

    def is_connected(self, a: LogicModelObject, b: LogicModelObject) -> bool:
        """Direct electrical contact between two connectable objects."""
        if a.layer == b.layer:
            return shape_distance(a.geometry(), b.geometry()) <= self.lambda_px
        if isinstance(a, Via) and self._via_reaches(a, b):
            return True
        if isinstance(b, Via) and self._via_reaches(b, a):
            return True
        return False

    def neighbours(self, obj: LogicModelObject) -> List[LogicModelObject]:
        """Connectable objects in direct contact with obj."""
        model = self.model
        bbox = obj.geometry().bounding_box()
        candidates = model.candidates(obj.layer, bbox.expand(self.lambda_px))

        if isinstance(obj, Via) and obj.target_layer() is not None:
            candidates += model.candidates(obj.target_layer(), bbox)

        # Vias on adjacent layers reaching into this one
        for layer in (obj.layer - 1, obj.layer + 1):
            for other in model.candidates(layer, bbox):
                if isinstance(other, Via) and other.target_layer() == obj.layer:
                    candidates.append(other)

        result = []
        seen = {obj.object_id}
        for other in candidates:
            if other.object_id in seen or not other.is_connectable():
                continue
            seen.add(other.object_id)
            if self.is_connected(obj, other):
                result.append(other)
        return result

    # =========================================================================
    # EXTRACTION
    # =========================================================================

    def extract(self, object_ids: Optional[Iterable[int]] = None) -> NetResult:
        """
        Recompute nets.

        Without object_ids every net is rebuilt. With object_ids only the
        region reachable from those objects is recomputed.
        """
        start = time.time()
        model = self.model

        if object_ids is None:
            scope = 'full'
            region = {o.object_id for o in model.connectable_objects()}
            old_nets = {n.object_id: n for n in model.nets}
        else:
            scope = 'local'
            seeds = [oid for oid in object_ids if model.get(oid).is_connectable()]
            region = self._grow_region(seeds)
            old_nets = {}
            for oid in region:
                net = model.net_of(oid)
                if net is not None:
                    old_nets[net.object_id] = net

        classes = self._partition(region)
        new_nets, created, changed, removed = self._assign_ids(classes, old_nets)
        touched = set(created) | set(changed)
        model.replace_nets(removed, [n for n in new_nets if n.object_id in touched])

        in_nets = set().union(*classes) if classes else set()
        result = NetResult(
            scope=scope,
            objects_considered=len(region),
            net_count=len(model.nets),
            nets_created=created,
            nets_removed=removed,
            nets_changed=changed,
            open_object_ids=sorted(region - in_nets),
            elapsed_s=time.time() - start,
        )
        self._log(f"[NETS] {result.summary()}")
        return result

    def _grow_region(self, seeds: List[int]) -> Set[int]:
        """Close the seed set over old net membership, contact and forced links."""
        model = self.model
        links: Dict[int, List[int]] = {}
        for a, b in model.forced_links:
            links.setdefault(a, []).append(b)
            links.setdefault(b, []).append(a)

        region: Set[int] = set()
        frontier = list(seeds)
        while frontier:
            oid = frontier.pop()
            if oid in region or oid not in model:
                continue
            region.add(oid)
            net = model.net_of(oid)
            if net is not None:
                frontier.extend(m for m in net.member_ids if m not in region)
            obj = model.get(oid)
            frontier.extend(n.object_id for n in self.neighbours(obj)
                            if n.object_id not in region)
            frontier.extend(p for p in links.get(oid, ()) if p not in region)
        return region

    def _partition(self, region: Set[int]) -> List[Set[int]]:
        """Connected classes (size > 1) within a closed region."""
        model = self.model
        ds = DisjointSet(sorted(region))
        for oid in sorted(region):
            obj = model.get(oid)
            for other in self.neighbours(obj):
                if other.object_id in ds:
                    ds.union(oid, other.object_id)
        for a, b in model.forced_links:
            if a in ds and b in ds:
                ds.union(a, b)
        return [group for group in ds.groups() if len(group) > 1]

    def _assign_ids(self, classes: List[Set[int]], old_nets: Dict[int, Net]
                    ) -> Tuple[List[Net], List[int], List[int], List[int]]:
        """Match new classes to old nets by largest overlap."""
        pairs = []
        for index, members in enumerate(classes):
            for net_id, net in old_nets.items():
                overlap = len(members & net.member_ids)
                if overlap:
                    pairs.append((-overlap, net_id, index))
        pairs.sort()

        owner: Dict[int, int] = {}
        used: Set[int] = set()
        for _, net_id, index in pairs:
            if index in owner or net_id in used:
                continue
            owner[index] = net_id
            used.add(net_id)

        nets, created, changed = [], [], []
        for index, members in enumerate(classes):
            if index in owner:
                old = old_nets[owner[index]]
                if old.member_ids != members:
                    changed.append(old.object_id)
                nets.append(Net(object_id=old.object_id, name=old.name,
                                description=old.description,
                                fill_color=old.fill_color, frame_color=old.frame_color,
                                member_ids=set(members)))
            else:
                net = Net(object_id=self.model.allocate_id(), member_ids=set(members))
                created.append(net.object_id)
                nets.append(net)

        removed = sorted(set(old_nets) - used)
        return nets, created, sorted(changed), removed

    # =========================================================================
    # CONNECTIVITY EDITS
    # =========================================================================

    def _connectable_selection(self, object_ids: Iterable[int]) -> List[int]:
        ids = sorted(set(object_ids))
        for oid in ids:
            obj = self.model.get(oid)
            if not obj.is_connectable():
                raise InvalidOperationError(
                    f"{obj.type_name} {oid} cannot be electrically connected")
        return ids

    def interconnect(self, object_ids: Iterable[int]) -> NetResult:
        """Force the selection into one net regardless of distance."""
        ids = self._connectable_selection(object_ids)
        if len(ids) < 2:
            return self.extract(ids)
        self.model.add_forced_links(zip(ids, ids[1:]))
        self._log(f"[NETS] Interconnected {len(ids)} objects")
        return self.extract(ids)

    def isolate(self, object_ids: Iterable[int]) -> NetResult:
        """
        Drop forced links touching the selection and re-extract.

        Objects still in geometric contact rejoin their neighbours.
        """
        ids = self._connectable_selection(object_ids)
        dropped = self.model.remove_forced_links(ids)
        self._log(f"[NETS] Isolated {len(ids)} objects ({dropped} forced links dropped)")
        return self.extract(ids)

    # =========================================================================
    # REPORTING
    # =========================================================================

    def net_report(self) -> str:
        """Generate human-readable net report"""
        model = self.model
        nets = model.nets
        connectable = model.connectable_objects()
        open_ids = [o.object_id for o in connectable if model.net_of(o.object_id) is None]

        lines = [
            "=" * 60,
            "NET EXTRACTION REPORT",
            "=" * 60,
            "",
            f"Lambda:              {self.lambda_px:g} px",
            f"Connectable objects: {len(connectable)}",
            f"Nets:                {len(nets)}",
            f"Open objects:        {len(open_ids)}",
            f"Forced links:        {len(model.forced_links)}",
            "",
            "-" * 60,
            "NETS",
            "-" * 60,
        ]

        for net in nets:
            members = sorted(net.member_ids)
            label = ', '.join(model.describe(m) for m in members[:4])
            if len(members) > 4:
                label += f"... (+{len(members) - 4})"
            lines.append(f"  {net.descriptive_identifier():16} {len(members):4} members  {label}")

        if open_ids:
            lines.append("\n" + "-" * 60)
            lines.append("OPEN OBJECTS")
            lines.append("-" * 60)
            for oid in open_ids:
                lines.append(f"  {model.describe(oid)}")

        lines.append("\n" + "=" * 60)
        return "\n".join(lines)

    def _log(self, message: str):
        """Log a message if verbose mode is enabled"""
        if self.config.verbose:
            print(message)
