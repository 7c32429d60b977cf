"""
planning_grid.py - Planning-unit grid geometry for spatial prioritization

Tessellates a study region into square or hexagonal cells of a given target
area, keeps the cells whose centroid falls inside the region, drops the cells
whose centroid falls on an exclusion layer (e.g. landmass) and numbers the
survivors 1..N.

All coordinates are in a projected, equal-area CRS with metre units.
Hexagons are flat-top by default, with odd columns shifted half a cell up.
"""

import math
import numbers
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np
import shapely
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry


# === Cell shapes ===
SQUARE = "square"
HEXAGON = "hexagon"
CELL_SHAPES = (SQUARE, HEXAGON)

# Area of a regular hexagon with unit circumradius
HEX_AREA_FACTOR = 3 * math.sqrt(3) / 2

M2_PER_KM2 = 1_000_000

# Tolerance when counting square columns/rows, so 10000 / 1000 stays 10
_CELL_COUNT_DECIMALS = 9


class InvalidGeometry(ValueError):
    """Region or exclusion geometry is empty, non-polygonal or unrepairable."""


class InvalidParameter(ValueError):
    """Target area, cell shape or worker count is out of range."""


def normalize_shape(shape: str) -> str:
    """Return the canonical cell shape name, or raise InvalidParameter."""
    if isinstance(shape, str) and shape.strip().lower() in CELL_SHAPES:
        return shape.strip().lower()
    raise InvalidParameter(f"Unknown cell shape: {shape!r}. Expected one of {CELL_SHAPES}")


def cell_size_from_area(target_area_km2: float, shape: str) -> float:
    """
    Linear cell dimension (metres) for a target cell area.

    Args:
        target_area_km2: Desired area of each cell in km²
        shape: "square" or "hexagon"

    Returns:
        Side length for squares; flat-to-flat diameter for hexagons
    """
    if (isinstance(target_area_km2, bool)
            or not isinstance(target_area_km2, numbers.Real)
            or not math.isfinite(target_area_km2)
            or target_area_km2 <= 0):
        raise InvalidParameter(f"Target area must be a positive number of km², got {target_area_km2!r}")

    shape = normalize_shape(shape)
    area_m2 = target_area_km2 * M2_PER_KM2

    if shape == SQUARE:
        return math.sqrt(area_m2)

    # area = (3√3/2) * R², and the flat-to-flat diameter is √3 * R
    radius = math.sqrt(area_m2 / HEX_AREA_FACTOR)
    return 2 * radius * (math.sqrt(3) / 2)


@dataclass(frozen=True)
class PlanningUnit:
    """A grid cell that survived filtering, with its 1-based identifier."""
    cell_id: int
    geometry: Polygon


@dataclass
class PlanningGrid:
    """
    Lattice of equal-area cells anchored at the lower-left of a bounding box.

    Attributes:
        target_area_km2: Area of every cell in km²
        shape: "square" or "hexagon"
        flat_topped: Hexagon orientation (ignored for squares)
    """
    target_area_km2: float
    shape: str = HEXAGON
    flat_topped: bool = True

    def __post_init__(self):
        self.shape = normalize_shape(self.shape)
        # Validates the area as a side effect
        cell_size_from_area(self.target_area_km2, self.shape)

    @property
    def target_area_m2(self) -> float:
        return self.target_area_km2 * M2_PER_KM2

    @property
    def cell_size(self) -> float:
        """Square side, or hexagon flat-to-flat diameter (metres)."""
        return cell_size_from_area(self.target_area_km2, self.shape)

    @property
    def radius(self) -> float:
        """Distance from cell centre to a vertex."""
        if self.shape == SQUARE:
            return self.cell_size * math.sqrt(2) / 2
        return self.cell_size / math.sqrt(3)

    @property
    def col_spacing(self) -> float:
        """Horizontal distance between adjacent cell centres."""
        if self.shape == SQUARE:
            return self.cell_size
        # Flat-top columns interlock at 3/2 radius; pointy-top cells sit a diameter apart
        return 1.5 * self.radius if self.flat_topped else self.cell_size

    @property
    def row_spacing(self) -> float:
        """Vertical distance between adjacent cell centres."""
        if self.shape == SQUARE:
            return self.cell_size
        return self.cell_size if self.flat_topped else 1.5 * self.radius

    def _square_cells(self, min_x, min_y, max_x, max_y) -> np.ndarray:
        side = self.cell_size
        n_cols = max(1, math.ceil(round((max_x - min_x) / side, _CELL_COUNT_DECIMALS)))
        n_rows = max(1, math.ceil(round((max_y - min_y) / side, _CELL_COUNT_DECIMALS)))

        # Row-major from the bottom-left corner
        cols, rows = np.meshgrid(np.arange(n_cols), np.arange(n_rows))
        x0 = min_x + cols.ravel() * side
        y0 = min_y + rows.ravel() * side
        return shapely.box(x0, y0, x0 + side, y0 + side)

    def _hex_centres(self, min_x, min_y, max_x, max_y) -> np.ndarray:
        """Centres of every lattice hexagon that can touch the bounding box."""
        half = self.cell_size / 2

        # Any point lies within one radius of its hexagon's centre; pad by
        # that plus the half-cell offset of alternate columns/rows
        reach = self.radius + half
        q_lo = math.floor(-reach / self.col_spacing)
        q_hi = math.ceil((max_x - min_x + reach) / self.col_spacing)
        r_lo = math.floor(-reach / self.row_spacing)
        r_hi = math.ceil((max_y - min_y + reach) / self.row_spacing)

        rows, cols = np.meshgrid(np.arange(r_lo, r_hi + 1), np.arange(q_lo, q_hi + 1), indexing="ij")
        rows = rows.ravel()
        cols = cols.ravel()

        x = min_x + cols * self.col_spacing
        y = min_y + rows * self.row_spacing
        if self.flat_topped:
            y = y + (cols % 2) * half
        else:
            x = x + (rows % 2) * half
        return np.column_stack([x, y])

    def _hex_cells(self, min_x, min_y, max_x, max_y) -> np.ndarray:
        centres = self._hex_centres(min_x, min_y, max_x, max_y)

        # Flat-top starts at the rightmost vertex (0°), pointy-top at 30°
        start = 0.0 if self.flat_topped else math.pi / 6
        angles = start + np.arange(6) * math.pi / 3
        offsets = self.radius * np.column_stack([np.cos(angles), np.sin(angles)])

        rings = centres[:, np.newaxis, :] + offsets[np.newaxis, :, :]
        cells = shapely.polygons(rings)

        # Keep the lattice tight: only hexagons touching the bounding box
        bbox = shapely.box(min_x, min_y, max_x, max_y)
        return cells[shapely.intersects(cells, bbox)]

    def generate_cells(
        self,
        min_x: float,
        min_y: float,
        max_x: float,
        max_y: float
    ) -> list[Polygon]:
        """
        Generate the candidate lattice covering a bounding box.

        Args:
            min_x, min_y, max_x, max_y: Bounding box in projected CRS units

        Returns:
            Cell polygons in row-major order (rows bottom to top,
            cells within a row left to right). Empty for degenerate bounds.
        """
        return list(self._lattice(min_x, min_y, max_x, max_y))

    def _lattice(self, min_x, min_y, max_x, max_y) -> np.ndarray:
        if not (max_x > min_x and max_y > min_y):
            return np.empty(0, dtype=object)
        if self.shape == SQUARE:
            return self._square_cells(min_x, min_y, max_x, max_y)
        return self._hex_cells(min_x, min_y, max_x, max_y)


def _as_polygonal(geom, label: str) -> BaseGeometry:
    """Validate a (Multi)Polygon, repairing it with make_valid if needed."""
    if not isinstance(geom, (Polygon, MultiPolygon)):
        raise InvalidGeometry(f"{label} must be a Polygon or MultiPolygon, got {type(geom).__name__}")
    if geom.is_empty:
        raise InvalidGeometry(f"{label} geometry is empty")
    if geom.is_valid:
        return geom

    repaired = shapely.make_valid(geom)
    if not isinstance(repaired, (Polygon, MultiPolygon)):
        # make_valid can split into a collection with lines or points; keep the areas
        parts = [g for g in getattr(repaired, "geoms", []) if isinstance(g, (Polygon, MultiPolygon))]
        repaired = shapely.union_all(parts) if parts else Polygon()
    if repaired.is_empty:
        raise InvalidGeometry(f"{label} geometry is invalid and cannot be repaired: {shapely.is_valid_reason(geom)}")
    return repaired


def _exclusion_union(exclusion) -> BaseGeometry | None:
    """Merge the exclusion layer into one prepared geometry, or None if empty."""
    if exclusion is None:
        return None
    if isinstance(exclusion, BaseGeometry):
        members = [exclusion]
    elif hasattr(exclusion, "geometry"):
        # GeoDataFrame or GeoSeries: iterate geometries, not column labels
        members = list(exclusion.geometry)
    else:
        members = list(exclusion)

    parts = []
    for geom in members:
        if geom is None or (isinstance(geom, BaseGeometry) and geom.is_empty):
            continue
        parts.append(_as_polygonal(geom, "Exclusion"))

    if not parts:
        return None
    merged = shapely.union_all(parts)
    shapely.prepare(merged)
    return merged


def _centroids_intersect(geom: BaseGeometry, xs: np.ndarray, ys: np.ndarray, workers: int) -> np.ndarray:
    """Boundary-inclusive point-in-polygon test for each centroid."""
    if workers == 1 or len(xs) < workers:
        return shapely.intersects_xy(geom, xs, ys)

    # Each centroid is independent; shapely releases the GIL in vectorized calls
    chunks = zip(np.array_split(xs, workers), np.array_split(ys, workers))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        results = executor.map(lambda c: shapely.intersects_xy(geom, c[0], c[1]), chunks)
        return np.concatenate(list(results))


def build_planning_units(
    region: Polygon | MultiPolygon,
    target_area_km2: float,
    shape: str = HEXAGON,
    exclusion=None,
    flat_topped: bool = True,
    workers: int = 1,
) -> list[PlanningUnit]:
    """
    Build the planning units for a study region.

    Membership is decided from each cell's centroid: a cell is in the region
    if its centroid intersects the region (boundary inclusive), and is
    excluded if its centroid intersects any exclusion polygon. A cell that
    overlaps the region only partly is kept or dropped on its centroid alone.

    Args:
        region: Study-area (Multi)Polygon in a projected CRS (metres)
        target_area_km2: Area of each cell in km²
        shape: "square" or "hexagon"
        exclusion: Optional (Multi)Polygon or iterable of them, e.g. land
        flat_topped: Hexagon orientation
        workers: Threads used for the centroid tests

    Returns:
        PlanningUnit list with cell_id 1..N in lattice order
    """
    grid = PlanningGrid(target_area_km2=target_area_km2, shape=shape, flat_topped=flat_topped)
    if isinstance(workers, bool) or not isinstance(workers, numbers.Integral) or workers < 1:
        raise InvalidParameter(f"workers must be a positive integer, got {workers!r}")
    workers = int(workers)

    if not isinstance(region, (Polygon, MultiPolygon)):
        raise InvalidGeometry(f"Region must be a Polygon or MultiPolygon, got {type(region).__name__}")
    if region.is_empty:
        raise InvalidGeometry("Region geometry is empty")
    excluded = _exclusion_union(exclusion)

    min_x, min_y, max_x, max_y = region.bounds
    if not (max_x > min_x and max_y > min_y):
        return []

    region = _as_polygonal(region, "Region")

    cells = grid._lattice(*region.bounds)
    if len(cells) == 0:
        return []

    xs, ys = shapely.get_coordinates(shapely.centroid(cells)).T

    keep = _centroids_intersect(region, xs, ys, workers)
    if excluded is not None:
        keep &= ~_centroids_intersect(excluded, xs, ys, workers)

    return [
        PlanningUnit(cell_id=i, geometry=cell)
        for i, cell in enumerate(cells[keep], start=1)
    ]
