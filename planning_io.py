"""
Layer loading and hand-off for planning-unit grids.

Reads the study region and exclusion layers with geopandas, reprojects them
to the planning CRS, and turns PlanningUnit lists into GeoDataFrames keyed by
cellID so that feature and cost tables can be joined onto them.
"""

from pathlib import Path
from typing import List

import geopandas as gpd
import pandas as pd
from pyproj import CRS

from planning_grid import InvalidGeometry, InvalidParameter, PlanningUnit

CELL_ID_COLUMN = "cellID"

# Output drivers by file suffix
OUTPUT_DRIVERS = {
    ".gpkg": "GPKG",
    ".geojson": "GeoJSON",
    ".shp": "ESRI Shapefile",
}


def require_projected(crs) -> CRS:
    """Return crs as a pyproj CRS, raising InvalidParameter unless projected."""
    if crs is None:
        raise InvalidParameter("No CRS set; planning units need a projected CRS in metres")
    crs = CRS.from_user_input(crs)
    if not crs.is_projected:
        raise InvalidParameter(f"CRS {crs.to_string()} is not projected; cell areas would not be in km²")
    return crs


def load_layer(path, crs=None) -> gpd.GeoDataFrame:
    """
    Load a vector layer, optionally reprojected.

    Args:
        path: Any file geopandas can read (GeoPackage, GeoJSON, Shapefile...)
        crs: Target CRS; the layer is reprojected when it differs

    Returns:
        GeoDataFrame without missing or empty geometries
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Layer not found: {path}")

    layer = gpd.read_file(path)
    layer = layer[layer.geometry.notna() & ~layer.geometry.is_empty]

    if crs is not None and layer.crs != crs:
        if layer.crs is None:
            raise InvalidParameter(f"{path.name} has no CRS; cannot reproject to {crs}")
        layer = layer.to_crs(crs)

    return layer


def dissolve_region(layer: gpd.GeoDataFrame):
    """Merge all features of a region layer into a single geometry."""
    if layer.empty:
        raise InvalidGeometry("Region layer has no features")
    return layer.union_all()


def units_to_geodataframe(units: List[PlanningUnit], crs) -> gpd.GeoDataFrame:
    """Convert planning units to a GeoDataFrame with a cellID column."""
    return gpd.GeoDataFrame(
        {CELL_ID_COLUMN: [u.cell_id for u in units]},
        geometry=[u.geometry for u in units],
        crs=crs,
    )


def exclusion_fraction(units: gpd.GeoDataFrame, exclusion: gpd.GeoDataFrame) -> pd.Series:
    """
    Fraction of each unit's area covered by the exclusion layer.

    Reported alongside the grid only; the centroid test decides exclusion.

    Returns:
        Series of values in [0, 1], indexed like units
    """
    fraction = pd.Series(0.0, index=units.index, name="exclusion_fraction")
    if units.empty or exclusion.empty:
        return fraction

    excluded = exclusion.geometry.make_valid().union_all()

    # Only units touching the exclusion layer need the intersection
    touching = units.geometry.intersects(excluded)
    if touching.any():
        cells = units.geometry[touching]
        fraction[touching] = (cells.intersection(excluded).area / cells.area).clip(0.0, 1.0)

    return fraction


def read_unit_table(path) -> pd.DataFrame:
    """Read a feature or cost table (CSV) keyed by cellID."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Table not found: {path}")
    return pd.read_csv(path)


def join_unit_table(
    units: gpd.GeoDataFrame,
    table: pd.DataFrame,
    key: str = CELL_ID_COLUMN,
    how: str = "left",
) -> gpd.GeoDataFrame:
    """
    Join a per-unit attribute table (features, costs) onto the grid.

    Args:
        units: Planning units with a cellID column
        table: One row per cellID
        key: Join column present in both frames
        how: pandas merge type

    Returns:
        New GeoDataFrame with the table's columns appended
    """
    if key not in table.columns:
        raise ValueError(f"Table has no '{key}' column (columns: {list(table.columns)})")
    if table[key].duplicated().any():
        dupes = table.loc[table[key].duplicated(), key].unique()
        raise ValueError(f"Table has duplicate {key} values: {list(dupes[:10])}")

    joined = units.merge(table, on=key, how=how, validate="one_to_one")

    missing = (~units[key].isin(table[key])).sum()
    if missing:
        print(f"  Warning: {missing} of {len(units)} planning units have no row in the table")

    return joined


def write_units(units: gpd.GeoDataFrame, path) -> Path:
    """Write planning units; the driver is picked from the file suffix."""
    path = Path(path)
    driver = OUTPUT_DRIVERS.get(path.suffix.lower())
    if driver is None:
        raise ValueError(f"Unsupported output format '{path.suffix}'. Use one of {sorted(OUTPUT_DRIVERS)}")

    path.parent.mkdir(parents=True, exist_ok=True)
    if driver == "GPKG":
        units.to_file(path, driver=driver, spatial_index=True)
    else:
        units.to_file(path, driver=driver)

    print(f"Saved {len(units)} planning units to {path}")
    return path
