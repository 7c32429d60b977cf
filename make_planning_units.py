#!/usr/bin/env python3
"""
Generate a planning-unit grid for a study region.

Tessellates the region into square or hexagonal cells of a target area,
removes cells whose centre lies outside the region or on the exclusion layer
(typically land), numbers the rest 1..N as cellID and writes them out.
Feature and cost tables keyed by cellID can be joined onto the result.

Usage:
    # 1 km² hexagons over a marine study area, land removed
    python make_planning_units.py study_area.gpkg output/pu.gpkg \\
        --exclude land.gpkg --area-km2 1 --crs ESRI:54009

    # Square cells, with per-unit cost table joined on cellID
    python make_planning_units.py region.geojson output/pu.geojson \\
        --shape square --area-km2 4 --table costs.csv

    # All settings from a JSON file, overriding the cell size
    python make_planning_units.py --config grid.json --area-km2 2
"""

import argparse
import json
import numbers
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional

import geopandas as gpd

from planning_grid import (
    CELL_SHAPES,
    HEXAGON,
    InvalidGeometry,
    InvalidParameter,
    build_planning_units,
    cell_size_from_area,
    normalize_shape,
)
from planning_io import (
    dissolve_region,
    exclusion_fraction,
    join_unit_table,
    load_layer,
    read_unit_table,
    require_projected,
    units_to_geodataframe,
    write_units,
)

# === Defaults ===
DEFAULT_TARGET_AREA_KM2 = 1.0
DEFAULT_SHAPE = HEXAGON


@dataclass
class GridRunConfig:
    """Settings for one planning-unit grid run."""
    region_path: Path
    output_path: Path
    target_area_km2: float = DEFAULT_TARGET_AREA_KM2
    shape: str = DEFAULT_SHAPE
    exclusion_path: Optional[Path] = None
    crs: Optional[str] = None  # e.g. "ESRI:54009"; defaults to the region's CRS
    flat_topped: bool = True
    workers: int = 1
    tables: List[Path] = field(default_factory=list)  # CSVs joined on cellID
    report_exclusion_fraction: bool = False

    def __post_init__(self):
        self.region_path = Path(self.region_path)
        self.output_path = Path(self.output_path)
        if self.exclusion_path is not None:
            self.exclusion_path = Path(self.exclusion_path)
        self.tables = [Path(t) for t in self.tables]

        self.shape = normalize_shape(self.shape)
        cell_size_from_area(self.target_area_km2, self.shape)
        if isinstance(self.workers, bool) or not isinstance(self.workers, numbers.Integral) or self.workers < 1:
            raise InvalidParameter(f"workers must be a positive integer, got {self.workers!r}")
        self.workers = int(self.workers)


def load_config(path, **overrides) -> GridRunConfig:
    """
    Read a GridRunConfig from JSON.

    Keys match the GridRunConfig fields. Overrides whose value is None are
    ignored, so argparse defaults don't clobber the file.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    with open(path) as f:
        data = json.load(f)

    known = {f.name for f in fields(GridRunConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown config keys in {path.name}: {unknown}")

    data.update({k: v for k, v in overrides.items() if v is not None})

    missing = [k for k in ("region_path", "output_path") if k not in data]
    if missing:
        raise ValueError(f"Config {path.name} is missing {missing}")

    return GridRunConfig(**data)


def run(config: GridRunConfig) -> gpd.GeoDataFrame:
    """Build, annotate and save the planning units described by config."""
    print(f"Loading region from {config.region_path}")
    region_layer = load_layer(config.region_path)

    crs = require_projected(config.crs if config.crs is not None else region_layer.crs)
    if region_layer.crs != crs:
        region_layer = region_layer.to_crs(crs)
    print(f"  Planning CRS: {crs.to_string()}")

    region = dissolve_region(region_layer)
    print(f"  Region area: {region.area / 1e6:,.1f} km²")

    exclusion_layer = None
    if config.exclusion_path is not None:
        print(f"Loading exclusion layer from {config.exclusion_path}")
        exclusion_layer = load_layer(config.exclusion_path, crs=crs)
        print(f"  {len(exclusion_layer)} exclusion features")

    cell_size = cell_size_from_area(config.target_area_km2, config.shape)
    print(f"Building {config.shape} grid: {config.target_area_km2} km² cells ({cell_size:,.1f} m across)")

    units = build_planning_units(
        region,
        config.target_area_km2,
        shape=config.shape,
        exclusion=exclusion_layer.geometry if exclusion_layer is not None else None,
        flat_topped=config.flat_topped,
        workers=config.workers,
    )
    print(f"  {len(units)} planning units")

    grid = units_to_geodataframe(units, crs)

    if config.report_exclusion_fraction and exclusion_layer is not None:
        grid["exclusion_fraction"] = exclusion_fraction(grid, exclusion_layer)
        partly = (grid["exclusion_fraction"] > 0).sum()
        print(f"  {partly} units partly overlap the exclusion layer")

    for table_path in config.tables:
        print(f"Joining {table_path.name}")
        grid = join_unit_table(grid, read_unit_table(table_path))

    if grid.empty:
        print("No planning units left after filtering; nothing written")
    else:
        write_units(grid, config.output_path)

    return grid


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate a planning-unit grid (square or hexagonal cells) for a study region"
    )
    parser.add_argument("region", nargs="?", help="Study region layer (any format geopandas reads)")
    parser.add_argument("output", nargs="?", help="Output file (.gpkg, .geojson or .shp)")
    parser.add_argument("--config", help="JSON file with run settings; command-line flags override it")
    parser.add_argument("--exclude", help="Exclusion layer, e.g. landmass polygons")
    parser.add_argument("--area-km2", type=float, help=f"Cell area in km² (default {DEFAULT_TARGET_AREA_KM2})")
    parser.add_argument("--shape", choices=CELL_SHAPES, help=f"Cell shape (default {DEFAULT_SHAPE})")
    parser.add_argument("--crs", help="Projected, equal-area planning CRS (default: the region's CRS)")
    parser.add_argument("--pointy-top", action="store_true", help="Pointy-top hexagons instead of flat-top")
    parser.add_argument("--workers", type=int, help="Threads for the centroid tests (default 1)")
    parser.add_argument("--table", action="append", help="CSV keyed by cellID to join (repeatable)")
    parser.add_argument(
        "--exclusion-fraction",
        action="store_true",
        help="Add the share of each cell covered by the exclusion layer"
    )

    args = parser.parse_args(argv)

    overrides = {
        "region_path": args.region,
        "output_path": args.output,
        "exclusion_path": args.exclude,
        "target_area_km2": args.area_km2,
        "shape": args.shape,
        "crs": args.crs,
        "workers": args.workers,
        "tables": args.table,
        "flat_topped": False if args.pointy_top else None,
        "report_exclusion_fraction": True if args.exclusion_fraction else None,
    }

    try:
        if args.config:
            config = load_config(args.config, **overrides)
        else:
            if not args.region or not args.output:
                parser.error("region and output are required unless --config is given")
            config = GridRunConfig(**{k: v for k, v in overrides.items() if v is not None})

        run(config)
    except (InvalidGeometry, InvalidParameter, FileNotFoundError, ValueError) as e:
        print(f"ERROR: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
