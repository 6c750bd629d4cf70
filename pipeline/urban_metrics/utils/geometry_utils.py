"""
Geometry and projection utilities.

Purpose: Repair urban center geometries and measure them on the ellipsoid
Decision log:
  - GHSL data is in Mollweide (ESRI:54009); areas are measured on the WGS84
    ellipsoid after reprojecting, never on the projected plane
  - shapely.make_valid for repair (keeps structure, unlike the buffer(0) trick
    which can drop self-overlapping lobes)
  - Repair keeps polygonal parts only; collapsed slivers become lines/points
  - pyproj.Geod.geometry_area_perimeter for ellipsoidal areas, on polygons
    oriented first so holes always subtract
Date: 2025-01-14
"""

import pyproj
import shapely
from shapely import MultiPolygon, Polygon
from shapely.geometry.polygon import orient
from shapely.ops import transform as shapely_transform

# Standard CRS definitions
WGS84 = pyproj.CRS("EPSG:4326")
MOLLWEIDE = pyproj.CRS("ESRI:54009")  # World Mollweide

GEOD = pyproj.Geod(ellps="WGS84")


def create_transformer(from_crs: pyproj.CRS, to_crs: pyproj.CRS) -> pyproj.Transformer:
    """Create pyproj transformer for coordinate conversion."""
    return pyproj.Transformer.from_crs(from_crs, to_crs, always_xy=True)


def reproject_geometry(
    geometry: shapely.Geometry,
    from_crs: pyproj.CRS,
    to_crs: pyproj.CRS,
) -> shapely.Geometry:
    """Reproject a shapely geometry between coordinate systems."""
    transformer = create_transformer(from_crs, to_crs)
    return shapely_transform(transformer.transform, geometry)


def polygonal_parts(geometry: shapely.Geometry) -> shapely.Geometry:
    """
    Keep only the areal part of a geometry.

    Intersections and repairs can return collections mixing polygons with
    lines or points. Those carry no area and would break convex hull and
    area ratios, so they are dropped.

    Returns:
        Polygon, MultiPolygon, or an empty Polygon
    """
    if geometry is None or geometry.is_empty:
        return Polygon()
    if isinstance(geometry, (Polygon, MultiPolygon)):
        return geometry

    polygons = []
    for part in shapely.get_parts(geometry):
        if isinstance(part, Polygon):
            polygons.append(part)
        elif isinstance(part, (MultiPolygon, shapely.GeometryCollection)):
            sub = polygonal_parts(part)
            if not sub.is_empty:
                polygons.extend(shapely.get_parts(sub))

    if not polygons:
        return Polygon()
    if len(polygons) == 1:
        return polygons[0]
    return MultiPolygon(polygons)


def fix_invalid_geometry(geometry: shapely.Geometry) -> shapely.Geometry:
    """
    Repair a possibly self-intersecting polygon.

    Valid geometries are returned unchanged. Never raises: a geometry that
    cannot be fully repaired comes back as the best-effort result.
    """
    if geometry is None:
        return Polygon()
    if geometry.is_valid:
        return geometry
    return polygonal_parts(shapely.make_valid(geometry))


def geodesic_area_m2(
    geometry: shapely.Geometry,
    from_crs: pyproj.CRS = MOLLWEIDE,
) -> float:
    """
    Area of a polygonal geometry on the WGS84 ellipsoid, in square meters.

    Ring orientation is ignored: each exterior contributes its absolute area
    and each hole subtracts its absolute area.

    Args:
        geometry: Polygon or MultiPolygon in `from_crs`
        from_crs: CRS of the input coordinates

    Returns:
        Area in m² (0.0 for empty or non-areal input)
    """
    geometry = polygonal_parts(geometry)
    if geometry.is_empty:
        return 0.0

    lonlat = reproject_geometry(geometry, from_crs, WGS84)

    # geometry_area_perimeter signs areas by winding: shells CCW, holes CW
    total = 0.0
    for polygon in shapely.get_parts(lonlat):
        area, _ = GEOD.geometry_area_perimeter(orient(polygon, sign=1.0))
        total += area

    return max(total, 0.0)
