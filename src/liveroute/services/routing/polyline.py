"""Decoder for the directions provider's encoded polyline format."""

from __future__ import annotations

POLYLINE_PRECISION = 1e5


def _read_value(polyline: str, index: int) -> tuple[int, int]:
    shift = 0
    result = 0
    while True:
        if index >= len(polyline):
            raise ValueError("Encoded polyline ends in the middle of a coordinate.")
        b = ord(polyline[index]) - 63
        index += 1
        result |= (b & 0x1F) << shift
        shift += 5
        if b < 0x20:
            break
    delta = ~(result >> 1) if (result & 1) else (result >> 1)
    return delta, index


def decode_polyline(polyline: str) -> list[tuple[float, float]]:
    """Decode a polyline string to a list of (lat, lng) coordinates.

    Each point is stored as a latitude delta followed by a longitude delta
    relative to the previous point, in units of 1e-5 degrees.

    Args:
        polyline: Encoded polyline string, e.g. ``overview_polyline.points``.

    Returns:
        List of (latitude, longitude) tuples.

    Raises:
        ValueError: If the string is truncated mid-coordinate.
    """
    coordinates: list[tuple[float, float]] = []
    index = 0
    lat = 0
    lng = 0

    while index < len(polyline):
        dlat, index = _read_value(polyline, index)
        lat += dlat
        dlng, index = _read_value(polyline, index)
        lng += dlng
        coordinates.append((round(lat / POLYLINE_PRECISION, 5), round(lng / POLYLINE_PRECISION, 5)))

    return coordinates
