from typing import Iterable, Protocol, TypeVar

from mapwatch.models.schemas import Quadrant, Settlement


class _HasCoords(Protocol):
    x: int
    y: int


T = TypeVar("T", bound=_HasCoords)


def quadrant_of(x: int, y: int) -> Quadrant:
    """Quadrant of a map point relative to the origin.

    Points on an axis belong to the side with the non-negative coordinate:
    (0, 0) and (5, 0) are NE, (0, -3) is SE, (-3, 0) is NW.
    """
    if x >= 0:
        return Quadrant.NE if y >= 0 else Quadrant.SE
    return Quadrant.NW if y >= 0 else Quadrant.SW


def filter_by_quadrant(records: Iterable[T], quadrant: Quadrant | str) -> list[T]:
    quadrant = Quadrant(quadrant)
    return [r for r in records if quadrant_of(r.x, r.y) == quadrant]


def settlements_near(
    settlements: Iterable[Settlement], x: int, y: int, radius: int = 10
) -> list[Settlement]:
    """Settlements inside the square of half-width `radius` around (x, y).

    Closest first by Manhattan distance, then larger population first.
    """
    if radius < 0:
        raise ValueError("radius must be >= 0")
    nearby = [s for s in settlements if abs(s.x - x) <= radius and abs(s.y - y) <= radius]
    nearby.sort(key=lambda s: (abs(s.x - x) + abs(s.y - y), -s.population))
    return nearby
