"""
py-persons: simulation core of a persistent multiplayer world.

Agents walk a city tile map, are indexed by the cells they pass through, and
are simulated one cell at a time under a per-cell lock.
"""

__version__ = "0.1.0"
