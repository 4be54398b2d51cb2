"""Species domain package.

- SpeciesParser: Splitting classifier labels into scientific and common names
"""

from fieldsensor.species.parser import SpeciesComponents, SpeciesParser

__all__ = [
    "SpeciesComponents",
    "SpeciesParser",
]
