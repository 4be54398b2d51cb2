"""Species name parsing for classifier output labels.

Classifier labels follow the ``Scientific name_Common Name`` convention, for example
``Lathamus discolor_Swift Parrot``. The scientific name is everything before the first
underscore and the common name everything after it.
"""

from typing import NamedTuple


class SpeciesComponents(NamedTuple):
    """Components of a parsed species label."""

    scientific_name: str
    common_name: str
    full_species: str  # Formatted as "Common Name (Scientific Name)"


class SpeciesParser:
    """Parser for species labels emitted by the classification service."""

    SEPARATOR = "_"

    @staticmethod
    def parse_label(label: str) -> SpeciesComponents:
        """Split a classifier label into its components.

        Labels without a separator yield the whole label as both names.

        Args:
            label: Raw species identifier from the classifier

        Returns:
            SpeciesComponents for the label
        """
        scientific_name, separator, common_name = label.partition(SpeciesParser.SEPARATOR)
        if not separator:
            scientific_name = common_name = label

        if scientific_name == common_name:
            full_species = scientific_name
        else:
            full_species = f"{common_name} ({scientific_name})"

        return SpeciesComponents(
            scientific_name=scientific_name,
            common_name=common_name,
            full_species=full_species,
        )

    @staticmethod
    def matches_marker(label: str, markers: list[str]) -> bool:
        """Check whether a label contains any of the marker strings, ignoring case."""
        folded = label.casefold()
        return any(marker.casefold() in folded for marker in markers if marker)
