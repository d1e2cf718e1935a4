"""TravelTide loyalty perk assignment pipeline."""

__version__ = "0.1.0"
