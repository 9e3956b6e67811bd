"""Agents that talk to the generation service."""

from .garment_detector import GarmentDetector
from .outfit_composer import OutfitComposer

__all__ = ["GarmentDetector", "OutfitComposer"]
