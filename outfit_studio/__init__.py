"""Outfit Studio: AI product photography over a multimodal image model."""

__version__ = "0.1.0"
