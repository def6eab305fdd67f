"""Terrarium: live previews for single TSX component files."""

__version__ = "0.1.0"
